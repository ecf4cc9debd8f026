"""
Restore executor - loads a backup file back into a database target.

Workflow:
1. Create RestoreExecution record (status: running)
2. Resolve the source to a local .gz file (local path or S3 download)
3. Start the engine's restore program and feed it the decompressed dump
4. Exit code decides the outcome
5. Update RestoreExecution once (status: completed/failed)
"""

import asyncio
import logging
import os
import traceback
from datetime import datetime
from typing import Callable, NamedTuple, Optional

from dumpvault.catalog import Catalog, CatalogError
from dumpvault.models import DatabaseTarget, RestoreExecution, STATUS_COMPLETED, STATUS_FAILED
from .compression import feed_decompressed, scan_diagnostics, remove_partial_file, DEFAULT_CHUNK_SIZE
from .engines import ConfigurationError, EngineAdapter, ProcessError, create_adapter
from .execution_log import ExecutionLog
from .process import ProcessRunner, run_together
from .storage import S3Gateway

logger = logging.getLogger(__name__)

SOURCE_LOCAL = 'local'
SOURCE_S3 = 's3'
SOURCE_UPLOAD = 'upload'


class SourceNotFound(Exception):
    """Raised when the file to restore from does not exist."""
    pass


class SourceDescriptor(NamedTuple):
    """Where a restore reads its backup file from"""
    type: str
    path: Optional[str] = None
    bucket: Optional[str] = None
    key: Optional[str] = None

    @classmethod
    def local(cls, path: str) -> 'SourceDescriptor':
        return cls(SOURCE_LOCAL, path=path)

    @classmethod
    def s3(cls, bucket: str, key: str) -> 'SourceDescriptor':
        return cls(SOURCE_S3, bucket=bucket, key=key)


class RestoreOptions(NamedTuple):
    """
    Restore options.

    Only clean_before_restore changes what the restore program does; the
    other flags are recorded on the execution and otherwise ignored.
    """
    clean_before_restore: bool = False
    schema_only: bool = False
    data_only: bool = False
    drop_and_recreate: bool = False
    create_safety_backup: bool = False


class RestoreExecutor:
    """Runs restores; one instance serves every target."""

    def __init__(self, catalog: Catalog, secrets, temp_dir: str,
                 runner: Optional[ProcessRunner] = None,
                 gateway_factory: Callable = S3Gateway.from_config,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.catalog = catalog
        self.secrets = secrets
        self.temp_dir = temp_dir
        self.runner = runner or ProcessRunner()
        self.gateway_factory = gateway_factory
        self.clock = clock
        self.chunk_size = chunk_size

    async def run(self, target: DatabaseTarget, source: SourceDescriptor,
                  options: Optional[RestoreOptions] = None, initiated_by: Optional[str] = None,
                  backup_id: Optional[str] = None) -> Optional[RestoreExecution]:
        """
        Restore a backup file into a target.

        Never raises: failures end up in the returned record.

        Args:
            target: DatabaseTarget to restore into
            source: Backup file location
            options: Restore options
            initiated_by: Who asked for the restore
            backup_id: BackupArtifact the file belongs to, if known

        Returns:
            The terminal RestoreExecution, or None if the running record
            could not be created
        """
        options = options or RestoreOptions()
        started_at = self.clock()

        try:
            execution = self.catalog.create_restore(
                target.id, source._asdict(), options._asdict(), started_at,
                initiated_by=initiated_by, backup_id=backup_id,
            )
        except CatalogError as e:
            logger.error(f"Restore of {target.name} could not be recorded: {e}")
            return None

        log = ExecutionLog(logger, prefix=f"[restore {execution.id}] ")
        log.info(f"Starting restore of {target.name} from {source.type} source")

        fields = {}
        downloaded_path = None

        try:
            if source.type == SOURCE_S3:
                downloaded_path = self._download_path(execution, source)
            input_path = await self._resolve_source(source, downloaded_path, log)

            self._log_ignored_options(options, log)

            password = self.secrets.decrypt(target.password_encrypted)
            adapter = create_adapter(target, password, self.runner)

            await self._restore(adapter, input_path, options.clean_before_restore, log)

            fields['status'] = STATUS_COMPLETED
            log.info("Restore completed successfully")

        except Exception as e:
            fields['status'] = STATUS_FAILED
            fields['error_message'] = str(e) or e.__class__.__name__
            fields['error_trace'] = traceback.format_exc()
            log.error(f"Restore failed: {e}")

        finally:
            remove_partial_file(downloaded_path)

        completed_at = self.clock()
        fields['completed_at'] = completed_at
        fields['duration_seconds'] = int((completed_at - started_at).total_seconds())
        fields['logs'] = log.text()

        try:
            self.catalog.finish_restore(execution, **fields)
        except CatalogError as e:
            logger.error(f"Failed to record result of restore {execution.id}: {e}")

        return execution

    def _download_path(self, execution: RestoreExecution, source: SourceDescriptor) -> str:
        """Per-execution temp file name, so concurrent restores never collide."""
        basename = os.path.basename(source.key or '') or 'backup'
        return os.path.join(self.temp_dir, f"restore_{execution.id}_{basename}")

    async def _resolve_source(self, source: SourceDescriptor, download_path: Optional[str],
                              log: ExecutionLog) -> str:
        """
        Turn a source descriptor into a local file path.

        Raises:
            SourceNotFound: If a local file is missing
            ConfigurationError: For incomplete S3 sources, a missing remote
                store config, or unsupported source types
            StoreError: If the S3 download fails
        """
        if source.type == SOURCE_LOCAL:
            if not source.path or not os.path.isfile(source.path):
                raise SourceNotFound(f"Backup file not found: {source.path}")
            log.info(f"Using local file {source.path}")
            return source.path

        if source.type == SOURCE_S3:
            if not source.bucket or not source.key:
                raise ConfigurationError("S3 restore requires both bucket and key")

            remote_config = self.catalog.get_default_remote_config()
            if remote_config is None:
                raise ConfigurationError("No default remote store is configured")

            gateway = self.gateway_factory(remote_config, self.secrets)
            os.makedirs(self.temp_dir, exist_ok=True)
            log.info(f"Downloading s3://{source.bucket}/{source.key}")
            await asyncio.to_thread(gateway.get, source.bucket, source.key, download_path)
            log.info(f"Downloaded to {download_path}")
            return download_path

        if source.type == SOURCE_UPLOAD:
            raise ConfigurationError("Uploaded files must be saved to a local path before restoring")

        raise ConfigurationError(f"Invalid restore source type: {source.type}")

    def _log_ignored_options(self, options: RestoreOptions, log: ExecutionLog):
        for name in ('schema_only', 'data_only', 'drop_and_recreate', 'create_safety_backup'):
            if getattr(options, name):
                log.info(f"Option {name} is recorded but not applied")

    async def _restore(self, adapter: EngineAdapter, input_path: str, clean: bool, log: ExecutionLog):
        """
        Feed the decompressed file to the restore program.

        Error lines on either output stream are collected; only the exit
        code decides failure.

        Raises:
            ProcessError: If the program exits nonzero
        """
        process = await adapter.start_restore(clean)

        try:
            _, stdout_errors, stderr_errors = await run_together(
                feed_decompressed(input_path, process.stdin, self.chunk_size),
                scan_diagnostics(process.stdout, log.debug),
                scan_diagnostics(process.stderr, log.debug),
            )
            returncode = await process.wait()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        errors = stdout_errors + stderr_errors
        if returncode != 0:
            message = f"{adapter.restore_command(clean).program} exited with code {returncode}"
            details = '\n'.join(errors)
            raise ProcessError(f"{message}: {details}" if details else message)

        if errors:
            log.warning(f"Restore program reported {len(errors)} error line(s) but exited cleanly")
