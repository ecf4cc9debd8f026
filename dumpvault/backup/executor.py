"""
Backup executor - runs one database backup end to end.

Workflow:
1. Create BackupArtifact record (status: running)
2. Start the engine's dump program
3. Stream its output through sha256 + gzip into the local backup file
4. Check exit code and diagnostic output
5. Upload to the default remote store (if enabled and configured)
6. Update BackupArtifact once (status: completed/failed)
"""

import asyncio
import hashlib
import logging
import os
import secrets
import traceback
from datetime import datetime
from typing import Callable, Optional

from dumpvault.catalog import Catalog, CatalogError
from dumpvault.models import BackupArtifact, DatabaseTarget, STATUS_COMPLETED, STATUS_FAILED
from .compression import (
    write_compressed, scan_diagnostics, remove_partial_file,
    COMPRESSION_ALGORITHM, COMPRESSED_EXTENSION, DEFAULT_CHUNK_SIZE,
)
from .engines import EngineAdapter, ProcessError, create_adapter
from .execution_log import ExecutionLog
from .process import ProcessRunner, run_together
from .storage import LocalStorage, S3Gateway, generate_remote_key

logger = logging.getLogger(__name__)

EMPTY_SHA256 = hashlib.sha256(b'').hexdigest()


def generate_backup_filename(target_name: str, kind: str, extension: str,
                             now: Optional[datetime] = None) -> str:
    """
    Generate a backup file name.

    Format: {target}_{kind}_{YYYY-MM-DD_HH-MM-SS}_{8 random chars}.{ext}.gz

    Args:
        target_name: Name of the database target
        kind: Backup kind (hourly, daily, ..., manual)
        extension: Native dump extension of the engine ('dump', 'sql')
        now: Timestamp to embed (default: current UTC time)
    """
    now = now or datetime.utcnow()
    timestamp = now.strftime('%Y-%m-%d_%H-%M-%S')
    short_id = secrets.token_urlsafe(6)[:8]
    return f"{target_name}_{kind}_{timestamp}_{short_id}.{extension}{COMPRESSED_EXTENSION}"


class BackupExecutor:
    """
    Runs backups for database targets.

    One instance serves every target; per-run state lives in run().
    The executor does no per-target locking, the schedule coordinator does.
    """

    def __init__(self, catalog: Catalog, secrets, local_storage: LocalStorage,
                 runner: Optional[ProcessRunner] = None,
                 gateway_factory: Callable = S3Gateway.from_config,
                 clock: Callable[[], datetime] = datetime.utcnow,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize backup executor.

        Args:
            catalog: Record store
            secrets: Secret resolver used to decrypt credentials
            local_storage: Where backup files are written
            runner: Process runner for the dump programs
            gateway_factory: Builds a remote store gateway from a RemoteStoreConfig
            clock: Returns the current naive UTC time
            chunk_size: Bytes per stream read
        """
        self.catalog = catalog
        self.secrets = secrets
        self.local_storage = local_storage
        self.runner = runner or ProcessRunner()
        self.gateway_factory = gateway_factory
        self.clock = clock
        self.chunk_size = chunk_size

    async def run(self, target: DatabaseTarget, kind: str, upload_enabled: bool = True,
                  schedule_id: Optional[str] = None) -> Optional[BackupArtifact]:
        """
        Back up a target.

        Never raises: failures end up in the returned record.

        Args:
            target: DatabaseTarget to back up
            kind: Backup kind stored on the artifact
            upload_enabled: Copy the file to the default remote store
            schedule_id: Schedule that triggered the backup, if any

        Returns:
            The terminal BackupArtifact, or None if the running record
            could not be created
        """
        started_at = self.clock()
        try:
            artifact = self.catalog.create_backup(target.id, kind, started_at, schedule_id)
        except CatalogError as e:
            logger.error(f"Backup of {target.name} could not be recorded: {e}")
            return None

        log = ExecutionLog(logger, prefix=f"[backup {artifact.id}] ")
        log.info(f"Starting {kind} backup of {target.name} ({target.engine})")

        fields = {}
        local_path = None

        try:
            password = self.secrets.decrypt(target.password_encrypted)
            adapter = create_adapter(target, password, self.runner)

            file_name = generate_backup_filename(target.name, kind, adapter.extension, started_at)
            local_path = self.local_storage.path_for(target.name, file_name)
            log.info(f"Writing {file_name}")

            checksum = await self._dump(adapter, local_path, log)

            file_size = await asyncio.to_thread(os.path.getsize, local_path)
            if checksum == EMPTY_SHA256:
                log.warning("Dump produced no data")
            log.info(f"Dump written ({file_size / 1024 / 1024:.2f} MB, sha256 {checksum})")

            fields.update(
                file_name=file_name,
                file_size_bytes=file_size,
                local_path=local_path,
                compression=COMPRESSION_ALGORITHM,
                checksum=checksum,
            )

            if upload_enabled:
                fields.update(await self._upload(target, artifact, kind, file_name, local_path, log))
            else:
                log.info("Upload disabled, keeping local copy only")

            fields['status'] = STATUS_COMPLETED
            log.info("Backup completed successfully")

        except Exception as e:
            fields['status'] = STATUS_FAILED
            fields['error_message'] = str(e) or e.__class__.__name__
            fields['error_trace'] = traceback.format_exc()
            log.error(f"Backup failed: {e}")
            remove_partial_file(local_path)
            fields['local_path'] = None

        completed_at = self.clock()
        fields['completed_at'] = completed_at
        fields['duration_seconds'] = int((completed_at - started_at).total_seconds())
        fields['logs'] = log.text()

        try:
            self.catalog.finish_backup(artifact, **fields)
        except CatalogError as e:
            logger.error(f"Failed to record result of backup {artifact.id}: {e}")

        return artifact

    async def _dump(self, adapter: EngineAdapter, local_path: str, log: ExecutionLog) -> str:
        """
        Stream the dump program's output into the local file.

        Returns:
            sha256 hex digest of the uncompressed dump

        Raises:
            ProcessError: If the program exits nonzero or reports errors
        """
        process = await adapter.start_dump()

        try:
            checksum, errors = await run_together(
                write_compressed(process.stdout, local_path, self.chunk_size),
                scan_diagnostics(process.stderr, log.debug),
            )
            returncode = await process.wait()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if returncode != 0 or errors:
            details = '\n'.join(errors)
            if returncode != 0:
                message = f"{adapter.dump_command().program} exited with code {returncode}"
                raise ProcessError(f"{message}: {details}" if details else message)
            raise ProcessError(details)

        return checksum

    async def _upload(self, target: DatabaseTarget, artifact: BackupArtifact, kind: str,
                      file_name: str, local_path: str, log: ExecutionLog) -> dict:
        """
        Copy the backup file to the default remote store.

        Upload problems are warnings; the local backup stays valid.

        Returns:
            Remote location fields for the artifact (empty if not uploaded)
        """
        remote_config = self.catalog.get_default_remote_config()
        if remote_config is None:
            log.warning("Upload requested but no default remote store is configured")
            return {}

        try:
            gateway = self.gateway_factory(remote_config, self.secrets)
            s3_key = generate_remote_key(remote_config.path_prefix, target.name, file_name, self.clock())
            log.info(f"Uploading to s3://{remote_config.bucket}/{s3_key}")

            metadata = {
                'database': target.name,
                'type': kind,
                'execution-id': artifact.id,
            }
            await asyncio.to_thread(gateway.put, remote_config.bucket, s3_key, local_path, metadata)

        except Exception as e:
            log.warning(f"Upload failed, backup kept locally only: {e}")
            return {}

        log.info("Upload completed")
        return {
            's3_uploaded': True,
            's3_bucket': remote_config.bucket,
            's3_key': s3_key,
            's3_uploaded_at': self.clock(),
        }
