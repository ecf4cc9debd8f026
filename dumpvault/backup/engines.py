"""
Engine adapters - one per supported database engine.

Each adapter builds the dump, restore and probe commands for a target and
starts them through the process runner:
- PostgresAdapter: pg_dump custom format, pg_restore, psql
- MySQLAdapter: mysqldump, mysql

Adapters never interpret exit codes; the executors do.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from dumpvault.models import DatabaseTarget, ENGINE_POSTGRES, ENGINE_MYSQL
from .process import Command, ProcessRunner, LaunchError


class ConfigurationError(Exception):
    """Raised for unknown engines or missing required configuration."""
    pass


class ProcessError(Exception):
    """Raised when a sub-process exits nonzero or reports errors."""
    pass


class EngineAdapter(ABC):
    """Builds and starts the client programs for one database target."""

    engine: str = None
    # Native dump extension, before compression
    extension: str = None

    def __init__(self, target: DatabaseTarget, password: str, runner: Optional[ProcessRunner] = None):
        self.target = target
        self.password = password
        self.runner = runner or ProcessRunner()

    @abstractmethod
    def dump_command(self) -> Command:
        """Command whose stdout is the raw dump."""
        pass

    @abstractmethod
    def restore_command(self, clean: bool = False) -> Command:
        """Command that reads the decompressed dump from stdin."""
        pass

    @abstractmethod
    def probe_command(self) -> Command:
        """Command running a trivial query that prints the server version."""
        pass

    async def start_dump(self) -> asyncio.subprocess.Process:
        return await self.runner.launch(self.dump_command())

    async def start_restore(self, clean: bool = False) -> asyncio.subprocess.Process:
        return await self.runner.launch(self.restore_command(clean), stdin=True)

    async def test_connection(self) -> Dict[str, Any]:
        """
        Run the probe query against the target.

        Returns:
            {'success': True, 'version': str} or {'success': False, 'error': str}
        """
        try:
            process = await self.runner.launch(self.probe_command())
        except LaunchError as e:
            return {'success': False, 'error': str(e)}

        stdout, stderr = await process.communicate()
        if process.returncode == 0:
            return {'success': True, 'version': stdout.decode(errors='replace').strip()}

        error = stderr.decode(errors='replace').strip()
        return {'success': False, 'error': error or f"Exited with code {process.returncode}"}


class PostgresAdapter(EngineAdapter):
    engine = ENGINE_POSTGRES
    extension = 'dump'

    def _connection_args(self):
        return [
            '-h', self.target.host,
            '-p', str(self.target.port),
            '-U', self.target.username,
            '-d', self.target.database_name,
        ]

    def _env(self):
        return {'PGPASSWORD': self.password}

    def dump_command(self):
        args = self._connection_args() + [
            '-Fc',
            '--no-password',
            '--clean',
            '--if-exists',
            '--verbose',
        ]
        return Command('pg_dump', args, self._env())

    def restore_command(self, clean=False):
        args = self._connection_args() + ['--no-password', '--verbose']
        if clean:
            args.append('--clean')
        return Command('pg_restore', args, self._env())

    def probe_command(self):
        args = self._connection_args() + ['-t', '--no-password', '-c', 'SELECT version();']
        return Command('psql', args, self._env())


class MySQLAdapter(EngineAdapter):
    engine = ENGINE_MYSQL
    extension = 'sql'

    def _connection_args(self):
        return [
            '-h', self.target.host,
            '-P', str(self.target.port),
            '-u', self.target.username,
        ]

    def _env(self):
        # Keeps the password off the command line
        return {'MYSQL_PWD': self.password}

    def dump_command(self):
        args = self._connection_args() + [
            '--single-transaction',
            '--routines',
            '--triggers',
            '--events',
            '--add-drop-database',
            '--databases', self.target.database_name,
            '--verbose',
        ]
        return Command('mysqldump', args, self._env())

    def restore_command(self, clean=False):
        # mysqldump output already carries DROP statements, clean is a no-op
        args = self._connection_args() + [self.target.database_name]
        return Command('mysql', args, self._env())

    def probe_command(self):
        args = self._connection_args() + [
            '--batch',
            '--skip-column-names',
            '-e', 'SELECT VERSION();',
        ]
        return Command('mysql', args, self._env())


_ADAPTERS = {
    ENGINE_POSTGRES: PostgresAdapter,
    ENGINE_MYSQL: MySQLAdapter,
}


def create_adapter(target: DatabaseTarget, password: str, runner: Optional[ProcessRunner] = None) -> EngineAdapter:
    """
    Factory function to create the adapter for a target's engine.

    Raises:
        ConfigurationError: If the engine is not supported
    """
    adapter_class = _ADAPTERS.get(target.engine)
    if adapter_class is None:
        raise ConfigurationError(f"Unsupported database engine: {target.engine}")
    return adapter_class(target, password, runner)
