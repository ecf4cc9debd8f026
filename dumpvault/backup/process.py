"""
Process runner for the database client programs (pg_dump, mysqldump, ...).

Launches a program with asyncio pipes for stdout/stderr (and stdin when
the payload is fed to the program). Exit codes are left to the caller.
"""

import asyncio
import logging
import os
from typing import Dict, List, NamedTuple

logger = logging.getLogger(__name__)


class LaunchError(Exception):
    """Raised when a sub-process cannot be started."""
    pass


class Command(NamedTuple):
    """Program, argument list and environment overrides"""
    program: str
    args: List[str]
    env: Dict[str, str]

    def describe(self) -> str:
        """Command line for logs; environment values are never included."""
        return ' '.join([self.program] + list(self.args))


class ProcessRunner:
    """Starts external programs as asyncio sub-processes."""

    async def launch(self, command: Command, stdin: bool = False) -> asyncio.subprocess.Process:
        """
        Start a program.

        Args:
            command: Command to run
            stdin: Open a pipe to the program's standard input

        Returns:
            asyncio Process with stdout/stderr pipes

        Raises:
            LaunchError: If the program cannot be started
        """
        env = os.environ.copy()
        env.update(command.env)

        logger.debug(f"Starting: {command.describe()}")
        try:
            return await asyncio.create_subprocess_exec(
                command.program,
                *command.args,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (OSError, ValueError) as e:
            raise LaunchError(f"Failed to start {command.program}: {e}") from e


async def run_together(*coros):
    """
    Run coroutines concurrently and return their results in order.

    If one of them fails (or the caller is cancelled), the others are
    cancelled and awaited before the exception propagates, so no reader
    outlives the call.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
