"""Timestamped per-execution log kept on backup and restore records."""

import logging
from datetime import datetime


class ExecutionLog:
    """
    Collects log lines for one execution.

    Lines are also forwarded to the given logger so they reach the
    application log handlers.
    """

    def __init__(self, logger: logging.Logger, prefix: str = ''):
        self.logger = logger
        self.prefix = prefix
        self.entries = []

    def _add(self, level: int, message: str):
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.entries.append(f"[{timestamp}] {message}")
        self.logger.log(level, f"{self.prefix}{message}")

    def info(self, message: str):
        self._add(logging.INFO, message)

    def debug(self, message: str):
        self._add(logging.DEBUG, message)

    def warning(self, message: str):
        self._add(logging.WARNING, f"Warning: {message}")

    def error(self, message: str):
        self._add(logging.ERROR, message)

    def text(self) -> str:
        return '\n'.join(self.entries)
