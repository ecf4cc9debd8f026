"""
Backup module for dumpvault.

This module handles the core backup functionality including:
- Engine adapters (postgres, mysql)
- Streaming compression and checksums
- Storage (S3 and local)
- Backup and restore execution
- Tiered retention
"""

from .executor import BackupExecutor
from .restore import RestoreExecutor, RestoreOptions, SourceDescriptor
from .engines import create_adapter
from .storage import S3Gateway, LocalStorage
from .retention import RetentionEngine

__all__ = [
    'BackupExecutor',
    'RestoreExecutor',
    'RestoreOptions',
    'SourceDescriptor',
    'create_adapter',
    'S3Gateway',
    'LocalStorage',
    'RetentionEngine'
]
