"""
Catalog - persistent record store for targets, artifacts, schedules,
retention policies, remote store configs and restore executions.

Executors only talk to the Catalog interface. SQLAlchemyCatalog is the
Flask-SQLAlchemy implementation; each write is committed on its own.
"""

import functools
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from dumpvault import db
from dumpvault.models import (
    DatabaseTarget, RemoteStoreConfig, RetentionPolicy, BackupSchedule,
    BackupArtifact, RestoreExecution, STATUS_RUNNING, STATUS_COMPLETED,
)


class CatalogError(Exception):
    """Raised when a catalog read or write fails."""
    pass


class Catalog(ABC):
    """Record store consumed by the executors and the coordinator."""

    @abstractmethod
    def get_target(self, target_id: str) -> Optional[DatabaseTarget]:
        pass

    @abstractmethod
    def create_backup(self, target_id: str, kind: str, started_at: datetime,
                      schedule_id: Optional[str] = None) -> BackupArtifact:
        pass

    @abstractmethod
    def finish_backup(self, artifact: BackupArtifact, **fields) -> BackupArtifact:
        pass

    @abstractmethod
    def get_backup(self, artifact_id: str) -> Optional[BackupArtifact]:
        pass

    @abstractmethod
    def list_completed_backups(self, target_id: str) -> List[BackupArtifact]:
        pass

    @abstractmethod
    def delete_backup(self, artifact_id: str):
        pass

    @abstractmethod
    def create_restore(self, target_id: str, source: dict, options: dict, started_at: datetime,
                       initiated_by: Optional[str] = None,
                       backup_id: Optional[str] = None) -> RestoreExecution:
        pass

    @abstractmethod
    def finish_restore(self, execution: RestoreExecution, **fields) -> RestoreExecution:
        pass

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> Optional[BackupSchedule]:
        pass

    @abstractmethod
    def list_enabled_schedules(self) -> List[BackupSchedule]:
        pass

    @abstractmethod
    def get_retention_policy(self, policy_id: str) -> Optional[RetentionPolicy]:
        pass

    @abstractmethod
    def get_default_remote_config(self) -> Optional[RemoteStoreConfig]:
        pass

    @abstractmethod
    def release(self, record):
        """Load and detach a record so it stays readable once the session is closed."""
        pass


def _catalog_operation(func):
    """Roll back the session and raise CatalogError on database failures."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise CatalogError(f"Catalog {func.__name__} failed: {e}") from e

    return wrapper


class SQLAlchemyCatalog(Catalog):
    """Catalog backed by the application's Flask-SQLAlchemy session."""

    @_catalog_operation
    def get_target(self, target_id):
        return db.session.get(DatabaseTarget, target_id)

    @_catalog_operation
    def create_backup(self, target_id, kind, started_at, schedule_id=None):
        artifact = BackupArtifact(
            target_id=target_id,
            schedule_id=schedule_id,
            kind=kind,
            status=STATUS_RUNNING,
            started_at=started_at,
        )
        db.session.add(artifact)
        db.session.commit()
        return artifact

    @_catalog_operation
    def finish_backup(self, artifact, **fields):
        for name, value in fields.items():
            setattr(artifact, name, value)
        db.session.commit()
        return artifact

    @_catalog_operation
    def get_backup(self, artifact_id):
        return db.session.get(BackupArtifact, artifact_id)

    @_catalog_operation
    def list_completed_backups(self, target_id):
        return (
            BackupArtifact.query
            .filter_by(target_id=target_id, status=STATUS_COMPLETED)
            .order_by(BackupArtifact.started_at.desc(), BackupArtifact.id.desc())
            .all()
        )

    @_catalog_operation
    def delete_backup(self, artifact_id):
        artifact = db.session.get(BackupArtifact, artifact_id)
        if artifact is not None:
            db.session.delete(artifact)
            db.session.commit()

    @_catalog_operation
    def create_restore(self, target_id, source, options, started_at, initiated_by=None, backup_id=None):
        execution = RestoreExecution(
            target_id=target_id,
            backup_id=backup_id,
            status=STATUS_RUNNING,
            source_type=source.get('type'),
            source_path=source.get('path'),
            s3_bucket=source.get('bucket'),
            s3_key=source.get('key'),
            restore_options=json.dumps(options),
            started_at=started_at,
            initiated_by=initiated_by,
        )
        db.session.add(execution)
        db.session.commit()
        return execution

    @_catalog_operation
    def finish_restore(self, execution, **fields):
        for name, value in fields.items():
            setattr(execution, name, value)
        db.session.commit()
        return execution

    @_catalog_operation
    def get_schedule(self, schedule_id):
        return db.session.get(BackupSchedule, schedule_id)

    @_catalog_operation
    def list_enabled_schedules(self):
        return BackupSchedule.query.filter_by(enabled=True).all()

    @_catalog_operation
    def get_retention_policy(self, policy_id):
        return db.session.get(RetentionPolicy, policy_id)

    @_catalog_operation
    def get_default_remote_config(self):
        return RemoteStoreConfig.query.filter_by(enabled=True, is_default=True).first()

    @_catalog_operation
    def release(self, record):
        db.session.refresh(record)
        db.session.expunge(record)
        return record
