import json
import uuid
from datetime import datetime
from typing import NamedTuple
from dumpvault import db


ENGINE_POSTGRES = 'postgres'
ENGINE_MYSQL = 'mysql'

STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'

BACKUP_KINDS = ('hourly', 'daily', 'weekly', 'monthly', 'manual')
SCHEDULE_KINDS = ('hourly', 'daily', 'weekly', 'monthly', 'custom')

DEFAULT_POLICY_ID = 'default'


def _new_id():
    return uuid.uuid4().hex


class DatabaseTarget(db.Model):
    """A configured source database"""
    __tablename__ = 'database_targets'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), unique=True, nullable=False)
    engine = db.Column(db.String(20), nullable=False)  # postgres, mysql
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, nullable=False)
    database_name = db.Column(db.String(255), nullable=False)
    username = db.Column(db.String(255), nullable=False)
    password_encrypted = db.Column(db.Text, nullable=False)
    container_name = db.Column(db.String(255))  # Optional container/host label
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<DatabaseTarget {self.name} engine={self.engine} enabled={self.enabled}>'


class RemoteStoreConfig(db.Model):
    """S3 (or S3-compatible) remote store configuration"""
    __tablename__ = 'remote_store_configs'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    region = db.Column(db.String(50), nullable=False)
    bucket = db.Column(db.String(255), nullable=False)
    access_key_encrypted = db.Column(db.Text, nullable=False)
    secret_key_encrypted = db.Column(db.Text, nullable=False)
    endpoint = db.Column(db.String(500))  # Custom endpoint, path-style addressing
    path_prefix = db.Column(db.String(500), default='', nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<RemoteStoreConfig {self.name} bucket={self.bucket} default={self.is_default}>'


class PolicySnapshot(NamedTuple):
    """Immutable keep-counts of a retention policy, read once per run"""
    keep_hourly: int
    keep_daily: int
    keep_weekly: int
    keep_monthly: int
    keep_yearly: int


class RetentionPolicy(db.Model):
    """Tiered retention policy"""
    __tablename__ = 'retention_policies'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    keep_hourly = db.Column(db.Integer, default=0, nullable=False)
    keep_daily = db.Column(db.Integer, default=0, nullable=False)
    keep_weekly = db.Column(db.Integer, default=0, nullable=False)
    keep_monthly = db.Column(db.Integer, default=0, nullable=False)
    keep_yearly = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def snapshot(self) -> PolicySnapshot:
        return PolicySnapshot(
            keep_hourly=max(self.keep_hourly or 0, 0),
            keep_daily=max(self.keep_daily or 0, 0),
            keep_weekly=max(self.keep_weekly or 0, 0),
            keep_monthly=max(self.keep_monthly or 0, 0),
            keep_yearly=max(self.keep_yearly or 0, 0),
        )

    def __repr__(self):
        return f'<RetentionPolicy {self.id} {self.snapshot()}>'


class BackupSchedule(db.Model):
    """When a target is backed up, and what happens afterwards"""
    __tablename__ = 'backup_schedules'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    target_id = db.Column(db.String(32), db.ForeignKey('database_targets.id'), nullable=False)
    kind = db.Column(db.String(20), nullable=False)  # hourly, daily, weekly, monthly, custom
    cron_expression = db.Column(db.String(100), nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    upload_enabled = db.Column(db.Boolean, default=True, nullable=False)
    retention_policy_id = db.Column(db.String(32), db.ForeignKey('retention_policies.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<BackupSchedule {self.id} kind={self.kind} cron="{self.cron_expression}" enabled={self.enabled}>'


class BackupArtifact(db.Model):
    """One backup attempt and its result"""
    __tablename__ = 'backup_artifacts'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    target_id = db.Column(db.String(32), db.ForeignKey('database_targets.id'), nullable=False)
    schedule_id = db.Column(db.String(32))
    kind = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, completed, failed, cancelled
    file_name = db.Column(db.String(500))
    file_size_bytes = db.Column(db.BigInteger)
    local_path = db.Column(db.String(1000))
    s3_uploaded = db.Column(db.Boolean, default=False, nullable=False)
    s3_bucket = db.Column(db.String(255))
    s3_key = db.Column(db.String(1000))
    s3_uploaded_at = db.Column(db.DateTime)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Integer)
    error_message = db.Column(db.Text)
    error_trace = db.Column(db.Text)
    compression = db.Column(db.String(20))
    checksum = db.Column(db.String(64))  # sha256 of the uncompressed dump
    logs = db.Column(db.Text)  # Execution log

    def __repr__(self):
        return f'<BackupArtifact {self.id} target_id={self.target_id} status={self.status}>'


class RestoreExecution(db.Model):
    """One restore attempt, kept as an audit trail"""
    __tablename__ = 'restore_executions'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    target_id = db.Column(db.String(32), db.ForeignKey('database_targets.id'), nullable=False)
    backup_id = db.Column(db.String(32))
    status = db.Column(db.String(20), nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # local, s3, upload
    source_path = db.Column(db.String(1000))
    s3_bucket = db.Column(db.String(255))
    s3_key = db.Column(db.String(1000))
    restore_options = db.Column(db.Text)  # JSON string
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Integer)
    error_message = db.Column(db.Text)
    error_trace = db.Column(db.Text)
    initiated_by = db.Column(db.String(255))
    logs = db.Column(db.Text)

    @property
    def options(self) -> dict:
        return json.loads(self.restore_options) if self.restore_options else {}

    def __repr__(self):
        return f'<RestoreExecution {self.id} target_id={self.target_id} status={self.status}>'
