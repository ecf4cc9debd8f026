"""
Shared pytest fixtures for dumpvault tests.

This module provides fixtures for:
- Flask app with the testing config and in-memory SQLite
- Catalog and secret resolver
- Database targets, schedules and remote store config
- A process runner that runs Python scripts instead of database clients
- Mock fixtures for S3
"""

import os
import sys
import tempfile
import shutil
from datetime import datetime, timedelta

import pytest
import boto3
from moto import mock_aws

from dumpvault import create_app, db as _db
from dumpvault.backup.executor import BackupExecutor
from dumpvault.backup.process import Command, LaunchError, ProcessRunner
from dumpvault.backup.restore import RestoreExecutor
from dumpvault.backup.retention import RetentionEngine
from dumpvault.backup.storage import LocalStorage
from dumpvault.catalog import SQLAlchemyCatalog
from dumpvault.models import (
    DatabaseTarget, RemoteStoreConfig, RetentionPolicy, BackupSchedule, BackupArtifact,
    STATUS_COMPLETED,
)
from dumpvault.utils.crypto import secret_resolver


# Dump program stand-in: 500 INSERT lines on stdout, progress on stderr
DUMP_SCRIPT = """
import sys
sys.stderr.write("dump: reading schemas\\n")
for i in range(500):
    sys.stdout.buffer.write(b"INSERT INTO orders VALUES (%d);\\n" % i)
sys.stdout.flush()
sys.stderr.write("dump: finished\\n")
"""

PROBE_SCRIPT = """
import sys
print(" PostgreSQL 16.2 on x86_64-pc-linux-gnu")
"""


class ScriptedRunner(ProcessRunner):
    """
    Process runner mapping program names to Python scripts.

    Every requested command is recorded in `launched`; programs without a
    script fail to launch like a missing binary would.
    """

    def __init__(self, scripts=None):
        self.scripts = dict(scripts or {})
        self.launched = []

    async def launch(self, command, stdin=False):
        self.launched.append(command)
        script = self.scripts.get(command.program)
        if script is None:
            raise LaunchError(f"Failed to start {command.program}: No such file or directory")
        return await super().launch(Command(sys.executable, ['-c', script], command.env), stdin=stdin)


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing', overrides={
        'BACKUP_STORAGE_PATH': os.path.join(temp_dir, 'backups'),
        'TEMP_DIR': os.path.join(temp_dir, 'temp'),
    })

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def secrets(app):
    """Secret resolver initialized from the testing ENCRYPTION_KEY."""
    return secret_resolver


@pytest.fixture
def catalog(db):
    return SQLAlchemyCatalog()


@pytest.fixture
def dump_payload():
    """Bytes written by DUMP_SCRIPT."""
    return b''.join(b"INSERT INTO orders VALUES (%d);\n" % i for i in range(500))


@pytest.fixture
def scripted_runner():
    return ScriptedRunner({
        'pg_dump': DUMP_SCRIPT,
        'mysqldump': DUMP_SCRIPT,
        'psql': PROBE_SCRIPT,
    })


@pytest.fixture
def local_storage(app):
    return LocalStorage(app.config['BACKUP_STORAGE_PATH'])


@pytest.fixture
def postgres_target(db, secrets):
    """Enabled postgres target; password is 'pg_secret'."""
    target = DatabaseTarget(
        name='orders',
        engine='postgres',
        host='db.internal',
        port=5432,
        database_name='orders',
        username='backup',
        password_encrypted=secrets.encrypt('pg_secret'),
    )
    db.session.add(target)
    db.session.commit()
    return target


@pytest.fixture
def mysql_target(db, secrets):
    """Enabled mysql target; password is 'my_secret'."""
    target = DatabaseTarget(
        name='shop',
        engine='mysql',
        host='mysql.internal',
        port=3306,
        database_name='shop',
        username='root',
        password_encrypted=secrets.encrypt('my_secret'),
    )
    db.session.add(target)
    db.session.commit()
    return target


@pytest.fixture
def remote_config(db, secrets):
    """Default, enabled S3 config for 'test-bucket' with prefix 'backups'."""
    config = RemoteStoreConfig(
        name='primary',
        region='us-east-1',
        bucket='test-bucket',
        access_key_encrypted=secrets.encrypt('testing'),
        secret_key_encrypted=secrets.encrypt('testing'),
        path_prefix='backups',
        enabled=True,
        is_default=True,
    )
    db.session.add(config)
    db.session.commit()
    return config


@pytest.fixture
def hourly_policy(db):
    """Policy keeping 3 hourly and 1 daily backup."""
    policy = RetentionPolicy(id='hourly3', name='Hourly 3', keep_hourly=3, keep_daily=1)
    db.session.add(policy)
    db.session.commit()
    return policy


@pytest.fixture
def hourly_schedule(db, postgres_target, hourly_policy):
    schedule = BackupSchedule(
        id='s1',
        target_id=postgres_target.id,
        kind='hourly',
        cron_expression='0 * * * *',
        enabled=True,
        upload_enabled=False,
        retention_policy_id=hourly_policy.id,
    )
    db.session.add(schedule)
    db.session.commit()
    return schedule


@pytest.fixture
def make_artifact(db):
    """Factory for completed backup records with a given start time."""

    def _make(target, started_at, **fields):
        values = {
            'target_id': target.id,
            'kind': 'hourly',
            'status': STATUS_COMPLETED,
            'started_at': started_at,
            'completed_at': started_at,
            'file_name': f"{target.name}_{started_at:%Y-%m-%d_%H-%M-%S}.dump.gz",
        }
        values.update(fields)
        artifact = BackupArtifact(**values)
        db.session.add(artifact)
        db.session.commit()
        return artifact

    return _make


@pytest.fixture
def backup_executor(catalog, secrets, local_storage, scripted_runner):
    return BackupExecutor(catalog, secrets, local_storage, runner=scripted_runner, chunk_size=1024)


@pytest.fixture
def restore_executor(app, catalog, secrets, scripted_runner):
    return RestoreExecutor(catalog, secrets, app.config['TEMP_DIR'], runner=scripted_runner, chunk_size=1024)


@pytest.fixture
def retention_engine(catalog, secrets, local_storage):
    return RetentionEngine(catalog, secrets, local_storage)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def fixed_clock():
    """Clock returning 2024-03-10 14:30:00 UTC, then advancing 2s per call."""
    state = {'now': datetime(2024, 3, 10, 14, 30, 0)}

    def _clock():
        current = state['now']
        state['now'] = current + timedelta(seconds=2)
        return current

    return _clock
