"""
Schedule coordinator for dumpvault.

Manages:
- One cron job per enabled backup schedule (install / uninstall / reload)
- Per-target overlap control for scheduled and manual backups
- Retention after successful scheduled backups, plus a daily sweep
"""

import asyncio
import logging
from contextlib import asynccontextmanager, nullcontext
from typing import Dict, NamedTuple, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dumpvault.backup.executor import BackupExecutor
from dumpvault.backup.restore import RestoreExecutor
from dumpvault.backup.retention import RetentionEngine
from dumpvault.backup.storage import LocalStorage
from dumpvault.catalog import Catalog, CatalogError, SQLAlchemyCatalog
from dumpvault.models import BackupSchedule, STATUS_COMPLETED

logger = logging.getLogger(__name__)

OVERLAP_ALLOW = 'allow'
OVERLAP_REJECT = 'reject'
OVERLAP_QUEUE = 'queue'
OVERLAP_POLICIES = (OVERLAP_ALLOW, OVERLAP_REJECT, OVERLAP_QUEUE)

RETENTION_SWEEP_JOB_ID = 'retention_sweep'

JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple pending instances into one
    'max_instances': 1,  # Only one instance of a job at a time
    'misfire_grace_time': 300  # 5 minutes grace period for misfires
}


class TargetBusyError(Exception):
    """Raised when a backup is rejected because the target is already busy."""
    pass


class TargetLocks:
    """
    Per-target overlap guard.

    Policies:
    - allow: no exclusion
    - reject: raise TargetBusyError while another backup of the target runs
    - queue: wait for the running backup to finish
    """

    def __init__(self, policy: str = OVERLAP_REJECT):
        if policy not in OVERLAP_POLICIES:
            raise ValueError(f"Invalid overlap policy: {policy}. Must be one of {', '.join(OVERLAP_POLICIES)}")
        self.policy = policy
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_busy(self, target_id: str) -> bool:
        lock = self._locks.get(target_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, target_id: str):
        if self.policy == OVERLAP_ALLOW:
            yield
            return

        lock = self._locks.setdefault(target_id, asyncio.Lock())
        if self.policy == OVERLAP_REJECT and lock.locked():
            raise TargetBusyError(f"A backup of target {target_id} is already running")

        async with lock:
            yield


class _Installed(NamedTuple):
    job_id: str
    cron_expression: str


class ScheduleCoordinator:
    """
    Owns the cron jobs of every installed schedule.

    The registry maps schedule ids to installed jobs; it is filled by
    initialize_all() and install(), and emptied by shutdown().
    """

    def __init__(self, scheduler: AsyncIOScheduler, catalog: Catalog,
                 backup_executor: BackupExecutor, retention_engine: RetentionEngine,
                 locks: Optional[TargetLocks] = None, app=None, timezone: str = 'UTC',
                 retention_sweep_cron: Optional[str] = None):
        """
        Args:
            scheduler: APScheduler instance jobs are added to
            catalog: Record store
            backup_executor: Runs backups
            retention_engine: Applies retention after backups
            locks: Per-target overlap guard (default: reject overlaps)
            app: Flask app whose context wraps every job run
            timezone: Timezone cron expressions are evaluated in
            retention_sweep_cron: Crontab of the all-targets retention sweep (None: disabled)
        """
        self.scheduler = scheduler
        self.catalog = catalog
        self.backup_executor = backup_executor
        self.retention_engine = retention_engine
        self.locks = locks or TargetLocks()
        self.app = app
        self.timezone = timezone
        self.retention_sweep_cron = retention_sweep_cron
        self._installed: Dict[str, _Installed] = {}

    @staticmethod
    def job_id_for(schedule_id: str) -> str:
        return f"backup_{schedule_id}"

    def _app_context(self):
        return self.app.app_context() if self.app is not None else nullcontext()

    def installed(self) -> Dict[str, str]:
        """Installed schedule ids mapped to their cron expressions."""
        return {schedule_id: entry.cron_expression for schedule_id, entry in self._installed.items()}

    def start(self):
        """Start the scheduler and add the retention sweep job."""
        if self.retention_sweep_cron:
            try:
                self.scheduler.add_job(
                    func=self.run_retention_sweep,
                    trigger=CronTrigger.from_crontab(self.retention_sweep_cron, timezone=self.timezone),
                    id=RETENTION_SWEEP_JOB_ID,
                    name='Retention Sweep',
                    replace_existing=True
                )
            except ValueError as e:
                logger.error(f"Invalid retention sweep cron '{self.retention_sweep_cron}': {e}")

        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Scheduler started ({len(self._installed)} backup schedules installed)")

    def shutdown(self):
        """Remove every installed job and stop the scheduler."""
        for schedule_id in list(self._installed):
            self.uninstall(schedule_id)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def install(self, schedule: BackupSchedule) -> bool:
        """
        Install (or replace) the cron job of a schedule.

        An invalid cron expression is logged and nothing changes, so a
        previously installed job for the schedule stays in place.

        Returns:
            True if the job was installed
        """
        try:
            trigger = CronTrigger.from_crontab(schedule.cron_expression, timezone=self.timezone)
        except ValueError as e:
            logger.error(f"Invalid cron expression for schedule {schedule.id} "
                         f"('{schedule.cron_expression}'): {e}")
            return False

        self.uninstall(schedule.id)

        job_id = self.job_id_for(schedule.id)
        self.scheduler.add_job(
            func=self.fire,
            args=[schedule.id],
            trigger=trigger,
            id=job_id,
            name=f"Backup: {schedule.kind} schedule {schedule.id}",
            replace_existing=True
        )
        self._installed[schedule.id] = _Installed(job_id, schedule.cron_expression)

        logger.info(f"Installed schedule {schedule.id} ({schedule.cron_expression})")
        return True

    def uninstall(self, schedule_id: str):
        """Remove the job of a schedule; no-op if it is not installed."""
        entry = self._installed.pop(schedule_id, None)
        if entry is None:
            return

        if self.scheduler.get_job(entry.job_id) is not None:
            self.scheduler.remove_job(entry.job_id)
        logger.info(f"Uninstalled schedule {schedule_id}")

    def reload(self, schedule_id: str):
        """Re-read a schedule from the catalog after it was edited."""
        schedule = self.catalog.get_schedule(schedule_id)
        if schedule is not None and schedule.enabled:
            self.install(schedule)
        else:
            self.uninstall(schedule_id)

    def initialize_all(self) -> int:
        """
        Replace every installed job with the enabled schedules of the catalog.

        Returns:
            Number of schedules installed
        """
        for schedule_id in list(self._installed):
            self.uninstall(schedule_id)

        count = 0
        for schedule in self.catalog.list_enabled_schedules():
            try:
                if self.install(schedule):
                    count += 1
            except Exception as e:
                logger.error(f"Failed to install schedule {schedule.id}: {e}")

        logger.info(f"Installed {count} backup schedules")
        return count

    async def fire(self, schedule_id: str):
        """
        Run one scheduled backup, then its retention policy.

        Returns:
            The BackupArtifact, detached from the session, or None if
            nothing ran
        """
        with self._app_context():
            artifact = await self._fire(schedule_id)
            return self._release(artifact)

    async def _fire(self, schedule_id: str):
        schedule = self.catalog.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            logger.warning(f"Schedule {schedule_id} is missing or disabled, skipping")
            return None

        target = self.catalog.get_target(schedule.target_id)
        if target is None or not target.enabled:
            logger.warning(f"Target {schedule.target_id} of schedule {schedule_id} "
                           f"is missing or disabled, skipping")
            return None

        kind = 'manual' if schedule.kind == 'custom' else schedule.kind
        logger.info(f"Scheduler executing {kind} backup of {target.name} (schedule {schedule_id})")

        try:
            artifact = await self._run_backup(target, kind, schedule.upload_enabled, schedule.id)
        except TargetBusyError as e:
            logger.warning(f"Scheduled backup skipped: {e}")
            return None

        if artifact is None or artifact.status != STATUS_COMPLETED:
            error = artifact.error_message if artifact is not None else 'not recorded'
            logger.error(f"Scheduled backup of {target.name} failed: {error}")
            return artifact

        if schedule.retention_policy_id:
            result = await self.retention_engine.apply(target.id, schedule.retention_policy_id)
            logger.info(f"Retention for {target.name}: deleted {result['deleted']}, kept {result['kept']}")

        return artifact

    def _release(self, artifact):
        """Detach the record so callers can read it after the app context is gone."""
        if artifact is None:
            return None
        try:
            return self.catalog.release(artifact)
        except CatalogError as e:
            logger.error(f"Failed to load backup {artifact.id}: {e}")
            return artifact

    async def trigger_backup_now(self, target_id: str, upload_enabled: bool = True):
        """
        Run a manual backup of a target right away.

        Raises:
            ValueError: If the target does not exist
            TargetBusyError: If the overlap policy rejects the backup
        """
        with self._app_context():
            target = self.catalog.get_target(target_id)
            if target is None:
                raise ValueError(f"Database target not found: {target_id}")

            logger.info(f"Manually triggered backup of {target.name}")
            artifact = await self._run_backup(target, 'manual', upload_enabled, None)
            return self._release(artifact)

    async def run_retention_sweep(self):
        with self._app_context():
            return await self.retention_engine.apply_all()

    async def _run_backup(self, target, kind, upload_enabled, schedule_id):
        async with self.locks.hold(target.id):
            return await self.backup_executor.run(target, kind, upload_enabled, schedule_id)

    def get_scheduled_jobs(self) -> list:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []

        for job in self.scheduler.get_jobs():
            next_run_time = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run_time.isoformat() if next_run_time else None,
                'trigger': str(job.trigger)
            })

        return jobs


def build_coordinator(app, runner=None) -> ScheduleCoordinator:
    """
    Wire the executors and coordinator from application config.

    Args:
        app: Flask app created by create_app()
        runner: Optional process runner shared by the executors
    """
    from dumpvault.utils.crypto import secret_resolver

    config = app.config
    catalog = SQLAlchemyCatalog()
    local_storage = LocalStorage(config['BACKUP_STORAGE_PATH'])

    backup_executor = BackupExecutor(
        catalog, secret_resolver, local_storage,
        runner=runner, chunk_size=config['STREAM_CHUNK_SIZE'],
    )
    retention_engine = RetentionEngine(catalog, secret_resolver, local_storage)

    scheduler = AsyncIOScheduler(job_defaults=JOB_DEFAULTS, timezone=config['SCHEDULER_TIMEZONE'])

    return ScheduleCoordinator(
        scheduler, catalog, backup_executor, retention_engine,
        locks=TargetLocks(config['TARGET_OVERLAP_POLICY']),
        app=app,
        timezone=config['SCHEDULER_TIMEZONE'],
        retention_sweep_cron=config.get('RETENTION_SWEEP_CRON') or None,
    )


def build_restore_executor(app, runner=None) -> RestoreExecutor:
    """Restore executor wired from application config."""
    from dumpvault.utils.crypto import secret_resolver

    return RestoreExecutor(
        SQLAlchemyCatalog(), secret_resolver, app.config['TEMP_DIR'],
        runner=runner, chunk_size=app.config['STREAM_CHUNK_SIZE'],
    )
