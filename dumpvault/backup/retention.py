"""
Tiered retention for completed backups.

Each tier (hour, day, week starting Sunday, month, year) groups a target's
completed backups into time buckets; the latest backup of a bucket
represents it. A policy keeps the newest K representatives of every tier
with K > 0, and everything outside the union of those keep-sets is deleted
from local storage, the remote store and the catalog.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from dumpvault.catalog import Catalog, CatalogError
from dumpvault.models import BackupArtifact, PolicySnapshot, DEFAULT_POLICY_ID
from .execution_log import ExecutionLog
from .storage import LocalStorage, S3Gateway, StoreError

logger = logging.getLogger(__name__)


def hour_start(dt: datetime) -> datetime:
    return dt.replace(minute=0, second=0, microsecond=0)


def day_start(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def week_start(dt: datetime) -> datetime:
    # Weeks start on Sunday; weekday() is 0 for Monday
    return day_start(dt) - timedelta(days=(dt.weekday() + 1) % 7)


def month_start(dt: datetime) -> datetime:
    return day_start(dt).replace(day=1)


def year_start(dt: datetime) -> datetime:
    return day_start(dt).replace(month=1, day=1)


# (policy field, bucket function), finest tier first
TIERS = [
    ('keep_hourly', hour_start),
    ('keep_daily', day_start),
    ('keep_weekly', week_start),
    ('keep_monthly', month_start),
    ('keep_yearly', year_start),
]


class RetentionPlan(NamedTuple):
    """Partition of a target's completed backups, newest first"""
    keep: List[BackupArtifact]
    delete: List[BackupArtifact]


def plan_retention(artifacts: List[BackupArtifact], policy: PolicySnapshot) -> RetentionPlan:
    """
    Split completed backups into keep and delete lists.

    Backups are ordered by start time, newest first; equal start times
    fall back to the id, descending. The first backup seen in a bucket
    represents it, and buckets are visited newest first.

    Args:
        artifacts: Completed backups of one target
        policy: Keep counts per tier

    Returns:
        RetentionPlan with both lists in newest-first order
    """
    ordered = sorted(artifacts, key=lambda a: (a.started_at, a.id), reverse=True)
    keep_ids = set()

    for field, bucket_of in TIERS:
        keep_count = getattr(policy, field)
        if keep_count <= 0:
            continue

        representatives = {}
        for artifact in ordered:
            bucket = bucket_of(artifact.started_at)
            if bucket not in representatives:
                representatives[bucket] = artifact

        # dicts keep insertion order, which is newest bucket first here
        for artifact in list(representatives.values())[:keep_count]:
            keep_ids.add(artifact.id)

    keep = [a for a in ordered if a.id in keep_ids]
    delete = [a for a in ordered if a.id not in keep_ids]
    return RetentionPlan(keep, delete)


class RetentionEngine:
    """
    Applies retention policies to targets and deletes backups.

    Storage deletions are best effort: a file or object that cannot be
    removed is logged and the catalog record is deleted anyway.
    """

    def __init__(self, catalog: Catalog, secrets, local_storage: LocalStorage,
                 gateway_factory: Callable = S3Gateway.from_config):
        self.catalog = catalog
        self.secrets = secrets
        self.local_storage = local_storage
        self.gateway_factory = gateway_factory

    def resolve_policy(self, policy_id: Optional[str] = None) -> Optional[PolicySnapshot]:
        """
        Look up a policy snapshot.

        No id means the system 'default' policy. An id that does not
        resolve gives None, without falling back to the default.
        """
        if policy_id is None:
            policy_id = DEFAULT_POLICY_ID

        policy = self.catalog.get_retention_policy(policy_id)
        if policy is None:
            return None
        return policy.snapshot()

    def preview(self, target_id: str, policy_id: Optional[str] = None) -> RetentionPlan:
        """
        Compute what a retention run would keep and delete, without deleting.

        If the policy does not resolve, every backup is listed as kept.
        """
        artifacts = self.catalog.list_completed_backups(target_id)
        policy = self.resolve_policy(policy_id)
        if policy is None:
            return RetentionPlan(list(artifacts), [])
        return plan_retention(artifacts, policy)

    async def apply(self, target_id: str, policy_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Apply a retention policy to a target.

        Never raises.

        Returns:
            {'deleted': int, 'kept': int, 'errors': List[str]}
        """
        result = {'deleted': 0, 'kept': 0, 'errors': []}
        log = ExecutionLog(logger, prefix=f"[retention {target_id}] ")

        try:
            policy = self.resolve_policy(policy_id)
            if policy is None:
                log.warning(f"Retention policy not found: {policy_id}, nothing deleted")
                return result

            artifacts = self.catalog.list_completed_backups(target_id)
            plan = plan_retention(artifacts, policy)
            log.info(f"Policy {policy_id or DEFAULT_POLICY_ID} {tuple(policy)}: "
                     f"{len(plan.keep)} to keep, {len(plan.delete)} to delete")

            gateways = {}
            for artifact in plan.delete:
                try:
                    await self._delete(artifact, gateways, log)
                    result['deleted'] += 1
                except CatalogError as e:
                    error_msg = f"Failed to delete backup record {artifact.id}: {e}"
                    log.error(error_msg)
                    result['errors'].append(error_msg)

            result['kept'] = len(plan.keep)

        except Exception as e:
            error_msg = f"Retention failed for target {target_id}: {e}"
            log.error(error_msg)
            result['errors'].append(error_msg)

        log.info(f"Retention complete. Deleted: {result['deleted']}, kept: {result['kept']}")
        return result

    async def apply_all(self) -> Dict[str, Any]:
        """
        Apply the retention policy of every enabled schedule that has one.

        A target shared by several schedules with the same policy is
        processed once.

        Returns:
            {'processed': int, 'deleted': int, 'kept': int, 'errors': List[str]}
        """
        summary = {'processed': 0, 'deleted': 0, 'kept': 0, 'errors': []}

        try:
            schedules = self.catalog.list_enabled_schedules()
        except CatalogError as e:
            logger.error(f"Retention sweep could not list schedules: {e}")
            summary['errors'].append(str(e))
            return summary

        seen = set()
        for schedule in schedules:
            if not schedule.retention_policy_id:
                continue
            pair = (schedule.target_id, schedule.retention_policy_id)
            if pair in seen:
                continue
            seen.add(pair)

            result = await self.apply(*pair)
            summary['processed'] += 1
            summary['deleted'] += result['deleted']
            summary['kept'] += result['kept']
            summary['errors'].extend(result['errors'])

        logger.info(
            f"Retention sweep complete. "
            f"Processed: {summary['processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    async def delete_backup(self, artifact_id: str) -> bool:
        """
        Delete one backup on request, with the same best-effort storage cleanup.

        Returns:
            False if the backup does not exist

        Raises:
            CatalogError: If the record cannot be read or deleted
        """
        artifact = self.catalog.get_backup(artifact_id)
        if artifact is None:
            return False

        log = ExecutionLog(logger, prefix=f"[delete {artifact_id}] ")
        await self._delete(artifact, {}, log)
        return True

    async def _delete(self, artifact: BackupArtifact, gateways: dict, log: ExecutionLog):
        """Remove local file and remote object (best effort), then the record."""
        if artifact.local_path:
            try:
                await asyncio.to_thread(self.local_storage.delete, artifact.local_path)
                log.debug(f"Deleted local file: {artifact.local_path}")
            except StoreError as e:
                log.warning(f"Failed to delete local file {artifact.local_path}: {e}")

        if artifact.s3_uploaded and artifact.s3_key:
            try:
                gateway = self._gateway(gateways)
                await asyncio.to_thread(gateway.delete, artifact.s3_bucket, artifact.s3_key)
                log.debug(f"Deleted S3 object: {artifact.s3_key}")
            except Exception as e:
                log.warning(f"Failed to delete S3 object {artifact.s3_key}: {e}")

        artifact_id = artifact.id
        self.catalog.delete_backup(artifact_id)
        log.info(f"Deleted backup {artifact_id}")

    def _gateway(self, cache: dict):
        """Gateway for the default remote store, built once per run."""
        if 'gateway' not in cache:
            remote_config = self.catalog.get_default_remote_config()
            if remote_config is None:
                raise StoreError("No default remote store is configured")
            cache['gateway'] = self.gateway_factory(remote_config, self.secrets)
        return cache['gateway']
