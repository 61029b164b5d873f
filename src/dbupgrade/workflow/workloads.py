"""
Pausing and resuming the backup workloads that depend on the database.

Candidates are jobs whose schedule is enabled and which produced a restore
point within the recency window, so retired jobs are never toggled. The
candidate set is captured once per run and is the only set this run ever
re-enables.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta

from dbupgrade.backup_client import BackupApplication, Workload
from dbupgrade.errors import ExternalStateConflict, UpgradeError
from dbupgrade.logging import get_logger

logger = get_logger(__name__)


def has_active_work(workloads: Iterable[Workload]) -> bool:
    """
    Return True if any workload is doing real work.

    A workload that reports running but idle (continuous job types) does not
    count as active.
    """
    return any(w.is_running and not w.is_idle for w in workloads)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class DependentWorkloadController:
    """
    Enumerates, disables and re-enables dependent backup workloads.

    Attributes:
        backup_app: The backup application collaborator.
        recency_days: Restore point recency window; 0 disables the filter.
    """

    DEFAULT_RECENCY_DAYS = 14

    def __init__(
        self,
        backup_app: BackupApplication,
        recency_days: int = DEFAULT_RECENCY_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backup_app = backup_app
        self.recency_days = recency_days
        self._clock = clock or (lambda: datetime.now(UTC))

    async def list_candidate_workloads(self) -> tuple[Workload, ...]:
        """
        List workloads that must be paused for the upgrade.

        Returns:
            Schedule-enabled workloads that, when the recency filter is on,
            have a restore point newer than ``recency_days`` days.
        """
        enabled = [job for job in await self.backup_app.list_jobs() if job.schedule_enabled]
        if not enabled or self.recency_days <= 0:
            return tuple(enabled)

        cutoff = self._clock() - timedelta(days=self.recency_days)
        recent_job_ids: set[str] = set()
        for backup in await self.backup_app.list_backups():
            if backup.job_id is None or backup.job_id in recent_job_ids:
                continue
            points = await self.backup_app.list_restore_points(backup)
            if any(_aware(p.creation_time) >= cutoff for p in points):
                recent_job_ids.add(backup.job_id)

        candidates = tuple(job for job in enabled if job.id in recent_job_ids)
        stale = [job.name for job in enabled if job.id not in recent_job_ids]
        if stale:
            logger.info(
                f"Ignoring {len(stale)} enabled workload(s) without a restore point "
                f"in the last {self.recency_days} days",
                extra={"workloads": stale},
            )
        return candidates

    async def _current_state(self) -> dict[str, Workload]:
        return {job.id: job for job in await self.backup_app.list_jobs()}

    async def disable_all(self, workloads: Sequence[Workload]) -> None:
        """
        Disable every workload, then verify none remains enabled.

        Raises:
            ExternalStateConflict: If any workload is still enabled afterwards.
        """
        for job in workloads:
            try:
                await self.backup_app.disable_job(job)
                logger.info(f"Disabled workload: {job.name}")
            except UpgradeError as e:
                logger.warning(
                    f"Failed to disable workload {job.name}: {e.message}",
                    extra={"workload": job.name},
                )

        state = await self._current_state()
        still_enabled = [
            job.name
            for job in workloads
            if job.id in state and state[job.id].schedule_enabled
        ]
        if still_enabled:
            raise ExternalStateConflict(
                f"{len(still_enabled)} workload(s) are still enabled after disabling",
                details={"workloads": still_enabled},
            )

    async def enable_all(self, workloads: Sequence[Workload]) -> dict[str, bool]:
        """
        Re-enable every workload and report the outcome per workload.

        Failures are logged and never raised, so one bad workload does not
        stop the others from being restored.

        Returns:
            Mapping of workload name to whether it is enabled afterwards.
        """
        for job in workloads:
            try:
                await self.backup_app.enable_job(job)
            except UpgradeError as e:
                logger.warning(
                    f"Enable request failed for workload {job.name}: {e.message}",
                    extra={"workload": job.name},
                )

        try:
            state = await self._current_state()
        except UpgradeError as e:
            logger.error(f"Could not verify re-enabled workloads: {e.message}")
            return {job.name: False for job in workloads}

        results: dict[str, bool] = {}
        for job in workloads:
            ok = job.id in state and state[job.id].schedule_enabled
            results[job.name] = ok
            if ok:
                logger.info(f"Re-enabled workload: {job.name}")
            else:
                logger.error(
                    f"Workload {job.name} is not enabled; enable it manually",
                    extra={"workload": job.name},
                )

        failed = [name for name, ok in results.items() if not ok]
        if failed:
            logger.warning(
                f"{len(failed)} of {len(results)} workload(s) could not be re-enabled",
                extra={"workloads": failed},
            )
        return results

    async def enable_by_names(self, names: Sequence[str]) -> dict[str, bool]:
        """
        Re-enable workloads identified by name.

        Names that no longer exist in the backup application are reported as
        failures.
        """
        jobs = {job.name: job for job in await self.backup_app.list_jobs()}
        missing = [name for name in names if name not in jobs]
        for name in missing:
            logger.error(f"Workload {name} no longer exists; nothing to re-enable")

        results = await self.enable_all([jobs[name] for name in names if name in jobs])
        results.update({name: False for name in missing})
        return results
