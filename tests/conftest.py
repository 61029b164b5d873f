"""
Pytest configuration and shared fixtures for the dbupgrade tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from dbupgrade.backup_client import Backup, RestorePoint, Workload
from dbupgrade.errors import UnavailableError

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeBackupApp:
    """
    In-memory backup application.

    Jobs are stored by id; each job gets one backup whose restore points are
    controlled through ``restore_points``.
    """

    def __init__(self, jobs: list[Workload] | None = None) -> None:
        self.jobs: dict[str, Workload] = {job.id: job for job in jobs or []}
        self.restore_points: dict[str, list[datetime]] = {}
        self.calls: list[tuple[str, str]] = []
        self.refuse_disable: set[str] = set()
        self.refuse_enable: set[str] = set()
        self.unavailable = False

    def add_job(
        self,
        job_id: str,
        name: str,
        *,
        enabled: bool = True,
        running: bool = False,
        idle: bool = True,
        last_point: datetime | None = None,
    ) -> Workload:
        job = Workload(
            id=job_id,
            name=name,
            schedule_enabled=enabled,
            is_running=running,
            is_idle=idle,
        )
        self.jobs[job_id] = job
        if last_point is not None:
            self.restore_points[job_id] = [last_point]
        return job

    def _check(self) -> None:
        if self.unavailable:
            raise UnavailableError("backup API unreachable")

    def _set_enabled(self, job_id: str, enabled: bool) -> None:
        self.jobs[job_id] = self.jobs[job_id].model_copy(update={"schedule_enabled": enabled})

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[0] in ("disable", "enable")]

    def enabled(self, name: str) -> bool:
        return next(j.schedule_enabled for j in self.jobs.values() if j.name == name)

    async def list_jobs(self) -> list[Workload]:
        self._check()
        self.calls.append(("list_jobs", ""))
        return list(self.jobs.values())

    async def list_backups(self) -> list[Backup]:
        self._check()
        return [
            Backup(id=f"backup-{job_id}", name=f"backup-{job_id}", job_id=job_id)
            for job_id in self.restore_points
        ]

    async def list_restore_points(self, backup: Backup) -> list[RestorePoint]:
        self._check()
        return [
            RestorePoint(id=f"{backup.id}-{i}", creation_time=created)
            for i, created in enumerate(self.restore_points.get(backup.job_id or "", []))
        ]

    async def disable_job(self, job: Workload) -> None:
        self._check()
        self.calls.append(("disable", job.name))
        if job.id in self.refuse_disable:
            raise UnavailableError(f"cannot disable {job.name}")
        self._set_enabled(job.id, False)

    async def enable_job(self, job: Workload) -> None:
        self._check()
        self.calls.append(("enable", job.name))
        if job.id in self.refuse_enable:
            raise UnavailableError(f"cannot enable {job.name}")
        self._set_enabled(job.id, True)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def backup_app() -> FakeBackupApp:
    """Backup application with job A enabled and recently active, job B disabled."""
    app = FakeBackupApp()
    app.add_job("1", "A", enabled=True, last_point=NOW - timedelta(days=1))
    app.add_job("2", "B", enabled=False, last_point=NOW - timedelta(days=2))
    return app
