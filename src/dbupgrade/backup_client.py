"""
Backup application API client.

The upgrade workflow depends on the backup application only through the
BackupApplication protocol: list jobs, backups and restore points, and
enable or disable a job. BackupApiClient implements it against the
application's REST API with httpx.

Endpoints (relative to the configured base URL):
- GET  /jobs                              -> jobs
- GET  /backups                           -> backups
- GET  /backups/{backup_id}/restorePoints -> restore points
- POST /jobs/{job_id}/disable
- POST /jobs/{job_id}/enable

List endpoints may return either a bare JSON array or an object with the
items under "data".
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dbupgrade.errors import UnavailableError
from dbupgrade.logging import get_logger

logger = get_logger(__name__)


class Workload(BaseModel):
    """
    A scheduled backup job of the dependent application.

    Some continuous job types report ``is_running`` permanently; ``is_idle``
    tells whether such a job is actually transferring data.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Job identifier")
    name: str = Field(..., description="Job name")
    schedule_enabled: bool = Field(
        default=False,
        alias="isScheduleEnabled",
        description="Whether the job's schedule is enabled",
    )
    is_running: bool = Field(
        default=False,
        alias="isRunning",
        description="Whether the job reports a running session",
    )
    is_idle: bool = Field(
        default=True,
        alias="isIdle",
        description="Whether a running job is idle",
    )

    @property
    def is_active(self) -> bool:
        """True when the job is doing real work, not idling in a running state."""
        return self.is_running and not self.is_idle


class Backup(BaseModel):
    """A backup chain produced by a job."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str = ""
    job_id: str | None = Field(default=None, alias="jobId")


class RestorePoint(BaseModel):
    """A completed checkpoint within a backup chain."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    creation_time: datetime = Field(..., alias="creationTime")


class BackupApplication(Protocol):
    """Operations the workflow needs from the backup application."""

    async def list_jobs(self) -> list[Workload]: ...

    async def list_backups(self) -> list[Backup]: ...

    async def list_restore_points(self, backup: Backup) -> list[RestorePoint]: ...

    async def disable_job(self, job: Workload) -> None: ...

    async def enable_job(self, job: Workload) -> None: ...


class BackupApiClient:
    """
    httpx-based client for the backup application's REST API.

    Use as an async context manager, or call ``aclose()`` when done.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        verify_tls: bool = True,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            verify=verify_tls,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> BackupApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str) -> Any:
        try:
            response = await self._client.request(method, path)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UnavailableError(
                f"Backup API returned {e.response.status_code} for {method} {path}",
                details={
                    "method": method,
                    "path": path,
                    "status_code": e.response.status_code,
                },
            ) from e
        except httpx.HTTPError as e:
            raise UnavailableError(
                f"Backup API request failed: {e}",
                details={"method": method, "path": path},
            ) from e

        if not response.content:
            return None
        return response.json()

    async def _list(self, path: str, model: type[BaseModel]) -> list[Any]:
        payload = await self._request("GET", path)
        items = payload.get("data", []) if isinstance(payload, dict) else payload
        try:
            return [model.model_validate(item) for item in items or []]
        except ValidationError as e:
            raise UnavailableError(
                f"Unexpected response shape from {path}",
                details={"path": path, "errors": e.errors(include_url=False)},
            ) from e

    async def list_jobs(self) -> list[Workload]:
        return await self._list("/jobs", Workload)

    async def list_backups(self) -> list[Backup]:
        return await self._list("/backups", Backup)

    async def list_restore_points(self, backup: Backup) -> list[RestorePoint]:
        return await self._list(f"/backups/{backup.id}/restorePoints", RestorePoint)

    async def disable_job(self, job: Workload) -> None:
        logger.debug("Disabling job", extra={"job": job.name, "job_id": job.id})
        await self._request("POST", f"/jobs/{job.id}/disable")

    async def enable_job(self, job: Workload) -> None:
        logger.debug("Enabling job", extra={"job": job.name, "job_id": job.id})
        await self._request("POST", f"/jobs/{job.id}/enable")
