"""
Tests for the backup application REST client.

Requests are served by httpx.MockTransport, so no network is involved.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest

from dbupgrade.backup_client import Backup, BackupApiClient, Workload
from dbupgrade.errors import UnavailableError

BASE_URL = "https://backup.local:9419/api/v1"


def _client(handler) -> BackupApiClient:
    return BackupApiClient(
        BASE_URL, token="secret", transport=httpx.MockTransport(handler)
    )


class TestWorkloadModel:
    """Tests for the Workload model."""

    def test_parses_api_field_names(self) -> None:
        job = Workload.model_validate(
            {
                "id": "1",
                "name": "Nightly",
                "isScheduleEnabled": True,
                "isRunning": True,
                "isIdle": False,
            }
        )
        assert job.schedule_enabled is True
        assert job.is_active is True

    def test_running_but_idle_is_not_active(self) -> None:
        job = Workload(id="1", name="Cloud", schedule_enabled=True, is_running=True, is_idle=True)
        assert job.is_active is False


class TestBackupApiClient:
    """Tests for BackupApiClient."""

    @pytest.mark.asyncio
    async def test_list_jobs_sends_bearer_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[{"id": "1", "name": "A", "isScheduleEnabled": True}],
            )

        async with _client(handler) as client:
            jobs = await client.list_jobs()

        assert [j.name for j in jobs] == ["A"]
        assert seen[0].url.path == "/api/v1/jobs"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_list_accepts_data_envelope(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"data": [{"id": "b1", "name": "A backup", "jobId": "1"}]}
            )

        async with _client(handler) as client:
            backups = await client.list_backups()

        assert backups == [Backup(id="b1", name="A backup", job_id="1")]

    @pytest.mark.asyncio
    async def test_list_restore_points(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v1/backups/b1/restorePoints"
            return httpx.Response(
                200,
                json=[{"id": "rp1", "creationTime": "2026-02-28T10:00:00Z"}],
            )

        async with _client(handler) as client:
            points = await client.list_restore_points(Backup(id="b1"))

        assert points[0].creation_time == datetime(2026, 2, 28, 10, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_disable_and_enable_post(self) -> None:
        calls: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            return httpx.Response(204)

        job = Workload(id="7", name="A")
        async with _client(handler) as client:
            await client.disable_job(job)
            await client.enable_job(job)

        assert calls == [
            ("POST", "/api/v1/jobs/7/disable"),
            ("POST", "/api/v1/jobs/7/enable"),
        ]

    @pytest.mark.asyncio
    async def test_http_error_status_raises_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        async with _client(handler) as client:
            with pytest.raises(UnavailableError) as exc_info:
                await client.list_jobs()

        assert exc_info.value.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_transport_error_raises_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(UnavailableError):
                await client.list_jobs()

    @pytest.mark.asyncio
    async def test_malformed_payload_raises_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps([{"name": "no id"}]))

        async with _client(handler) as client:
            with pytest.raises(UnavailableError):
                await client.list_jobs()
