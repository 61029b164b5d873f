"""
Tests for the systemctl wrappers.

Tests cover:
- _run_systemctl function
- list_services / running_services pattern matching
- stop_service / start_service
- unit enable/disable/daemon-reload helpers
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dbupgrade.errors import UnavailableError
from dbupgrade.workflow.systemd import (
    _parse_unit_list,
    _run_systemctl,
    disable_unit,
    enable_unit,
    list_services,
    reload_systemd_daemon,
    running_services,
    start_service,
    stop_service,
)

UNIT_LIST = """\
veeamservice.service     loaded active   running Veeam Backup Service
veeamdeployment.service  loaded inactive dead    Veeam Deployment Service
veeamtransport.service   loaded failed   failed  Veeam Transport
postgresql.service       loaded active   exited  PostgreSQL RDBMS
"""

# =============================================================================
# _run_systemctl Tests
# =============================================================================


class TestRunSystemctl:
    """Tests for _run_systemctl function."""

    @pytest.mark.asyncio
    async def test_run_systemctl_success(self) -> None:
        """Test successful systemctl command."""

        async def mock_subprocess(*_args, **_kwargs):
            proc = MagicMock()
            proc.returncode = 0
            proc.communicate = AsyncMock(return_value=(b"active", b""))
            return proc

        with patch("asyncio.create_subprocess_exec", side_effect=mock_subprocess):
            returncode, stdout, stderr = await _run_systemctl("is-active", "veeamservice")

        assert returncode == 0
        assert stdout == "active"
        assert stderr == ""

    @pytest.mark.asyncio
    async def test_run_systemctl_not_found(self) -> None:
        """Test systemctl not found raises UnavailableError."""
        with patch(
            "asyncio.create_subprocess_exec",
            side_effect=FileNotFoundError("systemctl not found"),
        ):
            with pytest.raises(UnavailableError) as exc_info:
                await _run_systemctl("is-active", "veeamservice")

        assert "not available" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_run_systemctl_timeout(self) -> None:
        """Test systemctl timeout raises UnavailableError."""

        async def mock_subprocess(*_args, **_kwargs):
            proc = MagicMock()
            proc.communicate = AsyncMock(side_effect=TimeoutError())
            return proc

        with patch("asyncio.create_subprocess_exec", side_effect=mock_subprocess):
            with pytest.raises(UnavailableError) as exc_info:
                await _run_systemctl("stop", "veeamservice", timeout=0.1)

        assert "timed out" in exc_info.value.message


# =============================================================================
# Service listing
# =============================================================================


class TestListServices:
    """Tests for list_services and running_services."""

    def test_parse_unit_list(self) -> None:
        units = _parse_unit_list(UNIT_LIST)
        assert units["veeamservice.service"] == "active"
        assert units["veeamdeployment.service"] == "inactive"
        assert len(units) == 4

    @pytest.mark.asyncio
    async def test_list_services_filters_by_pattern(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(0, UNIT_LIST, "")),
        ):
            services = await list_services(["veeam*"])

        assert sorted(services) == [
            "veeamdeployment.service",
            "veeamservice.service",
            "veeamtransport.service",
        ]

    @pytest.mark.asyncio
    async def test_running_services_excludes_stopped(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(0, UNIT_LIST, "")),
        ):
            running = await running_services(["veeam*"])

        assert running == ["veeamservice.service"]

    @pytest.mark.asyncio
    async def test_list_services_failure(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(1, "", "Failed to connect to bus")),
        ):
            with pytest.raises(UnavailableError):
                await list_services(["veeam*"])


# =============================================================================
# Start / stop
# =============================================================================


class TestStartStop:
    """Tests for stop_service and start_service."""

    @pytest.mark.asyncio
    async def test_stop_service_success(self) -> None:
        mock_run = AsyncMock(return_value=(0, "", ""))
        with patch("dbupgrade.workflow.systemd._run_systemctl", mock_run):
            assert await stop_service("veeamservice.service") is True

        assert mock_run.call_args.args == ("stop", "veeamservice.service")

    @pytest.mark.asyncio
    async def test_stop_service_failure(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(5, "", "Unit not loaded")),
        ):
            assert await stop_service("veeamservice.service") is False

    @pytest.mark.asyncio
    async def test_start_service_unavailable(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(side_effect=UnavailableError("systemctl not available")),
        ):
            assert await start_service("veeamservice.service") is False


# =============================================================================
# Unit management
# =============================================================================


class TestUnitManagement:
    """Tests for daemon-reload, enable and disable."""

    @pytest.mark.asyncio
    async def test_enable_unit_failure_raises(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(1, "", "No such unit")),
        ):
            with pytest.raises(UnavailableError):
                await enable_unit("dbupgrade-continuation.service")

    @pytest.mark.asyncio
    async def test_reload_daemon(self) -> None:
        mock_run = AsyncMock(return_value=(0, "", ""))
        with patch("dbupgrade.workflow.systemd._run_systemctl", mock_run):
            await reload_systemd_daemon()

        mock_run.assert_awaited_once_with("daemon-reload")

    @pytest.mark.asyncio
    async def test_disable_missing_unit_is_tolerated(self) -> None:
        with patch(
            "dbupgrade.workflow.systemd._run_systemctl",
            AsyncMock(return_value=(1, "", "Unit file does not exist")),
        ):
            await disable_unit("dbupgrade-continuation.service")
