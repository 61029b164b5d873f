"""
Thin async wrappers around systemctl.

Used to enumerate, stop and start the dependent application's services,
to register the one-shot continuation unit, and to reboot the machine.
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections.abc import Iterable

from dbupgrade.errors import UnavailableError
from dbupgrade.logging import get_logger

logger = get_logger(__name__)

# Default timeout for systemctl commands
SYSTEMCTL_TIMEOUT = 30.0


async def _run_systemctl(
    *args: str,
    timeout: float = SYSTEMCTL_TIMEOUT,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or times out.
    """
    logger.debug("Running systemctl command", extra={"systemctl_args": list(args)})
    try:
        proc = await asyncio.create_subprocess_exec(
            "systemctl",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )

        return (
            proc.returncode or 0,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    except FileNotFoundError as exc:
        raise UnavailableError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc
    except TimeoutError as exc:
        raise UnavailableError(
            f"systemctl command timed out after {timeout}s",
            details={"args": list(args)},
        ) from exc


def _parse_unit_list(output: str) -> dict[str, str]:
    """
    Parse ``systemctl list-units --plain --no-legend`` output.

    Returns:
        Mapping of unit name to its ACTIVE state ("active", "inactive", ...).
    """
    units: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.split()
        # UNIT LOAD ACTIVE SUB DESCRIPTION...
        if len(parts) >= 3 and parts[0].endswith(".service"):
            units[parts[0]] = parts[2].lower()
    return units


def _matches(unit: str, patterns: Iterable[str]) -> bool:
    base = unit.removesuffix(".service")
    return any(
        fnmatch.fnmatch(unit, pattern) or fnmatch.fnmatch(base, pattern)
        for pattern in patterns
    )


async def list_services(patterns: Iterable[str]) -> dict[str, str]:
    """
    List services whose unit name matches any of the patterns.

    Args:
        patterns: fnmatch patterns, matched with and without ".service".

    Returns:
        Mapping of unit name to ACTIVE state.

    Raises:
        UnavailableError: If systemctl cannot be run or fails.
    """
    patterns = list(patterns)
    returncode, stdout, stderr = await _run_systemctl(
        "list-units", "--type=service", "--all", "--plain", "--no-legend"
    )
    if returncode != 0:
        raise UnavailableError(
            f"Failed to list services: {stderr or stdout}",
            details={"returncode": returncode},
        )
    return {
        unit: state
        for unit, state in _parse_unit_list(stdout).items()
        if _matches(unit, patterns)
    }


async def running_services(patterns: Iterable[str]) -> list[str]:
    """Names of matching services that are not fully stopped."""
    services = await list_services(patterns)
    return sorted(
        unit for unit, state in services.items() if state not in ("inactive", "failed")
    )


async def stop_service(
    service_name: str,
    timeout: float = SYSTEMCTL_TIMEOUT,
) -> bool:
    """
    Stop a systemd service.

    Returns:
        True if stop succeeded, False otherwise.
    """
    logger.info(f"Stopping service: {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "stop", service_name, timeout=timeout
        )
    except UnavailableError as e:
        logger.error(f"Service stop failed: {e.message}")
        return False

    if returncode != 0:
        logger.error(f"Service stop failed: {stderr or stdout}")
        return False

    logger.info(f"Service {service_name} stopped")
    return True


async def start_service(
    service_name: str,
    timeout: float = SYSTEMCTL_TIMEOUT,
) -> bool:
    """
    Start a systemd service.

    Returns:
        True if start succeeded, False otherwise.
    """
    logger.info(f"Starting service: {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "start", service_name, timeout=timeout
        )
    except UnavailableError as e:
        logger.error(f"Service start failed: {e.message}")
        return False

    if returncode != 0:
        logger.error(f"Service start failed: {stderr or stdout}")
        return False

    logger.info(f"Service {service_name} started")
    return True


async def _checked(*args: str) -> None:
    returncode, stdout, stderr = await _run_systemctl(*args)
    if returncode != 0:
        raise UnavailableError(
            f"systemctl {' '.join(args)} failed: {stderr or stdout}",
            details={"args": list(args), "returncode": returncode},
        )


async def reload_systemd_daemon() -> None:
    """Reload unit files (daemon-reload)."""
    await _checked("daemon-reload")


async def enable_unit(unit_name: str) -> None:
    """Enable a unit so it runs at next boot."""
    await _checked("enable", unit_name)


async def disable_unit(unit_name: str) -> None:
    """Disable a unit; missing units are not an error."""
    returncode, stdout, stderr = await _run_systemctl("disable", unit_name)
    if returncode != 0:
        logger.debug(
            f"systemctl disable {unit_name} returned {returncode}: {stderr or stdout}"
        )


async def reboot() -> None:
    """Reboot the machine."""
    logger.warning("Rebooting system")
    await _checked("reboot")
