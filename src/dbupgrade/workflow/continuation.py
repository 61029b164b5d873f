"""
Post-reboot continuation.

When the upgrade ends in a reboot, the workloads paused by the run are
re-enabled at next boot by a one-shot systemd unit. The unit has a fixed
name, so at most one continuation can be pending; registering again
replaces it. The unit runs ``python -m dbupgrade resume`` with the workload
names as explicit arguments, then removes itself.

The run's effective settings (backup API endpoint and token, unit name,
logging) are written next to the unit as a root-only environment file, and
the YAML file the run was loaded from is passed with ``--config``, so the
boot-time resume sees the same configuration as the run that scheduled it.
"""

from __future__ import annotations

import asyncio
import io
import os
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Protocol, TextIO

from pydantic import BaseModel, ConfigDict, Field

from dbupgrade.errors import UnavailableError
from dbupgrade.logging import get_logger
from dbupgrade.workflow import systemd
from dbupgrade.workflow.workloads import DependentWorkloadController

logger = get_logger(__name__)

DEFAULT_UNIT_NAME = "dbupgrade-continuation.service"
DEFAULT_UNIT_DIR = "/etc/systemd/system"
DEFAULT_GRACE_SECONDS = 300.0
DEFAULT_COUNTDOWN_SECONDS = 15
ENVIRONMENT_FILE_MODE = 0o600


class PendingContinuation(BaseModel):
    """Work deferred to the next boot."""

    model_config = ConfigDict(frozen=True)

    workload_names: tuple[str, ...] = Field(
        ..., description="Workloads to re-enable after boot"
    )
    log_path: str = Field(..., description="Log file the resume run appends to")
    grace_seconds: float = Field(
        default=DEFAULT_GRACE_SECONDS,
        ge=0,
        description="Delay before re-enabling, so services can come up",
    )
    config_path: str | None = Field(
        default=None, description="YAML config passed to resume with --config"
    )
    environment_file: str | None = Field(
        default=None, description="Environment file loaded by the unit"
    )


def quote_exec_arg(value: str) -> str:
    """Quote one argument for a systemd ExecStart line."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("%", "%%")
        .replace("$", "$$")
    )
    return f'"{escaped}"'


def quote_environment_value(value: str) -> str:
    """Quote one value for a systemd EnvironmentFile line."""
    if "\n" in value or "\r" in value:
        raise ValueError("environment values cannot contain line breaks")
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )
    return f'"{escaped}"'


def render_environment_file(environment: Mapping[str, str]) -> str:
    return "".join(
        f"{key}={quote_environment_value(value)}\n"
        for key, value in sorted(environment.items())
    )


def _write_private(path: Path, text: str) -> None:
    """Write a file readable by root only, tightening an existing file's mode."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, ENVIRONMENT_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        os.fchmod(f.fileno(), ENVIRONMENT_FILE_MODE)
        f.write(text)


class ContinuationScheduler:
    """
    Registers, runs and removes the post-reboot continuation unit.

    Attributes:
        unit_name: Fixed unit name.
        unit_dir: Directory the unit file is written to.
        environment_file: Root-only file with the run's settings.
        python_executable: Interpreter used in ExecStart.
        grace_seconds: Delay before the resume step re-enables workloads.
    """

    def __init__(
        self,
        unit_name: str = DEFAULT_UNIT_NAME,
        unit_dir: Path | str = DEFAULT_UNIT_DIR,
        *,
        environment_file: Path | str | None = None,
        python_executable: str | None = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.unit_name = unit_name
        self.unit_dir = Path(unit_dir)
        if environment_file is None:
            environment_file = self.unit_dir / f"{Path(unit_name).stem}.env"
        self.environment_file = Path(environment_file)
        self.python_executable = python_executable or sys.executable
        self.grace_seconds = grace_seconds
        self._sleep = sleep

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.unit_name

    def render_unit(self, continuation: PendingContinuation) -> str:
        """Render the unit file text for a pending continuation."""
        command = [self.python_executable, "-m", "dbupgrade"]
        if continuation.config_path:
            command.extend(["--config", continuation.config_path])
        command.append("resume")
        for name in continuation.workload_names:
            command.extend(["--workload", name])
        command.extend(["--log-file", continuation.log_path])
        exec_start = " ".join(quote_exec_arg(arg) for arg in command)

        environment_line = ""
        if continuation.environment_file:
            environment_line = f"EnvironmentFile={continuation.environment_file}\n"

        return (
            "[Unit]\n"
            "Description=Re-enable backup workloads after database upgrade\n"
            "Wants=network-online.target\n"
            "After=network-online.target\n"
            "\n"
            "[Service]\n"
            "Type=oneshot\n"
            "User=root\n"
            f"Environment=DBUPGRADE_CONTINUATION__GRACE_SECONDS={continuation.grace_seconds:g}\n"
            f"{environment_line}"
            f"ExecStart={exec_start}\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def is_registered(self) -> bool:
        return self.unit_path.is_file()

    def _remove_files(self) -> None:
        self.unit_path.unlink(missing_ok=True)
        self.environment_file.unlink(missing_ok=True)

    async def register(
        self,
        workload_names: Sequence[str],
        log_path: Path | str,
        *,
        config_path: Path | str | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> PendingContinuation:
        """
        Write and enable the continuation unit, replacing any existing one.

        Args:
            workload_names: Workloads to re-enable after boot.
            log_path: Log file the resume run appends to.
            config_path: YAML config the resume run loads.
            environment: Settings exported to the resume run through a
                root-only environment file.

        Raises:
            UnavailableError: If the unit cannot be written or enabled.
        """
        continuation = PendingContinuation(
            workload_names=tuple(workload_names),
            log_path=str(log_path),
            grace_seconds=self.grace_seconds,
            config_path=str(config_path) if config_path else None,
            environment_file=str(self.environment_file) if environment else None,
        )
        if self.is_registered():
            logger.info("Replacing existing continuation unit", extra={"unit": self.unit_name})

        try:
            self.unit_dir.mkdir(parents=True, exist_ok=True)
            if environment:
                self.environment_file.parent.mkdir(parents=True, exist_ok=True)
                _write_private(self.environment_file, render_environment_file(environment))
            else:
                self.environment_file.unlink(missing_ok=True)
            self.unit_path.write_text(self.render_unit(continuation), encoding="utf-8")
        except (OSError, ValueError) as e:
            self._remove_files()
            raise UnavailableError(
                f"Failed to write continuation unit: {e}",
                details={"path": str(self.unit_path)},
            ) from e

        try:
            await systemd.reload_systemd_daemon()
            await systemd.enable_unit(self.unit_name)
        except UnavailableError:
            # A unit that is not enabled must not linger on disk
            self._remove_files()
            raise
        logger.info(
            f"Registered continuation for {len(continuation.workload_names)} workload(s)",
            extra={"unit": self.unit_name, "workloads": list(continuation.workload_names)},
        )
        return continuation

    async def unregister(self) -> bool:
        """
        Disable and delete the continuation unit. Safe to call repeatedly.

        Returns:
            True if a unit file was removed.
        """
        await systemd.disable_unit(self.unit_name)
        existed = self.is_registered()
        self._remove_files()
        await systemd.reload_systemd_daemon()
        if existed:
            logger.info("Removed continuation unit", extra={"unit": self.unit_name})
        return existed

    async def resume(
        self,
        workload_names: Sequence[str],
        workloads: DependentWorkloadController,
    ) -> dict[str, bool]:
        """
        Boot-time continuation: wait, re-enable the named workloads, remove the unit.

        Returns:
            Mapping of workload name to whether it is enabled afterwards.
        """
        logger.info(
            f"Continuation started; waiting {self.grace_seconds:g}s before re-enabling",
            extra={"workloads": list(workload_names)},
        )
        await self._sleep(self.grace_seconds)

        try:
            results = await workloads.enable_by_names(workload_names)
        except UnavailableError as e:
            logger.error(f"Could not reach the backup application: {e.message}")
            results = {name: False for name in workload_names}

        for name, ok in results.items():
            if ok:
                logger.info(f"Workload {name} re-enabled after reboot")
            else:
                logger.error(f"Workload {name} could not be re-enabled after reboot")

        try:
            await self.unregister()
        except UnavailableError as e:
            logger.error(f"Failed to remove continuation unit: {e.message}")
        return results


class RebootPrompt(Protocol):
    """Countdown before reboot that the operator may cancel."""

    async def countdown(self, seconds: int) -> bool:
        """Return True to proceed with the reboot, False if cancelled."""
        ...


class ConsoleRebootPrompt:
    """
    Countdown on the console; pressing Enter cancels the reboot.

    Input is watched with the event loop's reader callbacks rather than a
    worker thread, so nothing is left blocked on the stream once the
    countdown ends. A stream without a file descriptor cannot cancel.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        output: TextIO | None = None,
        *,
        tick_seconds: float = 1.0,
    ) -> None:
        self._stream = stream or sys.stdin
        self._output = output or sys.stdout
        self._tick = tick_seconds

    def _fileno(self) -> int | None:
        try:
            return self._stream.fileno()
        except (AttributeError, OSError, ValueError, io.UnsupportedOperation):
            return None

    async def countdown(self, seconds: int) -> bool:
        loop = asyncio.get_running_loop()
        cancelled = asyncio.Event()
        fd = self._fileno()

        def on_input() -> None:
            line = self._stream.readline()
            if line:
                cancelled.set()
            elif fd is not None:
                # EOF: nobody at the console, let the countdown run out
                loop.remove_reader(fd)

        if fd is not None:
            try:
                loop.add_reader(fd, on_input)
            except (OSError, NotImplementedError, ValueError):
                # Regular files (stdin redirected from /dev/null) cannot be watched
                fd = None
        try:
            for remaining in range(seconds, 0, -1):
                print(
                    f"\rRebooting in {remaining:>3}s. Press Enter to cancel.",
                    end="",
                    file=self._output,
                    flush=True,
                )
                try:
                    await asyncio.wait_for(cancelled.wait(), timeout=self._tick)
                except TimeoutError:
                    continue
                break
        finally:
            if fd is not None:
                loop.remove_reader(fd)
            print(file=self._output, flush=True)

        if cancelled.is_set():
            logger.warning("Reboot cancelled by operator")
            return False
        return True
