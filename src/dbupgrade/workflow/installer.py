"""
Running the database engine installer unattended.

Before launch, GUI and admin front-ends that hold the engine's files open
are terminated. The installer runs as a child process and its exit code is
returned as-is; 0 is the only success.
"""

from __future__ import annotations

import asyncio
import os
import stat
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from dbupgrade.logging import get_logger
from dbupgrade.process_utils import terminate_processes
from dbupgrade.workflow.artifact import InstallerArtifact

logger = get_logger(__name__)

# Exit code reported when the installer could not be started at all
LAUNCH_FAILED_EXIT_CODE = -1

DEFAULT_INSTALLER_ARGS = (
    "--mode",
    "unattended",
    "--unattendedmodeui",
    "none",
    "--disable-components",
    "stackbuilder",
)


class InstallRunner:
    """
    Executes a verified installer artifact.

    Attributes:
        args: Non-interactive installer arguments.
        working_dir: Directory the installer runs in.
        interfering_processes: Process name patterns terminated before launch.
        settle_seconds: Wait after terminating interfering processes.
        timeout: Optional installer wait timeout; None waits indefinitely.
    """

    def __init__(
        self,
        args: Sequence[str] = DEFAULT_INSTALLER_ARGS,
        *,
        working_dir: Path | str | None = None,
        interfering_processes: Sequence[str] = (),
        settle_seconds: float = 5.0,
        timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.args = list(args)
        self.working_dir = Path(working_dir) if working_dir else None
        self.interfering_processes = list(interfering_processes)
        self.settle_seconds = settle_seconds
        self.timeout = timeout
        self._sleep = sleep

    async def close_interfering_processes(self) -> list[int]:
        """Terminate GUI/admin processes and wait for them to settle."""
        pids = await asyncio.to_thread(terminate_processes, self.interfering_processes)
        if pids:
            logger.info(
                f"Closed {len(pids)} interfering process(es); waiting "
                f"{self.settle_seconds}s",
                extra={"pids": pids},
            )
            await self._sleep(self.settle_seconds)
        return pids

    async def run(self, artifact: InstallerArtifact) -> int:
        """
        Run the installer and wait for it to finish.

        Args:
            artifact: The verified installer artifact.

        Returns:
            The installer's exit code, or -1 if it could not be launched or
            exceeded the timeout.
        """
        path = Path(artifact.path)
        await self.close_interfering_processes()

        mode = path.stat().st_mode
        if not mode & stat.S_IXUSR:
            os.chmod(path, mode | stat.S_IXUSR)

        cwd = self.working_dir or path.parent
        logger.info(
            f"Running installer {path.name}",
            extra={"installer_args": self.args, "cwd": str(cwd)},
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                str(path),
                *self.args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Failed to launch installer: {e}", extra={"path": str(path)})
            return LAUNCH_FAILED_EXIT_CODE

        try:
            exit_code = await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(
                f"Installer did not finish within {self.timeout}s and was killed",
                extra={"path": str(path)},
            )
            return LAUNCH_FAILED_EXIT_CODE

        if exit_code == 0:
            logger.info("Installer finished successfully")
        else:
            logger.error(
                f"Installer exited with code {exit_code}",
                extra={"installer_exit_code": exit_code},
            )
        return exit_code
