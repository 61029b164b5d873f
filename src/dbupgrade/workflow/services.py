"""
Stopping and restarting the dependent application's services.

Shutdown converges with a bounded retry loop: graceful stop, then repeated
kill-and-poll rounds with exponential backoff until every matching service
is down or the deadline passes. The workflow never installs while the
dependent application still holds the database.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence

from dbupgrade.errors import ExternalStateConflict
from dbupgrade.logging import get_logger
from dbupgrade.process_utils import terminate_processes
from dbupgrade.workflow import systemd

logger = get_logger(__name__)


class ServiceLifecycleController:
    """
    Stops and restarts services matching the dependent application's patterns.

    Attributes:
        service_patterns: fnmatch patterns of systemd service names.
        process_patterns: fnmatch patterns of processes killed on escalation.
    """

    def __init__(
        self,
        service_patterns: Sequence[str],
        process_patterns: Sequence[str],
        *,
        settle_seconds: float = 5.0,
        backoff_factor: float = 2.0,
        max_backoff_seconds: float = 30.0,
        stop_timeout_seconds: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service_patterns = list(service_patterns)
        self.process_patterns = list(process_patterns)
        self.settle_seconds = settle_seconds
        self.backoff_factor = backoff_factor
        self.max_backoff_seconds = max_backoff_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._stopped: list[str] = []

    @property
    def stopped_services(self) -> list[str]:
        """Services this controller found running and shut down."""
        return list(self._stopped)

    async def stop_all(self) -> list[str]:
        """
        Stop every matching service, escalating to process kills.

        Returns:
            The services that were running before the stop.

        Raises:
            ExternalStateConflict: If services are still running when the
                stop deadline passes.
            UnavailableError: If services cannot be enumerated.
        """
        services = await systemd.list_services(self.service_patterns)
        running = sorted(
            unit for unit, state in services.items() if state not in ("inactive", "failed")
        )
        self._stopped = running
        if not running:
            logger.info("No dependent services are running")
            return []

        for unit in running:
            await systemd.stop_service(unit)

        residual = await systemd.running_services(self.service_patterns)
        if not residual:
            logger.info(f"Stopped {len(running)} dependent service(s)")
            return running

        logger.warning(
            "Services still running after graceful stop; terminating processes",
            extra={"services": residual},
        )
        deadline = self._clock() + self.stop_timeout_seconds
        delay = self.settle_seconds
        while True:
            for unit in residual:
                await systemd.stop_service(unit)
            await asyncio.to_thread(terminate_processes, self.process_patterns)
            await self._sleep(delay)

            residual = await systemd.running_services(self.service_patterns)
            if not residual:
                logger.info(f"Stopped {len(running)} dependent service(s) after escalation")
                return running

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ExternalStateConflict(
                    "Dependent services are still running; manual intervention required",
                    details={
                        "services": residual,
                        "timeout_seconds": self.stop_timeout_seconds,
                    },
                )
            delay = min(delay * self.backoff_factor, self.max_backoff_seconds, remaining)
            logger.debug(
                f"Services still running, retrying in {delay:.1f}s",
                extra={"services": residual},
            )

    async def start_all(self, services: Sequence[str] | None = None) -> dict[str, bool]:
        """
        Best-effort start of the dependent services.

        Args:
            services: Units to start. Defaults to the services this
                controller stopped, or every matching service when it
                stopped none.

        Returns:
            Mapping of unit name to whether the start command succeeded.
        """
        if services is None:
            services = self._stopped or sorted(
                await systemd.list_services(self.service_patterns)
            )

        results = {unit: await systemd.start_service(unit) for unit in services}
        failed = [unit for unit, ok in results.items() if not ok]
        if failed:
            logger.warning(
                f"{len(failed)} dependent service(s) failed to start",
                extra={"services": failed},
            )
        return results
