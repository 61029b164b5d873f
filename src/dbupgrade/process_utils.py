"""
Process utilities shared by the service and installer steps.

Processes are selected by fnmatch-style name patterns (case-insensitive)
and terminated with psutil: a polite terminate first, then a kill for
anything still alive after the grace period.
"""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Iterable

import psutil

from dbupgrade.logging import get_logger

logger = get_logger(__name__)

# Grace period between terminate() and kill()
DEFAULT_TERMINATE_TIMEOUT = 5.0


def process_matches_patterns(name: str, patterns: Iterable[str]) -> bool:
    """
    Check if a process name matches any of the given patterns.

    Args:
        name: Process name.
        patterns: fnmatch patterns (supports * and ?).

    Returns:
        True if the name matches at least one pattern.
    """
    name = name.lower()
    return any(fnmatch.fnmatch(name, pattern.lower()) for pattern in patterns)


def find_processes(patterns: Iterable[str]) -> list[psutil.Process]:
    """
    List running processes whose name matches any pattern.

    The calling process and its parent are never returned.
    """
    patterns = list(patterns)
    if not patterns:
        return []

    own = {os.getpid(), os.getppid()}
    matches = []
    for proc in psutil.process_iter(["name"]):
        try:
            name = proc.info.get("name") or ""
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if proc.pid in own:
            continue
        if process_matches_patterns(name, patterns):
            matches.append(proc)
    return matches


def terminate_processes(
    patterns: Iterable[str],
    *,
    timeout: float = DEFAULT_TERMINATE_TIMEOUT,
) -> list[int]:
    """
    Terminate every process matching the patterns.

    Args:
        patterns: fnmatch patterns of process names.
        timeout: Seconds to wait after terminate() before kill().

    Returns:
        PIDs that were signalled.
    """
    patterns = list(patterns)
    procs = find_processes(patterns)
    if not procs:
        return []

    signalled: list[psutil.Process] = []
    for proc in procs:
        try:
            proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(
                "Access denied terminating process",
                extra={"pid": proc.pid},
            )

    _, alive = psutil.wait_procs(signalled, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if alive:
        psutil.wait_procs(alive, timeout=timeout)

    pids = [proc.pid for proc in signalled]
    logger.info(
        f"Terminated {len(pids)} process(es)",
        extra={"pids": pids, "patterns": patterns},
    )
    return pids
