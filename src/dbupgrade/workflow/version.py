"""
Version inspection for the database engine installation.

This module implements:
- Semantic version parsing that accepts the two-part versions database
  engines report ("15.6" is read as 15.6.0)
- Component-wise numeric comparison ("9.6" < "15.12", which a string
  comparison gets wrong)
- Reading the installed version from the engine's version-bearing binary
"""

from __future__ import annotations

import asyncio
import re
from functools import total_ordering
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dbupgrade.errors import InvalidArgumentError
from dbupgrade.logging import get_logger

logger = get_logger(__name__)

# Accepts: 15, 15.6, 15.6.0, 16.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"(?:\.(?P<minor>0|[1-9]\d*))?"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# First dotted numeric token in `<binary> --version` output,
# e.g. "postgres (PostgreSQL) 15.6 (Debian 15.6-1.pgdg120+2)" -> "15.6"
VERSION_TOKEN_PATTERN = re.compile(r"(?<![\w.])(\d+\.\d+(?:\.\d+)?)(?![\w.])")


@total_ordering
class SemVer(BaseModel):
    """
    An immutable semantic version.

    Ordering compares major, then minor, then patch numerically. A version
    with a pre-release sorts before the same version without one.
    """

    model_config = ConfigDict(frozen=True)

    major: int = Field(..., ge=0)
    minor: int = Field(default=0, ge=0)
    patch: int = Field(default=0, ge=0)
    prerelease: str | None = None

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return compare_semver(self, other) < 0


def parse_semantic_version(version: str) -> SemVer:
    """
    Parse and validate a version string.

    Args:
        version: Version string (e.g., "15.6", "15.12.0", "16.0.0-beta.1").

    Returns:
        The parsed SemVer. Missing minor/patch components default to 0.

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = SEMVER_PATTERN.match(version.strip())
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR[.MINOR[.PATCH]][-PRERELEASE][+BUILDMETADATA]",
                "examples": ["15.6", "15.12.0", "16.0.0-beta.1"],
            },
        )

    return SemVer(
        major=int(match.group("major")),
        minor=int(match.group("minor") or 0),
        patch=int(match.group("patch") or 0),
        prerelease=match.group("prerelease"),
    )


def compare_semver(v1: SemVer, v2: SemVer) -> int:
    """
    Compare two parsed versions.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    for key in ("major", "minor", "patch"):
        a, b = getattr(v1, key), getattr(v2, key)
        if a < b:
            return -1
        elif a > b:
            return 1

    # Handle prerelease (no prerelease > with prerelease)
    pre1, pre2 = v1.prerelease, v2.prerelease

    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        if pre1 < pre2:
            return -1
        elif pre1 > pre2:
            return 1

    return 0


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    return compare_semver(parse_semantic_version(v1), parse_semantic_version(v2))


def should_upgrade(current: SemVer, target: SemVer) -> bool:
    """Return True iff the installed version is strictly below the target."""
    return current < target


def extract_version(output: str) -> SemVer | None:
    """Pull the first version token out of a binary's ``--version`` output."""
    match = VERSION_TOKEN_PATTERN.search(output)
    if match is None:
        return None
    try:
        return parse_semantic_version(match.group(1))
    except InvalidArgumentError:
        return None


class VersionInspector:
    """
    Reads the installed engine version from its version-bearing binary.

    Attributes:
        binary_path: Path to the binary queried with ``--version``.
    """

    VERSION_COMMAND_TIMEOUT = 30.0

    def __init__(self, binary_path: Path | str) -> None:
        self.binary_path = Path(binary_path)

    async def current_version(self) -> SemVer | None:
        """
        Read the installed version.

        Returns:
            The installed SemVer, or None when the binary is missing, cannot
            be executed, or reports nothing parseable.
        """
        if not self.binary_path.is_file():
            logger.error(
                f"Version binary not found: {self.binary_path}",
                extra={"path": str(self.binary_path)},
            )
            return None

        try:
            proc = await asyncio.create_subprocess_exec(
                str(self.binary_path),
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.VERSION_COMMAND_TIMEOUT
            )
        except (OSError, TimeoutError) as e:
            logger.error(
                f"Could not run version binary: {e}",
                extra={"path": str(self.binary_path)},
            )
            return None

        output = (stdout or b"").decode("utf-8", errors="replace")
        if not output.strip():
            output = (stderr or b"").decode("utf-8", errors="replace")

        version = extract_version(output)
        if version is None:
            logger.error(
                "Version binary output has no parseable version",
                extra={"path": str(self.binary_path), "output": output.strip()},
            )
            return None

        logger.debug(
            f"Installed version: {version}", extra={"path": str(self.binary_path)}
        )
        return version
