"""
Tests for version parsing, comparison and the installed version inspector.

Tests cover:
- parse_semantic_version with two- and three-part versions
- compare_versions / should_upgrade numeric ordering
- extract_version from binary output
- VersionInspector.current_version
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from dbupgrade.errors import InvalidArgumentError
from dbupgrade.workflow.version import (
    SemVer,
    VersionInspector,
    compare_versions,
    extract_version,
    parse_semantic_version,
    should_upgrade,
)

# =============================================================================
# Parsing
# =============================================================================


class TestParseSemanticVersion:
    """Tests for parse_semantic_version."""

    def test_parse_full_version(self) -> None:
        assert parse_semantic_version("15.12.0") == SemVer(major=15, minor=12, patch=0)

    def test_parse_two_part_version(self) -> None:
        """Database engines report major.minor only."""
        assert parse_semantic_version("15.6") == SemVer(major=15, minor=6, patch=0)

    def test_parse_prerelease(self) -> None:
        v = parse_semantic_version("16.0.0-beta.1")
        assert v.prerelease == "beta.1"
        assert str(v) == "16.0.0-beta.1"

    def test_parse_strips_whitespace(self) -> None:
        assert str(parse_semantic_version(" 15.6.0\n")) == "15.6.0"

    @pytest.mark.parametrize("value", ["", "abc", "15.x", "01.2.3", "15.6.0.1"])
    def test_parse_invalid(self, value: str) -> None:
        with pytest.raises(InvalidArgumentError):
            parse_semantic_version(value)

    def test_semver_is_immutable(self) -> None:
        v = parse_semantic_version("15.6.0")
        with pytest.raises(ValidationError):
            v.major = 16  # type: ignore[misc]


# =============================================================================
# Comparison
# =============================================================================


class TestCompareVersions:
    """Tests for numeric version ordering."""

    def test_numeric_not_lexicographic(self) -> None:
        """9.6 sorts below 15.12 even though "9" > "1" as text."""
        assert compare_versions("9.6", "15.12") == -1
        assert parse_semantic_version("9.6") < parse_semantic_version("15.12")

    def test_minor_compared_numerically(self) -> None:
        assert compare_versions("15.6.0", "15.12.0") == -1

    def test_equal_versions(self) -> None:
        assert compare_versions("15.12", "15.12.0") == 0

    def test_greater_version(self) -> None:
        assert compare_versions("16.0.0", "15.12.0") == 1

    def test_prerelease_sorts_before_release(self) -> None:
        assert compare_versions("16.0.0-rc.1", "16.0.0") == -1

    @pytest.mark.parametrize(
        ("current", "target", "expected"),
        [
            ("15.6.0", "15.12.0", True),
            ("9.6", "15.12.0", True),
            ("15.12.0", "15.12.0", False),
            ("15.13.0", "15.12.0", False),
            ("16.1", "15.12.0", False),
        ],
    )
    def test_should_upgrade(self, current: str, target: str, expected: bool) -> None:
        assert (
            should_upgrade(parse_semantic_version(current), parse_semantic_version(target))
            is expected
        )


# =============================================================================
# Version extraction
# =============================================================================


class TestExtractVersion:
    """Tests for extract_version."""

    def test_postgres_output(self) -> None:
        output = "postgres (PostgreSQL) 15.6 (Debian 15.6-1.pgdg120+2)"
        assert str(extract_version(output)) == "15.6.0"

    def test_three_part_output(self) -> None:
        assert str(extract_version("engine version 15.12.0\n")) == "15.12.0"

    def test_no_version(self) -> None:
        assert extract_version("usage: postgres [OPTION]...") is None


# =============================================================================
# VersionInspector
# =============================================================================


def _mock_process(stdout: bytes, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = 0
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    return proc


class TestVersionInspector:
    """Tests for VersionInspector.current_version."""

    @pytest.fixture
    def binary(self, tmp_path: Path) -> Path:
        path = tmp_path / "bin" / "postgres"
        path.parent.mkdir()
        path.write_text("#!/bin/sh\n")
        return path

    @pytest.mark.asyncio
    async def test_missing_binary_returns_none(self, tmp_path: Path) -> None:
        inspector = VersionInspector(tmp_path / "bin" / "postgres")
        assert await inspector.current_version() is None

    @pytest.mark.asyncio
    async def test_reads_version(self, binary: Path) -> None:
        proc = _mock_process(b"postgres (PostgreSQL) 15.6\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as mock_exec:
            version = await VersionInspector(binary).current_version()

        assert version == SemVer(major=15, minor=6)
        assert mock_exec.call_args.args == (str(binary), "--version")

    @pytest.mark.asyncio
    async def test_falls_back_to_stderr(self, binary: Path) -> None:
        proc = _mock_process(b"", b"15.12.0\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            version = await VersionInspector(binary).current_version()

        assert str(version) == "15.12.0"

    @pytest.mark.asyncio
    async def test_unparseable_output_returns_none(self, binary: Path) -> None:
        proc = _mock_process(b"not a version\n")
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert await VersionInspector(binary).current_version() is None

    @pytest.mark.asyncio
    async def test_exec_failure_returns_none(self, binary: Path) -> None:
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=PermissionError("not executable")),
        ):
            assert await VersionInspector(binary).current_version() is None
