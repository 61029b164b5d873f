"""
Tests for installer acquisition and verification.

Tests cover:
- httpx download with digest verification
- curl fallback when the primary transport fails
- digest mismatch deletes the file
- staging directory helpers
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from dbupgrade.errors import AcquisitionFailure
from dbupgrade.workflow.artifact import (
    ArtifactAcquirer,
    artifact_filename,
    ensure_staging_dir,
    remove_staging_dir,
    sha256_file,
)

URL = "https://downloads.example.com/postgresql-15.12-1-linux-x64.run"
PAYLOAD = b"#!/bin/sh\necho installer\n"
DIGEST = hashlib.sha256(PAYLOAD).hexdigest()


def _serving(payload: bytes, status: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status, content=payload))


def _curl_writing(payload: bytes | None, returncode: int = 0):
    """Fake curl subprocess that writes payload to the --output path."""

    async def fake_exec(*args, **_kwargs):
        if payload is not None:
            output = args[args.index("--output") + 1]
            Path(output).write_bytes(payload)
        proc = MagicMock()
        proc.returncode = returncode
        proc.communicate = AsyncMock(return_value=(b"", b"" if returncode == 0 else b"curl: (22)"))
        return proc

    return fake_exec


class TestHelpers:
    """Tests for module-level helpers."""

    def test_sha256_file(self, tmp_path: Path) -> None:
        path = tmp_path / "file"
        path.write_bytes(PAYLOAD)
        assert sha256_file(path) == DIGEST

    def test_artifact_filename(self) -> None:
        assert artifact_filename(URL) == "postgresql-15.12-1-linux-x64.run"
        assert artifact_filename("https://example.com/") == "installer.bin"

    def test_staging_dir_created_flag(self, tmp_path: Path) -> None:
        staging = tmp_path / "staging"
        assert ensure_staging_dir(staging) is True
        assert ensure_staging_dir(staging) is False
        assert remove_staging_dir(staging) is True
        assert remove_staging_dir(staging) is False


class TestArtifactAcquirer:
    """Tests for ArtifactAcquirer.acquire."""

    @pytest.mark.asyncio
    async def test_primary_download_verified(self, tmp_path: Path) -> None:
        destination = tmp_path / "installer.run"
        acquirer = ArtifactAcquirer(transport=_serving(PAYLOAD))

        artifact = await acquirer.acquire(URL, destination, DIGEST.upper())

        assert artifact.transport == "httpx"
        assert artifact.sha256 == DIGEST
        assert artifact.size == len(PAYLOAD)
        assert destination.read_bytes() == PAYLOAD

    @pytest.mark.asyncio
    async def test_falls_back_to_curl(self, tmp_path: Path) -> None:
        destination = tmp_path / "installer.run"
        acquirer = ArtifactAcquirer(transport=_serving(b"", status=503))

        with patch("asyncio.create_subprocess_exec", side_effect=_curl_writing(PAYLOAD)) as mock_exec:
            artifact = await acquirer.acquire(URL, destination, DIGEST)

        assert artifact.transport == "curl"
        args = mock_exec.call_args.args
        assert args[0] == "curl"
        assert args[-1] == URL

    @pytest.mark.asyncio
    async def test_empty_primary_file_triggers_fallback(self, tmp_path: Path) -> None:
        destination = tmp_path / "installer.run"
        acquirer = ArtifactAcquirer(transport=_serving(b""))

        with patch("asyncio.create_subprocess_exec", side_effect=_curl_writing(PAYLOAD)):
            artifact = await acquirer.acquire(URL, destination, DIGEST)

        assert artifact.transport == "curl"

    @pytest.mark.asyncio
    async def test_both_transports_fail(self, tmp_path: Path) -> None:
        destination = tmp_path / "installer.run"
        acquirer = ArtifactAcquirer(transport=_serving(b"", status=404))

        with patch("asyncio.create_subprocess_exec", side_effect=_curl_writing(None, 22)):
            with pytest.raises(AcquisitionFailure):
                await acquirer.acquire(URL, destination, DIGEST)

        assert not destination.exists()

    @pytest.mark.asyncio
    async def test_digest_mismatch_deletes_file(self, tmp_path: Path) -> None:
        destination = tmp_path / "installer.run"
        acquirer = ArtifactAcquirer(transport=_serving(b"tampered"))

        with pytest.raises(AcquisitionFailure) as exc_info:
            await acquirer.acquire(URL, destination, DIGEST)

        assert "mismatch" in exc_info.value.message
        assert exc_info.value.details["expected_sha256"] == DIGEST
        assert not destination.exists()

    @pytest.mark.asyncio
    async def test_stale_file_is_not_trusted(self, tmp_path: Path) -> None:
        """A correct file left by an earlier run is replaced by a fresh download."""
        destination = tmp_path / "installer.run"
        destination.write_bytes(PAYLOAD)
        acquirer = ArtifactAcquirer(transport=_serving(b"tampered"))

        with pytest.raises(AcquisitionFailure):
            await acquirer.acquire(URL, destination, DIGEST)

        assert not destination.exists()

    @pytest.mark.asyncio
    async def test_missing_digest_refused(self, tmp_path: Path) -> None:
        acquirer = ArtifactAcquirer(transport=_serving(PAYLOAD))
        with pytest.raises(AcquisitionFailure):
            await acquirer.acquire(URL, tmp_path / "installer.run", "")
