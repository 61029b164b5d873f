"""
Installer artifact acquisition and verification.

The installer is downloaded to a staging directory with httpx; if that
fails or leaves no file, curl is tried as a fallback transport. The file is
trusted only when it exists and its SHA-256 digest matches the expected
value. A mismatching file is deleted immediately so nothing later can pick
it up as a valid installer.
"""

from __future__ import annotations

import asyncio
import hashlib
import shutil
from pathlib import Path
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from dbupgrade.errors import AcquisitionFailure, UnavailableError
from dbupgrade.logging import get_logger

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


class InstallerArtifact(BaseModel):
    """A downloaded installer whose digest has been verified in this run."""

    path: str = Field(..., description="Location of the verified installer")
    sha256: str = Field(..., description="Verified SHA-256 digest (lowercase hex)")
    size: int = Field(..., ge=0, description="File size in bytes")
    transport: str = Field(..., description="Transport that produced the file")


def sha256_file(path: Path) -> str:
    """Compute the lowercase hex SHA-256 digest of a file."""
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def artifact_filename(url: str) -> str:
    """File name for an artifact URL (its last path segment)."""
    name = Path(urlparse(url).path).name
    return name or "installer.bin"


def ensure_staging_dir(path: Path) -> bool:
    """
    Create the staging directory if it does not exist.

    Returns:
        True if this call created the directory.

    Raises:
        AcquisitionFailure: If the directory cannot be created.
    """
    if path.is_dir():
        return False
    try:
        path.mkdir(parents=True, mode=0o700, exist_ok=True)
    except OSError as e:
        raise AcquisitionFailure(
            f"Failed to create staging directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e
    logger.debug("Created staging directory", extra={"path": str(path)})
    return True


def remove_staging_dir(path: Path) -> bool:
    """
    Remove a staging directory and its contents.

    Returns:
        True if the directory was removed, False if it didn't exist.
    """
    if not path.exists():
        return False
    shutil.rmtree(path, ignore_errors=True)
    logger.debug("Removed staging directory", extra={"path": str(path)})
    return True


class ArtifactAcquirer:
    """
    Downloads and verifies the installer artifact.

    Attributes:
        timeout: Per-transport timeout in seconds; None waits indefinitely.
        curl_binary: Executable used for the fallback transport.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        curl_binary: str = "curl",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.curl_binary = curl_binary
        self._transport = transport

    async def acquire(
        self,
        url: str,
        destination: Path,
        expected_digest: str,
    ) -> InstallerArtifact:
        """
        Download the artifact and verify its digest.

        Args:
            url: Artifact download URL.
            destination: Target file path inside the staging directory.
            expected_digest: Expected SHA-256 (hex, any case).

        Returns:
            The verified artifact.

        Raises:
            AcquisitionFailure: If neither transport produced a file, or the
                digest does not match.
        """
        expected = expected_digest.strip().lower()
        if not expected:
            raise AcquisitionFailure(
                "No expected digest configured; refusing to trust the artifact",
                details={"url": url},
            )

        # A file left over from an earlier run is never trusted
        destination.unlink(missing_ok=True)

        transport = "httpx"
        try:
            await self._download_httpx(url, destination)
        except (httpx.HTTPError, OSError) as e:
            logger.warning(
                f"Primary download failed: {e}",
                extra={"url": url},
            )

        if not self._has_content(destination):
            destination.unlink(missing_ok=True)
            transport = "curl"
            logger.info("Retrying download with fallback transport", extra={"url": url})
            try:
                await self._download_curl(url, destination)
            except UnavailableError as e:
                logger.error(
                    f"Fallback download failed: {e.message}",
                    extra={"url": url},
                )

        if not self._has_content(destination):
            destination.unlink(missing_ok=True)
            raise AcquisitionFailure(
                "Installer could not be downloaded by either transport",
                details={"url": url, "destination": str(destination)},
            )

        actual = await asyncio.to_thread(sha256_file, destination)
        if actual != expected:
            destination.unlink(missing_ok=True)
            raise AcquisitionFailure(
                "Installer digest mismatch; the downloaded file was discarded",
                details={
                    "url": url,
                    "expected_sha256": expected,
                    "actual_sha256": actual,
                },
            )

        size = destination.stat().st_size
        logger.info(
            f"Installer verified: {destination.name}",
            extra={"path": str(destination), "size": size, "transport": transport},
        )
        return InstallerArtifact(
            path=str(destination), sha256=actual, size=size, transport=transport
        )

    @staticmethod
    def _has_content(path: Path) -> bool:
        return path.is_file() and path.stat().st_size > 0

    async def _download_httpx(self, url: str, destination: Path) -> None:
        logger.info(f"Downloading {url}", extra={"destination": str(destination)})
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        f.write(chunk)

    async def _download_curl(self, url: str, destination: Path) -> None:
        args = [
            self.curl_binary,
            "--fail",
            "--location",
            "--silent",
            "--show-error",
            "--output",
            str(destination),
        ]
        if self.timeout is not None:
            args.extend(["--max-time", str(int(self.timeout))])
        args.append(url)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            raise UnavailableError(
                f"Failed to execute {self.curl_binary}: {e}",
                details={"command": " ".join(args)},
            ) from e

        if proc.returncode != 0:
            raise UnavailableError(
                f"{self.curl_binary} exited with {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}",
                details={"returncode": proc.returncode},
            )
