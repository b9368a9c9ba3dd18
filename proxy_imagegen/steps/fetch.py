"""Toolchain installer download.

This module handles:
- Streaming the installer package over HTTP(S) into a temporary directory
- Computing its SHA-256 while downloading
- Verifying it against an expected checksum when one is declared
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from proxy_imagegen.errors import DownloadFailure

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 1800

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class DownloadResult:
    """Result of an installer download."""

    path: Path
    checksum: str
    size_bytes: int


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadFailure: If the download fails, times out, cannot be
            written or the checksum does not match.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadFailure(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadFailure(
            f"Timeout downloading {url}",
            code="download_timeout",
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadFailure(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except OSError as e:
        with contextlib.suppress(OSError):
            dest_path.unlink(missing_ok=True)
        raise DownloadFailure(
            f"Cannot write {dest_path}: {e}",
            code="write_error",
        ) from e

    computed_checksum = sha256.hexdigest()

    if expected_checksum and computed_checksum != expected_checksum.lower():
        dest_path.unlink(missing_ok=True)
        raise DownloadFailure(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            code="checksum_mismatch",
        )

    if total_bytes == 0:
        dest_path.unlink(missing_ok=True)
        raise DownloadFailure(f"Empty download from {url}", code="empty_download")

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadResult",
    "compute_file_sha256",
    "download_file",
]
