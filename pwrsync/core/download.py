"""Resumable HTTP downloads of patch artifacts.

A single attempt streams the response to disk, resuming from an existing
partial file with a byte-range request when the server honours it. Retrying
lives one layer up in :meth:`DownloadManager.download_with_retry`, and every
retry resumes from whatever the previous attempt left on disk.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from pathlib import Path

import httpx
import structlog

from pwrsync.core.cancel import CancellationToken, check_cancelled
from pwrsync.core.config import DownloadConfig
from pwrsync.core.errors import DownloadIOError, NetworkError, OperationCancelled
from pwrsync.core.integrity import IntegrityError, is_cached_artifact_valid, verify_file_size
from pwrsync.core.types import DownloadTask, PatchArtifact

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int | None], None]

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")

# Client errors that will not change on retry
_NON_RETRYABLE_STATUS = {400, 401, 403, 404, 410}


def parse_content_range_total(value: str | None) -> int | None:
    """Extract the total size from a Content-Range header.

    Example:
        >>> parse_content_range_total("bytes 100-199/200")
        200
        >>> parse_content_range_total("bytes 0-9/*") is None
        True
    """
    if not value:
        return None
    match = _CONTENT_RANGE.match(value.strip())
    if match is None or match.group(3) == "*":
        return None
    return int(match.group(3))


class _ThrottledProgress:
    """Forwards progress at most once per interval, plus the final report."""

    def __init__(self, callback: ProgressCallback | None, interval: float) -> None:
        self.callback = callback
        self.interval = interval
        self._last = 0.0

    def update(self, downloaded: int, total: int | None, force: bool = False) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if force or now - self._last >= self.interval:
            self._last = now
            self.callback(downloaded, total)


class DownloadManager:
    """HTTP byte fetcher with resume, integrity checks and bounded retries.

    Args:
        config: Download configuration
        client: HTTP client to use, created lazily when omitted
    """

    def __init__(
        self,
        config: DownloadConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or DownloadConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
            )
        return self._client

    async def get_remote_size(
        self, url: str, cancel: CancellationToken | None = None
    ) -> int | None:
        """Get the size of a remote file without downloading it.

        Args:
            url: File URL
            cancel: Optional cancellation token

        Returns:
            Size in bytes, or None if unknown or the request failed
        """
        check_cancelled(cancel)
        try:
            response = await self.client.head(url)
        except httpx.HTTPError as e:
            logger.debug("remote_size_failed", url=url, error=str(e))
            return None

        if not response.is_success:
            logger.debug("remote_size_status", url=url, status=response.status_code)
            return None

        length = response.headers.get("Content-Length")
        if length is None or not length.isdigit():
            return None
        return int(length)

    async def exists(self, url: str) -> bool:
        """Check whether a file exists on the server."""
        try:
            response = await self.client.head(url)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def download_to_file(
        self,
        url: str,
        dest: Path,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> DownloadTask:
        """Download a URL to a file in a single attempt, resuming if possible.

        Args:
            url: File URL
            dest: Destination path; an existing file is treated as a partial download
            on_progress: Called with (downloaded_bytes, total_bytes)
            cancel: Checked before the request and after every read chunk

        Returns:
            Task describing the finished transfer

        Raises:
            NetworkError: If the request fails or returns an error status
            DownloadIOError: If writing the file fails
            IntegrityError: If the final size differs from the server size
            OperationCancelled: If the token fires
        """
        check_cancelled(cancel)
        dest.parent.mkdir(parents=True, exist_ok=True)

        existing = dest.stat().st_size if dest.exists() else 0
        total = await self.get_remote_size(url, cancel)
        task = DownloadTask(
            url=url,
            destination_path=dest,
            resume_offset_bytes=existing,
            total_size_bytes=total,
            cancellation=cancel,
        )
        progress = _ThrottledProgress(on_progress, self.config.progress_interval)

        if total is not None and existing > 0:
            if existing == total:
                logger.info("download_already_complete", url=url, size=total)
                progress.update(total, total, force=True)
                return task
            if existing > total:
                logger.warning("download_partial_oversized", url=url, local=existing, remote=total)
                dest.unlink()
                existing = 0
                task.resume_offset_bytes = 0

        headers = {"Range": f"bytes={existing}-"} if existing > 0 else {}
        if existing > 0:
            logger.info("download_resuming", url=url, offset=existing, total=total)

        try:
            async with self.client.stream("GET", url, headers=headers) as response:
                mode = "wb"
                if existing > 0 and response.status_code == 206:
                    mode = "ab"
                    if total is None:
                        total = parse_content_range_total(response.headers.get("Content-Range"))
                elif existing > 0 and response.status_code == 416:
                    # Nothing left to send: the partial file is already complete
                    if total is None or existing == total:
                        task.total_size_bytes = existing
                        progress.update(existing, existing, force=True)
                        return task
                    raise NetworkError(
                        f"Range not satisfiable for {url}",
                        url=url,
                        status_code=response.status_code,
                    )
                elif response.is_success:
                    if existing > 0:
                        logger.warning("download_range_ignored", url=url)
                    existing = 0
                    task.resume_offset_bytes = 0
                else:
                    raise NetworkError(
                        f"Download failed: HTTP {response.status_code} for {url}",
                        url=url,
                        status_code=response.status_code,
                    )

                if total is None:
                    length = response.headers.get("Content-Length")
                    if length is not None and length.isdigit():
                        total = existing + int(length)
                task.total_size_bytes = total

                downloaded = existing
                with open(dest, mode) as f:
                    async for chunk in response.aiter_bytes(self.config.chunk_size):
                        check_cancelled(cancel)
                        f.write(chunk)
                        downloaded += len(chunk)
                        task.bytes_transferred += len(chunk)
                        progress.update(downloaded, total)
                progress.update(downloaded, total, force=True)

        except httpx.HTTPError as e:
            raise NetworkError(f"Download failed for {url}: {e}", url=url) from e
        except OSError as e:
            raise DownloadIOError(f"Failed to write {dest}: {e}") from e

        verify_file_size(dest, total)
        logger.info(
            "download_finished",
            url=url,
            path=str(dest),
            transferred=task.bytes_transferred,
            size=dest.stat().st_size,
        )
        return task

    async def download_with_retry(
        self,
        url: str,
        dest: Path,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        max_attempts: int | None = None,
    ) -> DownloadTask:
        """Download with a bounded number of resuming attempts.

        Args:
            url: File URL
            dest: Destination path
            on_progress: Called with (downloaded_bytes, total_bytes)
            cancel: Cancellation token, never retried
            max_attempts: Override for the configured attempt count

        Returns:
            Task describing the successful attempt

        Raises:
            NetworkError, DownloadIOError or IntegrityError from the last attempt
        """
        attempts = max(1, max_attempts or self.config.max_attempts)

        for attempt in range(1, attempts):
            try:
                return await self.download_to_file(url, dest, on_progress, cancel)
            except OperationCancelled:
                raise
            except IntegrityError as e:
                logger.warning(
                    "download_integrity_retry",
                    url=url,
                    attempt=attempt,
                    expected=e.expected,
                    actual=e.actual,
                )
                dest.unlink(missing_ok=True)
            except NetworkError as e:
                logger.warning("download_retry", url=url, attempt=attempt, error=str(e))
                if e.status_code in _NON_RETRYABLE_STATUS:
                    logger.error("download_failed", url=url, error=str(e))
                    raise
            except DownloadIOError as e:
                logger.warning("download_io_retry", url=url, attempt=attempt, error=str(e))

            await self._backoff(attempt, cancel)

        # Last attempt: its error is the one reported
        try:
            return await self.download_to_file(url, dest, on_progress, cancel)
        except IntegrityError as e:
            dest.unlink(missing_ok=True)
            logger.error("download_failed", url=url, error=str(e))
            raise
        except (NetworkError, DownloadIOError) as e:
            logger.error("download_failed", url=url, error=str(e))
            raise

    async def fetch_artifact(
        self,
        artifact: PatchArtifact,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        """Make a patch artifact available locally.

        A cached file whose size matches the server size is reused without a
        download. A mismatched one is deleted and fetched again. New downloads
        go to a ``.part`` file that replaces the cache entry once verified.

        Args:
            artifact: Artifact to fetch
            on_progress: Called with (downloaded_bytes, total_bytes)
            cancel: Cancellation token

        Returns:
            Path to the verified local artifact
        """
        check_cancelled(cancel)
        local = artifact.local_cache_path
        expected = artifact.expected_size
        if expected is None and local.exists():
            expected = await self.get_remote_size(artifact.url, cancel)

        if is_cached_artifact_valid(local, expected):
            logger.info("using_cached_artifact", path=str(local), version=artifact.to_version)
            if on_progress is not None:
                size = local.stat().st_size
                on_progress(size, size)
            return local

        part = partial_path(local)
        await self.download_with_retry(artifact.url, part, on_progress, cancel)
        verify_file_size(part, artifact.expected_size)
        try:
            part.replace(local)
        except OSError as e:
            raise DownloadIOError(f"Failed to move {part} into place: {e}") from e
        artifact.expected_size = local.stat().st_size
        return local

    async def _backoff(self, attempt: int, cancel: CancellationToken | None) -> None:
        delay = self.config.base_backoff * (2 ** (attempt - 1))
        if delay <= 0:
            return
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except TimeoutError:
            return
        cancel.raise_if_cancelled()

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DownloadManager:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()


def partial_path(path: Path) -> Path:
    """Path of the in-progress download for a cached artifact."""
    return path.with_name(path.name + ".part")
