"""Secondary mirror consulted when the primary patch server fails.

The mirror publishes one JSON index shaped ``branch -> platform -> filename
-> url`` under a top-level ``hytale`` key. Its two branches use different
storage shapes:

- release: full snapshots, ``v{N}-{os}-{arch}.pwr``. Any single file
  installs the complete client at version N.
- pre-release: consecutive diffs, ``v{from}~{to}-{os}-{arch}.pwr``. Files
  must be applied in order starting from an empty directory.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from pwrsync.core.config import MirrorConfig
from pwrsync.core.types import Branch, BranchShape
from pwrsync.core.utils import branch_shape, normalize_branch

logger = structlog.get_logger()


class MirrorIndex(BaseModel):
    """Root of the mirror index response."""

    hytale: dict[str, dict[str, dict[str, Any]]]

    def platform_files(self, os_name: str, branch: str) -> dict[str, str] | None:
        """Get the filename to URL map for one platform and branch.

        Non-string entries (nested objects the mirror keeps for other tools)
        are skipped.
        """
        platform_key = "mac" if os_name == "darwin" else os_name
        platforms = self.hytale.get(branch)
        if platforms is None:
            return None
        files = platforms.get(platform_key)
        if files is None:
            return None
        return {name: url for name, url in files.items() if isinstance(url, str)}

    def file_count(self) -> int:
        """Count all entries across branches and platforms."""
        return sum(len(files) for platforms in self.hytale.values() for files in platforms.values())


def full_snapshot_key(os_name: str, arch: str, version: int) -> str:
    """Mirror filename of a full snapshot."""
    return f"v{version}-{os_name}-{arch}.pwr"


def diff_key(os_name: str, arch: str, from_version: int, to_version: int) -> str:
    """Mirror filename of a diff between two versions."""
    return f"v{from_version}~{to_version}-{os_name}-{arch}.pwr"


def parse_version_from_key(key: str, os_name: str, arch: str) -> int | None:
    """Extract the target version encoded in a mirror filename.

    Example:
        >>> parse_version_from_key("v7-linux-amd64.pwr", "linux", "amd64")
        7
        >>> parse_version_from_key("v6~7-linux-amd64.pwr", "linux", "amd64")
        7
        >>> parse_version_from_key("v7-windows-amd64.pwr", "linux", "amd64") is None
        True
    """
    suffix = f"-{os_name}-{arch}.pwr"
    lowered = key.lower()
    if not lowered.endswith(suffix.lower()) or not lowered.startswith("v"):
        return None

    number_part = key[1:-len(suffix)]
    if "~" in number_part:
        number_part = number_part.split("~", 1)[1]
    if not number_part.isdigit():
        return None
    return int(number_part)


class MirrorResolver:
    """Resolves artifact URLs and versions from the mirror index.

    The index is kept in memory for ``config.ttl`` seconds. Failed refreshes
    keep serving the stale index, and URL maps injected from the persisted
    version snapshot answer lookups when no index could be fetched at all.

    Args:
        config: Mirror configuration
        client: HTTP client to use, created lazily when omitted
    """

    def __init__(
        self,
        config: MirrorConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or MirrorConfig()
        self._client = client
        self._owns_client = client is None
        self._index: MirrorIndex | None = None
        self._fetched_at = 0.0
        self._fetch_lock = asyncio.Lock()
        self._cached_urls: dict[Branch, dict[str, str]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    @property
    def is_available(self) -> bool:
        """Whether any mirror data (live or cached) is known."""
        return self._index is not None or bool(self._cached_urls)

    def shape_for(self, branch: str | Branch) -> BranchShape:
        """Storage shape of a branch on the mirror."""
        return branch_shape(branch)

    def is_diff_chain(self, branch: str | Branch) -> bool:
        """Whether the branch is stored as sequential diffs."""
        return self.shape_for(branch) is BranchShape.DIFF_CHAIN

    def set_cached_urls(self, branch: str | Branch, urls: dict[str, str]) -> None:
        """Inject URL maps loaded from the persisted version snapshot."""
        if not urls:
            return
        self._cached_urls[normalize_branch(branch)] = dict(urls)
        logger.info("mirror_cached_urls_loaded", branch=str(branch), count=len(urls))

    async def preload(self) -> None:
        """Fetch the index now to warm the cache."""
        await self._fetch_index()

    async def get_full_url(self, os_name: str, arch: str, branch: str | Branch, version: int) -> str | None:
        """Get the URL of a full snapshot.

        Returns:
            Download URL, or None if the mirror does not have it
        """
        return await self._lookup(os_name, branch, full_snapshot_key(os_name, arch, version))

    async def get_diff_url(
        self,
        os_name: str,
        arch: str,
        branch: str | Branch,
        from_version: int,
        to_version: int,
    ) -> str | None:
        """Get the URL of a diff between two consecutive versions.

        Returns:
            Download URL, or None if the mirror does not have it
        """
        return await self._lookup(os_name, branch, diff_key(os_name, arch, from_version, to_version))

    async def list_available_versions(self, os_name: str, arch: str, branch: str | Branch) -> list[int]:
        """Get all target versions the mirror offers, newest first."""
        files = await self._platform_files(os_name, branch)
        if not files:
            files = self._cached_urls.get(normalize_branch(branch), {})

        versions = {
            version
            for key in files
            if (version := parse_version_from_key(key, os_name, arch)) is not None
        }
        return sorted(versions, reverse=True)

    async def get_all_platform_urls(self, os_name: str, arch: str, branch: str | Branch) -> dict[str, str]:
        """Get every filename to URL entry for a platform and branch."""
        files = await self._platform_files(os_name, branch)
        if not files:
            return {}
        suffix = f"-{os_name}-{arch}.pwr".lower()
        return {key: url for key, url in files.items() if key.lower().endswith(suffix)}

    async def _lookup(self, os_name: str, branch: str | Branch, key: str) -> str | None:
        files = await self._platform_files(os_name, branch)
        if files and key in files:
            return files[key]

        cached = self._cached_urls.get(normalize_branch(branch), {})
        url = cached.get(key)
        if url is None:
            logger.debug("mirror_key_missing", key=key, branch=str(branch))
        return url

    async def _platform_files(self, os_name: str, branch: str | Branch) -> dict[str, str] | None:
        if not self.config.enabled:
            return None
        index = await self._get_index()
        if index is None:
            return None
        return index.platform_files(os_name, normalize_branch(branch).value)

    def _is_fresh(self) -> bool:
        return self._index is not None and time.monotonic() - self._fetched_at < self.config.ttl

    async def _get_index(self) -> MirrorIndex | None:
        if self._is_fresh():
            return self._index
        return await self._fetch_index()

    async def _fetch_index(self) -> MirrorIndex | None:
        async with self._fetch_lock:
            if self._is_fresh():
                return self._index

            logger.info("mirror_index_fetch", url=self.config.index_url)
            try:
                response = await self.client.get(self.config.index_url, timeout=self.config.timeout)
            except httpx.TimeoutException:
                logger.warning("mirror_index_timeout", url=self.config.index_url)
                return self._index
            except httpx.HTTPError as e:
                logger.warning("mirror_index_failed", error=str(e))
                return self._index

            if not response.is_success:
                logger.warning("mirror_index_status", status=response.status_code)
                return self._index

            try:
                index = MirrorIndex.model_validate_json(response.content)
            except ValidationError as e:
                logger.warning("mirror_index_invalid", error=str(e))
                return self._index

            self._index = index
            self._fetched_at = time.monotonic()
            logger.info(
                "mirror_index_loaded",
                files=index.file_count(),
                branches=len(index.hytale),
            )
            return self._index

    async def close(self) -> None:
        """Close the HTTP client if this resolver created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
