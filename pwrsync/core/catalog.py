"""Version discovery for each branch of the patch server.

The primary server has no listing endpoint, so versions are discovered by
probing a deterministic URL per version with HEAD requests. Results are cached
in ``versions.json`` and shared by every caller in the process; concurrent
callers on a cold cache wait for a single probe run instead of starting
their own.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import httpx
import structlog

from pwrsync.core.cache import DiskCache
from pwrsync.core.cancel import CancellationToken, check_cancelled
from pwrsync.core.config import PatchServerConfig
from pwrsync.core.errors import CacheInvalidError, NoVersionsError, PwrSyncError
from pwrsync.core.mirror import MirrorResolver
from pwrsync.core.types import (
    Branch,
    PendingUpdate,
    VersionCacheSnapshot,
    VersionStatus,
)
from pwrsync.core.utils import get_arch, get_os, normalize_branch

if TYPE_CHECKING:
    from pwrsync.core.instances import InstanceStore

logger = structlog.get_logger()


class VersionCatalog:
    """Discovers and caches the available versions of every branch.

    One catalog is created per process and passed to whoever needs it. It
    owns the refresh lock and the set of branches that had to be sourced from
    the mirror, so tests can build a fresh one for isolation.

    Args:
        cache: Disk cache holding versions.json
        mirror: Mirror consulted when the primary server reports nothing
        config: Patch server configuration
        client: HTTP client to use, created lazily when omitted
        os_name: Platform override, detected when omitted
        arch: Architecture override, detected when omitted
    """

    def __init__(
        self,
        cache: DiskCache,
        mirror: MirrorResolver,
        config: PatchServerConfig | None = None,
        client: httpx.AsyncClient | None = None,
        os_name: str | None = None,
        arch: str | None = None,
    ):
        self.cache = cache
        self.mirror = mirror
        self.config = config or PatchServerConfig()
        self.os_name = os_name or get_os()
        self.arch = arch or get_arch()
        self._client = client
        self._owns_client = client is None
        self._fetch_lock = asyncio.Lock()
        self._mirror_sourced: set[Branch] = set()
        self._pending_mirror_urls: dict[Branch, dict[str, str]] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                follow_redirects=True,
            )
        return self._client

    @property
    def cache_ttl(self) -> timedelta:
        """Lifetime of the persisted version snapshot."""
        return timedelta(seconds=self.config.version_cache_ttl)

    def primary_url(self, branch: str | Branch, version: int, from_version: int = 0) -> str:
        """Build the primary server URL of a patch file.

        A ``from_version`` of 0 addresses the full snapshot of ``version``,
        which is also the URL probed for existence.
        """
        normalized = normalize_branch(branch)
        return (
            f"{self.config.patch_host}/patches/{self.os_name}/{self.arch}"
            f"/{normalized.value}/{from_version}/{version}.pwr"
        )

    def is_mirror_sourced(self, branch: str | Branch) -> bool:
        """Whether the branch's versions came from the mirror in this process."""
        return normalize_branch(branch) in self._mirror_sourced

    async def list_versions(
        self,
        branch: str | Branch,
        cancel: CancellationToken | None = None,
        force_refresh: bool = False,
    ) -> list[int]:
        """Get the available versions of a branch, newest first.

        Args:
            branch: Branch name
            cancel: Optional cancellation token
            force_refresh: Probe again even if the cache is fresh

        Returns:
            Descending, duplicate-free version numbers

        Raises:
            NoVersionsError: If neither the server nor the mirror has any version
        """
        normalized = normalize_branch(branch)

        cached = None if force_refresh else self._load_fresh(normalized, self.cache_ttl)
        if cached is not None:
            logger.info("catalog_cache_hit", branch=normalized.value, count=len(cached))
            return cached

        async with self._fetch_lock:
            # Another caller may have refreshed while we waited
            cached = None if force_refresh else self._load_fresh(normalized, self.cache_ttl)
            if cached is not None:
                logger.info("catalog_cache_hit", branch=normalized.value, count=len(cached))
                return cached

            return await self._refresh(normalized, cancel)

    def try_get_cached_versions(self, branch: str | Branch, max_age: timedelta) -> list[int] | None:
        """Get cached versions without touching the network.

        Returns:
            Versions, or None if the cache is missing, stale or empty
        """
        return self._load_fresh(normalize_branch(branch), max_age)

    async def latest_version(self, branch: str | Branch, cancel: CancellationToken | None = None) -> int:
        """Get the newest available version of a branch."""
        versions = await self.list_versions(branch, cancel)
        return versions[0]

    async def check_latest_needs_update(self, branch: str | Branch, store: InstanceStore) -> bool:
        """Check whether the branch's latest instance is missing or behind."""
        status = await self.get_version_status(branch, store)
        return status.status in ("not_installed", "update_available")

    async def get_version_status(self, branch: str | Branch, store: InstanceStore) -> VersionStatus:
        """Compare the latest instance with the newest available version."""
        normalized = normalize_branch(branch)
        try:
            versions = await self.list_versions(normalized)
        except NoVersionsError:
            return VersionStatus(status="none")
        except (PwrSyncError, OSError) as e:
            logger.error("version_status_failed", branch=normalized.value, error=str(e))
            return VersionStatus(status="error")

        latest = versions[0]
        if not store.is_client_present(store.latest_instance_path(normalized)):
            return VersionStatus(status="not_installed", latest_version=latest)

        info = store.load_latest_info(normalized)
        if info is None:
            return VersionStatus(status="update_available", latest_version=latest)
        if info.version < latest:
            return VersionStatus(
                status="update_available",
                installed_version=info.version,
                latest_version=latest,
            )
        return VersionStatus(status="current", installed_version=info.version, latest_version=latest)

    async def get_pending_update_info(self, branch: str | Branch, store: InstanceStore) -> PendingUpdate | None:
        """Describe the update waiting for the latest instance, if any."""
        normalized = normalize_branch(branch)
        try:
            versions = await self.list_versions(normalized)
        except NoVersionsError:
            return None

        info = store.load_latest_info(normalized)
        if info is None or info.version == versions[0]:
            return None

        user_data = store.user_data_path(store.latest_instance_path(normalized))
        has_user_data = user_data.is_dir() and any(user_data.iterdir())
        return PendingUpdate(
            branch=normalized,
            old_version=info.version,
            new_version=versions[0],
            has_old_user_data=has_user_data,
        )

    def _load_fresh(self, branch: Branch, max_age: timedelta) -> list[int] | None:
        try:
            snapshot = self.cache.load_fresh_snapshot(self.os_name, self.arch, max_age, branch.value)
        except CacheInvalidError as e:
            logger.debug("catalog_cache_invalid", branch=branch.value, reason=str(e))
            return None

        versions = snapshot.versions.get(branch.value)
        if not versions:
            return None

        if branch.value in snapshot.mirror_sourced_branches:
            self._mirror_sourced.add(branch)
            urls = snapshot.mirror_urls.get(branch.value)
            if urls:
                self.mirror.set_cached_urls(branch, urls)
        return list(versions)

    async def _refresh(self, branch: Branch, cancel: CancellationToken | None) -> list[int]:
        versions = await self._probe_primary(branch, cancel)

        if not versions:
            logger.warning("catalog_primary_empty", branch=branch.value)
            versions = await self.mirror.list_available_versions(self.os_name, self.arch, branch)
            if versions:
                self._mirror_sourced.add(branch)
                urls = await self.mirror.get_all_platform_urls(self.os_name, self.arch, branch)
                if urls:
                    self._pending_mirror_urls[branch] = urls
                logger.info("catalog_mirror_versions", branch=branch.value, versions=versions)

        if not versions:
            raise NoVersionsError(
                f"No versions available for {branch.value} on {self.os_name}/{self.arch}"
            )

        versions = sorted(set(versions), reverse=True)
        self._save(branch, versions)
        logger.info("catalog_refreshed", branch=branch.value, count=len(versions), newest=versions[0])
        return versions

    async def _probe_primary(self, branch: Branch, cancel: CancellationToken | None) -> list[int]:
        semaphore = asyncio.Semaphore(self.config.probe_concurrency)
        batch_size = self.config.probe_batch_size
        found: list[int] = []
        misses = 0
        batch_start = 1

        async def probe(version: int) -> tuple[int, bool]:
            async with semaphore:
                check_cancelled(cancel)
                try:
                    response = await self.client.head(
                        self.primary_url(branch, version),
                        timeout=self.config.timeout,
                    )
                except httpx.HTTPError as e:
                    logger.debug("catalog_probe_error", version=version, error=str(e))
                    return version, False
                return version, response.is_success

        while misses < self.config.max_consecutive_misses:
            check_cancelled(cancel)
            batch = range(batch_start, batch_start + batch_size)
            results = await asyncio.gather(*(probe(version) for version in batch))

            for version, exists in sorted(results):
                if exists:
                    found.append(version)
                    misses = 0
                else:
                    misses += 1
                    if misses >= self.config.max_consecutive_misses:
                        break

            batch_start += batch_size

        logger.debug("catalog_probe_done", branch=branch.value, found=len(found), last_probed=batch_start - 1)
        return found

    def _save(self, branch: Branch, versions: list[int]) -> None:
        snapshot = self.cache.load_snapshot()
        if snapshot is None or snapshot.os != self.os_name or snapshot.arch != self.arch:
            snapshot = VersionCacheSnapshot()

        # Lists saved without a per-branch time keep the old snapshot time
        for name in snapshot.versions:
            snapshot.branch_fetched_at.setdefault(name, snapshot.fetched_at)

        flags = {name for name in snapshot.mirror_sourced_branches if name != branch.value}
        flags.update(b.value for b in self._mirror_sourced)

        now = datetime.now(UTC)
        snapshot.fetched_at = now
        snapshot.branch_fetched_at[branch.value] = now
        snapshot.os = self.os_name
        snapshot.arch = self.arch
        snapshot.versions[branch.value] = versions
        snapshot.mirror_sourced_branches = sorted(flags)

        pending = self._pending_mirror_urls.pop(branch, None)
        if pending:
            snapshot.mirror_urls[branch.value] = pending

        self.cache.save_snapshot(snapshot)

    async def close(self) -> None:
        """Close the HTTP client if this catalog created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
