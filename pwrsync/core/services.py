"""Wiring of the components behind one shared HTTP client."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from pwrsync.core.cache import DiskCache
from pwrsync.core.catalog import VersionCatalog
from pwrsync.core.config import AppConfig
from pwrsync.core.download import DownloadManager
from pwrsync.core.events import EventBus
from pwrsync.core.instances import InstanceStore
from pwrsync.core.mirror import MirrorResolver
from pwrsync.core.orchestrator import UpdateOrchestrator
from pwrsync.core.patch_tool import ButlerPatchTool
from pwrsync.core.runtime import ClientRuntimeDependencies, ProcessClientLauncher

logger = structlog.get_logger()


@dataclass
class Services:
    """Components sharing one configuration and HTTP client."""

    config: AppConfig
    cache: DiskCache
    mirror: MirrorResolver
    catalog: VersionCatalog
    downloads: DownloadManager
    store: InstanceStore
    bus: EventBus
    orchestrator: UpdateOrchestrator


@asynccontextmanager
async def open_services(
    config: AppConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Services]:
    """Create every component for the lifetime of an async block.

    Args:
        config: Application configuration
        transport: HTTP transport override, used by tests
    """
    async with httpx.AsyncClient(
        timeout=config.download.timeout,
        verify=config.download.verify_ssl,
        follow_redirects=True,
        transport=transport,
    ) as client:
        cache = DiskCache(config.cache_dir)
        mirror = MirrorResolver(config.mirror, client)
        catalog = VersionCatalog(cache, mirror, config.patch_server, client)
        downloads = DownloadManager(config.download, client)
        store = InstanceStore(config.instance_root, config.legacy_dirs)
        bus = EventBus()
        orchestrator = UpdateOrchestrator(
            catalog=catalog,
            mirror=mirror,
            downloads=downloads,
            store=store,
            cache=cache,
            patch_tool=ButlerPatchTool(config.patch_tool),
            runtime=ClientRuntimeDependencies(store),
            launcher=ProcessClientLauncher(store),
            bus=bus,
        )
        logger.debug(
            "services_opened",
            cache_dir=str(config.cache_dir),
            instance_root=str(config.instance_root),
        )
        yield Services(config, cache, mirror, catalog, downloads, store, bus, orchestrator)
