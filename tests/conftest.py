"""Pytest configuration and shared fixtures for pwrsync tests."""

import json
import re
from pathlib import Path

import httpx
import pytest

from pwrsync.core.config import (
    AppConfig,
    DownloadConfig,
    MirrorConfig,
    PatchServerConfig,
)

PATCH_HOST = "https://patches.test"
MIRROR_INDEX_URL = "https://mirror.test/api.php"
MIRROR_FILES = "https://mirror.test/files"

_RANGE = re.compile(r"bytes=(\d+)-")


class FakeServer:
    """In-memory HTTP server behind an ``httpx.MockTransport``.

    Serves HEAD with Content-Length, honours ``Range: bytes=N-`` with 206
    responses, and records every request for assertions.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.failing_urls: set[str] = set()
        self.failing_gets: set[str] = set()
        self.head_sizes: dict[str, int] = {}
        self.hide_length: set[str] = set()
        self.ignore_range = False

    def add(self, url: str, data: bytes) -> None:
        self.files[url] = data

    def add_json(self, url: str, payload: dict) -> None:
        self.files[url] = json.dumps(payload).encode()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url in self.failing_urls:
            return httpx.Response(500)

        data = self.files.get(url)
        if data is None:
            return httpx.Response(404)

        if request.method == "HEAD":
            if url in self.hide_length:
                return httpx.Response(200)
            size = self.head_sizes.get(url, len(data))
            return httpx.Response(200, headers={"Content-Length": str(size)})

        if url in self.failing_gets:
            return httpx.Response(500)

        match = _RANGE.match(request.headers.get("Range", ""))
        if match is not None and not self.ignore_range:
            start = int(match.group(1))
            if start >= len(data):
                return httpx.Response(416, headers={"Content-Range": f"bytes */{len(data)}"})
            return httpx.Response(
                206,
                content=data[start:],
                headers={"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
            )
        return httpx.Response(200, content=data)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def count(self, method: str | None = None, contains: str = "") -> int:
        return sum(
            1
            for request in self.requests
            if (method is None or request.method == method) and contains in str(request.url)
        )


def primary_url(branch: str, version: int, from_version: int = 0) -> str:
    """Primary server URL of a patch file on linux/amd64."""
    return f"{PATCH_HOST}/patches/linux/amd64/{branch}/{from_version}/{version}.pwr"


def mirror_index(release: list[int] = (), pre_release: list[int] = ()) -> dict:
    """Mirror index with full release snapshots and pre-release diffs."""
    release_files = {f"v{v}-linux-amd64.pwr": f"{MIRROR_FILES}/release/v{v}.pwr" for v in release}
    diff_files = {
        f"v{v - 1}~{v}-linux-amd64.pwr": f"{MIRROR_FILES}/pre-release/v{v - 1}~{v}.pwr" for v in pre_release
    }
    return {
        "hytale": {
            "release": {"linux": release_files, "mac": {}},
            "pre-release": {"linux": diff_files},
        }
    }


@pytest.fixture
def server() -> FakeServer:
    """Fresh fake HTTP server."""
    return FakeServer()


@pytest.fixture
def patch_config() -> PatchServerConfig:
    """Patch server config with small probe batches."""
    return PatchServerConfig(
        patch_host=PATCH_HOST,
        probe_concurrency=4,
        probe_batch_size=5,
        max_consecutive_misses=5,
    )


@pytest.fixture
def mirror_config() -> MirrorConfig:
    """Mirror config pointing at the fake server."""
    return MirrorConfig(index_url=MIRROR_INDEX_URL)


@pytest.fixture
def download_config() -> DownloadConfig:
    """Download config without backoff delays."""
    return DownloadConfig(max_attempts=2, base_backoff=0.0, chunk_size=4, progress_interval=0.0)


@pytest.fixture
def app_config(tmp_path: Path, patch_config, mirror_config, download_config) -> AppConfig:
    """Application config rooted in a temporary directory."""
    return AppConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        patch_server=patch_config,
        mirror=mirror_config,
        download=download_config,
    )


@pytest.fixture
def config_file(tmp_path: Path, app_config: AppConfig) -> Path:
    """Saved application config for CLI tests."""
    path = tmp_path / "config" / "config.json"
    app_config.save(path)
    return path


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add unit marker to all tests by default
        if not any(marker.name in ['integration', 'slow'] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)
