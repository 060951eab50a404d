"""Tests for the version snapshot and artifact cache."""

from datetime import UTC, datetime, timedelta

import pytest

from pwrsync.core.cache import DiskCache
from pwrsync.core.errors import CacheInvalidError
from pwrsync.core.types import Branch, VersionCacheSnapshot


@pytest.fixture
def cache(tmp_path):
    """Disk cache in a temporary directory."""
    return DiskCache(tmp_path / "cache")


class TestSnapshot:
    """Test versions.json persistence."""

    def test_missing(self, cache):
        """Test loading without a snapshot."""
        assert cache.load_snapshot() is None

    def test_save_and_load(self, cache):
        """Test the snapshot survives a save and load."""
        snapshot = VersionCacheSnapshot(
            os="linux",
            arch="amd64",
            fetched_at=datetime.now(UTC),
            versions={"release": [1, 3, 2, 3]},
            mirror_sourced_branches=["pre-release"],
        )
        cache.save_snapshot(snapshot)

        loaded = cache.load_snapshot()

        assert loaded.versions == {"release": [3, 2, 1]}
        assert loaded.mirror_sourced_branches == ["pre-release"]
        assert not cache.snapshot_path.with_suffix(".tmp").exists()

    def test_empty_file(self, cache):
        """Test an empty file counts as missing."""
        cache.snapshot_path.write_text("")
        assert cache.load_snapshot() is None

    def test_corrupt_file(self, cache):
        """Test unreadable JSON counts as missing."""
        cache.snapshot_path.write_text("{not json")
        assert cache.load_snapshot() is None

    def test_unknown_fields_ignored(self, cache):
        """Test extra fields written by other versions are ignored."""
        cache.snapshot_path.write_text('{"os": "linux", "arch": "amd64", "extra": 1}')
        assert cache.load_snapshot().os == "linux"

    def test_fresh_snapshot(self, cache):
        """Test a recent snapshot for this platform is accepted."""
        cache.save_snapshot(
            VersionCacheSnapshot(os="linux", arch="amd64", fetched_at=datetime.now(UTC), versions={"release": [1]})
        )
        snapshot = cache.load_fresh_snapshot("LINUX", "amd64", timedelta(minutes=15))
        assert snapshot.versions["release"] == [1]

    def test_stale_snapshot(self, cache):
        """Test an old snapshot is rejected."""
        cache.save_snapshot(
            VersionCacheSnapshot(os="linux", arch="amd64", fetched_at=datetime.now(UTC) - timedelta(hours=1))
        )
        with pytest.raises(CacheInvalidError, match="old"):
            cache.load_fresh_snapshot("linux", "amd64", timedelta(minutes=15))

    def test_branch_age(self, cache):
        """Test freshness is judged per branch when one is given."""
        now = datetime.now(UTC)
        cache.save_snapshot(
            VersionCacheSnapshot(
                os="linux",
                arch="amd64",
                fetched_at=now,
                branch_fetched_at={"release": now, "pre-release": now - timedelta(hours=1)},
                versions={"release": [2], "pre-release": [1]},
            )
        )

        snapshot = cache.load_fresh_snapshot("linux", "amd64", timedelta(minutes=15), "release")
        assert snapshot.versions["release"] == [2]
        with pytest.raises(CacheInvalidError, match="old"):
            cache.load_fresh_snapshot("linux", "amd64", timedelta(minutes=15), "pre-release")

    def test_wrong_platform(self, cache):
        """Test a snapshot of another platform is rejected."""
        cache.save_snapshot(VersionCacheSnapshot(os="linux", arch="arm64", fetched_at=datetime.now(UTC)))
        with pytest.raises(CacheInvalidError, match="linux/arm64"):
            cache.load_fresh_snapshot("linux", "amd64", timedelta(minutes=15))

    def test_missing_fresh_snapshot(self, cache):
        """Test a missing snapshot is invalid."""
        with pytest.raises(CacheInvalidError):
            cache.load_fresh_snapshot("linux", "amd64", timedelta(minutes=15))


class TestArtifacts:
    """Test cached artifact bookkeeping."""

    def test_artifact_path(self, cache):
        """Test artifact naming."""
        path = cache.artifact_path(Branch.PRE_RELEASE, "patch", 12)
        assert path == cache.base_dir / "pre-release_patch_12.pwr"

    def test_clear_only_one_branch(self, cache):
        """Test clearing leaves the other branch alone."""
        cache.artifact_path(Branch.RELEASE, "latest", 3).write_bytes(b"a")
        cache.artifact_path(Branch.RELEASE, "patch", 4).write_bytes(b"b")
        other = cache.artifact_path(Branch.PRE_RELEASE, "patch", 4)
        other.write_bytes(b"c")

        assert cache.clear_artifacts(Branch.RELEASE) == 2
        assert cache.list_artifacts(Branch.RELEASE) == []
        assert other.exists()

    def test_guess_version(self, cache):
        """Test the highest embedded number wins."""
        cache.artifact_path(Branch.RELEASE, "patch", 4).write_bytes(b"")
        cache.artifact_path(Branch.RELEASE, "patch", 11).write_bytes(b"")
        cache.artifact_path(Branch.PRE_RELEASE, "patch", 30).write_bytes(b"")

        assert cache.guess_version_from_artifacts(Branch.RELEASE) == 11

    def test_guess_version_empty(self, cache):
        """Test no artifacts yields 0."""
        assert cache.guess_version_from_artifacts(Branch.RELEASE) == 0
