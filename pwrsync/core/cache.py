"""On-disk cache for the version snapshot and downloaded patch artifacts."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog
from pydantic import ValidationError

from pwrsync.core.errors import CacheInvalidError
from pwrsync.core.types import Branch, VersionCacheSnapshot

logger = structlog.get_logger()

_DIGITS = re.compile(r"\d+")


class DiskCache:
    """Disk cache shared by the version catalog and the orchestrator.

    Cache layout:
    {cache_dir}/
    ├── versions.json                 # VersionCacheSnapshot
    ├── {branch}_patch_{N}.pwr        # Diff-chain step artifacts
    ├── {branch}_latest_{N}.pwr       # Full snapshot for the latest instance
    ├── {branch}_version_{N}.pwr      # Full snapshot for a pinned instance
    └── {branch}_mirror_full_{N}.pwr  # Full snapshot fetched from the mirror

    Artifacts are deleted once they have been applied.
    """

    SNAPSHOT_FILENAME = "versions.json"

    def __init__(self, base_dir: Path):
        """Initialize disk cache.

        Args:
            base_dir: Cache directory
        """
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def snapshot_path(self) -> Path:
        """Path of the persisted version snapshot."""
        return self.base_dir / self.SNAPSHOT_FILENAME

    def load_snapshot(self) -> VersionCacheSnapshot | None:
        """Load the version snapshot regardless of age.

        Returns:
            Snapshot, or None if missing or unreadable
        """
        path = self.snapshot_path
        if not path.exists():
            return None

        try:
            text = path.read_text(encoding="utf-8")
            if not text.strip():
                return None
            return VersionCacheSnapshot.model_validate_json(text)
        except (OSError, ValidationError) as e:
            logger.warning("snapshot_load_failed", path=str(path), error=str(e))
            return None

    def load_fresh_snapshot(
        self,
        os_name: str,
        arch: str,
        max_age: timedelta,
        branch: str | None = None,
    ) -> VersionCacheSnapshot:
        """Load the snapshot only if it is valid for this platform and age.

        Args:
            os_name: Current operating system
            arch: Current architecture
            max_age: Maximum age of the snapshot
            branch: Judge the age of this branch's list instead of the
                snapshot as a whole

        Raises:
            CacheInvalidError: If missing, for another platform, or too old
        """
        snapshot = self.load_snapshot()
        if snapshot is None:
            raise CacheInvalidError("No version snapshot")
        if snapshot.os.lower() != os_name.lower() or snapshot.arch.lower() != arch.lower():
            raise CacheInvalidError(
                f"Snapshot is for {snapshot.os}/{snapshot.arch}, not {os_name}/{arch}"
            )
        fetched_at = snapshot.fetched_at if branch is None else snapshot.refreshed_at(branch)
        age = datetime.now(UTC) - fetched_at
        if age > max_age:
            raise CacheInvalidError(f"Snapshot is {int(age.total_seconds())}s old")
        return snapshot

    def save_snapshot(self, snapshot: VersionCacheSnapshot) -> None:
        """Store the snapshot with an atomic temp-file replace."""
        path = self.snapshot_path
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
            temp_path.replace(path)
        except OSError as e:
            logger.warning("snapshot_save_failed", path=str(path), error=str(e))
            temp_path.unlink(missing_ok=True)
            return
        logger.debug("snapshot_saved", path=str(path))

    def artifact_path(self, branch: Branch, kind: str, version: int) -> Path:
        """Cache path for a downloaded artifact.

        Args:
            branch: Artifact branch
            kind: patch, latest, version or mirror_full
            version: Target version of the artifact
        """
        return self.base_dir / f"{branch.value}_{kind}_{version}.pwr"

    def list_artifacts(self, branch: Branch) -> list[Path]:
        """All cached artifacts of a branch."""
        return sorted(self.base_dir.glob(f"{branch.value}_*.pwr"))

    def clear_artifacts(self, branch: Branch) -> int:
        """Delete every cached artifact of a branch.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in self.list_artifacts(branch):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("artifact_cleanup_failed", path=str(path), error=str(e))

        if removed > 0:
            logger.info("artifact_cleanup", branch=branch.value, removed=removed)
        return removed

    def guess_version_from_artifacts(self, branch: Branch) -> int:
        """Best-effort guess of an installed version from cached filenames.

        Last resort only: the highest positive number embedded in any
        ``{branch}_*.pwr`` filename. Renamed or partly cleaned cache
        directories make this wrong or empty.

        Returns:
            Highest version found, or 0
        """
        found = [
            int(number)
            for path in self.list_artifacts(branch)
            for number in _DIGITS.findall(path.stem.removeprefix(f"{branch.value}_"))
            if int(number) > 0
        ]
        return max(found, default=0)
