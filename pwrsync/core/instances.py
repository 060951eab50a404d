"""Local instance layout, bookkeeping and legacy migration.

Instance layout:
{instance_root}/
├── release/
│   ├── latest/            # Rolling instance patched forward on every update
│   ├── latest.json        # LatestInfo for the rolling instance
│   └── 5/                 # Pinned instance of version 5
│       └── metadata.json  # Custom name and last applied version
└── pre-release/
    └── ...

Older launchers stored instances flat as ``release-5`` or ``release-v5``,
sometimes with the client nested under a ``game/`` subfolder. Those folders
are found by :meth:`InstanceStore.find_existing_instance_path` and can be
folded into the current layout with the migration methods.
"""

from __future__ import annotations

import json
import re
import shutil
import threading
from pathlib import Path

import structlog
from pydantic import ValidationError

from pwrsync.core.types import Branch, InstalledInstance, LatestInfo
from pwrsync.core.utils import get_os, normalize_branch

logger = structlog.get_logger()

LATEST_SEGMENT = "latest"
LATEST_INFO_FILENAME = "latest.json"
METADATA_FILENAME = "metadata.json"
USER_DATA_DIRNAME = "UserData"
LEGACY_GAME_DIRNAME = "game"

# Folder names that already belong to the current layout
_RESERVED_NAMES = {"release", "pre-release", "prerelease", "latest"}
_LEGACY_BRANCH_NAMES = {"release", "pre-release", "prerelease", "pre_release"}
_LEGACY_FOLDER = re.compile(r"^(?P<branch>.+?)-v?(?P<version>\d+|latest)$", re.IGNORECASE)


class FileLocks:
    """Registry of per-file locks for shared bookkeeping writes."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    def get(self, path: Path) -> threading.Lock:
        """Get the lock guarding a file, creating it on first use."""
        key = path.absolute()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


_FILE_LOCKS = FileLocks()


def parse_legacy_folder_name(name: str) -> tuple[Branch, str] | None:
    """Parse a flat legacy folder name.

    Returns:
        (branch, version segment), or None if the name is not a legacy folder

    Example:
        >>> parse_legacy_folder_name("release-v5")
        (<Branch.RELEASE: 'release'>, '5')
        >>> parse_legacy_folder_name("prerelease-3")
        (<Branch.PRE_RELEASE: 'pre-release'>, '3')
        >>> parse_legacy_folder_name("release") is None
        True
    """
    if name.lower() in _RESERVED_NAMES:
        return None
    match = _LEGACY_FOLDER.match(name)
    if match is None:
        return None
    branch = match.group("branch").lower()
    if branch not in _LEGACY_BRANCH_NAMES:
        return None
    return normalize_branch(branch), match.group("version").lower()


def tree_size(path: Path) -> int:
    """Total size in bytes of all files below a directory."""
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


def _atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    tmp_path.replace(path)


def _is_within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


class InstanceStore:
    """Filesystem store of installed client instances.

    Args:
        root: Instance root directory
        legacy_roots: Data directories of older launchers
        os_name: Platform override for client marker paths
        file_locks: Lock registry for bookkeeping writes
    """

    def __init__(
        self,
        root: Path,
        legacy_roots: list[Path] | None = None,
        os_name: str | None = None,
        file_locks: FileLocks | None = None,
    ):
        self.root = root
        self.legacy_roots = list(legacy_roots or [])
        self.os_name = os_name or get_os()
        self.file_locks = file_locks or _FILE_LOCKS

    def ensure_root(self) -> Path:
        """Create the instance root if needed."""
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def branch_path(self, branch: str | Branch) -> Path:
        """Directory holding every instance of a branch."""
        return self.root / normalize_branch(branch).value

    def instance_path(self, branch: str | Branch, version: int) -> Path:
        """Current-layout path of an instance; version 0 is the latest instance."""
        if version == 0:
            return self.latest_instance_path(branch)
        return self.branch_path(branch) / str(version)

    def latest_instance_path(self, branch: str | Branch) -> Path:
        """Path of the branch's rolling latest instance."""
        return self.branch_path(branch) / LATEST_SEGMENT

    def user_data_path(self, instance_path: Path) -> Path:
        """UserData folder of an instance."""
        return instance_path / USER_DATA_DIRNAME

    def latest_info_path(self, branch: str | Branch) -> Path:
        """Bookkeeping file of the latest instance, beside its folder."""
        return self.branch_path(branch) / LATEST_INFO_FILENAME

    def instance_roots(self) -> list[Path]:
        """Existing instance roots, current first, then legacy ones."""
        roots: list[Path] = []
        seen: set[Path] = set()
        candidates = [self.root]
        for legacy in self.legacy_roots:
            candidates.extend([legacy / "instance", legacy / "instances"])

        for candidate in candidates:
            if not candidate.is_dir():
                continue
            resolved = candidate.resolve()
            if resolved not in seen:
                seen.add(resolved)
                roots.append(candidate)
        return roots

    def find_existing_instance_path(self, branch: str | Branch, version: int) -> Path | None:
        """Find an instance folder in the current or any legacy layout.

        Returns:
            Existing folder, or None if the instance is not on disk
        """
        normalized = normalize_branch(branch).value
        segment = LATEST_SEGMENT if version == 0 else str(version)

        for root in self.instance_roots():
            for candidate in (
                root / normalized / segment,
                root / f"{normalized}-{segment}",
                root / f"{normalized}-v{segment}",
            ):
                if candidate.is_dir():
                    return candidate
        return None

    def resolve_instance_path(self, branch: str | Branch, version: int, prefer_existing: bool = True) -> Path:
        """Resolve where an instance lives or should be installed."""
        if prefer_existing:
            existing = self.find_existing_instance_path(branch, version)
            if existing is not None:
                return existing
        return self.instance_path(branch, version)

    def client_marker_paths(self, instance_path: Path) -> list[Path]:
        """Candidate client executables for this platform."""
        if self.os_name == "darwin":
            relative = Path("Client") / "Hytale.app" / "Contents" / "MacOS" / "HytaleClient"
        elif self.os_name == "windows":
            relative = Path("Client") / "HytaleClient.exe"
        else:
            relative = Path("Client") / "HytaleClient"
        return [instance_path / relative, instance_path / LEGACY_GAME_DIRNAME / relative]

    def client_executable(self, instance_path: Path) -> Path | None:
        """Get the installed client executable, if present."""
        for marker in self.client_marker_paths(instance_path):
            if marker.is_file():
                return marker
        return None

    def is_client_present(self, instance_path: Path) -> bool:
        """Whether an instance counts as installed."""
        marker = self.client_executable(instance_path)
        logger.debug("client_marker_check", path=str(instance_path), found=marker is not None)
        return marker is not None

    def are_assets_present(self, instance_path: Path) -> bool:
        """Whether the instance has a non-empty assets folder."""
        if self.os_name == "darwin":
            assets = instance_path / "Client" / "Hytale.app" / "Contents" / "Assets"
        else:
            assets = instance_path / "Client" / "Assets"
        return assets.is_dir() and any(assets.iterdir())

    def load_latest_info(self, branch: str | Branch) -> LatestInfo | None:
        """Load the latest instance bookkeeping.

        Older installs kept latest.json inside the latest folder; that
        location is read when the current one is missing.

        Returns:
            LatestInfo, or None if missing or unreadable
        """
        path = self.latest_info_path(branch)
        if not path.exists():
            path = self.latest_instance_path(branch) / LATEST_INFO_FILENAME
            if not path.exists():
                return None

        try:
            with self.file_locks.get(path):
                text = path.read_text(encoding="utf-8")
            return LatestInfo.model_validate_json(text)
        except (OSError, ValidationError) as e:
            logger.warning("latest_info_unreadable", path=str(path), error=str(e))
            return None

    def save_latest_info(self, branch: str | Branch, version: int) -> LatestInfo:
        """Record the version now installed in the latest instance."""
        info = LatestInfo(version=version)
        path = self.latest_info_path(branch)
        with self.file_locks.get(path):
            _atomic_write_json(path, info.model_dump(mode="json"))
        logger.info("latest_info_saved", branch=normalize_branch(branch).value, version=version)
        return info

    def resolve_version_or_latest(self, branch: str | Branch, version: int) -> int:
        """Resolve a concrete version number for display and bookkeeping.

        Explicit version first, then latest.json, then the highest numeric
        instance folder.

        Returns:
            Version number, or 0 if nothing is known
        """
        if version > 0:
            return version

        info = self.load_latest_info(branch)
        if info is not None and info.version > 0:
            return info.version

        branch_dir = self.branch_path(branch)
        if not branch_dir.is_dir():
            return 0
        numbers = [int(entry.name) for entry in branch_dir.iterdir() if entry.is_dir() and entry.name.isdigit()]
        return max(numbers, default=0)

    def list_installed_instances(self) -> list[InstalledInstance]:
        """Scan both branches for instance folders, newest version first."""
        results: list[InstalledInstance] = []
        for branch in Branch:
            branch_dir = self.branch_path(branch)
            if not branch_dir.is_dir():
                continue

            for folder in branch_dir.iterdir():
                if not folder.is_dir():
                    continue
                if folder.name.lower() == LATEST_SEGMENT:
                    version = 0
                elif folder.name.isdigit():
                    version = int(folder.name)
                else:
                    continue

                user_data = self.user_data_path(folder)
                has_user_data = user_data.is_dir()
                results.append(
                    InstalledInstance(
                        branch=branch,
                        version=version,
                        path=folder,
                        custom_name=self._read_metadata(folder).get("customName"),
                        is_latest=version == 0,
                        has_user_data=has_user_data,
                        user_data_size=tree_size(user_data) if has_user_data else 0,
                        total_size=tree_size(folder),
                        is_installed=self.is_client_present(folder),
                    )
                )

        return sorted(results, key=lambda instance: instance.version, reverse=True)

    def set_custom_name(self, branch: str | Branch, version: int, name: str | None) -> bool:
        """Set or clear an instance's display name.

        Returns:
            False if the instance does not exist
        """
        folder = self.instance_path(branch, version)
        if not folder.is_dir():
            logger.warning("instance_not_found", branch=normalize_branch(branch).value, version=version)
            return False

        path = folder / METADATA_FILENAME
        with self.file_locks.get(path):
            metadata = self._read_metadata(folder)
            if name is None or not name.strip():
                metadata.pop("customName", None)
            else:
                metadata["customName"] = name.strip()
            _atomic_write_json(path, metadata)

        logger.info("instance_renamed", branch=normalize_branch(branch).value, version=version, name=name)
        return True

    def load_applied_version(self, instance_path: Path) -> int | None:
        """Version a pinned instance was last patched to.

        Returns:
            Version number, or None for instances installed without a record
        """
        value = self._read_metadata(instance_path).get("appliedVersion", "")
        return int(value) if value.isdigit() else None

    def save_applied_version(self, instance_path: Path, version: int) -> None:
        """Record the last fully applied version of a pinned instance."""
        path = instance_path / METADATA_FILENAME
        with self.file_locks.get(path):
            metadata = self._read_metadata(instance_path)
            metadata["appliedVersion"] = str(version)
            _atomic_write_json(path, metadata)
        logger.debug("applied_version_saved", path=str(instance_path), version=version)

    def delete_instance(self, branch: str | Branch, version: int) -> bool:
        """Delete one instance tree, leaving sibling instances untouched.

        Deleting the latest instance (version 0) also removes latest.json.

        Returns:
            Whether anything was removed
        """
        folder = self.resolve_instance_path(branch, version, prefer_existing=True)
        removed = False
        if folder.is_dir():
            shutil.rmtree(folder)
            removed = True

        if version == 0:
            info_path = self.latest_info_path(branch)
            with self.file_locks.get(info_path):
                if info_path.exists():
                    info_path.unlink()
                    removed = True

        logger.info(
            "instance_deleted",
            branch=normalize_branch(branch).value,
            version=version,
            path=str(folder),
            removed=removed,
        )
        return removed

    def migrate_legacy_instances(self, legacy_root: Path) -> int:
        """Copy flat legacy instance folders into the current layout.

        When ``legacy_root`` is the instance root itself the folders are
        restructured in place instead. Existing targets are never touched,
        so running the migration again is a no-op.

        Returns:
            Number of instances migrated
        """
        if not legacy_root.is_dir():
            return 0

        source = legacy_root.resolve()
        destination = self.root.resolve()
        if source == destination:
            return self.restructure_legacy_in_place()
        if _is_within(source, destination):
            logger.info("migrate_skipped_nested", source=str(legacy_root))
            return 0

        migrated = 0
        for legacy_dir in sorted(legacy_root.iterdir()):
            parsed = parse_legacy_folder_name(legacy_dir.name) if legacy_dir.is_dir() else None
            if parsed is None:
                continue
            branch, segment = parsed
            target = self.branch_path(branch) / segment

            if target.exists():
                logger.info("migrate_target_exists", folder=legacy_dir.name, target=str(target))
                continue
            if _is_within(target.resolve(), legacy_dir.resolve()):
                logger.info("migrate_skipped_recursive", folder=legacy_dir.name)
                continue

            logger.info("migrate_copy", folder=legacy_dir.name, branch=branch.value, version=segment)
            target.mkdir(parents=True)
            self._transfer_legacy_contents(legacy_dir, target, move=False)
            migrated += 1

        logger.info("migrate_done", source=str(legacy_root), migrated=migrated)
        return migrated

    def restructure_legacy_in_place(self) -> int:
        """Move flat legacy folders inside the instance root into the current layout.

        Returns:
            Number of instances restructured
        """
        if not self.root.is_dir():
            return 0

        restructured = 0
        for legacy_dir in sorted(self.root.iterdir()):
            parsed = parse_legacy_folder_name(legacy_dir.name) if legacy_dir.is_dir() else None
            if parsed is None:
                continue
            branch, segment = parsed
            target = self.branch_path(branch) / segment

            if target.exists():
                logger.info("migrate_target_exists", folder=legacy_dir.name, target=str(target))
                continue

            logger.info("migrate_restructure", folder=legacy_dir.name, branch=branch.value, version=segment)
            target.parent.mkdir(parents=True, exist_ok=True)
            if (legacy_dir / LEGACY_GAME_DIRNAME).is_dir():
                target.mkdir()
                self._transfer_legacy_contents(legacy_dir, target, move=True)
                self._remove_if_empty(legacy_dir / LEGACY_GAME_DIRNAME)
                self._remove_if_empty(legacy_dir)
            else:
                legacy_dir.rename(target)
            restructured += 1

        return restructured

    def migrate_all_legacy(self) -> int:
        """Fold every known legacy location into the current layout.

        Returns:
            Number of instances migrated
        """
        migrated = self.restructure_legacy_in_place()
        for root in self.instance_roots():
            if root.resolve() != self.root.resolve():
                migrated += self.migrate_legacy_instances(root)
        return migrated

    def _transfer_legacy_contents(self, legacy_dir: Path, target: Path, move: bool) -> None:
        # Client files nested under game/ go to the top of the new folder;
        # everything beside game/ (UserData included) comes along as-is
        game_dir = legacy_dir / LEGACY_GAME_DIRNAME
        sources = [game_dir] if game_dir.is_dir() else []
        sources.append(legacy_dir)

        for source in sources:
            for entry in sorted(source.iterdir()):
                if source is legacy_dir and entry.name == LEGACY_GAME_DIRNAME and game_dir.is_dir():
                    continue
                dest = target / entry.name
                if dest.exists():
                    logger.warning("migrate_entry_exists", entry=str(entry), dest=str(dest))
                    continue
                if move:
                    shutil.move(str(entry), str(dest))
                elif entry.is_dir():
                    shutil.copytree(entry, dest)
                else:
                    shutil.copy2(entry, dest)

    def _remove_if_empty(self, path: Path) -> None:
        try:
            path.rmdir()
        except OSError as e:
            logger.warning("migrate_leftover_kept", path=str(path), error=str(e))

    def _read_metadata(self, folder: Path) -> dict[str, str]:
        path = folder / METADATA_FILENAME
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("instance_metadata_unreadable", path=str(path), error=str(e))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}
