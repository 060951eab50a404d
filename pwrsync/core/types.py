"""Core type definitions for pwrsync."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from pwrsync.core.cancel import CancellationToken


class Branch(StrEnum):
    """Update channels served by the patch server."""
    RELEASE = "release"
    PRE_RELEASE = "pre-release"


class BranchShape(StrEnum):
    """How a branch stores its artifacts on the mirror."""
    FULL_SNAPSHOT = "full-snapshot"
    DIFF_CHAIN = "diff-chain"


class UpdateState(StrEnum):
    """States of an orchestrator run."""
    IDLE = "idle"
    PREPARING = "preparing"
    RESOLVING_VERSIONS = "resolving_versions"
    INSTALLING_FRESH = "installing_fresh"
    APPLYING_DIFF_CHAIN = "applying_diff_chain"
    UP_TO_DATE = "up_to_date"
    ENSURING_RUNTIME_DEPS = "ensuring_runtime_deps"
    LAUNCHING = "launching"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Whether the state ends a run."""
        return self in (UpdateState.DONE, UpdateState.CANCELLED, UpdateState.ERROR)

    @property
    def exit_code(self) -> int | None:
        """Process-style exit code of a terminal state, None otherwise."""
        return _EXIT_CODES.get(self)


_EXIT_CODES = {UpdateState.DONE: 0, UpdateState.ERROR: 1, UpdateState.CANCELLED: 130}


class VersionCacheSnapshot(BaseModel):
    """Persisted version catalog (versions.json)."""
    os: str = Field("", description="Operating system the snapshot was probed for")
    arch: str = Field("", description="Architecture the snapshot was probed for")
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.fromtimestamp(0, UTC),
        description="UTC time of the last refresh of any branch"
    )
    branch_fetched_at: dict[str, datetime] = Field(
        default_factory=dict,
        description="Per-branch UTC time of the last refresh"
    )
    versions: dict[str, list[int]] = Field(
        default_factory=dict,
        description="Per-branch version lists, newest first"
    )
    mirror_sourced_branches: list[str] = Field(
        default_factory=list,
        description="Branches whose versions came from the mirror"
    )
    mirror_urls: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="Per-branch mirror filename to URL maps"
    )

    model_config = ConfigDict(extra="ignore")

    @field_validator("versions")
    @classmethod
    def validate_versions(cls, v: dict[str, list[int]]) -> dict[str, list[int]]:
        """Keep every list descending and duplicate-free."""
        return {branch: sorted(set(versions), reverse=True) for branch, versions in v.items()}

    def refreshed_at(self, branch: str) -> datetime:
        """Refresh time of one branch.

        Snapshots written before per-branch times were kept fall back to
        the snapshot-wide time.
        """
        return self.branch_fetched_at.get(branch, self.fetched_at)


class LatestInfo(BaseModel):
    """Bookkeeping record for a branch's rolling latest instance."""
    version: int = Field(..., ge=0, description="Installed version in the latest folder")
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="UTC time of the last successful install or patch"
    )


class InstalledInstance(BaseModel):
    """A locally installed copy of the client."""
    branch: Branch = Field(..., description="Branch of the instance")
    version: int = Field(..., ge=0, description="Version number, 0 for latest")
    path: Path = Field(..., description="Instance directory")
    custom_name: str | None = Field(None, description="User-assigned display name")
    is_latest: bool = Field(False, description="Rolling latest instance")
    has_user_data: bool = Field(False, description="UserData folder present")
    user_data_size: int = Field(0, description="UserData size in bytes")
    total_size: int = Field(0, description="Instance size in bytes")
    is_installed: bool = Field(False, description="Client marker present")


class VersionStatus(BaseModel):
    """Installed versus available version for the latest instance."""
    status: str = Field(..., description="none, not_installed, update_available, current or error")
    installed_version: int = Field(0, description="Installed version, 0 if unknown")
    latest_version: int = Field(0, description="Newest available version")


class PendingUpdate(BaseModel):
    """Details of an update waiting for the latest instance."""
    branch: Branch
    old_version: int
    new_version: int
    has_old_user_data: bool = False


@dataclass
class PatchArtifact:
    """A downloadable patch file and where it is cached locally."""

    from_version: int
    to_version: int
    url: str
    local_cache_path: Path
    expected_size: int | None = None


@dataclass
class DownloadTask:
    """State of one in-flight download."""

    url: str
    destination_path: Path
    resume_offset_bytes: int = 0
    total_size_bytes: int | None = None
    cancellation: CancellationToken | None = field(default=None, repr=False)
    bytes_transferred: int = 0

    @property
    def remaining_bytes(self) -> int | None:
        """Bytes still to be transferred, if the total is known."""
        if self.total_size_bytes is None:
            return None
        return max(self.total_size_bytes - self.resume_offset_bytes, 0)
