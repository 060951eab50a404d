"""Core functionality for pwrsync.

This module provides the components behind every command:
- Configuration management and type definitions
- Version catalog and mirror resolution
- Resumable downloads and the on-disk cache
- Instance store, patch planning and update orchestration
"""

from pwrsync.core.types import (
    Branch,
    BranchShape,
    DownloadTask,
    InstalledInstance,
    LatestInfo,
    PatchArtifact,
    UpdateState,
    VersionCacheSnapshot,
)
from pwrsync.core.utils import (
    branch_shape,
    format_size,
    get_arch,
    get_os,
    normalize_branch,
)

__all__ = [
    "Branch",
    "BranchShape",
    "DownloadTask",
    "InstalledInstance",
    "LatestInfo",
    "PatchArtifact",
    "UpdateState",
    "VersionCacheSnapshot",
    "branch_shape",
    "format_size",
    "get_arch",
    "get_os",
    "normalize_branch",
]
