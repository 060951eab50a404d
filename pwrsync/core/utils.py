"""Shared utilities for pwrsync."""

from __future__ import annotations

import platform
import sys

from pwrsync.core.types import Branch, BranchShape

_BRANCH_ALIASES = {
    "": Branch.RELEASE,
    "release": Branch.RELEASE,
    "latest": Branch.RELEASE,
    "pre-release": Branch.PRE_RELEASE,
    "prerelease": Branch.PRE_RELEASE,
    "pre_release": Branch.PRE_RELEASE,
}

# Storage layout of each branch on the mirror
BRANCH_SHAPES: dict[Branch, BranchShape] = {
    Branch.RELEASE: BranchShape.FULL_SNAPSHOT,
    Branch.PRE_RELEASE: BranchShape.DIFF_CHAIN,
}


def normalize_branch(branch: str | Branch | None) -> Branch:
    """Normalize a branch name.

    Args:
        branch: Branch name in any accepted spelling

    Returns:
        Canonical branch, release for unknown or empty names

    Example:
        >>> normalize_branch("prerelease")
        <Branch.PRE_RELEASE: 'pre-release'>
        >>> normalize_branch(None)
        <Branch.RELEASE: 'release'>
    """
    if isinstance(branch, Branch):
        return branch
    key = (branch or "").strip().lower()
    return _BRANCH_ALIASES.get(key, Branch.RELEASE)


def branch_shape(branch: str | Branch) -> BranchShape:
    """Get the mirror storage shape of a branch."""
    return BRANCH_SHAPES[normalize_branch(branch)]


def get_os() -> str:
    """Get the operating system identifier used in patch URLs.

    Returns:
        One of "windows", "darwin", "linux" or "unknown"
    """
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return "unknown"


def get_arch() -> str:
    """Get the CPU architecture identifier used in patch URLs.

    Returns:
        "arm64" on ARM machines, "amd64" otherwise
    """
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    return "amd64"


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Args:
        size: Size in bytes

    Returns:
        Formatted string with appropriate unit (e.g., "1.5 MB")

    Example:
        >>> format_size(1024)
        '1.0 KB'
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    size_float = float(size)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_float < 1024.0:
            if unit == "B":
                return f"{int(size_float)} {unit}"
            return f"{size_float:.1f} {unit}"
        size_float /= 1024.0
    return f"{size_float:.1f} PB"
