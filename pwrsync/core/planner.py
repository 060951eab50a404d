"""Patch chain planning.

A plan is the ordered list of artifacts that takes an instance from its
installed version to a target version. Plans are pure data, so an interrupted
run can be resumed by planning again from the recorded version.
"""

from __future__ import annotations

from dataclasses import dataclass

from pwrsync.core.types import BranchShape


@dataclass(frozen=True)
class PatchStep:
    """One artifact application in a plan."""

    from_version: int
    to_version: int


def plan_patch_chain(installed: int, target: int, shape: BranchShape) -> list[PatchStep]:
    """Plan the steps from an installed version to a target version.

    Args:
        installed: Installed version, 0 when nothing is installed
        target: Version to reach
        shape: Storage shape of the branch

    Returns:
        Steps in application order

    Raises:
        ValueError: If either version is negative

    Example:
        >>> [s.to_version for s in plan_patch_chain(3, 7, BranchShape.DIFF_CHAIN)]
        [4, 5, 6, 7]
        >>> [s.to_version for s in plan_patch_chain(3, 7, BranchShape.FULL_SNAPSHOT)]
        [7]
        >>> plan_patch_chain(7, 7, BranchShape.DIFF_CHAIN)
        []
    """
    if installed < 0 or target < 0:
        raise ValueError(f"Versions must be non-negative: installed={installed}, target={target}")

    if shape is BranchShape.FULL_SNAPSHOT:
        return [PatchStep(0, target)]

    return [PatchStep(version - 1, version) for version in range(installed + 1, target + 1)]
