"""Tests for patch chain planning."""

import pytest

from pwrsync.core.planner import PatchStep, plan_patch_chain
from pwrsync.core.types import BranchShape


class TestPlanPatchChain:
    """Test plan_patch_chain."""

    def test_diff_chain_from_installed(self):
        """Test one step per version after the installed one."""
        steps = plan_patch_chain(3, 7, BranchShape.DIFF_CHAIN)
        assert steps == [PatchStep(3, 4), PatchStep(4, 5), PatchStep(5, 6), PatchStep(6, 7)]

    def test_diff_chain_from_empty(self):
        """Test a fresh install starts at version 0."""
        steps = plan_patch_chain(0, 3, BranchShape.DIFF_CHAIN)
        assert [(s.from_version, s.to_version) for s in steps] == [(0, 1), (1, 2), (2, 3)]

    def test_up_to_date(self):
        """Test no steps when already at the target."""
        assert plan_patch_chain(7, 7, BranchShape.DIFF_CHAIN) == []

    def test_installed_ahead(self):
        """Test no steps when the installed version is newer."""
        assert plan_patch_chain(9, 7, BranchShape.DIFF_CHAIN) == []

    def test_full_snapshot_single_step(self):
        """Test a full snapshot branch needs one step from scratch."""
        assert plan_patch_chain(3, 7, BranchShape.FULL_SNAPSHOT) == [PatchStep(0, 7)]

    def test_replanning_after_interruption(self):
        """Test planning again from the recorded version finishes the chain."""
        first = plan_patch_chain(3, 7, BranchShape.DIFF_CHAIN)
        completed = first[:2]
        resumed = plan_patch_chain(completed[-1].to_version, 7, BranchShape.DIFF_CHAIN)

        assert [s.to_version for s in resumed] == [6, 7]
        assert completed + resumed == first

    def test_negative_versions(self):
        """Test negative versions are rejected."""
        with pytest.raises(ValueError):
            plan_patch_chain(-1, 3, BranchShape.DIFF_CHAIN)
        with pytest.raises(ValueError):
            plan_patch_chain(0, -3, BranchShape.FULL_SNAPSHOT)

    def test_steps_are_frozen(self):
        """Test plans are immutable data."""
        step = plan_patch_chain(0, 1, BranchShape.DIFF_CHAIN)[0]
        with pytest.raises(AttributeError):
            step.to_version = 5
