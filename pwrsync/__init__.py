"""pwrsync - patch updater for game client instances.

Discovers published client versions, downloads full snapshots or patch
chains from the patch server (falling back to a community mirror), applies
them with butler and keeps a local set of branch/version instances.

Key modules:
- core: Version catalog, downloads, instance store and update orchestration
- commands: CLI command implementations
"""

__version__ = "0.1.0"

# Re-export commonly used types
from pwrsync.core.types import (
    Branch,
    BranchShape,
    InstalledInstance,
    LatestInfo,
    UpdateState,
)

__all__ = [
    "__version__",
    "Branch",
    "BranchShape",
    "InstalledInstance",
    "LatestInfo",
    "UpdateState",
]
