"""Exception hierarchy for pwrsync.

Low-level components raise these typed failures and the update orchestrator
decides whether to retry, fall back to the mirror, degrade or abort.
"""

from __future__ import annotations


class PwrSyncError(Exception):
    """Base class for all pwrsync failures."""


class NetworkError(PwrSyncError):
    """A probe or download request failed.

    Attributes:
        url: Request URL, if known
        status_code: HTTP status code, if a response was received
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class DownloadIOError(PwrSyncError):
    """Writing a downloaded artifact to disk failed."""


class PatchApplicationError(PwrSyncError):
    """The external patch tool failed to apply an artifact.

    Attributes:
        exit_code: Process exit code, if the tool ran
        output: Captured tool output
    """

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = ""):
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class CacheInvalidError(PwrSyncError):
    """A cached version snapshot is stale or belongs to another platform."""


class OperationCancelled(PwrSyncError):
    """The run was cancelled. Not a failure, never shown as an error."""


class FatalError(PwrSyncError):
    """Unexpected failure that aborts an orchestrator run.

    Attributes:
        detail: Technical detail such as a formatted traceback
    """

    def __init__(self, message: str, *, detail: str = ""):
        self.detail = detail
        super().__init__(message)


class NoVersionsError(PwrSyncError):
    """Neither the patch server nor the mirror reported any version."""


class MirrorUnavailableError(PwrSyncError):
    """The mirror has no artifact for the requested version."""


class UpdateInProgressError(PwrSyncError):
    """Another update is already running against the same instance directory."""


class LaunchError(PwrSyncError):
    """The game client could not be started."""
