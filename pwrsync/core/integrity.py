"""Size verification for downloaded patch artifacts.

An artifact is only trusted when its size on disk equals the size the server
reported for it. A mismatch is retryable: the file is deleted and fetched
again, never accepted as-is.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from pwrsync.core.errors import PwrSyncError

logger = structlog.get_logger()


class IntegrityError(PwrSyncError):
    """Raised when a downloaded file does not match its expected size.

    Attributes:
        expected: Expected size in bytes
        actual: Actual size in bytes
        path: File that failed verification
    """

    def __init__(
        self,
        message: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
        path: Path | None = None,
    ):
        self.expected = expected
        self.actual = actual
        self.path = path
        super().__init__(message)


def verify_file_size(path: Path, expected_size: int | None) -> bool:
    """Verify a file on disk has the expected size.

    Args:
        path: File to check
        expected_size: Expected size in bytes, None when the server did not say

    Returns:
        True if the size matches or no expectation is known

    Raises:
        IntegrityError: If the size does not match
    """
    if expected_size is None:
        return True

    actual = path.stat().st_size
    if actual != expected_size:
        raise IntegrityError(
            f"Size mismatch for {path.name}: expected {expected_size}, got {actual}",
            expected=expected_size,
            actual=actual,
            path=path,
        )
    return True


def is_cached_artifact_valid(path: Path, expected_size: int | None) -> bool:
    """Decide whether a previously downloaded artifact can be reused.

    Unknown remote size means the local copy is trusted. A size mismatch
    deletes the local copy so the caller refetches it.

    Args:
        path: Cached artifact path
        expected_size: Server-reported size, or None if unknown

    Returns:
        True if the cached file should be reused
    """
    if not path.exists():
        return False

    try:
        verify_file_size(path, expected_size)
    except IntegrityError as e:
        logger.warning(
            "cached_artifact_size_mismatch",
            path=str(path),
            expected=e.expected,
            actual=e.actual,
        )
        path.unlink(missing_ok=True)
        return False

    if expected_size is None:
        logger.info("cached_artifact_unverified", path=str(path))
    else:
        logger.debug("cached_artifact_verified", path=str(path), size=expected_size)
    return True
