"""External patch tool integration.

Artifacts are applied by butler (``butler apply``), which reads a ``.pwr``
file and patches a target directory in place through a staging directory.
"""

from __future__ import annotations

import asyncio
import json
import shutil
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from pathlib import Path

import structlog

from pwrsync.core.cancel import CancellationToken, check_cancelled
from pwrsync.core.config import PatchToolConfig
from pwrsync.core.errors import OperationCancelled, PatchApplicationError

logger = structlog.get_logger()

ApplyProgressCallback = Callable[[float], None]

_OUTPUT_TAIL_LINES = 200


class PatchTool(ABC):
    """Applies one patch artifact to an instance directory."""

    @abstractmethod
    async def apply(
        self,
        artifact: Path,
        target_dir: Path,
        on_progress: ApplyProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Apply an artifact.

        Args:
            artifact: Local patch file
            target_dir: Instance directory to patch
            on_progress: Called with the applied fraction, 0.0 to 1.0
            cancel: Cancellation token

        Raises:
            PatchApplicationError: If the artifact could not be applied
            OperationCancelled: If the token fires
        """


def parse_progress_line(line: str) -> float | None:
    """Extract a 0.0-1.0 progress fraction from a butler JSON output line.

    Example:
        >>> parse_progress_line('{"type": "progress", "progress": 0.25}')
        0.25
        >>> parse_progress_line('{"type": "progress", "percentage": 50}')
        0.5
        >>> parse_progress_line("plain text") is None
        True
    """
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict) or message.get("type") != "progress":
        return None

    if isinstance(message.get("progress"), int | float):
        return min(max(float(message["progress"]), 0.0), 1.0)
    if isinstance(message.get("percentage"), int | float):
        return min(max(float(message["percentage"]) / 100.0, 0.0), 1.0)
    return None


class ButlerPatchTool(PatchTool):
    """Runs ``butler apply`` as a subprocess.

    The subprocess is terminated when the cancellation token fires, and the
    staging directory is removed after every run.

    Args:
        config: Patch tool configuration
    """

    def __init__(self, config: PatchToolConfig | None = None):
        self.config = config or PatchToolConfig()

    def build_command(self, artifact: Path, target_dir: Path, staging_dir: Path) -> list[str]:
        """Command line of one apply run."""
        return [
            self.config.executable,
            "--json",
            "apply",
            "--staging-dir",
            str(staging_dir),
            str(artifact),
            str(target_dir),
        ]

    def is_available(self) -> bool:
        """Whether the butler executable can be found."""
        return shutil.which(self.config.executable) is not None

    async def apply(
        self,
        artifact: Path,
        target_dir: Path,
        on_progress: ApplyProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Apply an artifact with butler."""
        check_cancelled(cancel)
        if not artifact.is_file():
            raise PatchApplicationError(f"Patch artifact not found: {artifact}")

        target_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = target_dir / self.config.staging_dir_name
        staging_dir.mkdir(parents=True, exist_ok=True)
        command = self.build_command(artifact, target_dir, staging_dir)
        logger.info("patch_apply_start", artifact=str(artifact), target=str(target_dir))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise PatchApplicationError(f"Failed to start {self.config.executable}: {e}") from e

        loop = asyncio.get_running_loop()

        def terminate() -> None:
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

        remove_callback = (
            cancel.on_cancel(lambda: loop.call_soon_threadsafe(terminate)) if cancel is not None else None
        )
        tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)

        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                fraction = parse_progress_line(line)
                if fraction is not None:
                    if on_progress is not None:
                        on_progress(fraction)
                elif line:
                    tail.append(line)
            exit_code = await process.wait()
        except asyncio.CancelledError:
            terminate()
            await process.wait()
            raise
        finally:
            if remove_callback is not None:
                remove_callback()
            shutil.rmtree(staging_dir, ignore_errors=True)

        if cancel is not None and cancel.is_cancelled:
            logger.info("patch_apply_cancelled", artifact=str(artifact))
            raise OperationCancelled(cancel.reason or "cancelled")

        if exit_code != 0:
            output = "\n".join(tail)
            logger.error("patch_apply_failed", artifact=str(artifact), exit_code=exit_code)
            raise PatchApplicationError(
                f"{self.config.executable} exited with code {exit_code} applying {artifact.name}",
                exit_code=exit_code,
                output=output,
            )

        if on_progress is not None:
            on_progress(1.0)
        logger.info("patch_apply_done", artifact=str(artifact), target=str(target_dir))
