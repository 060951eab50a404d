"""Runtime readiness and client launch collaborators of the orchestrator."""

from __future__ import annotations

import asyncio
import os
import stat
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

import structlog

from pwrsync.core.cancel import CancellationToken, check_cancelled
from pwrsync.core.errors import LaunchError
from pwrsync.core.instances import InstanceStore
from pwrsync.core.types import Branch

logger = structlog.get_logger()

RuntimeProgressCallback = Callable[[float, str], None]


class RuntimeDependencies(ABC):
    """Makes an installed instance ready to run.

    Implementations must be idempotent: they run before every launch,
    whatever the outcome of the update that preceded it.
    """

    @abstractmethod
    async def ensure(
        self,
        instance_path: Path,
        on_progress: RuntimeProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Bring the instance's runtime prerequisites up to date."""


class ClientRuntimeDependencies(RuntimeDependencies):
    """Prepares the client files of an instance.

    Marks the client executable as executable on POSIX systems and creates
    the UserData folder the client expects.
    """

    def __init__(self, store: InstanceStore):
        self.store = store

    async def ensure(
        self,
        instance_path: Path,
        on_progress: RuntimeProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        check_cancelled(cancel)
        if on_progress is not None:
            on_progress(0.0, "launch.detail.checking_runtime")

        executable = self.store.client_executable(instance_path)
        if executable is not None and self.store.os_name != "windows":
            mode = executable.stat().st_mode
            wanted = mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
            if mode != wanted:
                executable.chmod(wanted)
                logger.info("client_marked_executable", path=str(executable))

        check_cancelled(cancel)
        self.store.user_data_path(instance_path).mkdir(parents=True, exist_ok=True)

        if on_progress is not None:
            on_progress(1.0, "launch.detail.runtime_ready")


class ClientLauncher(ABC):
    """Starts the game client."""

    @abstractmethod
    async def launch(self, instance_path: Path, branch: Branch) -> int:
        """Start the client.

        Returns:
            Process id of the started client

        Raises:
            LaunchError: If the client could not be started
        """


class ProcessClientLauncher(ClientLauncher):
    """Starts the client executable as a detached subprocess.

    Args:
        store: Instance store locating the executable
        extra_args: Arguments appended to the client command line
    """

    def __init__(self, store: InstanceStore, extra_args: list[str] | None = None):
        self.store = store
        self.extra_args = list(extra_args or [])

    async def launch(self, instance_path: Path, branch: Branch) -> int:
        executable = self.store.client_executable(instance_path)
        if executable is None:
            raise LaunchError(f"No client executable in {instance_path}")

        env = dict(os.environ)
        env["PWRSYNC_BRANCH"] = branch.value
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable),
                *self.extra_args,
                cwd=str(executable.parent),
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {executable}: {e}") from e

        logger.info("client_launched", path=str(executable), pid=process.pid, branch=branch.value)
        return process.pid
