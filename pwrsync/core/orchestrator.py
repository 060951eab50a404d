"""Update orchestration: resolve, download, patch, prepare and launch.

One :meth:`UpdateOrchestrator.run` call drives an instance through

    idle -> preparing -> resolving_versions
         -> installing_fresh | applying_diff_chain | up_to_date
         -> ensuring_runtime_deps -> launching -> done

with ``cancelled`` and ``error`` reachable from any non-terminal state. Every
transition is published on the event bus, as is overall progress mapped
into fixed percentage bands.
"""

from __future__ import annotations

import asyncio
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from pwrsync.core.cache import DiskCache
from pwrsync.core.cancel import CancellationToken
from pwrsync.core.catalog import VersionCatalog
from pwrsync.core.download import DownloadManager, ProgressCallback, partial_path
from pwrsync.core.errors import (
    DownloadIOError,
    FatalError,
    LaunchError,
    MirrorUnavailableError,
    NetworkError,
    NoVersionsError,
    OperationCancelled,
    PatchApplicationError,
    PwrSyncError,
    UpdateInProgressError,
)
from pwrsync.core.events import (
    APPLY_BAND,
    CHAIN_BAND,
    DOWNLOAD_BAND,
    RUNTIME_BAND,
    EventBus,
    ProgressBand,
    ProgressReporter,
)
from pwrsync.core.instances import InstanceStore
from pwrsync.core.integrity import IntegrityError
from pwrsync.core.mirror import MirrorResolver
from pwrsync.core.patch_tool import PatchTool
from pwrsync.core.planner import PatchStep, plan_patch_chain
from pwrsync.core.runtime import ClientLauncher, RuntimeDependencies
from pwrsync.core.types import Branch, BranchShape, PatchArtifact, UpdateState
from pwrsync.core.utils import branch_shape, normalize_branch

logger = structlog.get_logger()

# Failures after which the mirror is tried instead
_SOURCE_ERRORS = (NetworkError, DownloadIOError, IntegrityError)

# Share of each diff-chain step spent downloading, matching the band widths
_STEP_DOWNLOAD_SHARE = (DOWNLOAD_BAND.end - DOWNLOAD_BAND.start) / (CHAIN_BAND.end - CHAIN_BAND.start)

RECEIPT_PATH = Path(".itch") / "receipt.json.gz"


@dataclass(frozen=True)
class Downloaded:
    """A full snapshot is available locally."""

    path: Path
    source: str


@dataclass(frozen=True)
class MirrorDiffRequired:
    """The primary failed and the mirror only has the target as a diff chain."""

    target_version: int


@dataclass(frozen=True)
class Failed:
    """Neither source could provide the artifact."""

    reason: str


DownloadOutcome = Downloaded | MirrorDiffRequired | Failed


def _always_launch() -> bool:
    return True


@dataclass
class UpdateRequest:
    """Inputs of one orchestrator run.

    Attributes:
        branch: Branch name in any accepted spelling
        version: Pinned version, 0 for the rolling latest instance
        launch_after_download: Asked once, right before launching
        cancel: Token governing the run, created when omitted
    """

    branch: str = Branch.RELEASE.value
    version: int = 0
    launch_after_download: Callable[[], bool] = _always_launch
    cancel: CancellationToken | None = None


@dataclass
class UpdateResult:
    """Outcome of one orchestrator run."""

    state: UpdateState
    branch: Branch
    version: int = 0
    instance_path: Path | None = None
    error: str | None = None
    update_error: str | None = None
    launched_pid: int | None = None

    @property
    def success(self) -> bool:
        """Whether the run reached the done state."""
        return self.state is UpdateState.DONE

    @property
    def cancelled(self) -> bool:
        """Whether the run was cancelled."""
        return self.state is UpdateState.CANCELLED


@dataclass
class _Run:
    request: UpdateRequest
    token: CancellationToken
    reporter: ProgressReporter
    branch: Branch
    log: Any
    state: UpdateState = UpdateState.IDLE


class UpdateOrchestrator:
    """Drives install, update and launch of client instances.

    Runs against different instance directories proceed concurrently; a
    second run against a directory that is already being updated fails
    with :class:`UpdateInProgressError`.

    Args:
        catalog: Version catalog
        mirror: Mirror resolver, shared with the catalog
        downloads: Artifact downloader
        store: Instance store
        cache: Artifact cache
        patch_tool: Tool applying patch artifacts
        runtime: Runtime readiness check run before every launch
        launcher: Client launcher
        bus: Event bus, created when omitted
    """

    def __init__(
        self,
        catalog: VersionCatalog,
        mirror: MirrorResolver,
        downloads: DownloadManager,
        store: InstanceStore,
        cache: DiskCache,
        patch_tool: PatchTool,
        runtime: RuntimeDependencies,
        launcher: ClientLauncher,
        bus: EventBus | None = None,
    ):
        self.catalog = catalog
        self.mirror = mirror
        self.downloads = downloads
        self.store = store
        self.cache = cache
        self.patch_tool = patch_tool
        self.runtime = runtime
        self.launcher = launcher
        self.bus = bus or EventBus()
        self._dir_locks: dict[Path, asyncio.Lock] = {}
        self._active: dict[Path, CancellationToken] = {}

    def cancel(self, instance_path: Path | None = None) -> int:
        """Cancel active runs.

        Args:
            instance_path: Only cancel the run on this directory

        Returns:
            Number of runs signalled
        """
        cancelled = 0
        for path, token in list(self._active.items()):
            if instance_path is None or path == instance_path.resolve():
                token.cancel("cancelled by user")
                cancelled += 1
        return cancelled

    def is_running(self, instance_path: Path) -> bool:
        """Whether a run is active on an instance directory."""
        return instance_path.resolve() in self._active

    async def run(self, request: UpdateRequest) -> UpdateResult:
        """Install or update an instance, then optionally launch it.

        Never raises for expected failures: they are published as error
        events and returned as an error result. Cancellation returns a
        cancelled result without an error event.
        """
        branch = normalize_branch(request.branch)
        token = request.cancel or CancellationToken()
        run = _Run(
            request=request,
            token=token,
            reporter=ProgressReporter(self.bus),
            branch=branch,
            log=logger.bind(branch=branch.value, requested_version=request.version),
        )
        instance_path: Path | None = None

        try:
            self._transition(run, UpdateState.PREPARING)
            run.reporter.report("preparing", 0, "launch.detail.preparing_session")
            run.reporter.report("preparing", 1, "launch.detail.checking_versions")
            versions = await self.catalog.list_versions(branch, token)
            token.raise_if_cancelled()

            is_latest = request.version == 0
            target = request.version if request.version in versions else versions[0]
            if not is_latest and target != request.version:
                run.log.warning("requested_version_unavailable", using=target)

            instance_path = self.store.resolve_instance_path(branch, 0 if is_latest else target)
            key = instance_path.resolve()
            lock = self._dir_locks.setdefault(key, asyncio.Lock())
            if lock.locked():
                raise UpdateInProgressError(f"An update is already running for {instance_path}")

            async with lock:
                self._active[key] = token
                try:
                    return await self._run_locked(run, instance_path, target, is_latest, versions)
                finally:
                    self._active.pop(key, None)

        except OperationCancelled:
            run.log.warning("update_cancelled")
            self._transition(run, UpdateState.CANCELLED)
            return UpdateResult(UpdateState.CANCELLED, branch, instance_path=instance_path)

        except NoVersionsError as e:
            return self._fail(run, "no_versions", "No versions available for this branch", e, instance_path)

        except UpdateInProgressError as e:
            return self._fail(run, "update_in_progress", str(e), e, instance_path)

        except FatalError as e:
            return self._fail(run, "fatal", f"Fatal error: {e}", e, instance_path)

        except PwrSyncError as e:
            return self._fail(run, "install", f"Failed to install game: {e}", e, instance_path)

        except Exception as e:
            run.log.exception("update_fatal_error", error=str(e))
            fatal = FatalError(str(e), detail=traceback.format_exc())
            return self._fail(run, "fatal", f"Fatal error: {e}", fatal, instance_path)

    async def _run_locked(
        self,
        run: _Run,
        instance_path: Path,
        target: int,
        is_latest: bool,
        versions: list[int],
    ) -> UpdateResult:
        self._transition(run, UpdateState.RESOLVING_VERSIONS)
        instance_path.mkdir(parents=True, exist_ok=True)
        installed = self.store.is_client_present(instance_path)
        run.log.info(
            "install_check",
            path=str(instance_path),
            is_latest=is_latest,
            target=target,
            installed=installed,
        )

        update_error = None
        if installed:
            if is_latest:
                update_error = await self._update_installed(run, instance_path, versions[0])
            else:
                update_error = await self._resume_pinned(run, instance_path, target)
        else:
            await self._install_fresh(run, instance_path, target, is_latest)
            run.reporter.report("complete", APPLY_BAND.end, "launch.detail.download_complete")

        await self._ensure_runtime(run, instance_path)
        run.token.raise_if_cancelled()

        if is_latest:
            version = self.store.resolve_version_or_latest(run.branch, 0)
        else:
            version = self.store.load_applied_version(instance_path) or target
        result = UpdateResult(
            UpdateState.DONE,
            run.branch,
            version=version,
            instance_path=instance_path,
            update_error=update_error,
        )

        if not run.request.launch_after_download():
            run.reporter.report("complete", 100, "launch.detail.done")
            self._transition(run, UpdateState.DONE)
            return result

        self._transition(run, UpdateState.LAUNCHING)
        run.reporter.report("complete", 100, "launch.detail.launching_game")
        try:
            result.launched_pid = await self.launcher.launch(instance_path, run.branch)
        except LaunchError as e:
            run.log.error("launch_failed", error=str(e))
            self.bus.error("launch", "Failed to launch game", str(e))
            self._transition(run, UpdateState.ERROR)
            result.state = UpdateState.ERROR
            result.error = f"Failed to launch game: {e}"
            return result

        if not installed:
            self.cache.clear_artifacts(run.branch)

        self._transition(run, UpdateState.DONE)
        return result

    async def _update_installed(self, run: _Run, instance_path: Path, latest: int) -> str | None:
        info = self.store.load_latest_info(run.branch)
        installed_version = info.version if info is not None else 0
        if installed_version == 0:
            installed_version = self._detect_installed_version(run, instance_path)

        run.log.info("installed_version", installed=installed_version, latest=latest)

        if installed_version >= latest:
            self.store.save_latest_info(run.branch, latest)
            self._transition(run, UpdateState.UP_TO_DATE)
            return None
        if installed_version == 0:
            run.log.info("installed_version_unknown")
            self._transition(run, UpdateState.UP_TO_DATE)
            return None

        return await self._continue_chain(run, instance_path, installed_version, latest, is_latest=True)

    async def _resume_pinned(self, run: _Run, instance_path: Path, target: int) -> str | None:
        """Finish a pinned install that stopped partway through its chain.

        Pinned instances installed without a record are taken as complete.
        """
        applied = self.store.load_applied_version(instance_path)
        if applied is None or applied >= target:
            self._transition(run, UpdateState.UP_TO_DATE)
            return None

        run.log.info("pinned_install_incomplete", applied=applied, target=target)
        if applied == 0:
            await self._install_fresh(run, instance_path, target, is_latest=False)
            return None
        return await self._continue_chain(run, instance_path, applied, target, is_latest=False)

    async def _continue_chain(
        self,
        run: _Run,
        instance_path: Path,
        installed: int,
        target: int,
        is_latest: bool,
    ) -> str | None:
        self._transition(run, UpdateState.APPLYING_DIFF_CHAIN)
        try:
            await self._apply_chain(run, instance_path, installed, target, is_latest)
        except OperationCancelled:
            raise
        except (PwrSyncError, OSError) as e:
            # The last applied version is still complete and launchable
            run.log.error("differential_update_failed", error=str(e))
            return str(e)
        return None

    def _detect_installed_version(self, run: _Run, instance_path: Path) -> int:
        if not (instance_path / RECEIPT_PATH).exists():
            return 0

        detected = self.cache.guess_version_from_artifacts(run.branch)
        if detected > 0:
            run.log.info("installed_version_from_cache", version=detected)
            self.store.save_latest_info(run.branch, detected)
        return detected

    async def _install_fresh(self, run: _Run, instance_path: Path, target: int, is_latest: bool) -> None:
        self._transition(run, UpdateState.INSTALLING_FRESH)
        run.reporter.report("download", 2, "launch.detail.preparing_download")

        if self.catalog.is_mirror_sourced(run.branch) and self.mirror.is_diff_chain(run.branch):
            run.log.info("mirror_diff_chain_install", target=target)
            self._transition(run, UpdateState.APPLYING_DIFF_CHAIN)
            await self._apply_chain(run, instance_path, 0, target, is_latest)
            return

        artifact_path = self.cache.artifact_path(run.branch, "latest" if is_latest else "version", target)
        outcome = await self._download_full_snapshot(run, target, artifact_path)

        if isinstance(outcome, MirrorDiffRequired):
            run.log.info("switching_to_mirror_diff_chain", target=outcome.target_version)
            self._transition(run, UpdateState.APPLYING_DIFF_CHAIN)
            await self._apply_chain(run, instance_path, 0, outcome.target_version, is_latest)
            return

        if isinstance(outcome, Failed):
            raise MirrorUnavailableError(outcome.reason)

        run.token.raise_if_cancelled()
        run.reporter.report("install", APPLY_BAND.start, "launch.detail.installing_butler_pwr")
        if not is_latest:
            self.store.save_applied_version(instance_path, 0)
        await self.patch_tool.apply(
            outcome.path,
            instance_path,
            self._apply_progress(run, APPLY_BAND),
            run.token,
        )
        if not is_latest:
            self.store.save_applied_version(instance_path, target)
        run.token.raise_if_cancelled()

        if is_latest:
            self.store.save_latest_info(run.branch, target)

    async def _download_full_snapshot(self, run: _Run, target: int, artifact_path: Path) -> DownloadOutcome:
        """Fetch a full snapshot, primary first, then the mirror."""
        if not self.catalog.is_mirror_sourced(run.branch):
            url = self.catalog.primary_url(run.branch, target)
            try:
                local = await self.downloads.fetch_artifact(
                    PatchArtifact(0, target, url, artifact_path),
                    self._download_progress(run, DOWNLOAD_BAND, "launch.detail.downloading_official"),
                    run.token,
                )
                return Downloaded(local, "primary")
            except OperationCancelled:
                raise
            except _SOURCE_ERRORS as e:
                run.log.warning("primary_download_failed", version=target, error=str(e))
                partial_path(artifact_path).unlink(missing_ok=True)

        mirror_url = await self.mirror.get_full_url(self.catalog.os_name, self.catalog.arch, run.branch, target)
        if mirror_url is None:
            if self.mirror.is_diff_chain(run.branch):
                return MirrorDiffRequired(target)
            return Failed(f"Version {target} is not available from the patch server or the mirror")

        try:
            local = await self.downloads.fetch_artifact(
                PatchArtifact(0, target, mirror_url, artifact_path),
                self._download_progress(run, DOWNLOAD_BAND, "launch.detail.downloading_mirror"),
                run.token,
            )
        except OperationCancelled:
            raise
        except _SOURCE_ERRORS as e:
            run.log.error("mirror_download_failed", version=target, error=str(e))
            return Failed(f"Download failed from both the patch server and the mirror: {e}")
        return Downloaded(local, "mirror")

    async def _apply_chain(
        self,
        run: _Run,
        instance_path: Path,
        installed: int,
        target: int,
        is_latest: bool,
    ) -> None:
        """Download and apply every planned step in order.

        The applied version is recorded after each step, so the bookkeeping
        always names the last fully applied version.
        """
        shape = BranchShape.DIFF_CHAIN
        if self.catalog.is_mirror_sourced(run.branch) and branch_shape(run.branch) is BranchShape.FULL_SNAPSHOT:
            shape = BranchShape.FULL_SNAPSHOT

        steps = plan_patch_chain(installed, target, shape)
        run.log.info(
            "patch_chain_planned",
            installed=installed,
            target=target,
            steps=[step.to_version for step in steps],
        )
        if not is_latest and installed == 0 and steps:
            self.store.save_applied_version(instance_path, 0)

        for index, step in enumerate(steps):
            run.token.raise_if_cancelled()
            download_band, apply_band = CHAIN_BAND.split(index, len(steps)).divide(_STEP_DOWNLOAD_SHARE)
            kind = "mirror_full" if shape is BranchShape.FULL_SNAPSHOT else "patch"
            artifact_path = self.cache.artifact_path(run.branch, kind, step.to_version)

            local = await self._download_step(run, step, shape, artifact_path, download_band)
            run.token.raise_if_cancelled()

            run.reporter.report("update", apply_band.start, "launch.detail.applying_patch")
            await self.patch_tool.apply(local, instance_path, self._apply_progress(run, apply_band), run.token)

            local.unlink(missing_ok=True)
            self._record_applied(run, instance_path, is_latest, step.to_version)
            run.log.info("patch_applied", version=step.to_version, step=index + 1, total=len(steps))

    def _record_applied(self, run: _Run, instance_path: Path, is_latest: bool, version: int) -> None:
        if is_latest:
            self.store.save_latest_info(run.branch, version)
        else:
            self.store.save_applied_version(instance_path, version)

    async def _download_step(
        self,
        run: _Run,
        step: PatchStep,
        shape: BranchShape,
        artifact_path: Path,
        band: ProgressBand,
    ) -> Path:
        if not self.catalog.is_mirror_sourced(run.branch):
            url = self.catalog.primary_url(run.branch, step.to_version, step.from_version)
            try:
                return await self.downloads.fetch_artifact(
                    PatchArtifact(step.from_version, step.to_version, url, artifact_path),
                    self._download_progress(run, band, "launch.detail.downloading_official"),
                    run.token,
                )
            except OperationCancelled:
                raise
            except _SOURCE_ERRORS as e:
                run.log.warning("primary_patch_failed", version=step.to_version, error=str(e))
                partial_path(artifact_path).unlink(missing_ok=True)

        os_name, arch = self.catalog.os_name, self.catalog.arch
        if shape is BranchShape.FULL_SNAPSHOT:
            url = await self.mirror.get_full_url(os_name, arch, run.branch, step.to_version)
        else:
            url = await self.mirror.get_diff_url(os_name, arch, run.branch, step.from_version, step.to_version)
        if url is None:
            raise MirrorUnavailableError(
                f"Mirror has no patch {step.from_version} -> {step.to_version} for {os_name}/{arch}"
            )

        return await self.downloads.fetch_artifact(
            PatchArtifact(step.from_version, step.to_version, url, artifact_path),
            self._download_progress(run, band, "launch.detail.downloading_mirror"),
            run.token,
        )

    async def _ensure_runtime(self, run: _Run, instance_path: Path) -> None:
        self._transition(run, UpdateState.ENSURING_RUNTIME_DEPS)
        run.reporter.report("install", RUNTIME_BAND.start, "launch.detail.checking_runtime")

        def on_progress(fraction: float, message_key: str) -> None:
            run.reporter.report("install", RUNTIME_BAND.map(fraction), message_key)

        try:
            await self.runtime.ensure(instance_path, on_progress, run.token)
        except OperationCancelled:
            raise
        except (PwrSyncError, OSError) as e:
            run.log.warning("runtime_dependencies_warning", error=str(e))

    def _download_progress(self, run: _Run, band: ProgressBand, message_key: str) -> ProgressCallback:
        def on_progress(downloaded: int, total: int | None) -> None:
            fraction = downloaded / total if total else 0.0
            run.reporter.report("download", band.map(fraction), message_key, downloaded, total or 0)

        return on_progress

    def _apply_progress(self, run: _Run, band: ProgressBand) -> Callable[[float], None]:
        def on_progress(fraction: float) -> None:
            run.reporter.report("install", band.map(fraction), "launch.detail.installing_butler_pwr")

        return on_progress

    def _transition(self, run: _Run, state: UpdateState) -> None:
        if run.state.is_terminal:
            return
        run.log.debug("update_state", previous=run.state.value, state=state.value)
        run.state = state
        self.bus.state_changed(state, state.exit_code)

    def _fail(
        self,
        run: _Run,
        error_type: str,
        message: str,
        error: Exception,
        instance_path: Path | None,
    ) -> UpdateResult:
        run.log.error("update_failed", error_type=error_type, error=str(error))
        if isinstance(error, PatchApplicationError):
            detail = error.output
        elif isinstance(error, FatalError) and error.detail:
            detail = error.detail
        else:
            detail = str(error)
        self.bus.error(error_type, message, detail)
        self._transition(run, UpdateState.ERROR)
        return UpdateResult(UpdateState.ERROR, run.branch, instance_path=instance_path, error=message)
