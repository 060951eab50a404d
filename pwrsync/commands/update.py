"""Install or update an instance and launch the client."""

from __future__ import annotations

import asyncio
import json
import signal

import click
import structlog
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn

from pwrsync.core.cancel import CancellationToken
from pwrsync.core.config import AppConfig
from pwrsync.core.events import ErrorEvent, Event, ProgressEvent, StateChangedEvent
from pwrsync.core.orchestrator import UpdateRequest, UpdateResult
from pwrsync.core.services import open_services
from pwrsync.core.utils import format_size, normalize_branch

logger = structlog.get_logger()


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _describe(event: ProgressEvent) -> str:
    """Progress line shown next to the bar."""
    text = event.message_key.rsplit(".", 1)[-1].replace("_", " ")
    if event.total_bytes:
        text += f" ({format_size(event.downloaded_bytes)} / {format_size(event.total_bytes)})"
    return text


@click.command("update")
@click.option("--branch", "-b", default=None, help="Branch to install (defaults to the configured branch)")
@click.option("--version", "-V", "version", type=int, default=0, help="Pinned version, 0 for the latest instance")
@click.option("--no-launch", is_flag=True, help="Do not start the client afterwards")
@click.pass_context
def update(ctx: click.Context, branch: str | None, version: int, no_launch: bool) -> None:
    """Install or update an instance, then launch the client.

    Without --version the rolling latest instance is installed or patched
    forward to the newest version. Press Ctrl+C to cancel; the instance is
    left at the last fully applied version and the command exits with 130.
    """
    config, console, verbose, _ = _get_context_objects(ctx)
    normalized = normalize_branch(branch or config.branch)
    token = CancellationToken()
    errors: list[ErrorEvent] = []

    async def _run(progress: Progress | None) -> UpdateResult:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        except (NotImplementedError, RuntimeError):
            logger.debug("signal_handler_unavailable")

        task_id = progress.add_task("preparing", total=100) if progress is not None else None

        def on_event(event: Event) -> None:
            if isinstance(event, ErrorEvent):
                errors.append(event)
            elif isinstance(event, ProgressEvent) and progress is not None and task_id is not None:
                progress.update(task_id, completed=event.percent, description=_describe(event))
            elif isinstance(event, StateChangedEvent) and verbose:
                console.log(f"state: {event.state.value}")

        async with open_services(config, ctx.obj.get("transport")) as services:
            services.bus.add_listener(on_event)
            try:
                return await services.orchestrator.run(
                    UpdateRequest(
                        branch=normalized.value,
                        version=version,
                        launch_after_download=lambda: not no_launch,
                        cancel=token,
                    )
                )
            finally:
                services.bus.remove_listener(on_event)

    if config.output_format == "rich":
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            result = asyncio.run(_run(progress))
    else:
        result = asyncio.run(_run(None))

    if config.output_format == "json":
        print(json.dumps(
            {
                "state": result.state.value,
                "branch": result.branch.value,
                "version": result.version,
                "instance_path": str(result.instance_path) if result.instance_path else None,
                "error": result.error,
                "update_error": result.update_error,
                "launched_pid": result.launched_pid,
            },
            indent=2,
        ))
    elif result.cancelled:
        console.print("[yellow]Update cancelled[/yellow]")
    elif result.success:
        if result.update_error:
            console.print(f"[yellow]Update failed, kept the installed version: {result.update_error}[/yellow]")
        label = f"v{result.version}" if result.version else "unknown version"
        console.print(f"[green]{normalized.value} {label} ready at {result.instance_path}[/green]")
        if result.launched_pid is not None:
            console.print(f"Client started (pid {result.launched_pid})")
    else:
        console.print(f"[red]Error: {result.error}[/red]")
        if verbose:
            for event in errors:
                console.print(f"[dim]{event.technical_detail}[/dim]")

    if result.state.exit_code:
        ctx.exit(result.state.exit_code)
