"""Query available versions and the mirror."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
import structlog
from rich.console import Console
from rich.table import Table

from pwrsync.core.config import AppConfig
from pwrsync.core.errors import NoVersionsError, PwrSyncError
from pwrsync.core.services import open_services
from pwrsync.core.types import Branch
from pwrsync.core.utils import branch_shape, normalize_branch

logger = structlog.get_logger()

BRANCH_CHOICE = click.Choice(["release", "pre-release", "prerelease", "latest"], case_sensitive=False)


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract common context objects."""
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    verbose: bool = ctx.obj["verbose"]
    debug: bool = ctx.obj["debug"]
    return config, console, verbose, debug


def _output_json(data: dict[str, Any] | list[Any], console: Console) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


@click.group("versions", short_help="Query available versions.")
def versions_group() -> None:
    """Query versions published on the patch server."""


@versions_group.command("list")
@click.argument("branch", type=BRANCH_CHOICE, default="release")
@click.option("--refresh", "-r", is_flag=True, help="Probe the server even if the cache is fresh")
@click.pass_context
def list_versions(ctx: click.Context, branch: str, refresh: bool) -> None:
    """List available versions of BRANCH, newest first."""
    config, console, verbose, _ = _get_context_objects(ctx)
    normalized = normalize_branch(branch)

    async def _run() -> tuple[list[int], bool]:
        async with open_services(config, ctx.obj.get("transport")) as services:
            versions = await services.catalog.list_versions(normalized, force_refresh=refresh)
            return versions, services.catalog.is_mirror_sourced(normalized)

    try:
        versions, mirror_sourced = asyncio.run(_run())
    except NoVersionsError as e:
        console.print(f"[red]No versions available: {e}[/red]")
        raise click.Abort() from e
    except PwrSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json(
            {"branch": normalized.value, "versions": versions, "mirror_sourced": mirror_sourced},
            console,
        )
        return

    source = "mirror" if mirror_sourced else "patch server"
    console.print(f"[bold]{normalized.value}[/bold]: {len(versions)} versions ({source})")
    if verbose or len(versions) <= 20:
        console.print(", ".join(str(v) for v in versions))
    else:
        console.print(", ".join(str(v) for v in versions[:20]) + ", ...")


@versions_group.command("status")
@click.argument("branch", type=BRANCH_CHOICE, required=False)
@click.pass_context
def version_status(ctx: click.Context, branch: str | None) -> None:
    """Compare latest instances with the newest available versions."""
    config, console, _, _ = _get_context_objects(ctx)
    branches = [normalize_branch(branch)] if branch else list(Branch)

    async def _run() -> list[dict[str, Any]]:
        rows = []
        async with open_services(config, ctx.obj.get("transport")) as services:
            for b in branches:
                status = await services.catalog.get_version_status(b, services.store)
                pending = await services.catalog.get_pending_update_info(b, services.store)
                rows.append({
                    "branch": b.value,
                    "status": status.status,
                    "installed_version": status.installed_version,
                    "latest_version": status.latest_version,
                    "has_old_user_data": pending.has_old_user_data if pending else False,
                })
        return rows

    rows = asyncio.run(_run())

    if config.output_format == "json":
        _output_json(rows, console)
        return

    table = Table(title="Latest instance status", show_header=True)
    table.add_column("Branch", style="cyan")
    table.add_column("Status", style="yellow")
    table.add_column("Installed", justify="right")
    table.add_column("Latest", justify="right", style="green")
    for row in rows:
        table.add_row(
            row["branch"],
            row["status"],
            str(row["installed_version"] or "-"),
            str(row["latest_version"] or "-"),
        )
    console.print(table)


@click.group("mirror", short_help="Inspect the secondary mirror.")
def mirror_group() -> None:
    """Inspect the secondary mirror."""


@mirror_group.command("list")
@click.argument("branch", type=BRANCH_CHOICE, default="release")
@click.pass_context
def mirror_list(ctx: click.Context, branch: str) -> None:
    """List versions the mirror offers for BRANCH."""
    config, console, verbose, _ = _get_context_objects(ctx)
    normalized = normalize_branch(branch)

    async def _run() -> tuple[list[int], dict[str, str], str, str]:
        async with open_services(config, ctx.obj.get("transport")) as services:
            os_name, arch = services.catalog.os_name, services.catalog.arch
            versions = await services.mirror.list_available_versions(os_name, arch, normalized)
            urls = await services.mirror.get_all_platform_urls(os_name, arch, normalized) if verbose else {}
            return versions, urls, os_name, arch

    versions, urls, os_name, arch = asyncio.run(_run())
    shape = branch_shape(normalized).value

    if config.output_format == "json":
        _output_json(
            {
                "branch": normalized.value,
                "platform": f"{os_name}/{arch}",
                "shape": shape,
                "versions": versions,
                "files": urls,
            },
            console,
        )
        return

    if not versions:
        console.print(f"[yellow]Mirror has no {normalized.value} files for {os_name}/{arch}[/yellow]")
        return

    console.print(f"[bold]{normalized.value}[/bold] on mirror ({shape}, {os_name}/{arch}): {len(versions)} versions")
    console.print(", ".join(str(v) for v in versions))
    if urls:
        table = Table(show_header=True)
        table.add_column("File", style="cyan")
        table.add_column("URL", style="dim")
        for name, url in sorted(urls.items()):
            table.add_row(name, url)
        console.print(table)
