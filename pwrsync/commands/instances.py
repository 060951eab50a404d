"""Manage locally installed instances."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from pwrsync.core.config import AppConfig
from pwrsync.core.instances import InstanceStore
from pwrsync.core.utils import format_size, normalize_branch

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


def _store(config: AppConfig) -> InstanceStore:
    return InstanceStore(config.instance_root, config.legacy_dirs)


@click.group("instances", short_help="Manage installed instances.")
def instances_group() -> None:
    """Manage locally installed client instances."""


@instances_group.command("list")
@click.pass_context
def list_instances(ctx: click.Context) -> None:
    """List installed instances of both branches."""
    config, console, _, _ = _get_context_objects(ctx)
    store = _store(config)
    instances = store.list_installed_instances()

    if config.output_format == "json":
        _output_json([instance.model_dump(mode="json") for instance in instances], console)
        return

    if not instances:
        console.print(f"[yellow]No instances in {store.root}[/yellow]")
        return

    table = Table(title=f"Instances in {store.root}", show_header=True)
    table.add_column("Branch", style="cyan")
    table.add_column("Version", justify="right", style="green")
    table.add_column("Name")
    table.add_column("Installed")
    table.add_column("UserData", justify="right")
    table.add_column("Size", justify="right")

    for instance in instances:
        version = "latest" if instance.is_latest else str(instance.version)
        if instance.is_latest:
            resolved = store.resolve_version_or_latest(instance.branch, 0)
            if resolved:
                version = f"latest (v{resolved})"
        table.add_row(
            instance.branch.value,
            version,
            instance.custom_name or "",
            "[green]yes[/green]" if instance.is_installed else "[red]no[/red]",
            format_size(instance.user_data_size) if instance.has_user_data else "-",
            format_size(instance.total_size),
        )
    console.print(table)


@instances_group.command("delete")
@click.argument("branch", type=BRANCH_CHOICE)
@click.argument("version", type=int)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete_instance(ctx: click.Context, branch: str, version: int, yes: bool) -> None:
    """Delete one instance. VERSION 0 is the latest instance."""
    config, console, _, _ = _get_context_objects(ctx)
    normalized = normalize_branch(branch)
    store = _store(config)
    label = "latest" if version == 0 else str(version)

    if not yes:
        click.confirm(f"Delete {normalized.value}/{label} including its UserData?", abort=True)

    try:
        removed = store.delete_instance(normalized, version)
    except OSError as e:
        console.print(f"[red]Failed to delete {normalized.value}/{label}: {e}[/red]")
        raise click.Abort() from e

    if removed:
        console.print(f"[green]Deleted {normalized.value}/{label}[/green]")
    else:
        console.print(f"[yellow]No instance {normalized.value}/{label}[/yellow]")


@instances_group.command("rename")
@click.argument("branch", type=BRANCH_CHOICE)
@click.argument("version", type=int)
@click.argument("name", required=False)
@click.pass_context
def rename_instance(ctx: click.Context, branch: str, version: int, name: str | None) -> None:
    """Set the display NAME of an instance, or clear it when omitted."""
    config, console, _, _ = _get_context_objects(ctx)
    normalized = normalize_branch(branch)

    if not _store(config).set_custom_name(normalized, version, name):
        console.print(f"[red]Instance not found: {normalized.value}/{version}[/red]")
        raise click.Abort()

    if name:
        console.print(f"[green]Renamed {normalized.value}/{version} to {name}[/green]")
    else:
        console.print(f"[green]Cleared name of {normalized.value}/{version}[/green]")


@instances_group.command("migrate")
@click.option(
    "--from",
    "legacy_root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Legacy instance folder to migrate (defaults to all known locations)",
)
@click.pass_context
def migrate_instances(ctx: click.Context, legacy_root: Path | None) -> None:
    """Fold legacy release-5 / release-v5 folders into the current layout."""
    config, console, _, _ = _get_context_objects(ctx)
    store = _store(config)
    store.ensure_root()

    try:
        if legacy_root is not None:
            migrated = store.migrate_legacy_instances(legacy_root)
        else:
            migrated = store.migrate_all_legacy()
    except OSError as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json({"migrated": migrated}, console)
    elif migrated:
        console.print(f"[green]Migrated {migrated} instance(s)[/green]")
    else:
        console.print("Nothing to migrate")
