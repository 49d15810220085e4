"""Command-line interface for bandsync."""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from .config import Config, get_config, load_config
from .errors import BandSyncError
from .models import ConflictType, EntityType, ResolutionAction, SyncResult, SyncStatus
from .sync.sync_manager import CloudSyncManager
from .sync_config import SyncConfigManager


console = Console()

STATUS_STYLES = {
    SyncStatus.UP_TO_DATE: "[green]✅ Up to date[/green]",
    SyncStatus.CONFLICTS_DETECTED: "[yellow]⚠️  Conflicts detected[/yellow]",
    SyncStatus.OFFLINE: "[dim]📴 Offline[/dim]",
    SyncStatus.ERROR: "[red]❌ Error[/red]",
    SyncStatus.AUTHENTICATION_REQUIRED: "[red]🔒 Authentication required[/red]",
    SyncStatus.SYNCING: "[cyan]🔄 Syncing[/cyan]",
}

RESOLUTION_CHOICES = {
    "local": ResolutionAction.KEEP_LOCAL,
    "remote": ResolutionAction.ACCEPT_REMOTE,
    "merge": ResolutionAction.MERGE_ANNOTATIONS,
    "layer": ResolutionAction.LAYER_SEPARATE,
}


def get_sync_manager() -> CloudSyncManager:
    """Get initialized sync manager."""
    config = get_config()
    settings = SyncConfigManager(Path(config.data_dir)).settings
    return CloudSyncManager.from_config(config, settings)


def run_once(manager: CloudSyncManager, operation):
    """Run one manager operation, stopping any background sync it started."""
    async def runner():
        try:
            return await operation
        finally:
            await manager.disconnect()

    return asyncio.run(runner())


def print_sync_result(result: SyncResult):
    console.print(STATUS_STYLES.get(result.status, result.status.value))
    console.print(
        f"Applied {result.remote_applied} remote changes, pushed {result.local_pushed} local changes"
        + (f", auto-merged {result.auto_resolved}" if result.auto_resolved else "")
    )
    if result.blobs_downloaded or result.blobs_uploaded:
        console.print(f"Files: {result.blobs_downloaded} downloaded, {result.blobs_uploaded} uploaded")
    if result.error:
        console.print(f"[red]{result.error_kind}: {result.error}[/red]")


@click.group()
@click.option("--config", type=click.Path(), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx, config, verbose):
    """bandsync - share songs, setlists and annotations across devices."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose

    if config:
        Config.reset()
        load_config(Path(config))
    else:
        get_config()


@main.command()
@click.argument("name")
def init(name: str):
    """Create a new local group."""
    manager = get_sync_manager()
    group = asyncio.run(manager.create_group(name))
    console.print(f"[green]✅ Created group '{group.name}'[/green] [dim]{group.group_id}[/dim]")


@main.command()
def status():
    """Show local groups and pending changes."""
    manager = get_sync_manager()

    async def collect():
        rows = []
        for group in await manager.store.list_groups():
            cursor = await manager.store.get_cursor(group.group_id)
            pending = await manager.tracker.pending_count(group.group_id)
            rows.append((group, cursor, pending))
        return rows

    rows = asyncio.run(collect())
    if not rows:
        console.print("[dim]No groups yet. Create one with 'bandsync init NAME' or join with 'bandsync join CODE'.[/dim]")
        return

    table = Table(title="Groups")
    table.add_column("Group", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Cloud", justify="center")
    table.add_column("Pending", justify="right")
    table.add_column("Last sync")

    for group, cursor, pending in rows:
        table.add_row(
            group.name,
            group.group_id,
            "✅" if group.cloud_enabled else "⚪",
            str(pending),
            cursor.last_sync_at.strftime('%Y-%m-%d %H:%M:%S') if cursor.last_sync_at else "never",
        )
    console.print(table)


@main.command()
@click.argument("group_id")
@click.option("--resolve", is_flag=True, help="Interactively resolve detected conflicts")
def sync(group_id: str, resolve: bool):
    """Synchronize a group with its cloud folder."""
    manager = get_sync_manager()
    result = asyncio.run(manager.sync_group(group_id))
    print_sync_result(result)

    if not result.conflicts:
        return

    console.print(f"\n[bold cyan]Found {len(result.conflicts)} unresolved conflicts[/bold cyan]")
    for i, conflict in enumerate(result.conflicts, 1):
        console.print(f"\n[bold yellow]Conflict {i}/{len(result.conflicts)}[/bold yellow]")
        console.print(f"Type: {conflict.conflict_type.value}")
        console.print(f"Entity: {conflict.entity_type.value} {conflict.entity_name} [dim]{conflict.entity_id}[/dim]")
        console.print(f"Local:  {conflict.local_version.description} "
                      f"({conflict.local_version.author_name}, {conflict.local_version.timestamp:%Y-%m-%d %H:%M:%S})")
        console.print(f"Remote: {conflict.remote_version.description} "
                      f"({conflict.remote_version.author_name}, {conflict.remote_version.timestamp:%Y-%m-%d %H:%M:%S})")

        if not resolve:
            continue

        choices = ["local", "remote"]
        if conflict.entity_type == EntityType.ANNOTATION and conflict.conflict_type != ConflictType.DELETE_MODIFY:
            choices += ["merge", "layer"]
        choices += ["skip", "quit"]
        choice = Prompt.ask("Resolution action", choices=choices, default="skip")

        if choice == "quit":
            break
        if choice == "skip":
            console.print("[dim]Skipped[/dim]")
            continue

        resolution = asyncio.run(manager.resolve_conflict(group_id, conflict, RESOLUTION_CHOICES[choice]))
        if resolution.success:
            console.print(f"[green]✅ Resolved with {RESOLUTION_CHOICES[choice].value}[/green]")
        else:
            console.print(f"[red]Failed to resolve: {resolution.error}[/red]")


@main.command()
@click.argument("group_id")
def share(group_id: str):
    """Enable cloud sync for a group and print its share code."""
    manager = get_sync_manager()
    result = run_once(manager, manager.enable_cloud_sync(group_id))
    if not result.success and result.share_code is None:
        console.print(f"[red]Failed to share group: {result.error_kind}: {result.error}[/red]")
        raise SystemExit(1)

    share_code = result.share_code
    console.print(f"[bold]Share code:[/bold] [cyan]{share_code.code}[/cyan]")
    console.print(f"[bold]Link:[/bold] {share_code.deep_link}")
    if share_code.expires_at:
        console.print(f"[dim]Expires {share_code.expires_at:%Y-%m-%d %H:%M} UTC[/dim]")
    if result.sync_result:
        print_sync_result(result.sync_result)


@main.command()
@click.argument("code")
def join(code: str):
    """Join a shared group using a share code or link."""
    manager = get_sync_manager()
    result = run_once(manager, manager.join_group(code))
    if not result.success and result.group is None:
        console.print(f"[red]Failed to join: {result.error_kind}: {result.error}[/red]")
        raise SystemExit(1)

    console.print(f"[green]✅ Joined '{result.group.name}'[/green] [dim]{result.group.group_id}[/dim]")
    if result.sync_result:
        print_sync_result(result.sync_result)


@main.command()
@click.argument("group_id")
@click.option("--limit", "-l", type=int, default=20, help="Number of entries to show")
def log(group_id: str, limit: int):
    """Show the most recent changes recorded for a group."""
    manager = get_sync_manager()
    entries = list(manager.tracker.get_changes_since(group_id))

    table = Table(title="Local changes")
    table.add_column("When", style="dim")
    table.add_column("Device")
    table.add_column("Change")
    for entry in entries[-limit:]:
        table.add_row(entry.timestamp.strftime('%Y-%m-%d %H:%M:%S'), entry.device_name, entry.description)
    console.print(table)


@main.command()
@click.argument("group_id")
def devices(group_id: str):
    """List devices participating in a group."""
    manager = get_sync_manager()
    try:
        device_list = asyncio.run(manager.list_devices(group_id))
    except BandSyncError as e:
        console.print(f"[red]Failed to list devices: {e.kind}: {e}[/red]")
        raise SystemExit(1)

    table = Table(title="Devices")
    table.add_column("Device", style="cyan")
    table.add_column("Version")
    table.add_column("Last seen")
    table.add_column("Online", justify="center")
    for device in device_list:
        table.add_row(
            device.device_name,
            device.app_version,
            device.last_seen.strftime('%Y-%m-%d %H:%M:%S'),
            "🟢" if device.is_online else "⚪",
        )
    console.print(table)


@main.command()
@click.argument("group_id")
def prune(group_id: str):
    """Remove synced change log entries older than the retention period."""
    manager = get_sync_manager()
    try:
        removed = asyncio.run(manager.prune_history(group_id))
    except BandSyncError as e:
        console.print(f"[red]Failed to prune: {e.kind}: {e}[/red]")
        raise SystemExit(1)
    console.print(f"Removed {removed} old change log entries")


@main.command()
@click.argument("group_id")
def unlink(group_id: str):
    """Stop syncing a group with its cloud folder on this device."""
    manager = get_sync_manager()
    result = asyncio.run(manager.disable_cloud_sync(group_id))
    if not result.success:
        console.print(f"[red]Failed to unlink: {result.error_kind}: {result.error}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✅ '{result.group.name}' is no longer synced[/green]")


@main.command()
@click.argument("group_id")
def watch(group_id: str):
    """Keep a group in sync until interrupted."""
    manager = get_sync_manager()
    manager.set_progress_callback(lambda _, message: console.print(f"[dim]{message}[/dim]"))

    async def run():
        manager.start_continuous_sync(group_id)
        try:
            await manager.continuous_tasks[group_id]
        finally:
            await manager.disconnect()

    console.print(f"Syncing every {manager.settings.sync_interval_seconds}s, press Ctrl+C to stop")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("Stopped")
        return

    last_result = manager.last_results.get(group_id)
    if last_result:
        print_sync_result(last_result)


if __name__ == "__main__":
    main()
