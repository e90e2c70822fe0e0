"""Main CLI interface for Page Changes."""

import asyncio
import logging
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax
from rich.table import Table

from page_changes.core.config import ChangesConfig, load_config
from page_changes.core.errors import InvalidChangeSetIdError, PageStorageError
from page_changes.core.service import ChangeService
from page_changes.hooks import handler as hook_handler
from page_changes.models.change import ChangeSet, ChangeSetStatus, FileEventType
from page_changes.models.revert import RevertMode
from page_changes.models.summary import ChangeSetSummary

console = Console()

STATUS_LABELS = {
    ChangeSetStatus.ACTIVE: "🟢 Active",
    ChangeSetStatus.COMPLETED: "⚫ Completed",
    ChangeSetStatus.UNDO: "↩️  Undo",
}


def get_service(ctx: click.Context) -> ChangeService:
    """Build the service from the configuration on the click context."""
    return ChangeService.from_config(ctx.obj["config"])


def _format_time(summary: ChangeSetSummary) -> str:
    return summary.sort_time.astimezone().strftime("%Y-%m-%d %H:%M")


def _print_summaries(session_key: str, summaries: List[ChangeSetSummary]) -> None:
    table = Table(title=f"Change Sets for {session_key}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Run", style="green")
    table.add_column("Time", style="magenta")
    table.add_column("Files", style="blue", justify="right")
    table.add_column("+/-", style="yellow", justify="right")
    table.add_column("Status", style="red")

    for summary in summaries:
        totals = summary.totals
        table.add_row(
            summary.id,
            summary.run_id,
            _format_time(summary),
            str(totals.files_changed),
            f"+{totals.additions} -{totals.deletions}",
            STATUS_LABELS.get(summary.status, summary.status.value),
        )
    console.print(table)


def _print_change_set(change_set: ChangeSet, show_diff: bool) -> None:
    console.print(f"[bold]Change set:[/bold] {change_set.id}")
    console.print(f"[bold]Session:[/bold] {change_set.session_key}  [bold]Run:[/bold] {change_set.run_id}")
    console.print(f"[bold]Status:[/bold] {STATUS_LABELS.get(change_set.status)}")
    totals = change_set.totals
    console.print(
        f"[bold]Totals:[/bold] +{totals.additions} -{totals.deletions} "
        f"in {totals.files_changed} files"
    )

    for entry in change_set.files:
        if not entry.exists_before and entry.exists_after:
            label = "[green]added[/green]"
        elif entry.exists_before and not entry.exists_after:
            label = "[red]removed[/red]"
        else:
            label = "[yellow]modified[/yellow]"

        if not entry.diffable:
            reason = "too large to diff" if entry.too_large else "pre-run content unknown"
            console.print(f"\n📄 {entry.path} ({label}) [dim]{reason}[/dim]")
            continue
        stats = entry.stats
        console.print(
            f"\n📄 {entry.path} ({label}) "
            f"[green]+{stats.additions if stats else 0}[/green] "
            f"[red]-{stats.deletions if stats else 0}[/red]"
        )
        for hunk in entry.hunks or []:
            console.print(f"  [dim]hunk {hunk.id}[/dim]")
            if show_diff:
                header = f"@@ -{hunk.old_start},{hunk.old_lines} +{hunk.new_start},{hunk.new_lines} @@"
                console.print(Syntax("\n".join([header, *hunk.lines]), "diff", theme="ansi_dark"))


@click.group()
@click.version_option(package_name="page-changes")
@click.option(
    "--home",
    type=click.Path(file_okay=False),
    envvar="PAGE_CHANGES_HOME",
    help="Base directory holding pages/ and changes/",
)
@click.option("--verbose", "-v", is_flag=True, help="Show log output")
@click.pass_context
def main(ctx: click.Context, home: Optional[str], verbose: bool):
    """Page Changes - track and undo agent edits to your pages."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(message)s", handlers=[RichHandler(console=console)]
        )
    try:
        config = load_config(home)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command("list")
@click.argument("session_key")
@click.pass_context
def list_command(ctx: click.Context, session_key: str):
    """List change sets for a session."""
    summaries = asyncio.run(get_service(ctx).list_change_sets(session_key))
    if not summaries:
        console.print("[yellow]No change sets found[/yellow]")
        return
    _print_summaries(session_key, summaries)


@main.command()
@click.argument("change_set_id")
@click.option("--diff", "show_diff", is_flag=True, help="Show hunk contents")
@click.pass_context
def show(ctx: click.Context, change_set_id: str, show_diff: bool):
    """Show a change set with its hunks."""
    try:
        change_set = asyncio.run(get_service(ctx).load_change_set(change_set_id))
    except InvalidChangeSetIdError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e
    if change_set is None:
        console.print("[red]Change set not found[/red]")
        raise click.Abort()
    _print_change_set(change_set, show_diff)


@main.command()
@click.argument("change_set_id")
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in RevertMode]),
    default=RevertMode.ALL.value,
    show_default=True,
    help="Revert every file, one file, or one hunk",
)
@click.option("--path", help="File to revert (file and hunk modes)")
@click.option("--hunk-id", help="Hunk to revert (hunk mode)")
@click.pass_context
def revert(
    ctx: click.Context,
    change_set_id: str,
    mode: str,
    path: Optional[str],
    hunk_id: Optional[str],
):
    """Undo the changes of a change set."""
    if mode in (RevertMode.FILE.value, RevertMode.HUNK.value) and not path:
        console.print(f"[red]Error: --path is required for --mode {mode}[/red]")
        raise click.Abort()
    if mode == RevertMode.HUNK.value and not hunk_id:
        console.print("[red]Error: --hunk-id is required for --mode hunk[/red]")
        raise click.Abort()

    try:
        result = asyncio.run(get_service(ctx).revert(change_set_id, mode, path, hunk_id))
    except InvalidChangeSetIdError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if result is None:
        console.print("[red]Change set not found[/red]")
        raise click.Abort()
    if not result.applied:
        console.print("[red]❌ Could not apply undo - the file changed since this diff[/red]")
        raise click.Abort()

    totals = result.change_set.totals
    console.print(
        f"[green]✅ Reverted {mode}[/green] (now +{totals.additions} -{totals.deletions})"
    )
    if result.undo_change_set:
        console.print(
            f"↩️  Redo with: page-changes revert {result.undo_change_set.id} --mode all"
        )


@main.command()
@click.option("--session", "session_key", help="Only prune this session")
@click.pass_context
def prune(ctx: click.Context, session_key: Optional[str]):
    """Delete change sets older than the retention window."""
    config: ChangesConfig = ctx.obj["config"]
    removed = asyncio.run(get_service(ctx).store.prune_old_change_sets(session_key))
    console.print(
        f"🧹 Removed {removed} change sets older than {config.retention_days} days"
    )


@main.command()
@click.argument("phase", type=click.Choice(["start", "end"]))
@click.argument("session_key")
@click.argument("run_id")
@click.pass_context
def run(ctx: click.Context, phase: str, session_key: str, run_id: str):
    """Signal a run start or end."""
    service = get_service(ctx)
    if phase == "start":
        result = asyncio.run(service.start_run(session_key, run_id))
        console.print(f"🚀 Started run {run_id} ({result.change_set.id})")
        if result.orphaned_runs_closed:
            console.print(
                f"[yellow]Closed orphaned runs: {', '.join(result.orphaned_runs_closed)}[/yellow]"
            )
        return

    change_set = asyncio.run(service.end_run(session_key, run_id))
    if change_set is None:
        console.print(f"[yellow]No change set for run {run_id}[/yellow]")
        return
    totals = change_set.totals
    console.print(
        f"✅ Completed run {run_id}: +{totals.additions} -{totals.deletions} "
        f"in {totals.files_changed} files"
    )


@main.command()
@click.argument("session_key")
@click.argument("run_id")
@click.argument("path")
@click.argument("event_type", type=click.Choice([event.value for event in FileEventType]))
@click.pass_context
def record(ctx: click.Context, session_key: str, run_id: str, path: str, event_type: str):
    """Record a file event outside of a hook stream."""
    try:
        change_set = asyncio.run(
            get_service(ctx).record_file_change(session_key, run_id, path, event_type)
        )
    except PageStorageError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e
    entry = change_set.get_file(path)
    stats = entry.stats if entry else None
    if stats:
        console.print(f"📝 {path}: +{stats.additions} -{stats.deletions}")
    else:
        console.print(f"📝 {path}: recorded")


@main.command()
@click.pass_context
def hook(ctx: click.Context):
    """Process JSON events from stdin (one per line)."""
    sys.exit(hook_handler.main(ctx.obj["config"]))


if __name__ == "__main__":
    main()
