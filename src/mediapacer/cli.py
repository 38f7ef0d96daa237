"""CLI entry point for mediapacer.

Provides commands:
  - enqueue: Create a queue (or append to one) from payload references
  - queues: List queues with their aggregate status and progress
  - status: Show one queue's items and resume ledger
  - run: Process a queue against the remote service, with live phase display
  - pause: Ask a running queue (in any process) to pause at its next checkpoint
  - unlock: Drop a run lock left behind by a crashed process
  - log: Show a queue's activity log
  - config: Manage configuration (session token, pacing settings)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mediapacer.config import (
    DEFAULT_CONFIG_PATH,
    SERVICE_NAME,
    get_session_token,
    load_pacing_config,
    set_session_token,
)
from mediapacer.database import Database, QueueNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/mediapacer.db")

app = typer.Typer(
    help="mediapacer - paced upload-then-archive runs against rate-limited media services",
    rich_markup_mode="rich",
)
console = Console()

config_app = typer.Typer(help="Manage configuration (session token, pacing settings)")
app.add_typer(config_app, name="config")

_STATUS_STYLES = {
    "pending": "yellow",
    "uploading": "blue",
    "uploaded": "cyan",
    "archiving": "blue",
    "completed": "green",
    "failed": "red",
    "ready": "yellow",
    "paused": "magenta",
    "error": "red",
}

_HALT_HINTS = {
    "session_expired": "Re-authenticate, store the new token with "
    "[bold]mediapacer config set-token[/bold], then run again.",
    "locked_out": "The account was flagged for automated behaviour. "
    "Check it manually before running again.",
    "item_rejected": "Skip the item with [bold]--skip N[/bold] or give it a new payload "
    "with [bold]--replace N --payload NEW[/bold].",
}


def _styled(value: str) -> str:
    style = _STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _open_db(db_path: Path) -> Database:
    if not db_path.exists():
        console.print(
            f"[red]Error:[/red] Database not found: {db_path}\n"
            "Create a queue with [bold]mediapacer enqueue NAME ...[/bold] first."
        )
        raise typer.Exit(code=1)
    return Database(db_path)


def _resolve_queue(db: Database, queue: str) -> int:
    try:
        return db.get_queue(queue)["queue_id"]
    except QueueNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging"),
    ] = False,
) -> None:
    """Paced upload-then-archive runner."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def enqueue(
    name: Annotated[str, typer.Argument(help="Queue name")],
    payloads: Annotated[
        Optional[list[str]],
        typer.Argument(help="Payload references, in upload order"),
    ] = None,
    from_file: Annotated[
        Optional[Path],
        typer.Option("--from-file", "-f", help="Read payloads from a file, one per line"),
    ] = None,
    append: Annotated[
        bool,
        typer.Option("--append", "-a", help="Append to an existing queue"),
    ] = False,
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """Create a queue of pending items (or append items to an existing one)."""
    items = list(payloads or [])
    if from_file is not None:
        if not from_file.exists():
            console.print(f"[red]Error:[/red] File not found: {from_file}")
            raise typer.Exit(code=1)
        lines = from_file.read_text(encoding="utf-8").splitlines()
        items.extend(line.strip() for line in lines if line.strip())

    if not items:
        console.print("[red]Error:[/red] No payloads given")
        raise typer.Exit(code=1)

    db_path.parent.mkdir(parents=True, exist_ok=True)
    with Database(db_path) as db:
        if append:
            queue_id = _resolve_queue(db, name)
            count = db.append_items(queue_id, items)
            console.print(f"[green]✓[/green] Appended {count} item(s) to queue [bold]{name}[/bold]")
            return
        try:
            queue_id = db.create_queue(name, items)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e} (use --append to add items)")
            raise typer.Exit(code=1)

    console.print(
        f"[green]✓[/green] Created queue [bold]{name}[/bold] "
        f"(id {queue_id}) with {len(items)} item(s)"
    )


@app.command()
def queues(
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """List queues with their aggregate status and progress."""
    with _open_db(db_path) as db:
        rows = db.list_queues()

    if not rows:
        console.print("[yellow]No queues yet.[/yellow]")
        return

    table = Table(title="Queues")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="bold")
    table.add_column("Status")
    table.add_column("Done", justify="right")
    table.add_column("Created", style="dim")
    for row in rows:
        table.add_row(
            str(row["queue_id"]),
            row["name"],
            _styled(row["status"]),
            f"{row['completed'] or 0}/{row['total']}",
            row["created_at"],
        )
    console.print(table)


@app.command()
def status(
    queue: Annotated[str, typer.Argument(help="Queue name or id")],
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """Show a queue's items, status counts and resume point."""
    with _open_db(db_path) as db:
        queue_id = _resolve_queue(db, queue)
        row = db.get_queue(queue_id)
        items = db.get_items(queue_id)
        ledger = db.get_ledger(queue_id)
        locked = db.is_locked(queue_id)

    resume = "-"
    if ledger is not None and ledger.resume_index is not None:
        resume = f"item #{ledger.resume_index + 1}"
    console.print(
        Panel(
            f"Queue: [bold]{row['name']}[/bold] (id {queue_id})\n"
            f"Status: {_styled(row['status'])}"
            + (" [blue](running)[/blue]" if locked else "")
            + f"\nResume at: {resume}",
            title="Queue Status",
        )
    )

    table = Table(title="Items")
    table.add_column("#", justify="right")
    table.add_column("Payload", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Handle", style="dim")
    table.add_column("Last error", style="red")
    for item in items:
        table.add_row(
            str(item.position + 1),
            item.payload,
            _styled(item.status.value),
            item.remote_handle or "",
            item.last_error or "",
        )
    console.print(table)


@app.command()
def run(
    queue: Annotated[str, typer.Argument(help="Queue name or id")],
    client_path: Annotated[
        str,
        typer.Option(
            "--client", "-c", help="Remote client factory as 'package.module:factory'"
        ),
    ],
    start_from: Annotated[
        Optional[int],
        typer.Option("--from", help="Start at item number N (1-based)", min=1),
    ] = None,
    skip: Annotated[
        Optional[int],
        typer.Option("--skip", help="Abandon item number N and continue after it", min=1),
    ] = None,
    replace: Annotated[
        Optional[int],
        typer.Option("--replace", help="Give item number N a new payload and retry it", min=1),
    ] = None,
    payload: Annotated[
        Optional[str],
        typer.Option("--payload", help="New payload for --replace"),
    ] = None,
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Pacing config JSON (default: config/pacing_config.json)"),
    ] = None,
) -> None:
    """Upload and archive a queue's items with human-like pacing.

    Without options the run continues where the last one stopped.  Press
    Ctrl+C or run [bold]mediapacer pause QUEUE[/bold] to pause cleanly.
    """
    if sum(option is not None for option in (start_from, skip, replace)) > 1:
        console.print("[red]Error:[/red] Use only one of --from, --skip, --replace")
        raise typer.Exit(code=1)
    if replace is not None and not payload:
        console.print("[red]Error:[/red] --replace needs --payload")
        raise typer.Exit(code=1)

    with _open_db(db_path) as db:
        queue_id = _resolve_queue(db, queue)
        name = db.get_queue(queue_id)["name"]
        total = len(db.get_items(queue_id))
        ledger = db.get_ledger(queue_id)

    try:
        config = load_pacing_config(config_path)
    except (OSError, ValueError, TypeError) as e:
        console.print(f"[red]Error:[/red] Invalid pacing config: {e}")
        raise typer.Exit(code=1)

    try:
        token = get_session_token()
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    # Import upload modules here to keep CLI startup fast for the read-only commands
    from mediapacer.upload.client import load_client
    from mediapacer.upload.exceptions import InvalidTransitionError, QueueLockedError
    from mediapacer.upload.orchestrator import RunResult, UploadOrchestrator
    from mediapacer.upload.progress import PhaseDisplay
    from mediapacer.upload.state import AsyncQueueStore

    try:
        client = load_client(client_path, session_token=token)
    except (ValueError, ImportError, AttributeError, TypeError) as e:
        console.print(f"[red]Error:[/red] Could not load client {client_path}: {e}")
        raise typer.Exit(code=1)

    start_index = ledger.current_index if ledger else 0
    if ledger is not None and ledger.resume_index is not None:
        start_index = ledger.resume_index
    if start_from is not None:
        start_index = start_from - 1
    elif skip is not None:
        start_index = skip
    elif replace is not None:
        start_index = replace - 1

    console.print(
        Panel(
            f"Queue [bold]{name}[/bold]: {total} item(s), "
            f"starting at item #{min(start_index, total) + 1}",
            title="Upload Run",
        )
    )

    async def _run() -> RunResult:
        async with AsyncQueueStore(str(db_path)) as store:
            orchestrator = UploadOrchestrator(client, store, queue_id, config)
            display = PhaseDisplay(total=total, start_index=min(start_index, total), console=console)
            with display:
                subscription = display.attach(orchestrator.phases)
                try:
                    if skip is not None:
                        return await orchestrator.skip_item(skip - 1)
                    if replace is not None:
                        return await orchestrator.replace_item(replace - 1, payload)
                    if start_from is not None:
                        await orchestrator.clear_pause()
                        return await orchestrator.run(start_from - 1)
                    return await orchestrator.resume()
                finally:
                    subscription.dispose()

    try:
        result = asyncio.run(_run())
    except QueueLockedError as e:
        console.print(
            f"[red]Error:[/red] {e}\n"
            "If that run crashed, clear it with [bold]mediapacer unlock QUEUE[/bold]."
        )
        raise typer.Exit(code=1)
    except (ValueError, IndexError, InvalidTransitionError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; interrupted items are recovered on the next run.[/yellow]")
        raise typer.Exit(code=130)

    summary_table = Table(title="Run Summary")
    summary_table.add_column("Metric", style="bold")
    summary_table.add_column("Value", justify="right")
    summary_table.add_row("Final phase", result.phase.describe())
    summary_table.add_row("Committed this run", f"[green]{result.committed}[/green]")
    summary_table.add_row("Auto-retries", f"[yellow]{result.retries}[/yellow]")
    summary_table.add_row("Recovered items", str(result.recovered))
    summary_table.add_row("Progress", f"{result.ledger.current_index}/{result.ledger.total}")
    if result.ledger.resume_index is not None:
        summary_table.add_row("Resume at", f"item #{result.ledger.resume_index + 1}")
    title = "Run Complete" if result.completed else "Run Stopped"
    console.print(Panel(summary_table, title=title))

    if result.escalated:
        console.print(
            "[yellow]Repeated failures triggered an escalation pause.[/yellow] "
            "Check the account, then run again to resume."
        )
    if result.halt_reason is not None:
        console.print(_HALT_HINTS[result.halt_reason.value])
        raise typer.Exit(code=1)


@app.command()
def pause(
    queue: Annotated[str, typer.Argument(help="Queue name or id")],
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """Ask a running queue to pause at its next checkpoint."""
    with _open_db(db_path) as db:
        queue_id = _resolve_queue(db, queue)
        db.request_pause(queue_id)
        running = db.is_locked(queue_id)

    console.print(f"[green]✓[/green] Pause requested for queue [bold]{queue}[/bold]")
    if not running:
        console.print("[dim]No run is active; the request is cleared by the next run.[/dim]")


@app.command()
def unlock(
    queue: Annotated[str, typer.Argument(help="Queue name or id")],
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """Drop a run lock left behind by a crashed process."""
    with _open_db(db_path) as db:
        queue_id = _resolve_queue(db, queue)
        if not db.is_locked(queue_id):
            console.print(f"[yellow]Queue {queue} is not locked.[/yellow]")
            return
        db.release_lock(queue_id)
    console.print(f"[green]✓[/green] Released run lock for queue [bold]{queue}[/bold]")


@app.command()
def log(
    queue: Annotated[str, typer.Argument(help="Queue name or id")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Number of entries to show"),
    ] = 50,
    db_path: Annotated[
        Path,
        typer.Option("--db", "-d", help="Path to SQLite database file"),
    ] = DEFAULT_DB_PATH,
) -> None:
    """Show a queue's activity log, newest first."""
    with _open_db(db_path) as db:
        queue_id = _resolve_queue(db, queue)
        rows = db.get_activity(queue_id, limit=limit)

    if not rows:
        console.print("[yellow]No activity yet.[/yellow]")
        return

    table = Table(title=f"Activity ({len(rows)} most recent)")
    table.add_column("Time", style="dim")
    table.add_column("Item", justify="right")
    table.add_column("Event", style="bold")
    table.add_column("Change")
    table.add_column("Details")
    for row in rows:
        change = ""
        if row["old_status"] or row["new_status"]:
            change = f"{row['old_status']} -> {row['new_status']}"
        table.add_row(
            row["timestamp"],
            str(row["position"] + 1) if row["position"] is not None else "",
            row["event"],
            change,
            row["details"] or "",
        )
    console.print(table)


@config_app.command("set-token")
def set_token(
    token: Annotated[
        str,
        typer.Argument(help="Remote session token to store in system keyring"),
    ],
) -> None:
    """Store the remote session token in the system keyring (service: mediapacer)."""
    if not token or token.strip() == "":
        console.print("[red]Error:[/red] Session token cannot be empty")
        raise typer.Exit(code=1)

    try:
        set_session_token(token.strip())
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store session token: {e}")
        raise typer.Exit(code=1)
    console.print(
        f"[green]✓[/green] Session token stored in system keyring (service: {SERVICE_NAME})"
    )


@config_app.command("show")
def show_config(
    config_path: Annotated[
        Optional[Path],
        typer.Option("--config", help="Pacing config JSON"),
    ] = None,
) -> None:
    """Show the effective pacing settings and whether a session token is set."""
    try:
        config = load_pacing_config(config_path)
    except (OSError, ValueError, TypeError) as e:
        console.print(f"[red]Error:[/red] Invalid pacing config: {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Pacing ({config_path or DEFAULT_CONFIG_PATH})")
    table.add_column("Setting", style="bold")
    table.add_column("Value", justify="right")
    for key, value in asdict(config).items():
        table.add_row(key, str(value))
    console.print(table)

    try:
        get_session_token()
        console.print("[green]Session token:[/green] set")
    except RuntimeError:
        console.print("[yellow]Session token:[/yellow] not set")
