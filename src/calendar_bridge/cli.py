"""
Command-line interface for calendar-bridge.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn
from rich.progress import Progress
from rich.progress import TextColumn
from rich.table import Table
from rich.text import Text

from calendar_bridge.db import StateStore
from calendar_bridge.models import DEFAULT_CONFIG
from calendar_bridge.models import DEFAULT_CREDENTIALS_DIR
from calendar_bridge.models import DEFAULT_STATE_DB
from calendar_bridge.models import DEFAULT_WINDOW_FUTURE_DAYS
from calendar_bridge.models import DEFAULT_WINDOW_PAST_DAYS
from calendar_bridge.models import CalendarSyncError
from calendar_bridge.models import SyncConfig
from calendar_bridge.models import SyncProgress
from calendar_bridge.models import SyncResult
from calendar_bridge.sync import SyncEngine

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Keep Google calendars and local EDS calendars in sync.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # googleapiclient logs every discovery/request at INFO
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if "calendar-bridge" not in parser:
        return {}
    return dict(parser["calendar-bridge"])


def _int_setting(config_file: dict[str, str], key: str, default: int) -> int:
    raw = config_file.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise typer.BadParameter(f"{key} must be an integer, got {raw!r}") from None


def _build_config() -> SyncConfig:
    config_file = _load_config_file(state.config_path)
    if state.state_db is not None:
        state_db = state.state_db
    else:
        state_db = Path(config_file.get("state_db", DEFAULT_STATE_DB)).expanduser()
    return SyncConfig(
        state_db_path=state_db,
        credentials_dir=Path(
            config_file.get("credentials_dir", DEFAULT_CREDENTIALS_DIR)
        ).expanduser(),
        window_past_days=_int_setting(config_file, "window_past_days", DEFAULT_WINDOW_PAST_DAYS),
        window_future_days=_int_setting(
            config_file, "window_future_days", DEFAULT_WINDOW_FUTURE_DAYS
        ),
        verbose=state.verbose,
    )


def _build_engine(cfg: SyncConfig, store: StateStore, listeners=()) -> SyncEngine:
    from calendar_bridge.eds_client import EDSCalendarBackend
    from calendar_bridge.google_client import GoogleCalendarBackend
    from calendar_bridge.google_client import credentials_from_dir

    def _local_calendar(account_id: str, calendar_id: str) -> str | None:
        sync_state = store.get_sync_state(account_id, calendar_id)
        return sync_state.local_calendar_id if sync_state else None

    primary = GoogleCalendarBackend(credentials_from_dir(cfg.credentials_dir))
    mirror = EDSCalendarBackend(calendar_resolver=_local_calendar)
    return SyncEngine(primary, mirror, store, cfg, listeners=listeners)


def _format_ts(ts: int | None) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S") if ts else "—"


def _print_results(result: SyncResult) -> None:
    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Created", str(result.created))
    results.add_row("Updated", str(result.updated))
    if result.success:
        status_val = Text("✓ OK", style="green")
    elif result.cancelled:
        status_val = Text("Cancelled", style="yellow")
    else:
        status_val = Text(f"✗ {result.error}", style="bold red")
    results.add_row("Status", status_val)

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: sync
# ---------------------------------------------------------------------------

_ACCOUNT_ARG = Annotated[str, typer.Argument(help="Account id (e.g. the Google account email)")]
_YES = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")]


@app.command()
def sync(
    account: Annotated[
        str | None, typer.Option("--account", "-a", help="Sync only this account's calendar")
    ] = None,
    calendar: Annotated[
        str | None, typer.Option("--calendar", help="Calendar id (requires --account)")
    ] = None,
    yes: _YES = False,
) -> None:
    """Synchronise one calendar, or every selected calendar by default.

    Press Ctrl-C to stop after the event currently being written.
    """
    if calendar and not account:
        raise typer.BadParameter("--calendar requires --account")
    if account and not calendar:
        raise typer.BadParameter("--account requires --calendar")

    cfg = _build_config()

    with StateStore(cfg.state_db_path) as store:
        if account and store.get_sync_state(account, calendar) is None:
            console.print(
                f"[yellow]{account}/{calendar} is not selected — run[/] "
                f"[cyan]calendar-bridge add {account} {calendar}[/] [yellow]first.[/]"
            )
            raise typer.Exit(1)
        targets = [(account, calendar)] if account else store.list_calendars()
        if not targets:
            console.print(
                "[yellow]No calendars selected — run[/] "
                "[cyan]calendar-bridge add ACCOUNT CALENDAR[/] [yellow]first.[/]"
            )
            raise typer.Exit(1)

        info = Text()
        info.append("  State DB:  ", style="bold")
        info.append(f"{cfg.state_db_path}\n")
        info.append("  Window:    ", style="bold")
        info.append(f"-{cfg.window_past_days}d / +{cfg.window_future_days}d\n")
        info.append("  Calendars: ", style="bold")
        info.append(", ".join(f"{a}/{c}" for a, c in targets))
        console.print(Panel(info, title="[bold]Calendar Bridge[/bold]"))

        if not yes:
            typer.confirm("Proceed?", abort=True)

        progress = Progress(
            TextColumn("{task.description}"), BarColumn(), TextColumn("{task.percentage:>3.0f}%"),
            console=console,
        )
        tasks: dict[tuple[str, str], int] = {}

        def _on_progress(event: SyncProgress) -> None:
            key = (event.account_id, event.calendar_id)
            if key not in tasks:
                tasks[key] = progress.add_task(event.calendar_id, total=100)
            progress.update(
                tasks[key],
                completed=event.percent_complete,
                description=f"{event.calendar_id}: {event.status}",
            )

        cancel_event = threading.Event()
        try:
            engine = _build_engine(cfg, store, listeners=[_on_progress])
            with progress, ThreadPoolExecutor(max_workers=1) as pool:
                if account:
                    future = pool.submit(engine.sync_one, account, calendar, cancel_event)
                else:
                    future = pool.submit(engine.sync_all, cancel_event)
                try:
                    result = future.result()
                except KeyboardInterrupt:
                    cancel_event.set()
                    console.print("[yellow]Interrupted — stopping after the current write[/]")
                    result = future.result()
        except CalendarSyncError as e:
            console.print(f"[bold red]Sync failed:[/] {e}")
            raise typer.Exit(1) from None
        except Exception as e:
            console.print_exception()
            console.print(f"[bold red]Unexpected error:[/] {e}")
            raise typer.Exit(1) from e

    _print_results(result)

    if result.cancelled:
        raise typer.Exit(130)
    if not result.success:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: add / remove-account
# ---------------------------------------------------------------------------


@app.command()
def add(
    account: _ACCOUNT_ARG,
    calendar: Annotated[str, typer.Argument(help="Google calendar id (see `calendars`)")],
    local: Annotated[
        str | None,
        typer.Option("--local", "-l", help="EDS calendar UID to mirror into (see `local-calendars`)"),
    ] = None,
) -> None:
    """Select a calendar for syncing (resets its change token)."""
    cfg = _build_config()
    with StateStore(cfg.state_db_path) as store:
        store.add_calendar(account, calendar, local)
    target = local or calendar
    console.print(f"[green]Added[/] [cyan]{account}/{calendar}[/] → local [cyan]{target}[/]")


@app.command("remove-account")
def remove_account(account: _ACCOUNT_ARG, yes: _YES = False) -> None:
    """Forget an account: its change tokens and event mappings are deleted.

    Events already written to either calendar are left in place.
    """
    cfg = _build_config()
    if not yes:
        typer.confirm(f"Remove all sync state for {account}?", abort=True)
    with StateStore(cfg.state_db_path) as store:
        removed = store.remove_account(account)
    if removed == 0:
        console.print(f"[yellow]Warning:[/] No calendars recorded for {account}.")
    else:
        console.print(f"[green]Removed[/] {removed} calendar(s) for [cyan]{account}[/].")


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and per-calendar sync state."""
    cfg = _build_config()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:      ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB:    ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Credentials: ", style="bold")
    cfg_info.append(str(cfg.credentials_dir))
    console.print(Panel(cfg_info, title="[bold]Calendar Bridge — Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No state database yet — run[/] "
            "[cyan]calendar-bridge add[/] "
            "[yellow]to create it.[/]"
        )
        return

    with StateStore(cfg.state_db_path) as store:
        states = store.list_sync_states()
        counts = store.mapping_counts()

    if not states:
        console.print("[yellow]No calendars selected yet.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Account")
    table.add_column("Calendar")
    table.add_column("Local calendar", style="dim")
    table.add_column("Token")
    table.add_column("Tracked", justify="right")
    table.add_column("Last sync")
    for s in states:
        table.add_row(
            s.account_id,
            s.calendar_id,
            s.local_calendar_id or s.calendar_id,
            Text("✓", style="green") if s.change_token else Text("full", style="yellow"),
            str(counts.get((s.account_id, s.calendar_id), 0)),
            _format_ts(s.last_sync_at),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommands: calendars / local-calendars
# ---------------------------------------------------------------------------


def _print_calendar_table(calendars, title: str) -> None:
    table = Table(show_header=True, header_style="bold cyan", title=title)
    table.add_column("Name", style="bold")
    table.add_column("Time zone")
    table.add_column("Id", style="dim")
    for cal in calendars:
        table.add_row(cal.name, cal.time_zone or "", cal.id)
    console.print(table)


@app.command()
def calendars(account: _ACCOUNT_ARG) -> None:
    """List the Google calendars of an account."""
    from calendar_bridge.google_client import GoogleCalendarBackend
    from calendar_bridge.google_client import credentials_from_dir

    cfg = _build_config()
    backend = GoogleCalendarBackend(credentials_from_dir(cfg.credentials_dir))
    try:
        found = backend.list_calendars(account)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    _print_calendar_table(found, f"Google calendars — {account}")


@app.command("local-calendars")
def local_calendars() -> None:
    """List the local EDS calendars."""
    from calendar_bridge.eds_client import EDSCalendarBackend

    try:
        found = EDSCalendarBackend().list_calendars("local")
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    _print_calendar_table(found, "EDS calendars")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
