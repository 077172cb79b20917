"""
Operator CLI using Typer.

Works directly against the configured database; useful for inspecting a
member's ledger and repairing rehearsal bookings.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, List, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.sql_store import (
    SqlDirectory,
    SqlRehearsalStore,
    SqlSlotStore,
    create_db_engine,
    create_schema,
    create_session_factory,
)
from ..config import AppConfig, load_config
from ..domain.exceptions import SlotSyncError
from ..domain.models import MembershipStatus, Rehearsal, SlotKind
from ..domain.timezones import ensure_timezone, parse_date
from ..services.ledger import AvailabilityLedger
from ..services.synchronizer import RehearsalSlotSynchronizer

app = typer.Typer(
    name="slotsync",
    help="Inspect and repair member availability and rehearsal bookings",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./slotsync.yaml"),
]


@dataclass
class Runtime:
    """Everything a command needs, wired from one config."""
    config: AppConfig
    directory: SqlDirectory
    rehearsals: SqlRehearsalStore
    ledger: AvailabilityLedger
    synchronizer: RehearsalSlotSynchronizer


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _build_runtime(config_file: Optional[Path], create_tables: bool = False) -> Runtime:
    config = load_config(config_file)
    _configure_logging(config.log_level)

    engine = create_db_engine(config.database_url)
    if create_tables:
        create_schema(engine)
    session_factory = create_session_factory(engine)

    store = SqlSlotStore(session_factory)
    directory = SqlDirectory(session_factory, default_timezone=config.default_timezone)
    rehearsals = SqlRehearsalStore(session_factory)

    return Runtime(
        config=config,
        directory=directory,
        rehearsals=rehearsals,
        ledger=AvailabilityLedger(
            store,
            directory,
            day_window=config.day.as_tuple(),
            workday=config.workday.as_tuple(),
        ),
        synchronizer=RehearsalSlotSynchronizer(store, directory, rehearsals, rehearsals),
    )


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


@app.command("init-db")
def init_db(config_file: ConfigOption = None):
    """
    Create the database tables.
    """
    try:
        runtime = _build_runtime(config_file, create_tables=True)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Schema ready at {runtime.config.database_url}[/green]")


@app.command("add-member")
def add_member(
    user_id: Annotated[str, typer.Argument(help="Member id")],
    timezone: Annotated[Optional[str], typer.Option("--timezone", "-t", help="IANA timezone")] = None,
    config_file: ConfigOption = None,
):
    """
    Register a member (or change their timezone).
    """
    try:
        runtime = _build_runtime(config_file)
        if timezone is not None:
            ensure_timezone(timezone)
        runtime.directory.add_member(user_id, timezone=timezone)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Member {user_id} saved[/green]")


@app.command("add-project")
def add_project(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    name: Annotated[Optional[str], typer.Option("--name", "-n", help="Display name")] = None,
    config_file: ConfigOption = None,
):
    """
    Register a project (or rename it).
    """
    try:
        runtime = _build_runtime(config_file)
        runtime.directory.add_project(project_id, name=name)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Project {project_id} saved[/green]")


@app.command()
def join(
    project_id: Annotated[str, typer.Argument(help="Project id")],
    user_id: Annotated[str, typer.Argument(help="Member id")],
    inactive: Annotated[bool, typer.Option("--inactive", help="Keep the member off rehearsal bookings")] = False,
    config_file: ConfigOption = None,
):
    """
    Put a member on a project's roster, or change their status there.

    Existing rehearsals pick up the change on their next rehearsal-sync.
    """
    status = MembershipStatus.INACTIVE if inactive else MembershipStatus.ACTIVE
    try:
        runtime = _build_runtime(config_file)
        runtime.directory.set_membership(project_id, user_id, status)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ {user_id} is {status.value} in {project_id}[/green]")


@app.command("set-day")
def set_day(
    owner_id: Annotated[str, typer.Argument(help="Member id")],
    day: Annotated[str, typer.Argument(help="Local date (YYYY-MM-DD)")],
    ranges: Annotated[Optional[List[str]], typer.Argument(help="Ranges like 10:00-12:00")] = None,
    kind: Annotated[SlotKind, typer.Option("--kind", "-k", help="Slot kind")] = SlotKind.BUSY,
    title: Annotated[Optional[str], typer.Option("--title", help="Display title")] = None,
    config_file: ConfigOption = None,
):
    """
    Replace a member's manual ranges for one day.

    Examples:

        slotsync set-day alice 2025-07-20 10:00-12:00 14:00-15:30

        slotsync set-day alice 2025-07-20 09:00-17:00 --kind available
    """
    try:
        runtime = _build_runtime(config_file)
        stored = runtime.ledger.set_manual(owner_id, day, ranges or [], kind=kind, title=title)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ {len(stored)} manual slot(s) stored for {owner_id} on {day}[/green]")


@app.command("clear-day")
def clear_day(
    owner_id: Annotated[str, typer.Argument(help="Member id")],
    day: Annotated[str, typer.Argument(help="Local date (YYYY-MM-DD)")],
    config_file: ConfigOption = None,
):
    """
    Delete a member's manual ranges for one day. Rehearsal slots stay.
    """
    try:
        runtime = _build_runtime(config_file)
        deleted = runtime.ledger.delete_manual(owner_id, day)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ {deleted} manual slot(s) deleted[/green]")


@app.command()
def show(
    owner_id: Annotated[str, typer.Argument(help="Member id")],
    start: Annotated[Optional[str], typer.Option("--start", help="Start date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="End date (YYYY-MM-DD)")] = None,
    timezone: Annotated[Optional[str], typer.Option("--timezone", "-t", help="Display timezone")] = None,
    config_file: ConfigOption = None,
):
    """
    Show a member's merged busy time per day, in their local time.
    """
    try:
        runtime = _build_runtime(config_file)
        zone = runtime.ledger.owner_timezone(owner_id, timezone)
        start_date = parse_date(start) if start else pendulum.today(zone).date()
        end_date = parse_date(end) if end else start_date.add(days=6)

        ranges = runtime.ledger.get_range(owner_id, start_date, end_date, timezone=zone)
        statuses = runtime.ledger.day_statuses(owner_id, start_date, end_date, timezone=zone)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    table = Table(
        title=f"Availability of {owner_id} ({zone})",
        show_header=True,
        header_style="bold cyan"
    )
    table.add_column("Date", style="bold yellow")
    table.add_column("Status")
    table.add_column("Ranges", style="dim")

    for day, status in statuses.items():
        day_ranges = ranges.get(day, [])
        table.add_row(
            day.isoformat(),
            status.value,
            ", ".join(str(r) for r in day_ranges) or "-",
        )

    console.print()
    console.print(table)
    console.print()


def _parse_instant(value: str, zone: str) -> pendulum.DateTime:
    return pendulum.parse(value, tz=ensure_timezone(zone)).in_timezone("UTC")


@app.command("rehearsal-add")
def rehearsal_add(
    rehearsal_id: Annotated[str, typer.Argument(help="Rehearsal id")],
    project_id: Annotated[str, typer.Argument(help="Project id")],
    start: Annotated[str, typer.Argument(help="Start (YYYY-MM-DD HH:MM)")],
    end: Annotated[str, typer.Argument(help="End (YYYY-MM-DD HH:MM)")],
    timezone: Annotated[Optional[str], typer.Option("--timezone", "-t", help="Zone of start and end")] = None,
    title: Annotated[Optional[str], typer.Option("--title", help="Display title")] = None,
    location: Annotated[Optional[str], typer.Option("--location", help="Where it takes place")] = None,
    config_file: ConfigOption = None,
):
    """
    Schedule a rehearsal and book it on every active member's ledger.

    Example:

        slotsync rehearsal-add r1 hamlet "2025-07-20 19:00" "2025-07-20 22:00" -t Europe/Berlin
    """
    try:
        runtime = _build_runtime(config_file)
        zone = timezone or runtime.config.default_timezone
        rehearsal = runtime.rehearsals.save(
            Rehearsal(
                id=rehearsal_id,
                project_id=project_id,
                starts_at=_parse_instant(start, zone),
                ends_at=_parse_instant(end, zone),
                title=title,
                location=location,
            )
        )
        report = runtime.synchronizer.on_create(rehearsal)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Rehearsal {report.rehearsal_id}: booked {len(report.booked)}[/green]")


@app.command("rehearsal-move")
def rehearsal_move(
    rehearsal_id: Annotated[str, typer.Argument(help="Rehearsal id")],
    start: Annotated[str, typer.Argument(help="New start (YYYY-MM-DD HH:MM)")],
    end: Annotated[str, typer.Argument(help="New end (YYYY-MM-DD HH:MM)")],
    timezone: Annotated[Optional[str], typer.Option("--timezone", "-t", help="Zone of start and end")] = None,
    config_file: ConfigOption = None,
):
    """
    Move a rehearsal to a new window and rebook every active member.
    """
    try:
        runtime = _build_runtime(config_file)
        zone = timezone or runtime.config.default_timezone
        current = runtime.rehearsals.get(rehearsal_id)
        moved = runtime.rehearsals.save(
            Rehearsal(
                id=current.id,
                project_id=current.project_id,
                starts_at=_parse_instant(start, zone),
                ends_at=_parse_instant(end, zone),
                title=current.title,
                location=current.location,
            )
        )
        report = runtime.synchronizer.on_update(moved)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(
        f"[green]✓ Rehearsal {report.rehearsal_id}: removed {report.removed}, "
        f"booked {len(report.booked)}[/green]"
    )


@app.command("rehearsal-sync")
def rehearsal_sync(
    rehearsal_id: Annotated[str, typer.Argument(help="Rehearsal id")],
    config_file: ConfigOption = None,
):
    """
    Rebook a rehearsal on every active member's ledger.
    """
    try:
        runtime = _build_runtime(config_file)
        report = runtime.synchronizer.resync(rehearsal_id)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(
        f"[green]✓ Rehearsal {report.rehearsal_id}: removed {report.removed}, "
        f"booked {len(report.booked)}[/green]"
    )


@app.command("rehearsal-delete")
def rehearsal_delete(
    rehearsal_id: Annotated[str, typer.Argument(help="Rehearsal id")],
    config_file: ConfigOption = None,
):
    """
    Delete a rehearsal with its booked slots and responses.
    """
    try:
        runtime = _build_runtime(config_file)
        report = runtime.synchronizer.on_delete(rehearsal_id)
    except (SlotSyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Rehearsal {report.rehearsal_id} deleted ({report.removed} slot(s))[/green]")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotsync[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
