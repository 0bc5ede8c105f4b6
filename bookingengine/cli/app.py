"""
Main CLI application using Typer.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..adapters.credential_store import CredentialStore
from ..bootstrap import Engine, build_engine, load_seed_reservations
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import BookingEngineError
from ..domain.models import WEEKDAY_NAMES
from ..domain.time_normalizer import LOCAL_TIME_FORMAT, TimeNormalizer

app = typer.Typer(
    name="bookingengine",
    help="Check availability and book appointments for service providers",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
ReservationsOption = Annotated[
    Optional[Path],
    typer.Option("--reservations", "-r", help="JSON file with existing reservations"),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging.")] = False,
):
    """
    Booking engine command line.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load_config(config_file: Optional[Path], required: bool = True) -> AppConfig:
    config_path = config_file or get_default_config_path()
    if not required and config_file is None and not config_path.exists():
        return AppConfig()
    return AppConfig.load_from_yaml(config_path)


def _engine(config_file: Optional[Path], reservations_file: Optional[Path] = None) -> Engine:
    config = _load_config(config_file)
    return build_engine(config, reservations=load_seed_reservations(reservations_file))


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


@app.command()
def normalize(
    date: Annotated[str, typer.Argument(help="Date, e.g. 2024-11-25, tomorrow, friday")],
    time: Annotated[str, typer.Argument(help="Time, e.g. 10, 10:30, 2 pm")],
    timezone: Annotated[Optional[str], typer.Option("--tz", help="IANA timezone")] = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Duration in minutes")] = None,
    config_file: ConfigOption = None,
):
    """
    Show how a local date and time resolve to a UTC interval.
    """
    try:
        config = _load_config(config_file, required=False)
        normalizer = TimeNormalizer(ambiguous_time_policy=config.booking.ambiguous_time_policy)
        slot = normalizer.normalize(
            date,
            time,
            timezone or config.timezone,
            duration if duration is not None else config.booking.default_duration_minutes,
        )
    except (BookingEngineError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(Panel.fit(
        f"[bold]Local:[/bold] {slot.local_date} {slot.start_local} - {slot.end_local} ({slot.timezone})\n"
        f"[bold]UTC:[/bold]   {slot.start_utc_iso} - {slot.end_utc_iso}",
        title="Normalized slot"
    ))


@app.command()
def slots(
    subject_id: Annotated[str, typer.Argument(help="Subject id")],
    date: Annotated[str, typer.Argument(help="Date, e.g. 2024-11-25, tomorrow, friday")],
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Duration in minutes")] = None,
    buffer: Annotated[Optional[int], typer.Option("--buffer", "-b", help="Buffer minutes around busy blocks")] = None,
    timezone: Annotated[Optional[str], typer.Option("--tz", help="IANA timezone")] = None,
    config_file: ConfigOption = None,
    reservations_file: ReservationsOption = None,
):
    """
    List free slots for one subject on one date.
    """
    try:
        engine = _engine(config_file, reservations_file)
        settings = engine.config.booking
        subject = asyncio.run(engine.store.get_subject(subject_id))
        tz = timezone or subject.timezone
        day = engine.normalizer.parse_date(date, tz)
        available = asyncio.run(
            engine.availability.compute(
                subject_id,
                day,
                duration if duration is not None else settings.default_duration_minutes,
                buffer if buffer is not None else settings.buffer_minutes,
                tz,
            )
        )
    except (BookingEngineError, FileNotFoundError, ValueError) as e:
        _fail(e)

    if available.degraded:
        console.print("[yellow]⚠ External calendar unavailable, showing local data only.[/yellow]")

    slot_list = available.to_list()
    if not slot_list:
        console.print(f"[yellow]No free slots for {subject.name} on {WEEKDAY_NAMES[day.weekday()].title()} {day}.[/yellow]")
        return

    table = Table(
        title=f"Free slots for {subject.name} on {day}",
        show_header=True,
        header_style="bold cyan"
    )
    table.add_column("Start", style="bold yellow")
    table.add_column("End")
    table.add_column("UTC", style="dim")
    for slot in slot_list:
        local = slot.in_timezone(tz)
        table.add_row(
            local.start.format(LOCAL_TIME_FORMAT),
            local.end.format(LOCAL_TIME_FORMAT),
            slot.start.in_timezone("UTC").to_iso8601_string(),
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def upcoming(
    subject_id: Annotated[str, typer.Argument(help="Subject id")],
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Duration in minutes")] = None,
    days: Annotated[Optional[int], typer.Option("--days", help="How many days to scan")] = None,
    limit: Annotated[Optional[int], typer.Option("--limit", "-n", help="Maximum number of slots")] = None,
    config_file: ConfigOption = None,
    reservations_file: ReservationsOption = None,
):
    """
    List the next free slots for a subject, starting now.
    """
    try:
        engine = _engine(config_file, reservations_file)
        settings = engine.config.booking
        subject = asyncio.run(engine.store.get_subject(subject_id))
        found = asyncio.run(
            engine.availability.upcoming(
                subject_id,
                duration if duration is not None else settings.default_duration_minutes,
                buffer_minutes=settings.buffer_minutes,
                days=days if days is not None else settings.lookahead_days,
                limit=limit if limit is not None else settings.max_listed_slots,
            )
        )
    except (BookingEngineError, FileNotFoundError, ValueError) as e:
        _fail(e)

    if not found:
        console.print(f"[yellow]⚠ No free slots found for {subject.name}.[/yellow]")
        return

    console.print(f"[bold green]✓ {len(found)} free slot(s) for {subject.name}:[/bold green]\n")
    for slot in found:
        local = slot.in_timezone(subject.timezone)
        console.print(f"  {local.start.format('ddd, MMM D')} {slot.local_label(subject.timezone)}")
    console.print()


@app.command()
def book(
    subject_id: Annotated[str, typer.Argument(help="Subject id")],
    date: Annotated[str, typer.Argument(help="Date, e.g. 2024-11-25, tomorrow, friday")],
    time: Annotated[str, typer.Argument(help="Time, e.g. 10, 10:30, 2 pm")],
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Duration in minutes")] = None,
    timezone: Annotated[Optional[str], typer.Option("--tz", help="IANA timezone")] = None,
    customer: Annotated[str, typer.Option("--customer", help="Customer name")] = "",
    phone: Annotated[str, typer.Option("--phone", help="Customer phone")] = "",
    idempotency_key: Annotated[Optional[str], typer.Option("--key", help="Idempotency key (random if omitted)")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw response body.")] = False,
    config_file: ConfigOption = None,
    reservations_file: ReservationsOption = None,
):
    """
    Book an appointment against the configured subjects.

    Examples:

        bookingengine book det-1 tomorrow 10 --customer "Sam"

        bookingengine book det-1 2024-11-25 "3 pm" -d 60 -r reservations.json
    """
    try:
        engine = _engine(config_file, reservations_file)
    except (BookingEngineError, FileNotFoundError, ValueError) as e:
        _fail(e)

    subject = engine.config.find_subject(subject_id)
    payload = {
        "subjectId": subject_id,
        "date": date,
        "time": time,
        "durationMinutes": duration if duration is not None else engine.config.booking.default_duration_minutes,
        "tz": timezone or (subject.timezone if subject and subject.timezone else engine.config.timezone),
        "idempotencyKey": idempotency_key or uuid.uuid4().hex,
        "customerName": customer,
        "customerPhone": phone,
        "source": "cli",
    }

    async def run():
        result = await engine.coordinator.handle_booking_request(payload)
        await engine.coordinator.wait_for_sync()
        return result

    status, body = asyncio.run(run())

    if as_json:
        console.print_json(json.dumps(body))
    elif body.get("ok"):
        console.print(Panel.fit(
            f"[bold green]✓ Booked[/bold green]\n\n"
            f"[bold]Booking id:[/bold] {body['bookingId']}\n"
            f"[bold]Start (UTC):[/bold] {body['startUtcISO']}\n"
            f"[bold]End (UTC):[/bold] {body['endUtcISO']}",
            title="Booking confirmed"
        ))
    elif body.get("reason") == "CONFLICT":
        _print_conflict(body)
    else:
        console.print(f"[bold red]Error ({body.get('reason')}):[/bold red] {body.get('message')}")

    if status >= 300:
        raise typer.Exit(1)


def _print_conflict(body: dict) -> None:
    console.print(f"[bold yellow]⚠ {body['message']}[/bold yellow]\n")

    table = Table(title="Conflicts", show_header=True, header_style="bold cyan")
    table.add_column("What", style="bold")
    table.add_column("When")
    table.add_column("Type", style="dim")
    for conflict in body["conflicts"]:
        table.add_row(conflict["label"], conflict["time"], conflict["type"])
    console.print(table)

    console.print("\n[bold]Suggested alternatives:[/bold]")
    for suggestion in body["suggestions"]:
        console.print(f"  • {suggestion['label']}")
    console.print()


@app.command()
def list_subjects(
    config_file: ConfigOption = None,
):
    """
    List all configured subjects.
    """
    try:
        config = _load_config(config_file)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)

    if not config.subjects:
        console.print("[yellow]No subjects defined in the config file.[/yellow]")
        return

    table = Table(
        title="Configured subjects",
        show_header=True,
        header_style="bold cyan"
    )
    table.add_column("Id", style="bold yellow")
    table.add_column("Name")
    table.add_column("Timezone", style="dim")
    table.add_column("Open", style="dim")

    for subject in config.build_subjects():
        open_days = [WEEKDAY_NAMES[day][:3].title() for day in range(7) if subject.business_hours.is_open_on(day)]
        table.add_row(subject.id, subject.name, subject.timezone, ", ".join(open_days) or "-")

    console.print()
    console.print(table)
    console.print()


@app.command()
def store_token(
    provider: Annotated[str, typer.Argument(help="Calendar provider (google or graph)")],
    subject_id: Annotated[str, typer.Argument(help="Subject id")],
    token: Annotated[str, typer.Option("--token", prompt=True, hide_input=True, help="Refresh token")],
):
    """
    Store a subject's calendar refresh token in the keyring.
    """
    if provider not in ("google", "graph"):
        _fail(ValueError(f"Unknown provider {provider!r}, use google or graph"))

    store = CredentialStore()
    store.set_refresh_token(provider, subject_id, token)
    if store.insecure_storage_warning:
        console.print(f"[yellow]⚠ {store.insecure_storage_warning}[/yellow]")
    console.print(f"\n[green]✓ Token stored for {subject_id} ({provider}, {store.backend}).[/green]\n")


@app.command()
def clear_token(
    provider: Annotated[str, typer.Argument(help="Calendar provider (google or graph)")],
    subject_id: Annotated[str, typer.Argument(help="Subject id")],
):
    """
    Remove a subject's stored calendar refresh token.
    """
    CredentialStore().delete_refresh_token(provider, subject_id)
    console.print(f"\n[green]✓ Token removed for {subject_id} ({provider}).[/green]")
    console.print("The calendar must be reconnected before it is used again.\n")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]bookingengine[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
