"""
Main CLI application using Typer.
"""

import logging
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Annotated, Iterator, List, Optional

import pendulum
import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..config import AppConfig, load_config
from ..domain.exceptions import SchedulingError
from ..domain.models import AvailabilityRule, Slot, SlotStatus
from ..services.scheduling import SchedulingService, build_service

app = typer.Typer(
    name="carecalendar",
    help="Manage provider availability rules and appointment slots",
    add_completion=False,
)
rules_app = typer.Typer(help="Create, edit and inspect availability rules.", add_completion=False)
slots_app = typer.Typer(help="List, book and manage appointment slots.", add_completion=False)
jobs_app = typer.Typer(help="Run maintenance jobs once or on a schedule.", add_completion=False)
app.add_typer(rules_app, name="rules")
app.add_typer(slots_app, name="slots")
app.add_typer(jobs_app, name="jobs")

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    SlotStatus.AVAILABLE: "green",
    SlotStatus.PENDING_CONFIRMATION: "yellow",
    SlotStatus.BOOKED: "bold cyan",
    SlotStatus.COMPLETED: "dim",
    SlotStatus.NO_SHOW: "red",
    SlotStatus.CANCELLED: "dim red",
}


class CliState:
    """Configuration resolved by the root callback, service built on demand."""

    def __init__(self, config: AppConfig):
        self.config = config
        self._service: Optional[SchedulingService] = None

    @property
    def service(self) -> SchedulingService:
        if self._service is None:
            self._service = build_service(self.config)
        return self._service


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Print domain and configuration errors and exit with status 1."""
    try:
        yield
    except SchedulingError as e:
        console.print(f"[bold red]Error:[/bold red] {e.code}: {e.message}")
        field_errors = getattr(e, "field_errors", None)
        if field_errors:
            for field, message in field_errors.items():
                console.print(f"   [red]{field}[/red]: {message}")
        raise typer.Exit(1)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


def _service(ctx: typer.Context) -> SchedulingService:
    return ctx.obj.service


def _parse_date(value: str) -> date:
    try:
        return pendulum.from_format(value, "YYYY-MM-DD").date()
    except ValueError as e:
        raise typer.BadParameter(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def _load_rule_file(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Rule file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Rule file must contain a mapping at the root level.")
    return data


def _rules_table(rules: List[AvailabilityRule], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="bold yellow")
    table.add_column("Recurrence")
    table.add_column("Dates")
    table.add_column("Hours")
    table.add_column("Slot")
    table.add_column("Active")
    for rule in rules:
        recurrence = rule.recurrence_kind.value
        if rule.day_of_week is not None:
            recurrence += f" ({pendulum.date(2024, 1, rule.day_of_week).format('dddd')})"
        until = rule.end_date.isoformat() if rule.end_date else "open"
        table.add_row(
            rule.id,
            rule.title,
            recurrence,
            f"{rule.start_date.isoformat()} → {until}",
            rule.time_range_string(),
            f"{rule.slot_duration_minutes}+{rule.buffer_minutes} min",
            "[green]yes[/green]" if rule.is_active else "[red]no[/red]",
        )
    return table


def _slots_table(slots: List[Slot], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Time")
    table.add_column("Status")
    table.add_column("Patient")
    for slot in slots:
        style = STATUS_STYLES[slot.status]
        status = f"[{style}]{slot.status.value}[/{style}]"
        if slot.disabled:
            status += " [dim](disabled)[/dim]"
        table.add_row(slot.id, slot.date.isoformat(), str(slot.time_window()), status, slot.patient_id or "")
    return table


def _print_slot(slot: Slot, action: str) -> None:
    console.print(f"[green]✓ {action}:[/green] {slot.summary()}")


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml")] = None,
    database_url: Annotated[Optional[str], typer.Option("--database-url", help="Override the configured database URL")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """
    Provider availability and appointment slot booking.
    """
    try:
        config = load_config(config_file)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    if database_url:
        config = config.model_copy(update={"database_url": database_url})
    _configure_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = CliState(config)


# Rules


@rules_app.command("create")
def create_rule(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider the rule belongs to")],
    rule_file: Annotated[Path, typer.Option("--file", "-f", help="YAML file with the rule definition")],
):
    """
    Create an availability rule and materialize its slots.

    Example rule file:

        title: Monday clinic
        recurrence_kind: WEEKLY
        day_of_week: 1
        start_date: 2025-01-06
        start_time: "09:00"
        end_time: "12:00"
        slot_duration_minutes: 30
        location_kind: VIRTUAL
        appointment_kind: CONSULTATION
    """
    with _handle_errors():
        spec = _load_rule_file(rule_file)
        rule_id = _service(ctx).create_availability_rule(provider_id, spec)
        console.print(f"[green]✓ Availability rule created:[/green] {rule_id}")


@rules_app.command("update")
def update_rule(
    ctx: typer.Context,
    rule_id: Annotated[str, typer.Argument(help="Rule to replace")],
    rule_file: Annotated[Path, typer.Option("--file", "-f", help="YAML file with the new rule definition")],
):
    """
    Replace a rule's definition and reconcile its open slots.
    """
    with _handle_errors():
        rule = _service(ctx).update_availability_rule(rule_id, _load_rule_file(rule_file))
        console.print(f"[green]✓ Availability rule updated:[/green] {rule.id} ({rule.title})")


@rules_app.command("deactivate")
def deactivate_rule(
    ctx: typer.Context,
    rule_id: Annotated[str, typer.Argument(help="Rule to deactivate")],
):
    """
    Stop a rule from offering slots. Existing bookings are kept.
    """
    with _handle_errors():
        rule = _service(ctx).deactivate_availability_rule(rule_id)
        console.print(f"[yellow]⊘ Availability rule deactivated:[/yellow] {rule.id} ({rule.title})")


@rules_app.command("activate")
def activate_rule(
    ctx: typer.Context,
    rule_id: Annotated[str, typer.Argument(help="Rule to re-activate")],
):
    with _handle_errors():
        rule = _service(ctx).activate_availability_rule(rule_id)
        console.print(f"[green]✓ Availability rule activated:[/green] {rule.id} ({rule.title})")


@rules_app.command("list")
def list_rules(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider to list rules for")],
    active_only: Annotated[bool, typer.Option("--active-only", help="Hide deactivated rules")] = False,
):
    """
    List a provider's availability rules.
    """
    with _handle_errors():
        rules = _service(ctx).list_rules(provider_id, active_only=active_only)
        if not rules:
            console.print("[yellow]No availability rules found.[/yellow]")
            return
        console.print()
        console.print(_rules_table(rules, f"Availability rules of {provider_id}"))
        console.print()


@rules_app.command("search")
def search_rules(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider whose rules to search")],
    term: Annotated[str, typer.Argument(help="Text to find in title or description")],
):
    with _handle_errors():
        rules = _service(ctx).search_rules(provider_id, term)
        if not rules:
            console.print(f"[yellow]No rules matching '{term}'.[/yellow]")
            return
        console.print(_rules_table(rules, f"Rules matching '{term}'"))


@rules_app.command("stats")
def rule_stats(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider to summarize")],
):
    """
    Summarize a provider's rule catalogue.
    """
    with _handle_errors():
        stats = _service(ctx).get_rule_statistics(provider_id)
        console.print(f"[bold cyan]Rules of {provider_id}:[/bold cyan]")
        console.print(f"   Total: {stats.total_rules}")
        console.print(f"   Active: {stats.active_rules}")
        console.print(f"   Online bookable: {stats.bookable_rules}")
        console.print(f"   Average slot duration: {stats.average_slot_duration:.1f} min")


# Slots


@slots_app.command("list")
def list_slots(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider to list slots for")],
    start: Annotated[Optional[str], typer.Option("--from", help="First date (YYYY-MM-DD), default today")] = None,
    end: Annotated[Optional[str], typer.Option("--to", help="Last date (YYYY-MM-DD), default one week later")] = None,
    status: Annotated[Optional[List[SlotStatus]], typer.Option("--status", "-s", help="Only slots in this status (repeatable)")] = None,
):
    """
    List slots of a provider in a date range.
    """
    with _handle_errors():
        service = _service(ctx)
        date_from = _parse_date(start) if start else pendulum.now(service.config.default_timezone).date()
        date_to = _parse_date(end) if end else pendulum.date(date_from.year, date_from.month, date_from.day).add(days=7)
        slots = service.list_slots(provider_id, date_from, date_to, status_filter=status or None)
        if not slots:
            console.print("[yellow]⚠ No slots found in this range.[/yellow]")
            return
        console.print()
        console.print(_slots_table(slots, f"Slots of {provider_id}, {date_from.isoformat()} - {date_to.isoformat()}"))
        console.print()


@slots_app.command("book")
def book_slot(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Slot to book")],
    patient_id: Annotated[str, typer.Argument(help="Patient booking the slot")],
):
    """
    Book a slot for a patient.
    """
    with _handle_errors():
        confirmation = _service(ctx).book_slot(slot_id, patient_id)
        label = "Booking requested" if confirmation.requires_approval else "Slot booked"
        console.print(
            f"[green]✓ {label}:[/green] {confirmation.starts_at.format('YYYY-MM-DD HH:mm')}"
            f" - {confirmation.ends_at.format('HH:mm')} ({confirmation.status.value})"
        )


@slots_app.command("cancel")
def cancel_booking(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Slot to cancel")],
    actor_id: Annotated[str, typer.Argument(help="Patient or provider cancelling")],
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="Cancellation reason")] = None,
):
    with _handle_errors():
        _print_slot(_service(ctx).cancel_booking(slot_id, actor_id, reason=reason), "Booking cancelled")


@slots_app.command("confirm")
def confirm_booking(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Pending slot to confirm")],
    provider_id: Annotated[str, typer.Argument(help="Provider owning the slot")],
):
    with _handle_errors():
        _print_slot(_service(ctx).confirm_booking(slot_id, provider_id), "Booking confirmed")


@slots_app.command("check-in")
def check_in(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Booked slot")],
    provider_id: Annotated[str, typer.Argument(help="Provider owning the slot")],
):
    with _handle_errors():
        _print_slot(_service(ctx).check_in(slot_id, provider_id), "Patient checked in")


@slots_app.command("complete")
def complete(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Booked slot")],
    provider_id: Annotated[str, typer.Argument(help="Provider owning the slot")],
    notes: Annotated[Optional[str], typer.Option("--notes", help="Provider notes")] = None,
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Actual duration in minutes")] = None,
):
    with _handle_errors():
        slot = _service(ctx).complete(slot_id, provider_id, notes=notes, duration_minutes=duration)
        _print_slot(slot, "Appointment completed")


@slots_app.command("no-show")
def no_show(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Booked slot")],
    provider_id: Annotated[str, typer.Argument(help="Provider owning the slot")],
):
    with _handle_errors():
        _print_slot(_service(ctx).mark_no_show(slot_id, provider_id), "Marked as no-show")


@slots_app.command("remind")
def send_reminder(
    ctx: typer.Context,
    slot_id: Annotated[str, typer.Argument(help="Pending or booked slot")],
    provider_id: Annotated[str, typer.Argument(help="Provider owning the slot")],
):
    with _handle_errors():
        _print_slot(_service(ctx).send_reminder(slot_id, provider_id), "Reminder flagged")


@slots_app.command("patient")
def patient_appointments(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient to look up")],
    include_past: Annotated[bool, typer.Option("--include-past", help="Also show earlier appointments")] = False,
):
    """
    Show a patient's pending and booked appointments.
    """
    with _handle_errors():
        slots = _service(ctx).patient_appointments(patient_id, include_past=include_past)
        if not slots:
            console.print("[yellow]No upcoming appointments.[/yellow]")
            return
        console.print(_slots_table(slots, f"Appointments of {patient_id}"))


# Reporting


@app.command()
def stats(
    ctx: typer.Context,
    provider_id: Annotated[str, typer.Argument(help="Provider to report on")],
    start: Annotated[str, typer.Option("--from", help="First date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Option("--to", help="Last date (YYYY-MM-DD)")],
):
    """
    Show slot statistics and utilization for a provider.
    """
    with _handle_errors():
        result = _service(ctx).get_provider_statistics(provider_id, _parse_date(start), _parse_date(end))
        table = Table(title=f"Statistics of {provider_id}", show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="bold yellow")
        table.add_column("Value", justify="right")
        for key, value in result.as_dict().items():
            shown = f"{value:.1%}" if key == "utilizationRate" else str(value)
            table.add_row(key, shown)
        console.print()
        console.print(table)
        console.print()


# Jobs


@jobs_app.command("materialize")
def materialize(ctx: typer.Context):
    """
    Extend the slot window of every active rule.
    """
    with _handle_errors():
        reports = _service(ctx).run_materialization()
        created = sum(report.created for report in reports)
        console.print(f"[green]✓ {len(reports)} rules checked, {created} slots created[/green]")


@jobs_app.command("reminders")
def reminders(ctx: typer.Context):
    with _handle_errors():
        due = _service(ctx).collect_due_reminders()
        console.print(f"[green]✓ {len(due)} reminders due[/green]")


@jobs_app.command("purge")
def purge(ctx: typer.Context):
    """
    Remove old cancelled slots and expired rules.
    """
    with _handle_errors():
        service = _service(ctx)
        slots = service.purge_cancelled_slots()
        rules = service.purge_expired_rules()
        console.print(f"[green]✓ Purged {slots} cancelled slots and {len(rules)} expired rules[/green]")


@jobs_app.command("run")
def run_scheduler(ctx: typer.Context):
    """
    Run all maintenance jobs on their configured schedule until interrupted.
    """
    import time

    from ..jobs import build_scheduler

    with _handle_errors():
        scheduler = build_scheduler(_service(ctx))
        scheduler.start()
        console.print("[bold cyan]Scheduler running.[/bold cyan] Press Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopping scheduler...[/yellow]")
        finally:
            scheduler.shutdown(wait=False)


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]carecalendar[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
