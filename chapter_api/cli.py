"""
Chapter Meetings - CLI Entry Point

Offline tooling for the meeting runner.

Usage:
    # Re-check every finished or abandoned meeting
    chapter-meetings reconcile

    # Preview the verdict for one meeting without writing
    chapter-meetings reconcile --meeting <id> --dry-run

    # Wipe a meeting's run data and return it to scheduled
    chapter-meetings reset-meeting <id>
"""

import asyncio
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chapter_api.core.database import async_session_maker, engine
from chapter_api.core.logging import configure_logging
from chapter_api.meetings.errors import MeetingRunnerError
from chapter_api.meetings.events import ActivityLogger, EventDispatcher, EventEmitter
from chapter_api.meetings.models import ActorType, MeetingStatus
from chapter_api.meetings.runner import MeetingRunner
from chapter_api.meetings.validator import CompletionValidator, ValidationResult

app = typer.Typer(
    name="chapter-meetings",
    help="Maintenance commands for chapter meetings",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    MeetingStatus.COMPLETED: "green",
    MeetingStatus.INCOMPLETE: "yellow",
    MeetingStatus.NEVER_STARTED: "red",
}


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]Chapter Meetings[/bold blue]\n"
        "[dim]Meeting runner maintenance[/dim]",
        border_style="blue",
    ))
    console.print()


def _parse_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Not a meeting id: {value}[/red]")
        raise typer.Exit(2)


def _status(value: MeetingStatus) -> str:
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value.value}[/{style}]" if style else value.value


async def _dispatch(events: list) -> None:
    async with EventEmitter() as emitter:
        await EventDispatcher(emitter, ActivityLogger(async_session_maker)).dispatch(events)


def _results_table(results: list[ValidationResult], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Meeting", style="dim")
    table.add_column("Was")
    table.add_column("Verdict")
    table.add_column("Now")
    table.add_column("Reason")

    for result in results:
        table.add_row(
            str(result.meeting_id),
            result.previous_status.value,
            _status(result.verdict.status),
            _status(result.status) + (" *" if result.changed else ""),
            result.verdict.reason,
        )
    return table


@app.command()
def reconcile(
    meeting: Optional[str] = typer.Option(
        None, "--meeting", "-m", help="Only check this meeting"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Show verdicts without writing"
    ),
) -> None:
    """
    Run the completion validator over finished and abandoned meetings.

    Scans completed, incomplete and never-started meetings plus scheduled or
    running meetings older than STALE_MEETING_HOURS. Each meeting is committed
    on its own, so one failure does not undo the rest.
    """
    configure_logging()
    print_banner()
    meeting_id = _parse_id(meeting) if meeting else None

    async def run_reconcile() -> list[ValidationResult]:
        async with async_session_maker() as db:
            validator = CompletionValidator(db, actor_type=ActorType.CRON)
            results = await validator.reconcile(
                [meeting_id] if meeting_id is not None else None,
                dry_run=dry_run,
                commit_each=True,
            )
        for candidate, error in validator.failures:
            console.print(f"[red]{candidate}: {error.message}[/red]")
        await _dispatch(validator.events)
        await engine.dispose()
        return results

    results = asyncio.run(run_reconcile())
    if not results:
        console.print("[yellow]No meetings to check.[/yellow]")
        return

    title = "Completion verdicts (dry run)" if dry_run else "Completion verdicts"
    console.print(_results_table(results, title))
    changed = sum(1 for r in results if r.changed)
    console.print(f"\n[bold]{len(results)}[/bold] checked, [bold]{changed}[/bold] updated")


@app.command("reset-meeting")
def reset_meeting(
    meeting: str = typer.Argument(..., help="Meeting id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """
    Purge turns, timers, responses and feedback and return the meeting to
    scheduled. Check-ins are cleared; RSVPs are kept.
    """
    configure_logging()
    meeting_id = _parse_id(meeting)
    if not yes:
        typer.confirm(f"Reset meeting {meeting_id}? All run data is deleted", abort=True)

    async def run_reset() -> None:
        async with async_session_maker() as db:
            runner = MeetingRunner(db)
            await runner.reset_meeting(meeting_id, requested_by=None)
            await db.commit()
        await _dispatch(runner.events)
        await engine.dispose()

    try:
        asyncio.run(run_reset())
    except MeetingRunnerError as e:
        console.print(f"[red]Reset failed: {e.message}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Meeting {meeting_id} reset to scheduled.[/green]")


@app.command("show-meeting")
def show_meeting(meeting: str = typer.Argument(..., help="Meeting id")) -> None:
    """Show a meeting's phase, attendees and turn coverage."""
    meeting_id = _parse_id(meeting)

    async def run_show() -> None:
        async with async_session_maker() as db:
            state = await MeetingRunner(db).load_state(meeting_id)
            verdict = await CompletionValidator(db).evaluate(meeting_id)
        await engine.dispose()

        m = state.meeting
        console.print(Panel.fit(
            f"[bold]{m.id}[/bold]\n"
            f"Status: {_status(m.status)}   Phase: [cyan]{m.phase.value}[/cyan]\n"
            f"Scheduled: {m.scheduled_at:%Y-%m-%d %H:%M}"
            + (f"   Started: {m.actual_start_time:%H:%M}" if m.actual_start_time else "")
            + (" [yellow](late)[/yellow]" if m.started_late else ""),
            border_style="blue",
        ))

        covered: dict[str, set[UUID]] = {}
        for entry in state.time_logs:
            if entry.user_id is not None and entry.end_time is not None:
                covered.setdefault(entry.phase.value, set()).add(entry.user_id)

        table = Table(title="Attendees")
        table.add_column("Member", style="green")
        table.add_column("RSVP")
        table.add_column("Checked in")
        table.add_column("Lightning")
        table.add_column("Check-in")

        for a in state.attendees:
            table.add_row(
                a.user.display_name if a.user else str(a.user_id),
                a.rsvp_status.value,
                a.checked_in_at.strftime("%H:%M") if a.checked_in_at else "-",
                "yes" if a.user_id in covered.get("lightning_round", set()) else "-",
                "yes" if a.user_id in covered.get("full_checkins", set()) else "-",
            )
        console.print(table)
        console.print(f"\nValidator: {_status(verdict.status)} - {verdict.reason}")

    try:
        asyncio.run(run_show())
    except MeetingRunnerError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
