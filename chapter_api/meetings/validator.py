"""
Completion Validator

Decides whether a meeting is truly complete by cross-referencing attendance
against the turn logs of every required phase.

The decision itself is the pure function `evaluate_completion`. The same
function backs the inline check when the scribe completes a meeting and the
offline `chapter-meetings reconcile` pass. Only the final status write touches
the database, and it is conditional: a meeting that is already `completed`
is never moved back.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.core.config import settings
from chapter_api.meetings.access import get_meeting
from chapter_api.meetings.errors import MeetingRunnerError
from chapter_api.meetings.events import EventType, MeetingEvent, meeting_event
from chapter_api.meetings.models import (
    ActorType,
    Attendance,
    Meeting,
    MeetingStatus,
    TimeLogEntry,
    utcnow,
)
from chapter_api.meetings.phases import REQUIRED_COVERAGE_PHASES, MeetingPhase

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (
    MeetingStatus.COMPLETED,
    MeetingStatus.INCOMPLETE,
    MeetingStatus.NEVER_STARTED,
)
LIVE_STATUSES = (MeetingStatus.SCHEDULED, MeetingStatus.IN_PROGRESS)


# =============================================================================
# Pure evaluation
# =============================================================================


@dataclass(frozen=True)
class CompletionSnapshot:
    """Everything the verdict depends on, read in one pass."""

    meeting_id: UUID
    actual_start_time: datetime | None
    completed_at: datetime | None
    checked_in: frozenset[UUID]
    # Participant ids with any entry in a required phase (open or closed)
    logged: frozenset[UUID]
    # Participant ids with a closed entry, per required phase
    covered: Mapping[MeetingPhase, frozenset[UUID]] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionVerdict:
    status: MeetingStatus
    reason: str
    attendees: frozenset[UUID] = frozenset()
    missing: Mapping[MeetingPhase, list[UUID]] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == MeetingStatus.COMPLETED


def evaluate_completion(snapshot: CompletionSnapshot) -> CompletionVerdict:
    """
    Classify a meeting as never_started, incomplete or completed.

    Attendance and turn-log writes are not transactionally linked, so the
    attendee set is the union of checked-in members and anyone who appears in
    a required phase's log.
    """
    if snapshot.actual_start_time is None:
        return CompletionVerdict(MeetingStatus.NEVER_STARTED, "Meeting was never started")

    if snapshot.completed_at is None:
        return CompletionVerdict(MeetingStatus.INCOMPLETE, "Meeting was never completed")

    attendees = frozenset(snapshot.checked_in | snapshot.logged)
    if not attendees:
        return CompletionVerdict(MeetingStatus.INCOMPLETE, "No attendees checked in")

    missing: dict[MeetingPhase, list[UUID]] = {}
    for phase in REQUIRED_COVERAGE_PHASES:
        gaps = attendees - snapshot.covered.get(phase, frozenset())
        if gaps:
            missing[phase] = sorted(gaps, key=str)

    if missing:
        phases = ", ".join(phase.value for phase in missing)
        return CompletionVerdict(
            MeetingStatus.INCOMPLETE,
            f"Missing turns in {phases}",
            attendees=attendees,
            missing=missing,
        )

    return CompletionVerdict(
        MeetingStatus.COMPLETED, "All required phases covered", attendees=attendees
    )


# =============================================================================
# Persistence
# =============================================================================


@dataclass
class ValidationResult:
    """Outcome of applying a verdict to one meeting."""

    meeting_id: UUID
    previous_status: MeetingStatus
    verdict: CompletionVerdict
    status: MeetingStatus
    changed: bool = False
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "meeting_id": str(self.meeting_id),
            "previous_status": self.previous_status.value,
            "verdict": self.verdict.status.value,
            "status": self.status.value,
            "reason": self.verdict.reason,
            "changed": self.changed,
            "skipped": self.skipped,
            "missing": {
                phase.value: [str(user_id) for user_id in users]
                for phase, users in self.verdict.missing.items()
            },
        }


class CompletionValidator:
    """Loads snapshots and writes verdicts. Safe to run while meetings are live."""

    def __init__(self, db: AsyncSession, actor_type: ActorType = ActorType.SYSTEM):
        self.db = db
        self.actor_type = actor_type
        self.events: list[MeetingEvent] = []
        self.failures: list[tuple[UUID, MeetingRunnerError]] = []

    async def load_snapshot(self, meeting: Meeting) -> CompletionSnapshot:
        attendance = await self.db.execute(
            select(Attendance.user_id)
            .where(Attendance.meeting_id == meeting.id)
            .where(Attendance.checked_in_at.is_not(None))
        )
        entries = await self.db.execute(
            select(TimeLogEntry.phase, TimeLogEntry.user_id, TimeLogEntry.end_time)
            .where(TimeLogEntry.meeting_id == meeting.id)
            .where(TimeLogEntry.user_id.is_not(None))
            .where(TimeLogEntry.phase.in_(REQUIRED_COVERAGE_PHASES))
        )

        logged: set[UUID] = set()
        covered: dict[MeetingPhase, set[UUID]] = {p: set() for p in REQUIRED_COVERAGE_PHASES}
        for phase, user_id, end_time in entries.all():
            logged.add(user_id)
            if end_time is not None:
                covered[MeetingPhase(phase)].add(user_id)

        return CompletionSnapshot(
            meeting_id=meeting.id,
            actual_start_time=meeting.actual_start_time,
            completed_at=meeting.completed_at,
            checked_in=frozenset(attendance.scalars().all()),
            logged=frozenset(logged),
            covered={phase: frozenset(users) for phase, users in covered.items()},
        )

    async def evaluate(self, meeting_id: UUID) -> CompletionVerdict:
        """Read-only verdict, no write."""
        meeting = await get_meeting(self.db, meeting_id)
        return evaluate_completion(await self.load_snapshot(meeting))

    async def apply(
        self,
        meeting_id: UUID,
        force: bool = False,
        actor_id: UUID | None = None,
    ) -> ValidationResult:
        """
        Evaluate a meeting and persist the verdict when it changes the status.

        Meetings that are still scheduled or running (and not completed) are
        only evaluated unless force is set, so the offline pass never marks a
        live meeting incomplete underneath its scribe.
        """
        meeting = await get_meeting(self.db, meeting_id)
        previous = meeting.status
        verdict = evaluate_completion(await self.load_snapshot(meeting))
        result = ValidationResult(
            meeting_id=meeting.id,
            previous_status=previous,
            verdict=verdict,
            status=previous,
        )

        if previous == MeetingStatus.COMPLETED or verdict.status == previous:
            return result

        live = previous in LIVE_STATUSES and meeting.completed_at is None
        if live and not force:
            result.skipped = True
            return result

        values: dict = {"status": verdict.status, "version": Meeting.version + 1}
        if verdict.is_complete:
            values["phase"] = MeetingPhase.ENDED

        outcome = await self.db.execute(
            update(Meeting)
            .where(Meeting.id == meeting.id)
            .where(Meeting.status != MeetingStatus.COMPLETED)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(meeting)
        if outcome.rowcount == 0:
            # Completed concurrently by another writer
            result.status = meeting.status
            return result

        result.status = meeting.status
        result.changed = True
        logger.info(
            "Meeting %s: %s -> %s (%s)",
            meeting.id,
            previous.value,
            verdict.status.value,
            verdict.reason,
        )
        self.events.append(
            meeting_event(
                meeting,
                EventType.MEETING_VALIDATED,
                actor_id,
                f"Meeting marked {verdict.status.value}",
                actor_type=self.actor_type,
                previous_status=previous.value,
                status=verdict.status.value,
                reason=verdict.reason,
                missing={p.value: [str(u) for u in users] for p, users in verdict.missing.items()},
            )
        )
        return result

    async def find_candidates(
        self,
        now: datetime | None = None,
        stale_hours: int | None = None,
    ) -> list[UUID]:
        """Terminal meetings plus scheduled/running ones left behind for too long."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=stale_hours or settings.stale_meeting_hours)
        result = await self.db.execute(
            select(Meeting.id)
            .where(
                or_(
                    Meeting.status.in_(TERMINAL_STATUSES),
                    Meeting.status.in_(LIVE_STATUSES) & (Meeting.scheduled_at < cutoff),
                )
            )
            .order_by(Meeting.scheduled_at)
        )
        return list(result.scalars().all())

    async def reconcile(
        self,
        meeting_ids: list[UUID] | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
        commit_each: bool = False,
    ) -> list[ValidationResult]:
        """
        Batch pass over candidate meetings.

        Scanned candidates are forced through, which turns an abandoned
        meeting into never_started or incomplete. Explicitly named meetings
        that are still live are only evaluated.

        With commit_each, every meeting is committed on its own and a failing
        meeting is rolled back and recorded in `failures` instead of stopping
        the pass. Otherwise errors propagate to the caller's transaction.
        """
        force = meeting_ids is None
        ids = meeting_ids if meeting_ids is not None else await self.find_candidates(now)
        results = []
        for meeting_id in ids:
            try:
                results.append(await self._reconcile_one(meeting_id, dry_run, force))
                if commit_each and not dry_run:
                    await self.db.commit()
            except MeetingRunnerError as e:
                if not commit_each:
                    raise
                await self.db.rollback()
                logger.warning("Reconcile failed for meeting %s: %s", meeting_id, e.message)
                self.failures.append((meeting_id, e))
        return results

    async def _reconcile_one(
        self,
        meeting_id: UUID,
        dry_run: bool,
        force: bool,
    ) -> ValidationResult:
        if not dry_run:
            return await self.apply(meeting_id, force=force)

        meeting = await get_meeting(self.db, meeting_id)
        verdict = evaluate_completion(await self.load_snapshot(meeting))
        return ValidationResult(
            meeting_id=meeting.id,
            previous_status=meeting.status,
            verdict=verdict,
            status=meeting.status,
            skipped=True,
        )
