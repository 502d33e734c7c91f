"""
Turn Queue

Who speaks next in a timed segment, and whether everyone has had their turn.

The order is never stored. It is recomputed from the checked-in attendees and
the phase's time-log entries on every call, so a member who checks in halfway
through the lightning round simply joins the end of the queue.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.meetings.errors import DuplicateTurnError, InvalidSubmissionError
from chapter_api.meetings.models import Attendance, TimeLogEntry, utcnow
from chapter_api.meetings.phases import (
    TURN_PHASES,
    MeetingPhase,
    allotted_seconds,
    compute_overtime,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Pure queue derivation
# =============================================================================


def derive_queue(checked_in: Sequence[UUID], logged: Iterable[UUID]) -> list[UUID]:
    """Checked-in attendees without any entry, in check-in order."""
    seen = set(logged)
    return [user_id for user_id in checked_in if user_id not in seen]


def outstanding(checked_in: Sequence[UUID], covered: Iterable[UUID]) -> list[UUID]:
    """Checked-in attendees whose turn is not closed yet, in check-in order."""
    done = set(covered)
    return [user_id for user_id in checked_in if user_id not in done]


def is_covered(checked_in: Iterable[UUID], covered: Iterable[UUID]) -> bool:
    """Subset check: every checked-in attendee has a closed entry."""
    return set(checked_in) <= set(covered)


# =============================================================================
# Persistence-backed queue
# =============================================================================


class TurnQueue:
    """Reads and appends participant entries for turn-based phases."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def checked_in_attendees(self, meeting_id: UUID) -> list[UUID]:
        """Checked-in user ids in check-in order."""
        result = await self.db.execute(
            select(Attendance.user_id)
            .where(Attendance.meeting_id == meeting_id)
            .where(Attendance.checked_in_at.is_not(None))
            .order_by(Attendance.checked_in_at, Attendance.created_at)
        )
        return list(result.scalars().all())

    async def entries(self, meeting_id: UUID, phase: MeetingPhase) -> list[TimeLogEntry]:
        """Participant entries for one phase, oldest first."""
        result = await self.db.execute(
            select(TimeLogEntry)
            .where(TimeLogEntry.meeting_id == meeting_id)
            .where(TimeLogEntry.phase == phase)
            .where(TimeLogEntry.user_id.is_not(None))
            .order_by(TimeLogEntry.start_time)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def next_participant(self, meeting_id: UUID, phase: MeetingPhase) -> UUID | None:
        """First checked-in attendee with no entry for the phase, or None when exhausted."""
        checked_in = await self.checked_in_attendees(meeting_id)
        logged = [entry.user_id for entry in await self.entries(meeting_id, phase)]
        queue = derive_queue(checked_in, logged)
        return queue[0] if queue else None

    async def upcoming(self, meeting_id: UUID, phase: MeetingPhase) -> list[UUID]:
        checked_in = await self.checked_in_attendees(meeting_id)
        logged = [entry.user_id for entry in await self.entries(meeting_id, phase)]
        return derive_queue(checked_in, logged)

    async def missing_participants(self, meeting_id: UUID, phase: MeetingPhase) -> list[UUID]:
        """Checked-in attendees without a closed entry (a running turn is not done)."""
        checked_in = await self.checked_in_attendees(meeting_id)
        closed = [e.user_id for e in await self.entries(meeting_id, phase) if not e.is_open]
        return outstanding(checked_in, closed)

    async def is_phase_complete(self, meeting_id: UUID, phase: MeetingPhase) -> bool:
        """Recomputed from persisted rows on every call."""
        return not await self.missing_participants(meeting_id, phase)

    async def existing_entry(
        self,
        meeting_id: UUID,
        phase: MeetingPhase,
        user_id: UUID,
    ) -> TimeLogEntry | None:
        result = await self.db.execute(
            select(TimeLogEntry)
            .where(TimeLogEntry.meeting_id == meeting_id)
            .where(TimeLogEntry.phase == phase)
            .where(TimeLogEntry.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def record_turn(
        self,
        meeting_id: UUID,
        phase: MeetingPhase,
        participant: UUID,
        duration_seconds: int,
        skipped: bool = False,
        priority: int | None = None,
    ) -> TimeLogEntry:
        """
        Append a closed entry for a participant's turn.

        Turns are write-once: a second entry for the same (meeting, phase,
        participant) raises DuplicateTurnError and leaves the first untouched.
        The read check catches the common stale-client case; the unique
        constraint catches two writers racing past it.
        """
        phase = MeetingPhase(phase)
        if phase not in TURN_PHASES:
            raise InvalidSubmissionError(
                f"{phase.value} is not a turn-based phase", phase=phase.value
            )
        if duration_seconds < 0:
            raise InvalidSubmissionError(
                "Duration cannot be negative", duration_seconds=duration_seconds
            )

        if await self.existing_entry(meeting_id, phase, participant) is not None:
            raise DuplicateTurnError(meeting_id, phase.value, participant)

        end_time = utcnow()
        entry = TimeLogEntry(
            meeting_id=meeting_id,
            phase=phase,
            user_id=participant,
            start_time=end_time - timedelta(seconds=duration_seconds),
            end_time=end_time,
            duration_seconds=duration_seconds,
            overtime_seconds=0 if skipped else compute_overtime(
                duration_seconds, allotted_seconds(phase)
            ),
            priority=priority,
            skipped=skipped,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except IntegrityError:
            logger.info(
                "Duplicate turn rejected by constraint: meeting=%s phase=%s user=%s",
                meeting_id,
                phase.value,
                participant,
            )
            raise DuplicateTurnError(meeting_id, phase.value, participant) from None

        return entry
