"""
Segment Timer

Open/close lifecycle of one timed interval: a speaker's turn or the
section-level bracket around a phase. idle -> running -> closed.

Only one participant timer and one section bracket may be running per
meeting. The read checks give a precise error; the partial unique indexes on
meeting_time_log close the window between two devices reading "nothing open"
at the same moment.
"""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.meetings.errors import (
    DuplicateTurnError,
    InvalidSubmissionError,
    TimerAlreadyOpenError,
    TimerNotOpenError,
)
from chapter_api.meetings.models import TimeLogEntry, as_utc, utcnow
from chapter_api.meetings.phases import (
    TURN_PHASES,
    MeetingPhase,
    allotted_seconds,
    compute_overtime,
)
from chapter_api.meetings.turn_queue import TurnQueue

logger = logging.getLogger(__name__)


class SegmentTimer:
    """Starts, stops and skips time-log entries for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = TurnQueue(db)

    async def open_entry(self, meeting_id: UUID, section: bool = False) -> TimeLogEntry | None:
        """The running participant timer (or section bracket), if any."""
        query = (
            select(TimeLogEntry)
            .where(TimeLogEntry.meeting_id == meeting_id)
            .where(TimeLogEntry.end_time.is_(None))
            .execution_options(populate_existing=True)
        )
        if section:
            query = query.where(TimeLogEntry.user_id.is_(None))
        else:
            query = query.where(TimeLogEntry.user_id.is_not(None))
        result = await self.db.execute(query)
        return result.scalars().first()

    async def start(
        self,
        meeting_id: UUID,
        phase: MeetingPhase,
        participant: UUID | None = None,
        priority: int | None = None,
    ) -> TimeLogEntry:
        """Open an entry at now. participant=None opens the phase bracket."""
        phase = MeetingPhase(phase)
        section = participant is None

        if not section:
            if phase not in TURN_PHASES:
                raise InvalidSubmissionError(
                    f"{phase.value} has no per-participant turns", phase=phase.value
                )
            if await self.queue.existing_entry(meeting_id, phase, participant) is not None:
                raise DuplicateTurnError(meeting_id, phase.value, participant)

        running = await self.open_entry(meeting_id, section=section)
        if running is not None:
            raise TimerAlreadyOpenError(meeting_id, running.id, running.user_id)

        entry = TimeLogEntry(
            meeting_id=meeting_id,
            phase=phase,
            user_id=participant,
            start_time=utcnow(),
            priority=priority,
            skipped=False,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except IntegrityError:
            # Lost a race: find out which constraint we hit
            running = await self.open_entry(meeting_id, section=section)
            if running is not None:
                raise TimerAlreadyOpenError(meeting_id, running.id, running.user_id) from None
            raise DuplicateTurnError(meeting_id, phase.value, participant) from None

        logger.debug(
            "Timer started: meeting=%s phase=%s user=%s", meeting_id, phase.value, participant
        )
        return entry

    async def stop(
        self,
        meeting_id: UUID,
        entry_id: UUID | None = None,
        skipped: bool = False,
    ) -> TimeLogEntry:
        """
        Close a running entry and compute its duration and overtime.

        With no entry_id the running participant timer is closed. The write is
        conditional on end_time still being NULL, so two devices pressing stop
        together close the entry once and the second gets TimerNotOpenError.
        """
        if entry_id is None:
            entry = await self.open_entry(meeting_id)
        else:
            result = await self.db.execute(
                select(TimeLogEntry)
                .where(TimeLogEntry.id == entry_id)
                .where(TimeLogEntry.meeting_id == meeting_id)
                .execution_options(populate_existing=True)
            )
            entry = result.scalar_one_or_none()

        if entry is None or not entry.is_open:
            raise TimerNotOpenError(meeting_id, entry_id)

        end_time = utcnow()
        duration = max(0, int((end_time - as_utc(entry.start_time)).total_seconds()))
        if entry.is_section:
            overtime = None
        elif skipped:
            overtime = 0
        else:
            overtime = compute_overtime(duration, allotted_seconds(entry.phase))

        result = await self.db.execute(
            update(TimeLogEntry)
            .where(TimeLogEntry.id == entry.id)
            .where(TimeLogEntry.end_time.is_(None))
            .values(
                end_time=end_time,
                duration_seconds=duration,
                overtime_seconds=overtime,
                skipped=skipped,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise TimerNotOpenError(meeting_id, entry.id)

        logger.debug(
            "Timer stopped: meeting=%s entry=%s duration=%ss overtime=%s",
            meeting_id,
            entry.id,
            duration,
            overtime,
        )
        return entry

    async def skip(
        self,
        meeting_id: UUID,
        phase: MeetingPhase,
        participant: UUID,
        priority: int | None = None,
    ) -> TimeLogEntry:
        """Zero-duration skipped entry; no timer is ever running."""
        return await self.queue.record_turn(
            meeting_id,
            phase,
            participant,
            duration_seconds=0,
            skipped=True,
            priority=priority,
        )

    async def open_section(self, meeting_id: UUID, phase: MeetingPhase) -> TimeLogEntry:
        return await self.start(meeting_id, phase, None)

    async def close_section(self, meeting_id: UUID) -> TimeLogEntry | None:
        """Close the running phase bracket. No-op when none is open."""
        bracket = await self.open_entry(meeting_id, section=True)
        if bracket is None:
            return None
        return await self.stop(meeting_id, bracket.id)
