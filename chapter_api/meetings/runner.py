"""
Meeting Runner

The phase state machine of a live meeting:
NOT_STARTED -> OPENING_MEDITATION -> OPENING_ETHOS -> LIGHTNING_ROUND
-> FULL_CHECKINS -> CURRICULUM -> CLOSING -> ENDED

Every command re-reads the meeting, the requester's role and the rows its
precondition depends on, validates, then writes. Writes to the meeting row go
through the version column, so two devices acting on the same stale state
cannot both succeed. Events are collected in `self.events` and dispatched by
the caller after commit.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from chapter_api.core.config import settings
from chapter_api.meetings.access import (
    get_meeting,
    get_membership,
    require_control,
    require_in_progress,
    require_leader,
    resolve_role,
)
from chapter_api.meetings.errors import (
    AlreadyStartedError,
    ConcurrentUpdateError,
    InvalidSubmissionError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotCheckedInError,
    NotInProgressError,
    PhaseIncompleteError,
)
from chapter_api.meetings.events import EventType, MeetingEvent, meeting_event
from chapter_api.meetings.models import (
    ActorType,
    Attendance,
    AttendanceType,
    CurriculumModule,
    CurriculumResponse,
    Meeting,
    MeetingFeedback,
    MeetingStatus,
    TimeLogEntry,
    as_utc,
    utcnow,
)
from chapter_api.meetings.phases import (
    SCRIBE_MARKED_PHASES,
    TURN_PHASES,
    MeetingPhase,
    allotted_seconds,
    next_phase,
    phase_index,
)
from chapter_api.meetings.timer import SegmentTimer
from chapter_api.meetings.turn_queue import TurnQueue, outstanding
from chapter_api.meetings.validator import CompletionValidator, ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class MeetingState:
    """Everything an observer needs to render the meeting."""

    meeting: Meeting
    attendees: list[Attendance]
    time_logs: list[TimeLogEntry]
    running_turn: TimeLogEntry | None = None
    running_section: TimeLogEntry | None = None
    next_up: UUID | None = None
    missing: list[UUID] = field(default_factory=list)
    responded: list[UUID] = field(default_factory=list)
    feedback_given: list[UUID] = field(default_factory=list)

    @property
    def next_phase(self) -> MeetingPhase | None:
        return next_phase(self.meeting.phase)

    @property
    def allotted_seconds(self) -> int | None:
        return allotted_seconds(self.meeting.phase)

    @property
    def can_advance(self) -> bool:
        return (
            self.meeting.status == MeetingStatus.IN_PROGRESS
            and self.next_phase is not None
            and self.running_turn is None
            and not self.missing
        )


class MeetingRunner:
    """Commands that drive a meeting from start to completion."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.queue = TurnQueue(db)
        self.timer = SegmentTimer(db)
        self.events: list[MeetingEvent] = []

    async def _flush(self, meeting: Meeting) -> None:
        # A failed flush expires the instance, so attributes are read first.
        meeting_id = meeting.id
        try:
            await self.db.flush()
        except StaleDataError:
            logger.info("Version conflict on meeting %s", meeting_id)
            raise ConcurrentUpdateError(meeting_id) from None

    async def _require_checked_in(self, meeting_id: UUID, user_id: UUID) -> Attendance:
        result = await self.db.execute(
            select(Attendance)
            .where(Attendance.meeting_id == meeting_id)
            .where(Attendance.user_id == user_id)
            .where(Attendance.checked_in_at.is_not(None))
        )
        attendance = result.scalar_one_or_none()
        if attendance is None:
            raise NotCheckedInError(meeting_id, user_id)
        return attendance

    def _emit(
        self,
        meeting: Meeting,
        event_type: EventType,
        actor_id: UUID | None,
        summary: str,
        **details,
    ) -> None:
        actor_type = ActorType.USER if actor_id else ActorType.SYSTEM
        self.events.append(
            meeting_event(meeting, event_type, actor_id, summary, actor_type=actor_type, **details)
        )

    # =========================================================================
    # Phase requirements
    # =========================================================================

    async def _submitted(self, model, meeting: Meeting) -> list[UUID]:
        query = select(model.user_id).where(model.meeting_id == meeting.id)
        if model is CurriculumResponse:
            query = query.where(CurriculumResponse.module_id == meeting.selected_curriculum_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def missing_for_phase(self, meeting: Meeting) -> list[UUID]:
        """
        Checked-in attendees still owing work for the current phase.

        Meditation and ethos are completed by the advance itself. A ditched or
        unselected curriculum has no response requirement.
        """
        phase = meeting.phase
        if phase in SCRIBE_MARKED_PHASES or phase == MeetingPhase.ENDED:
            return []
        if phase in TURN_PHASES:
            return await self.queue.missing_participants(meeting.id, phase)

        checked_in = await self.queue.checked_in_attendees(meeting.id)
        if phase == MeetingPhase.CURRICULUM:
            if meeting.curriculum_ditched or meeting.selected_curriculum_id is None:
                return []
            return outstanding(checked_in, await self._submitted(CurriculumResponse, meeting))
        if phase == MeetingPhase.CLOSING:
            return outstanding(checked_in, await self._submitted(MeetingFeedback, meeting))
        return []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_meeting(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        scribe_id: UUID | None = None,
    ) -> Meeting:
        """Start a meeting (transition from SCHEDULED to IN_PROGRESS)."""
        meeting = await get_meeting(self.db, meeting_id)
        await require_leader(self.db, meeting.chapter_id, requested_by)

        if meeting.status != MeetingStatus.SCHEDULED:
            raise AlreadyStartedError(meeting.id, meeting.status.value)

        scribe_id = scribe_id or requested_by
        if await get_membership(self.db, meeting.chapter_id, scribe_id) is None:
            raise InvalidSubmissionError(
                "Scribe must be an active chapter member", scribe_id=scribe_id
            )

        now = utcnow()
        grace = timedelta(minutes=settings.late_start_grace_minutes)
        meeting.status = MeetingStatus.IN_PROGRESS
        meeting.phase = MeetingPhase.NOT_STARTED
        meeting.actual_start_time = now
        meeting.started_late = now > as_utc(meeting.scheduled_at) + grace
        meeting.scribe_id = scribe_id
        await self._flush(meeting)

        self._emit(
            meeting,
            EventType.MEETING_STARTED,
            requested_by,
            "Meeting started" + (" late" if meeting.started_late else ""),
            scribe_id=scribe_id,
            started_late=meeting.started_late,
        )

        result = await self.db.execute(
            select(Attendance.user_id)
            .where(Attendance.meeting_id == meeting.id)
            .where(Attendance.checked_in_at.is_(None))
        )
        recipients = [str(user_id) for user_id in result.scalars().all()]
        if recipients:
            self._emit(
                meeting,
                EventType.MEMBER_NOTIFIED,
                requested_by,
                "Your chapter meeting has started",
                recipients=recipients,
            )

        logger.info("Meeting %s started by %s (scribe %s)", meeting.id, requested_by, scribe_id)
        return meeting

    async def advance(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        target: MeetingPhase | None = None,
        expected_version: int | None = None,
    ) -> Meeting:
        """
        Move to exactly the next phase.

        Fails with PhaseIncompleteError while anyone checked in still owes work
        for the current phase. A client may pin the move with `target` or
        `expected_version` so a repeated click fails instead of skipping ahead.
        """
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        if expected_version is not None and expected_version != meeting.version:
            raise ConcurrentUpdateError(meeting.id)

        current = meeting.phase
        upcoming = next_phase(current)
        if upcoming is None or (target is not None and MeetingPhase(target) != upcoming):
            raise InvalidTransitionError(
                current.value,
                MeetingPhase(target).value if target else "none",
                upcoming.value if upcoming else None,
            )

        running = await self.timer.open_entry(meeting.id)
        if running is not None:
            raise PhaseIncompleteError(
                current.value, [running.user_id], reason="A turn is still running"
            )

        missing = await self.missing_for_phase(meeting)
        if missing:
            raise PhaseIncompleteError(current.value, missing)

        await self.timer.close_section(meeting.id)
        meeting.phase = upcoming
        await self._flush(meeting)
        if upcoming != MeetingPhase.ENDED:
            await self.timer.open_section(meeting.id, upcoming)

        self._emit(
            meeting,
            EventType.PHASE_ADVANCED,
            requested_by,
            f"Moved to {upcoming.value}",
            from_phase=current.value,
            to_phase=upcoming.value,
        )
        return meeting

    async def change_scribe(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        new_scribe_id: UUID,
    ) -> Meeting:
        meeting = await get_meeting(self.db, meeting_id)
        role = await resolve_role(self.db, meeting, requested_by)
        if not (role.is_leader or role.is_scribe):
            raise NotAuthorizedError(
                "Only a Leader or the current Scribe can hand over the meeting",
                user_id=requested_by,
            )
        require_in_progress(meeting)
        await self._require_checked_in(meeting.id, new_scribe_id)

        previous = meeting.scribe_id
        meeting.scribe_id = new_scribe_id
        await self._flush(meeting)

        self._emit(
            meeting,
            EventType.SCRIBE_CHANGED,
            requested_by,
            "Scribe changed",
            previous_scribe_id=str(previous) if previous else None,
            scribe_id=str(new_scribe_id),
        )
        return meeting

    # =========================================================================
    # Curriculum
    # =========================================================================

    async def select_curriculum(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        module_id: UUID,
    ) -> Meeting:
        """Leaders choose the module any time before the curriculum phase begins."""
        meeting = await get_meeting(self.db, meeting_id)
        await require_leader(self.db, meeting.chapter_id, requested_by)

        if meeting.status not in (MeetingStatus.SCHEDULED, MeetingStatus.IN_PROGRESS):
            raise NotInProgressError(meeting.id, meeting.status.value)
        if phase_index(meeting.phase) >= phase_index(MeetingPhase.CURRICULUM):
            raise InvalidSubmissionError(
                "Curriculum can only be chosen before the curriculum phase",
                phase=meeting.phase.value,
            )
        if await self.db.get(CurriculumModule, module_id) is None:
            raise InvalidSubmissionError("Curriculum module not found", module_id=module_id)

        meeting.selected_curriculum_id = module_id
        meeting.curriculum_ditched = False
        await self._flush(meeting)

        self._emit(
            meeting,
            EventType.CURRICULUM_SELECTED,
            requested_by,
            "Curriculum selected",
            module_id=str(module_id),
        )
        return meeting

    async def ditch_curriculum(self, meeting_id: UUID, requested_by: UUID) -> Meeting:
        """Drop the curriculum for this meeting; the phase then has nothing to collect."""
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        if phase_index(meeting.phase) > phase_index(MeetingPhase.CURRICULUM):
            raise InvalidSubmissionError(
                "Curriculum phase is already over", phase=meeting.phase.value
            )
        if meeting.curriculum_ditched:
            return meeting

        meeting.curriculum_ditched = True
        await self._flush(meeting)

        self._emit(meeting, EventType.CURRICULUM_DITCHED, requested_by, "Curriculum ditched")
        return meeting

    # =========================================================================
    # Timers and turns
    # =========================================================================

    async def _turn_phase(self, meeting: Meeting, phase: MeetingPhase | None) -> MeetingPhase:
        """Turns go to the current phase or, as catch-up, an earlier turn phase."""
        phase = MeetingPhase(phase) if phase else meeting.phase
        if phase not in TURN_PHASES:
            raise InvalidSubmissionError(
                f"{phase.value} is not a turn-based phase", phase=phase.value
            )
        if phase_index(phase) > phase_index(meeting.phase):
            raise InvalidSubmissionError(
                "Cannot record turns for a phase that has not started",
                phase=phase.value,
                current_phase=meeting.phase.value,
            )
        return phase

    async def start_timer(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        participant: UUID | None = None,
        priority: int | None = None,
    ) -> TimeLogEntry:
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        if participant is not None:
            phase = await self._turn_phase(meeting, None)
            await self._require_checked_in(meeting.id, participant)
        else:
            phase = meeting.phase
        entry = await self.timer.start(meeting.id, phase, participant, priority=priority)

        self._emit(
            meeting,
            EventType.TIMER_STARTED,
            requested_by,
            "Timer started",
            entry_id=str(entry.id),
            user_id=str(participant) if participant else None,
            allotted_seconds=allotted_seconds(phase) if participant else None,
        )
        return entry

    async def stop_timer(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        entry_id: UUID | None = None,
        skipped: bool = False,
    ) -> TimeLogEntry:
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        entry = await self.timer.stop(meeting.id, entry_id, skipped=skipped)

        self._emit(
            meeting,
            EventType.TIMER_STOPPED,
            requested_by,
            "Timer stopped",
            entry_id=str(entry.id),
            user_id=str(entry.user_id) if entry.user_id else None,
            duration_seconds=entry.duration_seconds,
            overtime_seconds=entry.overtime_seconds,
            skipped=skipped,
        )
        return entry

    async def record_turn(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        participant: UUID,
        duration_seconds: int,
        skipped: bool = False,
        priority: int | None = None,
        phase: MeetingPhase | None = None,
    ) -> TimeLogEntry:
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        phase = await self._turn_phase(meeting, phase)
        await self._require_checked_in(meeting.id, participant)
        entry = await self.queue.record_turn(
            meeting.id,
            phase,
            participant,
            duration_seconds,
            skipped=skipped,
            priority=priority,
        )

        self._emit(
            meeting,
            EventType.TURN_SKIPPED if skipped else EventType.TURN_RECORDED,
            requested_by,
            "Turn skipped" if skipped else "Turn recorded",
            entry_id=str(entry.id),
            user_id=str(participant),
            turn_phase=phase.value,
            duration_seconds=entry.duration_seconds,
            overtime_seconds=entry.overtime_seconds,
        )
        return entry

    async def skip_turn(
        self,
        meeting_id: UUID,
        requested_by: UUID,
        participant: UUID,
        phase: MeetingPhase | None = None,
    ) -> TimeLogEntry:
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)
        require_in_progress(meeting)

        phase = await self._turn_phase(meeting, phase)
        await self._require_checked_in(meeting.id, participant)
        entry = await self.timer.skip(meeting.id, phase, participant)

        self._emit(
            meeting,
            EventType.TURN_SKIPPED,
            requested_by,
            "Turn skipped",
            entry_id=str(entry.id),
            user_id=str(participant),
            turn_phase=phase.value,
        )
        return entry

    # =========================================================================
    # Completion and reset
    # =========================================================================

    async def complete_meeting(self, meeting_id: UUID, requested_by: UUID) -> ValidationResult:
        """
        Stamp completed_at and let the Completion Validator decide the status.

        Reaching ENDED is necessary but not sufficient: a late check-in without
        turns leaves the meeting incomplete.
        """
        meeting = await get_meeting(self.db, meeting_id)
        await require_control(self.db, meeting, requested_by)

        validator = CompletionValidator(self.db, actor_type=ActorType.USER)
        if meeting.status == MeetingStatus.COMPLETED:
            return await validator.apply(meeting.id, actor_id=requested_by)

        require_in_progress(meeting)
        if meeting.phase != MeetingPhase.ENDED:
            raise PhaseIncompleteError(
                meeting.phase.value,
                await self.missing_for_phase(meeting),
                reason="Meeting has not reached the end",
            )

        await self.timer.close_section(meeting.id)
        meeting.completed_at = utcnow()
        await self._flush(meeting)

        result = await validator.apply(meeting.id, force=True, actor_id=requested_by)
        self.events.extend(validator.events)
        if result.verdict.is_complete:
            self._emit(
                meeting,
                EventType.MEETING_COMPLETED,
                requested_by,
                "Meeting completed",
                attendees=len(result.verdict.attendees),
            )
        else:
            logger.warning(
                "Meeting %s ended incomplete: %s", meeting.id, result.verdict.reason
            )
        return result

    async def reset_meeting(self, meeting_id: UUID, requested_by: UUID | None = None) -> Meeting:
        """
        Purge turns, timers, responses and feedback and return to SCHEDULED.

        Attendance rows and RSVPs stay; check-ins are cleared. requested_by=None
        is the administrative path used by the CLI.
        """
        meeting = await get_meeting(self.db, meeting_id)
        if requested_by is not None:
            await require_leader(self.db, meeting.chapter_id, requested_by)

        await self.db.execute(delete(TimeLogEntry).where(TimeLogEntry.meeting_id == meeting.id))
        await self.db.execute(
            delete(CurriculumResponse).where(CurriculumResponse.meeting_id == meeting.id)
        )
        await self.db.execute(
            delete(MeetingFeedback).where(MeetingFeedback.meeting_id == meeting.id)
        )
        await self.db.execute(
            update(Attendance)
            .where(Attendance.meeting_id == meeting.id)
            .values(checked_in_at=None, attendance_type=AttendanceType.ABSENT)
            .execution_options(synchronize_session=False)
        )

        previous = meeting.status
        meeting.status = MeetingStatus.SCHEDULED
        meeting.phase = MeetingPhase.NOT_STARTED
        meeting.scribe_id = None
        meeting.actual_start_time = None
        meeting.started_late = False
        meeting.completed_at = None
        meeting.curriculum_ditched = False
        await self._flush(meeting)

        self._emit(
            meeting,
            EventType.MEETING_RESET,
            requested_by,
            "Meeting reset",
            previous_status=previous.value,
        )
        logger.info("Meeting %s reset (was %s)", meeting.id, previous.value)
        return meeting

    # =========================================================================
    # Observation
    # =========================================================================

    async def load_state(self, meeting_id: UUID) -> MeetingState:
        """Full snapshot, recomputed from persisted rows."""
        meeting = await get_meeting(self.db, meeting_id)

        attendance = await self.db.execute(
            select(Attendance)
            .where(Attendance.meeting_id == meeting.id)
            .options(selectinload(Attendance.user))
            .order_by(Attendance.checked_in_at, Attendance.created_at)
            .execution_options(populate_existing=True)
        )
        logs = await self.db.execute(
            select(TimeLogEntry)
            .where(TimeLogEntry.meeting_id == meeting.id)
            .order_by(TimeLogEntry.start_time)
            .execution_options(populate_existing=True)
        )
        time_logs = list(logs.scalars().all())

        state = MeetingState(
            meeting=meeting,
            attendees=list(attendance.scalars().all()),
            time_logs=time_logs,
            running_turn=next((e for e in time_logs if e.is_open and not e.is_section), None),
            running_section=next((e for e in time_logs if e.is_open and e.is_section), None),
            missing=await self.missing_for_phase(meeting),
        )
        if meeting.phase in TURN_PHASES:
            state.next_up = await self.queue.next_participant(meeting.id, meeting.phase)
        if meeting.selected_curriculum_id is not None:
            state.responded = await self._submitted(CurriculumResponse, meeting)
        state.feedback_given = await self._submitted(MeetingFeedback, meeting)
        return state
