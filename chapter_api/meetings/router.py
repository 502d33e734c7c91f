"""
Meetings API Router

Endpoints for scheduling, running and observing chapter meetings.

Every command runs in the request's transaction and commits before its events
are published, so observers never hear about a change that was rolled back.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chapter_api.auth.dependencies import get_current_user, resolve_user
from chapter_api.core.database import get_db, get_session_factory
from chapter_api.meetings.access import get_meeting, require_leader, require_member
from chapter_api.meetings.errors import (
    InvalidSubmissionError,
    MeetingRunnerError,
    to_http_exception,
)
from chapter_api.meetings.events import (
    ActivityLogger,
    EventDispatcher,
    EventEmitter,
    EventType,
    get_emitter,
)
from chapter_api.meetings.models import (
    ActorType,
    Attendance,
    CurriculumResponse,
    Meeting,
    MeetingFeedback,
    TimeLogEntry,
    User,
)
from chapter_api.meetings.participation import ParticipationService
from chapter_api.meetings.phases import TURN_PHASES, MeetingPhase, allotted_seconds
from chapter_api.meetings.runner import MeetingRunner, MeetingState
from chapter_api.meetings.schemas import (
    AdvanceRequest,
    AttendanceResponse,
    AttendeeResponse,
    CheckInRequest,
    CurriculumResponseResponse,
    CurriculumResponseSubmit,
    CurriculumSelectRequest,
    FeedbackResponse,
    FeedbackSubmit,
    MeetingCreate,
    MeetingResponse,
    MeetingStateResponse,
    QueueResponse,
    RSVPRequest,
    ScribeChangeRequest,
    StartMeetingRequest,
    TimeLogEntryResponse,
    TimerStartRequest,
    TimerStopRequest,
    TurnRecordRequest,
    TurnSkipRequest,
    ValidationResponse,
)
from chapter_api.meetings.turn_queue import TurnQueue
from chapter_api.meetings.validator import CompletionValidator, ValidationResult
from chapter_api.metrics import metrics

logger = logging.getLogger(__name__)

router = APIRouter(tags=["meetings"])


async def get_dispatcher(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> EventDispatcher:
    """Dispatcher for post-commit events."""
    return EventDispatcher(await get_emitter(), ActivityLogger(session_factory))


@asynccontextmanager
async def command(name: str) -> AsyncIterator[None]:
    """Translate runner errors to HTTP errors and count outcomes."""
    try:
        yield
    except MeetingRunnerError as e:
        metrics.record_command(name, e.code)
        raise to_http_exception(e) from e
    metrics.record_command(name, "ok")


def _entry(entry: TimeLogEntry | None) -> TimeLogEntryResponse | None:
    return TimeLogEntryResponse.model_validate(entry) if entry is not None else None


def build_state_response(state: MeetingState) -> MeetingStateResponse:
    attendees = [
        AttendeeResponse(
            user_id=a.user_id,
            rsvp_status=a.rsvp_status,
            attendance_type=a.attendance_type,
            checked_in_at=a.checked_in_at,
            display_name=a.user.display_name if a.user else None,
        )
        for a in state.attendees
    ]
    return MeetingStateResponse(
        meeting=MeetingResponse.model_validate(state.meeting),
        attendees=attendees,
        time_logs=[TimeLogEntryResponse.model_validate(e) for e in state.time_logs],
        running_turn=_entry(state.running_turn),
        running_section=_entry(state.running_section),
        next_up=state.next_up,
        next_phase=state.next_phase,
        allotted_seconds=state.allotted_seconds,
        missing=state.missing,
        can_advance=state.can_advance,
        responded=state.responded,
        feedback_given=state.feedback_given,
    )


def build_validation_response(result: ValidationResult) -> ValidationResponse:
    metrics.record_verdict(result.verdict.status.value, result.changed)
    return ValidationResponse(**result.to_dict())


# =============================================================================
# Scheduling and State
# =============================================================================


@router.post(
    "/chapters/{chapter_id}/meetings",
    response_model=MeetingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def schedule_meeting(
    chapter_id: UUID,
    data: MeetingCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    """Schedule a meeting. Leaders only."""
    service = ParticipationService(db)
    async with command("schedule"):
        meeting = await service.schedule_meeting(
            chapter_id,
            current_user.id,
            scheduled_at=data.scheduled_at,
            location=data.location,
            duration_minutes=data.duration_minutes,
            curriculum_id=data.curriculum_id,
        )
        await db.commit()
    await dispatcher.dispatch(service.events)
    return meeting


@router.get("/meetings/{meeting_id}/state", response_model=MeetingStateResponse)
async def get_meeting_state(
    meeting_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MeetingStateResponse:
    """Full runner snapshot for any chapter member."""
    runner = MeetingRunner(db)
    async with command("state"):
        meeting = await get_meeting(db, meeting_id)
        await require_member(db, meeting, current_user.id)
        state = await runner.load_state(meeting_id)
    return build_state_response(state)


@router.get("/meetings/{meeting_id}/queue/{phase}", response_model=QueueResponse)
async def get_turn_queue(
    meeting_id: UUID,
    phase: MeetingPhase,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> QueueResponse:
    """Who is up next and who is still outstanding in a turn phase."""
    queue = TurnQueue(db)
    async with command("queue"):
        meeting = await get_meeting(db, meeting_id)
        await require_member(db, meeting, current_user.id)
        if phase not in TURN_PHASES:
            raise InvalidSubmissionError(f"{phase.value} has no turn queue", phase=phase.value)
        upcoming = await queue.upcoming(meeting.id, phase)
        missing = await queue.missing_participants(meeting.id, phase)

    return QueueResponse(
        phase=phase,
        next_participant=upcoming[0] if upcoming else None,
        upcoming=upcoming,
        missing=missing,
        complete=not missing,
        allotted_seconds=allotted_seconds(phase),
    )


# =============================================================================
# Phase Control
# =============================================================================


@router.post("/meetings/{meeting_id}/start", response_model=MeetingResponse)
async def start_meeting(
    meeting_id: UUID,
    data: StartMeetingRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    """Start a meeting. Leaders and backup leaders only."""
    runner = MeetingRunner(db)
    async with command("start"):
        meeting = await runner.start_meeting(
            meeting_id, current_user.id, scribe_id=data.scribe_id if data else None
        )
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return meeting


@router.post("/meetings/{meeting_id}/advance", response_model=MeetingResponse)
async def advance_meeting(
    meeting_id: UUID,
    data: AdvanceRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    """Move to the next phase once the current one is covered."""
    data = data or AdvanceRequest()
    runner = MeetingRunner(db)
    async with command("advance"):
        meeting = await runner.advance(
            meeting_id,
            current_user.id,
            target=data.target_phase,
            expected_version=data.expected_version,
        )
        await db.commit()

    await dispatcher.dispatch(runner.events)
    for event in runner.events:
        if event.event_type != EventType.PHASE_ADVANCED:
            continue
        metrics.record_transition(event.details["from_phase"], event.details["to_phase"])
    return meeting


@router.post("/meetings/{meeting_id}/scribe", response_model=MeetingResponse)
async def change_scribe(
    meeting_id: UUID,
    data: ScribeChangeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    runner = MeetingRunner(db)
    async with command("scribe"):
        meeting = await runner.change_scribe(meeting_id, current_user.id, data.scribe_id)
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return meeting


@router.post("/meetings/{meeting_id}/curriculum", response_model=MeetingResponse)
async def select_curriculum(
    meeting_id: UUID,
    data: CurriculumSelectRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    runner = MeetingRunner(db)
    async with command("curriculum"):
        meeting = await runner.select_curriculum(meeting_id, current_user.id, data.module_id)
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return meeting


@router.post("/meetings/{meeting_id}/curriculum/ditch", response_model=MeetingResponse)
async def ditch_curriculum(
    meeting_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    runner = MeetingRunner(db)
    async with command("ditch_curriculum"):
        meeting = await runner.ditch_curriculum(meeting_id, current_user.id)
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return meeting


# =============================================================================
# Timers and Turns
# =============================================================================


@router.post(
    "/meetings/{meeting_id}/timer/start",
    response_model=TimeLogEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_timer(
    meeting_id: UUID,
    data: TimerStartRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> TimeLogEntry:
    runner = MeetingRunner(db)
    async with command("timer_start"):
        entry = await runner.start_timer(
            meeting_id, current_user.id, data.participant_id, priority=data.priority
        )
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return entry


@router.post("/meetings/{meeting_id}/timer/stop", response_model=TimeLogEntryResponse)
async def stop_timer(
    meeting_id: UUID,
    data: TimerStopRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> TimeLogEntry:
    data = data or TimerStopRequest()
    runner = MeetingRunner(db)
    async with command("timer_stop"):
        entry = await runner.stop_timer(
            meeting_id, current_user.id, entry_id=data.entry_id, skipped=data.skipped
        )
        await db.commit()

    await dispatcher.dispatch(runner.events)
    if not entry.is_section:
        metrics.record_turn(entry.phase.value, entry.duration_seconds, entry.overtime_seconds)
    return entry


@router.post(
    "/meetings/{meeting_id}/turns",
    response_model=TimeLogEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_turn(
    meeting_id: UUID,
    data: TurnRecordRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> TimeLogEntry:
    """Log a finished turn. Each participant gets one entry per phase."""
    runner = MeetingRunner(db)
    async with command("record_turn"):
        entry = await runner.record_turn(
            meeting_id,
            current_user.id,
            data.participant_id,
            data.duration_seconds,
            skipped=data.skipped,
            priority=data.priority,
            phase=data.phase,
        )
        await db.commit()

    await dispatcher.dispatch(runner.events)
    metrics.record_turn(entry.phase.value, entry.duration_seconds, entry.overtime_seconds)
    return entry


@router.post(
    "/meetings/{meeting_id}/turns/skip",
    response_model=TimeLogEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def skip_turn(
    meeting_id: UUID,
    data: TurnSkipRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> TimeLogEntry:
    runner = MeetingRunner(db)
    async with command("skip_turn"):
        entry = await runner.skip_turn(
            meeting_id, current_user.id, data.participant_id, phase=data.phase
        )
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return entry


# =============================================================================
# Participation
# =============================================================================


@router.post("/meetings/{meeting_id}/rsvp", response_model=AttendanceResponse)
async def update_rsvp(
    meeting_id: UUID,
    data: RSVPRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Attendance:
    service = ParticipationService(db)
    async with command("rsvp"):
        attendance = await service.update_rsvp(meeting_id, current_user.id, data.rsvp_status)
        await db.commit()
    await dispatcher.dispatch(service.events)
    return attendance


@router.post("/meetings/{meeting_id}/check-in", response_model=AttendanceResponse)
async def check_in(
    meeting_id: UUID,
    data: CheckInRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Attendance:
    """Check yourself in. Late check-ins join the end of the turn queue."""
    data = data or CheckInRequest()
    service = ParticipationService(db)
    async with command("check_in"):
        attendance = await service.check_in(meeting_id, current_user.id, data.attendance_type)
        await db.commit()
    await dispatcher.dispatch(service.events)
    return attendance


@router.put(
    "/meetings/{meeting_id}/curriculum-response",
    response_model=CurriculumResponseResponse,
)
async def submit_curriculum_response(
    meeting_id: UUID,
    data: CurriculumResponseSubmit,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> CurriculumResponse:
    service = ParticipationService(db)
    async with command("curriculum_response"):
        entry = await service.submit_curriculum_response(
            meeting_id, current_user.id, data.response
        )
        await db.commit()
    await dispatcher.dispatch(service.events)
    return entry


@router.put("/meetings/{meeting_id}/feedback", response_model=FeedbackResponse)
async def submit_feedback(
    meeting_id: UUID,
    data: FeedbackSubmit,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> MeetingFeedback:
    service = ParticipationService(db)
    async with command("feedback"):
        feedback = await service.submit_feedback(
            meeting_id,
            current_user.id,
            value_rating=data.value_rating,
            most_value_user_id=data.most_value_user_id,
            skipped_rating=data.skipped_rating,
            skipped_most_value=data.skipped_most_value,
        )
        await db.commit()
    await dispatcher.dispatch(service.events)
    return feedback


# =============================================================================
# Completion and Reset
# =============================================================================


@router.post("/meetings/{meeting_id}/complete", response_model=ValidationResponse)
async def complete_meeting(
    meeting_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> ValidationResponse:
    """Finish an ended meeting and run the completion check."""
    runner = MeetingRunner(db)
    async with command("complete"):
        result = await runner.complete_meeting(meeting_id, current_user.id)
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return build_validation_response(result)


@router.post("/meetings/{meeting_id}/validate", response_model=ValidationResponse)
async def validate_meeting(
    meeting_id: UUID,
    force: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> ValidationResponse:
    """Re-run the completion check. Leaders only."""
    validator = CompletionValidator(db, actor_type=ActorType.ADMIN)
    async with command("validate"):
        meeting = await get_meeting(db, meeting_id)
        await require_leader(db, meeting.chapter_id, current_user.id)
        result = await validator.apply(meeting.id, force=force, actor_id=current_user.id)
        await db.commit()
    await dispatcher.dispatch(validator.events)
    return build_validation_response(result)


@router.post("/meetings/{meeting_id}/reset", response_model=MeetingResponse)
async def reset_meeting(
    meeting_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> Meeting:
    """Purge all run data and return the meeting to scheduled. Leaders only."""
    runner = MeetingRunner(db)
    async with command("reset"):
        meeting = await runner.reset_meeting(meeting_id, current_user.id)
        await db.commit()
    await dispatcher.dispatch(runner.events)
    return meeting


# =============================================================================
# Live Observation
# =============================================================================


async def _snapshot(
    session_factory: async_sessionmaker[AsyncSession],
    meeting_id: UUID,
) -> dict:
    async with session_factory() as db:
        state = await MeetingRunner(db).load_state(meeting_id)
        return build_state_response(state).model_dump(mode="json")


@router.websocket("/meetings/{meeting_id}/live")
async def live_meeting(
    websocket: WebSocket,
    meeting_id: UUID,
    token: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> None:
    """
    Stream a meeting to an observer: one snapshot on connect, then every
    event followed by a fresh snapshot. Browsers cannot set headers on a
    WebSocket, so the credential comes as the `token` query parameter.
    """
    async with session_factory() as db:
        try:
            user = await resolve_user(db, token)
            meeting = await get_meeting(db, meeting_id)
            await require_member(db, meeting, user.id)
        except (HTTPException, MeetingRunnerError) as e:
            logger.info("Live connection to meeting %s refused: %s", meeting_id, e)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    await websocket.accept()
    snapshot = await _snapshot(session_factory, meeting_id)
    await websocket.send_json({"type": "state", "data": snapshot})

    emitter = await get_emitter()
    if not emitter.enabled:
        # No broadcast channel; clients fall back to polling /state
        await websocket.close()
        return

    await stream_events(websocket, emitter, session_factory, meeting_id)


async def _forward_events(
    websocket: WebSocket,
    emitter: EventEmitter,
    session_factory: async_sessionmaker[AsyncSession],
    meeting_id: UUID,
) -> None:
    async for message in emitter.subscribe(meeting_id):
        await websocket.send_json({"type": "event", "data": json.loads(message)})
        await websocket.send_json(
            {"type": "state", "data": await _snapshot(session_factory, meeting_id)}
        )


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Observers are read-only; anything they send is ignored
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def stream_events(
    websocket: WebSocket,
    emitter: EventEmitter,
    session_factory: async_sessionmaker[AsyncSession],
    meeting_id: UUID,
) -> None:
    """
    Forward meeting events until either side goes away.

    The subscription is torn down as soon as the observer disconnects, even
    when the meeting is quiet and nothing would be sent.
    """
    forward = asyncio.create_task(
        _forward_events(websocket, emitter, session_factory, meeting_id)
    )
    watch = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (forward, watch):
            task.cancel()
        await asyncio.gather(forward, watch, return_exceptions=True)

    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            raise error
    logger.debug("Observer left meeting %s", meeting_id)
