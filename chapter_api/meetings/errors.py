"""
Meeting Runner Errors

Every failure carries enough context (missing participants, conflicting
state) for a client to explain it without another round-trip.
"""

from typing import Any
from uuid import UUID

from fastapi import HTTPException, status


class MeetingRunnerError(Exception):
    """Base class for meeting runner failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "meeting_runner_error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_detail(self) -> dict[str, Any]:
        """JSON-safe detail payload."""
        detail: dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.context.items():
            if isinstance(value, UUID):
                value = str(value)
            elif isinstance(value, (list, tuple)):
                value = [str(v) if isinstance(v, UUID) else v for v in value]
            detail[key] = value
        return detail


class MeetingNotFoundError(MeetingRunnerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "meeting_not_found"

    def __init__(self, meeting_id: UUID):
        super().__init__("Meeting not found", meeting_id=meeting_id)


class NotAuthorizedError(MeetingRunnerError):
    """Requester lacks the role the command needs."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "not_authorized"


class NotLeaderError(NotAuthorizedError):
    code = "not_leader"

    def __init__(self, user_id: UUID, chapter_id: UUID):
        super().__init__(
            "Only the Leader or Backup Leader can do this",
            user_id=user_id,
            chapter_id=chapter_id,
        )


class PhaseIncompleteError(MeetingRunnerError):
    """Advance attempted before everyone required has been covered."""

    status_code = status.HTTP_409_CONFLICT
    code = "phase_incomplete"

    def __init__(self, phase: str, missing: list[UUID], reason: str | None = None):
        self.phase = phase
        self.missing = list(missing)
        message = reason or f"{len(self.missing)} participant(s) outstanding in {phase}"
        super().__init__(message, phase=phase, missing=self.missing)


class InvalidTransitionError(MeetingRunnerError):
    """Phases move exactly one step forward."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, expected: str | None):
        super().__init__(
            f"Cannot move from {current} to {requested}",
            current_phase=current,
            requested_phase=requested,
            expected_phase=expected,
        )


class DuplicateTurnError(MeetingRunnerError):
    """Turns are write-once per (meeting, phase, participant)."""

    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_turn"

    def __init__(self, meeting_id: UUID, phase: str, user_id: UUID):
        super().__init__(
            "A turn is already logged for this participant in this phase",
            meeting_id=meeting_id,
            phase=phase,
            user_id=user_id,
        )


class TimerAlreadyOpenError(MeetingRunnerError):
    status_code = status.HTTP_409_CONFLICT
    code = "timer_already_open"

    def __init__(self, meeting_id: UUID, entry_id: UUID | None, user_id: UUID | None):
        super().__init__(
            "Another timer is already running for this meeting",
            meeting_id=meeting_id,
            open_entry_id=entry_id,
            open_user_id=user_id,
        )


class TimerNotOpenError(MeetingRunnerError):
    status_code = status.HTTP_409_CONFLICT
    code = "timer_not_open"

    def __init__(self, meeting_id: UUID, entry_id: UUID | None):
        super().__init__(
            "No running timer matches this request",
            meeting_id=meeting_id,
            entry_id=entry_id,
        )


class AlreadyStartedError(MeetingRunnerError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_started"

    def __init__(self, meeting_id: UUID, current_status: str):
        super().__init__(
            "Meeting has already left the scheduled state",
            meeting_id=meeting_id,
            status=current_status,
        )


class NotInProgressError(MeetingRunnerError):
    status_code = status.HTTP_409_CONFLICT
    code = "not_in_progress"

    def __init__(self, meeting_id: UUID, current_status: str):
        super().__init__(
            "Meeting is not in progress",
            meeting_id=meeting_id,
            status=current_status,
        )


class NotCheckedInError(MeetingRunnerError):
    status_code = status.HTTP_409_CONFLICT
    code = "not_checked_in"

    def __init__(self, meeting_id: UUID, user_id: UUID):
        super().__init__(
            "Member must be checked in to the meeting",
            meeting_id=meeting_id,
            user_id=user_id,
        )


class ConcurrentUpdateError(MeetingRunnerError):
    """Another device changed the meeting between our read and our write."""

    status_code = status.HTTP_409_CONFLICT
    code = "concurrent_update"

    def __init__(self, meeting_id: UUID):
        super().__init__(
            "Meeting changed concurrently; refresh and retry",
            meeting_id=meeting_id,
        )


class InvalidSubmissionError(MeetingRunnerError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "invalid_submission"


def to_http_exception(exc: MeetingRunnerError) -> HTTPException:
    """Translate a runner error for the API layer."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
