"""
Meeting Runner Pydantic Schemas

API request/response schemas for scheduling, running and observing meetings.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chapter_api.meetings.models import (
    AttendanceType,
    MeetingStatus,
    RSVPStatus,
)
from chapter_api.meetings.phases import MeetingPhase


# =============================================================================
# Meeting Schemas
# =============================================================================


class MeetingCreate(BaseModel):
    """Schema for scheduling a meeting."""

    scheduled_at: datetime
    location: str | None = Field(default=None, max_length=500)
    duration_minutes: int = Field(default=120, gt=0)
    curriculum_id: UUID | None = None


class MeetingResponse(BaseModel):
    """Schema for meeting response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chapter_id: UUID
    scheduled_at: datetime
    location: str | None
    duration_minutes: int
    status: MeetingStatus
    phase: MeetingPhase
    scribe_id: UUID | None
    actual_start_time: datetime | None
    started_late: bool
    completed_at: datetime | None
    selected_curriculum_id: UUID | None
    curriculum_ditched: bool
    version: int


class StartMeetingRequest(BaseModel):
    scribe_id: UUID | None = None


class AdvanceRequest(BaseModel):
    """Optional guards so a repeated click cannot skip a phase."""

    target_phase: MeetingPhase | None = None
    expected_version: int | None = None


class ScribeChangeRequest(BaseModel):
    scribe_id: UUID


class CurriculumSelectRequest(BaseModel):
    module_id: UUID


# =============================================================================
# Attendance Schemas
# =============================================================================


class RSVPRequest(BaseModel):
    rsvp_status: RSVPStatus


class CheckInRequest(BaseModel):
    attendance_type: AttendanceType = AttendanceType.IN_PERSON


class AttendanceResponse(BaseModel):
    """Schema for attendance response."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    rsvp_status: RSVPStatus
    attendance_type: AttendanceType
    checked_in_at: datetime | None


class AttendeeResponse(AttendanceResponse):
    """Attendance with the member's display name."""

    display_name: str | None = None


# =============================================================================
# Timer and Turn Schemas
# =============================================================================


class TimerStartRequest(BaseModel):
    """participant_id=None opens the phase's section bracket."""

    participant_id: UUID | None = None
    priority: int | None = Field(default=None, ge=1, le=2)


class TimerStopRequest(BaseModel):
    entry_id: UUID | None = None
    skipped: bool = False


class TurnRecordRequest(BaseModel):
    participant_id: UUID
    duration_seconds: int = Field(ge=0)
    skipped: bool = False
    priority: int | None = Field(default=None, ge=1, le=2)
    phase: MeetingPhase | None = None


class TurnSkipRequest(BaseModel):
    participant_id: UUID
    phase: MeetingPhase | None = None


class TimeLogEntryResponse(BaseModel):
    """Schema for a time-log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    phase: MeetingPhase
    user_id: UUID | None
    start_time: datetime
    end_time: datetime | None
    duration_seconds: int | None
    overtime_seconds: int | None
    priority: int | None
    skipped: bool


class QueueResponse(BaseModel):
    phase: MeetingPhase
    next_participant: UUID | None
    upcoming: list[UUID]
    missing: list[UUID]
    complete: bool
    allotted_seconds: int | None


# =============================================================================
# Deliverable Schemas
# =============================================================================


class CurriculumResponseSubmit(BaseModel):
    response: str = Field(min_length=1)


class CurriculumResponseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    module_id: UUID
    user_id: UUID
    response: str
    submitted_at: datetime


class FeedbackSubmit(BaseModel):
    value_rating: int | None = None
    most_value_user_id: UUID | None = None
    skipped_rating: bool = False
    skipped_most_value: bool = False


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    value_rating: int | None
    most_value_user_id: UUID | None
    skipped_rating: bool
    skipped_most_value: bool
    submitted_at: datetime


# =============================================================================
# State and Validation Schemas
# =============================================================================


class MeetingStateResponse(BaseModel):
    """Full runner snapshot for observers."""

    meeting: MeetingResponse
    attendees: list[AttendeeResponse]
    time_logs: list[TimeLogEntryResponse]
    running_turn: TimeLogEntryResponse | None = None
    running_section: TimeLogEntryResponse | None = None
    next_up: UUID | None = None
    next_phase: MeetingPhase | None = None
    allotted_seconds: int | None = None
    missing: list[UUID] = []
    can_advance: bool = False
    responded: list[UUID] = []
    feedback_given: list[UUID] = []


class ValidationResponse(BaseModel):
    meeting_id: UUID
    previous_status: MeetingStatus
    verdict: MeetingStatus
    status: MeetingStatus
    reason: str
    changed: bool
    skipped: bool
    missing: dict[str, list[UUID]] = {}


class LiveMessage(BaseModel):
    """Frame sent over the live socket."""

    type: str
    data: dict[str, Any]
