"""
Meetings module - the live meeting runner.

Phase state machine, turn queue, segment timer and completion validator.
"""

from chapter_api.meetings.models import (
    Attendance,
    AttendanceType,
    Chapter,
    ChapterMembership,
    ChapterRole,
    CurriculumModule,
    CurriculumResponse,
    Meeting,
    MeetingFeedback,
    MeetingStatus,
    RSVPStatus,
    TimeLogEntry,
    User,
)
from chapter_api.meetings.phases import MeetingPhase
from chapter_api.meetings.runner import MeetingRunner
from chapter_api.meetings.validator import CompletionValidator, evaluate_completion

__all__ = [
    # Enums
    "AttendanceType",
    "ChapterRole",
    "MeetingPhase",
    "MeetingStatus",
    "RSVPStatus",
    # Models
    "Attendance",
    "Chapter",
    "ChapterMembership",
    "CurriculumModule",
    "CurriculumResponse",
    "Meeting",
    "MeetingFeedback",
    "TimeLogEntry",
    "User",
    # Services
    "CompletionValidator",
    "MeetingRunner",
    "evaluate_completion",
]
