"""
Meeting Runner Database Models

SQLAlchemy models for chapter meetings: the meeting row, attendance,
time-log entries, curriculum responses, feedback and the activity log.
Chapter membership and curriculum modules are read-only directory tables.
"""

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chapter_api.core.database import Base
from chapter_api.meetings.phases import MeetingPhase


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes read back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum(enum_cls: type[StrEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


JSONType = JSON().with_variant(JSONB(), "postgresql")

PhaseType = _enum(MeetingPhase, "meeting_phase")


# =============================================================================
# Enums
# =============================================================================


class ChapterRole(StrEnum):
    """Roles a member can hold in a chapter."""

    LEADER = "leader"
    BACKUP_LEADER = "backup_leader"
    MEMBER = "member"


class MeetingStatus(StrEnum):
    """Lifecycle status of a meeting."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"  # Detected by reconciliation
    NEVER_STARTED = "never_started"  # Detected by reconciliation


class RSVPStatus(StrEnum):
    """RSVP answer for a meeting."""

    YES = "yes"
    NO = "no"
    MAYBE = "maybe"
    NO_RESPONSE = "no_response"


class AttendanceType(StrEnum):
    """How a member attends."""

    IN_PERSON = "in_person"
    VIDEO = "video"
    ABSENT = "absent"


class ActorType(StrEnum):
    """Who triggered an activity log entry."""

    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"
    CRON = "cron"


# =============================================================================
# Directory Models (read-only for the meeting runner)
# =============================================================================


class User(Base):
    """A person using the app."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @property
    def display_name(self) -> str:
        return self.username or self.name

    def __repr__(self) -> str:
        return f"<User {self.display_name}>"


class Chapter(Base):
    """A local chapter of the organization."""

    __tablename__ = "chapters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    memberships: Mapped[list["ChapterMembership"]] = relationship(back_populates="chapter")
    meetings: Mapped[list["Meeting"]] = relationship(back_populates="chapter")

    def __repr__(self) -> str:
        return f"<Chapter {self.name}>"


class ChapterMembership(Base):
    """A user's membership and role in a chapter."""

    __tablename__ = "chapter_memberships"
    __table_args__ = (UniqueConstraint("chapter_id", "user_id", name="uq_chapter_member"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    chapter_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("chapters.id"))
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"))
    role: Mapped[ChapterRole] = mapped_column(
        _enum(ChapterRole, "chapter_role"), default=ChapterRole.MEMBER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    chapter: Mapped["Chapter"] = relationship(back_populates="memberships")
    user: Mapped["User"] = relationship()

    @property
    def is_leader(self) -> bool:
        """Leader or backup leader."""
        return self.role in (ChapterRole.LEADER, ChapterRole.BACKUP_LEADER)


class CurriculumModule(Base):
    """Curriculum content; the runner only stores which module was selected."""

    __tablename__ = "curriculum_modules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(300))
    content: Mapped[str] = mapped_column(Text, default="")
    assignment_text: Mapped[str | None] = mapped_column(Text, nullable=True)


# =============================================================================
# Meeting Models
# =============================================================================


class Meeting(Base):
    """
    One gathering of a chapter.

    The `version` column is the optimistic-concurrency token: every ORM flush
    of a changed meeting checks and bumps it, so two devices racing to advance
    the same meeting cannot both win.
    """

    __tablename__ = "meetings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    chapter_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("chapters.id"), index=True)

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=120)

    # Lifecycle
    status: Mapped[MeetingStatus] = mapped_column(
        _enum(MeetingStatus, "meeting_status"), default=MeetingStatus.SCHEDULED, index=True
    )
    phase: Mapped[MeetingPhase] = mapped_column(
        PhaseType, default=MeetingPhase.NOT_STARTED
    )
    scribe_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    actual_start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_late: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Curriculum
    selected_curriculum_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("curriculum_modules.id"), nullable=True
    )
    curriculum_ditched: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    chapter: Mapped["Chapter"] = relationship(back_populates="meetings")
    attendances: Mapped[list["Attendance"]] = relationship(
        back_populates="meeting", cascade="all, delete-orphan"
    )
    time_logs: Mapped[list["TimeLogEntry"]] = relationship(
        back_populates="meeting", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Meeting {self.id} {self.status.value}/{self.phase.value}>"


class Attendance(Base):
    """One member's participation record for one meeting."""

    __tablename__ = "attendance"
    __table_args__ = (UniqueConstraint("meeting_id", "user_id", name="uq_attendance_member"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("meetings.id"), index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"))

    rsvp_status: Mapped[RSVPStatus] = mapped_column(
        _enum(RSVPStatus, "rsvp_status"), default=RSVPStatus.NO_RESPONSE
    )
    attendance_type: Mapped[AttendanceType] = mapped_column(
        _enum(AttendanceType, "attendance_type"), default=AttendanceType.ABSENT
    )
    checked_in_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    meeting: Mapped["Meeting"] = relationship(back_populates="attendances")
    user: Mapped["User"] = relationship()

    @property
    def is_checked_in(self) -> bool:
        return self.checked_in_at is not None


class TimeLogEntry(Base):
    """
    One timed interval of a meeting.

    A participant entry (user_id set) is that member's turn in a phase and is
    write-once per phase. A section entry (user_id NULL) brackets the phase.
    The two partial unique indexes allow at most one open participant entry and
    one open section bracket per meeting.
    """

    __tablename__ = "meeting_time_log"
    __table_args__ = (
        UniqueConstraint("meeting_id", "phase", "user_id", name="uq_time_log_turn"),
        Index(
            "uq_time_log_open_turn",
            "meeting_id",
            unique=True,
            postgresql_where=text("end_time IS NULL AND user_id IS NOT NULL"),
            sqlite_where=text("end_time IS NULL AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_time_log_open_section",
            "meeting_id",
            unique=True,
            postgresql_where=text("end_time IS NULL AND user_id IS NULL"),
            sqlite_where=text("end_time IS NULL AND user_id IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("meetings.id"), index=True)
    phase: Mapped[MeetingPhase] = mapped_column(PhaseType)
    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    overtime_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    priority: Mapped[int | None] = mapped_column(Integer, nullable=True)  # Lightning round P1/P2
    skipped: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    meeting: Mapped["Meeting"] = relationship(back_populates="time_logs")

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def is_section(self) -> bool:
        return self.user_id is None


class CurriculumResponse(Base):
    """A member's reflection on the meeting's curriculum module."""

    __tablename__ = "curriculum_responses"
    __table_args__ = (
        UniqueConstraint("meeting_id", "module_id", "user_id", name="uq_curriculum_response"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("meetings.id"), index=True)
    module_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("curriculum_modules.id"))
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"))
    response: Mapped[str] = mapped_column(Text)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MeetingFeedback(Base):
    """A member's closing feedback: session rating and peer recognition."""

    __tablename__ = "meeting_feedback"
    __table_args__ = (UniqueConstraint("meeting_id", "user_id", name="uq_meeting_feedback"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    meeting_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("meetings.id"), index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"))

    value_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1-10
    most_value_user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id"), nullable=True
    )
    skipped_rating: Mapped[bool] = mapped_column(Boolean, default=False)
    skipped_most_value: Mapped[bool] = mapped_column(Boolean, default=False)

    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ActivityLog(Base):
    """System-wide activity feed entry. Written best-effort after commit."""

    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    actor_type: Mapped[ActorType] = mapped_column(
        _enum(ActorType, "actor_type"), default=ActorType.USER
    )
    action: Mapped[str] = mapped_column(String(100), index=True)  # e.g. "meeting.started"
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    chapter_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    summary: Mapped[str] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
