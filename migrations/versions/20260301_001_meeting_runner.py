"""Create meeting runner tables.

Revision ID: 001
Revises:
Create Date: 2026-03-01

This migration creates:
- Directory tables read by the runner (users, chapters, chapter_memberships,
  curriculum_modules)
- Meetings with the optimistic-concurrency version column
- Attendance, meeting_time_log, curriculum_responses, meeting_feedback
- activity_log
- Partial unique indexes allowing one open turn and one open section bracket
  per meeting
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(name=name, create_type=False)


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE chapter_role AS ENUM ('leader', 'backup_leader', 'member')")
    op.execute(
        """
        CREATE TYPE meeting_status AS ENUM (
            'scheduled', 'in_progress', 'completed', 'incomplete', 'never_started'
        )
        """
    )
    op.execute(
        """
        CREATE TYPE meeting_phase AS ENUM (
            'not_started', 'opening_meditation', 'opening_ethos', 'lightning_round',
            'full_checkins', 'curriculum', 'closing', 'ended'
        )
        """
    )
    op.execute("CREATE TYPE rsvp_status AS ENUM ('yes', 'no', 'maybe', 'no_response')")
    op.execute("CREATE TYPE attendance_type AS ENUM ('in_person', 'video', 'absent')")
    op.execute("CREATE TYPE actor_type AS ENUM ('user', 'system', 'admin', 'cron')")

    # Directory tables
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _created_at(),
    )
    op.create_table(
        "chapters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _created_at(),
    )
    op.create_table(
        "chapter_memberships",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", _enum("chapter_role"), nullable=False, server_default="member"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _created_at("joined_at"),
        sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("chapter_id", "user_id", name="uq_chapter_member"),
    )
    op.create_table(
        "curriculum_modules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("assignment_text", sa.Text(), nullable=True),
    )

    # Meetings
    op.create_table(
        "meetings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("location", sa.String(500), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="120"),
        sa.Column(
            "status", _enum("meeting_status"), nullable=False, server_default="scheduled"
        ),
        sa.Column("phase", _enum("meeting_phase"), nullable=False, server_default="not_started"),
        sa.Column("scribe_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actual_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_late", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("selected_curriculum_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("curriculum_ditched", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        _created_at("updated_at"),
        sa.ForeignKeyConstraint(["chapter_id"], ["chapters.id"]),
        sa.ForeignKeyConstraint(["scribe_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["selected_curriculum_id"], ["curriculum_modules.id"]),
    )
    op.create_index("ix_meetings_chapter_id", "meetings", ["chapter_id"])
    op.create_index("ix_meetings_status", "meetings", ["status"])

    op.create_table(
        "attendance",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "rsvp_status", _enum("rsvp_status"), nullable=False, server_default="no_response"
        ),
        sa.Column(
            "attendance_type", _enum("attendance_type"), nullable=False, server_default="absent"
        ),
        sa.Column("checked_in_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["meeting_id"], ["meetings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("meeting_id", "user_id", name="uq_attendance_member"),
    )
    op.create_index("ix_attendance_meeting_id", "attendance", ["meeting_id"])

    # Time log: one row per turn, plus a section bracket per phase
    op.create_table(
        "meeting_time_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phase", _enum("meeting_phase"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("overtime_seconds", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("skipped", sa.Boolean(), nullable=False, server_default="false"),
        _created_at(),
        sa.ForeignKeyConstraint(["meeting_id"], ["meetings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("meeting_id", "phase", "user_id", name="uq_time_log_turn"),
        sa.CheckConstraint("overtime_seconds IS NULL OR overtime_seconds >= 0",
                           name="ck_time_log_overtime_non_negative"),
    )
    op.create_index("ix_meeting_time_log_meeting_id", "meeting_time_log", ["meeting_id"])
    op.create_index(
        "uq_time_log_open_turn",
        "meeting_time_log",
        ["meeting_id"],
        unique=True,
        postgresql_where=sa.text("end_time IS NULL AND user_id IS NOT NULL"),
    )
    op.create_index(
        "uq_time_log_open_section",
        "meeting_time_log",
        ["meeting_id"],
        unique=True,
        postgresql_where=sa.text("end_time IS NULL AND user_id IS NULL"),
    )

    # Per-member deliverables
    op.create_table(
        "curriculum_responses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("module_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("response", sa.Text(), nullable=False),
        _created_at("submitted_at"),
        sa.ForeignKeyConstraint(["meeting_id"], ["meetings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["module_id"], ["curriculum_modules.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("meeting_id", "module_id", "user_id", name="uq_curriculum_response"),
    )
    op.create_index("ix_curriculum_responses_meeting_id", "curriculum_responses", ["meeting_id"])

    op.create_table(
        "meeting_feedback",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("value_rating", sa.Integer(), nullable=True),
        sa.Column("most_value_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("skipped_rating", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("skipped_most_value", sa.Boolean(), nullable=False, server_default="false"),
        _created_at("submitted_at"),
        sa.ForeignKeyConstraint(["meeting_id"], ["meetings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["most_value_user_id"], ["users.id"]),
        sa.UniqueConstraint("meeting_id", "user_id", name="uq_meeting_feedback"),
        sa.CheckConstraint("value_rating IS NULL OR value_rating BETWEEN 1 AND 10",
                           name="ck_feedback_rating_range"),
    )
    op.create_index("ix_meeting_feedback_meeting_id", "meeting_feedback", ["meeting_id"])

    # Activity feed
    op.create_table(
        "activity_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("actor_type", _enum("actor_type"), nullable=False, server_default="user"),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("chapter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        _created_at(),
    )
    op.create_index("ix_activity_log_action", "activity_log", ["action"])
    op.create_index("ix_activity_log_chapter", "activity_log", ["chapter_id", "created_at"])


def downgrade() -> None:
    # Drop indexes
    op.drop_index("ix_activity_log_chapter", "activity_log")
    op.drop_index("ix_activity_log_action", "activity_log")
    op.drop_index("uq_time_log_open_section", "meeting_time_log")
    op.drop_index("uq_time_log_open_turn", "meeting_time_log")

    # Drop tables in reverse order (respecting foreign keys)
    op.drop_table("activity_log")
    op.drop_table("meeting_feedback")
    op.drop_table("curriculum_responses")
    op.drop_table("meeting_time_log")
    op.drop_table("attendance")
    op.drop_table("meetings")
    op.drop_table("curriculum_modules")
    op.drop_table("chapter_memberships")
    op.drop_table("chapters")
    op.drop_table("users")

    # Drop enum types
    op.execute("DROP TYPE actor_type")
    op.execute("DROP TYPE attendance_type")
    op.execute("DROP TYPE rsvp_status")
    op.execute("DROP TYPE meeting_phase")
    op.execute("DROP TYPE meeting_status")
    op.execute("DROP TYPE chapter_role")
