"""
Meeting Access

Loads meetings and evaluates roles. Roles are read from chapter membership on
every command and never cached, because a member can be promoted, demoted or
deactivated between two clicks.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.meetings.errors import (
    MeetingNotFoundError,
    NotAuthorizedError,
    NotInProgressError,
    NotLeaderError,
)
from chapter_api.meetings.models import ChapterMembership, Meeting, MeetingStatus


@dataclass(frozen=True)
class ControlRole:
    """How the requester relates to a meeting."""

    user_id: UUID
    membership: ChapterMembership | None
    is_scribe: bool

    @property
    def is_member(self) -> bool:
        return self.membership is not None

    @property
    def is_leader(self) -> bool:
        return self.membership is not None and self.membership.is_leader

    @property
    def can_control(self) -> bool:
        """Scribe drives the meeting; leaders may override."""
        return self.is_scribe or self.is_leader


async def get_meeting(db: AsyncSession, meeting_id: UUID) -> Meeting:
    """Load a meeting, refreshing any copy already in the session."""
    result = await db.execute(
        select(Meeting)
        .where(Meeting.id == meeting_id)
        .execution_options(populate_existing=True)
    )
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise MeetingNotFoundError(meeting_id)
    return meeting


async def get_membership(
    db: AsyncSession,
    chapter_id: UUID,
    user_id: UUID,
) -> ChapterMembership | None:
    """Active membership of a user in a chapter, if any."""
    result = await db.execute(
        select(ChapterMembership)
        .where(ChapterMembership.chapter_id == chapter_id)
        .where(ChapterMembership.user_id == user_id)
        .where(ChapterMembership.is_active.is_(True))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_role(db: AsyncSession, meeting: Meeting, user_id: UUID) -> ControlRole:
    membership = await get_membership(db, meeting.chapter_id, user_id)
    return ControlRole(
        user_id=user_id,
        membership=membership,
        is_scribe=(
            membership is not None
            and meeting.scribe_id is not None
            and meeting.scribe_id == user_id
        ),
    )


async def require_member(db: AsyncSession, meeting: Meeting, user_id: UUID) -> ControlRole:
    role = await resolve_role(db, meeting, user_id)
    if not role.is_member:
        raise NotAuthorizedError(
            "You are not a member of this chapter",
            user_id=user_id,
            chapter_id=meeting.chapter_id,
        )
    return role


async def require_leader(db: AsyncSession, chapter_id: UUID, user_id: UUID) -> ChapterMembership:
    membership = await get_membership(db, chapter_id, user_id)
    if membership is None or not membership.is_leader:
        raise NotLeaderError(user_id, chapter_id)
    return membership


async def require_control(db: AsyncSession, meeting: Meeting, user_id: UUID) -> ControlRole:
    """Scribe, or a leader/backup leader acting as override."""
    role = await resolve_role(db, meeting, user_id)
    if not role.can_control:
        raise NotAuthorizedError(
            "Only the Scribe can control the meeting",
            user_id=user_id,
            scribe_id=meeting.scribe_id,
        )
    return role


def require_in_progress(meeting: Meeting) -> None:
    if meeting.status != MeetingStatus.IN_PROGRESS:
        raise NotInProgressError(meeting.id, meeting.status.value)
