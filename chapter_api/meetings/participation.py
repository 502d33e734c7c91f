"""
Participation

Per-member actions that sit outside scribe control: scheduling, RSVPs,
check-in, curriculum responses and closing feedback. Responses and feedback
are upserts keyed by (meeting, member), so submitting again overwrites.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chapter_api.core.config import settings
from chapter_api.meetings.access import get_meeting, require_leader, require_member
from chapter_api.meetings.errors import (
    InvalidSubmissionError,
    NotCheckedInError,
    NotInProgressError,
)
from chapter_api.meetings.events import EventType, MeetingEvent, meeting_event
from chapter_api.meetings.models import (
    Attendance,
    AttendanceType,
    Chapter,
    ChapterMembership,
    CurriculumModule,
    CurriculumResponse,
    Meeting,
    MeetingFeedback,
    MeetingStatus,
    RSVPStatus,
    utcnow,
)
from chapter_api.meetings.phases import MeetingPhase

logger = logging.getLogger(__name__)

OPEN_STATUSES = (MeetingStatus.SCHEDULED, MeetingStatus.IN_PROGRESS)


class ParticipationService:
    """Member-facing writes for one meeting."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events: list[MeetingEvent] = []

    async def _attendance(self, meeting_id: UUID, user_id: UUID) -> Attendance | None:
        result = await self.db.execute(
            select(Attendance)
            .where(Attendance.meeting_id == meeting_id)
            .where(Attendance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_attendance(self, meeting: Meeting, user_id: UUID) -> Attendance:
        attendance = await self._attendance(meeting.id, user_id)
        if attendance is not None:
            return attendance

        attendance = Attendance(meeting_id=meeting.id, user_id=user_id)
        try:
            async with self.db.begin_nested():
                self.db.add(attendance)
        except IntegrityError:
            # Created by a parallel request
            attendance = await self._attendance(meeting.id, user_id)
            if attendance is None:
                raise
        return attendance

    async def _require_checked_in(self, meeting: Meeting, user_id: UUID) -> Attendance:
        attendance = await self._attendance(meeting.id, user_id)
        if attendance is None or not attendance.is_checked_in:
            raise NotCheckedInError(meeting.id, user_id)
        return attendance

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_meeting(
        self,
        chapter_id: UUID,
        requested_by: UUID,
        scheduled_at: datetime,
        location: str | None = None,
        duration_minutes: int = 120,
        curriculum_id: UUID | None = None,
    ) -> Meeting:
        """Create a meeting with one attendance row per active member."""
        await require_leader(self.db, chapter_id, requested_by)

        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None or not chapter.is_active:
            raise InvalidSubmissionError("Chapter is not active", chapter_id=chapter_id)
        if curriculum_id is not None and await self.db.get(CurriculumModule, curriculum_id) is None:
            raise InvalidSubmissionError("Curriculum module not found", module_id=curriculum_id)
        if duration_minutes <= 0:
            raise InvalidSubmissionError(
                "Duration must be positive", duration_minutes=duration_minutes
            )

        meeting = Meeting(
            chapter_id=chapter_id,
            scheduled_at=scheduled_at,
            location=location,
            duration_minutes=duration_minutes,
            status=MeetingStatus.SCHEDULED,
            phase=MeetingPhase.NOT_STARTED,
            selected_curriculum_id=curriculum_id,
        )
        self.db.add(meeting)
        await self.db.flush()

        result = await self.db.execute(
            select(ChapterMembership.user_id)
            .where(ChapterMembership.chapter_id == chapter_id)
            .where(ChapterMembership.is_active.is_(True))
        )
        members = list(result.scalars().all())
        for user_id in members:
            self.db.add(Attendance(meeting_id=meeting.id, user_id=user_id))
        await self.db.flush()

        self.events.append(
            meeting_event(
                meeting,
                EventType.MEETING_SCHEDULED,
                requested_by,
                f"Meeting scheduled for {scheduled_at.isoformat()}",
                invited=len(members),
            )
        )
        logger.info("Meeting %s scheduled for chapter %s", meeting.id, chapter_id)
        return meeting

    # =========================================================================
    # Attendance
    # =========================================================================

    async def update_rsvp(self, meeting_id: UUID, user_id: UUID, rsvp: RSVPStatus) -> Attendance:
        meeting = await get_meeting(self.db, meeting_id)
        await require_member(self.db, meeting, user_id)
        if meeting.status not in OPEN_STATUSES:
            raise NotInProgressError(meeting.id, meeting.status.value)

        attendance = await self._get_or_create_attendance(meeting, user_id)
        attendance.rsvp_status = RSVPStatus(rsvp)
        await self.db.flush()

        self.events.append(
            meeting_event(
                meeting,
                EventType.RSVP_UPDATED,
                user_id,
                "RSVP updated",
                rsvp=attendance.rsvp_status.value,
            )
        )
        return attendance

    async def check_in(
        self,
        meeting_id: UUID,
        user_id: UUID,
        attendance_type: AttendanceType = AttendanceType.IN_PERSON,
    ) -> Attendance:
        """
        Check a member in. Repeating the call is a no-op that keeps the
        original check-in time, and therefore the member's place in the queue.
        """
        meeting = await get_meeting(self.db, meeting_id)
        await require_member(self.db, meeting, user_id)
        if meeting.status not in OPEN_STATUSES:
            raise NotInProgressError(meeting.id, meeting.status.value)

        attendance_type = AttendanceType(attendance_type)
        if attendance_type == AttendanceType.ABSENT:
            raise InvalidSubmissionError("Cannot check in as absent")

        attendance = await self._get_or_create_attendance(meeting, user_id)
        if attendance.is_checked_in:
            return attendance

        attendance.checked_in_at = utcnow()
        attendance.attendance_type = attendance_type
        attendance.rsvp_status = RSVPStatus.YES
        await self.db.flush()

        self.events.append(
            meeting_event(
                meeting,
                EventType.CHECKED_IN,
                user_id,
                "Checked in",
                attendance_type=attendance_type.value,
                late=meeting.phase != MeetingPhase.NOT_STARTED,
            )
        )
        return attendance

    # =========================================================================
    # Deliverables
    # =========================================================================

    async def submit_curriculum_response(
        self,
        meeting_id: UUID,
        user_id: UUID,
        response: str,
    ) -> CurriculumResponse:
        meeting = await get_meeting(self.db, meeting_id)
        await require_member(self.db, meeting, user_id)
        if meeting.status != MeetingStatus.IN_PROGRESS:
            raise NotInProgressError(meeting.id, meeting.status.value)
        await self._require_checked_in(meeting, user_id)

        if meeting.selected_curriculum_id is None or meeting.curriculum_ditched:
            raise InvalidSubmissionError("This meeting has no curriculum to respond to")

        text = (response or "").strip()
        if not text:
            raise InvalidSubmissionError("Response cannot be empty")
        if len(text) > settings.max_response_length:
            raise InvalidSubmissionError(
                f"Response is limited to {settings.max_response_length} characters",
                length=len(text),
            )

        result = await self.db.execute(
            select(CurriculumResponse)
            .where(CurriculumResponse.meeting_id == meeting.id)
            .where(CurriculumResponse.module_id == meeting.selected_curriculum_id)
            .where(CurriculumResponse.user_id == user_id)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            entry = CurriculumResponse(
                meeting_id=meeting.id,
                module_id=meeting.selected_curriculum_id,
                user_id=user_id,
                response=text,
            )
            self.db.add(entry)
        else:
            entry.response = text
            entry.submitted_at = utcnow()
        await self.db.flush()

        self.events.append(
            meeting_event(
                meeting, EventType.RESPONSE_SUBMITTED, user_id, "Curriculum response submitted"
            )
        )
        return entry

    async def submit_feedback(
        self,
        meeting_id: UUID,
        user_id: UUID,
        value_rating: int | None = None,
        most_value_user_id: UUID | None = None,
        skipped_rating: bool = False,
        skipped_most_value: bool = False,
    ) -> MeetingFeedback:
        """Closing feedback: a 1-10 rating and who brought the most value."""
        meeting = await get_meeting(self.db, meeting_id)
        await require_member(self.db, meeting, user_id)
        if meeting.status != MeetingStatus.IN_PROGRESS:
            raise NotInProgressError(meeting.id, meeting.status.value)
        await self._require_checked_in(meeting, user_id)

        if skipped_rating:
            value_rating = None
        elif value_rating is None or not 1 <= value_rating <= 10:
            raise InvalidSubmissionError(
                "Rating must be between 1 and 10", value_rating=value_rating
            )

        if skipped_most_value:
            most_value_user_id = None
        elif most_value_user_id is None:
            raise InvalidSubmissionError("Pick who brought the most value, or skip")
        elif most_value_user_id == user_id:
            raise InvalidSubmissionError("You cannot pick yourself")
        else:
            peer = await self._attendance(meeting.id, most_value_user_id)
            if peer is None or not peer.is_checked_in:
                raise InvalidSubmissionError(
                    "Most-value pick must be a checked-in attendee",
                    most_value_user_id=most_value_user_id,
                )

        result = await self.db.execute(
            select(MeetingFeedback)
            .where(MeetingFeedback.meeting_id == meeting.id)
            .where(MeetingFeedback.user_id == user_id)
        )
        feedback = result.scalar_one_or_none()
        if feedback is None:
            feedback = MeetingFeedback(meeting_id=meeting.id, user_id=user_id)
            self.db.add(feedback)
        feedback.value_rating = value_rating
        feedback.most_value_user_id = most_value_user_id
        feedback.skipped_rating = skipped_rating
        feedback.skipped_most_value = skipped_most_value
        feedback.submitted_at = utcnow()
        await self.db.flush()

        self.events.append(
            meeting_event(meeting, EventType.FEEDBACK_SUBMITTED, user_id, "Feedback submitted")
        )
        return feedback
