"""
Tests for member participation: scheduling, RSVP, check-in and submissions.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from chapter_api.meetings.errors import (
    InvalidSubmissionError,
    NotAuthorizedError,
    NotCheckedInError,
    NotInProgressError,
    NotLeaderError,
)
from chapter_api.meetings.events import EventType
from chapter_api.meetings.models import (
    Attendance,
    AttendanceType,
    CurriculumResponse,
    MeetingStatus,
    RSVPStatus,
    as_utc,
    utcnow,
)
from chapter_api.meetings.participation import ParticipationService
from chapter_api.meetings.runner import MeetingRunner


async def started(db, seed, with_module: bool = False) -> None:
    runner = MeetingRunner(db)
    if with_module:
        await runner.select_curriculum(seed.meeting.id, seed.leader.id, seed.module.id)
    await runner.start_meeting(seed.meeting.id, seed.leader.id)


class TestScheduling:
    """Tests for creating meetings."""

    @pytest.mark.asyncio
    async def test_schedule_invites_active_members(self, db, seed) -> None:
        """Test a new meeting has one attendance row per member."""
        service = ParticipationService(db)
        when = utcnow() + timedelta(days=7)

        meeting = await service.schedule_meeting(
            seed.chapter.id, seed.leader.id, when, location="Library", curriculum_id=seed.module.id
        )

        assert meeting.status == MeetingStatus.SCHEDULED
        assert meeting.selected_curriculum_id == seed.module.id
        count = await db.scalar(
            select(func.count()).select_from(Attendance).where(Attendance.meeting_id == meeting.id)
        )
        assert count == 5
        assert service.events[0].event_type == EventType.MEETING_SCHEDULED
        assert service.events[0].details["invited"] == 5

    @pytest.mark.asyncio
    async def test_only_leaders_schedule(self, db, seed) -> None:
        """Test members cannot schedule."""
        with pytest.raises(NotLeaderError):
            await ParticipationService(db).schedule_meeting(
                seed.chapter.id, seed.members[0].id, utcnow()
            )

    @pytest.mark.asyncio
    async def test_rejects_non_positive_duration(self, db, seed) -> None:
        """Test a meeting needs a positive length."""
        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).schedule_meeting(
                seed.chapter.id, seed.leader.id, utcnow(), duration_minutes=0
            )

    @pytest.mark.asyncio
    async def test_inactive_chapter(self, db, seed) -> None:
        """Test archived chapters cannot hold meetings."""
        seed.chapter.is_active = False
        await db.flush()

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).schedule_meeting(
                seed.chapter.id, seed.leader.id, utcnow()
            )


class TestCheckIn:
    """Tests for RSVP and check-in."""

    @pytest.mark.asyncio
    async def test_rsvp(self, db, seed) -> None:
        """Test members answer the invitation."""
        attendance = await ParticipationService(db).update_rsvp(
            seed.meeting.id, seed.members[0].id, RSVPStatus.MAYBE
        )
        assert attendance.rsvp_status == RSVPStatus.MAYBE

    @pytest.mark.asyncio
    async def test_outsider_cannot_rsvp(self, db, seed) -> None:
        """Test non-members are refused."""
        with pytest.raises(NotAuthorizedError):
            await ParticipationService(db).update_rsvp(
                seed.meeting.id, seed.outsider.id, RSVPStatus.YES
            )

    @pytest.mark.asyncio
    async def test_check_in_keeps_first_time(self, db, seed) -> None:
        """Test repeated check-ins are a no-op that keeps queue position."""
        service = ParticipationService(db)
        first = await service.check_in(seed.meeting.id, seed.members[0].id, AttendanceType.VIDEO)
        checked_in_at = first.checked_in_at

        again = await service.check_in(seed.meeting.id, seed.members[0].id)

        assert as_utc(again.checked_in_at) == as_utc(checked_in_at)
        assert again.attendance_type == AttendanceType.VIDEO
        assert again.rsvp_status == RSVPStatus.YES
        assert len(service.events) == 1

    @pytest.mark.asyncio
    async def test_check_in_as_absent_rejected(self, db, seed) -> None:
        """Test absent is not a way to attend."""
        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).check_in(
                seed.meeting.id, seed.members[0].id, AttendanceType.ABSENT
            )

    @pytest.mark.asyncio
    async def test_late_check_in_flagged(self, db, seed) -> None:
        """Test checking in after the meeting began is marked late."""
        await started(db, seed)
        await MeetingRunner(db).advance(seed.meeting.id, seed.leader.id)

        service = ParticipationService(db)
        await service.check_in(seed.meeting.id, seed.members[1].id)

        assert service.events[0].details["late"] is True

    @pytest.mark.asyncio
    async def test_no_check_in_after_meeting_closed(self, db, seed) -> None:
        """Test a finished meeting refuses check-ins."""
        seed.meeting.status = MeetingStatus.COMPLETED
        await db.flush()

        with pytest.raises(NotInProgressError):
            await ParticipationService(db).check_in(seed.meeting.id, seed.members[0].id)


class TestCurriculumResponse:
    """Tests for curriculum responses."""

    @pytest.mark.asyncio
    async def test_resubmission_overwrites(self, db, seed, check_in) -> None:
        """Test one response per member, the latest wins."""
        await check_in(seed.meeting, seed.members[0])
        await started(db, seed, with_module=True)
        service = ParticipationService(db)

        await service.submit_curriculum_response(seed.meeting.id, seed.members[0].id, "First")
        entry = await service.submit_curriculum_response(
            seed.meeting.id, seed.members[0].id, "  Second thoughts  "
        )

        assert entry.response == "Second thoughts"
        count = await db.scalar(select(func.count()).select_from(CurriculumResponse))
        assert count == 1

    @pytest.mark.asyncio
    async def test_requires_check_in(self, db, seed) -> None:
        """Test absent members cannot respond."""
        await started(db, seed, with_module=True)

        with pytest.raises(NotCheckedInError):
            await ParticipationService(db).submit_curriculum_response(
                seed.meeting.id, seed.members[0].id, "Hello"
            )

    @pytest.mark.asyncio
    async def test_requires_selected_module(self, db, seed, check_in) -> None:
        """Test there is nothing to respond to without a module."""
        await check_in(seed.meeting, seed.members[0])
        await started(db, seed)

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).submit_curriculum_response(
                seed.meeting.id, seed.members[0].id, "Hello"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "x" * 1501])
    async def test_rejects_empty_or_long(self, db, seed, check_in, text: str) -> None:
        """Test responses must have content within the length limit."""
        await check_in(seed.meeting, seed.members[0])
        await started(db, seed, with_module=True)

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).submit_curriculum_response(
                seed.meeting.id, seed.members[0].id, text
            )


class TestFeedback:
    """Tests for closing feedback."""

    @pytest.mark.asyncio
    async def test_rating_and_peer_pick(self, db, seed, check_in) -> None:
        """Test a full feedback submission."""
        a, b, _ = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        await started(db, seed)

        feedback = await ParticipationService(db).submit_feedback(
            seed.meeting.id, a.id, value_rating=9, most_value_user_id=b.id
        )

        assert feedback.value_rating == 9
        assert feedback.most_value_user_id == b.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 11, None])
    async def test_rating_bounds(self, db, seed, check_in, rating) -> None:
        """Test ratings outside 1-10 need an explicit skip."""
        await check_in(seed.meeting, seed.members[0])
        await started(db, seed)

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).submit_feedback(
                seed.meeting.id, seed.members[0].id, value_rating=rating, skipped_most_value=True
            )

    @pytest.mark.asyncio
    async def test_cannot_pick_self(self, db, seed, check_in) -> None:
        """Test the most-value pick goes to someone else."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        await started(db, seed)

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).submit_feedback(
                seed.meeting.id, a.id, value_rating=7, most_value_user_id=a.id
            )

    @pytest.mark.asyncio
    async def test_pick_must_be_present(self, db, seed, check_in) -> None:
        """Test the most-value pick must have attended."""
        a, b, _ = seed.members
        await check_in(seed.meeting, a)
        await started(db, seed)

        with pytest.raises(InvalidSubmissionError):
            await ParticipationService(db).submit_feedback(
                seed.meeting.id, a.id, value_rating=7, most_value_user_id=b.id
            )

    @pytest.mark.asyncio
    async def test_skips_clear_values(self, db, seed, check_in) -> None:
        """Test skipping both parts stores no rating and no pick."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        await started(db, seed)

        feedback = await ParticipationService(db).submit_feedback(
            seed.meeting.id, a.id, value_rating=4, skipped_rating=True, skipped_most_value=True
        )

        assert feedback.value_rating is None
        assert feedback.skipped_rating is True
        assert feedback.most_value_user_id is None

    @pytest.mark.asyncio
    async def test_not_before_start(self, db, seed, check_in) -> None:
        """Test feedback waits for the meeting to run."""
        await check_in(seed.meeting, seed.members[0])

        with pytest.raises(NotInProgressError):
            await ParticipationService(db).submit_feedback(
                seed.meeting.id, seed.members[0].id, skipped_rating=True, skipped_most_value=True
            )
