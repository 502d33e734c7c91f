"""
Tests for the phase state machine.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from chapter_api.meetings import runner as runner_module
from chapter_api.meetings.access import get_meeting
from chapter_api.meetings.errors import (
    AlreadyStartedError,
    ConcurrentUpdateError,
    InvalidSubmissionError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotCheckedInError,
    NotInProgressError,
    NotLeaderError,
    PhaseIncompleteError,
)
from chapter_api.meetings.events import EventType
from chapter_api.meetings.models import (
    ChapterMembership,
    Meeting,
    MeetingFeedback,
    MeetingStatus,
    TimeLogEntry,
    utcnow,
)
from chapter_api.meetings.participation import ParticipationService
from chapter_api.meetings.phases import MeetingPhase
from chapter_api.meetings.runner import MeetingRunner

LIGHTNING = MeetingPhase.LIGHTNING_ROUND
FULL = MeetingPhase.FULL_CHECKINS


async def start(runner: MeetingRunner, seed, scribe=None) -> Meeting:
    scribe = scribe or seed.members[0]
    return await runner.start_meeting(seed.meeting.id, seed.leader.id, scribe_id=scribe.id)


async def advance_to(runner: MeetingRunner, seed, phase: MeetingPhase, actor=None) -> Meeting:
    actor = actor or seed.members[0]
    meeting = await get_meeting(runner.db, seed.meeting.id)
    while meeting.phase != phase:
        meeting = await runner.advance(seed.meeting.id, actor.id)
    return meeting


async def give_turns(runner: MeetingRunner, seed, phase: MeetingPhase, users, actor=None) -> None:
    actor = actor or seed.members[0]
    for user in users:
        await runner.record_turn(seed.meeting.id, actor.id, user.id, 45, phase=phase)


async def give_feedback(db, seed, users) -> None:
    service = ParticipationService(db)
    for user in users:
        await service.submit_feedback(
            seed.meeting.id, user.id, value_rating=8, skipped_most_value=True
        )


class TestStartMeeting:
    """Tests for scheduled -> in_progress."""

    @pytest.mark.asyncio
    async def test_non_leader_then_double_start(self, db, seed) -> None:
        """Test members cannot start, and a started meeting cannot start again."""
        runner = MeetingRunner(db)

        with pytest.raises(NotLeaderError):
            await runner.start_meeting(seed.meeting.id, seed.members[1].id)

        meeting = await start(runner, seed)
        assert meeting.status == MeetingStatus.IN_PROGRESS
        assert meeting.phase == MeetingPhase.NOT_STARTED
        assert meeting.scribe_id == seed.members[0].id
        assert meeting.actual_start_time is not None

        with pytest.raises(AlreadyStartedError):
            await runner.start_meeting(seed.meeting.id, seed.leader.id)

    @pytest.mark.asyncio
    async def test_backup_leader_can_start(self, db, seed) -> None:
        """Test the backup leader has the same right to start."""
        meeting = await MeetingRunner(db).start_meeting(seed.meeting.id, seed.backup.id)

        assert meeting.status == MeetingStatus.IN_PROGRESS
        assert meeting.scribe_id == seed.backup.id

    @pytest.mark.asyncio
    async def test_scribe_must_be_member(self, db, seed) -> None:
        """Test a non-member cannot be appointed scribe."""
        with pytest.raises(InvalidSubmissionError):
            await start(MeetingRunner(db), seed, scribe=seed.outsider)

    @pytest.mark.asyncio
    async def test_late_start_is_flagged(self, db, seed) -> None:
        """Test starting past the grace period sets started_late."""
        seed.meeting.scheduled_at = utcnow() - timedelta(minutes=45)
        await db.flush()

        runner = MeetingRunner(db)
        meeting = await start(runner, seed)

        assert meeting.started_late is True
        assert runner.events[0].details["started_late"] is True

    @pytest.mark.asyncio
    async def test_on_time_start(self, db, seed) -> None:
        """Test a start within the grace period is not late."""
        meeting = await start(MeetingRunner(db), seed)
        assert meeting.started_late is False

    @pytest.mark.asyncio
    async def test_notifies_members_not_checked_in(self, db, seed, check_in) -> None:
        """Test the start notification goes to everyone not yet present."""
        await check_in(seed.meeting, seed.members[0])
        runner = MeetingRunner(db)
        await start(runner, seed)

        kinds = [event.event_type for event in runner.events]
        assert kinds == [EventType.MEETING_STARTED, EventType.MEMBER_NOTIFIED]
        recipients = runner.events[1].details["recipients"]
        assert len(recipients) == 4
        assert str(seed.members[0].id) not in recipients


class TestAdvance:
    """Tests for phase transitions."""

    @pytest.mark.asyncio
    async def test_lightning_round_blocks_until_everyone_spoke(
        self, db, seed, check_in
    ) -> None:
        """Test advance fails naming the third attendee, then succeeds once covered."""
        a, b, c = seed.members
        for user in (a, b, c):
            await check_in(seed.meeting, user)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)

        await runner.record_turn(seed.meeting.id, a.id, a.id, 45)
        await runner.skip_turn(seed.meeting.id, a.id, b.id)

        with pytest.raises(PhaseIncompleteError) as exc_info:
            await runner.advance(seed.meeting.id, a.id, target=FULL)
        assert exc_info.value.missing == [c.id]
        assert exc_info.value.phase == LIGHTNING.value

        entry = await runner.record_turn(seed.meeting.id, a.id, c.id, 75)
        assert entry.overtime_seconds == 15

        meeting = await runner.advance(seed.meeting.id, a.id, target=FULL)
        assert meeting.phase == FULL

    @pytest.mark.asyncio
    async def test_scribe_marked_phases_advance_freely(self, db, seed) -> None:
        """Test meditation and ethos need only the scribe's action."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        meeting = await advance_to(runner, seed, LIGHTNING)

        assert meeting.phase == LIGHTNING
        transitions = [
            (e.details["from_phase"], e.details["to_phase"])
            for e in runner.events
            if e.event_type == EventType.PHASE_ADVANCED
        ]
        assert transitions == [
            ("not_started", "opening_meditation"),
            ("opening_meditation", "opening_ethos"),
            ("opening_ethos", "lightning_round"),
        ]

    @pytest.mark.asyncio
    async def test_ordinary_member_cannot_advance(self, db, seed) -> None:
        """Test only the scribe (or a leader) controls phases."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        with pytest.raises(NotAuthorizedError):
            await runner.advance(seed.meeting.id, seed.members[1].id)

    @pytest.mark.asyncio
    async def test_leader_override(self, db, seed) -> None:
        """Test the backup leader may advance on the scribe's behalf."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        meeting = await runner.advance(seed.meeting.id, seed.backup.id)

        assert meeting.phase == MeetingPhase.OPENING_MEDITATION

    @pytest.mark.asyncio
    async def test_requires_in_progress(self, db, seed) -> None:
        """Test a scheduled meeting cannot be advanced."""
        with pytest.raises(NotInProgressError):
            await MeetingRunner(db).advance(seed.meeting.id, seed.leader.id)

    @pytest.mark.asyncio
    async def test_cannot_skip_phases(self, db, seed) -> None:
        """Test a target other than the next phase is rejected."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await runner.advance(seed.meeting.id, seed.members[0].id, target=LIGHTNING)

        assert exc_info.value.context["expected_phase"] == "opening_meditation"
        assert seed.meeting.phase == MeetingPhase.NOT_STARTED

    @pytest.mark.asyncio
    async def test_repeated_click_with_target_fails(self, db, seed) -> None:
        """Test a pinned double advance moves only once."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        target = MeetingPhase.OPENING_MEDITATION

        await runner.advance(seed.meeting.id, seed.members[0].id, target=target)
        with pytest.raises(InvalidTransitionError):
            await runner.advance(seed.meeting.id, seed.members[0].id, target=target)

    @pytest.mark.asyncio
    async def test_stale_expected_version(self, db, seed) -> None:
        """Test a client acting on an old version is told to refresh."""
        runner = MeetingRunner(db)
        meeting = await start(runner, seed)
        stale = meeting.version
        await runner.advance(seed.meeting.id, seed.members[0].id, expected_version=stale)

        with pytest.raises(ConcurrentUpdateError):
            await runner.advance(seed.meeting.id, seed.members[0].id, expected_version=stale)

    @pytest.mark.asyncio
    async def test_concurrent_write_detected_on_flush(self, db, seed, monkeypatch) -> None:
        """Test another writer bumping the version between read and write."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        async def read_then_lose_race(session, meeting_id):
            meeting = await get_meeting(session, meeting_id)
            await session.execute(
                update(Meeting)
                .where(Meeting.id == meeting_id)
                .values(version=Meeting.version + 1)
                .execution_options(synchronize_session=False)
            )
            return meeting

        monkeypatch.setattr(runner_module, "get_meeting", read_then_lose_race)

        meeting_id = seed.meeting.id
        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await runner.advance(meeting_id, seed.members[0].id)

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["meeting_id"] == meeting_id

    @pytest.mark.asyncio
    async def test_running_turn_blocks_advance(self, db, seed, check_in) -> None:
        """Test a speaker still on the clock keeps the phase open."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await runner.start_timer(seed.meeting.id, a.id, a.id)

        with pytest.raises(PhaseIncompleteError) as exc_info:
            await runner.advance(seed.meeting.id, a.id)

        assert exc_info.value.missing == [a.id]
        assert "still running" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_empty_turn_phase_passes(self, db, seed) -> None:
        """Test a phase with nobody checked in has nothing outstanding."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, LIGHTNING)

        meeting = await runner.advance(seed.meeting.id, seed.members[0].id)

        assert meeting.phase == FULL

    @pytest.mark.asyncio
    async def test_section_brackets_follow_phases(self, db, seed) -> None:
        """Test each phase gets its own bracket and the previous one closes."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, MeetingPhase.OPENING_ETHOS)

        state = await runner.load_state(seed.meeting.id)
        brackets = [e for e in state.time_logs if e.is_section]

        assert [e.phase for e in brackets] == [
            MeetingPhase.OPENING_MEDITATION,
            MeetingPhase.OPENING_ETHOS,
        ]
        assert not brackets[0].is_open
        assert state.running_section.id == brackets[1].id

    @pytest.mark.asyncio
    async def test_nothing_after_ended(self, db, seed) -> None:
        """Test ended is terminal for advance."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, MeetingPhase.ENDED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await runner.advance(seed.meeting.id, seed.members[0].id)

        assert exc_info.value.context["expected_phase"] is None
        state = await runner.load_state(seed.meeting.id)
        assert state.running_section is None


class TestTurns:
    """Tests for turns recorded through the runner."""

    @pytest.mark.asyncio
    async def test_participant_must_be_checked_in(self, db, seed) -> None:
        """Test turns are only for people in the room."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, LIGHTNING)

        with pytest.raises(NotCheckedInError):
            await runner.record_turn(seed.meeting.id, seed.members[0].id, seed.members[1].id, 30)

    @pytest.mark.asyncio
    async def test_no_turns_for_future_phase(self, db, seed, check_in) -> None:
        """Test full check-ins cannot be logged during the lightning round."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)

        with pytest.raises(InvalidSubmissionError):
            await runner.record_turn(seed.meeting.id, a.id, a.id, 300, phase=FULL)

    @pytest.mark.asyncio
    async def test_timer_events(self, db, seed, check_in) -> None:
        """Test start and stop through the runner emit timer events."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        runner.events.clear()

        started = await runner.start_timer(seed.meeting.id, a.id, a.id, priority=1)
        stopped = await runner.stop_timer(seed.meeting.id, a.id)

        assert stopped.id == started.id
        assert [e.event_type for e in runner.events] == [
            EventType.TIMER_STARTED,
            EventType.TIMER_STOPPED,
        ]
        assert runner.events[0].details["allotted_seconds"] == 60

    @pytest.mark.asyncio
    async def test_state_reports_next_up(self, db, seed, check_in) -> None:
        """Test the observer snapshot carries queue and advance readiness."""
        a, b, _ = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await runner.record_turn(seed.meeting.id, a.id, a.id, 40)

        state = await runner.load_state(seed.meeting.id)

        assert state.next_up == b.id
        assert state.missing == [b.id]
        assert state.allotted_seconds == 60
        assert state.next_phase == FULL
        assert state.can_advance is False


class TestCurriculum:
    """Tests for the curriculum phase."""

    @pytest.mark.asyncio
    async def test_requires_responses_when_selected(self, db, seed, check_in) -> None:
        """Test every attendee must respond to a selected module."""
        a, b, _ = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await runner.select_curriculum(seed.meeting.id, seed.leader.id, seed.module.id)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a, b])
        await runner.advance(seed.meeting.id, a.id)
        await give_turns(runner, seed, FULL, [a, b])
        await runner.advance(seed.meeting.id, a.id)

        service = ParticipationService(db)
        await service.submit_curriculum_response(seed.meeting.id, a.id, "Honesty first.")
        with pytest.raises(PhaseIncompleteError) as exc_info:
            await runner.advance(seed.meeting.id, a.id)
        assert exc_info.value.missing == [b.id]

        await service.submit_curriculum_response(seed.meeting.id, b.id, "Keep promises.")
        meeting = await runner.advance(seed.meeting.id, a.id)
        assert meeting.phase == MeetingPhase.CLOSING

    @pytest.mark.asyncio
    async def test_ditched_curriculum_needs_nothing(self, db, seed, check_in) -> None:
        """Test ditching the module clears the response requirement."""
        a = seed.members[0]
        await check_in(seed.meeting, a)
        runner = MeetingRunner(db)
        await runner.select_curriculum(seed.meeting.id, seed.leader.id, seed.module.id)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a])
        await runner.advance(seed.meeting.id, a.id)
        await give_turns(runner, seed, FULL, [a])
        await runner.advance(seed.meeting.id, a.id)

        meeting = await runner.ditch_curriculum(seed.meeting.id, a.id)
        assert meeting.curriculum_ditched is True
        # Second ditch is a no-op
        await runner.ditch_curriculum(seed.meeting.id, a.id)
        ditched = [e for e in runner.events if e.event_type == EventType.CURRICULUM_DITCHED]
        assert len(ditched) == 1

        meeting = await runner.advance(seed.meeting.id, a.id)
        assert meeting.phase == MeetingPhase.CLOSING

    @pytest.mark.asyncio
    async def test_selection_closes_at_curriculum(self, db, seed) -> None:
        """Test the module cannot change once the phase has begun."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, MeetingPhase.CURRICULUM)

        with pytest.raises(InvalidSubmissionError):
            await runner.select_curriculum(seed.meeting.id, seed.leader.id, seed.module.id)

    @pytest.mark.asyncio
    async def test_only_leaders_select(self, db, seed) -> None:
        """Test members cannot choose the module."""
        with pytest.raises(NotLeaderError):
            await MeetingRunner(db).select_curriculum(
                seed.meeting.id, seed.members[0].id, seed.module.id
            )


class TestCompletion:
    """Tests for ending a meeting."""

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_full_meeting(self, db, seed, check_in) -> None:
        """Test a meeting run end to end is marked completed."""
        a, b, c = seed.members
        for user in (a, b, c):
            await check_in(seed.meeting, user)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a, b, c])
        await runner.advance(seed.meeting.id, a.id)
        await give_turns(runner, seed, FULL, [a, b, c])
        await advance_to(runner, seed, MeetingPhase.CLOSING)

        with pytest.raises(PhaseIncompleteError):
            await runner.advance(seed.meeting.id, a.id)
        await give_feedback(db, seed, [a, b, c])
        await runner.advance(seed.meeting.id, a.id)

        result = await runner.complete_meeting(seed.meeting.id, a.id)

        assert result.changed is True
        assert result.status == MeetingStatus.COMPLETED
        assert result.verdict.attendees == {a.id, b.id, c.id}
        assert seed.meeting.completed_at is not None
        kinds = [e.event_type for e in runner.events]
        assert EventType.MEETING_VALIDATED in kinds
        assert kinds[-1] == EventType.MEETING_COMPLETED

        # Completing again changes nothing
        again = await MeetingRunner(db).complete_meeting(seed.meeting.id, a.id)
        assert again.changed is False
        assert again.status == MeetingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_complete_before_end(self, db, seed) -> None:
        """Test completion needs the ended phase."""
        runner = MeetingRunner(db)
        await start(runner, seed)
        await advance_to(runner, seed, MeetingPhase.CLOSING)

        with pytest.raises(PhaseIncompleteError):
            await runner.complete_meeting(seed.meeting.id, seed.members[0].id)

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_late_arrival_without_turns_is_incomplete(self, db, seed, check_in) -> None:
        """Test someone who checked in after the turn phases leaves gaps."""
        a, b, c = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a, b])
        await runner.advance(seed.meeting.id, a.id)
        await give_turns(runner, seed, FULL, [a, b])
        await advance_to(runner, seed, MeetingPhase.CLOSING)

        await check_in(seed.meeting, c)
        await give_feedback(db, seed, [a, b, c])
        await runner.advance(seed.meeting.id, a.id)

        result = await runner.complete_meeting(seed.meeting.id, a.id)

        assert result.status == MeetingStatus.INCOMPLETE
        assert result.verdict.missing == {LIGHTNING: [c.id], FULL: [c.id]}
        assert seed.meeting.status == MeetingStatus.INCOMPLETE
        assert EventType.MEETING_COMPLETED not in [e.event_type for e in runner.events]

    @pytest.mark.asyncio
    @pytest.mark.scenario
    async def test_catch_up_turns_rescue_late_arrival(self, db, seed, check_in) -> None:
        """Test turns logged for earlier phases close the gaps."""
        a, b, c = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a, b])
        await runner.advance(seed.meeting.id, a.id)
        await give_turns(runner, seed, FULL, [a, b])
        await advance_to(runner, seed, MeetingPhase.CLOSING)

        await check_in(seed.meeting, c)
        await give_turns(runner, seed, LIGHTNING, [c])
        await runner.skip_turn(seed.meeting.id, a.id, c.id, phase=FULL)
        await give_feedback(db, seed, [a, b, c])
        await runner.advance(seed.meeting.id, a.id)

        result = await runner.complete_meeting(seed.meeting.id, a.id)

        assert result.status == MeetingStatus.COMPLETED


class TestScribeAndReset:
    """Tests for scribe hand-over and resetting a meeting."""

    @pytest.mark.asyncio
    async def test_scribe_hands_over(self, db, seed, check_in) -> None:
        """Test the scribe can pass control to a checked-in member."""
        a, b, _ = seed.members
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)

        meeting = await runner.change_scribe(seed.meeting.id, a.id, b.id)

        assert meeting.scribe_id == b.id
        with pytest.raises(NotAuthorizedError):
            await runner.advance(seed.meeting.id, a.id)
        await runner.advance(seed.meeting.id, b.id)

    @pytest.mark.asyncio
    async def test_new_scribe_must_be_present(self, db, seed) -> None:
        """Test control only goes to someone checked in."""
        runner = MeetingRunner(db)
        await start(runner, seed)

        with pytest.raises(NotCheckedInError):
            await runner.change_scribe(seed.meeting.id, seed.leader.id, seed.members[2].id)

    @pytest.mark.asyncio
    async def test_bystander_cannot_change_scribe(self, db, seed, check_in) -> None:
        """Test ordinary members cannot take over."""
        await check_in(seed.meeting, seed.members[2])
        runner = MeetingRunner(db)
        await start(runner, seed)

        with pytest.raises(NotAuthorizedError):
            await runner.change_scribe(seed.meeting.id, seed.members[1].id, seed.members[2].id)

    @pytest.mark.asyncio
    async def test_scribe_loses_control_with_membership(self, db, seed, check_in) -> None:
        """Test a scribe whose membership lapses mid-meeting can no longer drive it."""
        a, b, _ = seed.members
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await runner.advance(seed.meeting.id, a.id)

        await db.execute(
            update(ChapterMembership)
            .where(ChapterMembership.chapter_id == seed.chapter.id)
            .where(ChapterMembership.user_id == a.id)
            .values(is_active=False)
        )

        with pytest.raises(NotAuthorizedError):
            await runner.advance(seed.meeting.id, a.id)
        with pytest.raises(NotAuthorizedError):
            await runner.change_scribe(seed.meeting.id, a.id, b.id)
        meeting = await runner.advance(seed.meeting.id, seed.leader.id)
        assert meeting.phase == MeetingPhase.OPENING_ETHOS

    @pytest.mark.asyncio
    async def test_reset_purges_meeting_data(self, db, seed, check_in) -> None:
        """Test reset returns to scheduled with no turns, feedback or check-ins."""
        a, b, _ = seed.members
        await check_in(seed.meeting, a)
        await check_in(seed.meeting, b)
        runner = MeetingRunner(db)
        await start(runner, seed, scribe=a)
        await advance_to(runner, seed, LIGHTNING)
        await give_turns(runner, seed, LIGHTNING, [a])
        await give_feedback(db, seed, [b])

        with pytest.raises(NotLeaderError):
            await runner.reset_meeting(seed.meeting.id, a.id)
        meeting = await runner.reset_meeting(seed.meeting.id, seed.leader.id)

        assert meeting.status == MeetingStatus.SCHEDULED
        assert meeting.phase == MeetingPhase.NOT_STARTED
        assert meeting.scribe_id is None
        assert meeting.actual_start_time is None
        for model in (TimeLogEntry, MeetingFeedback):
            count = await db.scalar(
                select(func.count()).select_from(model).where(model.meeting_id == meeting.id)
            )
            assert count == 0
        assert await runner.queue.checked_in_attendees(meeting.id) == []

        # The meeting can be run again
        restarted = await start(runner, seed)
        assert restarted.status == MeetingStatus.IN_PROGRESS
