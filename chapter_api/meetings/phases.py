"""
Meeting Phases

The fixed, forward-only sequence a meeting runs through, and what each phase
requires before the scribe may move on.
"""

from enum import StrEnum

from chapter_api.core.config import settings


class MeetingPhase(StrEnum):
    """Ordered stages of a running meeting."""

    NOT_STARTED = "not_started"
    OPENING_MEDITATION = "opening_meditation"
    OPENING_ETHOS = "opening_ethos"
    LIGHTNING_ROUND = "lightning_round"
    FULL_CHECKINS = "full_checkins"
    CURRICULUM = "curriculum"
    CLOSING = "closing"
    ENDED = "ended"


PHASE_ORDER: tuple[MeetingPhase, ...] = tuple(MeetingPhase)

# Every checked-in attendee needs one closed time-log entry
TURN_PHASES = frozenset({MeetingPhase.LIGHTNING_ROUND, MeetingPhase.FULL_CHECKINS})

# Every checked-in attendee needs one submitted entry outside the turn queue
RESPONSE_PHASES = frozenset({MeetingPhase.CURRICULUM, MeetingPhase.CLOSING})

# Completed by the scribe's single advance action
SCRIBE_MARKED_PHASES = frozenset(
    {
        MeetingPhase.NOT_STARTED,
        MeetingPhase.OPENING_MEDITATION,
        MeetingPhase.OPENING_ETHOS,
    }
)

# Phases the completion validator checks for full coverage
REQUIRED_COVERAGE_PHASES: tuple[MeetingPhase, ...] = (
    MeetingPhase.LIGHTNING_ROUND,
    MeetingPhase.FULL_CHECKINS,
)


def phase_index(phase: MeetingPhase | str) -> int:
    """Position of a phase in the fixed order."""
    return PHASE_ORDER.index(MeetingPhase(phase))


def next_phase(phase: MeetingPhase | str) -> MeetingPhase | None:
    """The phase that follows, or None once the meeting has ended."""
    index = phase_index(phase)
    if index + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index + 1]


def is_forward_step(current: MeetingPhase | str, target: MeetingPhase | str) -> bool:
    """True only when target is exactly the next phase after current."""
    return next_phase(current) == MeetingPhase(target)


def allotted_seconds(phase: MeetingPhase | str) -> int | None:
    """
    Speaking time per participant for a turn-based phase.

    Section-level phases have no allotment and therefore no overtime.
    """
    phase = MeetingPhase(phase)
    if phase == MeetingPhase.LIGHTNING_ROUND:
        return settings.lightning_round_seconds
    if phase == MeetingPhase.FULL_CHECKINS:
        return settings.full_checkin_seconds
    return None


def compute_overtime(duration_seconds: int, allotted: int | None) -> int | None:
    """Positive excess over the allotment; None where no allotment applies."""
    if allotted is None:
        return None
    return max(0, duration_seconds - allotted)
