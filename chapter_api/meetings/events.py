"""
Meeting Event Emission

Publishes meeting events to Redis Pub/Sub so every connected device can
re-render, and writes the activity log. Both run after the command's
transaction has committed and are best-effort: a Redis outage or a failed
activity-log insert is logged and swallowed, never surfaced to the caller.

Channels:
- chapters:meeting:{meeting_id} - per-meeting observer stream
- chapters:notifications - outbound member notifications
"""

import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chapter_api.core.config import settings
from chapter_api.meetings.models import ActivityLog, ActorType, Meeting

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Meeting event types. Values double as activity-log action names."""

    MEETING_SCHEDULED = "meeting.scheduled"
    MEETING_STARTED = "meeting.started"
    PHASE_ADVANCED = "meeting.phase_advanced"
    SCRIBE_CHANGED = "meeting.scribe_changed"
    CURRICULUM_SELECTED = "meeting.curriculum_selected"
    CURRICULUM_DITCHED = "meeting.curriculum_ditched"
    TIMER_STARTED = "meeting.timer_started"
    TIMER_STOPPED = "meeting.timer_stopped"
    TURN_RECORDED = "meeting.turn_recorded"
    TURN_SKIPPED = "meeting.turn_skipped"
    RSVP_UPDATED = "meeting.rsvp"
    CHECKED_IN = "meeting.checkin"
    RESPONSE_SUBMITTED = "meeting.curriculum_response"
    FEEDBACK_SUBMITTED = "meeting.feedback"
    MEETING_COMPLETED = "meeting.completed"
    MEETING_VALIDATED = "meeting.validated"
    MEETING_RESET = "meeting.reset"
    MEMBER_NOTIFIED = "notification.meeting_started"


# Events that also land in the activity log; the rest are observer-only
ACTIVITY_EVENTS = frozenset(
    {
        EventType.MEETING_SCHEDULED,
        EventType.MEETING_STARTED,
        EventType.PHASE_ADVANCED,
        EventType.SCRIBE_CHANGED,
        EventType.CURRICULUM_SELECTED,
        EventType.CURRICULUM_DITCHED,
        EventType.CHECKED_IN,
        EventType.MEETING_COMPLETED,
        EventType.MEETING_VALIDATED,
        EventType.MEETING_RESET,
    }
)


@dataclass
class MeetingEvent:
    """A committed change observers need to hear about."""

    event_type: EventType
    meeting_id: UUID
    chapter_id: UUID | None = None
    actor_id: UUID | None = None
    actor_type: ActorType = ActorType.USER
    summary: str = ""
    phase: str | None = None
    version: int | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def channel(self) -> str:
        if self.event_type == EventType.MEMBER_NOTIFIED:
            return EventEmitter.CHANNEL_NOTIFICATIONS
        return EventEmitter.meeting_channel(self.meeting_id)

    def to_json(self) -> str:
        """Convert event to JSON string."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["event_type"] = self.event_type.value
        return json.dumps(data, default=str)


def meeting_event(
    meeting: Meeting,
    event_type: EventType,
    actor_id: UUID | None,
    summary: str,
    actor_type: ActorType = ActorType.USER,
    **details: Any,
) -> MeetingEvent:
    """Build an event stamped with the meeting's current phase and version."""
    return MeetingEvent(
        event_type=event_type,
        meeting_id=meeting.id,
        chapter_id=meeting.chapter_id,
        actor_id=actor_id,
        actor_type=actor_type,
        summary=summary,
        phase=meeting.phase.value if meeting.phase else None,
        version=meeting.version,
        details=details,
    )


class EventEmitter:
    """
    Emits meeting events to Redis Pub/Sub.

    Usage:
        async with EventEmitter() as emitter:
            await emitter.publish(event)
    """

    CHANNEL_PREFIX = "chapters:meeting:"
    CHANNEL_NOTIFICATIONS = "chapters:notifications"

    def __init__(self, redis_url: str | None = None, enabled: bool = True) -> None:
        """
        Initialize the event emitter.

        Args:
            redis_url: Redis connection URL (default from settings)
            enabled: Whether to emit events (can be disabled for testing)
        """
        self.redis_url = redis_url or settings.redis_url
        self.enabled = enabled and settings.events_enabled
        self._client: redis.Redis | None = None

    @classmethod
    def meeting_channel(cls, meeting_id: UUID) -> str:
        return f"{cls.CHANNEL_PREFIX}{meeting_id}"

    async def __aenter__(self) -> "EventEmitter":
        """Async context manager entry."""
        if self.enabled:
            try:
                self._client = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._client.ping()
                logger.info("Event emitter connected to Redis")
            except Exception as e:
                logger.warning("Event emitter disabled: %s", e)
                self.enabled = False
                self._client = None
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def publish(self, event: MeetingEvent) -> None:
        """Publish event to its Redis channel."""
        if not self.enabled or not self._client:
            return

        try:
            await self._client.publish(event.channel, event.to_json())
        except Exception as e:
            # Don't fail the command because of event emission
            logger.warning("Failed to emit %s: %s", event.event_type.value, e)

    async def subscribe(self, meeting_id: UUID) -> AsyncIterator[str]:
        """Yield raw JSON messages for one meeting until the caller stops."""
        if not self.enabled or not self._client:
            return

        pubsub = self._client.pubsub()
        await pubsub.subscribe(self.meeting_channel(meeting_id))
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(self.meeting_channel(meeting_id))
            await pubsub.aclose()


class ActivityLogger:
    """Writes activity-log rows in their own session, after the command commits."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def log(self, event: MeetingEvent) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    ActivityLog(
                        actor_id=event.actor_id,
                        actor_type=event.actor_type,
                        action=event.event_type.value,
                        entity_type="meeting",
                        entity_id=event.meeting_id,
                        chapter_id=event.chapter_id,
                        summary=event.summary,
                        details=json.loads(json.dumps(event.details, default=str)),
                    )
                )
                await session.commit()
        except Exception as e:
            logger.warning("Activity log write failed for %s: %s", event.event_type.value, e)


class EventDispatcher:
    """Fans committed events out to observers and the activity log."""

    def __init__(self, emitter: EventEmitter, activity: ActivityLogger) -> None:
        self.emitter = emitter
        self.activity = activity

    async def dispatch(self, events: Iterable[MeetingEvent]) -> None:
        for event in events:
            await self.emitter.publish(event)
            if event.event_type in ACTIVITY_EVENTS:
                await self.activity.log(event)


# Global emitter instance (lazy initialization)
_emitter: EventEmitter | None = None


async def get_emitter() -> EventEmitter:
    """Get or create the global event emitter."""
    global _emitter
    if _emitter is None:
        _emitter = EventEmitter()
        await _emitter.__aenter__()
    return _emitter


async def close_emitter() -> None:
    """Close the global event emitter."""
    global _emitter
    if _emitter:
        await _emitter.__aexit__(None, None, None)
        _emitter = None
