"""
Pytest configuration and fixtures.

Service tests run against an in-memory SQLite database created from the
models, one fresh database per test.
"""

import itertools
import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# Settings are read at import time; point them at SQLite before anything loads
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EVENTS_ENABLED", "false")

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from chapter_api.core.database import Base
from chapter_api.meetings.models import (
    Attendance,
    AttendanceType,
    Chapter,
    ChapterMembership,
    ChapterRole,
    CurriculumModule,
    Meeting,
    MeetingStatus,
    User,
    utcnow,
)
from chapter_api.meetings.phases import MeetingPhase

CHECKIN_BASE = datetime(2026, 3, 5, 18, 55, tzinfo=timezone.utc)


@dataclass
class ChapterSeed:
    """A chapter with a leader, a backup leader, three members and one meeting."""

    chapter: Chapter
    leader: User
    backup: User
    members: list[User]
    outsider: User
    module: CurriculumModule
    meeting: Meeting


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave like PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(db: AsyncSession) -> ChapterSeed:
    """Chapter, roles, curriculum module and a meeting scheduled for now."""
    chapter = Chapter(name="Riverside")
    leader = User(name="Leader Lee", username="lee")
    backup = User(name="Backup Bo", username="bo")
    members = [User(name=f"Member {i}", username=f"member{i}") for i in range(1, 4)]
    outsider = User(name="Outsider Oz", username="oz")
    module = CurriculumModule(title="Integrity", content="...")
    db.add_all([chapter, leader, backup, *members, outsider, module])
    await db.flush()

    db.add(ChapterMembership(chapter_id=chapter.id, user_id=leader.id, role=ChapterRole.LEADER))
    db.add(
        ChapterMembership(
            chapter_id=chapter.id, user_id=backup.id, role=ChapterRole.BACKUP_LEADER
        )
    )
    for member in members:
        db.add(ChapterMembership(chapter_id=chapter.id, user_id=member.id))

    meeting = Meeting(
        chapter_id=chapter.id,
        scheduled_at=utcnow(),
        status=MeetingStatus.SCHEDULED,
        phase=MeetingPhase.NOT_STARTED,
    )
    db.add(meeting)
    await db.flush()
    for user in (leader, backup, *members):
        db.add(Attendance(meeting_id=meeting.id, user_id=user.id))
    await db.commit()

    return ChapterSeed(
        chapter=chapter,
        leader=leader,
        backup=backup,
        members=members,
        outsider=outsider,
        module=module,
        meeting=meeting,
    )


@pytest.fixture
def check_in(db: AsyncSession):
    """Check a user in with strictly increasing timestamps so queue order is stable."""
    counter = itertools.count()

    async def _check_in(meeting: Meeting, user: User) -> Attendance:
        result = await db.execute(
            select(Attendance)
            .where(Attendance.meeting_id == meeting.id)
            .where(Attendance.user_id == user.id)
        )
        attendance = result.scalar_one_or_none()
        if attendance is None:
            attendance = Attendance(meeting_id=meeting.id, user_id=user.id)
            db.add(attendance)
        attendance.checked_in_at = CHECKIN_BASE + timedelta(seconds=next(counter))
        attendance.attendance_type = AttendanceType.IN_PERSON
        await db.flush()
        return attendance

    return _check_in


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "scenario: end-to-end meeting scenarios"
    )
    config.addinivalue_line(
        "markers", "api: tests that go through the HTTP layer"
    )
