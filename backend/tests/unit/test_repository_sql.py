"""
Unit tests for the SQLAlchemy session repository against in-memory SQLite.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from labrange.core.config import Settings
from labrange.infrastructure.database import DatabaseManager
from labrange.infrastructure.orchestrator.exceptions import ConflictError, NotFoundError
from labrange.infrastructure.orchestrator.models import (
    ErrorKind,
    FlagSlot,
    FlagSubmission,
    FlagType,
    LabSession,
    NetworkAllocation,
    NetworkMode,
    SessionStatus,
)
from labrange.infrastructure.orchestrator.repository import SqlSessionRepository


@pytest.fixture
async def db():
    settings = Settings(
        secret_key="test-secret-key-with-at-least-32-chars",
        database_url="sqlite+aiosqlite:///:memory:",
    )
    manager = DatabaseManager(settings)
    await manager.connect()
    await manager.create_schema()
    yield manager
    await manager.disconnect()


@pytest.fixture
async def sql_repository(db, nat_lab, bridge_lab) -> SqlSessionRepository:
    repo = SqlSessionRepository(db)
    await repo.add_lab(nat_lab)
    await repo.add_lab(bridge_lab)
    return repo


def make_session(clock, user_id="alice", status=SessionStatus.STARTING, **kwargs) -> LabSession:
    return LabSession(
        user_id=user_id,
        lab_id="lab-web-101",
        status=status,
        created_at=clock.now,
        expires_at=clock.now + timedelta(minutes=60),
        **kwargs,
    )


class TestLabs:
    """Test catalog persistence."""

    async def test_lab_roundtrip(self, sql_repository, bridge_lab):
        lab = await sql_repository.get_lab("lab-ad-201")

        assert lab.slug == "ad201"
        assert lab.network_mode == NetworkMode.BRIDGE
        assert lab.default_credentials.username == "analyst"
        assert lab.flags[FlagType.ROOT].points == 50
        assert lab.flags[FlagType.USER].paths == ["/home/analyst/user.txt"]

    async def test_unknown_lab(self, sql_repository):
        assert await sql_repository.get_lab("missing") is None

    async def test_list_active_labs(self, sql_repository, nat_lab):
        nat_lab.is_active = False
        await sql_repository.add_lab(nat_lab)

        active = await sql_repository.list_labs()
        everything = await sql_repository.list_labs(active_only=False)

        assert [lab.id for lab in active] == ["lab-ad-201"]
        assert len(everything) == 2

    async def test_counters(self, sql_repository):
        await sql_repository.increment_lab_stats("lab-web-101", total_sessions=1)
        await sql_repository.increment_lab_stats(
            "lab-web-101", flag_submissions=2, correct_submissions=1,
        )

        stats = (await sql_repository.get_lab("lab-web-101")).stats
        assert stats.total_sessions == 1
        assert stats.flag_submissions == 2
        assert stats.correct_submissions == 1
        assert stats.completions == 0

    async def test_unknown_counter(self, sql_repository):
        with pytest.raises(ValueError):
            await sql_repository.increment_lab_stats("lab-web-101", downloads=1)

    async def test_set_template(self, sql_repository):
        await sql_repository.set_lab_template("lab-web-101", "/templates/web101-base.qcow2")

        lab = await sql_repository.get_lab("lab-web-101")
        assert lab.base_image == "/templates/web101-base.qcow2"

        with pytest.raises(NotFoundError):
            await sql_repository.set_lab_template("missing", "/x")


class TestSessions:
    """Test session persistence and the one-active-session rule."""

    async def test_session_roundtrip(self, sql_repository, clock):
        session = make_session(clock, status=SessionStatus.RUNNING)
        session.network = NetworkAllocation(mode=NetworkMode.NAT, ssh_port=2200, web_port=8000)
        session.flags = {
            FlagType.USER: FlagSlot(FlagType.USER, "FLAG{user_web101_abc}", 25, path="/tmp/user.txt"),
        }
        session.connection = {"ssh_port": 2200}
        session.record_error(
            ErrorKind.FLAG_INJECTION_FAILED, "sshd not up", fatal=False, at=clock.now,
        )
        session.teardown_attempts = 2
        await sql_repository.save(session)

        loaded = await sql_repository.get(session.id)

        assert loaded.status == SessionStatus.RUNNING
        assert loaded.network == session.network
        assert loaded.flags[FlagType.USER].expected == "FLAG{user_web101_abc}"
        assert loaded.flags[FlagType.USER].path == "/tmp/user.txt"
        assert loaded.connection == {"ssh_port": 2200}
        assert loaded.warnings == ["sshd not up"]
        assert loaded.errors[0].timestamp == clock.now
        assert loaded.teardown_attempts == 2
        assert loaded.expires_at == session.expires_at
        assert loaded.expires_at.tzinfo is not None

    async def test_claim_slot_conflict(self, sql_repository, clock):
        await sql_repository.claim_slot(make_session(clock))

        with pytest.raises(ConflictError):
            await sql_repository.claim_slot(make_session(clock))

        assert await sql_repository.count_active() == 1

    async def test_claim_after_terminal(self, sql_repository, clock):
        first = make_session(clock)
        await sql_repository.claim_slot(first)
        first.status = SessionStatus.FAILED
        await sql_repository.save(first)

        await sql_repository.claim_slot(make_session(clock))

        assert await sql_repository.count_active() == 1

    async def test_unique_index_backs_the_claim(self, sql_repository, clock):
        """Test that the database itself refuses a second active row."""
        await sql_repository.save(make_session(clock, status=SessionStatus.RUNNING))

        with pytest.raises(IntegrityError):
            await sql_repository.save(make_session(clock, status=SessionStatus.STARTING))

    async def test_stopping_row_does_not_hold_the_index(self, sql_repository, clock):
        await sql_repository.save(make_session(clock, status=SessionStatus.STOPPING))

        await sql_repository.save(make_session(clock, status=SessionStatus.STARTING))

        assert len(await sql_repository.list_for_user("alice")) == 2

    async def test_queries(self, sql_repository, clock):
        old = make_session(clock, status=SessionStatus.STOPPED)
        clock.advance(minutes=5)
        current = make_session(clock, status=SessionStatus.RUNNING)
        other = make_session(clock, user_id="bob", status=SessionStatus.STOPPING)
        for session in (old, current, other):
            await sql_repository.save(session)

        assert (await sql_repository.find_active_for_user("alice")).id == current.id
        assert await sql_repository.find_active_for_user("bob") is None
        assert [s.id for s in await sql_repository.list_for_user("alice")] == [current.id, old.id]
        assert len(await sql_repository.list_for_user("alice", limit=1)) == 1
        stopping = await sql_repository.list_by_status([SessionStatus.STOPPING])
        assert [s.id for s in stopping] == [other.id]

    async def test_purge_terminal(self, sql_repository, clock):
        released = make_session(clock, status=SessionStatus.STOPPED, stopped_at=clock.now, resources_released=True)
        held = make_session(clock, user_id="bob", status=SessionStatus.STOPPED, stopped_at=clock.now)
        for session in (released, held):
            await sql_repository.save(session)

        assert await sql_repository.purge_terminal(clock.now - timedelta(hours=1)) == 0
        assert await sql_repository.purge_terminal(clock.now + timedelta(hours=1)) == 1

        assert await sql_repository.get(released.id) is None
        assert await sql_repository.get(held.id) is not None


class TestSubmissions:
    """Test the submission audit log."""

    async def test_submissions_in_order(self, sql_repository, clock):
        session = make_session(clock, status=SessionStatus.RUNNING)
        await sql_repository.save(session)

        for attempt, value in enumerate(["FLAG{a}", "FLAG{b}"], start=1):
            clock.advance(seconds=1)
            await sql_repository.add_submission(FlagSubmission(
                user_id="alice",
                session_id=session.id,
                lab_id="lab-web-101",
                flag_type=FlagType.USER,
                submitted_value=value,
                expected_value="FLAG{b}",
                is_correct=value == "FLAG{b}",
                points_awarded=25 if value == "FLAG{b}" else 0,
                attempt_number=attempt,
                submitted_at=clock.now,
            ))

        submissions = await sql_repository.list_submissions(session.id)

        assert [s.submitted_value for s in submissions] == ["FLAG{a}", "FLAG{b}"]
        assert submissions[1].is_correct is True
        assert submissions[1].submitted_at.tzinfo is not None
        assert await sql_repository.list_submissions("other") == []
