"""
Unit tests for the cleanup scheduler.
"""

import asyncio
from datetime import timedelta

import pytest

from labrange.infrastructure.orchestrator.exceptions import HypervisorError
from labrange.infrastructure.orchestrator.models import (
    ErrorKind,
    EventType,
    NetworkMode,
    SessionStatus,
)
from labrange.infrastructure.orchestrator.services.cleanup_scheduler import CleanupScheduler


@pytest.fixture
def scheduler(manager, clock) -> CleanupScheduler:
    return CleanupScheduler(
        manager,
        interval_seconds=0.01,
        teardown_grace=timedelta(minutes=5),
        retention=timedelta(hours=24),
        clock=clock,
    )


class TestExpiry:
    """Test deadline enforcement."""

    async def test_expired_session_is_torn_down(
        self, manager, scheduler, clock, hypervisor, allocator,
    ):
        """Test that a session past its deadline ends expired with resources freed."""
        events = []
        manager.add_listener(events.append)
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=61)

        report = await scheduler.sweep()

        assert report.expired == [session.id]
        expired = await manager.get_session(session.id)
        assert expired.status == SessionStatus.EXPIRED
        assert expired.stop_reason == "expired"
        assert expired.resources_released is True
        assert allocator.get(session.id) is None
        assert session.instance_id not in hypervisor.domains
        assert events[-1].type == EventType.EXPIRED

    async def test_live_session_untouched(self, manager, scheduler, clock):
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=59)

        report = await scheduler.sweep()

        assert report.expired == []
        assert (await manager.get_session(session.id)).status == SessionStatus.RUNNING

    async def test_extension_defers_expiry(self, manager, scheduler, clock):
        session = await manager.start_session("alice", "lab-web-101")
        await manager.extend_session(session.id)
        clock.advance(minutes=75)

        report = await scheduler.sweep()

        assert report.expired == []

    async def test_failure_on_one_session_does_not_stop_sweep(
        self, manager, scheduler, clock, monkeypatch,
    ):
        """Test that one failing stop leaves the others to be cleaned."""
        first = await manager.start_session("alice", "lab-web-101")
        second = await manager.start_session("bob", "lab-web-101")
        clock.advance(minutes=61)

        original = manager.stop_session

        async def flaky_stop(session_id, reason="user_requested"):
            if session_id == first.id:
                raise HypervisorError("libvirtd not responding")
            return await original(session_id, reason=reason)

        monkeypatch.setattr(manager, "stop_session", flaky_stop)

        report = await scheduler.sweep()

        assert report.failed == [first.id]
        assert report.expired == [second.id]
        assert (await manager.get_session(second.id)).status == SessionStatus.EXPIRED

    async def test_start_outliving_deadline_fails(
        self, manager, scheduler, clock, hypervisor, allocator, repository,
    ):
        """Test that a session still booting at its deadline ends failed, not expired."""
        events = []
        manager.add_listener(events.append)
        hypervisor.boot_gate = asyncio.Event()
        start = asyncio.create_task(manager.start_session("alice", "lab-web-101"))
        await hypervisor.booting.wait()
        clock.advance(minutes=61)

        report = await scheduler.sweep()
        hypervisor.boot_gate.set()
        result = await start

        assert report.expired == [result.id]
        assert result.status == SessionStatus.FAILED
        assert result.stop_reason == "expired"
        assert result.errors[0].kind == ErrorKind.TIMEOUT
        assert events[-1].type == EventType.FAILED
        assert allocator.in_use(NetworkMode.NAT) == 0
        assert result.instance_id not in hypervisor.domains
        assert await repository.count_active() == 0


class TestInactivity:
    """Test idle session reclamation."""

    async def test_disabled_by_default(self, manager, scheduler, clock):
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=45)

        await scheduler.sweep()

        assert (await manager.get_session(session.id)).status == SessionStatus.RUNNING

    async def test_idle_session_stopped(self, manager, scheduler, clock):
        scheduler.inactivity_timeout = timedelta(minutes=15)
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=20)

        report = await scheduler.sweep()

        assert report.inactive == [session.id]
        stopped = await manager.get_session(session.id)
        assert stopped.status == SessionStatus.STOPPED
        assert stopped.stop_reason == "inactive"

    async def test_heartbeat_keeps_session_alive(self, manager, scheduler, clock):
        scheduler.inactivity_timeout = timedelta(minutes=15)
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=10)
        await manager.touch(session.id)
        clock.advance(minutes=10)

        report = await scheduler.sweep()

        assert report.inactive == []


class TestReclaim:
    """Test recovery of interrupted teardowns."""

    async def test_stuck_stopping_session(self, manager, scheduler, clock, repository, allocator):
        session = await manager.start_session("alice", "lab-web-101")
        stuck = await repository.get(session.id)
        stuck.status = SessionStatus.STOPPING
        stuck.teardown_started_at = clock.now
        await repository.save(stuck)

        report = await scheduler.sweep()
        assert report.reclaimed == []

        clock.advance(minutes=6)
        report = await scheduler.sweep()

        assert report.reclaimed == [session.id]
        reclaimed = await manager.get_session(session.id)
        assert reclaimed.status == SessionStatus.STOPPED
        assert reclaimed.resources_released is True
        assert allocator.get(session.id) is None

    async def test_unreleased_terminal_session(self, manager, scheduler, clock, hypervisor):
        session = await manager.start_session("alice", "lab-web-101")
        hypervisor.fail("delete", HypervisorError("resource busy"))
        await manager.stop_session(session.id)
        del hypervisor.failures["delete"]

        clock.advance(minutes=6)
        report = await scheduler.sweep()

        assert report.reclaimed == [session.id]
        assert (await manager.get_session(session.id)).resources_released is True

    async def test_released_sessions_are_left_alone(self, manager, scheduler, clock, hypervisor):
        session = await manager.start_session("alice", "lab-web-101")
        await manager.stop_session(session.id)
        clock.advance(minutes=6)

        report = await scheduler.sweep()

        assert report.reclaimed == []
        assert hypervisor.count("delete") == 1

    async def test_failing_teardown_is_given_up(
        self, manager, scheduler, clock, hypervisor, repository,
    ):
        """Test that a teardown that keeps failing is retried a bounded number of times."""
        session = await manager.start_session("alice", "lab-web-101")
        hypervisor.fail("delete", HypervisorError("permission denied"))
        await manager.stop_session(session.id)

        for _ in range(20):
            clock.advance(minutes=10)
            report = await scheduler.sweep()

        assert report.reclaimed == []
        stuck = await repository.get(session.id)
        assert stuck.resources_released is False
        assert stuck.teardown_attempts == manager.max_teardown_attempts
        assert len(stuck.errors) == manager.max_teardown_attempts
        assert hypervisor.count("delete") == manager.max_teardown_attempts


class TestHousekeeping:
    """Test VPN profile sweeps and retention."""

    async def test_expired_vpn_profiles_removed(self, scheduler, vpn_issuer, allocator, clock):
        network = allocator.allocate("loose", "alice", NetworkMode.BRIDGE)
        profile = await vpn_issuer.issue("alice", "loose", network, timedelta(minutes=5))
        clock.advance(minutes=10)

        report = await scheduler.sweep()

        assert report.vpn_profiles_removed == 1
        assert not profile.path.exists()

    async def test_old_sessions_purged(self, manager, scheduler, clock, repository):
        session = await manager.start_session("alice", "lab-web-101")
        await manager.stop_session(session.id)

        clock.advance(hours=23)
        assert (await scheduler.sweep()).purged == 0

        clock.advance(hours=2)
        report = await scheduler.sweep()

        assert report.purged == 1
        assert await repository.get(session.id) is None

    async def test_no_retention_keeps_history(self, manager, scheduler, clock, repository):
        scheduler.retention = None
        session = await manager.start_session("alice", "lab-web-101")
        await manager.stop_session(session.id)
        clock.advance(days=30)

        report = await scheduler.sweep()

        assert report.purged == 0
        assert await repository.get(session.id) is not None


class TestLoop:
    """Test the background task."""

    async def test_loop_sweeps_until_stopped(self, manager, scheduler, clock):
        session = await manager.start_session("alice", "lab-web-101")
        clock.advance(minutes=61)

        await scheduler.start()
        for _ in range(50):
            await asyncio.sleep(0.01)
            if (await manager.get_session(session.id)).status == SessionStatus.EXPIRED:
                break
        await scheduler.stop()

        assert (await manager.get_session(session.id)).status == SessionStatus.EXPIRED
        assert scheduler._task is None
