"""
Cleanup Scheduler - periodic reclamation of expired and abandoned sessions
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from ..metrics import SWEEP_RUNS
from ..models import ACTIVE_STATUSES, TERMINAL_STATUSES, SessionStatus, utcnow
from .session_manager import EXPIRED_REASON, SessionManager

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""
    expired: List[str] = field(default_factory=list)
    inactive: List[str] = field(default_factory=list)
    reclaimed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    vpn_profiles_removed: int = 0
    purged: int = 0

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "inactive": self.inactive,
            "reclaimed": self.reclaimed,
            "failed": self.failed,
            "vpn_profiles_removed": self.vpn_profiles_removed,
            "purged": self.purged,
        }


class CleanupScheduler:
    """
    Background loop that drives stale sessions through the stop path.

    A failure on one session is logged and the sweep moves on; a failing
    sweep never stops the loop.
    """

    def __init__(
        self,
        manager: SessionManager,
        interval_seconds: float = 60,
        teardown_grace: timedelta = timedelta(minutes=5),
        inactivity_timeout: Optional[timedelta] = None,
        retention: Optional[timedelta] = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.teardown_grace = teardown_grace
        self.inactivity_timeout = inactivity_timeout
        self.retention = retention
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_settings(cls, manager: SessionManager, settings) -> "CleanupScheduler":
        inactivity = settings.inactivity_timeout_minutes
        return cls(
            manager,
            interval_seconds=settings.cleanup_interval_seconds,
            teardown_grace=timedelta(seconds=settings.teardown_grace_seconds),
            inactivity_timeout=timedelta(minutes=inactivity) if inactivity > 0 else None,
            retention=timedelta(hours=settings.session_retention_hours),
        )

    async def start(self) -> None:
        """Start the background sweep loop."""
        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("Cleanup scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Cleanup scheduler stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                SWEEP_RUNS.labels(outcome="error").inc()
                logger.error("Error in cleanup loop", error=str(e))

    async def sweep(self) -> SweepReport:
        """Run one cleanup pass."""
        report = SweepReport()
        repository = self.manager.repository
        now = self._clock()

        for session in await repository.list_by_status(ACTIVE_STATUSES):
            if session.is_expired(now):
                await self._drive(session.id, report.expired, report, reason=EXPIRED_REASON)
            elif (
                self.inactivity_timeout is not None
                and session.status == SessionStatus.RUNNING
                and session.last_activity is not None
                and now - session.last_activity > self.inactivity_timeout
            ):
                await self._drive(session.id, report.inactive, report, reason="inactive")

        grace_cutoff = now - self.teardown_grace
        stale = await repository.list_by_status([SessionStatus.STOPPING, *TERMINAL_STATUSES])
        for session in stale:
            if session.status == SessionStatus.STOPPING:
                started = session.teardown_started_at or session.created_at
                if started > grace_cutoff:
                    continue
            elif session.resources_released or self.manager.teardown_exhausted(session):
                continue
            elif (session.stopped_at or session.created_at) > grace_cutoff:
                continue
            await self._drive(session.id, report.reclaimed, report)

        if self.manager.vpn_issuer is not None:
            try:
                report.vpn_profiles_removed = await self.manager.vpn_issuer.sweep_expired()
            except Exception as e:
                logger.error("VPN profile sweep failed", error=str(e))

        if self.retention is not None:
            try:
                report.purged = await repository.purge_terminal(now - self.retention)
            except Exception as e:
                logger.error("Session retention purge failed", error=str(e))

        SWEEP_RUNS.labels(outcome="ok").inc()
        if report.expired or report.inactive or report.reclaimed or report.failed or report.purged:
            logger.info("Cleanup sweep finished", **report.to_dict())
        return report

    async def _drive(
        self,
        session_id: str,
        bucket: List[str],
        report: SweepReport,
        reason: Optional[str] = None,
    ) -> None:
        try:
            if reason is None:
                await self.manager.reclaim_session(session_id)
            else:
                logger.info("Cleaning up session", session_id=session_id, reason=reason)
                await self.manager.stop_session(session_id, reason=reason)
            bucket.append(session_id)
        except Exception as e:
            report.failed.append(session_id)
            logger.error(
                "Cleanup failed for session",
                session_id=session_id,
                reason=reason or "reclaim",
                error=str(e),
            )
