"""
Session Manager - lifecycle of lab sessions and their VMs

Handles:
- Atomic one-session-per-user claims
- Network allocation, VM clone/boot and bounded reachability waits
- Flag generation (recorded first) and best-effort injection
- Flag validation, scoring notification and completion tracking
- Extensions, stops and expiry through one shared teardown path
- Reconciliation after a restart
"""

import asyncio
import inspect
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from ..exceptions import (
    AllocationExhausted,
    AlreadySubmittedError,
    BootTimeoutError,
    ExpiredError,
    InjectionFailure,
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    VpnUnavailableError,
)
from ..metrics import (
    ACTIVE_SESSIONS,
    FLAG_SUBMISSIONS,
    SESSIONS_ENDED,
    SESSIONS_FAILED,
    SESSIONS_STARTED,
    TEARDOWN_STEP_FAILURES,
)
from ..models import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    ErrorKind,
    EventType,
    FlagSubmission,
    FlagType,
    Lab,
    LabSession,
    NetworkMode,
    SessionEvent,
    SessionStatus,
    SubmissionResult,
    utcnow,
)
from ..repository import SessionRepository
from .flag_service import FlagService, candidate_paths
from .hypervisor import LibvirtHypervisor, domain_name, mac_address
from .network_allocator import NetworkAllocator
from .scoring import NullScoringHook, ScoringHook
from .vpn_issuer import VpnIssuer, VpnProfile

logger = structlog.get_logger(__name__)

Listener = Callable[[SessionEvent], Union[None, Awaitable[None]]]

EXPIRED_REASON = "expired"


class StartAborted(Exception):
    """The session left `starting` (stopped or expired) while it was booting."""

    def __init__(self, session: Optional[LabSession]):
        super().__init__("session stopped during start")
        self.session = session


class _SessionLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionManager:
    """
    Central coordinator for lab sessions.

    Collaborators are owned objects passed in by the caller; the manager
    keeps no module-level state. One lock serializes user-slot claims and
    one lock per session serializes bookkeeping and teardown. Cloning,
    booting and injection never run under a lock.
    """

    def __init__(
        self,
        repository: SessionRepository,
        allocator: NetworkAllocator,
        hypervisor: LibvirtHypervisor,
        flag_service: FlagService,
        vpn_issuer: Optional[VpnIssuer] = None,
        scoring_hook: Optional[ScoringHook] = None,
        session_duration: timedelta = timedelta(minutes=60),
        extension: timedelta = timedelta(minutes=30),
        max_extensions: int = 3,
        max_concurrent_sessions: int = 10,
        max_teardown_attempts: int = 5,
        default_network_mode: NetworkMode = NetworkMode.NAT,
        public_host: str = "127.0.0.1",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.allocator = allocator
        self.hypervisor = hypervisor
        self.flag_service = flag_service
        self.vpn_issuer = vpn_issuer
        self.scoring_hook = scoring_hook or NullScoringHook()

        self.session_duration = session_duration
        self.extension = extension
        self.max_extensions = max_extensions
        self.max_concurrent_sessions = max_concurrent_sessions
        self.max_teardown_attempts = max_teardown_attempts
        self.default_network_mode = default_network_mode
        self.public_host = public_host
        self._clock = clock

        self._slot_lock = asyncio.Lock()
        self._session_locks: Dict[str, _SessionLock] = {}
        self._listeners: List[Listener] = []

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """
        Serialize work on one session.

        The entry lives only while some coroutine holds or awaits it, so
        unknown ids and finished sessions leave nothing behind.
        """
        entry = self._session_locks.get(session_id)
        if entry is None:
            entry = self._session_locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._session_locks[session_id]

    def now(self) -> datetime:
        """Current time on the manager's clock."""
        return self._clock()

    def add_listener(self, listener: Listener) -> None:
        """Subscribe to lifecycle events. Listener errors are logged, never raised."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, lab_id: str) -> LabSession:
        """
        Start a lab session for a user.

        Args:
            user_id: Learner starting the lab
            lab_id: Catalog lab to boot

        Returns:
            The running session, or the terminal record if it was stopped
            while booting

        Raises:
            NotFoundError: Unknown or inactive lab
            ConflictError: The user already has a starting or running session
            AllocationExhausted: No network resources or host capacity
            BootTimeoutError: The VM never became reachable
            HypervisorError: The VM could not be created or started
        """
        lab = await self.repository.get_lab(lab_id)
        if lab is None or not lab.is_active:
            raise NotFoundError(f"Lab {lab_id} not found")

        now = self._clock()
        session = LabSession(
            user_id=user_id,
            lab_id=lab_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_duration,
        )
        session.instance_id = domain_name(session.id)

        async with self._slot_lock:
            if await self.repository.count_active() >= self.max_concurrent_sessions:
                raise AllocationExhausted("Host is at its concurrent session limit")
            await self.repository.claim_slot(session)

        logger.info(
            "Starting lab session",
            session_id=session.id,
            user_id=user_id,
            lab_id=lab_id,
        )

        try:
            await self.repository.increment_lab_stats(lab_id, total_sessions=1)
            await self._refresh_active_gauge()
            await self._provision(session, lab)
        except StartAborted as aborted:
            logger.info("Session stopped while starting", session_id=session.id)
            await self._discard_partial(session)
            return aborted.session or session
        except Exception as e:
            await self._fail_start(session, e)
            raise

        SESSIONS_STARTED.labels(lab_id=lab_id).inc()
        await self._emit(EventType.STARTED, session, expires_at=session.expires_at.isoformat())
        logger.info(
            "Lab session running",
            session_id=session.id,
            instance_id=session.instance_id,
            expires_at=session.expires_at.isoformat(),
            warnings=len(session.warnings),
        )
        return session

    async def _provision(self, session: LabSession, lab: Lab) -> None:
        mode = lab.network_mode or self.default_network_mode
        session.network = self.allocator.allocate(session.id, session.user_id, mode)
        await self._checkpoint(session)

        mac = mac_address(session.id)
        await self.hypervisor.clone_from_template(
            lab.base_image,
            session.instance_id,
            lab.sizing,
            session.network,
            mac,
        )
        await self.hypervisor.start(session.instance_id)

        if mode == NetworkMode.NAT:
            address, ssh_port = "127.0.0.1", session.network.ssh_port
            await self.hypervisor.wait_for_port(address, ssh_port)
        else:
            address = await self.hypervisor.get_address(
                session.instance_id, mac, expected_ip=session.network.vm_ip,
            )
            ssh_port = 22

        # Recorded before injection so the session stays scoreable either way
        session.flags = self.flag_service.generate(session.id, lab)
        await self._checkpoint(session)

        try:
            await self.flag_service.inject(
                address,
                ssh_port,
                lab.default_credentials,
                session.flags,
                candidate_paths(lab),
                root_credentials=lab.root_credentials,
            )
        except InjectionFailure as e:
            session.record_error(
                ErrorKind.FLAG_INJECTION_FAILED, str(e), fatal=False, at=self._clock(),
            )
            logger.warning(
                "Flag injection failed, session continues",
                session_id=session.id,
                error=str(e),
            )

        async with self._session_lock(session.id):
            current = await self.repository.get(session.id)
            if current is None or current.status != SessionStatus.STARTING:
                raise StartAborted(current)

            now = self._clock()
            self._transition(session, SessionStatus.RUNNING)
            session.started_at = now
            session.last_activity = now
            session.expires_at = now + self.session_duration
            session.connection = self._connection_info(session, lab, address)
            await self.repository.save(session)

    async def _checkpoint(self, session: LabSession) -> None:
        """Persist start progress unless the session was stopped meanwhile."""
        async with self._session_lock(session.id):
            current = await self.repository.get(session.id)
            if current is None or current.status != SessionStatus.STARTING:
                raise StartAborted(current)
            await self.repository.save(session)

    async def _fail_start(self, session: LabSession, exc: Exception) -> None:
        if isinstance(exc, BootTimeoutError):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, AllocationExhausted):
            kind = ErrorKind.NETWORK_ERROR
        else:
            kind = ErrorKind.VM_START_FAILED

        logger.error(
            "Lab session failed to start",
            session_id=session.id,
            lab_id=session.lab_id,
            kind=kind.value,
            error=str(exc),
        )

        async with self._session_lock(session.id):
            current = await self.repository.get(session.id)
            if current is not None and current.status != SessionStatus.STARTING:
                # A concurrent stop owns the teardown
                await self._discard_partial(session)
                return

            now = self._clock()
            session.record_error(kind, str(exc), at=now)
            self._transition(session, SessionStatus.FAILED)
            session.stopped_at = now
            session.stop_reason = "start_failed"
            await self.repository.save(session)

            await self._teardown(session)
            await self.repository.save(session)

        SESSIONS_FAILED.labels(lab_id=session.lab_id, reason=kind.value).inc()
        await self._refresh_active_gauge()
        await self._emit(EventType.FAILED, session, kind=kind.value, error=str(exc))

    async def _discard_partial(self, session: LabSession) -> None:
        """Best-effort removal of what a start created."""
        try:
            await self.hypervisor.stop(session.instance_id)
            await self.hypervisor.delete(session.instance_id)
        except Exception as e:
            logger.warning(
                "Could not remove partially started VM",
                session_id=session.id,
                error=str(e),
            )
        self.allocator.release(session.id)

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    async def submit_flag(
        self,
        session_id: str,
        flag_type: Union[FlagType, str],
        value: str,
    ) -> SubmissionResult:
        """
        Validate a submitted flag.

        Raises:
            NotFoundError: Unknown session
            ExpiredError: The session is not running or past its deadline
            AlreadySubmittedError: That flag was already accepted
            ValueError: Unknown flag type
        """
        flag_type = FlagType(flag_type)
        started = time.monotonic()

        async with self._session_lock(session_id):
            session = await self._load(session_id)
            now = self._clock()

            if session.status != SessionStatus.RUNNING or session.is_expired(now):
                raise ExpiredError(f"Session {session_id} is not accepting submissions")

            slot = session.flags.get(flag_type)
            if slot is None:
                raise NotFoundError(f"Session {session_id} has no {flag_type.value} flag")

            submitted = value.strip()
            correct = secrets.compare_digest(submitted.encode(), slot.expected.encode())
            # A wrong guess at a solved flag is still audited as a rejection
            if correct and slot.is_correct:
                raise AlreadySubmittedError(f"{flag_type.value} flag already submitted")

            slot.attempts += 1
            session.last_activity = now
            if correct:
                slot.is_correct = True
                slot.submitted_at = now
                slot.points_awarded = slot.points
            completed = correct and session.is_completed
            await self.repository.save(session)

            await self.repository.add_submission(FlagSubmission(
                user_id=session.user_id,
                session_id=session.id,
                lab_id=session.lab_id,
                flag_type=flag_type,
                submitted_value=submitted,
                expected_value=slot.expected,
                is_correct=correct,
                points_awarded=slot.points if correct else 0,
                response_time_ms=int((time.monotonic() - started) * 1000),
                attempt_number=slot.attempts,
                submitted_at=now,
            ))

        await self.repository.increment_lab_stats(
            session.lab_id,
            flag_submissions=1,
            correct_submissions=int(correct),
            completions=int(completed),
        )
        FLAG_SUBMISSIONS.labels(
            flag_type=flag_type.value,
            outcome="correct" if correct else "incorrect",
        ).inc()

        if not correct:
            await self._emit(EventType.FLAG_REJECTED, session, flag_type=flag_type.value)
            return SubmissionResult(
                accepted=False,
                flag_type=flag_type,
                points=0,
                flags_found=session.flags_found,
                total_points=session.total_points,
                completed=session.is_completed,
                message="Incorrect flag",
            )

        result = SubmissionResult(
            accepted=True,
            flag_type=flag_type,
            points=slot.points,
            flags_found=session.flags_found,
            total_points=session.total_points,
            completed=completed,
            message=f"Correct {flag_type.value} flag",
        )

        try:
            scoring = await self.scoring_hook.on_flag_accepted(
                session.user_id, session.lab_id, flag_type, slot.points,
            )
            result.new_badges = scoring.new_badges
            result.ranking = scoring.ranking
        except Exception as e:
            logger.error(
                "Scoring hook failed",
                session_id=session_id,
                flag_type=flag_type.value,
                error=str(e),
            )

        logger.info(
            "Flag accepted",
            session_id=session_id,
            user_id=session.user_id,
            flag_type=flag_type.value,
            points=slot.points,
        )
        await self._emit(
            EventType.FLAG_ACCEPTED, session, flag_type=flag_type.value, points=slot.points,
        )
        if completed:
            await self._emit(EventType.COMPLETED, session, total_points=session.total_points)
        return result

    # ------------------------------------------------------------------
    # Extend / touch
    # ------------------------------------------------------------------

    async def extend_session(self, session_id: str, minutes: Optional[int] = None) -> LabSession:
        """
        Push a running session's deadline back.

        Raises:
            ExpiredError: The session is not running
            LimitExceededError: All extensions are used up
        """
        if minutes is not None and minutes <= 0:
            raise ValueError("Extension must be a positive number of minutes")
        delta = timedelta(minutes=minutes) if minutes else self.extension

        async with self._session_lock(session_id):
            session = await self._load(session_id)
            now = self._clock()
            if session.status != SessionStatus.RUNNING or session.is_expired(now):
                raise ExpiredError(f"Session {session_id} is not running")
            if session.extension_count >= self.max_extensions:
                raise LimitExceededError(
                    f"Session already extended {session.extension_count} times"
                )

            session.expires_at += delta
            session.extension_count += 1
            session.last_activity = now
            await self.repository.save(session)

        logger.info(
            "Session extended",
            session_id=session_id,
            expires_at=session.expires_at.isoformat(),
            extension_count=session.extension_count,
        )
        await self._emit(
            EventType.EXTENDED,
            session,
            expires_at=session.expires_at.isoformat(),
            extension_count=session.extension_count,
        )
        return session

    async def touch(self, session_id: str) -> LabSession:
        """Record learner activity."""
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if session.is_active:
                session.last_activity = self._clock()
                await self.repository.save(session)
            return session

    # ------------------------------------------------------------------
    # Stop / teardown
    # ------------------------------------------------------------------

    async def stop_session(self, session_id: str, reason: str = "user_requested") -> LabSession:
        """
        Stop a session and release everything it holds.

        Idempotent: terminal sessions are returned unchanged. Concurrent
        callers serialize on the session lock, so only one of them runs
        the hypervisor teardown.
        """
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if session.status in TERMINAL_STATUSES:
                return session
            if session.status == SessionStatus.STARTING and reason == EXPIRED_REASON:
                await self._fail_expired_start(session)
            else:
                await self._stop_locked(session, reason)

        await self._after_stop(session)
        return session

    def teardown_exhausted(self, session: LabSession) -> bool:
        """True once automatic teardown retries have been used up."""
        return (
            not session.resources_released
            and session.teardown_attempts >= self.max_teardown_attempts
        )

    async def reclaim_session(self, session_id: str, force: bool = False) -> LabSession:
        """
        Finish an interrupted teardown.

        Used by the cleanup scheduler for sessions stuck in `stopping` and
        terminal sessions whose resources were never released. Terminal
        sessions that used up their teardown attempts are left for an
        operator unless `force` is set.
        """
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if session.status == SessionStatus.STOPPING:
                await self._stop_locked(session, session.stop_reason or "reclaimed")
                stopped = True
            elif session.is_terminal and not session.resources_released:
                if self.teardown_exhausted(session) and not force:
                    return session
                await self._teardown(session)
                await self.repository.save(session)
                stopped = False
            else:
                return session

        logger.info(
            "Session resources reclaimed",
            session_id=session_id,
            released=session.resources_released,
        )
        if stopped:
            await self._after_stop(session)
        return session

    async def _stop_locked(self, session: LabSession, reason: str) -> None:
        """Run the stop path. Caller holds the session lock."""
        now = self._clock()
        if session.status != SessionStatus.STOPPING:
            self._transition(session, SessionStatus.STOPPING)
            session.teardown_started_at = now
            session.stop_reason = reason
            await self.repository.save(session)

        logger.info("Stopping lab session", session_id=session.id, reason=reason)
        await self._teardown(session)

        now = self._clock()
        final = SessionStatus.EXPIRED if session.stop_reason == EXPIRED_REASON else SessionStatus.STOPPED
        self._transition(session, final)
        session.stopped_at = now
        session.duration_seconds = int(
            (now - (session.started_at or session.created_at)).total_seconds()
        )
        await self.repository.save(session)

    async def _fail_expired_start(self, session: LabSession) -> None:
        """A start still in progress at the deadline ends failed. Caller holds the lock."""
        now = self._clock()
        session.record_error(
            ErrorKind.TIMEOUT, "Session expired before it finished starting", at=now,
        )
        self._transition(session, SessionStatus.FAILED)
        session.stopped_at = now
        session.stop_reason = EXPIRED_REASON
        await self.repository.save(session)

        logger.warning("Session expired while starting", session_id=session.id)
        await self._teardown(session)
        await self.repository.save(session)
        SESSIONS_FAILED.labels(lab_id=session.lab_id, reason=ErrorKind.TIMEOUT.value).inc()

    async def _after_stop(self, session: LabSession) -> None:
        SESSIONS_ENDED.labels(reason=session.stop_reason or "unknown").inc()
        await self._refresh_active_gauge()
        if session.status == SessionStatus.FAILED:
            event = EventType.FAILED
        elif session.status == SessionStatus.EXPIRED:
            event = EventType.EXPIRED
        else:
            event = EventType.STOPPED
        await self._emit(
            event,
            session,
            reason=session.stop_reason,
            duration_seconds=session.duration_seconds,
            resources_released=session.resources_released,
            **session.stats(),
        )
        logger.info(
            "Lab session stopped",
            session_id=session.id,
            status=session.status.value,
            reason=session.stop_reason,
            resources_released=session.resources_released,
        )

    async def _teardown(self, session: LabSession) -> None:
        """
        Release a session's resources in a fixed order.

        Every step runs even when an earlier one fails; failures are
        appended to the session's error log.
        """
        steps = []
        if session.instance_id:
            steps.append(("vm_stop", ErrorKind.VM_STOP_FAILED, lambda: self.hypervisor.stop(session.instance_id)))
            steps.append(("vm_delete", ErrorKind.TEARDOWN_FAILED, lambda: self.hypervisor.delete(session.instance_id)))
        steps.append(("network_release", ErrorKind.NETWORK_ERROR, lambda: self._release_network(session)))
        if self.vpn_issuer is not None:
            steps.append(("vpn_revoke", ErrorKind.NETWORK_ERROR, lambda: self.vpn_issuer.revoke(session.id)))

        session.teardown_attempts += 1
        failed = False
        for step, kind, action in steps:
            try:
                await action()
            except Exception as e:
                failed = True
                session.record_error(kind, f"{step}: {e}", at=self._clock())
                TEARDOWN_STEP_FAILURES.labels(step=step).inc()
                logger.error(
                    "Teardown step failed",
                    session_id=session.id,
                    step=step,
                    error=str(e),
                )

        session.resources_released = not failed
        if self.teardown_exhausted(session):
            logger.error(
                "Teardown attempts exhausted, leaving session for an operator",
                session_id=session.id,
                instance_id=session.instance_id,
                attempts=session.teardown_attempts,
            )

    async def _release_network(self, session: LabSession) -> None:
        self.allocator.release(session.id)

    # ------------------------------------------------------------------
    # Queries and extras
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> LabSession:
        return await self._load(session_id)

    async def get_active_session(self, user_id: str) -> Optional[LabSession]:
        return await self.repository.find_active_for_user(user_id)

    async def list_user_sessions(self, user_id: str, limit: int = 20) -> List[LabSession]:
        return await self.repository.list_for_user(user_id, limit=limit)

    async def list_submissions(self, session_id: str) -> List[FlagSubmission]:
        await self._load(session_id)
        return await self.repository.list_submissions(session_id)

    async def issue_network_profile(self, session_id: str) -> VpnProfile:
        """Issue the VPN profile for a running bridge-mode session."""
        session = await self._load(session_id)
        now = self._clock()
        if session.status != SessionStatus.RUNNING or session.is_expired(now):
            raise ExpiredError(f"Session {session_id} is not running")
        if session.network is None or session.network.mode != NetworkMode.BRIDGE:
            raise ValueError("VPN profiles are only issued for bridge-mode sessions")
        if self.vpn_issuer is None:
            raise VpnUnavailableError("VPN issuing is not configured")

        return await self.vpn_issuer.issue(
            session.user_id,
            session.id,
            session.network,
            session.expires_at - now,
        )

    async def fetch_network_profile(self, session_id: str) -> VpnProfile:
        await self._load(session_id)
        if self.vpn_issuer is None:
            raise VpnUnavailableError("VPN issuing is not configured")
        return await self.vpn_issuer.fetch(session_id)

    async def snapshot_session(self, session_id: str, name: Optional[str] = None) -> str:
        session = await self._load(session_id)
        if session.status != SessionStatus.RUNNING:
            raise ExpiredError(f"Session {session_id} is not running")
        name = name or f"snap-{int(self._clock().timestamp())}"
        return await self.hypervisor.snapshot(session.instance_id, name)

    async def import_lab_template(self, lab_id: str) -> str:
        """Copy a lab's image into the template store and record the path."""
        lab = await self.repository.get_lab(lab_id)
        if lab is None:
            raise NotFoundError(f"Lab {lab_id} not found")
        path = await self.hypervisor.import_template(lab.image_path, lab.slug, lab.image_checksum)
        await self.repository.set_lab_template(lab_id, str(path))
        return str(path)

    # ------------------------------------------------------------------
    # Restart reconciliation
    # ------------------------------------------------------------------

    async def recover(self) -> int:
        """
        Rebuild in-memory state after a restart.

        Re-reserves allocations still held by live or unreleased sessions and
        fails sessions whose start was interrupted.

        Returns:
            Number of orphaned starts that were failed
        """
        held = await self.repository.list_by_status(list(SessionStatus))
        for session in held:
            if session.network is None or session.status == SessionStatus.STARTING:
                continue
            if session.is_terminal and session.resources_released:
                continue
            try:
                self.allocator.restore(session.id, session.network)
            except AllocationExhausted as e:
                logger.error("Could not restore allocation", session_id=session.id, error=str(e))

        orphaned = [s for s in held if s.status == SessionStatus.STARTING]
        for session in orphaned:
            async with self._session_lock(session.id):
                session.record_error(
                    ErrorKind.TIMEOUT, "Start interrupted by a restart", at=self._clock(),
                )
                self._transition(session, SessionStatus.FAILED)
                session.stopped_at = self._clock()
                session.stop_reason = "orphaned"
                await self.repository.save(session)
                await self._teardown(session)
                await self.repository.save(session)
            logger.warning("Orphaned session failed", session_id=session.id)

        await self._refresh_active_gauge()
        logger.info("Session state recovered", sessions=len(held), orphaned=len(orphaned))
        return len(orphaned)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, session_id: str) -> LabSession:
        session = await self.repository.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    @staticmethod
    def _transition(session: LabSession, target: SessionStatus) -> None:
        if target not in TRANSITIONS[session.status]:
            raise InvalidTransitionError(
                f"Cannot move session {session.id} from {session.status.value} to {target.value}"
            )
        session.status = target

    def _connection_info(self, session: LabSession, lab: Lab, address: str) -> Dict[str, object]:
        creds = lab.default_credentials
        network = session.network
        if network.mode == NetworkMode.NAT:
            return {
                "mode": network.mode.value,
                "host": self.public_host,
                "ssh_port": network.ssh_port,
                "web_port": network.web_port,
                "ssh_command": f"ssh {creds.username}@{self.public_host} -p {network.ssh_port}",
                "web_url": f"http://{self.public_host}:{network.web_port}",
                "username": creds.username,
                "password": creds.password,
            }
        return {
            "mode": network.mode.value,
            "host": address,
            "subnet": network.cidr,
            "gateway": network.gateway,
            "ssh_command": f"ssh {creds.username}@{address}",
            "web_url": f"http://{address}",
            "username": creds.username,
            "password": creds.password,
            "vpn_required": True,
        }

    async def _refresh_active_gauge(self) -> None:
        ACTIVE_SESSIONS.set(await self.repository.count_active())

    async def _emit(self, event_type: EventType, session: LabSession, **payload) -> None:
        event = SessionEvent(
            type=event_type,
            session_id=session.id,
            user_id=session.user_id,
            lab_id=session.lab_id,
            payload=payload,
            timestamp=self._clock(),
        )
        for listener in self._listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Session listener failed", event=event_type.value)
