"""
Session Repository - persistence for labs, sessions and flag submissions

Two implementations share one contract: an in-memory store for tests and
single-process use, and a SQLAlchemy store. Both make the user-slot claim
atomic; the SQL store additionally relies on a partial unique index.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from labrange.infrastructure.database import DatabaseManager

from .exceptions import ConflictError, NotFoundError
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Credentials,
    Difficulty,
    FlagSlot,
    FlagSubmission,
    FlagTemplate,
    FlagType,
    Lab,
    LabSession,
    LabStats,
    NetworkAllocation,
    NetworkMode,
    SessionError,
    SessionStatus,
    VMSizing,
)
from .tables import FlagSubmissionRow, LabRow, LabSessionRow

logger = structlog.get_logger(__name__)

LAB_COUNTERS = ("total_sessions", "completions", "flag_submissions", "correct_submissions")


class SessionRepository(ABC):
    """Storage contract used by the session manager."""

    # Labs

    @abstractmethod
    async def add_lab(self, lab: Lab) -> None: ...

    @abstractmethod
    async def get_lab(self, lab_id: str) -> Optional[Lab]: ...

    @abstractmethod
    async def list_labs(self, active_only: bool = True) -> List[Lab]: ...

    @abstractmethod
    async def set_lab_template(self, lab_id: str, template_path: str) -> None: ...

    @abstractmethod
    async def increment_lab_stats(self, lab_id: str, **deltas: int) -> None: ...

    # Sessions

    @abstractmethod
    async def claim_slot(self, session: LabSession) -> None:
        """
        Insert a starting session unless the user already holds an active one.

        Raises:
            ConflictError: The user has a starting or running session
        """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[LabSession]: ...

    @abstractmethod
    async def save(self, session: LabSession) -> None: ...

    @abstractmethod
    async def find_active_for_user(self, user_id: str) -> Optional[LabSession]: ...

    @abstractmethod
    async def list_for_user(self, user_id: str, limit: int = 20) -> List[LabSession]: ...

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[SessionStatus]) -> List[LabSession]: ...

    @abstractmethod
    async def count_active(self) -> int: ...

    @abstractmethod
    async def purge_terminal(self, before: datetime) -> int:
        """Delete released terminal sessions that stopped before the cutoff."""

    # Submissions

    @abstractmethod
    async def add_submission(self, submission: FlagSubmission) -> None: ...

    @abstractmethod
    async def list_submissions(self, session_id: str) -> List[FlagSubmission]: ...


# =============================================================================
# In-memory
# =============================================================================

class InMemorySessionRepository(SessionRepository):
    """
    Dictionary-backed repository.

    Records are deep-copied on the way in and out so callers cannot
    mutate stored state without calling save().
    """

    def __init__(self):
        self._labs: Dict[str, Lab] = {}
        self._sessions: Dict[str, LabSession] = {}
        self._submissions: List[FlagSubmission] = []
        self._lock = asyncio.Lock()

    async def add_lab(self, lab: Lab) -> None:
        self._labs[lab.id] = copy.deepcopy(lab)

    async def get_lab(self, lab_id: str) -> Optional[Lab]:
        lab = self._labs.get(lab_id)
        return copy.deepcopy(lab) if lab else None

    async def list_labs(self, active_only: bool = True) -> List[Lab]:
        return [
            copy.deepcopy(lab)
            for lab in self._labs.values()
            if lab.is_active or not active_only
        ]

    async def set_lab_template(self, lab_id: str, template_path: str) -> None:
        lab = self._labs.get(lab_id)
        if lab is None:
            raise NotFoundError(f"Lab {lab_id} not found")
        lab.template_path = template_path

    async def increment_lab_stats(self, lab_id: str, **deltas: int) -> None:
        lab = self._labs.get(lab_id)
        if lab is None:
            return
        for name, amount in deltas.items():
            if name not in LAB_COUNTERS:
                raise ValueError(f"Unknown lab counter: {name}")
            setattr(lab.stats, name, getattr(lab.stats, name) + amount)

    async def claim_slot(self, session: LabSession) -> None:
        async with self._lock:
            for existing in self._sessions.values():
                if existing.user_id == session.user_id and existing.is_active:
                    raise ConflictError(
                        f"User already has an active session ({existing.id})"
                    )
            self._sessions[session.id] = copy.deepcopy(session)

    async def get(self, session_id: str) -> Optional[LabSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def save(self, session: LabSession) -> None:
        self._sessions[session.id] = copy.deepcopy(session)

    async def find_active_for_user(self, user_id: str) -> Optional[LabSession]:
        for session in self._sessions.values():
            if session.user_id == user_id and session.is_active:
                return copy.deepcopy(session)
        return None

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[LabSession]:
        sessions = [s for s in self._sessions.values() if s.user_id == user_id]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return [copy.deepcopy(s) for s in sessions[:limit]]

    async def list_by_status(self, statuses: Iterable[SessionStatus]) -> List[LabSession]:
        wanted = set(statuses)
        return [copy.deepcopy(s) for s in self._sessions.values() if s.status in wanted]

    async def count_active(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    async def purge_terminal(self, before: datetime) -> int:
        doomed = [
            sid for sid, s in self._sessions.items()
            if s.is_terminal and s.resources_released
            and s.stopped_at is not None and s.stopped_at < before
        ]
        for session_id in doomed:
            del self._sessions[session_id]
        return len(doomed)

    async def add_submission(self, submission: FlagSubmission) -> None:
        self._submissions.append(copy.deepcopy(submission))

    async def list_submissions(self, session_id: str) -> List[FlagSubmission]:
        return [copy.deepcopy(s) for s in self._submissions if s.session_id == session_id]


# =============================================================================
# SQLAlchemy
# =============================================================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _lab_from_row(row: LabRow) -> Lab:
    return Lab(
        id=row.id,
        slug=row.slug,
        name=row.name,
        difficulty=Difficulty(row.difficulty),
        category=row.category,
        version=row.version,
        image_path=row.image_path,
        image_checksum=row.image_checksum,
        template_path=row.template_path,
        flags={FlagType(k): FlagTemplate.from_dict(v) for k, v in row.flags.items()},
        sizing=VMSizing(**row.sizing),
        network_mode=NetworkMode(row.network_mode) if row.network_mode else None,
        default_credentials=Credentials.from_dict(row.default_credentials),
        root_credentials=(
            Credentials.from_dict(row.root_credentials) if row.root_credentials else None
        ),
        is_active=row.is_active,
        stats=LabStats(**{name: getattr(row, name) or 0 for name in LAB_COUNTERS}),
    )


def _lab_to_row(lab: Lab) -> LabRow:
    return LabRow(
        id=lab.id,
        slug=lab.slug,
        name=lab.name,
        difficulty=lab.difficulty.value,
        category=lab.category,
        version=lab.version,
        image_path=lab.image_path,
        image_checksum=lab.image_checksum,
        template_path=lab.template_path,
        flags={t.value: f.to_dict() for t, f in lab.flags.items()},
        sizing=lab.sizing.to_dict(),
        network_mode=lab.network_mode.value if lab.network_mode else None,
        default_credentials=lab.default_credentials.to_dict(),
        root_credentials=lab.root_credentials.to_dict() if lab.root_credentials else None,
        is_active=lab.is_active,
        **lab.stats.to_dict(),
    )


def _session_values(session: LabSession) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "lab_id": session.lab_id,
        "status": session.status.value,
        "instance_id": session.instance_id,
        "network": session.network.to_dict() if session.network else None,
        "connection": session.connection,
        "flags": {t.value: slot.to_dict() for t, slot in session.flags.items()},
        "errors": [e.to_dict() for e in session.errors],
        "created_at": session.created_at,
        "started_at": session.started_at,
        "last_activity": session.last_activity,
        "expires_at": session.expires_at,
        "stopped_at": session.stopped_at,
        "teardown_started_at": session.teardown_started_at,
        "duration_seconds": session.duration_seconds,
        "extension_count": session.extension_count,
        "resources_released": session.resources_released,
        "teardown_attempts": session.teardown_attempts,
        "stop_reason": session.stop_reason,
    }


def _session_from_row(row: LabSessionRow) -> LabSession:
    return LabSession(
        id=row.id,
        user_id=row.user_id,
        lab_id=row.lab_id,
        status=SessionStatus(row.status),
        instance_id=row.instance_id,
        network=NetworkAllocation.from_dict(row.network) if row.network else None,
        connection=dict(row.connection or {}),
        flags={FlagType(k): FlagSlot.from_dict(v) for k, v in (row.flags or {}).items()},
        errors=[SessionError.from_dict(e) for e in (row.errors or [])],
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        last_activity=_aware(row.last_activity),
        expires_at=_aware(row.expires_at),
        stopped_at=_aware(row.stopped_at),
        teardown_started_at=_aware(row.teardown_started_at),
        duration_seconds=row.duration_seconds,
        extension_count=row.extension_count or 0,
        resources_released=bool(row.resources_released),
        teardown_attempts=row.teardown_attempts or 0,
        stop_reason=row.stop_reason,
    )


def _submission_from_row(row: FlagSubmissionRow) -> FlagSubmission:
    return FlagSubmission(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        lab_id=row.lab_id,
        flag_type=FlagType(row.flag_type),
        submitted_value=row.submitted_value,
        expected_value=row.expected_value,
        is_correct=row.is_correct,
        points_awarded=row.points_awarded,
        response_time_ms=row.response_time_ms,
        attempt_number=row.attempt_number,
        submitted_at=_aware(row.submitted_at),
    )


class SqlSessionRepository(SessionRepository):
    """Repository backed by the async SQLAlchemy engine."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def add_lab(self, lab: Lab) -> None:
        async with self.db.session() as session:
            await session.merge(_lab_to_row(lab))
            await session.commit()

    async def get_lab(self, lab_id: str) -> Optional[Lab]:
        async with self.db.session() as session:
            row = await session.get(LabRow, lab_id)
            return _lab_from_row(row) if row else None

    async def list_labs(self, active_only: bool = True) -> List[Lab]:
        stmt = select(LabRow).order_by(LabRow.name)
        if active_only:
            stmt = stmt.where(LabRow.is_active.is_(True))
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_lab_from_row(row) for row in rows]

    async def set_lab_template(self, lab_id: str, template_path: str) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                update(LabRow).where(LabRow.id == lab_id).values(template_path=template_path)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Lab {lab_id} not found")
            await session.commit()

    async def increment_lab_stats(self, lab_id: str, **deltas: int) -> None:
        values = {}
        for name, amount in deltas.items():
            if name not in LAB_COUNTERS:
                raise ValueError(f"Unknown lab counter: {name}")
            column = getattr(LabRow, name)
            values[name] = column + amount
        if not values:
            return
        async with self.db.session() as session:
            await session.execute(update(LabRow).where(LabRow.id == lab_id).values(**values))
            await session.commit()

    async def claim_slot(self, lab_session: LabSession) -> None:
        async with self.db.session() as session:
            existing = await session.execute(
                select(LabSessionRow.id).where(
                    LabSessionRow.user_id == lab_session.user_id,
                    LabSessionRow.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                raise ConflictError(f"User already has an active session ({existing_id})")

            session.add(LabSessionRow(**_session_values(lab_session)))
            try:
                await session.commit()
            except IntegrityError as e:
                # Lost the race against a concurrent claim
                await session.rollback()
                raise ConflictError("User already has an active session") from e

    async def get(self, session_id: str) -> Optional[LabSession]:
        async with self.db.session() as session:
            row = await session.get(LabSessionRow, session_id)
            return _session_from_row(row) if row else None

    async def save(self, lab_session: LabSession) -> None:
        async with self.db.session() as session:
            await session.merge(LabSessionRow(**_session_values(lab_session)))
            await session.commit()

    async def find_active_for_user(self, user_id: str) -> Optional[LabSession]:
        stmt = select(LabSessionRow).where(
            LabSessionRow.user_id == user_id,
            LabSessionRow.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
        async with self.db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _session_from_row(row) if row else None

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[LabSession]:
        stmt = (
            select(LabSessionRow)
            .where(LabSessionRow.user_id == user_id)
            .order_by(LabSessionRow.created_at.desc())
            .limit(limit)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_session_from_row(row) for row in rows]

    async def list_by_status(self, statuses: Iterable[SessionStatus]) -> List[LabSession]:
        stmt = select(LabSessionRow).where(
            LabSessionRow.status.in_([s.value for s in statuses])
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_session_from_row(row) for row in rows]

    async def count_active(self) -> int:
        stmt = select(func.count()).select_from(LabSessionRow).where(
            LabSessionRow.status.in_([s.value for s in ACTIVE_STATUSES])
        )
        async with self.db.session() as session:
            return (await session.execute(stmt)).scalar_one()

    async def purge_terminal(self, before: datetime) -> int:
        stmt = delete(LabSessionRow).where(
            LabSessionRow.status.in_([s.value for s in TERMINAL_STATUSES]),
            LabSessionRow.resources_released.is_(True),
            LabSessionRow.stopped_at < before,
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def add_submission(self, submission: FlagSubmission) -> None:
        async with self.db.session() as session:
            session.add(FlagSubmissionRow(
                id=submission.id,
                user_id=submission.user_id,
                session_id=submission.session_id,
                lab_id=submission.lab_id,
                flag_type=submission.flag_type.value,
                submitted_value=submission.submitted_value,
                expected_value=submission.expected_value,
                is_correct=submission.is_correct,
                points_awarded=submission.points_awarded,
                response_time_ms=submission.response_time_ms,
                attempt_number=submission.attempt_number,
                submitted_at=submission.submitted_at,
            ))
            await session.commit()

    async def list_submissions(self, session_id: str) -> List[FlagSubmission]:
        stmt = (
            select(FlagSubmissionRow)
            .where(FlagSubmissionRow.session_id == session_id)
            .order_by(FlagSubmissionRow.submitted_at)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_submission_from_row(row) for row in rows]
