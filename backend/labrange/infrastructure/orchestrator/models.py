"""
Orchestrator Models - Data classes for labs, lab sessions and flag submissions
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SessionStatus(str, Enum):
    """Lab session lifecycle statuses."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    EXPIRED = "expired"


ACTIVE_STATUSES = frozenset({SessionStatus.STARTING, SessionStatus.RUNNING})
TERMINAL_STATUSES = frozenset({
    SessionStatus.STOPPED,
    SessionStatus.FAILED,
    SessionStatus.EXPIRED,
})

# Legal lifecycle transitions. Expiry shares the stop path, so
# running -> expired happens via stopping. A start that runs out of
# time goes straight to failed.
TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.STARTING: frozenset({
        SessionStatus.RUNNING,
        SessionStatus.STOPPING,
        SessionStatus.FAILED,
    }),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.STOPPING,
        SessionStatus.FAILED,
    }),
    SessionStatus.STOPPING: frozenset({
        SessionStatus.STOPPED,
        SessionStatus.EXPIRED,
    }),
    SessionStatus.STOPPED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.EXPIRED: frozenset(),
}


class NetworkMode(str, Enum):
    """How the learner reaches the session VM."""
    NAT = "nat"        # host port forwards
    BRIDGE = "bridge"  # per-session subnet reached over VPN


class FlagType(str, Enum):
    """The two flags hidden in every lab."""
    USER = "user"
    ROOT = "root"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    INSANE = "insane"


class ErrorKind(str, Enum):
    """Categories recorded in a session's error log."""
    VM_START_FAILED = "vm_start_failed"
    VM_STOP_FAILED = "vm_stop_failed"
    FLAG_INJECTION_FAILED = "flag_injection_failed"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    TEARDOWN_FAILED = "teardown_failed"


class EventType(str, Enum):
    """Session lifecycle events delivered to listeners."""
    STARTED = "session.started"
    FAILED = "session.failed"
    FLAG_ACCEPTED = "session.flag_accepted"
    FLAG_REJECTED = "session.flag_rejected"
    COMPLETED = "session.completed"
    EXTENDED = "session.extended"
    STOPPED = "session.stopped"
    EXPIRED = "session.expired"


DEFAULT_FLAG_PATTERN = "FLAG{${type}_${lab}_${token}}"


@dataclass
class Credentials:
    """Guest account used for flag injection."""
    username: str
    password: Optional[str] = None
    key_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "password": self.password,
            "key_path": self.key_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credentials":
        return cls(
            username=data["username"],
            password=data.get("password"),
            key_path=data.get("key_path"),
        )


@dataclass
class FlagTemplate:
    """How a lab's flag of one type is valued, shaped and placed."""
    points: int
    paths: List[str]
    pattern: str = DEFAULT_FLAG_PATTERN

    def __post_init__(self) -> None:
        if "${token}" not in self.pattern:
            raise ValueError("Flag pattern must contain ${token}")
        if not self.paths:
            raise ValueError("Flag template needs at least one path")

    def to_dict(self) -> Dict[str, Any]:
        return {"points": self.points, "paths": list(self.paths), "pattern": self.pattern}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagTemplate":
        return cls(
            points=data["points"],
            paths=list(data["paths"]),
            pattern=data.get("pattern", DEFAULT_FLAG_PATTERN),
        )


def default_flag_templates(username: str = "user") -> Dict[FlagType, FlagTemplate]:
    return {
        FlagType.USER: FlagTemplate(points=25, paths=[f"/home/{username}/user.txt"]),
        FlagType.ROOT: FlagTemplate(points=50, paths=["/root/root.txt"]),
    }


@dataclass
class VMSizing:
    """Virtual hardware for a lab VM."""
    ram_mb: int = 2048
    vcpus: int = 2
    disk_gb: int = 10

    def to_dict(self) -> Dict[str, Any]:
        return {"ram_mb": self.ram_mb, "vcpus": self.vcpus, "disk_gb": self.disk_gb}


@dataclass
class LabStats:
    """Per-lab counters. Only ever incremented."""
    total_sessions: int = 0
    completions: int = 0
    flag_submissions: int = 0
    correct_submissions: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_sessions": self.total_sessions,
            "completions": self.completions,
            "flag_submissions": self.flag_submissions,
            "correct_submissions": self.correct_submissions,
        }


@dataclass
class Lab:
    """
    A catalog entry: a VM template plus its flag configuration.

    Read-only to the orchestrator apart from stat increments.
    """
    id: str
    slug: str
    name: str
    image_path: str
    default_credentials: Credentials
    difficulty: Difficulty = Difficulty.EASY
    category: str = "general"
    version: str = "1.0"
    image_checksum: Optional[str] = None
    template_path: Optional[str] = None
    flags: Dict[FlagType, FlagTemplate] = field(default_factory=default_flag_templates)
    sizing: VMSizing = field(default_factory=VMSizing)
    network_mode: Optional[NetworkMode] = None  # None means the configured default
    root_credentials: Optional[Credentials] = None
    is_active: bool = True
    stats: LabStats = field(default_factory=LabStats)

    @property
    def base_image(self) -> str:
        """Template disk that session overlays are backed by."""
        return self.template_path or self.image_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "difficulty": self.difficulty.value,
            "category": self.category,
            "version": self.version,
            "image_path": self.image_path,
            "image_checksum": self.image_checksum,
            "template_path": self.template_path,
            "flags": {t.value: f.to_dict() for t, f in self.flags.items()},
            "sizing": self.sizing.to_dict(),
            "network_mode": self.network_mode.value if self.network_mode else None,
            "is_active": self.is_active,
            "stats": self.stats.to_dict(),
        }


@dataclass
class NetworkAllocation:
    """Network resources held by one session until teardown."""
    mode: NetworkMode
    ssh_port: Optional[int] = None
    web_port: Optional[int] = None
    subnet_index: Optional[int] = None
    network: Optional[str] = None
    netmask: Optional[str] = None
    gateway: Optional[str] = None
    vm_ip: Optional[str] = None
    cidr: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "ssh_port": self.ssh_port,
            "web_port": self.web_port,
            "subnet_index": self.subnet_index,
            "network": self.network,
            "netmask": self.netmask,
            "gateway": self.gateway,
            "vm_ip": self.vm_ip,
            "cidr": self.cidr,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkAllocation":
        return cls(**{**data, "mode": NetworkMode(data["mode"])})


@dataclass
class FlagSlot:
    """Expected value and scoring state of one flag in one session."""
    flag_type: FlagType
    expected: str
    points: int
    is_correct: bool = False
    submitted_at: Optional[datetime] = None
    points_awarded: int = 0
    attempts: int = 0
    path: Optional[str] = None  # where injection actually wrote it

    def to_dict(self, include_secret: bool = True) -> Dict[str, Any]:
        data = {
            "flag_type": self.flag_type.value,
            "points": self.points,
            "is_correct": self.is_correct,
            "submitted_at": _iso(self.submitted_at),
            "points_awarded": self.points_awarded,
            "attempts": self.attempts,
            "path": self.path,
        }
        if include_secret:
            data["expected"] = self.expected
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlagSlot":
        return cls(
            flag_type=FlagType(data["flag_type"]),
            expected=data["expected"],
            points=data["points"],
            is_correct=data.get("is_correct", False),
            submitted_at=_parse(data.get("submitted_at")),
            points_awarded=data.get("points_awarded", 0),
            attempts=data.get("attempts", 0),
            path=data.get("path"),
        )


@dataclass
class SessionError:
    """One entry in a session's append-only error log."""
    kind: ErrorKind
    message: str
    fatal: bool = True
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionError":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data["message"],
            fatal=data.get("fatal", True),
            timestamp=_parse(data["timestamp"]),
        )


@dataclass
class LabSession:
    """
    One learner's attempt at one lab, backed by one ephemeral VM.

    Mutated only by the session manager.
    """
    user_id: str
    lab_id: str
    id: str = field(default_factory=lambda: uuid4().hex[:16])
    status: SessionStatus = SessionStatus.STARTING
    instance_id: Optional[str] = None
    network: Optional[NetworkAllocation] = None
    connection: Dict[str, Any] = field(default_factory=dict)
    flags: Dict[FlagType, FlagSlot] = field(default_factory=dict)

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    teardown_started_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    errors: List[SessionError] = field(default_factory=list)
    extension_count: int = 0
    resources_released: bool = False
    teardown_attempts: int = 0
    stop_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def flags_found(self) -> int:
        return sum(1 for slot in self.flags.values() if slot.is_correct)

    @property
    def total_points(self) -> int:
        return sum(slot.points_awarded for slot in self.flags.values())

    @property
    def is_completed(self) -> bool:
        return bool(self.flags) and all(slot.is_correct for slot in self.flags.values())

    @property
    def warnings(self) -> List[str]:
        return [e.message for e in self.errors if not e.fatal]

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def time_remaining(self, now: Optional[datetime] = None) -> timedelta:
        if self.expires_at is None or not self.is_active:
            return timedelta(0)
        return max(self.expires_at - (now or utcnow()), timedelta(0))

    def record_error(
        self,
        kind: ErrorKind,
        message: str,
        fatal: bool = True,
        at: Optional[datetime] = None,
    ) -> SessionError:
        entry = SessionError(kind=kind, message=message, fatal=fatal, timestamp=at or utcnow())
        self.errors.append(entry)
        return entry

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Progress summary shown to the learner."""
        end = self.stopped_at or now or utcnow()
        minutes = int((end - self.started_at).total_seconds() // 60) if self.started_at else 0
        return {
            "total_points": self.total_points,
            "flags_found": self.flags_found,
            "completion_percentage": round(self.flags_found / len(self.flags) * 100) if self.flags else 0,
            "duration_minutes": minutes,
        }

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert session to dictionary representation."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "lab_id": self.lab_id,
            "status": self.status.value,
            "instance_id": self.instance_id,
            "network": self.network.to_dict() if self.network else None,
            "connection": self.connection,
            "flags": {
                t.value: slot.to_dict(include_secret=include_secrets)
                for t, slot in self.flags.items()
            },
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "last_activity": _iso(self.last_activity),
            "expires_at": _iso(self.expires_at),
            "stopped_at": _iso(self.stopped_at),
            "teardown_started_at": _iso(self.teardown_started_at),
            "duration_seconds": self.duration_seconds,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": self.warnings,
            "extension_count": self.extension_count,
            "resources_released": self.resources_released,
            "teardown_attempts": self.teardown_attempts,
            "stop_reason": self.stop_reason,
            "stats": self.stats(),
        }


@dataclass
class FlagSubmission:
    """Append-only record of one flag attempt."""
    user_id: str
    session_id: str
    lab_id: str
    flag_type: FlagType
    submitted_value: str
    expected_value: str
    is_correct: bool
    points_awarded: int = 0
    response_time_ms: int = 0
    attempt_number: int = 1
    id: str = field(default_factory=lambda: uuid4().hex)
    submitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "lab_id": self.lab_id,
            "flag_type": self.flag_type.value,
            "submitted_value": self.submitted_value,
            "is_correct": self.is_correct,
            "points_awarded": self.points_awarded,
            "response_time_ms": self.response_time_ms,
            "attempt_number": self.attempt_number,
            "submitted_at": self.submitted_at.isoformat(),
        }


@dataclass
class ScoringResult:
    """What the external scoring system reported back."""
    new_badges: List[str] = field(default_factory=list)
    ranking: Optional[int] = None


@dataclass
class SubmissionResult:
    """Outcome of a flag submission returned to the caller."""
    accepted: bool
    flag_type: FlagType
    points: int
    flags_found: int
    total_points: int
    completed: bool
    message: str
    new_badges: List[str] = field(default_factory=list)
    ranking: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "flag_type": self.flag_type.value,
            "points": self.points,
            "flags_found": self.flags_found,
            "total_points": self.total_points,
            "completed": self.completed,
            "message": self.message,
            "new_badges": self.new_badges,
            "ranking": self.ranking,
        }


@dataclass
class SessionEvent:
    """Lifecycle notification for listeners (progress tracking, audit)."""
    type: EventType
    session_id: str
    user_id: str
    lab_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "lab_id": self.lab_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
