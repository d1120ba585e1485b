"""
Pytest fixtures for lab session orchestration testing.

The hypervisor and the guest's SSH server are replaced with in-process
fakes; everything else (allocator, flag service, VPN issuer, repository,
session manager) is the real implementation.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import paramiko
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from labrange.infrastructure.orchestrator.exceptions import HypervisorError
from labrange.infrastructure.orchestrator.models import (
    Credentials,
    FlagType,
    Lab,
    NetworkMode,
    ScoringResult,
    default_flag_templates,
)
from labrange.infrastructure.orchestrator.repository import InMemorySessionRepository
from labrange.infrastructure.orchestrator.services.flag_service import FlagService
from labrange.infrastructure.orchestrator.services.network_allocator import NetworkAllocator
from labrange.infrastructure.orchestrator.services.session_manager import SessionManager
from labrange.infrastructure.orchestrator.services.vpn_issuer import VpnIssuer


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeHypervisor:
    """
    Records hypervisor calls and keeps a tiny domain table.

    `fail(op, exc)` makes an operation raise; `boot_gate` holds the
    reachability wait open until the test sets it.
    """

    def __init__(self):
        self.domains: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, Exception] = {}
        self.booting = asyncio.Event()
        self.boot_gate: Optional[asyncio.Event] = None

    def fail(self, op: str, exc: Exception) -> None:
        self.failures[op] = exc

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def _record(self, op: str, target: str) -> None:
        self.calls.append((op, target))
        if op in self.failures:
            raise self.failures[op]

    async def clone_from_template(self, template_path, name, sizing, network, mac):
        self._record("clone", name)
        self.domains[name] = "shut off"

    async def start(self, name):
        self._record("start", name)
        self.domains[name] = "running"

    async def stop(self, name):
        self._record("stop", name)
        if name in self.domains:
            self.domains[name] = "shut off"

    async def delete(self, name):
        self._record("delete", name)
        self.domains.pop(name, None)

    async def snapshot(self, name, snapshot_name):
        self._record("snapshot", name)
        if name not in self.domains:
            raise HypervisorError(f"Domain {name} not found")
        return snapshot_name

    async def _boot(self, target: str) -> None:
        self._record("wait", target)
        self.booting.set()
        if self.boot_gate is not None:
            await self.boot_gate.wait()

    async def wait_for_port(self, host, port, timeout=None):
        await self._boot(f"{host}:{port}")

    async def get_address(self, name, mac, expected_ip=None, timeout=None):
        # DHCP honours the reservation made for the session network
        await self._boot(mac)
        return expected_ip

    async def import_template(self, image_path, slug, checksum=None):
        self._record("import", slug)
        return Path(f"/templates/{slug}-base.qcow2")

    async def ping(self):
        return {"status": "healthy", "uri": "test:///default"}


class _Channel:
    def __init__(self, status: int):
        self._status = status

    def recv_exit_status(self) -> int:
        return self._status


class _Stream:
    def __init__(self, status: int = 0):
        self.channel = _Channel(status)
        self.written: List[str] = []
        self.closed = False

    def write(self, data: str) -> None:
        self.written.append(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeShell:
    """One SSH connection into the fake guest."""

    def __init__(self, guest: "FakeGuest", username: str):
        self.guest = guest
        self.username = username
        self.commands: List[str] = []
        self.stdin: List[_Stream] = []
        self.closed = False

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        status = 0
        if any(path in command for path in self.guest.deny_paths):
            status = 1
        if command.startswith("sudo") and not self.guest.sudo_ok:
            status = 1
        stdin = _Stream()
        self.stdin.append(stdin)
        return stdin, _Stream(status), _Stream()

    def close(self) -> None:
        self.closed = True


class FakeGuest:
    """
    Shell factory standing in for the lab VM's sshd.

    `refusals` connections are refused before sshd "comes up";
    `unreachable` refuses forever.
    """

    def __init__(self):
        self.refusals = 0
        self.unreachable = False
        self.deny_paths: set = set()
        self.sudo_ok = True
        self.connections: List[Tuple[str, int, str]] = []
        self.shells: List[FakeShell] = []

    def __call__(self, address: str, port: int, credentials: Credentials) -> FakeShell:
        self.connections.append((address, port, credentials.username))
        if self.unreachable:
            raise OSError(111, "Connection refused")
        if self.refusals > 0:
            self.refusals -= 1
            raise paramiko.SSHException("Error reading SSH protocol banner")
        shell = FakeShell(self, credentials.username)
        self.shells.append(shell)
        return shell

    @property
    def commands(self) -> List[str]:
        return [c for shell in self.shells for c in shell.commands]

    def holds(self, value: str) -> bool:
        return any(value in command for command in self.commands)


class RecordingScoringHook:
    """Scoring hook that remembers what it was told."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Tuple[str, str, FlagType, int]] = []

    async def on_flag_accepted(self, user_id, lab_id, flag_type, points):
        self.calls.append((user_id, lab_id, flag_type, points))
        if self.fail:
            raise RuntimeError("scoring service unavailable")
        badges = ["first-blood"] if len(self.calls) == 1 else []
        return ScoringResult(new_badges=badges, ranking=7)


def make_ca(directory: Path, with_tls_auth: bool = False) -> Path:
    """Write a throwaway CA (ca.crt, ca.key) into a directory."""
    directory.mkdir(parents=True, exist_ok=True)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Lab Range Test CA")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    (directory / "ca.crt").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    (directory / "ca.key").write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    if with_tls_auth:
        (directory / "ta.key").write_text(
            "-----BEGIN OpenVPN Static key V1-----\n"
            + "0123456789abcdef" * 4 + "\n"
            + "-----END OpenVPN Static key V1-----\n"
        )
    return directory


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed instant."""
    return FakeClock()


@pytest.fixture
def nat_lab() -> Lab:
    """A NAT-mode lab with the default 25/50 point flags."""
    return Lab(
        id="lab-web-101",
        slug="web101",
        name="Web Basics 101",
        image_path="/images/web101.qcow2",
        default_credentials=Credentials(username="student", password="student"),
        flags=default_flag_templates("student"),
    )


@pytest.fixture
def bridge_lab() -> Lab:
    """A bridge-mode lab reached over VPN."""
    return Lab(
        id="lab-ad-201",
        slug="ad201",
        name="Active Directory 201",
        image_path="/images/ad201.qcow2",
        default_credentials=Credentials(username="analyst", password="analyst"),
        flags=default_flag_templates("analyst"),
        network_mode=NetworkMode.BRIDGE,
    )


@pytest.fixture
async def repository(nat_lab, bridge_lab) -> InMemorySessionRepository:
    """In-memory repository seeded with both labs."""
    repo = InMemorySessionRepository()
    await repo.add_lab(nat_lab)
    await repo.add_lab(bridge_lab)
    return repo


@pytest.fixture
def allocator() -> NetworkAllocator:
    """Small pools so exhaustion is easy to reach."""
    return NetworkAllocator(
        ssh_port_start=2200,
        ssh_port_end=2204,
        web_port_start=8000,
        web_port_end=8004,
        subnet_base="10.10.0.0/16",
    )


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def guest() -> FakeGuest:
    return FakeGuest()


@pytest.fixture
def flag_service(guest) -> FlagService:
    """Flag service that talks to the fake guest without backoff sleeps."""
    return FlagService(attempts=3, backoff=0, connect_timeout=1, shell_factory=guest)


@pytest.fixture
def vpn_certs(tmp_path) -> Path:
    return make_ca(tmp_path / "pki")


@pytest.fixture
def vpn_issuer(vpn_certs, tmp_path, clock) -> VpnIssuer:
    return VpnIssuer(
        certs_dir=vpn_certs,
        configs_dir=tmp_path / "profiles",
        server_host="vpn.example.test",
        server_port=1194,
        clock=clock,
    )


@pytest.fixture
def scoring_hook() -> RecordingScoringHook:
    return RecordingScoringHook()


@pytest.fixture
def manager(
    repository,
    allocator,
    hypervisor,
    flag_service,
    vpn_issuer,
    scoring_hook,
    clock,
) -> SessionManager:
    """Session manager wired to fakes, 60 minute sessions."""
    return SessionManager(
        repository=repository,
        allocator=allocator,
        hypervisor=hypervisor,
        flag_service=flag_service,
        vpn_issuer=vpn_issuer,
        scoring_hook=scoring_hook,
        session_duration=timedelta(minutes=60),
        extension=timedelta(minutes=30),
        max_extensions=3,
        max_concurrent_sessions=10,
        public_host="labs.example.test",
        clock=clock,
    )
