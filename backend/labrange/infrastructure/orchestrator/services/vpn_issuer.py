"""
VPN Issuer - per-session OpenVPN client profiles for bridge-mode labs

Each profile embeds a client certificate signed by the host CA, valid only
for the session's remaining lifetime, and routes the session subnet.
"""

import asyncio
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from string import Template
from typing import Callable, Dict, Optional

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..exceptions import ExpiredError, NotFoundError, VpnUnavailableError
from ..models import NetworkAllocation, utcnow

logger = structlog.get_logger(__name__)

CONTENT_TYPE = "application/x-openvpn-profile"

PROFILE_TEMPLATE = Template("""\
# Lab Range session $session_id
# Valid until $expires_at
client
dev tun
proto $proto
remote $host $port
resolv-retry infinite
nobind
persist-key
persist-tun
remote-cert-tls server
cipher AES-256-GCM
auth SHA256
verb 3
route-nopull
route $network $netmask
<ca>
$ca</ca>
<cert>
$cert</cert>
<key>
$key</key>
$tls_auth""")


def profile_filename(session_id: str) -> str:
    return f"lab-{session_id}.ovpn"


@dataclass
class VpnProfile:
    """An issued client profile and its download state."""
    session_id: str
    user_id: str
    path: Path
    content: str
    subnet: str
    serial: int
    issued_at: datetime
    expires_at: datetime
    downloaded: bool = False

    @property
    def filename(self) -> str:
        return profile_filename(self.session_id)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "filename": self.filename,
            "subnet": self.subnet,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "downloaded": self.downloaded,
        }


class VpnIssuer:
    """
    Issues, serves and revokes session VPN profiles.

    Profiles live on disk (mode 0600) and in an in-memory index keyed by
    session id. Issuing again before expiry returns the same profile and
    allows one more download.
    """

    def __init__(
        self,
        certs_dir: Path,
        configs_dir: Path,
        server_host: str,
        server_port: int = 1194,
        protocol: str = "udp",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.certs_dir = Path(certs_dir)
        self.configs_dir = Path(configs_dir)
        self.server_host = server_host
        self.server_port = server_port
        self.protocol = protocol
        self._clock = clock
        self._profiles: Dict[str, VpnProfile] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "VpnIssuer":
        return cls(
            certs_dir=settings.vpn_certs_dir,
            configs_dir=settings.vpn_configs_dir,
            server_host=settings.vpn_server_host,
            server_port=settings.vpn_server_port,
            protocol=settings.vpn_protocol,
        )

    async def issue(
        self,
        user_id: str,
        session_id: str,
        subnet: NetworkAllocation,
        ttl: timedelta,
    ) -> VpnProfile:
        """
        Issue (or re-issue) the client profile for a session.

        Args:
            user_id: Session owner, recorded in the certificate
            session_id: Session the profile belongs to
            subnet: Bridge allocation whose network is routed over the tunnel
            ttl: Remaining session lifetime; bounds certificate validity
        """
        if ttl <= timedelta(0):
            raise ExpiredError(f"Session {session_id} has no time left for a VPN profile")

        now = self._clock()
        async with self._lock:
            existing = self._profiles.get(session_id)
            if existing is not None and not existing.is_expired(now):
                existing.downloaded = False
                return existing

            profile = await asyncio.to_thread(
                self._build_profile, user_id, session_id, subnet, now, now + ttl,
            )
            self._profiles[session_id] = profile

        logger.info(
            "VPN profile issued",
            session_id=session_id,
            user_id=user_id,
            subnet=profile.subnet,
            expires_at=profile.expires_at.isoformat(),
        )
        return profile

    async def fetch(self, session_id: str) -> VpnProfile:
        """
        Hand out a profile for download, once per issuance.

        Raises:
            NotFoundError: Never issued, revoked, or already downloaded
            ExpiredError: Past its validity; the profile is removed
        """
        async with self._lock:
            profile = self._profiles.get(session_id)
            if profile is None:
                raise NotFoundError(f"No VPN profile for session {session_id}")

            if profile.is_expired(self._clock()):
                self._remove(session_id)
                raise ExpiredError(f"VPN profile for session {session_id} expired")

            if profile.downloaded:
                raise NotFoundError(
                    f"VPN profile for session {session_id} was already downloaded"
                )

            profile.downloaded = True
            return profile

    async def revoke(self, session_id: str) -> bool:
        """Delete a session's profile. Idempotent."""
        async with self._lock:
            removed = self._remove(session_id)
        if removed:
            logger.info("VPN profile revoked", session_id=session_id)
        return removed

    async def sweep_expired(self) -> int:
        """Delete every expired profile. Returns how many were removed."""
        now = self._clock()
        async with self._lock:
            expired = [sid for sid, p in self._profiles.items() if p.is_expired(now)]
            for session_id in expired:
                self._remove(session_id)
        if expired:
            logger.info("Expired VPN profiles removed", count=len(expired))
        return len(expired)

    def status(self, session_id: str) -> Optional[Dict[str, object]]:
        profile = self._profiles.get(session_id)
        return profile.to_dict() if profile else None

    def _remove(self, session_id: str) -> bool:
        profile = self._profiles.pop(session_id, None)
        if profile is None:
            return False
        profile.path.unlink(missing_ok=True)
        return True

    # ------------------------------------------------------------------
    # Certificate and profile rendering (blocking)
    # ------------------------------------------------------------------

    def _load_ca(self):
        cert_path = self.certs_dir / "ca.crt"
        key_path = self.certs_dir / "ca.key"
        if not cert_path.exists() or not key_path.exists():
            raise VpnUnavailableError(f"VPN CA not found in {self.certs_dir}")

        ca_cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
        ca_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        return ca_cert, ca_key

    def _build_profile(
        self,
        user_id: str,
        session_id: str,
        subnet: NetworkAllocation,
        not_before: datetime,
        not_after: datetime,
    ) -> VpnProfile:
        ca_cert, ca_key = self._load_ca()

        client_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        serial = x509.random_serial_number()
        subject = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, f"labrange-{session_id}"),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, f"user-{user_id}"),
        ])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(ca_cert.subject)
            .public_key(client_key.public_key())
            .serial_number(serial)
            .not_valid_before(not_before - timedelta(minutes=1))
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

        tls_auth = ""
        ta_path = self.certs_dir / "ta.key"
        if ta_path.exists():
            tls_auth = f"key-direction 1\n<tls-auth>\n{ta_path.read_text().strip()}\n</tls-auth>\n"

        content = PROFILE_TEMPLATE.substitute(
            session_id=session_id,
            expires_at=not_after.isoformat(),
            proto=self.protocol,
            host=self.server_host,
            port=self.server_port,
            network=subnet.network,
            netmask=subnet.netmask,
            ca=ca_cert.public_bytes(serialization.Encoding.PEM).decode(),
            cert=certificate.public_bytes(serialization.Encoding.PEM).decode(),
            key=client_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ).decode(),
            tls_auth=tls_auth,
        )

        self.configs_dir.mkdir(parents=True, exist_ok=True)
        path = self.configs_dir / profile_filename(session_id)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.chmod(path, 0o600)

        return VpnProfile(
            session_id=session_id,
            user_id=user_id,
            path=path,
            content=content,
            subnet=subnet.cidr or f"{subnet.network}/{subnet.netmask}",
            serial=serial,
            issued_at=not_before,
            expires_at=not_after,
        )
