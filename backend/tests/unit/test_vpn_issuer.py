"""
Unit tests for VPN profile issuing.

Tests:
- Profile content, routes and embedded client certificate
- Re-issue and one-time download
- Expiry, revocation and sweeping
"""

import re
import stat
from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from labrange.infrastructure.orchestrator.exceptions import (
    ExpiredError,
    NotFoundError,
    VpnUnavailableError,
)
from labrange.infrastructure.orchestrator.models import NetworkMode
from labrange.infrastructure.orchestrator.services.vpn_issuer import VpnIssuer

from tests.fixtures.session_fixtures import make_ca


@pytest.fixture
def subnet(allocator):
    return allocator.allocate("sess-1", "alice", NetworkMode.BRIDGE)


def embedded_cert(content: str) -> x509.Certificate:
    pem = re.search(r"<cert>\n(.*?)</cert>", content, re.S).group(1)
    return x509.load_pem_x509_certificate(pem.encode())


class TestIssue:
    """Test profile generation."""

    async def test_profile_content(self, vpn_issuer, subnet):
        profile = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert profile.filename == "lab-sess-1.ovpn"
        assert profile.subnet == subnet.cidr
        assert "remote vpn.example.test 1194" in profile.content
        assert "proto udp" in profile.content
        assert f"route {subnet.network} 255.255.255.0" in profile.content
        assert "route-nopull" in profile.content
        assert "<ca>" in profile.content
        assert "BEGIN PRIVATE KEY" in profile.content
        assert "<tls-auth>" not in profile.content
        assert profile.path.read_text() == profile.content

    async def test_client_certificate(self, vpn_issuer, subnet, clock):
        """Test that the certificate names the session and ends with it."""
        profile = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=45))
        cert = embedded_cert(profile.content)

        common_name = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        assert common_name == "labrange-sess-1"
        usage = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert ExtendedKeyUsageOID.CLIENT_AUTH in usage
        assert cert.not_valid_after_utc == (clock.now + timedelta(minutes=45)).replace(microsecond=0)
        assert cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Lab Range Test CA"

    async def test_file_is_private(self, vpn_issuer, subnet):
        profile = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert stat.S_IMODE(profile.path.stat().st_mode) == 0o600

    async def test_tls_auth_included_when_present(self, tmp_path, clock, subnet):
        issuer = VpnIssuer(
            certs_dir=make_ca(tmp_path / "pki-ta", with_tls_auth=True),
            configs_dir=tmp_path / "out",
            server_host="vpn.example.test",
            protocol="tcp",
            clock=clock,
        )

        profile = await issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert "key-direction 1" in profile.content
        assert "<tls-auth>" in profile.content
        assert "proto tcp" in profile.content

    async def test_reissue_returns_same_profile(self, vpn_issuer, subnet):
        first = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))
        second = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert second.content == first.content
        assert second.serial == first.serial

    async def test_non_positive_ttl(self, vpn_issuer, subnet):
        with pytest.raises(ExpiredError):
            await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(0))

    async def test_missing_ca(self, tmp_path, subnet):
        issuer = VpnIssuer(
            certs_dir=tmp_path / "empty",
            configs_dir=tmp_path / "out",
            server_host="vpn.example.test",
        )

        with pytest.raises(VpnUnavailableError):
            await issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))


class TestFetch:
    """Test the one-time download."""

    async def test_single_download(self, vpn_issuer, subnet):
        issued = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        fetched = await vpn_issuer.fetch("sess-1")
        assert fetched.content == issued.content
        assert vpn_issuer.status("sess-1")["downloaded"] is True

        with pytest.raises(NotFoundError):
            await vpn_issuer.fetch("sess-1")

    async def test_reissue_allows_another_download(self, vpn_issuer, subnet):
        await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))
        await vpn_issuer.fetch("sess-1")

        await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert (await vpn_issuer.fetch("sess-1")).session_id == "sess-1"

    async def test_never_issued(self, vpn_issuer):
        with pytest.raises(NotFoundError):
            await vpn_issuer.fetch("unknown")

    async def test_expired_profile_is_removed(self, vpn_issuer, subnet, clock):
        profile = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=10))
        clock.advance(minutes=11)

        with pytest.raises(ExpiredError):
            await vpn_issuer.fetch("sess-1")

        assert not profile.path.exists()
        assert vpn_issuer.status("sess-1") is None


class TestRevoke:
    """Test revocation and sweeping."""

    async def test_revoke_is_idempotent(self, vpn_issuer, subnet):
        profile = await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=60))

        assert await vpn_issuer.revoke("sess-1") is True
        assert await vpn_issuer.revoke("sess-1") is False
        assert not profile.path.exists()

        with pytest.raises(NotFoundError):
            await vpn_issuer.fetch("sess-1")

    async def test_sweep_only_removes_expired(self, vpn_issuer, allocator, subnet, clock):
        other = allocator.allocate("sess-2", "bob", NetworkMode.BRIDGE)
        await vpn_issuer.issue("alice", "sess-1", subnet, timedelta(minutes=10))
        await vpn_issuer.issue("bob", "sess-2", other, timedelta(minutes=90))
        clock.advance(minutes=30)

        removed = await vpn_issuer.sweep_expired()

        assert removed == 1
        assert vpn_issuer.status("sess-1") is None
        assert vpn_issuer.status("sess-2") is not None
