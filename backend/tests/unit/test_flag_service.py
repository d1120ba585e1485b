"""
Unit tests for flag generation and injection.

Tests:
- Pattern substitution and token uniqueness
- Path fallback for unwritable locations
- Privileged writes through sudo and root credentials
- Retry on boot-time connection refusal
"""

import re

import pytest

from labrange.infrastructure.orchestrator.exceptions import InjectionFailure
from labrange.infrastructure.orchestrator.models import (
    Credentials,
    FlagTemplate,
    FlagType,
)
from labrange.infrastructure.orchestrator.services.flag_service import candidate_paths

FLAG_RE = re.compile(r"^FLAG\{(user|root)_web101_[0-9a-f]{24}\}$")


class TestFlagGeneration:
    """Test flag value generation."""

    def test_default_pattern(self, flag_service, nat_lab):
        """Test that both flags follow the default pattern."""
        flags = flag_service.generate("s1", nat_lab)

        assert set(flags) == {FlagType.USER, FlagType.ROOT}
        assert FLAG_RE.match(flags[FlagType.USER].expected)
        assert FLAG_RE.match(flags[FlagType.ROOT].expected)
        assert flags[FlagType.USER].expected.startswith("FLAG{user_")
        assert flags[FlagType.ROOT].expected.startswith("FLAG{root_")

    def test_points_from_lab(self, flag_service, nat_lab):
        flags = flag_service.generate("s1", nat_lab)

        assert flags[FlagType.USER].points == 25
        assert flags[FlagType.ROOT].points == 50

    def test_tokens_are_unique(self, flag_service, nat_lab):
        """Test that no two generations share a value."""
        values = set()
        for i in range(50):
            for slot in flag_service.generate(f"s{i}", nat_lab).values():
                values.add(slot.expected)

        assert len(values) == 100

    def test_custom_pattern(self, flag_service, nat_lab):
        nat_lab.flags[FlagType.USER] = FlagTemplate(
            points=10, paths=["/opt/flag"], pattern="HTB{${token}}",
        )

        flags = flag_service.generate("s1", nat_lab)

        assert re.match(r"^HTB\{[0-9a-f]{24}\}$", flags[FlagType.USER].expected)

    def test_pattern_requires_token(self):
        """Test that a pattern without a random token is rejected."""
        with pytest.raises(ValueError):
            FlagTemplate(points=10, paths=["/flag"], pattern="FLAG{static}")


class TestCandidatePaths:
    """Test path ordering."""

    def test_configured_paths_first(self, nat_lab):
        nat_lab.flags[FlagType.USER] = FlagTemplate(points=25, paths=["/srv/app/user.txt"])

        paths = candidate_paths(nat_lab)

        assert paths[FlagType.USER] == [
            "/srv/app/user.txt",
            "/home/student/user.txt",
            "/tmp/user.txt",
        ]
        assert paths[FlagType.ROOT] == ["/root/root.txt"]


class TestFlagInjection:
    """Test writing flags into the guest."""

    async def test_writes_primary_paths(self, flag_service, nat_lab, guest):
        flags = flag_service.generate("s1", nat_lab)

        report = await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
        )

        assert report.complete
        assert report.attempts == 1
        assert report.paths[FlagType.USER] == "/home/student/user.txt"
        assert report.paths[FlagType.ROOT] == "/root/root.txt"
        assert flags[FlagType.USER].path == "/home/student/user.txt"
        assert guest.holds(flags[FlagType.USER].expected)
        assert guest.holds(flags[FlagType.ROOT].expected)
        assert all(shell.closed for shell in guest.shells)

    async def test_root_flag_goes_through_sudo(self, flag_service, nat_lab, guest):
        """Test that the account password is fed to sudo on stdin."""
        flags = flag_service.generate("s1", nat_lab)

        await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
        )

        shell = guest.shells[0]
        sudo_index = next(i for i, c in enumerate(shell.commands) if c.startswith("sudo -S"))
        assert "/root/root.txt" in shell.commands[sudo_index]
        assert shell.stdin[sudo_index].written == ["student\n"]

    async def test_falls_back_to_secondary_path(self, flag_service, nat_lab, guest):
        guest.deny_paths.add("/home/student/user.txt")
        flags = flag_service.generate("s1", nat_lab)

        report = await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
        )

        assert report.paths[FlagType.USER] == "/tmp/user.txt"
        assert any("rejected at /home/student/user.txt" in e for e in report.errors)

    async def test_sudo_refused_falls_back_to_direct_write(self, flag_service, nat_lab, guest):
        guest.sudo_ok = False
        flags = flag_service.generate("s1", nat_lab)

        report = await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
        )

        assert report.paths[FlagType.ROOT] == "/root/root.txt"
        direct = [c for c in guest.commands if c.startswith("mkdir -p /root")]
        assert direct

    async def test_root_credentials_used_when_configured(self, flag_service, nat_lab, guest):
        flags = flag_service.generate("s1", nat_lab)

        await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
            root_credentials=Credentials(username="root", password="toor"),
        )

        root_shell = next(s for s in guest.shells if s.username == "root")
        assert any(flags[FlagType.ROOT].expected in c for c in root_shell.commands)
        assert not any(c.startswith("sudo") for c in guest.commands)

    async def test_retries_until_sshd_is_up(self, flag_service, nat_lab, guest):
        """Test that refused connections during boot are retried."""
        guest.refusals = 2
        flags = flag_service.generate("s1", nat_lab)

        report = await flag_service.inject(
            "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
        )

        assert report.complete
        assert report.attempts == 3
        assert len(guest.connections) == 3

    async def test_unreachable_guest_raises_injection_failure(self, flag_service, nat_lab, guest):
        guest.unreachable = True
        flags = flag_service.generate("s1", nat_lab)

        with pytest.raises(InjectionFailure):
            await flag_service.inject(
                "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
            )

        assert len(guest.connections) == 3
        # Expected values are untouched by a failed injection
        assert FLAG_RE.match(flags[FlagType.USER].expected)

    async def test_no_writable_path_raises(self, flag_service, nat_lab, guest):
        guest.deny_paths.update({"/home/student/user.txt", "/tmp/user.txt"})
        flags = flag_service.generate("s1", nat_lab)

        with pytest.raises(InjectionFailure, match="user"):
            await flag_service.inject(
                "127.0.0.1", 2200, nat_lab.default_credentials, flags, candidate_paths(nat_lab),
            )
