"""
Pytest configuration and shared fixtures.
"""

# Import fixtures
from tests.fixtures.session_fixtures import (
    allocator,
    bridge_lab,
    clock,
    flag_service,
    guest,
    hypervisor,
    manager,
    nat_lab,
    repository,
    scoring_hook,
    vpn_certs,
    vpn_issuer,
)

__all__ = [
    "allocator",
    "bridge_lab",
    "clock",
    "flag_service",
    "guest",
    "hypervisor",
    "manager",
    "nat_lab",
    "repository",
    "scoring_hook",
    "vpn_certs",
    "vpn_issuer",
]


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
