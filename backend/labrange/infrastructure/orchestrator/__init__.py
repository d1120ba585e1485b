"""
Lab Range - Session Orchestrator

Maps one lab session to one ephemeral libvirt VM:
- Atomic per-user session claims
- Port and subnet allocation
- Per-session flag generation and SSH injection
- VPN profiles for bridge-mode labs
- Expiry sweeps and teardown under partial failure
"""

from .services.cleanup_scheduler import CleanupScheduler
from .services.flag_service import FlagService
from .services.hypervisor import LibvirtHypervisor
from .services.network_allocator import NetworkAllocator
from .services.session_manager import SessionManager
from .services.vpn_issuer import VpnIssuer

__all__ = [
    "CleanupScheduler",
    "FlagService",
    "LibvirtHypervisor",
    "NetworkAllocator",
    "SessionManager",
    "VpnIssuer",
]
