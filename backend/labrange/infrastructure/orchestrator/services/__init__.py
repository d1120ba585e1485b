"""Orchestrator services."""

from .cleanup_scheduler import CleanupScheduler, SweepReport
from .flag_service import FlagService, InjectionReport
from .hypervisor import LibvirtHypervisor
from .network_allocator import NetworkAllocator
from .scoring import HttpScoringHook, NullScoringHook, ScoringHook
from .session_manager import SessionManager
from .vpn_issuer import VpnIssuer, VpnProfile

__all__ = [
    "CleanupScheduler",
    "SweepReport",
    "FlagService",
    "InjectionReport",
    "LibvirtHypervisor",
    "NetworkAllocator",
    "HttpScoringHook",
    "NullScoringHook",
    "ScoringHook",
    "SessionManager",
    "VpnIssuer",
    "VpnProfile",
]
