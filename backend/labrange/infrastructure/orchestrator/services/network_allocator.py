"""
Network Allocator - collision-free ports and subnets for lab sessions

NAT mode hands out paired (ssh, web) host ports from a free list.
Bridge mode carves a /24 per session out of the base network, starting
from a slot derived from the user id and probing past slots that are
already held.
"""

import hashlib
import ipaddress
import threading
from collections import deque
from typing import Deque, Dict, Optional, Set

import structlog

from ..exceptions import AllocationExhausted
from ..models import NetworkAllocation, NetworkMode

logger = structlog.get_logger(__name__)


class NetworkAllocator:
    """
    Owned pool of host ports and session subnets.

    All methods are synchronous and serialized by one lock so that
    check-and-reserve is atomic for both the event loop and worker threads.
    """

    def __init__(
        self,
        ssh_port_start: int = 2200,
        ssh_port_end: int = 3199,
        web_port_start: int = 8000,
        web_port_end: int = 8999,
        subnet_base: str = "10.10.0.0/16",
        vm_host: int = 10,
    ):
        self._ssh_port_start = ssh_port_start
        self._web_port_start = web_port_start
        self._pair_count = min(
            ssh_port_end - ssh_port_start + 1,
            web_port_end - web_port_start + 1,
        )

        base = ipaddress.ip_network(subnet_base)
        if base.prefixlen > 24:
            raise ValueError("subnet_base must be /24 or larger")
        # Subnet 0 is skipped so the first session network is 10.10.1.0/24.
        self._subnets = list(base.subnets(new_prefix=24))[1:]
        self._vm_host = vm_host

        self._lock = threading.Lock()
        self._free_pairs: Deque[int] = deque(range(self._pair_count))
        self._held_subnets: Set[int] = set()
        self._by_session: Dict[str, NetworkAllocation] = {}

    @classmethod
    def from_settings(cls, settings) -> "NetworkAllocator":
        return cls(
            ssh_port_start=settings.ssh_port_start,
            ssh_port_end=settings.ssh_port_end,
            web_port_start=settings.web_port_start,
            web_port_end=settings.web_port_end,
            subnet_base=settings.subnet_base,
            vm_host=settings.subnet_vm_host,
        )

    def allocate(self, session_id: str, user_id: str, mode: NetworkMode) -> NetworkAllocation:
        """
        Reserve network resources for a session.

        Args:
            session_id: Owning session; allocating twice returns the same reservation
            user_id: Seeds the preferred subnet in bridge mode
            mode: NAT or bridge

        Returns:
            The reserved allocation

        Raises:
            AllocationExhausted: When the pool for the mode is empty
        """
        with self._lock:
            existing = self._by_session.get(session_id)
            if existing is not None:
                return existing

            if mode == NetworkMode.NAT:
                allocation = self._take_port_pair()
            else:
                allocation = self._take_subnet(user_id)

            self._by_session[session_id] = allocation

        logger.debug(
            "Network allocated",
            session_id=session_id,
            mode=mode.value,
            ssh_port=allocation.ssh_port,
            subnet=allocation.cidr,
        )
        return allocation

    def release(self, session_id: str) -> bool:
        """
        Return a session's resources to the pool.

        Idempotent: releasing twice, or releasing a session that never
        allocated, is a no-op that returns False.
        """
        with self._lock:
            allocation = self._by_session.pop(session_id, None)
            if allocation is None:
                return False

            if allocation.mode == NetworkMode.NAT:
                self._free_pairs.append(allocation.ssh_port - self._ssh_port_start)
            else:
                self._held_subnets.discard(allocation.subnet_index)

        logger.debug("Network released", session_id=session_id)
        return True

    def restore(self, session_id: str, allocation: NetworkAllocation) -> None:
        """Re-reserve an allocation recorded before a restart."""
        with self._lock:
            if session_id in self._by_session:
                return
            if allocation.mode == NetworkMode.NAT:
                index = allocation.ssh_port - self._ssh_port_start
                try:
                    self._free_pairs.remove(index)
                except ValueError:
                    raise AllocationExhausted(
                        f"Port pair {allocation.ssh_port}/{allocation.web_port} already held"
                    ) from None
            else:
                if allocation.subnet_index in self._held_subnets:
                    raise AllocationExhausted(f"Subnet {allocation.cidr} already held")
                self._held_subnets.add(allocation.subnet_index)
            self._by_session[session_id] = allocation

    def get(self, session_id: str) -> Optional[NetworkAllocation]:
        with self._lock:
            return self._by_session.get(session_id)

    def capacity(self, mode: NetworkMode) -> int:
        return self._pair_count if mode == NetworkMode.NAT else len(self._subnets)

    def in_use(self, mode: NetworkMode) -> int:
        with self._lock:
            return sum(1 for a in self._by_session.values() if a.mode == mode)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Pool usage for health reporting."""
        return {
            mode.value: {"capacity": self.capacity(mode), "in_use": self.in_use(mode)}
            for mode in NetworkMode
        }

    def _take_port_pair(self) -> NetworkAllocation:
        if not self._free_pairs:
            raise AllocationExhausted("No free port pairs")
        index = self._free_pairs.popleft()
        return NetworkAllocation(
            mode=NetworkMode.NAT,
            ssh_port=self._ssh_port_start + index,
            web_port=self._web_port_start + index,
        )

    def _take_subnet(self, user_id: str) -> NetworkAllocation:
        count = len(self._subnets)
        if len(self._held_subnets) >= count:
            raise AllocationExhausted("No free session subnets")

        start = int(hashlib.sha256(user_id.encode()).hexdigest()[:8], 16) % count
        for offset in range(count):
            index = (start + offset) % count
            if index not in self._held_subnets:
                break
        else:
            raise AllocationExhausted("No free session subnets")

        self._held_subnets.add(index)
        subnet = self._subnets[index]
        hosts = subnet.network_address
        return NetworkAllocation(
            mode=NetworkMode.BRIDGE,
            subnet_index=index,
            network=str(subnet.network_address),
            netmask=str(subnet.netmask),
            gateway=str(hosts + 1),
            vm_ip=str(hosts + self._vm_host),
            cidr=str(subnet),
        )
