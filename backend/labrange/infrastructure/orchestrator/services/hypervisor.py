"""
Libvirt Hypervisor Adapter - VM lifecycle through virsh and qemu-img

Features:
- Template import with checksum verification
- Copy-on-write qcow2 overlays per session
- Routed per-session networks pinning bridge VMs to their subnet
- Transient failure retries (lock contention, busy resources)
- Bounded polling for the guest address and forwarded ports
"""

import asyncio
import hashlib
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional
from xml.sax.saxutils import escape

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import BootTimeoutError, HypervisorError, TransientHypervisorError
from ..metrics import HYPERVISOR_RETRIES
from ..models import NetworkAllocation, NetworkMode, VMSizing

logger = structlog.get_logger(__name__)

DOMAIN_PREFIX = "labrange-"

# stderr fragments that mean "try again shortly"
TRANSIENT_MARKERS = (
    "cannot acquire state change lock",
    "resource busy",
    "device or resource busy",
    "failed to connect socket",
    "timed out",
    "temporarily unavailable",
)

# stderr fragments that mean the domain is already gone
MISSING_MARKERS = (
    "failed to get domain",
    "domain not found",
    "no domain with matching name",
)

NOT_RUNNING_MARKERS = (
    "domain is not running",
    "not running",
)

NETWORK_MISSING_MARKERS = (
    "failed to get network",
    "network not found",
    "no network with matching name",
    "network is not active",
)


def domain_name(session_id: str) -> str:
    """Libvirt domain name for a session."""
    return f"{DOMAIN_PREFIX}{session_id}"


def mac_address(session_id: str) -> str:
    """Stable locally-administered MAC for a session (qemu OUI)."""
    digest = hashlib.md5(session_id.encode()).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


def session_network_name(domain: str) -> str:
    """Libvirt network backing a bridge-mode session."""
    return f"{domain}-net"


def file_sha256(path: Path) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            sha.update(chunk)
    return sha.hexdigest()


class LibvirtHypervisor:
    """
    Thin adapter over the libvirt command line tools.

    The adapter owns no session state; domain names and MAC addresses are
    derived from the session id so every call is idempotent with respect
    to retries and restarts.
    """

    def __init__(
        self,
        base_images_dir: Path,
        session_disks_dir: Path,
        libvirt_uri: str = "qemu:///system",
        virsh_binary: str = "virsh",
        qemu_img_binary: str = "qemu-img",
        command_timeout: int = 60,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        boot_timeout: int = 180,
        poll_interval: float = 3.0,
    ):
        self.base_images_dir = Path(base_images_dir)
        self.session_disks_dir = Path(session_disks_dir)
        self.libvirt_uri = libvirt_uri
        self.virsh_binary = virsh_binary
        self.qemu_img_binary = qemu_img_binary
        self.command_timeout = command_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.boot_timeout = boot_timeout
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings) -> "LibvirtHypervisor":
        return cls(
            base_images_dir=settings.base_images_dir,
            session_disks_dir=settings.session_disks_dir,
            libvirt_uri=settings.libvirt_uri,
            virsh_binary=settings.virsh_binary,
            qemu_img_binary=settings.qemu_img_binary,
            command_timeout=settings.hypervisor_command_timeout,
            retry_attempts=settings.hypervisor_retry_attempts,
            boot_timeout=settings.boot_timeout_seconds,
            poll_interval=settings.address_poll_interval,
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    async def import_template(
        self,
        image_path: str,
        slug: str,
        checksum: Optional[str] = None,
    ) -> Path:
        """
        Copy a lab image into the template store.

        Args:
            image_path: Source qcow2 image
            slug: Lab slug, names the template file
            checksum: Expected sha256 of the image, if known

        Returns:
            Path of the imported template
        """
        source = Path(image_path)
        target = self.base_images_dir / f"{slug}-base.qcow2"

        if target.exists():
            if checksum is None or await asyncio.to_thread(file_sha256, target) == checksum:
                logger.info("Template already imported", slug=slug, path=str(target))
                return target
            logger.warning("Template checksum drifted, re-importing", slug=slug)

        if not source.exists():
            raise HypervisorError(f"Lab image not found: {source}")

        if checksum is not None:
            actual = await asyncio.to_thread(file_sha256, source)
            if actual != checksum:
                raise HypervisorError(
                    f"Checksum mismatch for {source.name}: expected {checksum}, got {actual}"
                )

        self.base_images_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_suffix(".partial")
        await asyncio.to_thread(shutil.copyfile, source, partial)
        partial.replace(target)

        logger.info("Template imported", slug=slug, path=str(target))
        return target

    # ------------------------------------------------------------------
    # Domain lifecycle
    # ------------------------------------------------------------------

    async def clone_from_template(
        self,
        template_path: str,
        name: str,
        sizing: VMSizing,
        network: NetworkAllocation,
        mac: str,
    ) -> str:
        """
        Create an overlay disk backed by the template and define the domain.

        Returns:
            The domain name
        """
        self.session_disks_dir.mkdir(parents=True, exist_ok=True)
        overlay = self._overlay_path(name)
        xml_path = self.session_disks_dir / f"{name}.xml"

        await self._run(
            self.qemu_img_binary,
            "create", "-f", "qcow2", "-F", "qcow2",
            "-b", str(template_path),
            str(overlay),
            f"{sizing.disk_gb}G",
        )

        try:
            if network.mode == NetworkMode.BRIDGE:
                await self._create_session_network(name, network, mac)
            xml_path.write_text(self.render_domain_xml(name, overlay, sizing, network, mac))
            await self._virsh("define", str(xml_path))
        except HypervisorError:
            overlay.unlink(missing_ok=True)
            raise
        finally:
            xml_path.unlink(missing_ok=True)

        logger.info("Domain defined", domain=name, mode=network.mode.value)
        return name

    async def _create_session_network(
        self,
        domain: str,
        network: NetworkAllocation,
        mac: str,
    ) -> None:
        """Define and start the routed /24 a bridge-mode VM lives on."""
        net_name = session_network_name(domain)
        xml_path = self.session_disks_dir / f"{net_name}.xml"
        xml_path.write_text(self.render_network_xml(net_name, network, mac))
        try:
            await self._virsh("net-define", str(xml_path))
        finally:
            xml_path.unlink(missing_ok=True)

        result = await self._virsh("net-start", net_name, check=False)
        if result.returncode != 0 and "already active" not in result.stderr.lower():
            await self._remove_session_network(domain)
            raise self._error("net-start", result)
        logger.info("Session network started", network=net_name, subnet=network.cidr)

    async def _remove_session_network(self, domain: str) -> None:
        net_name = session_network_name(domain)
        for command in ("net-destroy", "net-undefine"):
            result = await self._virsh(command, net_name, check=False)
            if result.returncode != 0:
                stderr = result.stderr.lower()
                if not any(m in stderr for m in NETWORK_MISSING_MARKERS):
                    raise self._error(command, result)

    async def start(self, name: str) -> None:
        result = await self._virsh("start", name, check=False)
        if result.returncode != 0 and "already active" not in result.stderr.lower():
            raise self._error("start", result)
        logger.info("Domain started", domain=name)

    async def stop(self, name: str) -> None:
        """Force off a domain. Stopping a shut-off or missing domain is not an error."""
        result = await self._virsh("destroy", name, check=False)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if not any(m in stderr for m in NOT_RUNNING_MARKERS + MISSING_MARKERS):
                raise self._error("destroy", result)
        logger.info("Domain stopped", domain=name)

    async def delete(self, name: str) -> None:
        """
        Undefine a domain and remove its overlay disk and session network.

        Missing pieces are ignored.
        """
        result = await self._virsh("undefine", name, "--snapshots-metadata", check=False)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if not any(m in stderr for m in MISSING_MARKERS):
                raise self._error("undefine", result)

        self._overlay_path(name).unlink(missing_ok=True)
        await self._remove_session_network(name)
        logger.info("Domain deleted", domain=name)

    async def snapshot(self, name: str, snapshot_name: str) -> str:
        await self._virsh(
            "snapshot-create-as", name, snapshot_name,
            "--description", f"labrange snapshot {snapshot_name}",
            "--atomic",
        )
        logger.info("Domain snapshot created", domain=name, snapshot=snapshot_name)
        return snapshot_name

    async def get_status(self, name: str) -> str:
        """Domain state as reported by libvirt, or "not found"."""
        result = await self._virsh("domstate", name, check=False)
        if result.returncode != 0:
            if any(m in result.stderr.lower() for m in MISSING_MARKERS):
                return "not found"
            raise self._error("domstate", result)
        return result.stdout.strip()

    async def list_domains(self) -> List[str]:
        result = await self._virsh("list", "--all", "--name")
        return [
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip().startswith(DOMAIN_PREFIX)
        ]

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    async def get_address(
        self,
        name: str,
        mac: str,
        expected_ip: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Poll the session network's DHCP leases until the MAC has an IPv4.

        Args:
            name: Domain whose session network is queried
            mac: Interface MAC of the domain
            expected_ip: Reserved address; other leases are ignored

        Raises:
            BootTimeoutError: No matching lease appeared within the timeout
        """
        timeout = self.boot_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        net_name = session_network_name(name)
        seen = None

        while True:
            result = await self._virsh(
                "net-dhcp-leases", net_name, "--mac", mac, check=False,
            )
            if result.returncode == 0:
                address = parse_lease_address(result.stdout, mac)
                if address and (expected_ip is None or address == expected_ip):
                    return address
                if address and address != seen:
                    seen = address
                    logger.warning(
                        "Lease does not match reservation",
                        domain=name,
                        address=address,
                        expected=expected_ip,
                    )

            if loop.time() >= deadline:
                wanted = f" ({expected_ip})" if expected_ip else ""
                raise BootTimeoutError(f"No DHCP lease{wanted} for {mac} after {timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def wait_for_port(self, host: str, port: int, timeout: Optional[float] = None) -> None:
        """
        Wait until a TCP port accepts connections.

        Raises:
            BootTimeoutError: The port never opened within the timeout
        """
        timeout = self.boot_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port),
                    timeout=self.poll_interval,
                )
                writer.close()
                await writer.wait_closed()
                return
            except (OSError, asyncio.TimeoutError):
                pass

            if loop.time() >= deadline:
                raise BootTimeoutError(f"{host}:{port} not reachable after {timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def ping(self) -> dict:
        """Health probe against the libvirt daemon."""
        try:
            result = await self._virsh("uri", check=False)
        except HypervisorError as e:
            return {"status": "unhealthy", "error": str(e)}
        if result.returncode != 0:
            return {"status": "unhealthy", "error": result.stderr.strip()}
        return {"status": "healthy", "uri": result.stdout.strip()}

    # ------------------------------------------------------------------
    # Domain XML
    # ------------------------------------------------------------------

    def render_domain_xml(
        self,
        name: str,
        disk_path: Path,
        sizing: VMSizing,
        network: NetworkAllocation,
        mac: str,
    ) -> str:
        if network.mode == NetworkMode.NAT:
            interface = f"""
    <interface type='user'>
      <backend type='passt'/>
      <mac address='{mac}'/>
      <portForward proto='tcp'>
        <range start='{network.ssh_port}' to='22'/>
        <range start='{network.web_port}' to='80'/>
      </portForward>
      <model type='virtio'/>
    </interface>"""
        else:
            interface = f"""
    <interface type='network'>
      <source network='{escape(session_network_name(name))}'/>
      <mac address='{mac}'/>
      <model type='virtio'/>
    </interface>"""

        return f"""<domain type='kvm'>
  <name>{escape(name)}</name>
  <memory unit='MiB'>{sizing.ram_mb}</memory>
  <vcpu>{sizing.vcpus}</vcpu>
  <os>
    <type arch='x86_64' machine='q35'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features><acpi/><apic/></features>
  <cpu mode='host-passthrough'/>
  <on_poweroff>destroy</on_poweroff>
  <on_crash>destroy</on_crash>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='{escape(str(disk_path))}'/>
      <target dev='vda' bus='virtio'/>
    </disk>{interface}
    <serial type='pty'/>
    <console type='pty'/>
  </devices>
</domain>
"""

    def render_network_xml(self, net_name: str, network: NetworkAllocation, mac: str) -> str:
        """
        Routed network for one bridge-mode session.

        The host holds the gateway address, so VPN clients routed into the
        subnet reach the VM. DHCP only ever hands the session MAC its
        reserved address.
        """
        return f"""<network>
  <name>{escape(net_name)}</name>
  <forward mode='route'/>
  <ip address='{network.gateway}' netmask='{network.netmask}'>
    <dhcp>
      <range start='{network.vm_ip}' end='{network.vm_ip}'/>
      <host mac='{mac}' ip='{network.vm_ip}'/>
    </dhcp>
  </ip>
</network>
"""

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def _overlay_path(self, name: str) -> Path:
        return self.session_disks_dir / f"{name}.qcow2"

    async def _virsh(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return await self._run(self.virsh_binary, "-c", self.libvirt_uri, *args, check=check)

    async def _run(self, *cmd: str, check: bool = True) -> subprocess.CompletedProcess:
        """
        Run a CLI command, retrying transient failures.

        Args:
            cmd: Program and arguments
            check: Raise on non-zero exit status

        Returns:
            The completed process; non-zero exits are returned when check is False
        """
        command = cmd[3] if cmd[0] == self.virsh_binary and len(cmd) > 3 else cmd[0]

        def _count_retry(retry_state) -> None:
            HYPERVISOR_RETRIES.labels(command=command).inc()
            logger.warning(
                "Retrying hypervisor command",
                command=command,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientHypervisorError),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            before_sleep=_count_retry,
            reraise=True,
        ):
            with attempt:
                result = await self._exec(list(cmd))
                if result.returncode != 0:
                    stderr = result.stderr.lower()
                    if any(marker in stderr for marker in TRANSIENT_MARKERS):
                        raise TransientHypervisorError(
                            f"{command} failed transiently: {result.stderr.strip()}",
                            command=command,
                            stderr=result.stderr,
                        )
                    if check:
                        raise self._error(command, result)
        return result

    async def _exec(self, cmd: List[str]) -> subprocess.CompletedProcess:
        logger.debug("Running hypervisor command", command=" ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise HypervisorError(f"Hypervisor tool not installed: {cmd[0]}", command=cmd[0]) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TransientHypervisorError(
                f"{cmd[0]} timed out after {self.command_timeout}s",
                command=cmd[0],
            )

        return subprocess.CompletedProcess(
            args=cmd,
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    @staticmethod
    def _error(command: str, result: subprocess.CompletedProcess) -> HypervisorError:
        return HypervisorError(
            f"{command} failed with exit code {result.returncode}: {result.stderr.strip()}",
            command=command,
            stderr=result.stderr,
        )


def parse_lease_address(output: str, mac: str) -> Optional[str]:
    """
    Extract the IPv4 address leased to a MAC from `virsh net-dhcp-leases`.

    Rows look like:
        2024-01-01 10:00:00  52:54:00:aa:bb:cc  ipv4  192.168.122.45/24  host  -
    """
    mac = mac.lower()
    for line in output.splitlines():
        tokens = line.split()
        if mac not in (t.lower() for t in tokens):
            continue
        for token in tokens:
            if "/" in token and token.count(".") == 3:
                return token.split("/", 1)[0]
    return None
