"""
Flag Service - per-session flag generation and in-guest placement

Flags are generated and recorded before injection is attempted, so a
session stays scoreable even when the guest never accepts our SSH
connection. Injection is best-effort with retry and path fallback.
"""

import asyncio
import posixpath
import secrets
import shlex
from dataclasses import dataclass, field
from string import Template
from typing import Any, Callable, Dict, List, Optional

import paramiko
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import InjectionFailure
from ..models import Credentials, FlagSlot, FlagType, Lab

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 12

# Errors raised while sshd is still coming up
CONNECT_ERRORS = (paramiko.SSHException, OSError, EOFError)

ShellFactory = Callable[[str, int, Credentials], Any]


@dataclass
class InjectionReport:
    """Where each flag ended up, and what went wrong on the way."""
    paths: Dict[FlagType, str] = field(default_factory=dict)
    attempts: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return len(self.paths) == len(FlagType)


def candidate_paths(lab: Lab) -> Dict[FlagType, List[str]]:
    """Lab-configured paths first, then the conventional locations."""
    username = lab.default_credentials.username
    fallbacks = {
        FlagType.USER: [f"/home/{username}/user.txt", "/tmp/user.txt"],
        FlagType.ROOT: ["/root/root.txt"],
    }
    paths: Dict[FlagType, List[str]] = {}
    for flag_type in FlagType:
        configured = lab.flags[flag_type].paths if flag_type in lab.flags else []
        paths[flag_type] = list(dict.fromkeys(configured + fallbacks[flag_type]))
    return paths


class FlagService:
    """
    Generates unguessable flags and writes them into session VMs.

    Args:
        attempts: SSH connection attempts before giving up
        backoff: Multiplier for the exponential wait between attempts
        connect_timeout: Per-connection timeout in seconds
        shell_factory: Opens an SSH client; defaults to paramiko
    """

    def __init__(
        self,
        attempts: int = 20,
        backoff: float = 5.0,
        connect_timeout: int = 10,
        shell_factory: Optional[ShellFactory] = None,
    ):
        self.attempts = attempts
        self.backoff = backoff
        self.connect_timeout = connect_timeout
        self._shell_factory = shell_factory or self._connect

    @classmethod
    def from_settings(cls, settings) -> "FlagService":
        return cls(
            attempts=settings.flag_injection_attempts,
            backoff=settings.flag_injection_backoff_seconds,
            connect_timeout=settings.ssh_connect_timeout,
        )

    def generate(self, session_id: str, lab: Lab) -> Dict[FlagType, FlagSlot]:
        """Generate fresh user and root flags for a session."""
        flags = {}
        for flag_type in FlagType:
            template = lab.flags[flag_type]
            value = Template(template.pattern).substitute(
                type=flag_type.value,
                lab=lab.slug,
                token=secrets.token_hex(TOKEN_BYTES),
            )
            flags[flag_type] = FlagSlot(
                flag_type=flag_type,
                expected=value,
                points=template.points,
            )
        logger.debug("Flags generated", session_id=session_id, lab_id=lab.id)
        return flags

    async def inject(
        self,
        address: str,
        port: int,
        credentials: Credentials,
        flags: Dict[FlagType, FlagSlot],
        candidate_paths: Dict[FlagType, List[str]],
        root_credentials: Optional[Credentials] = None,
    ) -> InjectionReport:
        """
        Write flags into the guest over SSH.

        Retries connection failures with exponential backoff. Each flag is
        written to the first candidate path that accepts it.

        Returns:
            Report with the path used per flag

        Raises:
            InjectionFailure: A flag could not be placed anywhere, or the
                guest never accepted a connection
        """
        report = InjectionReport()

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(CONNECT_ERRORS),
                stop=stop_after_attempt(self.attempts),
                wait=wait_exponential(multiplier=self.backoff, max=30),
                reraise=False,
            ):
                with attempt:
                    report.attempts = attempt.retry_state.attempt_number
                    await asyncio.to_thread(
                        self._place_flags,
                        address,
                        port,
                        credentials,
                        flags,
                        candidate_paths,
                        root_credentials,
                        report,
                    )
        except RetryError as e:
            cause = e.last_attempt.exception()
            report.errors.append(f"ssh {address}:{port} unreachable: {cause}")
            logger.warning(
                "Flag injection gave up",
                address=address,
                port=port,
                attempts=report.attempts,
                error=str(cause),
            )
            raise InjectionFailure(report.errors[-1]) from cause

        if not report.complete:
            missing = [t.value for t in FlagType if t not in report.paths]
            raise InjectionFailure(f"Could not place flags: {', '.join(missing)}")

        for flag_type, path in report.paths.items():
            flags[flag_type].path = path

        logger.info(
            "Flags injected",
            address=address,
            port=port,
            attempts=report.attempts,
        )
        return report

    # ------------------------------------------------------------------
    # Blocking SSH work (runs in a worker thread)
    # ------------------------------------------------------------------

    def _place_flags(
        self,
        address: str,
        port: int,
        credentials: Credentials,
        flags: Dict[FlagType, FlagSlot],
        candidate_paths: Dict[FlagType, List[str]],
        root_credentials: Optional[Credentials],
        report: InjectionReport,
    ) -> None:
        client = self._shell_factory(address, port, credentials)
        root_client = None
        try:
            if root_credentials is not None:
                root_client = self._shell_factory(address, port, root_credentials)

            for flag_type, slot in flags.items():
                if flag_type in report.paths:
                    continue
                privileged = flag_type == FlagType.ROOT
                for path in candidate_paths.get(flag_type, []):
                    if privileged and root_client is not None:
                        placed = self._write_direct(root_client, path, slot.expected, "600")
                    elif privileged:
                        placed = self._write_privileged(client, credentials, path, slot.expected)
                    else:
                        placed = self._write_direct(client, path, slot.expected, "644")

                    if placed:
                        report.paths[flag_type] = path
                        break
                    report.errors.append(f"{flag_type.value} flag rejected at {path}")
        finally:
            client.close()
            if root_client is not None:
                root_client.close()

    def _write_direct(self, client: Any, path: str, value: str, mode: str) -> bool:
        return self._exec(client, _write_command(path, value, mode)) == 0

    def _write_privileged(
        self,
        client: Any,
        credentials: Credentials,
        path: str,
        value: str,
    ) -> bool:
        """Write through sudo, falling back to a direct write for root logins."""
        inner = shlex.quote(_write_command(path, value, "600"))
        if credentials.password:
            status = self._exec(
                client,
                f"sudo -S -p '' sh -c {inner}",
                stdin_data=credentials.password + "\n",
            )
        else:
            status = self._exec(client, f"sudo -n sh -c {inner}")

        if status == 0:
            return True
        return self._write_direct(client, path, value, "600")

    def _exec(self, client: Any, command: str, stdin_data: Optional[str] = None) -> int:
        stdin, stdout, _ = client.exec_command(command, timeout=self.connect_timeout)
        try:
            if stdin_data is not None:
                stdin.write(stdin_data)
                stdin.flush()
        finally:
            stdin.close()
        return stdout.channel.recv_exit_status()

    def _connect(self, address: str, port: int, credentials: Credentials) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=address,
            port=port,
            username=credentials.username,
            password=credentials.password,
            key_filename=credentials.key_path,
            look_for_keys=False,
            allow_agent=False,
            timeout=self.connect_timeout,
            banner_timeout=self.connect_timeout,
            auth_timeout=self.connect_timeout,
        )
        return client


def _write_command(path: str, value: str, mode: str) -> str:
    directory = posixpath.dirname(path) or "/"
    return (
        f"mkdir -p {shlex.quote(directory)} && "
        f"printf '%s\\n' {shlex.quote(value)} > {shlex.quote(path)} && "
        f"chmod {mode} {shlex.quote(path)}"
    )
