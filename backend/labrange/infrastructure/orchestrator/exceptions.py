"""
Orchestrator error taxonomy.

Every error carries a stable reason code and the HTTP status the API layer
answers with.
"""


class OrchestratorError(Exception):
    """Base class for session orchestration errors."""
    code = "ORCHESTRATOR_ERROR"
    status_code = 500


class ConflictError(OrchestratorError):
    """The user already holds a starting or running session."""
    code = "SESSION_CONFLICT"
    status_code = 409


class NotFoundError(OrchestratorError):
    """Unknown or inactive lab, or unknown session."""
    code = "NOT_FOUND"
    status_code = 404


class ExpiredError(OrchestratorError):
    """The session is past its deadline or no longer running."""
    code = "SESSION_EXPIRED"
    status_code = 410


class AlreadySubmittedError(OrchestratorError):
    """That flag has already been accepted for this session."""
    code = "ALREADY_SUBMITTED"
    status_code = 409


class LimitExceededError(OrchestratorError):
    """The session used all of its extensions."""
    code = "LIMIT_EXCEEDED"
    status_code = 403


class InvalidTransitionError(OrchestratorError):
    """A lifecycle transition not allowed from the current status."""
    code = "INVALID_TRANSITION"
    status_code = 409


class AllocationExhausted(OrchestratorError):
    """No free port pair, subnet or host capacity."""
    code = "CAPACITY_EXHAUSTED"
    status_code = 503


class HypervisorError(OrchestratorError):
    """A hypervisor command failed."""
    code = "HYPERVISOR_ERROR"
    status_code = 502

    def __init__(self, message: str, command: str = "", stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class TransientHypervisorError(HypervisorError):
    """A hypervisor failure worth retrying (lock contention, busy resource)."""


class BootTimeoutError(OrchestratorError):
    """The VM never became reachable within the boot timeout."""
    code = "BOOT_TIMEOUT"
    status_code = 504


class VpnUnavailableError(OrchestratorError):
    """The VPN certificate authority is not configured on this host."""
    code = "VPN_UNAVAILABLE"
    status_code = 503


class InjectionFailure(OrchestratorError):
    """Flags could not be placed in the guest. Never fatal to a session."""
    code = "FLAG_INJECTION_FAILED"
    status_code = 500
