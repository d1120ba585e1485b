"""
Prometheus metrics for session orchestration.
"""

from prometheus_client import Counter, Gauge

SESSIONS_STARTED = Counter(
    "labrange_sessions_started_total",
    "Lab sessions that reached running",
    ["lab_id"],
)

SESSIONS_FAILED = Counter(
    "labrange_sessions_failed_total",
    "Lab sessions that failed before running",
    ["lab_id", "reason"],
)

SESSIONS_ENDED = Counter(
    "labrange_sessions_ended_total",
    "Lab sessions torn down, by stop reason",
    ["reason"],
)

ACTIVE_SESSIONS = Gauge(
    "labrange_active_sessions",
    "Sessions currently starting or running",
)

FLAG_SUBMISSIONS = Counter(
    "labrange_flag_submissions_total",
    "Flag submissions by type and outcome",
    ["flag_type", "outcome"],
)

TEARDOWN_STEP_FAILURES = Counter(
    "labrange_teardown_step_failures_total",
    "Teardown steps that raised",
    ["step"],
)

HYPERVISOR_RETRIES = Counter(
    "labrange_hypervisor_retries_total",
    "Hypervisor commands retried after a transient failure",
    ["command"],
)

SWEEP_RUNS = Counter(
    "labrange_cleanup_sweeps_total",
    "Cleanup sweeps by outcome",
    ["outcome"],
)
