"""
Lab Range - Rate Limiting
Shared slowapi limiter; limits are read from settings at request time.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from labrange.core.config import Settings

limiter = Limiter(
    key_func=get_remote_address,
    strategy="fixed-window",
)

_limits = {"submit": "30/minute"}


def submit_limit() -> str:
    return _limits["submit"]


def configure_limiter(settings: Settings) -> Limiter:
    """Apply settings to the shared limiter."""
    _limits["submit"] = settings.rate_limit_submit
    limiter.enabled = settings.rate_limit_enabled
    return limiter
