"""
Scoring Hook - notifies the external progress/badge system of accepted flags
"""

from typing import Optional, Protocol

import aiohttp
import structlog

from ..models import FlagType, ScoringResult

logger = structlog.get_logger(__name__)


class ScoringHook(Protocol):
    """Called once per accepted flag, synchronously with the submission."""

    async def on_flag_accepted(
        self,
        user_id: str,
        lab_id: str,
        flag_type: FlagType,
        points: int,
    ) -> ScoringResult:
        ...


class NullScoringHook:
    """Used when no scoring system is configured."""

    async def on_flag_accepted(
        self,
        user_id: str,
        lab_id: str,
        flag_type: FlagType,
        points: int,
    ) -> ScoringResult:
        return ScoringResult()


class HttpScoringHook:
    """
    Posts accepted flags to a scoring endpoint.

    The endpoint answers with ``{"new_badges": [...], "ranking": N}``;
    both keys are optional.
    """

    def __init__(self, url: str, timeout: float = 5.0, secret: Optional[str] = None):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.secret = secret

    async def on_flag_accepted(
        self,
        user_id: str,
        lab_id: str,
        flag_type: FlagType,
        points: int,
    ) -> ScoringResult:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"

        payload = {
            "user_id": user_id,
            "lab_id": lab_id,
            "flag_type": flag_type.value,
            "points": points,
        }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=payload, headers=headers) as resp:
                resp.raise_for_status()
                data = await resp.json()

        logger.debug("Scoring hook notified", user_id=user_id, lab_id=lab_id)
        return ScoringResult(
            new_badges=list(data.get("new_badges") or []),
            ranking=data.get("ranking"),
        )


def create_scoring_hook(settings) -> ScoringHook:
    if settings.scoring_hook_url:
        return HttpScoringHook(
            settings.scoring_hook_url,
            timeout=settings.scoring_hook_timeout,
        )
    return NullScoringHook()
