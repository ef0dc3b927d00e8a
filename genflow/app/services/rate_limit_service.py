# genflow/app/services/rate_limit_service.py
"""
Rate admission service.
Gates every generation submission per caller and resource kind.
"""
from __future__ import annotations

import logging
import math
import os
from typing import Optional

from genflow.app.domain.errors import AdmissionDeniedError
from genflow.app.domain.models import AdmissionDecision, CallerIdentity
from genflow.app.infra.db.base import RateWindowStore
from genflow.app.infra.db.memory_store import InMemoryRateWindowStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000"))

# Calls per window, by resource and tier (basic, pro, enterprise)
LIMITS: dict[str, dict[str, int]] = {
    "image": {"basic": 30, "pro": 120, "enterprise": 600},
    "video": {"basic": 6, "pro": 30, "enterprise": 120},
    "site": {"basic": 12, "pro": 60, "enterprise": 200},
    "object": {"basic": 18, "pro": 80, "enterprise": 300},
    "loop_ads": {"basic": 4, "pro": 4, "enterprise": 4},
}


def resolve_limit(resource: str, tier: Optional[str] = None) -> int:
    """Limit for a resource; tiers are matched by substring, unknown resources use image."""
    normalized = (tier or "basic").lower()
    limits = LIMITS.get(resource, LIMITS["image"])
    if "enterprise" in normalized:
        return limits["enterprise"]
    if "pro" in normalized:
        return limits["pro"]
    return limits["basic"]


def build_rate_key(resource: str, caller_id: Optional[str]) -> str:
    return f"{resource}:{(caller_id or '').strip() or 'anonymous'}"


def rate_limit_headers(decision: AdmissionDecision, window_ms: int = DEFAULT_WINDOW_MS) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(window_ms / 1000)),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after_ms / 1000)))
    return headers


class RateLimitService:
    """
    Fixed-window admission per caller+resource key.

    Responsibilities:
    - Resolve the caller's limit from its tier
    - Count the call against the shared window store
    - Turn a denial into AdmissionDeniedError for HTTP callers
    """

    def __init__(
        self,
        store: Optional[RateWindowStore] = None,
        window_ms: int = DEFAULT_WINDOW_MS,
    ):
        self._store = store or InMemoryRateWindowStore()
        self.window_ms = window_ms

    def admit(self, key: str, limit: int, window_ms: Optional[int] = None) -> AdmissionDecision:
        """
        Count one call against a key.

        Args:
            key: caller+resource key (see build_rate_key)
            limit: Max admitted calls per window
            window_ms: Window length, defaults to the service window

        Returns:
            AdmissionDecision; never raises
        """
        decision = self._store.hit(key, limit, window_ms or self.window_ms)
        if not decision.allowed:
            logger.info(
                "rate_limit.denied key=%s limit=%d retry_after_ms=%d",
                key,
                limit,
                decision.retry_after_ms,
            )
        return decision

    def check(self, identity: CallerIdentity, resource: str) -> AdmissionDecision:
        limit = resolve_limit(resource, identity.tier)
        return self.admit(build_rate_key(resource, identity.caller_id), limit)

    def enforce(self, identity: CallerIdentity, resource: str) -> AdmissionDecision:
        """
        Admit a call or raise.

        Raises:
            AdmissionDeniedError: If the caller exhausted its window
        """
        decision = self.check(identity, resource)
        if not decision.allowed:
            raise AdmissionDeniedError(
                message="Rate limit exceeded. Wait a moment and try again.",
                retry_after_ms=decision.retry_after_ms,
                limit=decision.limit,
            )
        return decision

    def reset(self, key: Optional[str] = None) -> None:
        self._store.reset(key)
