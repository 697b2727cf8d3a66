"""
Daily generation quota.

Counters are keyed ``<scope>:<identifier>:<YYYY-MM-DD>`` on the UTC date, so
a new day is simply a key that does not exist yet. Each increment also sets
the counter to expire at the next UTC midnight.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from datamocker import config
from datamocker.counter_store import CounterStore
from datamocker.errors import StorageUnavailable

logger = logging.getLogger(__name__)

QUOTA_SCOPE = "free-gen"
STORAGE_WARNING = "Usage tracking is temporarily unavailable; the daily limit is not being enforced."


def _json_number(value: float) -> Optional[float]:
    # JSON has no infinity; unlimited is rendered as null
    if isinstance(value, float) and math.isinf(value):
        return None
    return value


@dataclass
class QuotaStatus:
    allowed: bool
    limit: float
    remaining: float
    reset_at: int
    used: int = 0
    warning: Optional[str] = None

    def usage_block(self) -> Dict[str, Any]:
        """The ``usage`` object returned to API callers."""
        block: Dict[str, Any] = {
            "limit": _json_number(self.limit),
            "remaining": _json_number(self.remaining),
            "resetTimestamp": self.reset_at,
        }
        if self.warning:
            block["warning"] = self.warning
        return block


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    """Per-identifier, per-UTC-day generation counters"""

    def __init__(
        self,
        store: CounterStore,
        limit_for: Callable[[bool], int] = config.get_daily_limit,
        clock: Callable[[], datetime] = _utc_now,
        scope: str = QUOTA_SCOPE,
    ):
        self.store = store
        self.limit_for = limit_for
        self.clock = clock
        self.scope = scope

    def _next_midnight(self, now: datetime) -> datetime:
        tomorrow = (now + timedelta(days=1)).date()
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)

    def key_for(self, identifier: str, now: Optional[datetime] = None) -> str:
        now = now or self.clock()
        return f"{self.scope}:{identifier}:{now.strftime('%Y-%m-%d')}"

    def reset_timestamp(self, now: Optional[datetime] = None) -> int:
        """Unix timestamp of the next UTC midnight"""
        return int(self._next_midnight(now or self.clock()).timestamp())

    def seconds_until_reset(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        return max(1, math.ceil((self._next_midnight(now) - now).total_seconds()))

    def check(self, identifier: str, bypass: bool = False, authenticated: bool = False) -> QuotaStatus:
        """Decide whether ``identifier`` may run one more generation today."""
        if bypass:
            return QuotaStatus(allowed=True, limit=math.inf, remaining=math.inf, reset_at=0)

        limit = self.limit_for(authenticated)
        now = self.clock()
        reset_at = self.reset_timestamp(now)
        try:
            used = self.store.get(self.key_for(identifier, now))
        except StorageUnavailable:
            logger.warning(f"Quota check for {identifier} failed open: counter store unavailable")
            return QuotaStatus(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=reset_at,
                warning=STORAGE_WARNING,
            )

        return QuotaStatus(
            allowed=used < limit,
            limit=limit,
            remaining=max(0, limit - used),
            reset_at=reset_at,
            used=used,
        )

    def current(self, identifier: str, authenticated: bool = False) -> QuotaStatus:
        """Read-only usage snapshot for display; ``allowed`` is informational only."""
        return self.check(identifier, bypass=False, authenticated=authenticated)

    def increment(self, identifier: str) -> None:
        """Count one successful generation. Storage failures are logged and swallowed."""
        now = self.clock()
        key = self.key_for(identifier, now)
        try:
            count = self.store.increment(key)
            self.store.expire(key, self.seconds_until_reset(now))
        except StorageUnavailable:
            logger.exception(f"Failed to record generation for {identifier}; usage left uncounted")
            return
        logger.info(f"Daily usage for {identifier} is now {count}")
