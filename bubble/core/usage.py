"""
Day-scoped request counters.

Tracks daily and lifetime request counts against a soft daily limit.
State lives in an injected key/value store so it survives restarts and
can be reset deterministically in tests.
"""

import logging
from datetime import date
from typing import Callable, Dict, Optional, Protocol

from .errors import QuotaExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 50
CREDITS_PER_REQUEST = 5

KEY_DAILY_LIMIT = "bubble_daily_limit"
KEY_USAGE_DATE = "bubble_usage_date"
KEY_USAGE_COUNT = "bubble_usage_count"
KEY_LIFETIME_COUNT = "bubble_lifetime_count"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryStore:
    """Dict-backed store for ephemeral sessions and tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


def _parse_int(raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring corrupt counter value %r", raw)
        return default


class UsageCounters:
    """Daily and lifetime request counters with a soft daily limit.

    Every attempt is counted, including retries. Reaching the limit only
    produces a warning; calls are never blocked.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], date] = date.today,
        default_limit: int = DEFAULT_DAILY_LIMIT,
    ):
        self.store = store
        self.clock = clock
        self.daily_limit = default_limit
        self.daily_count = 0
        self.lifetime_count = 0
        self.usage_date: Optional[str] = None

    def load(self) -> "UsageCounters":
        """Read persisted counters, resetting the daily count on a new day."""
        self.daily_limit = _parse_int(self.store.get(KEY_DAILY_LIMIT), self.daily_limit)
        self.lifetime_count = _parse_int(self.store.get(KEY_LIFETIME_COUNT), 0)

        today = self.clock().isoformat()
        if self.store.get(KEY_USAGE_DATE) == today:
            self.usage_date = today
            self.daily_count = _parse_int(self.store.get(KEY_USAGE_COUNT), 0)
        else:
            self._start_day(today)
        return self

    def _start_day(self, today: str) -> None:
        self.usage_date = today
        self.daily_count = 0
        self.store.set(KEY_USAGE_DATE, today)
        self.store.set(KEY_USAGE_COUNT, "0")

    def _roll_over_if_needed(self) -> None:
        today = self.clock().isoformat()
        if self.usage_date != today:
            logger.info("New usage day %s, resetting daily count", today)
            self._start_day(today)

    def record_attempt(self) -> Optional[QuotaExhaustedError]:
        """Count one request attempt.

        Returns:
            A QuotaExhaustedError describing the breach when the soft limit
            is reached, otherwise None. The error is never raised here.
        """
        self._roll_over_if_needed()
        self.daily_count += 1
        self.lifetime_count += 1
        self.store.set(KEY_USAGE_COUNT, str(self.daily_count))
        self.store.set(KEY_LIFETIME_COUNT, str(self.lifetime_count))
        return self.check_limit()

    def check_limit(self) -> Optional[QuotaExhaustedError]:
        if self.daily_count >= self.daily_limit:
            logger.warning("Daily limit of %d requests reached.", self.daily_limit)
            return QuotaExhaustedError(
                f"Daily limit of {self.daily_limit} requests reached."
            )
        return None

    def update_daily_limit(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("daily limit must be > 0")
        self.daily_limit = limit
        self.store.set(KEY_DAILY_LIMIT, str(limit))

    def reset(self) -> None:
        """Zero the daily count for today. Lifetime count is kept."""
        self._start_day(self.clock().isoformat())

    def daily_usage(self) -> Dict[str, int]:
        self._roll_over_if_needed()
        return {"count": self.daily_count, "limit": self.daily_limit}

    def lifetime_stats(self) -> Dict[str, int]:
        # Rough estimate, ~500 tokens in/out per request.
        return {
            "total_requests": self.lifetime_count,
            "estimated_credits": self.lifetime_count * CREDITS_PER_REQUEST,
        }
