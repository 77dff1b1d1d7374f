"""Per-account request limits, one moving window per endpoint category.

Categories and their default allowances:
- generation: 10/minute (submit, on-demand reconcile)
- status: 60/minute (generation reads and listings)
- credits: 30/minute (balance, journal, reservations)
- general: 100/minute (everything else that acts on an account)

Counters live in the storage named by RATE_LIMIT_STORAGE_URI. The default
memory:// store is per process; point it at redis:// to share limits
across workers.
"""

import math
import time

import structlog
from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from genflow.core.config import Settings
from genflow.services.exceptions import RateLimited

logger = structlog.get_logger(__name__)

GENERATION = "generation"
STATUS = "status"
CREDITS = "credits"
GENERAL = "general"


class AccountRateLimiter:
    """Counts requests per (category, account) and rejects the excess."""

    def __init__(
        self, allowances: dict[str, str], storage_uri: str = "memory://", enabled: bool = True
    ):
        self.items: dict[str, RateLimitItem] = {
            category: parse(value) for category, value in allowances.items()
        }
        self.strategy = MovingWindowRateLimiter(storage_from_string(storage_uri))
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccountRateLimiter":
        return cls(
            {
                GENERATION: settings.rate_limit_generation,
                STATUS: settings.rate_limit_status,
                CREDITS: settings.rate_limit_credits,
                GENERAL: settings.rate_limit_general,
            },
            storage_uri=settings.rate_limit_storage_uri,
            enabled=settings.rate_limit_enabled,
        )

    def hit(self, category: str, account_id: str) -> None:
        """Record one request, or refuse it if the window is full.

        Raises:
            RateLimited: Allowance used up; retry_after is the wait in seconds
            KeyError: Unknown category
        """
        item = self.items[category]
        if not self.enabled or self.strategy.hit(item, category, account_id):
            return

        stats = self.strategy.get_window_stats(item, category, account_id)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        logger.warning(
            "rate_limit.exceeded",
            category=category,
            account_id=account_id,
            limit=str(item),
            retry_after=retry_after,
        )
        raise RateLimited(category, retry_after)
