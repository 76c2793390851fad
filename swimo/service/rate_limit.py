from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from swimo.logging import get_logger
from swimo.service.errors import GuestRateLimitedError
from swimo.storage.models import utcnow


class GuestSessionCounter(Protocol):
    def count_recent_guest_sessions(self, user_agent: str, since: datetime) -> int: ...


class GuestRateLimiter:
    """Sliding-window ceiling on guest sessions created per user agent.

    Counting failures never block a sign-in: the limiter logs and lets the
    request through.
    """

    def __init__(
        self,
        store: GuestSessionCounter,
        limit_per_minute: int,
        *,
        window_seconds: int = 60,
        logger=None,
    ) -> None:
        self.store = store
        self.limit = limit_per_minute
        self.window = timedelta(seconds=window_seconds)
        self.logger = logger or get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def check(self, user_agent: str, *, now: Optional[datetime] = None) -> None:
        if not self.enabled:
            return
        since = (now or utcnow()) - self.window
        try:
            count = self.store.count_recent_guest_sessions(user_agent, since)
        except Exception as exc:
            self.logger.warning(
                "guest_rate_count_failed",
                user_agent=user_agent,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if count >= self.limit:
            self.logger.info(
                "guest_rate_limited", user_agent=user_agent, count=count, limit=self.limit
            )
            raise GuestRateLimitedError(
                "guest session limit reached",
                detail={"retry_after_seconds": int(self.window.total_seconds())},
            )
