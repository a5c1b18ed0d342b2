"""
Per-host rate limiting for outbound scrape requests.

Sliding-window log: at most ``limit`` allowed requests per host in any
trailing ``window_seconds``. The limiter is built once at process start
and handed to whatever needs it.
"""

import asyncio
import ipaddress
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlparse

import structlog

from harvester.models.domain import RateLimitResult

UNKNOWN_HOST = "unknown-host"
LOOPBACK_HOSTS = {"localhost"}


class QuotaStoreUnavailable(Exception):
    """The backing quota store could not be reached."""


def normalize_host(locator: str) -> str:
    """
    Rate-limit key for a URL.

    Lowercased with a leading ``www.`` removed. Loopback names and
    numeric IPs are kept verbatim.
    """
    try:
        hostname = urlparse(locator).hostname
    except ValueError:
        return UNKNOWN_HOST
    if not hostname:
        return UNKNOWN_HOST

    hostname = hostname.lower()
    if hostname in LOOPBACK_HOSTS:
        return hostname
    try:
        ipaddress.ip_address(hostname)
        return hostname
    except ValueError:
        pass

    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


class QuotaStore(ABC):
    """Backing state for the sliding windows."""

    @abstractmethod
    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> tuple[bool, int, datetime]:
        """
        Atomically check the window for ``key`` and record the request if allowed.

        Returns:
            (allowed, remaining, reset_at)

        Raises:
            QuotaStoreUnavailable: the backend could not be reached
        """
        pass

    async def reset(self, key: Optional[str] = None):
        """Forget recorded requests for one key, or for all keys."""


class InMemoryQuotaStore(QuotaStore):
    """
    Process-local quota store.

    Features:
    - Per-key asyncio locks, so read-then-increment is race-free
    - Only allowed requests are recorded
    - Hosts with nothing left in the window are forgotten
    """

    def __init__(self):
        self._request_times: dict[str, list[datetime]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def hit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> tuple[bool, int, datetime]:
        window = timedelta(seconds=window_seconds)
        cutoff = now - window
        self._drop_expired(cutoff)

        async with self._locks[key]:
            # Clean old request times
            self._request_times[key] = [
                t for t in self._request_times[key] if t > cutoff
            ]
            times = self._request_times[key]

            if len(times) < limit:
                times.append(now)
                return True, limit - len(times), times[0] + window

            return False, 0, min(times) + window

    def _drop_expired(self, cutoff: datetime):
        stale = [
            key for key, times in self._request_times.items()
            if not times or times[-1] <= cutoff
        ]
        for key in stale:
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            del self._request_times[key]
            self._locks.pop(key, None)

    async def reset(self, key: Optional[str] = None):
        if key is None:
            self._request_times.clear()
        else:
            self._request_times.pop(key, None)


class RateLimiter:
    """
    Sliding-window rate limiter keyed by normalized host.

    Passing ``store=None`` disables enforcement: every request is allowed.
    Store errors are logged and the request is allowed (fail open).
    """

    def __init__(
        self,
        store: Optional[QuotaStore],
        limit: int = 10,
        window_seconds: int = 60,
        logger=None,
    ):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.logger = logger or structlog.get_logger(__name__)

        if store is None:
            self.logger.warning("No quota store configured, rate limiting disabled")

    async def check_limit(self, locator: str) -> RateLimitResult:
        """
        Check and consume quota for the host of ``locator``.

        Args:
            locator: URL about to be fetched

        Returns:
            RateLimitResult with allowed flag, limit, remaining and reset time
        """
        now = datetime.now(timezone.utc)
        host = normalize_host(locator)

        if self.store is None:
            return self._open_result(now)

        try:
            allowed, remaining, reset_at = await self.store.hit(
                host, self.limit, self.window_seconds, now
            )
        except Exception as e:
            self.logger.warning(
                "Rate limit store unavailable, allowing request",
                host=host,
                error=str(e),
            )
            return self._open_result(now)

        if not allowed:
            self.logger.info(
                "Rate limit exceeded",
                host=host,
                limit=self.limit,
                reset_at=reset_at.isoformat(),
            )

        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=remaining,
            reset_at=reset_at,
        )

    def _open_result(self, now: datetime) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=self.limit,
            remaining=self.limit,
            reset_at=now + timedelta(seconds=self.window_seconds),
        )
