"""
Single bounded-timeout HTTP fetch with browser-like headers.

All outcomes come back as values: a RawResponse, or a Failure describing
why nothing usable was fetched.
"""

import asyncio
import random
from typing import Optional, Union
from urllib.parse import urlparse

import httpx
import structlog

from harvester.models.domain import Failure, FailureKind, utc_now
from harvester.services.data_ingestion.base import RawResponse

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, */*"
JSON_ACCEPT = "application/json"

DEFAULT_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": HTML_ACCEPT,
    "Accept-Language": "en-US,en;q=0.9",
}


def is_valid_url(locator: str) -> bool:
    """http(s) URL with a host."""
    try:
        parsed = urlparse(locator)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and bool(parsed.hostname)


class SourceFetcher:
    """
    Performs one GET per call.

    Features:
    - URL validation before any network activity
    - Random pre-request delay (skippable, e.g. for feeds)
    - Hard timeout by cancellation
    - Non-2xx responses reported as failures carrying the status
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
        delay_range: tuple[float, float] = (2.0, 5.0),
        logger=None,
    ):
        """
        Args:
            client: Shared client; when omitted a client is opened per request
            timeout_seconds: Hard limit for the whole request
            delay_range: Bounds in seconds for the random pre-request delay
        """
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.delay_range = delay_range
        self.logger = logger or structlog.get_logger(__name__)

    async def fetch(
        self,
        locator: str,
        pre_delay: bool = True,
        headers: Optional[dict[str, str]] = None,
    ) -> Union[RawResponse, Failure]:
        """
        Fetch a URL.

        Args:
            locator: URL to fetch
            pre_delay: Sleep a random interval from ``delay_range`` first
            headers: Extra headers merged over the browser defaults

        Returns:
            RawResponse on 2xx, otherwise a Failure
        """
        if not is_valid_url(locator):
            self.logger.warning("Invalid URL", locator=locator)
            return Failure(
                locator=locator,
                kind=FailureKind.INVALID_LOCATOR,
                reason=f"Invalid URL format: {locator}",
            )

        if pre_delay:
            await self.pause()

        request_headers = {**DEFAULT_HEADERS, **(headers or {})}

        try:
            response = await asyncio.wait_for(
                self._get(locator, request_headers),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.logger.warning("Request timed out", locator=locator, timeout=self.timeout_seconds)
            return Failure(
                locator=locator,
                kind=FailureKind.NETWORK_FAILURE,
                reason=f"Request timeout after {self.timeout_seconds:g} seconds: {locator}",
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.logger.warning("HTTP error", locator=locator, error=str(e))
            return Failure(
                locator=locator,
                kind=FailureKind.NETWORK_FAILURE,
                reason=f"Request failed: {e.__class__.__name__}: {e}",
            )

        if not response.is_success:
            self.logger.warning(
                "Non-success status",
                locator=locator,
                status=response.status_code,
                reason=response.reason_phrase,
            )
            return Failure(
                locator=locator,
                kind=FailureKind.NETWORK_FAILURE,
                reason=f"HTTP {response.status_code} {response.reason_phrase}: {locator}",
                status_code=response.status_code,
            )

        return RawResponse(
            url=locator,
            final_url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get("content-type", ""),
            fetched_at=utc_now(),
        )

    async def pause(self):
        """Random politeness delay drawn from ``delay_range``."""
        low, high = self.delay_range
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high))

    async def _get(self, locator: str, headers: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.get(locator, headers=headers, follow_redirects=True)

        async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
            return await client.get(locator, headers=headers)
