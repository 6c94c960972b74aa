"""
HTTP transport and the retrying fetcher built on top of it.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from http import HTTPStatus
from typing import Any, Dict, Mapping, Optional

import aiohttp
import structlog

from quarrycrawl.config.config import CrawlerConfig, CrawlOptions
from quarrycrawl.crawler.url_normalizer import is_http_url
from quarrycrawl.observability.metrics import METRICS
from quarrycrawl.protocols import FetchResult, HttpTransport, TransportResponse, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0

# Errors that mean the request never produced a response
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a plain mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> float:
    """
    Seconds to wait according to a Retry-After header value.

    Accepts delta-seconds or an HTTP-date. Missing, unparseable or past
    values fall back to DEFAULT_RETRY_AFTER_SECONDS.
    """
    if value is None or not value.strip():
        return DEFAULT_RETRY_AFTER_SECONDS

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return DEFAULT_RETRY_AFTER_SECONDS
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)

    delay = (retry_at - (now or datetime.now(timezone.utc))).total_seconds()
    if delay <= 0:
        return DEFAULT_RETRY_AFTER_SECONDS
    return delay


class HttpClient:
    """aiohttp-backed transport with pooled connections."""

    def __init__(self, config: Optional[CrawlerConfig] = None):
        self.config = config or CrawlerConfig()
        self.session: Optional[aiohttp.ClientSession] = None
        self._is_initialized = False

    async def initialize(self) -> None:
        """Initialize the HTTP client session."""
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=self.config.max_connections,
                limit_per_host=self.config.max_connections_per_host,
                ttl_dns_cache=self.config.dns_cache_ttl,
                use_dns_cache=True,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self.session = aiohttp.ClientSession(connector=connector)
            self._is_initialized = True
            logger.info(
                "HTTP client session initialized",
                max_connections=self.config.max_connections,
                max_connections_per_host=self.config.max_connections_per_host,
            )

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self.session:
            await self.session.close()
            self.session = None
        self._is_initialized = False
        logger.info("HTTP client closed")

    async def __aenter__(self) -> "HttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def get(self, url: str, headers: Mapping[str, str], timeout: float) -> TransportResponse:
        """Perform a single GET. Network failures propagate to the caller."""
        if not self._is_initialized or self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")

        async with self.session.get(
            url,
            headers=dict(headers),
            timeout=aiohttp.ClientTimeout(total=timeout),
            allow_redirects=self.config.follow_redirects,
        ) as response:
            body = await response.read()
            return TransportResponse(
                status_code=response.status,
                headers=dict(response.headers),
                body=body,
                final_url=str(response.url),
            )


class Fetcher:
    """
    Performs one logical fetch made of up to ``retry_budget + 1`` attempts.

    Network errors and timeouts back off ``2**k`` seconds after attempt k.
    A 429 waits for the server's Retry-After instead. Every failure is
    returned as a FetchResult with ``is_success=False``; only cancellation
    and invalid arguments raise.
    """

    def __init__(self, transport: HttpTransport, options: Optional[CrawlOptions] = None):
        self.transport = transport
        self.options = options or CrawlOptions()
        self._in_flight_requests = 0

    @staticmethod
    def backoff_delay(attempt: int) -> float:
        """Delay after the 0-indexed ``attempt`` failed: 1s, 2s, 4s..."""
        return float(2**attempt)

    def _request_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.options.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

    async def fetch(
        self,
        url: str,
        *,
        depth: int = 0,
        max_retries: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FetchResult:
        """
        Fetch ``url`` with retries and backoff.

        Args:
            url: Absolute http(s) URL to fetch
            depth: Crawl depth recorded on the result
            max_retries: Override for the options' retry budget
            cancel_event: When set, retry waits end early and no further attempt is made

        Returns:
            FetchResult describing the final response or the last error
        """
        if not isinstance(url, str) or not url.strip():
            raise ValueError("url must be a non-empty string")

        start_time = time.monotonic()
        if not is_http_url(url):
            logger.warning("Malformed URL", url=url)
            return self._failure(url, depth, start_time, "Unsupported or malformed URL", attempts=0)

        retries = self.options.retry_budget if max_retries is None else max_retries
        max_attempts = retries + 1
        last_error = "Unknown error after retries"

        self._track_in_flight(1)
        try:
            for attempt in range(max_attempts):
                has_next = attempt + 1 < max_attempts
                try:
                    response = await self.transport.get(url, self._request_headers(), self.options.timeout)
                except TRANSIENT_ERRORS as e:
                    last_error = _describe_error(e)
                    logger.warning(
                        "Request failed",
                        url=url,
                        attempt=attempt + 1,
                        max_attempts=max_attempts,
                        error=last_error,
                    )
                    if has_next:
                        reason = "timeout" if isinstance(e, asyncio.TimeoutError) else "network"
                        METRICS["crawler_retries_total"].labels(reason=reason).inc()
                        if await sleep_unless_cancelled(self.backoff_delay(attempt), cancel_event):
                            logger.info("Retry abandoned, crawl cancelled", url=url, attempt=attempt + 1)
                            return self._failure(url, depth, start_time, last_error, attempts=attempt + 1)
                    continue
                except Exception as e:
                    logger.error("Unexpected error during fetch", url=url, error=str(e), exc_info=True)
                    return self._failure(url, depth, start_time, _describe_error(e), attempts=attempt + 1)

                if response.status_code == HTTPStatus.TOO_MANY_REQUESTS and has_next:
                    delay = parse_retry_after(get_header(response.headers, "Retry-After"))
                    last_error = "HTTP 429 Too Many Requests"
                    logger.info("Rate limited, honouring Retry-After", url=url, delay=delay, attempt=attempt + 1)
                    METRICS["crawler_retries_total"].labels(reason="rate_limited").inc()
                    if await sleep_unless_cancelled(delay, cancel_event):
                        logger.info("Retry abandoned, crawl cancelled", url=url, attempt=attempt + 1)
                        return self._build_result(url, depth, start_time, response, attempts=attempt + 1)
                    continue

                return self._build_result(url, depth, start_time, response, attempts=attempt + 1)

            logger.warning("Retries exhausted", url=url, attempts=max_attempts, error=last_error)
            return self._failure(url, depth, start_time, last_error, attempts=max_attempts)
        finally:
            self._track_in_flight(-1)

    def _track_in_flight(self, delta: int) -> None:
        self._in_flight_requests += delta
        METRICS["crawler_in_flight_requests"].inc(delta)

    def _build_result(
        self, url: str, depth: int, start_time: float, response: TransportResponse, attempts: int
    ) -> FetchResult:
        elapsed = time.monotonic() - start_time
        status = response.status_code
        is_success = 200 <= status < 300

        content_type = get_header(response.headers, "Content-Type")
        if content_type:
            content_type = content_type.split(";", 1)[0].strip().lower()

        METRICS["crawler_responses_total"].labels(status_class=f"{status // 100}xx").inc()
        METRICS["crawler_fetch_latency_seconds"].observe(elapsed)

        return FetchResult(
            url=url,
            final_url=response.final_url or url,
            status_code=status,
            is_success=is_success,
            body=response.body if is_success else None,
            headers=dict(response.headers),
            content_type=content_type,
            content_length=len(response.body),
            response_time_ms=elapsed * 1000,
            crawled_at=utc_now(),
            depth=depth,
            error_message=None if is_success else _status_message(status),
            attempts=attempts,
        )

    def _failure(self, url: str, depth: int, start_time: float, message: str, attempts: int) -> FetchResult:
        return FetchResult(
            url=url,
            final_url=url,
            status_code=0,
            is_success=False,
            response_time_ms=(time.monotonic() - start_time) * 1000,
            crawled_at=utc_now(),
            depth=depth,
            error_message=message,
            attempts=attempts,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {"in_flight_requests": self._in_flight_requests}


async def sleep_unless_cancelled(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds. Returns True if ``cancel_event`` cut the wait short."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


def _status_message(status: int) -> str:
    try:
        return f"HTTP {status} {HTTPStatus(status).phrase}"
    except ValueError:
        return f"HTTP {status}"


def _describe_error(error: BaseException) -> str:
    message = str(error)
    if isinstance(error, asyncio.TimeoutError) and not message:
        return "Request timed out"
    return message or error.__class__.__name__
