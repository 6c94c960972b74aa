"""
Per-domain politeness gate.

Spaces out requests to the same domain according to the robots.txt
crawl-delay and holds a domain back after the server asked for a pause.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from quarrycrawl.crawler.http_client import get_header, parse_retry_after, sleep_unless_cancelled

logger = logging.getLogger(__name__)


@dataclass
class DomainRateState:
    """Timing state for a single domain."""

    min_interval: float = 0.0
    last_request_time: float = 0.0
    forced_until: float = 0.0


class DomainRateLimiter:
    """
    Enforces a minimum interval between requests to each domain.

    Features:
    - Interval per domain, typically the robots.txt crawl-delay
    - Forced pauses from Retry-After on a final 429/503 response
    - Upper bound on any single wait
    """

    def __init__(self, default_interval: float = 0.0, max_delay: float = 60.0):
        self.default_interval = default_interval
        self.max_delay = max_delay
        self._domains: Dict[str, DomainRateState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_domain_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    def _get_state(self, domain: str) -> DomainRateState:
        if domain not in self._domains:
            self._domains[domain] = DomainRateState(min_interval=self.default_interval)
        return self._domains[domain]

    def set_interval(self, domain: str, seconds: Optional[float]) -> None:
        """Set the minimum spacing for ``domain``; None restores the default."""
        state = self._get_state(domain)
        interval = self.default_interval if seconds is None else max(seconds, self.default_interval)
        interval = min(interval, self.max_delay)
        if interval != state.min_interval:
            logger.debug("Request interval for %s set to %.2fs", domain, interval)
        state.min_interval = interval

    def interval_for(self, domain: str) -> float:
        return self._get_state(domain).min_interval

    async def wait_for_domain(self, domain: str, cancel_event: Optional[asyncio.Event] = None) -> float:
        """
        Wait until a request to ``domain`` is permitted.

        Setting ``cancel_event`` ends the wait early without claiming the slot.

        Returns:
            Delay actually applied in seconds
        """
        async with self._get_domain_lock(domain):
            state = self._get_state(domain)
            now = time.monotonic()

            ready_at = state.forced_until
            if state.last_request_time:
                ready_at = max(ready_at, state.last_request_time + state.min_interval)

            delay = min(max(0.0, ready_at - now), self.max_delay)
            if delay > 0:
                logger.debug("Waiting %.2fs before next request to %s", delay, domain)
                if await sleep_unless_cancelled(delay, cancel_event):
                    logger.debug("Wait for %s interrupted by cancellation", domain)
                    return delay

            state.last_request_time = time.monotonic()
            return delay

    def update_from_response(self, domain: str, status_code: int, headers: Mapping[str, str]) -> None:
        """Pause ``domain`` when a response that ended a fetch asked us to back off."""
        if status_code not in (429, 503):
            return
        retry_after = get_header(headers, "Retry-After")
        if retry_after is None and status_code == 503:
            return
        delay = min(parse_retry_after(retry_after), self.max_delay)
        self._get_state(domain).forced_until = time.monotonic() + delay
        logger.info("Server requested %.1fs pause for %s", delay, domain)
