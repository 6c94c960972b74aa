"""
Per-crawl statistics, merged atomically from emitted fetch results.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Optional

from quarrycrawl.crawler.url_normalizer import get_host
from quarrycrawl.protocols import CrawlStatistics, FetchResult, utc_now


class StatisticsCollector:
    """
    Accumulates CrawlStatistics for one crawl.

    Each result is folded into a new immutable snapshot under a lock, so
    readers always see a consistent view and concurrent workers never lose
    an update.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._started_at = time.monotonic()
        self._snapshot = CrawlStatistics()

    def reset(self) -> None:
        self._started_at = time.monotonic()
        self._snapshot = CrawlStatistics()

    @property
    def snapshot(self) -> CrawlStatistics:
        return self._snapshot

    async def record(self, result: FetchResult) -> CrawlStatistics:
        async with self._lock:
            self._snapshot = self.merge(self._snapshot, result, time.monotonic() - self._started_at)
            return self._snapshot

    @staticmethod
    def merge(current: CrawlStatistics, result: FetchResult, elapsed_seconds: Optional[float] = None) -> CrawlStatistics:
        """Return ``current`` with ``result`` folded in."""
        total = current.total_requests + 1

        by_domain = dict(current.requests_by_domain)
        domain = get_host(result.url) or "unknown"
        by_domain[domain] = by_domain.get(domain, 0) + 1

        by_status = dict(current.status_code_distribution)
        by_status[result.status_code] = by_status.get(result.status_code, 0) + 1

        average = (current.average_response_time_ms * current.total_requests + result.response_time_ms) / total

        if elapsed_seconds is None:
            elapsed_seconds = (utc_now() - current.start_time).total_seconds()
        rps = total / elapsed_seconds if elapsed_seconds > 0 else 0.0

        return replace(
            current,
            total_requests=total,
            successful_requests=current.successful_requests + (1 if result.is_success else 0),
            failed_requests=current.failed_requests + (0 if result.is_success else 1),
            average_response_time_ms=average,
            total_bytes=current.total_bytes + (result.content_length or 0),
            requests_by_domain=by_domain,
            status_code_distribution=by_status,
            requests_per_second=rps,
            last_updated=utc_now(),
        )
