"""
Core contracts and dataclasses for the QuarryCrawl engine.

Every record the engine hands across a component boundary is defined here:
frontier entries, fetch results, robots rule sets, sitemap entries and the
statistics snapshot. Collaborators the engine does not own (HTTP transport,
dynamic renderer) are expressed as protocols so tests and callers can plug
in their own implementations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

# ============================================================================
# Enums and Constants
# ============================================================================


class CrawlStrategy(Enum):
    """Traversal disciplines supported by the crawler factory."""

    BREADTH_FIRST = "breadth_first"
    DEPTH_FIRST = "depth_first"
    INTELLIGENT = "intelligent"
    SITEMAP = "sitemap"


class CrawlState(Enum):
    """Lifecycle of a single crawl invocation."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Frontier and Fetch Records
# ============================================================================


@dataclass(frozen=True)
class FrontierEntry:
    """A URL waiting to be fetched, with the depth and parent it was found at."""

    url: str
    depth: int = 0
    parent_url: Optional[str] = None
    priority: int = 0


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one logical fetch (all retry attempts included)."""

    url: str
    final_url: str
    status_code: int
    is_success: bool
    body: Optional[bytes] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    response_time_ms: float = 0.0
    crawled_at: datetime = field(default_factory=utc_now)
    depth: int = 0
    discovered_links: Tuple[str, ...] = ()
    image_urls: Tuple[str, ...] = ()
    error_message: Optional[str] = None
    attempts: int = 1
    rendered: bool = False

    @property
    def text(self) -> str:
        """Body decoded as UTF-8, lossy."""
        if not self.body:
            return ""
        return self.body.decode("utf-8", errors="replace")

    def to_dict(self, include_body: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "is_success": self.is_success,
            "content_type": self.content_type,
            "content_length": self.content_length,
            "response_time_ms": round(self.response_time_ms, 2),
            "crawled_at": self.crawled_at.isoformat(),
            "depth": self.depth,
            "discovered_links": list(self.discovered_links),
            "image_urls": list(self.image_urls),
            "error_message": self.error_message,
            "attempts": self.attempts,
            "rendered": self.rendered,
        }
        if include_body:
            data["body"] = self.text
        return data


@dataclass(frozen=True)
class TransportResponse:
    """Raw response returned by an HTTP transport."""

    status_code: int
    headers: Mapping[str, str]
    body: bytes
    final_url: str


# ============================================================================
# Robots Exclusion
# ============================================================================


@dataclass
class RobotsRuleSet:
    """Allow/disallow patterns collected for one user-agent group."""

    user_agent: str
    allowed_paths: List[str] = field(default_factory=list)
    disallowed_paths: List[str] = field(default_factory=list)
    crawl_delay: Optional[float] = None


@dataclass
class RobotsDocument:
    """A parsed robots.txt file."""

    raw_text: str = ""
    rules: Dict[str, RobotsRuleSet] = field(default_factory=dict)
    sitemap_urls: List[str] = field(default_factory=list)

    def rules_for(self, user_agent: str) -> Optional[RobotsRuleSet]:
        """Return the group matching ``user_agent``, falling back to ``*``."""
        agent = user_agent.strip().lower()
        if agent in self.rules:
            return self.rules[agent]
        # "QuarryCrawl/1.0 (+https://...)" is addressed as "quarrycrawl"
        token = agent.split("/", 1)[0].split(" ", 1)[0]
        if token and token in self.rules:
            return self.rules[token]
        return self.rules.get("*")


# ============================================================================
# Sitemaps
# ============================================================================


@dataclass(frozen=True)
class SitemapEntry:
    """A ``<url>`` entry from a sitemap, with its optional metadata."""

    loc: str
    lastmod: Optional[str] = None
    changefreq: Optional[str] = None
    priority: Optional[float] = None


# ============================================================================
# Statistics
# ============================================================================


@dataclass(frozen=True)
class CrawlStatistics:
    """Read-only snapshot of the counters for one crawl."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0
    total_bytes: int = 0
    requests_by_domain: Mapping[str, int] = field(default_factory=dict)
    status_code_distribution: Mapping[int, int] = field(default_factory=dict)
    requests_per_second: float = 0.0
    start_time: datetime = field(default_factory=utc_now)
    last_updated: datetime = field(default_factory=utc_now)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_time_ms": round(self.average_response_time_ms, 2),
            "total_bytes": self.total_bytes,
            "requests_by_domain": dict(self.requests_by_domain),
            "status_code_distribution": {str(code): count for code, count in self.status_code_distribution.items()},
            "requests_per_second": round(self.requests_per_second, 3),
            "start_time": self.start_time.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


# ============================================================================
# Collaborator Protocols
# ============================================================================


@runtime_checkable
class HttpTransport(Protocol):
    """Single-request HTTP primitive the fetcher composes retries around."""

    async def get(self, url: str, headers: Mapping[str, str], timeout: float) -> TransportResponse:
        ...


class PageFetcher(Protocol):
    """Produces one FetchResult per URL; retries and failures stay inside."""

    async def fetch(
        self, url: str, *, depth: int = 0, cancel_event: Optional[asyncio.Event] = None
    ) -> FetchResult:
        ...


@runtime_checkable
class Renderer(Protocol):
    """Dynamic renderer invoked with the same contract as the fetcher."""

    async def fetch(self, url: str, *, depth: int = 0) -> FetchResult:
        ...


class Crawler(Protocol):
    """Capabilities a crawler exposes to callers."""

    async def fetch(self, url: str, *, depth: int = 0) -> FetchResult:
        ...

    def extract_links(self, result: FetchResult) -> List[str]:
        ...

    async def is_allowed(self, url: str) -> bool:
        ...

    def crawl(self, seeds: Sequence[str]) -> AsyncIterator[FetchResult]:
        ...
