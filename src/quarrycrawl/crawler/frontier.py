"""
Frontier implementations for each traversal discipline, plus URL admission.

Every frontier stores FrontierEntry records. All but the depth-first one drop
URLs they have already queued (by normalized form); the coordinator's
VisitedSet makes the final exactly-once decision at dequeue.

The coordinator owns the locking: all frontier methods are synchronous and
are called while holding the coordinator's frontier lock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import posixpath
import re
from abc import ABC, abstractmethod
from collections import Counter, deque
from typing import Deque, Iterable, List, Mapping, Optional, Pattern, Sequence, Set, Tuple
from urllib.parse import urlsplit

from quarrycrawl.config.config import CrawlOptions
from quarrycrawl.crawler.url_normalizer import get_host, is_http_url, normalize_url
from quarrycrawl.protocols import CrawlStrategy, FrontierEntry

DEFAULT_PAGE_IMPORTANCE = 5


class VisitedSet:
    """Normalized URLs already handed to a worker. Admission is test-and-insert under one lock."""

    def __init__(self) -> None:
        self._urls: Set[str] = set()
        self._lock = asyncio.Lock()

    async def add(self, url: str) -> bool:
        """Admit ``url``. Returns False if it was admitted before."""
        key = normalize_url(url)
        async with self._lock:
            if key in self._urls:
                return False
            self._urls.add(key)
            return True

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and normalize_url(url) in self._urls

    def __len__(self) -> int:
        return len(self._urls)


class UrlFilter:
    """Scheme, extension, pattern and domain checks applied before a URL is queued."""

    def __init__(self, options: CrawlOptions, seeds: Iterable[str] = ()):
        self.options = options
        self._include: List[Pattern[str]] = [re.compile(p) for p in options.include_patterns]
        self._exclude: List[Pattern[str]] = [re.compile(p) for p in options.exclude_patterns]
        self._hosts: Set[str] = {domain[4:] if domain.startswith("www.") else domain for domain in options.allowed_domains}
        for seed in seeds:
            self.add_host(seed)

    def add_host(self, url: str) -> None:
        host = get_host(url)
        if host:
            self._hosts.add(host)

    def _in_scope(self, url: str) -> bool:
        if self.options.follow_external_links or not self._hosts:
            return True
        host = get_host(url)
        return any(host == allowed or host.endswith(f".{allowed}") for allowed in self._hosts)

    def rejection_reason(self, url: str, *, is_seed: bool = False) -> Optional[str]:
        """Why ``url`` must not be queued, or None if it is acceptable.

        Seeds only need to be valid http(s) URLs.
        """
        if not is_http_url(url):
            return "unsupported_scheme"
        if is_seed:
            return None

        extension = posixpath.splitext(urlsplit(url).path)[1].lower()
        if extension and extension in self.options.excluded_extensions:
            return "excluded_extension"
        if any(pattern.search(url) for pattern in self._exclude):
            return "excluded_pattern"
        if self._include and not any(pattern.search(url) for pattern in self._include):
            return "not_included"
        if not self._in_scope(url):
            return "external"
        return None

    def accepts(self, url: str) -> bool:
        return self.rejection_reason(url) is None


# ============================================================================
# Frontier Base
# ============================================================================


class Frontier(ABC):
    """Pending work for one crawl."""

    strategy: CrawlStrategy
    # Sitemap crawls work from a fixed list
    accepts_discoveries: bool = True
    dedupe_on_push: bool = True

    def __init__(self) -> None:
        self._queued: Set[str] = set()

    def entry_for(self, url: str, depth: int = 0, parent: Optional[FrontierEntry] = None) -> FrontierEntry:
        return FrontierEntry(
            url=url,
            depth=depth,
            parent_url=parent.url if parent else None,
            priority=self.score(url, depth, parent),
        )

    def score(self, url: str, depth: int, parent: Optional[FrontierEntry]) -> int:
        return 0

    def children(self, parent: FrontierEntry, urls: Sequence[str]) -> List[FrontierEntry]:
        """Entries for links discovered on ``parent``, in the order they should be pushed."""
        if not self.accepts_discoveries:
            return []
        return [self.entry_for(url, parent.depth + 1, parent) for url in urls]

    def push(self, entries: Sequence[FrontierEntry]) -> int:
        """Queue entries, skipping ones queued before when deduping. Returns how many were added."""
        fresh = []
        for entry in entries:
            if self.dedupe_on_push:
                key = normalize_url(entry.url)
                if key in self._queued:
                    continue
                self._queued.add(key)
            fresh.append(entry)
        if fresh:
            self._push(fresh)
        return len(fresh)

    @abstractmethod
    def _push(self, entries: List[FrontierEntry]) -> None:
        ...

    @abstractmethod
    def pop(self) -> Optional[FrontierEntry]:
        """Next entry to process, or None if nothing can be handed out right now."""

    def task_done(self, entry: FrontierEntry) -> None:
        """Called once the coordinator has finished processing ``entry``."""

    @abstractmethod
    def __len__(self) -> int:
        ...


# ============================================================================
# Traversal Disciplines
# ============================================================================


class BreadthFirstFrontier(Frontier):
    """
    FIFO queue that hands out depth d+1 only after every depth d entry is done.

    With several workers the queue head may be one level deeper than pages
    still being fetched; pop() then returns None until that level drains.
    """

    strategy = CrawlStrategy.BREADTH_FIRST

    def __init__(self) -> None:
        super().__init__()
        self._queue: Deque[FrontierEntry] = deque()
        self._in_flight: Counter[int] = Counter()

    def _push(self, entries: List[FrontierEntry]) -> None:
        self._queue.extend(entries)

    def pop(self) -> Optional[FrontierEntry]:
        if not self._queue:
            return None
        head = self._queue[0]
        if self._in_flight and head.depth > min(self._in_flight):
            return None
        self._queue.popleft()
        self._in_flight[head.depth] += 1
        return head

    def task_done(self, entry: FrontierEntry) -> None:
        self._in_flight[entry.depth] -= 1
        if self._in_flight[entry.depth] <= 0:
            del self._in_flight[entry.depth]

    def __len__(self) -> int:
        return len(self._queue)


class DepthFirstFrontier(Frontier):
    """
    LIFO stack that exhausts one branch before backtracking.

    Children are ranked by score (same host +100, under the parent's path
    +50, minus path segment count) with document order breaking ties, then
    pushed in reverse so the best-ranked child is popped first.

    A URL found again on a deeper page is pushed again, so it is fetched on
    the branch where it was last discovered; stale copies left lower in the
    stack are skipped at dequeue.
    """

    strategy = CrawlStrategy.DEPTH_FIRST
    dedupe_on_push = False

    def __init__(self) -> None:
        super().__init__()
        self._stack: List[FrontierEntry] = []

    def score(self, url: str, depth: int, parent: Optional[FrontierEntry]) -> int:
        if parent is None:
            return 0
        child = urlsplit(url)
        origin = urlsplit(parent.url)
        score = 0
        if (child.hostname or "").lower() == (origin.hostname or "").lower():
            score += 100
        if (child.path or "/").lower().startswith((origin.path or "/").lower()):
            score += 50
        score -= len((child.path or "/").split("/"))
        return score

    def children(self, parent: FrontierEntry, urls: Sequence[str]) -> List[FrontierEntry]:
        return sorted(super().children(parent, urls), key=lambda entry: entry.priority, reverse=True)

    def _push(self, entries: List[FrontierEntry]) -> None:
        self._stack.extend(reversed(entries))

    def pop(self) -> Optional[FrontierEntry]:
        return self._stack.pop() if self._stack else None

    def __len__(self) -> int:
        return len(self._stack)


class PriorityFrontier(Frontier):
    """
    Heap ordered by page importance minus depth; ties go to insertion order.

    Importance comes from ``page_priorities`` (longest matching path prefix
    wins) and defaults to DEFAULT_PAGE_IMPORTANCE.
    """

    strategy = CrawlStrategy.INTELLIGENT

    def __init__(self, page_priorities: Optional[Mapping[str, int]] = None) -> None:
        super().__init__()
        self._heap: List[Tuple[int, int, FrontierEntry]] = []
        self._counter = itertools.count()
        self._page_priorities = sorted((page_priorities or {}).items(), key=lambda item: len(item[0]), reverse=True)

    def importance(self, url: str) -> int:
        path = (urlsplit(url).path or "/").lower()
        for prefix, importance in self._page_priorities:
            if path.startswith(prefix.lower()):
                return importance
        return DEFAULT_PAGE_IMPORTANCE

    def score(self, url: str, depth: int, parent: Optional[FrontierEntry]) -> int:
        return self.importance(url) - depth

    def _push(self, entries: List[FrontierEntry]) -> None:
        for entry in entries:
            heapq.heappush(self._heap, (-entry.priority, next(self._counter), entry))

    def pop(self) -> Optional[FrontierEntry]:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def __len__(self) -> int:
        return len(self._heap)


class SitemapFrontier(Frontier):
    """Flat list of URLs resolved from sitemaps; links found on pages are ignored."""

    strategy = CrawlStrategy.SITEMAP
    accepts_discoveries = False

    def __init__(self) -> None:
        super().__init__()
        self._entries: Deque[FrontierEntry] = deque()

    def _push(self, entries: List[FrontierEntry]) -> None:
        self._entries.extend(entries)

    def pop(self) -> Optional[FrontierEntry]:
        return self._entries.popleft() if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)


def create_frontier(strategy: CrawlStrategy, options: Optional[CrawlOptions] = None) -> Frontier:
    if strategy is CrawlStrategy.BREADTH_FIRST:
        return BreadthFirstFrontier()
    if strategy is CrawlStrategy.DEPTH_FIRST:
        return DepthFirstFrontier()
    if strategy is CrawlStrategy.INTELLIGENT:
        return PriorityFrontier(options.page_priorities if options else None)
    if strategy is CrawlStrategy.SITEMAP:
        return SitemapFrontier()
    raise ValueError(f"Unsupported crawl strategy: {strategy!r}")
