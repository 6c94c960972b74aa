"""
Parses robots.txt files and answers crawl-permission queries with a per-origin cache.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import urlsplit

from quarrycrawl.config.config import DEFAULT_USER_AGENT, CrawlerConfig
from quarrycrawl.crawler.http_client import TRANSIENT_ERRORS
from quarrycrawl.crawler.url_normalizer import get_origin, is_http_url
from quarrycrawl.protocols import HttpTransport, RobotsDocument, RobotsRuleSet

logger = logging.getLogger(__name__)


def parse_robots_txt(content: str) -> RobotsDocument:
    """
    Parses robots.txt text into per-agent rule sets.

    Directive names are case-insensitive and ``#`` starts a comment. A run
    of consecutive ``user-agent`` lines forms one group; the first rule line
    after it closes the run, so the next ``user-agent`` starts a new group.
    A later group naming the same agent replaces the earlier one. Rules
    that appear before any ``user-agent`` line apply to ``*``. ``sitemap``
    lines are collected regardless of the active group.
    """
    document = RobotsDocument(raw_text=content)
    group: List[RobotsRuleSet] = []
    group_open = False

    def rule_sets_for_group() -> List[RobotsRuleSet]:
        if not group:
            group.append(document.rules.setdefault("*", RobotsRuleSet(user_agent="*")))
        return group

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if not group_open:
                group.clear()
                group_open = True
            agent = value.lower() or "*"
            rule_set = RobotsRuleSet(user_agent=agent)
            document.rules[agent] = rule_set
            group.append(rule_set)
            continue

        if directive == "sitemap":
            if value and value not in document.sitemap_urls:
                document.sitemap_urls.append(value)
            continue

        group_open = False
        if directive == "disallow":
            if value:
                for rule_set in rule_sets_for_group():
                    rule_set.disallowed_paths.append(value)
        elif directive == "allow":
            if value:
                for rule_set in rule_sets_for_group():
                    rule_set.allowed_paths.append(value)
        elif directive == "crawl-delay":
            try:
                delay = float(value)
            except ValueError:
                logger.debug("Ignoring invalid crawl-delay value %r", value)
                continue
            if delay >= 0:
                for rule_set in rule_sets_for_group():
                    rule_set.crawl_delay = delay

    return document


@lru_cache(maxsize=4096)
def _compile_pattern(pattern: str) -> Pattern[str]:
    anchored = pattern.endswith("$")
    if anchored:
        pattern = pattern[:-1]
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(regex + ("$" if anchored else ""))


def path_matches(path: str, pattern: str) -> bool:
    """Prefix match of ``pattern`` against ``path`` with ``*`` and ``$`` support."""
    if not pattern:
        return False
    return _compile_pattern(pattern).match(path) is not None


def _request_path(url: str) -> str:
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return path


def is_path_allowed(document: Optional[RobotsDocument], url: str, user_agent: str) -> bool:
    """
    Resolve a permission query against a parsed document.

    An allow match wins over a disallow match when both apply. No document
    or no matching group means allowed.
    """
    if document is None:
        return True
    rule_set = document.rules_for(user_agent)
    if rule_set is None:
        return True

    path = _request_path(url) if "://" in url else url
    if any(path_matches(path, pattern) for pattern in rule_set.allowed_paths):
        return True
    if any(path_matches(path, pattern) for pattern in rule_set.disallowed_paths):
        return False
    return True


class RobotsPolicy:
    """
    Fetches, parses and caches robots.txt per origin.

    The cache lives as long as the instance, so an engine reused across
    crawls does not refetch robots.txt until the TTL expires. A per-origin
    lock prevents concurrent workers from fetching the same file twice.
    """

    def __init__(
        self,
        transport: HttpTransport,
        config: Optional[CrawlerConfig] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._transport = transport
        self._config = config or CrawlerConfig()
        self._user_agent = user_agent
        self._cache: Dict[str, Tuple[float, Optional[RobotsDocument]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def _fetch_robots_txt(self, origin: str) -> Optional[str]:
        """
        Fetches the robots.txt file for an origin.

        Returns:
            The file content, or None if it is absent or cannot be fetched.
        """
        url = f"{origin}/robots.txt"
        try:
            response = await self._transport.get(
                url, {"User-Agent": self._user_agent}, self._config.robots_timeout
            )
        except TRANSIENT_ERRORS as e:
            logger.warning("Failed to fetch robots.txt for %s: %s", origin, e)
            return None
        except Exception as e:
            logger.error("Unexpected error fetching robots.txt for %s: %s", origin, e, exc_info=True)
            return None

        if response.status_code == 404 or response.status_code == 410:
            # Common case, allow all
            logger.debug("No robots.txt found for %s (status %s)", origin, response.status_code)
            return None
        if not 200 <= response.status_code < 300:
            logger.warning("Failed to fetch robots.txt for %s: status %s", origin, response.status_code)
            return None

        if len(response.body) > self._config.robots_max_bytes:
            logger.warning("robots.txt for %s is larger than %s bytes, skipping", origin, self._config.robots_max_bytes)
            return None

        return response.body.decode("utf-8", errors="replace")

    def _cached(self, origin: str) -> Tuple[bool, Optional[RobotsDocument]]:
        entry = self._cache.get(origin)
        if entry is None:
            return False, None
        fetched_at, document = entry
        if time.monotonic() - fetched_at >= self._config.robots_cache_ttl:
            return False, None
        return True, document

    async def get_document(self, url: str) -> Optional[RobotsDocument]:
        """Return the parsed robots.txt for ``url``'s origin, or None if absent."""
        origin = get_origin(url)
        hit, document = self._cached(origin)
        if hit:
            return document

        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            # Another worker may have filled the cache while we waited
            hit, document = self._cached(origin)
            if hit:
                return document

            content = await self._fetch_robots_txt(origin)
            document = parse_robots_txt(content) if content is not None else None
            self._cache[origin] = (time.monotonic(), document)
            if document is not None:
                logger.debug(
                    "Parsed robots.txt for %s: %d groups, %d sitemaps",
                    origin,
                    len(document.rules),
                    len(document.sitemap_urls),
                )
            return document

    async def is_allowed(self, url: str, user_agent: Optional[str] = None) -> bool:
        """
        Checks if a user-agent is allowed to crawl a given URL.

        Args:
            url: The full URL to check.
            user_agent: Agent to evaluate; defaults to the policy's agent.

        Returns:
            True if crawling is allowed, False otherwise.
        """
        if not isinstance(url, str) or not url:
            raise ValueError("url must be a non-empty string")
        if not is_http_url(url):
            logger.warning("Could not parse URL for robots.txt check: %s", url)
            return False

        document = await self.get_document(url)
        return is_path_allowed(document, url, user_agent or self._user_agent)

    async def crawl_delay(self, url: str, user_agent: Optional[str] = None) -> Optional[float]:
        """Crawl-delay in seconds declared for the agent on ``url``'s origin."""
        document = await self.get_document(url)
        if document is None:
            return None
        rule_set = document.rules_for(user_agent or self._user_agent)
        return rule_set.crawl_delay if rule_set else None

    async def sitemap_urls(self, url: str) -> List[str]:
        document = await self.get_document(url)
        return list(document.sitemap_urls) if document else []

    def clear(self) -> None:
        self._cache.clear()
        self._locks.clear()
