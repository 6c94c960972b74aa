"""
QuarryCrawl crawler module: the concurrent crawling engine.

Components:
- URL normalization for visited-set deduplication
- robots.txt parsing with a per-origin cache
- Sitemap and sitemap-index resolution
- Retrying fetcher with exponential backoff and Retry-After support
- Link extraction
- Frontiers for breadth-first, depth-first, priority and sitemap crawls
- Worker-pool coordinator with a bounded result stream
- Crawl statistics
"""

from .coordinator import ConcurrencyCoordinator
from .engine import WebCrawler
from .factory import CrawlerFactory, parse_strategy
from .frontier import (
    BreadthFirstFrontier,
    DepthFirstFrontier,
    Frontier,
    PriorityFrontier,
    SitemapFrontier,
    UrlFilter,
    VisitedSet,
    create_frontier,
)
from .http_client import Fetcher, HttpClient, parse_retry_after
from .link_extractor import LinkExtractor
from .rate_limiter import DomainRateLimiter
from .renderer import SmartFetcher, requires_rendering
from .robots_parser import RobotsPolicy, is_path_allowed, parse_robots_txt
from .sitemap import SitemapSource, parse_sitemap
from .statistics import StatisticsCollector
from .url_normalizer import normalize_url

__all__ = [
    "BreadthFirstFrontier",
    "ConcurrencyCoordinator",
    "CrawlerFactory",
    "DepthFirstFrontier",
    "DomainRateLimiter",
    "Fetcher",
    "Frontier",
    "HttpClient",
    "LinkExtractor",
    "PriorityFrontier",
    "RobotsPolicy",
    "SitemapFrontier",
    "SitemapSource",
    "SmartFetcher",
    "StatisticsCollector",
    "UrlFilter",
    "VisitedSet",
    "WebCrawler",
    "create_frontier",
    "is_path_allowed",
    "normalize_url",
    "parse_retry_after",
    "parse_robots_txt",
    "parse_sitemap",
    "parse_strategy",
    "requires_rendering",
]
