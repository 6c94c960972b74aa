"""
QuarryCrawl - concurrent web crawling engine for AI data ingestion.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config, CrawlOptions
from .crawler import CrawlerFactory, WebCrawler
from .protocols import CrawlStrategy, FetchResult

__all__ = ["__version__", "Config", "CrawlOptions", "CrawlerFactory", "CrawlStrategy", "FetchResult", "WebCrawler"]
