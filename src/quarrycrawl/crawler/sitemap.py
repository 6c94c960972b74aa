"""
Sitemap and sitemap-index parsing with recursive resolution.
"""

from __future__ import annotations

import gzip
import re
from typing import TYPE_CHECKING, List, Optional, Sequence, Set, Tuple
from urllib.parse import urljoin

import structlog
from lxml import etree

from quarrycrawl.config.config import DEFAULT_USER_AGENT, CrawlerConfig
from quarrycrawl.crawler.http_client import TRANSIENT_ERRORS
from quarrycrawl.crawler.url_normalizer import get_origin, is_http_url
from quarrycrawl.protocols import HttpTransport, RobotsDocument, SitemapEntry

if TYPE_CHECKING:
    from quarrycrawl.crawler.robots_parser import RobotsPolicy

logger = structlog.get_logger(__name__)

SITEMAP_NAMESPACE = "http://www.sitemaps.org/schemas/sitemap/0.9"

COMMON_SITEMAP_PATHS: Tuple[str, ...] = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap.txt",
    "/sitemaps.xml",
    "/sitemap/sitemap.xml",
    "/sitemap/index.xml",
    "/wp-sitemap.xml",
)

_LOC_PATTERN = re.compile(r"<loc>\s*(?:<!\[CDATA\[)?\s*([^<\]]+?)\s*(?:\]\]>)?\s*</loc>", re.IGNORECASE)

_XML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_comments=True)


def _tag(namespace: Optional[str], name: str) -> str:
    return f"{{{namespace}}}{name}" if namespace else name


def _child_text(element: etree._Element, namespace: Optional[str], name: str) -> Optional[str]:
    child = element.find(_tag(namespace, name))
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def _parse_priority(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_sitemap(content: bytes) -> Tuple[List[SitemapEntry], List[str]]:
    """
    Parse one sitemap document.

    Returns the page entries of a ``<urlset>`` and the child sitemap URLs of
    a ``<sitemapindex>``. Element lookup uses the root's own namespace, so
    both the standard namespace and unnamespaced documents work. Text
    sitemaps (one URL per line) are accepted too. If the XML is malformed,
    every ``<loc>`` value is recovered with a regex instead.
    """
    stripped = content.lstrip(b"\xef\xbb\xbf").strip()
    if not stripped:
        return [], []

    if not stripped.startswith(b"<"):
        lines = stripped.decode("utf-8", errors="replace").splitlines()
        return [SitemapEntry(loc=line.strip()) for line in lines if is_http_url(line.strip())], []

    try:
        root = etree.fromstring(stripped, parser=_XML_PARSER)
    except etree.XMLSyntaxError as e:
        logger.debug("Sitemap XML parse failed, using regex fallback", error=str(e))
        return _regex_fallback(stripped)

    qname = etree.QName(root)
    namespace = qname.namespace

    if qname.localname == "sitemapindex":
        children = []
        for sitemap in root.iterfind(_tag(namespace, "sitemap")):
            loc = _child_text(sitemap, namespace, "loc")
            if loc:
                children.append(loc)
        return [], children

    if qname.localname == "urlset":
        entries = []
        for url in root.iterfind(_tag(namespace, "url")):
            loc = _child_text(url, namespace, "loc")
            if not loc:
                continue
            entries.append(
                SitemapEntry(
                    loc=loc,
                    lastmod=_child_text(url, namespace, "lastmod"),
                    changefreq=_child_text(url, namespace, "changefreq"),
                    priority=_parse_priority(_child_text(url, namespace, "priority")),
                )
            )
        return entries, []

    logger.warning("Unrecognized sitemap root element", root=qname.localname)
    return [], []


def _regex_fallback(content: bytes) -> Tuple[List[SitemapEntry], List[str]]:
    text = content.decode("utf-8", errors="replace")
    locs = [match.strip() for match in _LOC_PATTERN.findall(text)]
    if "<sitemapindex" in text.lower():
        return [], locs
    return [SitemapEntry(loc=loc) for loc in locs], []


class SitemapSource:
    """Resolves sitemap URLs, following sitemap indexes, into page entries."""

    def __init__(
        self,
        transport: HttpTransport,
        config: Optional[CrawlerConfig] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
    ):
        self._transport = transport
        self._config = config or CrawlerConfig()
        self._user_agent = user_agent
        self._timeout = timeout

    async def _download(self, url: str) -> Optional[bytes]:
        try:
            response = await self._transport.get(url, {"User-Agent": self._user_agent}, self._timeout)
        except TRANSIENT_ERRORS as e:
            logger.warning("Failed to fetch sitemap", url=url, error=str(e))
            return None
        except Exception as e:
            logger.error("Unexpected error fetching sitemap", url=url, error=str(e), exc_info=True)
            return None

        if not 200 <= response.status_code < 300:
            logger.info("Sitemap not available", url=url, status=response.status_code)
            return None

        body = response.body
        if body[:2] == b"\x1f\x8b":
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError) as e:
                logger.warning("Could not decompress sitemap", url=url, error=str(e))
                return None
        return body

    async def extract_entries(self, sitemap_url: str) -> List[SitemapEntry]:
        """Page entries reachable from ``sitemap_url``, in document order, deduplicated."""
        if not isinstance(sitemap_url, str) or not sitemap_url:
            raise ValueError("sitemap_url must be a non-empty string")

        entries: List[SitemapEntry] = []
        await self._collect(sitemap_url, 0, set(), entries)

        seen: Set[str] = set()
        unique = []
        for entry in entries:
            if entry.loc not in seen:
                seen.add(entry.loc)
                unique.append(entry)
        logger.info("Sitemap resolved", url=sitemap_url, urls=len(unique))
        return unique

    async def extract_urls(self, sitemap_url: str) -> List[str]:
        """Flat list of page URLs from a sitemap or sitemap index. Never raises on bad input data."""
        return [entry.loc for entry in await self.extract_entries(sitemap_url)]

    async def _collect(self, url: str, depth: int, visited: Set[str], entries: List[SitemapEntry]) -> None:
        if url in visited:
            return
        visited.add(url)

        content = await self._download(url)
        if content is None:
            return

        page_entries, children = parse_sitemap(content)
        entries.extend(page_entries)

        if not children:
            return
        if depth >= self._config.sitemap_max_depth:
            logger.warning("Sitemap index nesting too deep, not descending", url=url, depth=depth)
            return
        for child in children:
            await self._collect(urljoin(url, child), depth + 1, visited, entries)

    async def discover(self, base_url: str, robots_document: Optional[RobotsDocument] = None) -> List[str]:
        """
        Locate sitemaps for a site.

        Sitemaps declared in robots.txt are used when present; otherwise the
        common well-known locations are tried.
        """
        if robots_document is not None and robots_document.sitemap_urls:
            return list(robots_document.sitemap_urls)

        origin = get_origin(base_url)
        found = []
        for path in COMMON_SITEMAP_PATHS:
            candidate = f"{origin}{path}"
            content = await self._download(candidate)
            if content is None:
                continue
            page_entries, children = parse_sitemap(content)
            if page_entries or children:
                found.append(candidate)
                # The first index found already covers the rest of the site
                if children:
                    break
        logger.debug("Sitemap discovery finished", base_url=base_url, found=found)
        return found

    async def resolve(self, seeds: Sequence[str], robots: Optional[RobotsPolicy] = None) -> List[str]:
        """Page URLs for crawl seeds that are either sitemap URLs or site URLs."""
        urls: List[str] = []
        for seed in seeds:
            if looks_like_sitemap(seed):
                sitemap_urls = [seed]
            else:
                robots_document = await robots.get_document(seed) if robots is not None else None
                sitemap_urls = await self.discover(seed, robots_document)
            for sitemap_url in sitemap_urls:
                for url in await self.extract_urls(sitemap_url):
                    if url not in urls:
                        urls.append(url)
        return urls


def looks_like_sitemap(url: str) -> bool:
    path = url.split("?", 1)[0].lower()
    return path.endswith((".xml", ".xml.gz", ".txt")) or "sitemap" in path.rsplit("/", 1)[-1]
