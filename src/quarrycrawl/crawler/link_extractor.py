"""
Outbound link and image discovery for fetched HTML pages.
"""

from __future__ import annotations

from typing import List, Optional, Tuple
from urllib.parse import urldefrag, urljoin

import structlog
from selectolax.parser import HTMLParser

from quarrycrawl.crawler.url_normalizer import is_http_url

logger = structlog.get_logger(__name__)

_SKIPPED_PREFIXES = ("javascript:", "mailto:", "tel:", "data:", "#")

HTML_CONTENT_TYPES = frozenset({"text/html", "application/xhtml+xml"})


class LinkExtractor:
    """Collects absolute http(s) links (and optionally image sources) from a page."""

    def __init__(self, include_images: bool = False):
        self.include_images = include_images

    @staticmethod
    def _resolve(base_url: str, raw: Optional[str]) -> Optional[str]:
        if not raw:
            return None
        candidate = raw.strip()
        if not candidate or candidate.lower().startswith(_SKIPPED_PREFIXES):
            return None
        absolute, _fragment = urldefrag(urljoin(base_url, candidate))
        return absolute if is_http_url(absolute) else None

    def extract(self, html: str, base_url: str) -> Tuple[List[str], List[str]]:
        """
        Return ``(links, image_urls)`` found in ``html``.

        Relative references are resolved against ``<base href>`` when the
        page declares one, otherwise against ``base_url``. Fragments are
        dropped and duplicates removed in document order.
        """
        if not html:
            return [], []

        tree = HTMLParser(html)
        base_tag = tree.css_first("base[href]")
        if base_tag is not None:
            declared = self._resolve(base_url, base_tag.attributes.get("href"))
            if declared:
                base_url = declared

        links = self._collect(tree, "a[href], area[href]", "href", base_url)
        images = self._collect(tree, "img[src]", "src", base_url) if self.include_images else []
        logger.debug("Links extracted", base_url=base_url, links=len(links), images=len(images))
        return links, images

    def _collect(self, tree: HTMLParser, selector: str, attribute: str, base_url: str) -> List[str]:
        found: List[str] = []
        seen = set()
        for node in tree.css(selector):
            url = self._resolve(base_url, node.attributes.get(attribute))
            if url and url not in seen:
                seen.add(url)
                found.append(url)
        return found

    def extract_links(self, html: str, base_url: str) -> List[str]:
        return self.extract(html, base_url)[0]


def is_html(content_type: Optional[str]) -> bool:
    """Content types worth scanning for links; a missing type is treated as HTML."""
    return content_type is None or content_type in HTML_CONTENT_TYPES
