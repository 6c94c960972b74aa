"""
Static-first fetching with delegation to a dynamic renderer.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from typing import List, Optional, Pattern, Sequence

import structlog
from selectolax.parser import HTMLParser

from quarrycrawl.crawler.link_extractor import is_html
from quarrycrawl.protocols import FetchResult, PageFetcher, Renderer

logger = structlog.get_logger(__name__)

# Mount points left empty by client-side frameworks until scripts run
SPA_ROOT_SELECTORS = (
    "#root",
    "#app",
    "#__next",
    "#__nuxt",
    "[ng-app]",
    "[data-reactroot]",
    "script#__NEXT_DATA__",
)

MIN_STATIC_TEXT_LENGTH = 100


def requires_rendering(html: str, min_text_length: int = MIN_STATIC_TEXT_LENGTH) -> bool:
    """
    Guess whether a page needs a browser to show its content.

    A page qualifies when its body carries little visible text and either
    mounts a known client-side framework root or relies on scripts.
    """
    if not html or not html.strip():
        return True

    tree = HTMLParser(html)
    body = tree.body
    if body is None:
        return False

    has_scripts = tree.css_first("script") is not None
    has_spa_root = any(tree.css_first(selector) is not None for selector in SPA_ROOT_SELECTORS)

    for node in tree.css("script, style, noscript, template"):
        node.decompose()
    text = " ".join(body.text(separator=" ").split())
    if len(text) >= min_text_length:
        return False
    return has_spa_root or has_scripts


class SmartFetcher:
    """
    Fetches statically first and hands script-driven pages to a renderer.

    Exposes the same ``fetch`` contract as Fetcher so the coordinator does
    not know which path produced a result. If the renderer fails or raises,
    the static result is returned instead; with no static result the failure
    becomes a failed FetchResult.
    """

    def __init__(self, fetcher: PageFetcher, renderer: Renderer, always_render: Sequence[str] = ()):
        self.fetcher = fetcher
        self.renderer = renderer
        self._always_render: List[Pattern[str]] = [re.compile(pattern) for pattern in always_render]

    async def fetch(
        self, url: str, *, depth: int = 0, cancel_event: Optional[asyncio.Event] = None
    ) -> FetchResult:
        if any(pattern.search(url) for pattern in self._always_render):
            return await self._render(url, depth, fallback=None)

        result = await self.fetcher.fetch(url, depth=depth, cancel_event=cancel_event)
        if not result.is_success or not is_html(result.content_type):
            return result
        if not requires_rendering(result.text):
            return result

        logger.info("Dynamic content detected, delegating to renderer", url=url)
        return await self._render(url, depth, fallback=result)

    async def _render(self, url: str, depth: int, fallback: Optional[FetchResult]) -> FetchResult:
        try:
            rendered = await self.renderer.fetch(url, depth=depth)
        except Exception as e:
            logger.error("Renderer raised", url=url, error=str(e), exc_info=True)
            if fallback is not None:
                return fallback
            return FetchResult(
                url=url,
                final_url=url,
                status_code=0,
                is_success=False,
                depth=depth,
                error_message=str(e) or e.__class__.__name__,
                rendered=True,
            )
        if rendered.is_success or fallback is None:
            return replace(rendered, depth=depth, rendered=True)
        logger.warning("Renderer failed, keeping static result", url=url, error=rendered.error_message)
        return fallback
