"""
In-memory HttpTransport serving a scripted site graph.
"""

import asyncio
from typing import Dict, Iterable, List, Mapping, Optional, Union

from quarrycrawl.protocols import TransportResponse

SITE = "https://site.test"

ScriptedResponse = Union[TransportResponse, BaseException]


def html_page(*links: str, title: str = "page", extra: str = "") -> str:
    """Minimal HTML document linking to ``links``."""
    anchors = "".join(f'<a href="{link}">{link}</a>' for link in links)
    return f"<html><head><title>{title}</title></head><body>{anchors}{extra}</body></html>"


def response(
    url: str,
    status: int = 200,
    body: Union[str, bytes] = b"",
    headers: Optional[Mapping[str, str]] = None,
    content_type: Optional[str] = "text/html; charset=utf-8",
) -> TransportResponse:
    if isinstance(body, str):
        body = body.encode("utf-8")
    all_headers = dict(headers or {})
    if content_type and "Content-Type" not in all_headers:
        all_headers["Content-Type"] = content_type
    return TransportResponse(status_code=status, headers=all_headers, body=body, final_url=url)


class FakeTransport:
    """
    Scripted HttpTransport.

    Each URL maps to a list of responses (or exceptions to raise) consumed
    in order; the last one repeats. Unknown URLs answer 404.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.requests: List[str] = []
        self.request_headers: List[Mapping[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._scripts: Dict[str, List[ScriptedResponse]] = {}

    def add(self, url: str, *responses: ScriptedResponse) -> "FakeTransport":
        self._scripts[url] = list(responses)
        return self

    def add_page(self, path: str, *links: str, status: int = 200, **kwargs) -> "FakeTransport":
        url = f"{SITE}{path}"
        return self.add(url, response(url, status=status, body=html_page(*links, **kwargs)))

    def add_site(self, graph: Mapping[str, Iterable[str]]) -> "FakeTransport":
        """Register ``{path: [linked paths]}`` on the test site."""
        for path, links in graph.items():
            self.add_page(path, *links)
        return self

    def add_robots(self, text: str) -> "FakeTransport":
        url = f"{SITE}/robots.txt"
        return self.add(url, response(url, body=text, content_type="text/plain"))

    def page_requests(self) -> List[str]:
        return [url for url in self.requests if not url.endswith("/robots.txt")]

    async def get(self, url: str, headers: Mapping[str, str], timeout: float) -> TransportResponse:
        self.requests.append(url)
        self.request_headers.append(dict(headers))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            script = self._scripts.get(url)
            if not script:
                return response(url, status=404, body="Not Found", content_type="text/plain")
            item = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(item, BaseException):
                raise item
            return item
        finally:
            self.in_flight -= 1
