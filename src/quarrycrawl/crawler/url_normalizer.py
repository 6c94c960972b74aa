"""
URL canonicalization used for visited-set deduplication.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}
_MULTI_SLASH = re.compile(r"/{2,}")


def normalize_url(url: str) -> str:
    """
    Canonicalize ``url`` so that equivalent spellings compare equal.

    Lowercases scheme and host, drops a leading ``www.``, removes default
    ports, collapses repeated slashes, trims a trailing slash (except on the
    root path), drops the fragment and keeps the query untouched. Strings
    that are not absolute URLs are returned unchanged.
    """
    if not url or not url.strip():
        return url

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return url

    if not parts.scheme or not parts.hostname:
        return url

    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    if host.startswith("www."):
        host = host[4:]
    if ":" in host:
        host = f"[{host}]"

    netloc = host
    if port is not None and port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"

    path = _MULTI_SLASH.sub("/", parts.path) or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = f"?{parts.query}" if parts.query else ""
    return f"{scheme}://{netloc}{path}{query}"


def are_equivalent(first: str, second: str) -> bool:
    return normalize_url(first) == normalize_url(second)


def is_http_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme.lower() in _DEFAULT_PORTS and bool(parts.hostname)


def get_host(url: str) -> str:
    """Lowercased host without a ``www.`` prefix, or an empty string."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def get_origin(url: str) -> str:
    """``scheme://host[:port]`` of ``url`` as it was written."""
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"
