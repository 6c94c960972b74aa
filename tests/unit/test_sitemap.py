"""
Tests for sitemap parsing, index recursion and discovery.
"""

import gzip

import aiohttp
import pytest

from quarrycrawl.config import CrawlerConfig
from quarrycrawl.crawler.robots_parser import RobotsPolicy, parse_robots_txt
from quarrycrawl.crawler.sitemap import SitemapSource, looks_like_sitemap, parse_sitemap
from tests.helpers import SITE, FakeTransport, response

URLSET = b"""<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url>
    <loc>https://site.test/</loc>
    <lastmod>2024-01-15</lastmod>
    <changefreq>daily</changefreq>
    <priority>1.0</priority>
  </url>
  <url><loc> https://site.test/about </loc></url>
  <url><loc>https://site.test/blog</loc><priority>high</priority></url>
</urlset>
"""


def _urlset(*locs: str) -> bytes:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'.encode()


def _index(*locs: str) -> bytes:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'.encode()


def _xml(url: str, body: bytes):
    return response(url, body=body, content_type="application/xml")


@pytest.mark.unit
class TestParseSitemap:
    def test_urlset_with_metadata(self):
        entries, children = parse_sitemap(URLSET)

        assert children == []
        assert [entry.loc for entry in entries] == [
            "https://site.test/",
            "https://site.test/about",
            "https://site.test/blog",
        ]
        assert entries[0].lastmod == "2024-01-15"
        assert entries[0].changefreq == "daily"
        assert entries[0].priority == 1.0
        assert entries[2].priority is None

    def test_sitemap_index(self):
        entries, children = parse_sitemap(_index("https://site.test/a.xml", "https://site.test/b.xml"))
        assert entries == []
        assert children == ["https://site.test/a.xml", "https://site.test/b.xml"]

    def test_unnamespaced_document(self):
        entries, _ = parse_sitemap(b"<urlset><url><loc>https://site.test/x</loc></url></urlset>")
        assert [entry.loc for entry in entries] == ["https://site.test/x"]

    def test_malformed_xml_falls_back_to_regex(self):
        broken = b"<urlset><url><loc>https://site.test/a</loc></url><url><loc><![CDATA[https://site.test/b]]></loc>"
        entries, children = parse_sitemap(broken)
        assert [entry.loc for entry in entries] == ["https://site.test/a", "https://site.test/b"]
        assert children == []

    def test_malformed_index_yields_children(self):
        broken = b"<sitemapindex><sitemap><loc>https://site.test/a.xml</loc></sitemap><sitemap>"
        entries, children = parse_sitemap(broken)
        assert entries == []
        assert children == ["https://site.test/a.xml"]

    def test_text_sitemap(self):
        entries, _ = parse_sitemap(b"https://site.test/one\n\nnot-a-url\nhttps://site.test/two\n")
        assert [entry.loc for entry in entries] == ["https://site.test/one", "https://site.test/two"]

    def test_empty_and_unknown_documents(self):
        assert parse_sitemap(b"") == ([], [])
        assert parse_sitemap(b"<rss><channel/></rss>") == ([], [])


@pytest.mark.unit
class TestSitemapSource:
    @pytest.fixture
    def source(self, transport):
        return SitemapSource(transport, CrawlerConfig())

    @pytest.mark.asyncio
    async def test_index_is_resolved_recursively(self, transport, source):
        transport.add(f"{SITE}/sitemap.xml", _xml(f"{SITE}/sitemap.xml", _index("/posts.xml", f"{SITE}/pages.xml")))
        transport.add(f"{SITE}/posts.xml", _xml(f"{SITE}/posts.xml", _urlset(f"{SITE}/p1", f"{SITE}/p2")))
        transport.add(f"{SITE}/pages.xml", _xml(f"{SITE}/pages.xml", _urlset(f"{SITE}/about", f"{SITE}/p1")))

        urls = await source.extract_urls(f"{SITE}/sitemap.xml")

        assert urls == [f"{SITE}/p1", f"{SITE}/p2", f"{SITE}/about"]

    @pytest.mark.asyncio
    async def test_self_referencing_index_terminates(self, transport, source):
        index = _index(f"{SITE}/sitemap.xml", f"{SITE}/pages.xml")
        transport.add(f"{SITE}/sitemap.xml", _xml(f"{SITE}/sitemap.xml", index))
        transport.add(f"{SITE}/pages.xml", _xml(f"{SITE}/pages.xml", _urlset(f"{SITE}/a")))

        assert await source.extract_urls(f"{SITE}/sitemap.xml") == [f"{SITE}/a"]
        assert transport.requests.count(f"{SITE}/sitemap.xml") == 1

    @pytest.mark.asyncio
    async def test_nesting_limit(self, transport):
        transport.add(f"{SITE}/sitemap.xml", _xml(f"{SITE}/sitemap.xml", _index(f"{SITE}/pages.xml")))
        transport.add(f"{SITE}/pages.xml", _xml(f"{SITE}/pages.xml", _urlset(f"{SITE}/a")))
        source = SitemapSource(transport, CrawlerConfig(sitemap_max_depth=0))

        assert await source.extract_urls(f"{SITE}/sitemap.xml") == []

    @pytest.mark.asyncio
    async def test_gzipped_sitemap(self, transport, source):
        body = gzip.compress(_urlset(f"{SITE}/zipped"))
        transport.add(f"{SITE}/sitemap.xml.gz", response(f"{SITE}/sitemap.xml.gz", body=body, content_type=None))

        assert await source.extract_urls(f"{SITE}/sitemap.xml.gz") == [f"{SITE}/zipped"]

    @pytest.mark.asyncio
    async def test_unreachable_sitemap_yields_nothing(self, transport, source):
        transport.add(f"{SITE}/down.xml", aiohttp.ClientConnectionError("refused"))

        assert await source.extract_urls(f"{SITE}/missing.xml") == []
        assert await source.extract_urls(f"{SITE}/down.xml") == []

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_yields_nothing(self, transport, source):
        transport.add(f"{SITE}/sitemap.xml", ValueError("transport bug"))
        transport.add(f"{SITE}/pages.xml", _xml(f"{SITE}/pages.xml", _index(f"{SITE}/sitemap.xml")))

        assert await source.extract_urls(f"{SITE}/sitemap.xml") == []
        assert await source.extract_urls(f"{SITE}/pages.xml") == []

    @pytest.mark.asyncio
    async def test_empty_sitemap_url_raises(self, source):
        with pytest.raises(ValueError):
            await source.extract_entries("")

    @pytest.mark.asyncio
    async def test_discover_prefers_robots_declarations(self, source):
        document = parse_robots_txt("Sitemap: https://site.test/declared.xml\n")
        assert await source.discover(SITE, document) == ["https://site.test/declared.xml"]

    @pytest.mark.asyncio
    async def test_discover_tries_common_paths(self, transport, source):
        transport.add(f"{SITE}/sitemap_index.xml", _xml(f"{SITE}/sitemap_index.xml", _index(f"{SITE}/a.xml")))

        assert await source.discover(f"{SITE}/some/page") == [f"{SITE}/sitemap_index.xml"]

    @pytest.mark.asyncio
    async def test_resolve_site_seed_through_robots(self, transport, source):
        transport.add_robots("User-agent: *\nDisallow:\nSitemap: https://site.test/declared.xml\n")
        transport.add(f"{SITE}/declared.xml", _xml(f"{SITE}/declared.xml", _urlset(f"{SITE}/x", f"{SITE}/y")))
        robots = RobotsPolicy(transport, CrawlerConfig())

        assert await source.resolve([f"{SITE}/"], robots) == [f"{SITE}/x", f"{SITE}/y"]

    @pytest.mark.asyncio
    async def test_resolve_sitemap_seed_directly(self, transport, source):
        transport.add(f"{SITE}/sitemap.xml", _xml(f"{SITE}/sitemap.xml", _urlset(f"{SITE}/x")))

        assert await source.resolve([f"{SITE}/sitemap.xml"]) == [f"{SITE}/x"]
        assert f"{SITE}/robots.txt" not in transport.requests


@pytest.mark.unit
def test_looks_like_sitemap():
    assert looks_like_sitemap("https://site.test/sitemap.xml")
    assert looks_like_sitemap("https://site.test/sitemap.xml.gz")
    assert looks_like_sitemap("https://site.test/sitemap_index")
    assert not looks_like_sitemap("https://site.test/")
    assert not looks_like_sitemap("https://site.test/blog/post")
