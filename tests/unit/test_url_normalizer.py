"""
Tests for URL canonicalization.
"""

import pytest

from quarrycrawl.crawler.url_normalizer import are_equivalent, get_host, get_origin, is_http_url, normalize_url


@pytest.mark.unit
class TestNormalizeUrl:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("HTTPS://Example.COM/Path", "https://example.com/Path"),
            ("https://www.example.com/a", "https://example.com/a"),
            ("http://example.com:80/a", "http://example.com/a"),
            ("https://example.com:443/a", "https://example.com/a"),
            ("https://example.com:8443/a", "https://example.com:8443/a"),
            ("https://example.com//a///b", "https://example.com/a/b"),
            ("https://example.com/a/", "https://example.com/a"),
            ("https://example.com/", "https://example.com/"),
            ("https://example.com", "https://example.com/"),
            ("https://example.com/a#section", "https://example.com/a"),
            ("https://example.com/a?b=2&a=1", "https://example.com/a?b=2&a=1"),
        ],
    )
    def test_canonical_forms(self, raw, expected):
        assert normalize_url(raw) == expected

    def test_non_absolute_input_is_returned_unchanged(self):
        assert normalize_url("/relative/path") == "/relative/path"
        assert normalize_url("") == ""
        assert normalize_url("not a url") == "not a url"

    def test_normalization_is_idempotent(self):
        url = "HTTP://WWW.Example.com:80//docs//guide/#top"
        once = normalize_url(url)
        assert normalize_url(once) == once

    def test_equivalent_spellings(self):
        assert are_equivalent("https://www.example.com/a/", "https://EXAMPLE.com/a#x")
        assert not are_equivalent("https://example.com/a", "https://example.com/b")

    def test_query_is_significant(self):
        assert not are_equivalent("https://example.com/a?page=1", "https://example.com/a?page=2")


@pytest.mark.unit
class TestUrlHelpers:
    def test_is_http_url(self):
        assert is_http_url("https://example.com/")
        assert is_http_url("http://example.com")
        assert not is_http_url("ftp://example.com/file")
        assert not is_http_url("mailto:someone@example.com")
        assert not is_http_url("/relative")

    def test_get_host_strips_www(self):
        assert get_host("https://WWW.Example.com/a") == "example.com"
        assert get_host("not a url") == ""

    def test_get_origin_keeps_port(self):
        assert get_origin("https://Example.com:8080/a/b?q=1") == "https://example.com:8080"
