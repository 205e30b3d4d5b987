import pytest

from distcrawl.crawler.link_validator import (
    SKIP_EXTENSIONS, is_crawlable, is_file_link, is_valid_url, resolve_link
)


@pytest.mark.parametrize("url", [
    "https://example.com",
    "http://example.com/",
    "https://example.com/about",
    "https://sub.example.com:8443/a/b?q=1#frag",
    "HTTPS://EXAMPLE.COM/Page",
    "http://127.0.0.1/index.html",
    "http://[::1]:8080/",
    "https://example.com/archive.zip/",
    "https://example.com/download?file=report.pdf",
])
def test_valid_urls_are_accepted(url):
    assert is_valid_url(url) is True


@pytest.mark.parametrize("url", [
    "",
    "example.com",
    "/relative/path",
    "ftp://example.com/file",
    "mailto:someone@example.com",
    "javascript:void(0)",
    "http://",
    "https:///path-without-host",
    "http://example.com:99999/",
    "http://example.com:port/",
    "http://[::1/",
    "https://exa mple.com/",
    "https://example.com/a b",
    "https://example.com/\n",
    "https://example.com/photo.jpg",
    "https://example.com/PHOTO.JPG",
    "https://example.com/docs/report.pdf",
    "https://example.com/backup.tar.gz",
    "https://example.com/song.mp3",
    "https://example.com/movie.mkv",
])
def test_invalid_urls_are_rejected(url):
    assert is_valid_url(url) is False


@pytest.mark.parametrize("extension", SKIP_EXTENSIONS)
def test_every_denylisted_extension_is_rejected(extension):
    assert is_file_link(f"/files/name{extension}")
    assert not is_valid_url(f"https://example.com/files/name{extension}")


@pytest.mark.parametrize("value", [
    None, 42, 3.5, b"https://example.com", ["https://example.com"], object(),
    "\x00", "%", "http://%zz", "[", "http://[", "://", "\ud800",
])
def test_validator_is_total(value):
    assert is_valid_url(value) in (True, False)
    assert is_crawlable(value, "https://a.com/page") in (True, False)
    assert is_crawlable("/about", value) in (True, False)
    resolve_link(value, value)


def test_relative_file_link_rejected_after_resolution():
    assert resolve_link("photo.jpg", "https://a.com/page") is None
    assert not is_crawlable("photo.jpg", "https://a.com/page")


def test_relative_path_resolves_against_base():
    assert resolve_link("/about", "https://a.com/page") == "https://a.com/about"
    assert is_crawlable("/about", "https://a.com/page")


def test_document_relative_path_resolves_against_base_directory():
    assert resolve_link("next.html", "https://a.com/docs/page") == "https://a.com/docs/next.html"


def test_scheme_relative_href_takes_base_scheme():
    assert resolve_link("//cdn.example.org/page", "https://a.com/") == "https://cdn.example.org/page"


def test_absolute_href_is_returned_unchanged():
    assert resolve_link("https://b.com/x?y=1", "https://a.com/page") == "https://b.com/x?y=1"


def test_surrounding_whitespace_is_stripped():
    assert resolve_link("  /about\n", "https://a.com/page") == "https://a.com/about"


@pytest.mark.parametrize("href", [
    "", "   ", "mailto:me@a.com", "javascript:alert(1)", "tel:+123", "ftp://a.com/x",
])
def test_non_crawlable_hrefs_are_dropped(href):
    assert resolve_link(href, "https://a.com/page") is None


def test_unresolvable_relative_href_is_dropped():
    assert resolve_link("/about", "not a base url") is None
