import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from distcrawl.crawler.exceptions import FetchFailed
from distcrawl.crawler.fetcher import WebFetcher


async def echo_agent(request):
    return web.Response(body=request.headers['User-Agent'].encode('utf-8'))


async def page(request):
    return web.Response(body=b'<a href="/next">next</a>', content_type='text/html')


async def missing(request):
    return web.Response(status=404, text="not found")


async def unavailable(request):
    return web.Response(status=503, text="try later")


async def slow(request):
    await asyncio.sleep(1)
    return web.Response(text="late")


async def large(request):
    return web.Response(body=b"x" * 4096)


async def streamed(request):
    response = web.StreamResponse()
    await response.prepare(request)
    for _ in range(4):
        await response.write(b"y" * 1024)
    await response.write_eof()
    return response


def make_app():
    app = web.Application()
    app.router.add_get('/agent', echo_agent)
    app.router.add_get('/page', page)
    app.router.add_get('/missing', missing)
    app.router.add_get('/unavailable', unavailable)
    app.router.add_get('/slow', slow)
    app.router.add_get('/large', large)
    app.router.add_get('/streamed', streamed)
    return app


def fetch_from_app(path, **fetcher_options):
    """Fetch ``path`` from a local test server; returns the body or the exception."""
    async def scenario():
        server = TestServer(make_app())
        await server.start_server()
        options = dict(user_agent="distcrawl-test/1.0", request_timeout=5)
        options.update(fetcher_options)
        try:
            async with WebFetcher(**options) as fetcher:
                try:
                    return await fetcher.fetch(str(server.make_url(path))), fetcher.get_stats()
                except FetchFailed as e:
                    return e, fetcher.get_stats()
        finally:
            await server.close()

    return asyncio.run(scenario())


def test_fetch_returns_body():
    body, stats = fetch_from_app('/page')
    assert body == b'<a href="/next">next</a>'
    assert stats['successful_requests'] == 1
    assert stats['total_bytes_downloaded'] == len(body)


def test_fetch_sends_user_agent():
    body, _ = fetch_from_app('/agent')
    assert body == b"distcrawl-test/1.0"


@pytest.mark.parametrize("path,reason", [
    ('/missing', "HTTP 404"),
    ('/unavailable', "HTTP 503"),
])
def test_error_status_is_a_fetch_failure(path, reason):
    error, stats = fetch_from_app(path)
    assert isinstance(error, FetchFailed)
    assert error.reason == reason
    assert stats['failed_requests'] == 1


def test_timeout_is_a_fetch_failure():
    error, _ = fetch_from_app('/slow', request_timeout=0.1)
    assert isinstance(error, FetchFailed)


def test_oversized_body_is_refused():
    error, _ = fetch_from_app('/large', max_body_size=1024)
    assert isinstance(error, FetchFailed)
    assert "too large" in error.reason


def test_oversized_stream_is_cut_off():
    error, _ = fetch_from_app('/streamed', max_body_size=2048)
    assert isinstance(error, FetchFailed)
    assert "size limit" in error.reason


def test_unreachable_host_is_a_fetch_failure():
    async def scenario():
        async with WebFetcher(user_agent="distcrawl-test/1.0", request_timeout=2) as fetcher:
            await fetcher.fetch("http://127.0.0.1:1/")

    with pytest.raises(FetchFailed):
        asyncio.run(scenario())


def test_fetch_without_session_fails():
    async def scenario():
        await WebFetcher(user_agent="distcrawl-test/1.0").fetch("https://example.com/")

    with pytest.raises(FetchFailed):
        asyncio.run(scenario())
