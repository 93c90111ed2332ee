from __future__ import annotations

import httpx
import pytest

from edgeproxy.edge.origin import OriginFetcher, OriginOutcome, OriginResponse, classify

ORIGIN_URL = "http://origin.internal:8080"


def origin_response(status_code: int = 200, headers=None, **kwargs) -> OriginResponse:
    return OriginResponse(
        status_code=status_code,
        headers=httpx.Headers(headers or {}),
        body=kwargs.pop("body", b""),
        url=kwargs.pop("url", f"{ORIGIN_URL}/"),
        **kwargs,
    )


def make_fetcher(origin, **kwargs) -> OriginFetcher:
    return OriginFetcher(httpx.AsyncClient(transport=origin.transport), ORIGIN_URL, **kwargs)


def test_classify_engine_redirect_wins() -> None:
    response = origin_response(200, redirected=True, redirect_status=301, url="/new")
    assert classify(response, cacheable=True) is OriginOutcome.ENGINE_REDIRECT


@pytest.mark.parametrize("status_code", [301, 302])
def test_classify_explicit_redirect(status_code: int) -> None:
    response = origin_response(status_code, headers={"location": "/new"})
    assert classify(response, cacheable=True) is OriginOutcome.EXPLICIT_REDIRECT


def test_classify_redirect_without_location_passes_through() -> None:
    assert classify(origin_response(301), cacheable=True) is OriginOutcome.PASSTHROUGH


@pytest.mark.parametrize("status_code", [303, 307, 308])
def test_classify_other_redirect_codes_pass_through(status_code: int) -> None:
    response = origin_response(status_code, headers={"location": "/new"})
    assert classify(response, cacheable=True) is OriginOutcome.PASSTHROUGH


@pytest.mark.parametrize("status_code", [200, 201, 204])
def test_classify_success_is_cacheable(status_code: int) -> None:
    assert classify(origin_response(status_code), cacheable=True) is OriginOutcome.CACHEABLE


def test_classify_success_on_non_cacheable_path() -> None:
    assert classify(origin_response(200), cacheable=False) is OriginOutcome.PASSTHROUGH


@pytest.mark.parametrize("status_code", [404, 500, 503])
def test_classify_errors_pass_through(status_code: int) -> None:
    assert classify(origin_response(status_code), cacheable=True) is OriginOutcome.PASSTHROUGH


def test_relay_headers_drop_framing_and_hop_by_hop() -> None:
    response = origin_response(
        headers=[
            ("content-type", "text/html"),
            ("content-length", "10"),
            ("content-encoding", "gzip"),
            ("transfer-encoding", "chunked"),
            ("connection", "keep-alive"),
            ("keep-alive", "timeout=5"),
            ("upgrade", "h2c"),
            ("set-cookie", "a=1"),
            ("set-cookie", "b=2"),
        ]
    )
    assert response.relay_headers() == [
        ("content-type", "text/html"),
        ("set-cookie", "a=1"),
        ("set-cookie", "b=2"),
    ]


def test_upstream_url_keeps_origin_base_path() -> None:
    fetcher = OriginFetcher(httpx.AsyncClient(), "http://origin.internal:8080/wordpress/")
    assert str(fetcher.upstream_url("/blog/post-1", "a=1")) == "http://origin.internal:8080/wordpress/blog/post-1?a=1"
    assert str(fetcher.upstream_url("/", "")) == "http://origin.internal:8080/wordpress/"


def test_public_target_relativizes_origin_urls() -> None:
    fetcher = OriginFetcher(httpx.AsyncClient(), ORIGIN_URL)
    assert fetcher.public_target(httpx.URL(f"{ORIGIN_URL}/new?p=2")) == "/new?p=2"
    assert fetcher.public_target(httpx.URL("https://cdn.example.net/x")) == "https://cdn.example.net/x"


def test_redirect_target_resolves_against_the_upstream_url() -> None:
    fetcher = OriginFetcher(httpx.AsyncClient(), f"{ORIGIN_URL}/wordpress/")

    def target(location: str) -> str:
        return fetcher.redirect_target(
            origin_response(301, headers={"location": location}, url=f"{ORIGIN_URL}/wordpress/blog/old")
        )

    assert target(f"{ORIGIN_URL}/wordpress/blog/new#top") == "/blog/new#top"
    assert target("sibling") == "/blog/sibling"
    assert target("/blog/new") == "/blog/new"
    assert target("https://blog.example.com/new-post") == "https://blog.example.com/new-post"


@pytest.mark.asyncio
async def test_fetch_forwards_method_query_headers_and_body(origin, make_request) -> None:
    origin.respond("/wp-json/wp/v2/posts", 201, json={"id": 7})
    fetcher = make_fetcher(origin)
    request = make_request(
        "/wp-json/wp/v2/posts",
        method="POST",
        query="draft=1",
        body=b'{"title": "hi"}',
        headers={"content-type": "application/json", "proxy-authorization": "secret", "x-custom": "yes"},
    )

    response = await fetcher.fetch(request)

    assert response.status_code == 201
    upstream = origin.requests[-1]
    assert upstream.method == "POST"
    assert upstream.url.host == "origin.internal"
    assert upstream.url.query == b"draft=1"
    assert upstream.content == b'{"title": "hi"}'
    assert upstream.headers["host"] == "blog.example.com"
    assert upstream.headers["x-forwarded-host"] == "blog.example.com"
    assert upstream.headers["x-forwarded-proto"] == "https"
    assert upstream.headers["x-forwarded-for"] == "203.0.113.7"
    assert upstream.headers["x-custom"] == "yes"
    assert "proxy-authorization" not in upstream.headers


@pytest.mark.asyncio
async def test_fetch_appends_to_existing_forwarded_for(origin, make_request) -> None:
    origin.respond("/", 200, text="home")
    await make_fetcher(origin).fetch(make_request("/", headers={"x-forwarded-for": "198.51.100.1"}))
    assert origin.requests[-1].headers["x-forwarded-for"] == "198.51.100.1, 203.0.113.7"


@pytest.mark.asyncio
async def test_fetch_forwards_header_bytes_verbatim(origin, make_request) -> None:
    origin.respond("/", 200, text="home")
    agent = "CaféBrowser/1.0".encode("utf-8")
    await make_fetcher(origin).fetch(make_request("/", headers={"user-agent": agent, "x-name": "Jörg"}))
    raw = origin.requests[-1].headers.raw
    assert (b"user-agent", agent) in raw
    assert (b"x-name", "Jörg".encode("latin-1")) in raw


@pytest.mark.asyncio
async def test_fetch_without_host_preservation_targets_origin_host(origin, make_request) -> None:
    origin.respond("/", 200, text="home")
    await make_fetcher(origin, preserve_host=False).fetch(make_request("/"))
    assert origin.requests[-1].headers["host"] == "origin.internal:8080"


@pytest.mark.asyncio
async def test_fetch_does_not_follow_redirects_by_default(origin, make_request) -> None:
    origin.respond("/old", 301, headers={"location": "/new"})
    response = await make_fetcher(origin).fetch(make_request("/old"))
    assert response.status_code == 301
    assert response.location == "/new"
    assert not response.redirected
    assert origin.calls_to("/new") == 0


@pytest.mark.asyncio
async def test_fetch_engine_redirect_records_first_hop(origin, make_request) -> None:
    origin.respond("/old", 301, headers={"location": f"{ORIGIN_URL}/middle"})
    origin.respond("/middle", 302, headers={"location": f"{ORIGIN_URL}/new?p=1"})
    origin.respond("/new", 200, text="final")

    response = await make_fetcher(origin, follow_redirects=True).fetch(make_request("/old"))

    assert response.redirected
    assert response.redirect_status == 301
    assert response.url == "/new?p=1"
    assert classify(response, cacheable=True) is OriginOutcome.ENGINE_REDIRECT


@pytest.mark.asyncio
async def test_fetch_engine_redirect_to_foreign_host_keeps_absolute_url(origin, make_request) -> None:
    origin.respond("/old", 302, headers={"location": "https://cdn.example.net/asset"})
    origin.respond("/asset", 200, text="asset")

    response = await make_fetcher(origin, follow_redirects=True).fetch(make_request("/old"))

    assert response.redirect_status == 302
    assert response.url == "https://cdn.example.net/asset"


@pytest.mark.asyncio
async def test_fetch_override_disables_following(origin, make_request) -> None:
    origin.respond("/wp-login.php", 302, headers={"location": "/wp-admin/"})
    fetcher = make_fetcher(origin, follow_redirects=True)
    response = await fetcher.fetch(make_request("/wp-login.php"), follow_redirects=False)
    assert response.status_code == 302
    assert not response.redirected


@pytest.mark.asyncio
async def test_fetch_transport_error_propagates(make_request) -> None:
    def explode(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = OriginFetcher(httpx.AsyncClient(transport=httpx.MockTransport(explode)), ORIGIN_URL)
    with pytest.raises(httpx.HTTPError):
        await fetcher.fetch(make_request("/blog/post-1"))
