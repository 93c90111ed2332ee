"""Upstream fetches against the origin server and classification of their outcome."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
from fastapi import Request
import structlog

LOGGER = structlog.get_logger("edgeproxy.origin")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
# httpx hands back decoded bodies, so the upstream framing headers no longer apply.
STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "content-length"}
STRIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}
EXPLICIT_REDIRECT_CODES = frozenset({301, 302})


class OriginOutcome(str, Enum):
    ENGINE_REDIRECT = "engine_redirect"
    EXPLICIT_REDIRECT = "explicit_redirect"
    CACHEABLE = "cacheable"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class OriginResponse:
    """Fully buffered upstream response."""

    status_code: int
    headers: httpx.Headers
    body: bytes
    url: str
    redirected: bool = False
    redirect_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("location")

    def relay_headers(self) -> list[tuple[str, str]]:
        return [(name, value) for name, value in self.headers.multi_items() if name.lower() not in STRIPPED_RESPONSE_HEADERS]


def classify(response: OriginResponse, cacheable: bool) -> OriginOutcome:
    if response.redirected and response.redirect_status is not None:
        return OriginOutcome.ENGINE_REDIRECT
    if response.status_code in EXPLICIT_REDIRECT_CODES and response.location:
        return OriginOutcome.EXPLICIT_REDIRECT
    if response.ok and cacheable:
        return OriginOutcome.CACHEABLE
    return OriginOutcome.PASSTHROUGH


class OriginFetcher:
    """Forwards inbound requests to the configured origin with httpx.

    Transport errors surface as :class:`httpx.HTTPError`; the caller decides
    how to answer the client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        origin_url: str,
        *,
        follow_redirects: bool = False,
        preserve_host: bool = True,
    ) -> None:
        self._client = client
        self._origin = httpx.URL(str(origin_url))
        self._follow_redirects = follow_redirects
        self._preserve_host = preserve_host

    @property
    def follow_redirects(self) -> bool:
        return self._follow_redirects

    def upstream_url(self, path: str, query: str) -> httpx.URL:
        base_path = self._origin.path.rstrip("/")
        return self._origin.copy_with(path=f"{base_path}{path}" or "/", query=query.encode("utf-8") if query else None)

    def upstream_headers(self, request: Request) -> list[tuple[bytes, bytes]]:
        """Inbound headers as raw bytes, so values outside ASCII pass through untouched."""
        raw = [(name.lower(), value) for name, value in request.headers.raw]
        headers = [
            (name, value)
            for name, value in raw
            if name.decode("latin-1") not in STRIPPED_REQUEST_HEADERS and name != b"x-forwarded-for"
        ]
        host = next((value for name, value in raw if name == b"host"), None)
        if host:
            if self._preserve_host:
                headers.append((b"host", host))
            headers.append((b"x-forwarded-host", host))
        headers.append((b"x-forwarded-proto", request.url.scheme.encode("ascii")))

        forwarded_for = [value for name, value in raw if name == b"x-forwarded-for"]
        if request.client and request.client.host:
            forwarded_for.append(request.client.host.encode("latin-1"))
        if forwarded_for:
            headers.append((b"x-forwarded-for", b", ".join(forwarded_for)))
        return headers

    def public_target(self, url: httpx.URL) -> str:
        """Rewrite URLs on the origin's own host to a path-relative target."""
        if url.host == self._origin.host and url.port == self._origin.port:
            base_path = self._origin.path.rstrip("/")
            path = url.path
            if base_path and path.startswith(base_path):
                path = path[len(base_path):] or "/"
            target = f"{path}?{url.query.decode('ascii')}" if url.query else path
            return f"{target}#{url.fragment}" if url.fragment else target
        return str(url)

    def redirect_target(self, response: OriginResponse) -> str:
        """Client-facing target of an explicit redirect.

        ``Location`` is resolved against the upstream URL, then run through
        :meth:`public_target`. Raises :class:`httpx.InvalidURL` for a value
        that cannot be parsed.
        """
        return self.public_target(httpx.URL(response.url).join(response.location or ""))

    async def fetch(self, request: Request, *, follow_redirects: Optional[bool] = None) -> OriginResponse:
        follow = self._follow_redirects if follow_redirects is None else follow_redirects
        body = await request.body()
        upstream = self._client.build_request(
            request.method,
            self.upstream_url(request.url.path, request.url.query),
            headers=self.upstream_headers(request),
            content=body or None,
        )
        response = await self._client.send(upstream, follow_redirects=follow)

        redirected = bool(follow and response.history)
        LOGGER.debug(
            "origin_response",
            method=request.method,
            url=str(upstream.url),
            status=response.status_code,
            redirected=redirected,
        )
        return OriginResponse(
            status_code=response.status_code,
            headers=response.headers,
            body=response.content,
            url=self.public_target(response.url) if redirected else str(response.url),
            redirected=redirected,
            redirect_status=response.history[0].status_code if redirected else None,
        )

    async def close(self) -> None:
        await self._client.aclose()
