#!/usr/bin/env python3
"""
Single-host reverse proxy.

Requests are relayed to one upstream origin with the request path joined
onto the origin's base path (the reserved prefix is preserved), the query
merged, hop-by-hop headers stripped both ways and bodies streamed.
"""

import logging
from typing import List, Optional, Tuple
from urllib.parse import SplitResult, urlsplit, urlunsplit

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from errors import UpstreamError

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def parse_upstream_origin(origin: str) -> SplitResult:
    """Validate an upstream origin; raises ValueError when it is unusable"""
    parts = urlsplit(origin or "")
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Invalid upstream origin: {origin!r}")
    try:
        parts.port
    except ValueError as e:
        raise ValueError(f"Invalid upstream origin: {origin!r}: {e}") from e
    return parts


def join_paths(base: str, path: str) -> str:
    """Join two URL paths with exactly one slash between them"""
    if not base:
        return path or "/"
    if not path:
        return base
    a = base.endswith("/")
    b = path.startswith("/")
    if a and b:
        return base + path[1:]
    if not a and not b:
        return base + "/" + path
    return base + path


def merge_queries(base: str, query: str) -> str:
    if not base or not query:
        return base + query
    return base + "&" + query


def filter_headers(headers: List[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Drop hop-by-hop headers, including any listed in Connection"""
    connection_tokens = set()
    for key, value in headers:
        if key.lower() == b"connection":
            connection_tokens.update(
                token.strip().lower() for token in value.decode("latin-1").split(",")
            )
    dropped = HOP_BY_HOP_HEADERS | connection_tokens
    return [
        (key.lower(), value) for key, value in headers
        if key.decode("latin-1").lower() not in dropped
    ]


class ReverseProxy:
    """
    Relays requests to a single upstream origin.

    Args:
        upstream: Origin URL, e.g. ``http://backend:9000`` or with a base path
        client: Shared httpx.AsyncClient; one is created lazily otherwise
        timeout: Timeout applied to a lazily created client
    """

    def __init__(
        self,
        upstream: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = 30.0,
        trust_env: bool = True
    ):
        self.upstream = parse_upstream_origin(upstream)
        self.timeout = timeout
        self.trust_env = trust_env
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                trust_env=self.trust_env
            )
        return self._client

    def build_url(self, path: str, query: str = "") -> str:
        """Upstream URL for a request path and query string"""
        return urlunsplit((
            self.upstream.scheme,
            self.upstream.netloc,
            join_paths(self.upstream.path, path),
            merge_queries(self.upstream.query, query),
            "",
        ))

    def build_headers(self, request: Request) -> List[Tuple[bytes, bytes]]:
        headers = [
            (key, value) for key, value in filter_headers(request.headers.raw)
            if key.lower() != b"host"
        ]
        if request.client is not None:
            prior = request.headers.get("x-forwarded-for")
            forwarded = f"{prior}, {request.client.host}" if prior else request.client.host
            headers = [(k, v) for k, v in headers if k.lower() != b"x-forwarded-for"]
            headers.append((b"x-forwarded-for", forwarded.encode("latin-1")))
        return headers

    async def forward(self, request: Request, path: Optional[str] = None) -> StreamingResponse:
        """
        Relay a request upstream and stream the response back.

        Args:
            request: Incoming request
            path: Upstream path; defaults to the incoming raw path

        Raises:
            UpstreamError: the upstream could not be reached
        """
        if path is None:
            raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
            path = raw_path.decode("latin-1").split("?", 1)[0]
        query = request.scope.get("query_string", b"").decode("latin-1")
        url = self.build_url(path, query)

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self.build_headers(request),
            content=request.stream() if has_body else None,
        )

        logger.info(f"Forwarding {request.method} {request.url.path} -> {url}")
        try:
            upstream_response = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Upstream request to {url} failed: {e!r}")
            detail = type(e).__name__ + (f": {e}" if str(e) else "")
            raise UpstreamError(f"Bad Gateway: {detail}", path=str(url)) from e

        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = filter_headers(upstream_response.headers.raw)
        return response

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
