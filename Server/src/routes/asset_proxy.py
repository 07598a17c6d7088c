"""
Signed Asset URL Proxy

Same-origin relay for model/animation files on hosts that do not grant
cross-origin access to browsers. The upstream URL is passed verbatim in the
``url`` query parameter:

    GET /proxy?url=<percent-encoded upstream URL>

Asset URLs are signed and time-limited (and sometimes bound to the client IP
that requested them), so the proxy must not re-encode or normalize them:
the URL is only split into scheme, host and the raw path+query bytes.

Relayed:
- Request: only ``Range`` (when present) plus a fixed Accept/User-Agent.
  Browser-identifying headers are never forwarded.
- Response: status (so 206 Partial Content survives), headers (minus
  hop-by-hop, and minus content-encoding unless 206) and the body stream,
  which is never buffered in full.

A 403 from the upstream usually means the signature no longer matches
(expired, or IP-bound to another client). Retrying from the proxy cannot
fix that, so it is relayed as-is with a hint.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import quote, urlsplit

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from services.config import ForgeConfig

logger = logging.getLogger("rigforge-server.proxy")

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, OPTIONS",
    "access-control-allow-headers": "Content-Type, Range",
    "access-control-expose-headers": "Content-Length, Content-Range, Accept-Ranges",
}

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

_EXPIRES_PATTERN = re.compile(r"[?&]Expires=(\d+)")

FORBIDDEN_HINT = (
    "The asset host rejected the signed URL. Signed asset URLs expire and may be "
    "bound to the IP address that requested them, so the proxy cannot fetch them "
    "on the browser's behalf. Request a fresh URL or load the asset directly."
)


def build_upstream_url(target: str) -> httpx.URL:
    """
    Build the upstream URL without touching the path or query string.

    Raises:
        ValueError: if the target is not an absolute http(s) URL.
    """
    parts = urlsplit(target)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError("url must be an absolute http(s) URL")
    if parts.username or parts.password:
        raise ValueError("url must not contain credentials")

    authority_end = len(parts.scheme) + len("://") + len(parts.netloc)
    raw_path = target[authority_end:].split("#", 1)[0]
    if not raw_path.startswith("/"):
        raw_path = "/" + raw_path

    return httpx.URL(
        scheme=parts.scheme,
        host=parts.hostname,
        port=parts.port,
        raw_path=raw_path.encode("ascii"),
    )


def expired_at(target: str, now: Optional[float] = None) -> Optional[datetime]:
    """Expiry time of a signed URL if it carries one that has already passed."""
    match = _EXPIRES_PATTERN.search(target)
    if not match:
        return None
    expires = int(match.group(1))
    if (time.time() if now is None else now) > expires:
        return datetime.fromtimestamp(expires, tz=timezone.utc)
    return None


def proxied_asset_url(url: Optional[str], config: ForgeConfig, route: str = "/proxy") -> Optional[str]:
    """Route URLs on hosts without cross-origin access through the proxy."""
    if not url:
        return url
    host = (urlsplit(url).hostname or "").lower()
    if host in config.proxied_hosts:
        return f"{route}?url={quote(url, safe='')}"
    return url


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code, headers=CORS_HEADERS)


class AssetProxy:
    """Streaming relay for signed asset URLs."""

    def __init__(self, config: ForgeConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def _forward_headers(self, request: Request) -> Dict[str, str]:
        headers = {
            "Accept": self.config.proxy_accept,
            "User-Agent": self.config.proxy_user_agent,
        }
        range_header = request.headers.get("range")
        if range_header:
            headers["Range"] = range_header
        return headers

    def _response_headers(self, upstream: httpx.Response, decoded: bool) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for key, value in upstream.headers.multi_items():
            name = key.lower()
            if name in HOP_BY_HOP_HEADERS or name.startswith("access-control-"):
                continue
            if name == "content-encoding" and upstream.status_code != 206:
                continue
            if name == "content-length" and decoded:
                continue
            headers[name] = f"{headers[name]}, {value}" if name in headers else value
        headers.update(CORS_HEADERS)
        return headers

    async def handle(self, request: Request) -> Response:
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)

        target = request.query_params.get("url")
        if not target:
            return _error(400, "Missing url parameter")

        try:
            upstream_url = build_upstream_url(target)
        except ValueError as e:
            return _error(400, f"Invalid url parameter: {e}")

        expiry = expired_at(target)
        if expiry is not None:
            logger.warning(f"[Proxy] Refusing expired URL for {upstream_url.host} (expired {expiry.isoformat()})")
            return _error(403, f"URL expired at {expiry.isoformat()}")

        client = httpx.AsyncClient(
            timeout=self.config.proxy_timeout,
            transport=self._transport,
            follow_redirects=False,
        )
        upstream_request = client.build_request("GET", upstream_url, headers=self._forward_headers(request))
        upstream_request.headers.pop("accept-encoding", None)

        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning(f"[Proxy] Upstream request to {upstream_url.host} failed: {e}")
            return _error(500, f"Proxy request error: {e}")

        async def close() -> None:
            await upstream.aclose()
            await client.aclose()

        if upstream.status_code >= 400:
            try:
                error_text = (await upstream.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                error_text = ""
            finally:
                await close()
            logger.warning(
                f"[Proxy] Upstream {upstream_url.host} returned {upstream.status_code}: {error_text[:200]}"
            )
            extra = {"hint": FORBIDDEN_HINT} if upstream.status_code == 403 else {}
            return _error(
                upstream.status_code,
                f"Upstream error: {upstream.status_code} {error_text}",
                **extra,
            )

        decoded = upstream.status_code != 206 and "content-encoding" in upstream.headers
        chunks = upstream.aiter_bytes() if decoded else upstream.aiter_raw()

        # Pull the first chunk before committing to a status line, so an
        # early stream failure can still be reported as a 500.
        try:
            first_chunk = await chunks.__anext__()
        except StopAsyncIteration:
            first_chunk = b""
        except httpx.HTTPError as e:
            await close()
            logger.warning(f"[Proxy] Upstream stream from {upstream_url.host} failed before headers: {e}")
            return _error(500, f"Stream error: {e}")

        async def body():
            try:
                if first_chunk:
                    yield first_chunk
                async for chunk in chunks:
                    yield chunk
            except httpx.HTTPError as e:
                logger.warning(f"[Proxy] Upstream stream from {upstream_url.host} broke mid-body: {e}")
                raise
            finally:
                await close()

        logger.debug(f"[Proxy] {upstream.status_code} from {upstream_url.host} (range={request.headers.get('range')})")
        return StreamingResponse(
            body(),
            status_code=upstream.status_code,
            headers=self._response_headers(upstream, decoded),
            background=BackgroundTask(close),
        )


def get_proxy_routes(config: ForgeConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
    """Routes for the asset proxy, bound to the given configuration."""
    proxy = AssetProxy(config, transport=transport)
    return [
        Route("/proxy", proxy.handle, methods=["GET", "OPTIONS"]),
        Route("/api/meshy/proxy", proxy.handle, methods=["GET", "OPTIONS"]),
    ]
