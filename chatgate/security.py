"""Security and cache headers for outgoing responses."""

from __future__ import annotations

from starlette.datastructures import MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Embedder-Policy": "require-corp",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
}

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data:",
    "connect-src 'self'",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
    "object-src 'none'",
])


def _set_headers(
    headers: MutableHeaders,
    *,
    is_html: bool,
    cache_control: str | None,
) -> None:
    for name, value in SECURITY_HEADERS.items():
        headers[name] = value
    if is_html:
        headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
    if cache_control is not None:
        headers["Cache-Control"] = cache_control


def apply_security_headers(
    response: Response,
    *,
    is_html: bool = False,
    cache_control: str | None = None,
) -> Response:
    """Layer the security headers onto *response* and return it.

    Only headers change: status, other headers and the body (including a
    ``StreamingResponse`` iterator that has not started yet) are untouched.
    """
    _set_headers(response.headers, is_html=is_html, cache_control=cache_control)
    return response


class SecurityHeadersMiddleware:
    """ASGI middleware applying :data:`SECURITY_HEADERS` to every response.

    Covers responses that never pass through :func:`apply_security_headers`
    (router 404/405s, static assets).  HTML responses also get the
    Content-Security-Policy.  Headers are rewritten on the
    ``http.response.start`` message, so bodies stream through untouched.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                content_type = headers.get("content-type", "")
                _set_headers(
                    headers,
                    is_html=content_type.startswith("text/html"),
                    cache_control=None,
                )
            await send(message)

        await self.app(scope, receive, send_with_headers)
