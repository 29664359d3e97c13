"""Chat gateway ASGI application."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from .config import Settings
from .context import (
    build_contextual_system_prompt,
    inject_system_prompt,
    normalize_client_context,
)
from .provider import InferenceProvider, WorkersAIProvider
from .ratelimit import FixedWindowRateLimiter
from .security import SecurityHeadersMiddleware, apply_security_headers
from .validation import ValidationError, validate_chat_request

logger = logging.getLogger("chatgate.proxy")

TRUSTED_CLIENT_IP_HEADER = "cf-connecting-ip"
FORWARDED_FOR_HEADER = "x-forwarded-for"
UNKNOWN_CLIENT = "unknown"

# API routes claim every method so non-POST requests get the JSON 405
# instead of falling through to the static asset mount.
API_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."
PROCESSING_FAILED_MESSAGE = "Failed to process request"
DEFAULT_STREAM_MEDIA_TYPE = "text/event-stream"


@dataclass
class ChatGateway:
    """Everything a request handler needs, owned by one application."""

    settings: Settings
    provider: InferenceProvider
    rate_limiter: FixedWindowRateLimiter = field(default_factory=FixedWindowRateLimiter)

    async def close(self) -> None:
        await self.provider.close()


def client_identifier(headers: Mapping[str, str]) -> str:
    """Rate-limit key for a request.

    The proxy-supplied ``CF-Connecting-IP`` is trusted first.  The first
    ``X-Forwarded-For`` hop is a client-controlled fallback and can be
    spoofed when no trusted proxy sits in front of the gateway.
    """
    trusted = (headers.get(TRUSTED_CLIENT_IP_HEADER) or "").strip()
    if trusted:
        return trusted
    forwarded = headers.get(FORWARDED_FOR_HEADER) or ""
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or UNKNOWN_CLIENT


def _json_error(
    body: dict,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> Response:
    response = JSONResponse(body, status_code=status_code, headers=headers)
    return apply_security_headers(response, cache_control="no-store")


def error_response(
    message: str,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> Response:
    return _json_error({"error": message}, status_code, headers)


def _get_gateway(request: Request) -> ChatGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("Gateway not initialized")
    return gateway


async def handle_chat_request(request: Request) -> Response:
    if request.method != "POST":
        return error_response("Method not allowed", 405, headers={"Allow": "POST"})

    gateway = _get_gateway(request)
    config = gateway.settings.chat_config()

    try:
        identifier = client_identifier(request.headers)
        if gateway.rate_limiter.check(
            identifier, config.rate_limit_requests, config.rate_limit_window_ms
        ):
            logger.info("Rate limit exceeded for %s", identifier)
            return error_response(
                RATE_LIMITED_MESSAGE,
                429,
                headers={"Retry-After": str(config.retry_after_seconds)},
            )

        try:
            req = await validate_chat_request(request, config)
        except ValidationError as exc:
            logger.debug("Rejected chat request from %s: %s", identifier, exc.message)
            return _json_error(exc.to_dict(), exc.status_code)

        context = normalize_client_context(req.client_context)
        system_prompt = build_contextual_system_prompt(config.system_prompt, context)
        messages = inject_system_prompt(req.messages, system_prompt)

        stream = await gateway.provider.run(
            req.model,
            {
                "messages": [m.to_dict() for m in messages],
                "max_tokens": config.max_tokens,
            },
        )
    except Exception:
        logger.exception("Error processing chat request")
        return error_response(PROCESSING_FAILED_MESSAGE, 500)

    response = StreamingResponse(
        stream,
        media_type=getattr(stream, "media_type", None) or DEFAULT_STREAM_MEDIA_TYPE,
        headers={"X-Accel-Buffering": "no"},
    )
    return apply_security_headers(response, cache_control="no-store")


async def handle_api_not_found(request: Request) -> Response:
    return error_response("Not found", 404)


def create_app(
    settings: Settings,
    provider: InferenceProvider | None = None,
    rate_limiter: FixedWindowRateLimiter | None = None,
) -> Starlette:
    """Create the gateway ASGI application.

    *provider* defaults to a :class:`WorkersAIProvider` built from
    ``settings.provider``; *rate_limiter* defaults to a fresh in-memory
    table owned by this app.  Pass either to share or fake them.
    """
    if provider is None:
        provider = WorkersAIProvider(settings.provider)
        if not settings.provider.configured:
            logger.warning(
                "Workers AI credentials are missing; chat requests will fail "
                "until CHATGATE_ACCOUNT_ID and CHATGATE_API_TOKEN are set."
            )
    if rate_limiter is None:
        rate_limiter = FixedWindowRateLimiter()
    gateway = ChatGateway(settings=settings, provider=provider, rate_limiter=rate_limiter)

    @asynccontextmanager
    async def lifespan(app):
        config = settings.chat_config()
        logger.info(
            "chatgate serving model %s (%d allowed); assets: %s",
            config.model_id,
            len(config.model_allowlist),
            settings.assets_dir or "disabled",
        )
        yield
        await gateway.close()

    routes = [
        Route("/api/chat", handle_chat_request, methods=API_METHODS),
        Route("/api/{path:path}", handle_api_not_found, methods=API_METHODS),
    ]
    if settings.assets_dir:
        routes.append(Mount("/", app=StaticFiles(directory=settings.assets_dir, html=True)))

    app = Starlette(
        routes=routes,
        middleware=[Middleware(SecurityHeadersMiddleware)],
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    return app
