"""Input validation for the chat endpoint.

Turns an untrusted HTTP request into a :class:`ChatRequest` or raises a
:class:`ValidationError` carrying the HTTP status and the client-facing
message.  Checks run in a fixed order and the first failure wins:

1. content type
2. declared ``Content-Length``
3. actual body size while reading
4. JSON syntax
5. ``messages`` shape
6. message count
7. message length
8. model selection

Messages are deliberately coarse: a bad batch is rejected without saying
which message or field failed.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass

from starlette.requests import Request

from .config import ChatConfig

VALID_ROLES = frozenset({"system", "user", "assistant"})

INVALID_JSON_MESSAGE = "Invalid JSON body"
INVALID_MESSAGES_MESSAGE = "Invalid request: messages must be an array of chat messages"
INVALID_MODEL_MESSAGE = (
    "Invalid model selection. Please choose a model from the allowed list."
)
UNSUPPORTED_MEDIA_TYPE_MESSAGE = "Content-Type must be application/json"


# ---------------------------------------------------------------------------
# Validation error
# ---------------------------------------------------------------------------


class ValidationError(Exception):
    """Raised when a request fails validation.

    Attributes
    ----------
    message:
        Human-readable description, safe to return to the caller.
    status_code:
        HTTP status for the rejection (400, 413 or 415).
    """

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> dict:
        """Serialise to the JSON error envelope."""
        return {"error": self.message}


def _too_large(max_bytes: int) -> ValidationError:
    return ValidationError(
        f"Request body too large: maximum {max_bytes} bytes allowed",
        status_code=413,
    )


# ---------------------------------------------------------------------------
# Validated request models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    """A single message in a chat conversation."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """Validated body for ``POST /api/chat``.

    Parameters
    ----------
    messages:
        Normalized messages, ``role`` and ``content`` only, in caller order.
    model:
        The model id to run: the caller's choice from the allowlist, or the
        configured default.
    client_context:
        The raw ``clientContext`` value, not yet sanitized, or ``None``.
    """

    messages: list[ChatMessage]
    model: str
    client_context: object = None


# ---------------------------------------------------------------------------
# Transport checks
# ---------------------------------------------------------------------------


def check_content_type(headers: Mapping[str, str]) -> None:
    content_type = headers.get("content-type") or ""
    if "application/json" not in content_type.lower():
        raise ValidationError(UNSUPPORTED_MEDIA_TYPE_MESSAGE, status_code=415)


def check_content_length(headers: Mapping[str, str], max_bytes: int) -> None:
    """Reject a declared ``Content-Length`` above *max_bytes* before reading.

    A missing or non-numeric header is ignored; :func:`read_body` still
    enforces the limit on the bytes actually received.
    """
    raw = headers.get("content-length")
    if raw is None:
        return
    try:
        declared = int(raw.strip())
    except ValueError:
        return
    if declared > max_bytes:
        raise _too_large(max_bytes)


async def read_body(request: Request, max_bytes: int) -> bytes:
    """Read the request body, aborting as soon as it exceeds *max_bytes*."""
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > max_bytes:
            raise _too_large(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


def _reject_constant(name: str) -> object:
    raise ValueError(f"Invalid JSON constant {name}")


def parse_json_body(body: bytes) -> object:
    # NaN and +/-Infinity are not JSON
    try:
        return json.loads(body, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        raise ValidationError(INVALID_JSON_MESSAGE) from None


# ---------------------------------------------------------------------------
# Body validation
# ---------------------------------------------------------------------------


def is_chat_message(value: object) -> bool:
    if not isinstance(value, dict):
        return False
    role = value.get("role")
    return (
        isinstance(role, str)
        and role in VALID_ROLES
        and isinstance(value.get("content"), str)
    )


def _validate_messages(value: object, config: ChatConfig) -> list[ChatMessage]:
    if not isinstance(value, list) or not all(is_chat_message(m) for m in value):
        raise ValidationError(INVALID_MESSAGES_MESSAGE)

    if len(value) > config.max_messages:
        raise ValidationError(
            f"Too many messages: maximum {config.max_messages} messages allowed"
        )

    for msg in value:
        if len(msg["content"]) > config.max_message_length:
            raise ValidationError(
                f"Message too long: maximum {config.max_message_length} "
                f"characters allowed"
            )

    return [ChatMessage(role=m["role"], content=m["content"]) for m in value]


def _validate_model(value: object, config: ChatConfig) -> str:
    """Return the model to run.  Absent or blank means the default."""
    if value is None:
        return config.model_id
    if not isinstance(value, str):
        raise ValidationError(INVALID_MODEL_MESSAGE)
    model = value.strip()
    if not model:
        return config.model_id
    if model not in config.model_allowlist:
        raise ValidationError(INVALID_MODEL_MESSAGE)
    return model


def parse_chat_request(body: object, config: ChatConfig) -> ChatRequest:
    """Validate a decoded JSON body against *config*.

    A body that is not a JSON object has no ``messages`` and fails the
    message-shape check.

    Raises
    ------
    ValidationError
        On the first failed check.
    """
    d = body if isinstance(body, dict) else {}

    messages = _validate_messages(d.get("messages"), config)
    model = _validate_model(d.get("model"), config)

    return ChatRequest(
        messages=messages,
        model=model,
        client_context=d.get("clientContext"),
    )


async def validate_chat_request(request: Request, config: ChatConfig) -> ChatRequest:
    """Run every check, transport first, against a live request."""
    check_content_type(request.headers)
    check_content_length(request.headers, config.max_body_bytes)
    body = await read_body(request, config.max_body_bytes)
    return parse_chat_request(parse_json_body(body), config)
