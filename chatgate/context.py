"""Client context sanitizing and system prompt composition."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .validation import ChatMessage

MAX_CONTEXT_FIELD_LENGTH = 300

CONTEXT_HEADER = "Context:"


@dataclass(frozen=True)
class ClientContext:
    """Optional facts about the caller's device, all sanitized strings."""

    current_time_iso: str | None = None
    time_zone: str | None = None
    locale: str | None = None
    user_agent: str | None = None

    def to_dict(self) -> dict:
        """Wire representation, present fields only."""
        d = {
            "currentTimeIso": self.current_time_iso,
            "timeZone": self.time_zone,
            "locale": self.locale,
            "userAgent": self.user_agent,
        }
        return {k: v for k, v in d.items() if v is not None}


def sanitize_context_value(value: object) -> str | None:
    """Trim and truncate a context string; non-strings and blanks give None."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    return text[:MAX_CONTEXT_FIELD_LENGTH]


def _is_iso_datetime(value: str) -> bool:
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_client_context(raw: object) -> ClientContext | None:
    """Reduce an untrusted ``clientContext`` payload to a :class:`ClientContext`.

    Unknown keys are ignored and invalid fields are dropped one by one; an
    unparseable ``currentTimeIso`` drops only that field.  Returns ``None``
    when *raw* is not an object or no field survives.
    """
    if not isinstance(raw, dict):
        return None

    current_time = sanitize_context_value(raw.get("currentTimeIso"))
    if current_time is not None and not _is_iso_datetime(current_time):
        current_time = None

    context = ClientContext(
        current_time_iso=current_time,
        time_zone=sanitize_context_value(raw.get("timeZone")),
        locale=sanitize_context_value(raw.get("locale")),
        user_agent=sanitize_context_value(raw.get("userAgent")),
    )
    if context == ClientContext():
        return None
    return context


def build_contextual_system_prompt(base_prompt: str, context: ClientContext | None) -> str:
    """Append a ``Context:`` block listing the present context fields."""
    if context is None:
        return base_prompt

    lines = []
    if context.current_time_iso:
        lines.append(f"- Current date/time (from user device): {context.current_time_iso}")
    if context.time_zone:
        lines.append(f"- User time zone: {context.time_zone}")
    if context.locale:
        lines.append(f"- User locale: {context.locale}")
    if context.user_agent:
        lines.append(f"- User agent: {context.user_agent}")

    if not lines:
        return base_prompt
    return "\n".join([base_prompt, "", CONTEXT_HEADER, *lines])


def inject_system_prompt(messages: list[ChatMessage], prompt: str) -> list[ChatMessage]:
    """Return *messages* with *prompt* prepended as the system message.

    A caller-supplied system message wins: the list is returned as a copy,
    unchanged, and *prompt* is discarded.
    """
    if any(m.role == "system" for m in messages):
        return list(messages)
    return [ChatMessage(role="system", content=prompt), *messages]
