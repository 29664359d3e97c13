"""Gateway configuration: raw option loading and typed resolution."""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("chatgate.config")


DEFAULT_CONFIG = Path("chatgate.yaml")

ENV_PREFIX = "CHATGATE_"

DEFAULT_MODEL_ID = "@cf/meta/llama-3.3-70b-instruct-fp8-fast"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, friendly assistant. Provide concise and accurate "
    "responses. For time-sensitive questions, clearly state what date or time "
    "context you are using and be transparent if you do not have live web access."
)
DEFAULT_MAX_MESSAGE_LENGTH = 10_000
DEFAULT_MAX_MESSAGES = 100
DEFAULT_MAX_TOKENS = 1024
DEFAULT_MAX_BODY_BYTES = 1_000_000
DEFAULT_RATE_LIMIT_REQUESTS = 20
DEFAULT_RATE_LIMIT_WINDOW_MS = 60_000

DEFAULT_API_BASE_URL = "https://api.cloudflare.com/client/v4"

#: Raw chat option names.  Each is read from ``CHATGATE_<NAME>`` or from the
#: ``chat:`` section of the YAML file (lower-cased key).
CHAT_OPTIONS = (
    "MODEL_ID",
    "MODEL_ALLOWLIST",
    "SYSTEM_PROMPT",
    "MAX_MESSAGE_LENGTH",
    "MAX_MESSAGES",
    "MAX_TOKENS",
    "MAX_BODY_BYTES",
    "RATE_LIMIT_REQUESTS",
    "RATE_LIMIT_WINDOW_MS",
)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def parse_positive_int(value: str | None, fallback: int) -> int:
    """Coerce *value* to a positive integer, or return *fallback*.

    Fractional values are truncated (``"3.14"`` -> ``3``).  Absent, empty,
    non-numeric, non-finite, zero and negative inputs all yield *fallback*.
    """
    if value is None:
        return fallback
    text = value.strip()
    if not text:
        return fallback
    try:
        number = float(text)
    except ValueError:
        return fallback
    if not math.isfinite(number):
        return fallback
    parsed = int(number)
    if parsed <= 0:
        return fallback
    return parsed


def parse_model_allowlist(value: str | None, default_model: str) -> list[str]:
    """Parse a comma-separated model allowlist.

    Entries are trimmed, empties dropped and duplicates removed in first-seen
    order.  *default_model* is always allowed: it is prepended when missing
    and left where it is otherwise.
    """
    models: list[str] = []
    for entry in (value or "").split(","):
        name = entry.strip()
        if name and name not in models:
            models.append(name)
    if default_model not in models:
        models.insert(0, default_model)
    return models


# ---------------------------------------------------------------------------
# Effective per-request configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatConfig:
    model_id: str = DEFAULT_MODEL_ID
    model_allowlist: tuple[str, ...] = (DEFAULT_MODEL_ID,)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    max_messages: int = DEFAULT_MAX_MESSAGES
    max_tokens: int = DEFAULT_MAX_TOKENS
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    rate_limit_requests: int = DEFAULT_RATE_LIMIT_REQUESTS
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.rate_limit_window_ms / 1000)


def resolve_config(raw: Mapping[str, str | None]) -> ChatConfig:
    """Build a :class:`ChatConfig` from raw option strings.

    *raw* is keyed by the names in :data:`CHAT_OPTIONS`.  Missing or
    unusable values fall back to the defaults; this never raises.
    """
    model_id = (raw.get("MODEL_ID") or "").strip() or DEFAULT_MODEL_ID
    system_prompt = raw.get("SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT

    return ChatConfig(
        model_id=model_id,
        model_allowlist=tuple(parse_model_allowlist(raw.get("MODEL_ALLOWLIST"), model_id)),
        system_prompt=system_prompt,
        max_message_length=parse_positive_int(
            raw.get("MAX_MESSAGE_LENGTH"), DEFAULT_MAX_MESSAGE_LENGTH
        ),
        max_messages=parse_positive_int(raw.get("MAX_MESSAGES"), DEFAULT_MAX_MESSAGES),
        max_tokens=parse_positive_int(raw.get("MAX_TOKENS"), DEFAULT_MAX_TOKENS),
        max_body_bytes=parse_positive_int(
            raw.get("MAX_BODY_BYTES"), DEFAULT_MAX_BODY_BYTES
        ),
        rate_limit_requests=parse_positive_int(
            raw.get("RATE_LIMIT_REQUESTS"), DEFAULT_RATE_LIMIT_REQUESTS
        ),
        rate_limit_window_ms=parse_positive_int(
            raw.get("RATE_LIMIT_WINDOW_MS"), DEFAULT_RATE_LIMIT_WINDOW_MS
        ),
    )


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------


@dataclass
class ProviderSettings:
    account_id: str | None = None
    api_token: str | None = None
    base_url: str = DEFAULT_API_BASE_URL
    timeout: float = 120.0

    @property
    def configured(self) -> bool:
        return bool(self.account_id and self.api_token)


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8787
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    #: Directory of static frontend files mounted at ``/``.  ``None`` disables
    #: asset serving and leaves only the API routes.
    assets_dir: str | None = None
    #: Raw chat option strings, resolved on every request by
    #: :func:`resolve_config` so that edits take effect without a restart.
    options: dict[str, str] = field(default_factory=dict)

    def chat_config(self) -> ChatConfig:
        return resolve_config(self.options)


def _stringify(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def _chat_options(section: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, str]:
    options: dict[str, str] = {}
    for name in CHAT_OPTIONS:
        yaml_value = _stringify(section.get(name.lower()))
        if yaml_value is not None:
            options[name] = yaml_value
        env_value = environ.get(ENV_PREFIX + name)
        if env_value is not None:
            options[name] = env_value
    return options


def _section(raw: dict, name: str, config_path: Path) -> dict:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Section '{name}' in {config_path} must be a mapping")
    return section


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from an optional YAML file overlaid with env vars.

    The file path is *path*, else ``CHATGATE_CONFIG``, else ``chatgate.yaml``
    in the working directory.  An explicit path that does not exist raises
    ``FileNotFoundError``; a missing default file means env-only mode.
    """
    env = os.environ if environ is None else environ
    explicit = path is not None or env.get(ENV_PREFIX + "CONFIG") is not None
    config_path = Path(path) if path else Path(env.get(ENV_PREFIX + "CONFIG", DEFAULT_CONFIG))

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        logger.debug("Loaded config from %s", config_path)
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    server = _section(raw, "server", config_path)
    p = _section(raw, "provider", config_path)
    chat = _section(raw, "chat", config_path)

    provider = ProviderSettings(
        account_id=env.get(ENV_PREFIX + "ACCOUNT_ID") or p.get("account_id") or None,
        api_token=env.get(ENV_PREFIX + "API_TOKEN") or p.get("api_token") or None,
        base_url=(
            env.get(ENV_PREFIX + "API_BASE_URL")
            or p.get("base_url")
            or DEFAULT_API_BASE_URL
        ).rstrip("/"),
        timeout=float(p.get("timeout", 120.0)),
    )

    port_raw = env.get(ENV_PREFIX + "PORT")
    port = int(port_raw) if port_raw else int(server.get("port", 8787))

    return Settings(
        host=env.get(ENV_PREFIX + "HOST") or server.get("host", "0.0.0.0"),
        port=port,
        provider=provider,
        assets_dir=env.get(ENV_PREFIX + "ASSETS_DIR") or server.get("assets_dir") or None,
        options=_chat_options(chat, env),
    )
