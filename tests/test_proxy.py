"""Tests for the chat endpoint.

Covers the full request pipeline through a Starlette TestClient with a
fake provider: rate limiting, transport and body validation, model
selection, context injection, provider failures, streaming relay and the
security/cache headers on every outcome.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.testclient import TestClient

from chatgate.config import DEFAULT_MODEL_ID, DEFAULT_SYSTEM_PROMPT, Settings
from chatgate.provider import ProviderError
from chatgate.proxy import client_identifier, create_app
from chatgate.ratelimit import FixedWindowRateLimiter

CHAT_URL = "/api/chat"
STREAM_BODY = b'data: {"response":"ok"}\n\ndata: [DONE]\n\n'


async def _stream(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def make_provider(*chunks: bytes, error: Exception | None = None) -> MagicMock:
    provider = MagicMock()
    if error is not None:
        provider.run = AsyncMock(side_effect=error)
    else:
        provider.run = AsyncMock(side_effect=lambda model, inputs: _stream(*(chunks or (STREAM_BODY,))))
    provider.close = AsyncMock()
    return provider


@pytest.fixture
def provider():
    return make_provider()


@pytest.fixture
def limiter():
    return FixedWindowRateLimiter()


def make_client(provider, limiter=None, **options) -> TestClient:
    settings = Settings(options=options)
    app = create_app(settings, provider=provider, rate_limiter=limiter)
    return TestClient(app, raise_server_exceptions=False)


def post_chat(client, body, headers=None):
    return client.post(CHAT_URL, json=body, headers=headers or {})


def provider_call(provider):
    provider.run.assert_awaited_once()
    model, inputs = provider.run.await_args.args
    return model, inputs


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestChatSuccess:
    def test_injects_default_system_prompt(self, provider):
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hello"}]})

        assert resp.status_code == 200
        model, inputs = provider_call(provider)
        assert model == DEFAULT_MODEL_ID
        assert inputs["messages"] == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "Hello"},
        ]
        assert inputs["max_tokens"] == 1024

    def test_stream_relayed_unchanged(self):
        chunks = (b'data: {"response":"Hel"}\n\n', b'data: {"response":"lo"}\n\n', b"data: [DONE]\n\n")
        provider = make_provider(*chunks)
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hi"}]})
        assert resp.status_code == 200
        assert resp.content == b"".join(chunks)
        assert resp.headers["content-type"].startswith("text/event-stream")

    def test_upstream_content_type_relayed(self):
        class TypedStream:
            media_type = "application/x-ndjson"

            def __aiter__(self):
                return _stream(b'{"response":"ok"}\n')

        provider = make_provider()
        provider.run = AsyncMock(side_effect=lambda model, inputs: TypedStream())
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hi"}]})
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/x-ndjson"
        assert resp.content == b'{"response":"ok"}\n'
        assert resp.headers["cache-control"] == "no-store"

    def test_success_headers(self, provider):
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hi"}]})
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["strict-transport-security"].startswith("max-age=63072000")
        assert "content-security-policy" not in resp.headers

    def test_strips_extra_fields(self, provider):
        client = make_client(provider)
        post_chat(client, {"messages": [
            {"role": "user", "content": "Hello", "name": "bob", "id": 7},
        ]})
        _, inputs = provider_call(provider)
        assert inputs["messages"][1] == {"role": "user", "content": "Hello"}

    def test_client_context_added_to_prompt(self, provider):
        client = make_client(provider)
        post_chat(client, {
            "messages": [{"role": "user", "content": "Hello"}],
            "clientContext": {
                "currentTimeIso": "2025-01-01T12:00:00.000Z",
                "timeZone": "America/New_York",
                "locale": "en-US",
            },
        })
        _, inputs = provider_call(provider)
        assert inputs["messages"][0] == {
            "role": "system",
            "content": (
                f"{DEFAULT_SYSTEM_PROMPT}\n\nContext:\n"
                "- Current date/time (from user device): 2025-01-01T12:00:00.000Z\n"
                "- User time zone: America/New_York\n"
                "- User locale: en-US"
            ),
        }

    def test_invalid_client_context_ignored(self, provider):
        client = make_client(provider)
        resp = post_chat(client, {
            "messages": [{"role": "user", "content": "Hello"}],
            "clientContext": "not an object",
        })
        assert resp.status_code == 200
        _, inputs = provider_call(provider)
        assert inputs["messages"][0]["content"] == DEFAULT_SYSTEM_PROMPT

    def test_caller_system_prompt_wins(self, provider):
        client = make_client(provider)
        messages = [
            {"role": "system", "content": "Talk like a pirate"},
            {"role": "user", "content": "Hello"},
        ]
        post_chat(client, {
            "messages": messages,
            "clientContext": {"timeZone": "Europe/Paris"},
        })
        _, inputs = provider_call(provider)
        assert inputs["messages"] == messages

    def test_custom_configuration(self, provider):
        client = make_client(
            provider,
            MODEL_ID="@cf/custom/model",
            SYSTEM_PROMPT="Custom prompt",
            MAX_TOKENS="2048",
        )
        post_chat(client, {"messages": [{"role": "user", "content": "Hello"}]})
        model, inputs = provider_call(provider)
        assert model == "@cf/custom/model"
        assert inputs["messages"][0] == {"role": "system", "content": "Custom prompt"}
        assert inputs["max_tokens"] == 2048

    def test_allowed_model_forwarded(self, provider):
        client = make_client(
            provider,
            MODEL_ALLOWLIST=f"{DEFAULT_MODEL_ID},@cf/custom/model",
        )
        resp = post_chat(client, {
            "messages": [{"role": "user", "content": "Hello"}],
            "model": "@cf/custom/model",
        })
        assert resp.status_code == 200
        model, _ = provider_call(provider)
        assert model == "@cf/custom/model"

    def test_config_is_read_per_request(self, provider):
        settings = Settings()
        client = TestClient(create_app(settings, provider=provider))
        settings.options["MAX_TOKENS"] = "99"
        post_chat(client, {"messages": [{"role": "user", "content": "Hello"}]})
        _, inputs = provider_call(provider)
        assert inputs["max_tokens"] == 99


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestChatRejections:
    def _assert_error(self, resp, status, message=None):
        assert resp.status_code == status
        assert resp.headers["cache-control"] == "no-store"
        assert resp.headers["x-frame-options"] == "DENY"
        data = resp.json()
        assert set(data) == {"error"}
        if message is not None:
            assert data["error"] == message
        return data["error"]

    def test_invalid_json(self, provider):
        client = make_client(provider)
        resp = client.post(
            CHAT_URL, content=b"invalid json", headers={"content-type": "application/json"}
        )
        self._assert_error(resp, 400, "Invalid JSON body")
        provider.run.assert_not_awaited()

    def test_non_standard_json_constants(self, provider):
        client = make_client(provider)
        resp = client.post(
            CHAT_URL,
            content=b'{"messages":[{"role":"user","content":"hi"}],"extra":NaN}',
            headers={"content-type": "application/json"},
        )
        self._assert_error(resp, 400, "Invalid JSON body")
        provider.run.assert_not_awaited()

    def test_messages_not_an_array(self, provider):
        client = make_client(provider)
        resp = post_chat(client, {"messages": {"role": "user"}})
        self._assert_error(
            resp, 400, "Invalid request: messages must be an array of chat messages"
        )
        provider.run.assert_not_awaited()

    @pytest.mark.parametrize("message", [
        {"role": "moderator", "content": "Hello"},
        {"role": "user"},
        {"role": "user", "content": 123},
    ])
    def test_invalid_message(self, provider, message):
        client = make_client(provider)
        resp = post_chat(client, {"messages": [message]})
        self._assert_error(
            resp, 400, "Invalid request: messages must be an array of chat messages"
        )
        provider.run.assert_not_awaited()

    def test_message_too_long(self, provider):
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "a" * 10001}]})
        self._assert_error(resp, 400, "Message too long: maximum 10000 characters allowed")
        provider.run.assert_not_awaited()

    def test_too_many_messages(self, provider):
        client = make_client(provider)
        messages = [{"role": "user", "content": f"Message {i}"} for i in range(101)]
        resp = post_chat(client, {"messages": messages})
        self._assert_error(resp, 400, "Too many messages: maximum 100 messages allowed")
        provider.run.assert_not_awaited()

    def test_wrong_content_type(self, provider):
        client = make_client(provider)
        resp = client.post(
            CHAT_URL,
            content=json.dumps({"messages": [{"role": "user", "content": "Hello"}]}),
            headers={"content-type": "text/plain"},
        )
        self._assert_error(resp, 415, "Content-Type must be application/json")
        provider.run.assert_not_awaited()

    def test_missing_content_type(self, provider):
        client = make_client(provider)
        resp = client.post(
            CHAT_URL,
            content=json.dumps({"messages": [{"role": "user", "content": "Hello"}]}),
        )
        self._assert_error(resp, 415, "Content-Type must be application/json")
        provider.run.assert_not_awaited()

    def test_declared_length_too_large(self, provider):
        client = make_client(provider)
        resp = client.post(
            CHAT_URL,
            content=json.dumps({"messages": [{"role": "user", "content": "Hello"}]}),
            headers={"content-type": "application/json", "content-length": "2000000"},
        )
        error = self._assert_error(resp, 413)
        assert "Request body too large" in error
        provider.run.assert_not_awaited()

    def test_actual_body_too_large(self, provider):
        client = make_client(provider, MAX_BODY_BYTES="100")
        resp = post_chat(client, {"messages": [{"role": "user", "content": "x" * 200}]})
        error = self._assert_error(resp, 413)
        assert "maximum 100 bytes" in error
        provider.run.assert_not_awaited()

    def test_model_not_in_allowlist(self, provider):
        client = make_client(provider, MODEL_ALLOWLIST=DEFAULT_MODEL_ID)
        resp = post_chat(client, {
            "messages": [{"role": "user", "content": "Hello"}],
            "model": "@cf/invalid/model",
        })
        self._assert_error(
            resp,
            400,
            "Invalid model selection. Please choose a model from the allowed list.",
        )
        provider.run.assert_not_awaited()

    def test_provider_failure(self):
        provider = make_provider(error=RuntimeError("AI service error"))
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hello"}]})
        self._assert_error(resp, 500, "Failed to process request")

    def test_provider_error_detail_not_leaked(self):
        provider = make_provider(error=ProviderError("upstream said: secret", status_code=401))
        client = make_client(provider)
        resp = post_chat(client, {"messages": [{"role": "user", "content": "Hello"}]})
        self._assert_error(resp, 500, "Failed to process request")
        assert "secret" not in resp.text

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    def test_method_not_allowed(self, provider, method):
        client = make_client(provider)
        resp = client.request(method, CHAT_URL)
        self._assert_error(resp, 405)
        assert resp.headers["allow"] == "POST"

    def test_unknown_api_route(self, provider):
        client = make_client(provider)
        resp = client.get("/api/nope")
        self._assert_error(resp, 404, "Not found")


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimiting:
    BODY = {"messages": [{"role": "user", "content": "Hello"}]}

    def test_third_request_limited(self, provider, limiter):
        client = make_client(
            provider, limiter, RATE_LIMIT_REQUESTS="2", RATE_LIMIT_WINDOW_MS="60000"
        )
        headers = {"CF-Connecting-IP": "192.168.1.100"}

        assert post_chat(client, self.BODY, headers).status_code == 200
        assert post_chat(client, self.BODY, headers).status_code == 200
        resp = post_chat(client, self.BODY, headers)

        assert resp.status_code == 429
        assert resp.json() == {"error": "Rate limit exceeded. Please try again later."}
        assert resp.headers["retry-after"] == "60"
        assert resp.headers["cache-control"] == "no-store"
        assert provider.run.await_count == 2

    def test_retry_after_rounds_up(self, provider, limiter):
        client = make_client(
            provider, limiter, RATE_LIMIT_REQUESTS="1", RATE_LIMIT_WINDOW_MS="1500"
        )
        post_chat(client, self.BODY)
        resp = post_chat(client, self.BODY)
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "2"

    def test_forwarded_for_first_hop(self, provider, limiter):
        client = make_client(
            provider, limiter, RATE_LIMIT_REQUESTS="1", RATE_LIMIT_WINDOW_MS="60000"
        )
        resp1 = post_chat(client, self.BODY, {"X-Forwarded-For": "203.0.113.195, 10.0.0.1"})
        resp2 = post_chat(client, self.BODY, {"X-Forwarded-For": "203.0.113.195, 10.0.0.2"})
        assert resp1.status_code == 200
        assert resp2.status_code == 429

    def test_distinct_clients_independent(self, provider, limiter):
        client = make_client(provider, limiter, RATE_LIMIT_REQUESTS="1")
        assert post_chat(client, self.BODY, {"CF-Connecting-IP": "10.0.0.1"}).status_code == 200
        assert post_chat(client, self.BODY, {"CF-Connecting-IP": "10.0.0.2"}).status_code == 200
        assert post_chat(client, self.BODY, {"CF-Connecting-IP": "10.0.0.1"}).status_code == 429

    def test_rate_limit_checked_before_validation(self, provider, limiter):
        client = make_client(provider, limiter, RATE_LIMIT_REQUESTS="1")
        assert post_chat(client, {"messages": "bad"}).status_code == 400
        resp = client.post(CHAT_URL, content=b"x", headers={"content-type": "text/plain"})
        assert resp.status_code == 429

    def test_limiter_injected_and_resettable(self, provider, limiter):
        client = make_client(provider, limiter, RATE_LIMIT_REQUESTS="1")
        post_chat(client, self.BODY)
        assert post_chat(client, self.BODY).status_code == 429
        limiter.reset()
        assert post_chat(client, self.BODY).status_code == 200

    def test_apps_do_not_share_tables(self, provider):
        first = make_client(provider, RATE_LIMIT_REQUESTS="1")
        second = make_client(provider, RATE_LIMIT_REQUESTS="1")
        assert post_chat(first, self.BODY).status_code == 200
        assert post_chat(second, self.BODY).status_code == 200


class TestClientIdentifier:
    def test_trusted_header_first(self):
        assert client_identifier({
            "cf-connecting-ip": "1.1.1.1",
            "x-forwarded-for": "2.2.2.2",
        }) == "1.1.1.1"

    def test_forwarded_for_fallback(self):
        assert client_identifier({"x-forwarded-for": " 2.2.2.2 , 3.3.3.3"}) == "2.2.2.2"

    def test_unknown(self):
        assert client_identifier({}) == "unknown"
        assert client_identifier({"x-forwarded-for": ""}) == "unknown"


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------


class TestAppWiring:
    def test_lifespan_closes_provider(self, provider):
        app = create_app(Settings(), provider=provider)
        with TestClient(app):
            pass
        provider.close.assert_awaited_once()

    def test_static_assets_get_csp(self, provider, tmp_path):
        (tmp_path / "index.html").write_text("<html><body>chat</body></html>")
        app = create_app(Settings(assets_dir=str(tmp_path)), provider=provider)
        client = TestClient(app)

        resp = client.get("/")
        assert resp.status_code == 200
        assert "chat" in resp.text
        assert "default-src 'self'" in resp.headers["content-security-policy"]
        assert resp.headers["x-content-type-options"] == "nosniff"

    def test_api_routes_win_over_assets(self, provider, tmp_path):
        (tmp_path / "index.html").write_text("<html></html>")
        app = create_app(Settings(assets_dir=str(tmp_path)), provider=provider)
        client = TestClient(app)
        assert client.get(CHAT_URL).status_code == 405

    def test_no_assets_means_404(self, provider):
        client = make_client(provider)
        resp = client.get("/")
        assert resp.status_code == 404
        assert resp.headers["x-frame-options"] == "DENY"
