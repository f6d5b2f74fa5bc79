"""Unit tests for scripts/completions.py - Completion request pipeline."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from api_errors import NetworkError, UpstreamError
from completions import MOCK_CONTENT, CompletionHandler, GatewayResult, build_mock_completion
from metrics import Metrics
from ratelimit import RateLimiter
from settings import GatewaySettings
from upstream import UpstreamClient, UpstreamResponse
from validation import validate

UPSTREAM_BODY = {
    "id": "gen-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "x-ai/grok-4.1-fast",
    "choices": [
        {"index": 0, "message": {"role": "assistant", "content": "yo"}, "finish_reason": "stop"}
    ],
    "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
}


def _fake_upstream(result=None, error=None):
    upstream = MagicMock(spec=UpstreamClient)
    if error is not None:
        upstream.forward = AsyncMock(side_effect=error)
    else:
        upstream.forward = AsyncMock(return_value=result if result is not None else UPSTREAM_BODY)
    return upstream


def _handler(settings, upstream=None, limiter=None, clock=None):
    kwargs = {"rate_limiter": limiter, "upstream": upstream or _fake_upstream()}
    if clock is not None:
        kwargs["clock"] = clock
    return CompletionHandler(settings, **kwargs)


def _handle(handler, body, headers=None, **kwargs) -> GatewayResult:
    return asyncio.run(handler.handle(body, headers, **kwargs))


class TestMockMode:
    def test_mock_scenario(self, mock_settings, chat_body):
        result = _handle(_handler(mock_settings), chat_body)
        assert result.status == 200
        choice = result.payload["choices"][0]
        assert choice["message"]["role"] == "assistant"
        assert choice["message"]["content"] == MOCK_CONTENT
        assert choice["finish_reason"] == "stop"
        assert result.payload["object"] == "chat.completion"
        assert result.payload["usage"] == {
            "prompt_tokens": 10,
            "completion_tokens": 3,
            "total_tokens": 13,
        }

    def test_mock_echoes_model(self, mock_settings, chat_body):
        chat_body["model"] = "anthropic/claude-sonnet-4"
        result = _handle(_handler(mock_settings), chat_body)
        assert result.payload["model"] == "anthropic/claude-sonnet-4"

    def test_mock_default_model(self, mock_settings, chat_body):
        result = _handle(_handler(mock_settings), chat_body)
        assert result.payload["model"] == "x-ai/grok-4.1-fast"

    def test_mock_bypasses_auth(self, mock_settings, chat_body):
        """Secret configured, no token: mock mode still answers 200."""
        result = _handle(_handler(mock_settings), chat_body, {})
        assert result.status == 200

    def test_mock_never_calls_upstream(self, mock_settings, chat_body):
        upstream = _fake_upstream()
        _handle(_handler(mock_settings, upstream=upstream), chat_body)
        upstream.forward.assert_not_called()

    def test_mock_ignores_missing_upstream_key(self, chat_body):
        settings = GatewaySettings(mock_mode=True, upstream_api_key=None)
        assert _handle(_handler(settings), chat_body).status == 200

    def test_mock_still_validates(self, mock_settings):
        result = _handle(_handler(mock_settings), {})
        assert result.status == 400
        assert "messages" in result.payload["error"]["message"]

    def test_mock_id_and_created_from_clock(self, mock_settings, chat_body):
        result = _handle(_handler(mock_settings, clock=lambda: 1700000000.5), chat_body)
        assert result.payload["id"] == "chatcmpl-mock-1700000000500"
        assert result.payload["created"] == 1700000000

    def test_mock_delay(self, chat_body):
        settings = GatewaySettings(mock_mode=True, mock_delay_ms=100)
        start = time.monotonic()
        result = _handle(_handler(settings), chat_body)
        assert result.status == 200
        assert time.monotonic() - start >= 0.09

    def test_mock_counted_in_metrics(self, mock_settings, chat_body):
        handler = _handler(mock_settings)
        _handle(handler, chat_body)
        assert handler.metrics.requests_mocked == 1
        assert handler.metrics.requests_success == 1


class TestBuildMockCompletion:
    def test_shape(self):
        payload = build_mock_completion(
            validate({"messages": [{"role": "user", "content": "hi"}]}), "x-ai/grok-4.1-fast", 10.5
        )
        assert set(payload) == {"id", "object", "created", "model", "choices", "usage"}
        assert payload["id"] == "chatcmpl-mock-10500"
        assert payload["created"] == 10


class TestValidationStage:
    @pytest.mark.parametrize("body", [{}, {"messages": []}, b"{}", b"not json", None])
    def test_invalid_body_400_in_any_mode(self, body, mock_settings, proxy_settings):
        for settings in (mock_settings, proxy_settings):
            result = _handle(_handler(settings), body)
            assert result.status == 400
            assert result.payload["error"]["type"] == "invalid_request_error"
            assert result.payload["error"]["code"] == "invalid_request_error"

    def test_deeply_nested_body_400(self, mock_settings):
        result = _handle(_handler(mock_settings), b"[" * 100000)
        assert result.status == 400
        assert result.payload["error"]["code"] == "invalid_request_error"
        assert "Invalid JSON body" in result.payload["error"]["message"]

    def test_empty_object_message_mentions_messages(self, proxy_settings):
        result = _handle(_handler(proxy_settings), {})
        assert "messages" in result.payload["error"]["message"]

    def test_validation_before_auth(self, proxy_settings):
        """A bad body without a token is a 400, not a 401."""
        result = _handle(_handler(proxy_settings), {"messages": []}, {})
        assert result.status == 400


class TestAuthorizationStage:
    def test_missing_token_401(self, proxy_settings, chat_body):
        upstream = _fake_upstream()
        result = _handle(_handler(proxy_settings, upstream=upstream), chat_body, {})
        assert result.status == 401
        assert result.payload["error"]["code"] == "invalid_api_key"
        upstream.forward.assert_not_called()

    def test_wrong_token_401(self, proxy_settings, chat_body):
        result = _handle(
            _handler(proxy_settings), chat_body, {"Authorization": "Bearer not-the-token"}
        )
        assert result.status == 401

    def test_valid_token_forwards(self, proxy_settings, chat_body):
        upstream = _fake_upstream()
        result = _handle(
            _handler(proxy_settings, upstream=upstream),
            chat_body,
            {"Authorization": "Bearer secret-token"},
        )
        assert result.status == 200
        assert result.payload == UPSTREAM_BODY
        request, api_key = upstream.forward.await_args.args
        assert api_key == "sk-or-upstream"
        assert request.messages == ({"role": "user", "content": "hi"},)

    def test_header_name_case_insensitive(self, proxy_settings, chat_body):
        result = _handle(
            _handler(proxy_settings), chat_body, {"AUTHORIZATION": "Bearer secret-token"}
        )
        assert result.status == 200

    def test_no_secret_means_no_auth(self, chat_body):
        settings = GatewaySettings(upstream_api_key="sk-or")
        assert _handle(_handler(settings), chat_body).status == 200

    def test_classification_is_deterministic(self, proxy_settings, chat_body):
        handler = _handler(proxy_settings)
        statuses = {_handle(handler, chat_body, {"Authorization": "Bearer x"}).status for _ in range(5)}
        assert statuses == {401}


class TestUpstreamKeyStage:
    def test_missing_upstream_key_500(self, chat_body):
        settings = GatewaySettings(upstream_api_key=None)
        upstream = _fake_upstream()
        result = _handle(_handler(settings, upstream=upstream), chat_body)
        assert result.status == 500
        assert result.payload["error"]["type"] == "server_error"
        assert result.payload["error"]["message"] == "Missing GROK_KEY."
        upstream.forward.assert_not_called()

    def test_auth_checked_before_upstream_key(self, chat_body):
        settings = GatewaySettings(upstream_api_key=None, api_token="secret-token")
        assert _handle(_handler(settings), chat_body).status == 401


class TestForwardStage:
    def _authed(self, handler, body):
        return _handle(handler, body, {"Authorization": "Bearer secret-token"})

    def test_upstream_error_mirrored(self, proxy_settings, chat_body):
        upstream = _fake_upstream(error=UpstreamError("Upstream failed: quota", 402))
        result = self._authed(_handler(proxy_settings, upstream=upstream), chat_body)
        assert result.status == 402
        assert result.payload == {
            "error": {
                "message": "Upstream failed: quota",
                "type": "upstream_error",
                "code": "upstream_error",
            }
        }

    def test_network_error_502(self, proxy_settings, chat_body):
        upstream = _fake_upstream(error=NetworkError("Failed to reach upstream: refused"))
        handler = _handler(proxy_settings, upstream=upstream)
        result = self._authed(handler, chat_body)
        assert result.status == 502
        assert result.payload["error"]["code"] == "network_error"
        assert handler.metrics.network_errors == 1

    def test_unexpected_exception_becomes_500(self, proxy_settings, chat_body, capsys):
        upstream = _fake_upstream(error=RuntimeError("boom"))
        result = self._authed(_handler(proxy_settings, upstream=upstream), chat_body)
        assert result.status == 500
        assert result.payload["error"]["message"] == "Internal server error"
        assert "boom" not in json.dumps(result.payload)
        assert "RuntimeError" in capsys.readouterr().err

    def test_event_stream_relayed(self, proxy_settings, chat_body):
        raw = UpstreamResponse(
            status=200, headers={"content-type": "text/event-stream"}, body=b"data: [DONE]\n\n"
        )
        result = self._authed(_handler(proxy_settings, upstream=_fake_upstream(raw)), chat_body)
        assert result.status == 200
        assert result.content_type == "text/event-stream"
        assert result.body_bytes() == b"data: [DONE]\n\n"

    def test_upstream_called_once(self, proxy_settings, chat_body):
        upstream = _fake_upstream(error=NetworkError("Failed to reach upstream: x"))
        self._authed(_handler(proxy_settings, upstream=upstream), chat_body)
        assert upstream.forward.await_count == 1


class TestRateLimitStage:
    def test_101st_request_429(self, mock_settings, chat_body, clock):
        limiter = RateLimiter(max_requests=100, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        headers = {"X-Forwarded-For": "203.0.113.7"}
        for _ in range(100):
            assert _handle(handler, chat_body, headers).status == 200
        result = _handle(handler, chat_body, headers)
        assert result.status == 429
        assert result.payload["error"]["type"] == "rate_limit_error"
        assert result.payload["error"]["code"] == "rate_limit_exceeded"
        assert result.headers["Retry-After"] == "60"
        assert handler.metrics.requests_rate_limited == 1

    def test_rate_limit_before_validation(self, mock_settings, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        assert _handle(handler, {}).status == 400
        assert _handle(handler, {}).status == 429

    def test_invalid_requests_consume_quota(self, mock_settings, chat_body, clock):
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        _handle(handler, b"garbage")
        _handle(handler, b"garbage")
        assert _handle(handler, chat_body).status == 429

    def test_window_reset_allows_again(self, mock_settings, chat_body, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        assert _handle(handler, chat_body).status == 200
        assert _handle(handler, chat_body).status == 429
        clock.advance(61)
        assert _handle(handler, chat_body).status == 200

    def test_clients_without_headers_share_bucket(self, mock_settings, chat_body, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        assert _handle(handler, chat_body, {}, peer="192.0.2.1").status == 200
        result = _handle(handler, chat_body, {}, peer="192.0.2.2")
        assert result.status == 429
        assert result.client == "unknown"

    def test_peer_keying_when_enabled(self, chat_body, clock):
        settings = GatewaySettings(mock_mode=True, rate_limit_use_peer=True)
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(settings, limiter=limiter)
        assert _handle(handler, chat_body, {}, peer="192.0.2.1").status == 200
        assert _handle(handler, chat_body, {}, peer="192.0.2.2").status == 200
        assert _handle(handler, chat_body, {}, peer="192.0.2.1").status == 429

    def test_default_limiter_from_settings(self, mock_settings):
        mock_settings.rate_limit_max_requests = 7
        mock_settings.rate_limit_window_seconds = 5
        handler = CompletionHandler(mock_settings)
        assert handler.rate_limiter.max_requests == 7
        assert handler.rate_limiter.window_seconds == 5

    def test_injected_limiter_is_used(self, mock_settings):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        handler = CompletionHandler(mock_settings, rate_limiter=limiter)
        assert handler.rate_limiter is limiter

    def test_limiter_shared_between_handlers(self, mock_settings, chat_body, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        first = _handler(mock_settings, limiter=limiter)
        second = _handler(mock_settings, limiter=limiter)
        assert _handle(first, chat_body).status == 200
        assert _handle(second, chat_body).status == 429

    def test_handlers_have_isolated_limiters(self, mock_settings, chat_body):
        mock_settings.rate_limit_max_requests = 1
        first = CompletionHandler(mock_settings)
        second = CompletionHandler(mock_settings)
        assert _handle(first, chat_body).status == 200
        assert _handle(second, chat_body).status == 200


class TestBodySizeStage:
    def test_oversized_declared_length_413(self, mock_settings, chat_body):
        mock_settings.max_request_body_size = 100
        result = _handle(_handler(mock_settings), b"", content_length=101)
        assert result.status == 413
        assert result.payload["error"]["code"] == "payload_too_large"

    def test_at_limit_allowed(self, mock_settings):
        body = json.dumps({"messages": [{"role": "user", "content": "hi"}]}).encode()
        mock_settings.max_request_body_size = len(body)
        result = _handle(_handler(mock_settings), body, content_length=len(body))
        assert result.status == 200

    def test_size_checked_after_rate_limit(self, mock_settings, clock):
        mock_settings.max_request_body_size = 10
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        assert _handle(handler, b"", content_length=50).status == 413
        assert _handle(handler, b"", content_length=50).status == 429


    def test_length_taken_from_header(self, mock_settings):
        mock_settings.max_request_body_size = 100
        result = _handle(_handler(mock_settings), b"", {"Content-Length": "5000"})
        assert result.status == 413

    @pytest.mark.parametrize("value", ["abc", "-1", ""])
    def test_invalid_content_length_400(self, mock_settings, chat_body, value):
        result = _handle(_handler(mock_settings), chat_body, {"Content-Length": value})
        assert result.status == 400
        assert result.payload["error"]["message"] == "Invalid Content-Length header"

    def test_invalid_content_length_checked_after_rate_limit(self, mock_settings, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        handler = _handler(mock_settings, limiter=limiter)
        headers = {"Content-Length": "abc"}
        assert _handle(handler, b"", headers).status == 400
        assert _handle(handler, b"", headers).status == 429


class TestActiveGauge:
    def test_active_returns_to_zero(self, proxy_settings, chat_body):
        handler = _handler(proxy_settings, upstream=_fake_upstream(error=RuntimeError("x")))
        _handle(handler, chat_body, {"Authorization": "Bearer secret-token"})
        _handle(handler, chat_body)
        assert handler.metrics.requests_active == 0
        assert handler.metrics.requests_total == 2
        assert handler.metrics.requests_error == 2

    def test_injected_metrics_is_used(self, mock_settings, chat_body):
        metrics = Metrics()
        handler = CompletionHandler(mock_settings, metrics=metrics)
        _handle(handler, chat_body)
        assert handler.metrics is metrics
        assert metrics.requests_total == 1
