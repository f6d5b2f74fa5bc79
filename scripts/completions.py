#!/usr/bin/env python3
"""
completions.py - Chat completion request pipeline

``CompletionHandler.handle()`` runs every completion request through the same
fixed sequence, whether it arrives over HTTP (gateway.py) or from an in-process
caller such as a test:

    rate limit -> body size -> validation -> mock short-circuit
               -> authorization -> upstream key check -> forward

Any stage may raise a ``GatewayError``; the handler converts it into an
OpenAI-compatible error envelope exactly once and never retries. Mock mode
still requires a valid body but skips authorization and the upstream call.
"""

import asyncio
import json
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from api_errors import (
    GatewayError,
    InvalidRequestError,
    PayloadTooLargeError,
    RateLimitError,
    ServerError,
)
from auth import authorize
from metrics import Metrics
from ratelimit import UNKNOWN_CLIENT, RateLimiter, client_key
from settings import GatewaySettings
from upstream import UpstreamClient, UpstreamResponse
from validation import CompletionRequest, validate

MOCK_CONTENT = "Mocked response."


def log(msg: str):
    """Simple logging to stderr."""
    print(f"[gateway] {msg}", file=sys.stderr, flush=True)


@dataclass
class GatewayResult:
    """Final response for one completion request."""

    status: int
    payload: Union[dict, bytes]
    headers: dict[str, str] = field(default_factory=dict)
    content_type: str = "application/json"
    client: str = UNKNOWN_CLIENT

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_bytes(self) -> bytes:
        if isinstance(self.payload, bytes):
            return self.payload
        return json.dumps(self.payload).encode("utf-8")

    @classmethod
    def from_error(cls, error: GatewayError, client: str = UNKNOWN_CLIENT) -> "GatewayResult":
        headers = {}
        if isinstance(error, RateLimitError):
            headers["Retry-After"] = str(error.retry_after)
        return cls(status=error.http_status, payload=error.to_dict(), headers=headers, client=client)


def build_mock_completion(
    request: CompletionRequest,
    default_model: str,
    now: Optional[float] = None,
) -> dict[str, Any]:
    """Synthesize a completion without contacting the upstream."""
    if now is None:
        now = time.time()
    return {
        "id": f"chatcmpl-mock-{int(now * 1000)}",
        "object": "chat.completion",
        "created": int(now),
        "model": request.model if request.model is not None else default_model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": MOCK_CONTENT},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13},
    }


def declared_length(headers: Mapping[str, str]) -> Optional[int]:
    """Parse the Content-Length header (lowercase keys), or None when absent."""
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequestError("Invalid Content-Length header") from None
    if value < 0:
        raise InvalidRequestError("Invalid Content-Length header")
    return value


class CompletionHandler:
    """
    Orchestrates rate limiting, validation, mock mode, authorization and
    forwarding for completion requests.

    The rate limiter is the only mutable state shared between requests. It is
    owned by the handler (or injected), so tests get isolated instances.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        rate_limiter: Optional[RateLimiter] = None,
        upstream: Optional[UpstreamClient] = None,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        # RateLimiter defines __len__, so an empty one is falsy
        if rate_limiter is None:
            rate_limiter = RateLimiter(
                max_requests=settings.rate_limit_max_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        self.rate_limiter = rate_limiter
        self.upstream = upstream if upstream is not None else UpstreamClient.from_settings(settings)
        self.metrics = metrics if metrics is not None else Metrics()
        self._clock = clock

    async def handle(
        self,
        body: Union[bytes, str, dict, None],
        headers: Optional[Mapping[str, str]] = None,
        *,
        peer: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> GatewayResult:
        """
        Process one completion request.

        Args:
            body: Raw request body, or an already-decoded dict
            headers: Request headers (any case)
            peer: Socket peer address, used for the client key only when
                RATE_LIMIT_USE_PEER is enabled
            content_length: Declared body size; checked against
                MAX_REQUEST_BODY_SIZE before the body is looked at. Taken
                from the Content-Length header when not given

        Returns:
            GatewayResult carrying the upstream/mock payload or an error envelope
        """
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        key = client_key(lowered, peer if self.settings.rate_limit_use_peer else None)

        self.metrics.requests_total += 1
        self.metrics.requests_active += 1
        try:
            result = await self._run(key, body, lowered, content_length)
        except GatewayError as e:
            self.metrics.record_error(e.kind)
            return GatewayResult.from_error(e, client=key)
        except Exception as e:
            log(f"Unhandled error processing completion: {type(e).__name__}: {e}")
            error = ServerError("Internal server error")
            self.metrics.record_error(error.kind)
            return GatewayResult.from_error(error, client=key)
        finally:
            self.metrics.requests_active -= 1

        self.metrics.requests_success += 1
        return result

    async def _run(
        self,
        key: str,
        body: Union[bytes, str, dict, None],
        headers: dict[str, str],
        content_length: Optional[int],
    ) -> GatewayResult:
        if not self.rate_limiter.admit(key):
            raise RateLimitError(retry_after=self.rate_limiter.retry_after(key))

        if content_length is None:
            content_length = declared_length(headers)
        if content_length is not None and content_length > self.settings.max_request_body_size:
            raise PayloadTooLargeError(
                f"Request body too large: {content_length} bytes "
                f"(max {self.settings.max_request_body_size})"
            )

        request = validate(body)

        if self.settings.mock_mode:
            if self.settings.mock_delay_ms > 0:
                await asyncio.sleep(self.settings.mock_delay_ms / 1000)
            self.metrics.requests_mocked += 1
            payload = build_mock_completion(request, self.settings.default_model, self._clock())
            return GatewayResult(status=200, payload=payload, client=key)

        authorize(self.settings.api_token, headers.get("authorization"))

        if not self.settings.upstream_api_key:
            raise ServerError("Missing GROK_KEY.")

        forwarded = await self.upstream.forward(request, self.settings.upstream_api_key)
        if isinstance(forwarded, UpstreamResponse):
            return GatewayResult(
                status=200,
                payload=forwarded.body,
                content_type=forwarded.content_type,
                client=key,
            )
        return GatewayResult(status=200, payload=forwarded, client=key)
