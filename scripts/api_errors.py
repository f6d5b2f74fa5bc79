#!/usr/bin/env python3
"""
api_errors.py - Error taxonomy for the chat completions gateway

Every failure the gateway can report is a ``GatewayError`` subclass. Components
raise them at the point of detection; ``CompletionHandler`` converts them into
the OpenAI-compatible error envelope exactly once::

    {"error": {"message": "...", "type": "...", "code": "..."}}
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all errors returned to gateway clients.

    Attributes:
        kind: Error category (invalid_request, invalid_api_key, rate_limit,
            server_error, upstream_error, network_error).
        message: Human-readable description, always present.
        http_status: HTTP status code sent to the client.
        error_type: Value of ``error.type`` in the envelope.
        code: Value of ``error.code`` in the envelope.
    """

    kind = "server_error"
    http_status = 500
    error_type = "server_error"
    code = "server_error"

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> dict:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, http_status={self.http_status})"


class InvalidRequestError(GatewayError):
    """Client-fixable problem with the request body."""

    kind = "invalid_request"
    http_status = 400
    error_type = "invalid_request_error"
    code = "invalid_request_error"


class PayloadTooLargeError(InvalidRequestError):
    """Declared body size exceeds MAX_REQUEST_BODY_SIZE."""

    http_status = 413
    code = "payload_too_large"


class InvalidAPIKeyError(GatewayError):
    kind = "invalid_api_key"
    http_status = 401
    error_type = "invalid_api_key"
    code = "invalid_api_key"


class RateLimitError(GatewayError):
    """Client exceeded its request quota for the current window.

    ``retry_after`` is the number of seconds until the window resets and is
    sent back as the ``Retry-After`` header.
    """

    kind = "rate_limit"
    http_status = 429
    error_type = "rate_limit_error"
    code = "rate_limit_exceeded"

    def __init__(self, message: str = "Too many requests", retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(GatewayError):
    """Missing local configuration or an unexpected internal failure."""


class UpstreamError(GatewayError):
    """Upstream provider answered with a non-2xx status or an unusable body."""

    kind = "upstream_error"
    error_type = "upstream_error"
    code = "upstream_error"

    def __init__(self, message: str, http_status: int = 500):
        # Only 4xx/5xx are forwarded verbatim
        if not 400 <= http_status < 600:
            http_status = 500
        super().__init__(message, http_status)


class NetworkError(GatewayError):
    """Transport-level failure reaching the upstream (DNS, refused, TLS, timeout)."""

    kind = "network_error"
    http_status = 502
    error_type = "network_error"
    code = "network_error"


class NotFoundError(GatewayError):
    kind = "invalid_request"
    http_status = 404
    error_type = "invalid_request_error"
    code = "not_found"


class MethodNotAllowedError(GatewayError):
    kind = "invalid_request"
    http_status = 405
    error_type = "invalid_request_error"
    code = "method_not_allowed"


class HeaderTooLargeError(GatewayError):
    kind = "invalid_request"
    http_status = 431
    error_type = "invalid_request_error"
    code = "header_too_large"
