#!/usr/bin/env python3
"""
gateway.py - Async HTTP gateway exposing an OpenAI-compatible chat completions endpoint

Features:
- POST /completions forwarded to a single upstream provider (OpenRouter by default)
- Fixed-window per-client rate limiting
- Optional bearer token authentication (API_TOKEN)
- Mock mode for local development (OPENROUTER_MOCK=1)
- OpenAI-style error envelopes for every failure
- /health and /metrics endpoints (no auth, no rate limit)
- Configurable CORS headers and security response headers
- Request header and body size limits
- Per-request access logging

Routes:
    POST /completions            (aliases: /api/v1/chat/completions, /v1/chat/completions)
    GET  /health                 (alias: /api/v1/chat/health)
    GET  /metrics
    OPTIONS *                    CORS preflight

See settings.py for the environment variables.
"""

import asyncio
import datetime
import json
import signal
import sys
import time
from http import HTTPStatus
from typing import Optional

from api_errors import (
    GatewayError,
    HeaderTooLargeError,
    MethodNotAllowedError,
    NotFoundError,
)
from auth import log_access
from completions import CompletionHandler, GatewayResult
from metrics import Metrics
from ratelimit import RateLimiter, UNKNOWN_CLIENT
from settings import GatewaySettings, SettingsError
from upstream import UpstreamClient

COMPLETION_PATHS = ("/completions", "/api/v1/chat/completions", "/v1/chat/completions")
HEALTH_PATHS = ("/health", "/api/v1/chat/health")
METRICS_PATHS = ("/metrics",)

# Max length for an Origin header value considered for CORS matching
MAX_ORIGIN_LENGTH = 2048

READ_TIMEOUT = 30

SECURITY_HEADERS = (
    "X-Content-Type-Options: nosniff",
    "X-Frame-Options: SAMEORIGIN",
    "Referrer-Policy: no-referrer",
    "Cross-Origin-Resource-Policy: same-origin",
)


def log(msg: str):
    """Simple logging to stderr."""
    print(f"[gateway] {msg}", file=sys.stderr, flush=True)


def get_cors_headers(allowed_origins: list[str], request_origin: str = "") -> list[str]:
    """Return CORS response header lines for the given request origin.

    Returns an empty list if CORS is not enabled or the origin is not allowed.
    """
    if not allowed_origins:
        return []

    if "*" in allowed_origins:
        allowed_origin = "*"
    elif (
        request_origin
        and len(request_origin) <= MAX_ORIGIN_LENGTH
        and request_origin.rstrip("/") in allowed_origins
    ):
        allowed_origin = request_origin.rstrip("/")
    else:
        return []

    headers = [
        f"Access-Control-Allow-Origin: {allowed_origin}",
        "Access-Control-Allow-Methods: GET, POST, OPTIONS",
        "Access-Control-Allow-Headers: Authorization, Content-Type",
        "Access-Control-Max-Age: 86400",
    ]
    # Caches must distinguish responses per origin in allowlist mode
    if allowed_origin != "*":
        headers.append("Vary: Origin")
    return headers


def build_response(
    status: int,
    body: bytes = b"",
    content_type: Optional[str] = None,
    extra_headers: Optional[list[str]] = None,
) -> bytes:
    """Serialize a complete HTTP/1.1 response (status line, headers, body)."""
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = "Unknown"

    lines = [f"HTTP/1.1 {status} {reason}"]
    if content_type:
        lines.append(f"Content-Type: {content_type}")
    lines.extend(SECURITY_HEADERS)
    if extra_headers:
        lines.extend(extra_headers)
    lines.append(f"Content-Length: {len(body)}")
    lines.append("Connection: close")
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("latin-1") + body


def _wants_prometheus(accept_header: str) -> bool:
    """Check if the Accept header requests Prometheus text format."""
    if not accept_header:
        return False
    accept_lower = accept_header.lower()
    return "text/plain" in accept_lower or "application/openmetrics-text" in accept_lower


def _peer_host(writer) -> Optional[str]:
    get_extra_info = getattr(writer, "get_extra_info", None)
    if get_extra_info is None:
        return None
    peername = get_extra_info("peername")
    if isinstance(peername, (tuple, list)) and peername:
        return str(peername[0])
    return None


async def _wait_for_disconnect(reader: asyncio.StreamReader) -> None:
    """Return once the client connection is reset.

    EOF alone is a half-close: the client may have shut down its write side
    and still be waiting for the response, so it does not count.
    """
    try:
        while await reader.read(1024):
            pass
    except (ConnectionError, OSError):
        return
    await asyncio.get_running_loop().create_future()


class Gateway:
    """
    HTTP front end: parses requests off asyncio streams, routes them and
    writes exactly one response per connection.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        handler: Optional[CompletionHandler] = None,
    ):
        self.settings = settings
        if handler is None:
            handler = CompletionHandler(
                settings,
                rate_limiter=RateLimiter(
                    max_requests=settings.rate_limit_max_requests,
                    window_seconds=settings.rate_limit_window_seconds,
                ),
                upstream=UpstreamClient.from_settings(settings),
                metrics=Metrics(),
            )
        self.handler = handler
        self.metrics = handler.metrics
        self.start_time = time.time()

    # ------------------------------------------------------------------
    # Response helpers
    # ------------------------------------------------------------------

    def cors_headers(self, request_origin: str = "") -> list[str]:
        return get_cors_headers(self.settings.cors_origins, request_origin)

    async def send(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        body: bytes = b"",
        content_type: Optional[str] = None,
        request_origin: str = "",
        extra_headers: Optional[list[str]] = None,
    ) -> None:
        headers = self.cors_headers(request_origin) + (extra_headers or [])
        writer.write(build_response(status, body, content_type, headers))
        await writer.drain()
        self.metrics.bytes_sent += len(body)

    async def send_error(
        self, writer: asyncio.StreamWriter, error: GatewayError, request_origin: str = ""
    ) -> None:
        body = json.dumps(error.to_dict()).encode("utf-8")
        await self.send(writer, error.http_status, body, "application/json", request_origin)

    async def send_result(
        self, writer: asyncio.StreamWriter, result: GatewayResult, request_origin: str = ""
    ) -> None:
        extra = [f"{k}: {v}" for k, v in result.headers.items()]
        await self.send(
            writer,
            result.status,
            result.body_bytes(),
            result.content_type or "application/json",
            request_origin,
            extra,
        )

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def handle_options(self, writer: asyncio.StreamWriter, request_origin: str = ""):
        """Handle OPTIONS preflight request with CORS headers.

        Returns 204 No Content. No authentication required.
        """
        await self.send(writer, 204, request_origin=request_origin)

    def health_payload(self) -> dict:
        now = datetime.datetime.now(datetime.timezone.utc)
        return {
            "status": "healthy",
            "uptime_ms": int((time.time() - self.start_time) * 1000),
            "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "version": self.settings.version,
        }

    async def handle_health(self, writer: asyncio.StreamWriter, request_origin: str = ""):
        """Handle /health. No authentication or rate limiting."""
        body = json.dumps(self.health_payload()).encode("utf-8")
        await self.send(writer, 200, body, "application/json", request_origin)

    async def handle_metrics(
        self,
        writer: asyncio.StreamWriter,
        request_origin: str = "",
        accept_header: str = "",
    ):
        """Handle /metrics endpoint.

        Returns Prometheus text format if Accept header contains text/plain
        or application/openmetrics-text, otherwise returns JSON.
        """
        if _wants_prometheus(accept_header):
            body = self.metrics.to_prometheus()
            content_type = "text/plain; version=0.0.4; charset=utf-8"
        else:
            body = json.dumps({"gateway": self.metrics.to_dict()}, indent=2)
            content_type = "application/json"
        await self.send(writer, 200, body.encode("utf-8"), content_type, request_origin)

    async def handle_completions(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        headers: dict[str, str],
        body: Optional[bytes],
        request_origin: str = "",
    ) -> Optional[GatewayResult]:
        """Run the completion pipeline, abandoning it if the connection is reset.

        Returns the result that was sent, or None if the client disconnected
        before it was ready.
        """
        task = asyncio.ensure_future(
            self.handler.handle(body, headers, peer=_peer_host(writer))
        )
        watcher = asyncio.ensure_future(_wait_for_disconnect(reader))
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()

        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            log("Client disconnected before completion; upstream call abandoned")
            return None

        result = task.result()
        await self.send_result(writer, result, request_origin)
        return result

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _read_headers(self, reader: asyncio.StreamReader) -> dict[str, str]:
        headers: dict[str, str] = {}
        count = 0
        while True:
            header_line_raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            if header_line_raw in (b"\r\n", b"\n", b""):
                break
            if len(header_line_raw) > self.settings.max_header_line_size:
                raise HeaderTooLargeError("Request header line too large")
            count += 1
            if count > self.settings.max_headers:
                raise HeaderTooLargeError("Too many request headers")
            header_line = header_line_raw.decode("utf-8", errors="replace").strip()
            if ":" in header_line:
                key, value = header_line.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        return headers

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Handle an incoming client connection."""
        method, path, status = "-", "-", 0
        client = UNKNOWN_CLIENT
        request_origin = ""
        try:
            request_line_raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT)
            if not request_line_raw:
                return

            parts = request_line_raw.decode("utf-8", errors="replace").strip().split()
            if len(parts) < 2:
                return

            method = parts[0].upper()
            path = parts[1].split("?", 1)[0]

            try:
                headers = await self._read_headers(reader)
            except HeaderTooLargeError as e:
                status = e.http_status
                await self.send_error(writer, e)
                return

            request_origin = headers.get("origin", "")

            if method == "OPTIONS":
                status = 204
                await self.handle_options(writer, request_origin)
                return

            if path in HEALTH_PATHS or path in METRICS_PATHS:
                if method != "GET":
                    raise MethodNotAllowedError(f"Method {method} not allowed on {path}")
                status = 200
                if path in HEALTH_PATHS:
                    await self.handle_health(writer, request_origin)
                else:
                    await self.handle_metrics(writer, request_origin, headers.get("accept", ""))
                return

            if path not in COMPLETION_PATHS:
                raise NotFoundError(f"Not found: {path}")
            if method != "POST":
                raise MethodNotAllowedError(f"Method {method} not allowed on {path}")

            # Oversized or unparseable lengths are never read; the pipeline
            # rejects them after the rate limit check
            try:
                content_length = int(headers.get("content-length", "0"))
            except ValueError:
                content_length = 0
            body = b""
            if 0 < content_length <= self.settings.max_request_body_size:
                body = await asyncio.wait_for(
                    reader.readexactly(content_length), timeout=READ_TIMEOUT
                )

            result = await self.handle_completions(
                reader, writer, headers, body, request_origin
            )
            if result is not None:
                status = result.status
                client = result.client

        except GatewayError as e:
            status = e.http_status
            await self.send_error(writer, e, request_origin)
        except asyncio.TimeoutError:
            log(f"Client read timed out ({method} {path})")
        except asyncio.IncompleteReadError:
            log(f"Client closed connection mid-body ({method} {path})")
        except (ConnectionError, OSError) as e:
            log(f"Client connection error: {e}")
        except Exception as e:
            log(f"Client handler error: {type(e).__name__}: {e}")

        finally:
            if status and path in COMPLETION_PATHS:
                log_access(
                    method,
                    path,
                    client,
                    status,
                    fmt=self.settings.log_format,
                    log_file=self.settings.access_log_file,
                )
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                log("Cleanup: failed to close client writer")


async def main():
    """Start the gateway server."""
    try:
        settings = GatewaySettings.from_env()
    except SettingsError as e:
        log(f"ERROR: {e}")
        sys.exit(1)

    gateway = Gateway(settings)

    log(f"Starting gateway on {settings.host}:{settings.port}")
    log(f"Upstream: {settings.upstream_url} (timeout {settings.upstream_timeout:g}s)")
    log(
        f"Rate limit: {settings.rate_limit_max_requests} requests per "
        f"{settings.rate_limit_window_seconds:g}s per client"
    )
    if not settings.rate_limit_use_peer:
        log("Rate limit: clients without X-Forwarded-For/X-Real-IP share one bucket")
    log(f"Authentication: {'ENABLED' if settings.auth_enabled else 'DISABLED'}")
    if settings.mock_mode:
        log("Mock mode: ENABLED - completions are synthesized locally")
    elif not settings.upstream_api_key:
        log("WARNING: GROK_KEY not set - completion requests will fail with 500")
    log(f"CORS origins: {', '.join(settings.cors_origins) or 'disabled'}")

    server = await asyncio.start_server(
        gateway.handle_client,
        settings.host,
        settings.port,
        reuse_address=True,
    )

    loop = asyncio.get_running_loop()

    def signal_handler():
        log("Shutdown signal received")
        server.close()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    log(f"Gateway listening on http://{settings.host}:{settings.port}")

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass  # server.close() cancels serve_forever


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log("Interrupted")
    except Exception as e:
        log(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
