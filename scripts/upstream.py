#!/usr/bin/env python3
"""
upstream.py - Client for the single upstream chat completions provider

Builds the outbound OpenAI-style request, sends it over a raw asyncio stream
(TLS for https URLs) and classifies the outcome:

- connection refused, DNS or TLS failure, timeout -> NetworkError (502)
- non-2xx response                                -> UpstreamError (status mirrored)
- 2xx response                                    -> parsed JSON, returned unmodified

Event-stream responses (``"stream": true``) are buffered and relayed verbatim
as an ``UpstreamResponse``; the gateway does not interpret SSE frames.
"""

import asyncio
import json
import ssl
import sys
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import urlparse

from api_errors import NetworkError, UpstreamError
from settings import DEFAULT_MODEL, DEFAULT_UPSTREAM_URL
from validation import CompletionRequest


def log(msg: str):
    """Simple logging to stderr."""
    print(f"[upstream] {msg}", file=sys.stderr, flush=True)


@dataclass
class UpstreamResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Low-level async HTTP helpers
# ---------------------------------------------------------------------------


def _parse_url(url: str) -> tuple[str, str, int, bool]:
    """Parse a URL into (host, path, port, use_ssl)."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Unsupported upstream URL scheme: {url!r}")
    host = parsed.hostname or "localhost"
    use_ssl = parsed.scheme == "https"
    default_port = 443 if use_ssl else 80
    port = parsed.port or default_port
    path = parsed.path or "/"
    if parsed.query:
        path += "?" + parsed.query
    return host, path, port, use_ssl


def decode_chunked(data: bytes) -> bytes:
    """Decode a complete ``Transfer-Encoding: chunked`` body.

    Raises:
        ValueError: If the framing is malformed or truncated.
    """
    out = bytearray()
    pos = 0
    while True:
        eol = data.find(b"\r\n", pos)
        if eol == -1:
            raise ValueError("Truncated chunk size line")
        size_field = data[pos:eol].split(b";", 1)[0].strip()
        size = int(size_field, 16)
        pos = eol + 2
        if size == 0:
            return bytes(out)
        if pos + size > len(data):
            raise ValueError("Truncated chunk")
        out += data[pos : pos + size]
        pos += size + 2


async def _read_response(reader: asyncio.StreamReader) -> UpstreamResponse:
    """Read status line, headers and the full body from *reader*."""
    first_line = await reader.readline()
    parts = first_line.decode("latin-1").strip().split(None, 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/"):
        raise ValueError(f"Malformed status line: {first_line[:80]!r}")
    status = int(parts[1])

    headers: dict[str, str] = {}
    while True:
        line = await reader.readline()
        if line in (b"\r\n", b"\n", b""):
            break
        decoded = line.decode("latin-1").strip()
        if ":" in decoded:
            k, v = decoded.split(":", 1)
            headers[k.strip().lower()] = v.strip()

    if "chunked" in headers.get("transfer-encoding", "").lower():
        body = decode_chunked(await reader.read())
    elif "content-length" in headers:
        body = await reader.readexactly(int(headers["content-length"]))
    else:
        body = await reader.read()

    return UpstreamResponse(status=status, headers=headers, body=body)


class UpstreamClient:
    """
    Forwards validated completion requests to one upstream provider.

    Holds no mutable state, so one instance is shared by all requests.
    """

    def __init__(
        self,
        url: str = DEFAULT_UPSTREAM_URL,
        timeout: float = 30.0,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        default_model: str = DEFAULT_MODEL,
    ):
        self.url = url
        self.host, self.path, self.port, self.use_ssl = _parse_url(url)
        self.timeout = timeout
        self.referer = referer
        self.title = title
        self.default_model = default_model
        self._ssl_ctx: Optional[ssl.SSLContext] = (
            ssl.create_default_context() if self.use_ssl else None
        )

    @classmethod
    def from_settings(cls, settings) -> "UpstreamClient":
        return cls(
            url=settings.upstream_url,
            timeout=settings.upstream_timeout,
            referer=settings.upstream_referer,
            title=settings.upstream_title,
            default_model=settings.default_model,
        )

    def build_headers(self, api_key: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        """Map a request onto the upstream payload.

        Absent optional fields are omitted rather than sent as null.
        """
        payload: dict[str, Any] = {
            "model": request.model if request.model is not None else self.default_model,
            "messages": list(request.messages),
        }
        if request.stream is not None:
            payload["stream"] = request.stream
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def _exchange(self, headers: dict[str, str], body: bytes) -> UpstreamResponse:
        reader, writer = await asyncio.open_connection(self.host, self.port, ssl=self._ssl_ctx)
        try:
            default_port = 443 if self.use_ssl else 80
            host_header = self.host if self.port == default_port else f"{self.host}:{self.port}"
            lines = [f"POST {self.path} HTTP/1.1", f"Host: {host_header}"]
            for k, v in headers.items():
                lines.append(f"{k}: {v}")
            lines.append(f"Content-Length: {len(body)}")
            lines.append("Accept-Encoding: identity")
            lines.append("Connection: close")
            lines.append("")
            lines.append("")
            writer.write("\r\n".join(lines).encode())
            writer.write(body)
            await writer.drain()
            return await _read_response(reader)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass  # Peer already gone; nothing left to flush

    async def post(self, payload: dict[str, Any], api_key: str) -> UpstreamResponse:
        """
        Send *payload* upstream and return the raw response.

        Raises:
            NetworkError: On connection, DNS, TLS or framing failure, or when
                the exchange exceeds ``timeout`` seconds
        """
        body = json.dumps(payload).encode("utf-8")
        try:
            return await asyncio.wait_for(
                self._exchange(self.build_headers(api_key), body), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise NetworkError(
                f"Failed to reach upstream: timed out after {self.timeout:g}s"
            ) from None
        except (OSError, EOFError, ValueError) as e:
            raise NetworkError(f"Failed to reach upstream: {str(e) or type(e).__name__}") from e

    async def forward(
        self, request: CompletionRequest, api_key: str
    ) -> Union[dict[str, Any], UpstreamResponse]:
        """
        Forward a validated request and classify the result.

        Args:
            request: The validated completion request
            api_key: Upstream provider key

        Returns:
            The upstream JSON body unmodified, or the raw response for
            event-stream replies

        Raises:
            NetworkError: Transport-level failure (502)
            UpstreamError: Non-2xx status, or a 2xx body that is not JSON
        """
        response = await self.post(self.build_payload(request), api_key)

        if not response.ok:
            log(f"Upstream returned HTTP {response.status}")
            raise UpstreamError(
                f"Upstream failed: {response.text or response.status}", response.status
            )

        if response.content_type.startswith("text/event-stream"):
            return response

        try:
            return json.loads(response.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log(f"Upstream returned non-JSON body ({len(response.body)} bytes)")
            raise UpstreamError("Upstream returned an invalid JSON body", 502) from None
