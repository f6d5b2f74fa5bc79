#!/usr/bin/env python3
"""
settings.py - Environment configuration for the chat completions gateway

All configuration is read once by ``GatewaySettings.from_env()`` at startup and
passed explicitly to the components that need it. Tests build settings
directly with keyword arguments.

Environment Variables:
    GATEWAY_HOST              - Bind address (default: 0.0.0.0)
    GATEWAY_PORT              - Port to listen on; PORT is accepted too (default: 3001)
    GROK_KEY                  - Upstream API key; UPSTREAM_API_KEY is accepted too
    API_TOKEN                 - Bearer token clients must send (optional, auth is opt-in)
    OPENROUTER_MOCK           - "1"/"true" returns synthetic completions (default: off)
    MOCK_DELAY_MS             - Artificial latency for mock responses (default: 0)
    OPENROUTER_REFERER        - Optional HTTP-Referer header sent upstream
    OPENROUTER_TITLE          - Optional X-Title header sent upstream
    UPSTREAM_URL              - Upstream chat completions URL (default: OpenRouter)
    UPSTREAM_TIMEOUT          - Upstream timeout in seconds (default: 30)
    DEFAULT_MODEL             - Model used when the request has none (default: x-ai/grok-4.1-fast)
    MAX_REQUESTS_PER_MINUTE   - Requests per client per window (default: 100)
    RATE_LIMIT_WINDOW_SECONDS - Rate limit window length (default: 60)
    RATE_LIMIT_USE_PEER       - Key clients by socket address before "unknown" (default: false)
    MAX_REQUEST_BODY_SIZE     - Max request body in bytes (default: 1048576)
    MAX_HEADERS               - Max request headers (default: 100)
    MAX_HEADER_LINE_SIZE      - Max bytes per header line (default: 8192)
    CORS_ORIGINS              - Comma-separated allowed origins; CORS_ORIGIN is accepted too (default: *)
    LOG_FORMAT                - Access log format, "text" or "json" (default: text)
    ACCESS_LOG_FILE           - Access log path (default: stderr)
    APP_VERSION               - Version reported by /health (default: 1.0.0)
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

DEFAULT_MODEL = "x-ai/grok-4.1-fast"
DEFAULT_UPSTREAM_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_VERSION = "1.0.0"

_TRUE_VALUES = ("1", "true", "yes", "on")


class SettingsError(ValueError):
    """Raised when an environment variable holds an unusable value."""


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SettingsError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise SettingsError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise SettingsError(f"{name} must be positive, got {value}")
    return value


def _env_str(env: Mapping[str, str], *names: str) -> Optional[str]:
    """Return the first non-empty value among *names*, or None."""
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def parse_origins(raw: str) -> list[str]:
    """Split a comma-separated origin list, dropping blanks and trailing slashes."""
    return [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]


@dataclass
class GatewaySettings:
    host: str = "0.0.0.0"  # nosec B104 - intentional bind-all for container networking
    port: int = 3001
    upstream_api_key: Optional[str] = None
    api_token: Optional[str] = None
    mock_mode: bool = False
    mock_delay_ms: int = 0
    upstream_url: str = DEFAULT_UPSTREAM_URL
    upstream_referer: Optional[str] = None
    upstream_title: Optional[str] = None
    upstream_timeout: float = 30.0
    default_model: str = DEFAULT_MODEL
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: float = 60.0
    rate_limit_use_peer: bool = False
    max_request_body_size: int = 1024 * 1024
    max_headers: int = 100
    max_header_line_size: int = 8192
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_format: str = "text"
    access_log_file: Optional[str] = None
    version: str = DEFAULT_VERSION

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_token)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewaySettings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read from (default: ``os.environ``).

        Raises:
            SettingsError: If a numeric variable cannot be parsed.
        """
        if env is None:
            env = os.environ

        cors_raw = _env_str(env, "CORS_ORIGINS", "CORS_ORIGIN") or "*"
        log_format = (env.get("LOG_FORMAT") or "text").strip().lower()
        if log_format not in ("text", "json"):
            raise SettingsError(f"LOG_FORMAT must be 'text' or 'json', got {log_format!r}")

        return cls(
            host=env.get("GATEWAY_HOST") or "0.0.0.0",  # nosec B104
            port=_env_int(env, "GATEWAY_PORT", _env_int(env, "PORT", 3001, minimum=1), minimum=1),
            upstream_api_key=_env_str(env, "GROK_KEY", "UPSTREAM_API_KEY"),
            api_token=_env_str(env, "API_TOKEN"),
            mock_mode=_env_bool(env, "OPENROUTER_MOCK"),
            mock_delay_ms=_env_int(env, "MOCK_DELAY_MS", 0),
            upstream_url=env.get("UPSTREAM_URL") or DEFAULT_UPSTREAM_URL,
            upstream_referer=_env_str(env, "OPENROUTER_REFERER"),
            upstream_title=_env_str(env, "OPENROUTER_TITLE"),
            upstream_timeout=_env_float(env, "UPSTREAM_TIMEOUT", 30.0),
            default_model=env.get("DEFAULT_MODEL") or DEFAULT_MODEL,
            rate_limit_max_requests=_env_int(env, "MAX_REQUESTS_PER_MINUTE", 100, minimum=1),
            rate_limit_window_seconds=_env_float(env, "RATE_LIMIT_WINDOW_SECONDS", 60.0),
            rate_limit_use_peer=_env_bool(env, "RATE_LIMIT_USE_PEER"),
            max_request_body_size=_env_int(env, "MAX_REQUEST_BODY_SIZE", 1024 * 1024, minimum=1),
            max_headers=_env_int(env, "MAX_HEADERS", 100, minimum=1),
            max_header_line_size=_env_int(env, "MAX_HEADER_LINE_SIZE", 8192, minimum=64),
            cors_origins=parse_origins(cors_raw),
            log_format=log_format,
            access_log_file=_env_str(env, "ACCESS_LOG_FILE"),
            version=env.get("APP_VERSION") or DEFAULT_VERSION,
        )
