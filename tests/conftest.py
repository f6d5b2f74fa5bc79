"""Shared test fixtures for gateway module tests."""

import os
import sys

import pytest

# Add scripts/ to path so we can import gateway modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))

from settings import GatewaySettings  # noqa: E402

GATEWAY_ENV_VARS = (
    "GATEWAY_HOST",
    "GATEWAY_PORT",
    "PORT",
    "GROK_KEY",
    "UPSTREAM_API_KEY",
    "API_TOKEN",
    "OPENROUTER_MOCK",
    "MOCK_DELAY_MS",
    "OPENROUTER_REFERER",
    "OPENROUTER_TITLE",
    "UPSTREAM_URL",
    "UPSTREAM_TIMEOUT",
    "DEFAULT_MODEL",
    "MAX_REQUESTS_PER_MINUTE",
    "RATE_LIMIT_WINDOW_SECONDS",
    "RATE_LIMIT_USE_PEER",
    "MAX_REQUEST_BODY_SIZE",
    "MAX_HEADERS",
    "MAX_HEADER_LINE_SIZE",
    "CORS_ORIGINS",
    "CORS_ORIGIN",
    "LOG_FORMAT",
    "ACCESS_LOG_FILE",
    "APP_VERSION",
)


class FakeClock:
    """Manually advanced clock for rate limiter tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every gateway variable so settings fall back to defaults."""
    for name in GATEWAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_settings():
    """Settings for mock mode with a configured gateway secret."""
    return GatewaySettings(mock_mode=True, api_token="secret-token", cors_origins=[])


@pytest.fixture
def proxy_settings():
    """Settings for passthrough mode with upstream key and gateway secret."""
    return GatewaySettings(
        upstream_api_key="sk-or-upstream",
        api_token="secret-token",
        upstream_url="http://127.0.0.1:9/api/v1/chat/completions",
        cors_origins=[],
    )


@pytest.fixture
def chat_body():
    return {"messages": [{"role": "user", "content": "hi"}]}
