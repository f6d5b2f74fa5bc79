#!/usr/bin/env python3
"""
metrics.py - In-memory request counters for the gateway

Counters are mutated from the event loop thread only and exposed by
``GET /metrics`` as JSON or Prometheus text exposition format.
"""

import time
from dataclasses import dataclass, field

# (attribute, prometheus type, help text)
_PROMETHEUS_FIELDS = (
    ("requests_total", "counter", "Total completion requests handled"),
    ("requests_success", "counter", "Completion requests answered with 200"),
    ("requests_error", "counter", "Completion requests answered with an error"),
    ("requests_active", "gauge", "Completion requests currently in flight"),
    ("requests_mocked", "counter", "Requests answered by mock mode"),
    ("requests_rate_limited", "counter", "Requests rejected by the rate limiter"),
    ("requests_unauthorized", "counter", "Requests rejected for a bad or missing token"),
    ("upstream_errors", "counter", "Non-2xx or unusable upstream responses"),
    ("network_errors", "counter", "Failures reaching the upstream"),
    ("bytes_sent", "counter", "Total response body bytes sent to clients"),
)


@dataclass
class Metrics:
    requests_total: int = 0
    requests_success: int = 0
    requests_error: int = 0
    requests_active: int = 0
    requests_mocked: int = 0
    requests_rate_limited: int = 0
    requests_unauthorized: int = 0
    upstream_errors: int = 0
    network_errors: int = 0
    bytes_sent: int = 0
    start_time: float = field(default_factory=time.time)

    def record_error(self, kind: str):
        """Bump the error counters for a GatewayError kind."""
        self.requests_error += 1
        if kind == "rate_limit":
            self.requests_rate_limited += 1
        elif kind == "invalid_api_key":
            self.requests_unauthorized += 1
        elif kind == "upstream_error":
            self.upstream_errors += 1
        elif kind == "network_error":
            self.network_errors += 1

    def uptime_seconds(self) -> int:
        return int(time.time() - self.start_time)

    def to_dict(self) -> dict:
        data = {name: getattr(self, name) for name, _, _ in _PROMETHEUS_FIELDS}
        data["uptime_seconds"] = self.uptime_seconds()
        return data

    def to_prometheus(self) -> str:
        """Return metrics in Prometheus text exposition format."""
        lines = []
        for name, kind, help_text in _PROMETHEUS_FIELDS:
            lines.append(f"# HELP gateway_{name} {help_text}")
            lines.append(f"# TYPE gateway_{name} {kind}")
            lines.append(f"gateway_{name} {getattr(self, name)}")
        lines.append("# HELP gateway_uptime_seconds Gateway uptime in seconds")
        lines.append("# TYPE gateway_uptime_seconds gauge")
        lines.append(f"gateway_uptime_seconds {self.uptime_seconds()}")
        return "\n".join(lines) + "\n"
