#!/usr/bin/env python3
"""
ratelimit.py - Fixed-window per-client rate limiting

Each client key gets a counter that resets at a fixed boundary (window start +
window length) instead of sliding continuously. Records are created lazily and
overwritten when their window has expired; nothing evicts them in the
background, so the table grows with the number of distinct client keys seen
during the process lifetime.

Client keys come from proxy headers (``X-Forwarded-For``, then ``X-Real-IP``).
Requests without either header all share the ``"unknown"`` bucket, which lets
one such client exhaust the quota for every other one. Deployments that are
not behind a reverse proxy should set RATE_LIMIT_USE_PEER=true so the socket
address is used instead.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitRecord:
    client_key: str
    count: int
    window_reset_at: float


def client_key(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Derive the rate limit bucket for a request.

    Args:
        headers: Request headers (lowercase keys)
        peer: Socket peer address, only consulted when provided

    Returns:
        First X-Forwarded-For entry, else X-Real-IP, else *peer*, else "unknown".
    """
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first

    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if peer:
        return peer

    return UNKNOWN_CLIENT


class RateLimiter:
    """
    Fixed-window request counter keyed by client.

    ``admit()`` is safe to call from any thread or task; all access to the
    record table is serialized by a single lock so concurrent requests from
    the same client can never both pass at ``count == max_requests - 1``.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    def admit(self, key: str) -> bool:
        """Count a request for *key* and report whether it may proceed.

        Denied requests are not counted.
        """
        with self._lock:
            now = self._clock()
            record = self._records.get(key)

            if record is None or now > record.window_reset_at:
                self._records[key] = RateLimitRecord(key, 1, now + self.window_seconds)
                return True

            if record.count < self.max_requests:
                record.count += 1
                return True

            return False

    def retry_after(self, key: str) -> int:
        """Whole seconds until *key*'s window resets (0 if it has none)."""
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return 0
            remaining = record.window_reset_at - self._clock()
        return max(0, math.ceil(remaining))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
