#!/usr/bin/env python3
"""
auth.py - Bearer token authorization and access logging for the gateway

Authorization is opt-in: when API_TOKEN is unset every request is allowed.
When it is set, clients must send ``Authorization: Bearer <API_TOKEN>``.

Usage::

    from auth import authorize, log_access

    authorize(settings.api_token, headers.get("authorization"))  # raises on failure
    ...
    log_access(method, path, client, status_code, fmt=settings.log_format)

Access log format:
    text: ISO8601_timestamp | client | method path | status_code
    json: {"ts":"...","client":"...","method":"...","path":"...","status":200}
"""

import datetime
import hmac
import json
import os
import sys
from typing import Optional

from api_errors import InvalidAPIKeyError

BEARER_PREFIX = "Bearer "


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token from a ``Bearer <token>`` header, or None.

    The scheme is matched case-sensitively, the way the gateway's clients
    send it.
    """
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX) :]


def authorize(configured_secret: Optional[str], provided_header: Optional[str]) -> None:
    """
    Check a request's Authorization header against the gateway secret.

    Args:
        configured_secret: The API_TOKEN value, or None when auth is disabled
        provided_header: Raw Authorization header value, if any

    Raises:
        InvalidAPIKeyError: If a secret is configured and the header is missing,
            uses another scheme, or carries a different token
    """
    if not configured_secret:
        return

    token = extract_bearer_token(provided_header)
    if token is None:
        raise InvalidAPIKeyError("Invalid or missing API token")

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(token.encode("utf-8"), configured_secret.encode("utf-8")):
        raise InvalidAPIKeyError("Invalid or missing API token")


def _sanitize_log_field(value: str) -> str:
    """Sanitize a value for safe inclusion in log output.

    Replaces control characters that could enable log injection attacks:
    newlines, carriage returns, tabs, and pipe characters (the log field
    delimiter) are replaced with underscores.
    """
    return value.replace("\n", "_").replace("\r", "_").replace("\t", "_").replace("|", "_")


def format_access_entry(
    method: str, path: str, client: str, status_code: int, fmt: str = "text"
) -> str:
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

    if fmt == "json":
        return json.dumps(
            {
                "ts": timestamp,
                "client": client,
                "method": method,
                "path": path,
                "status": status_code,
            },
            separators=(",", ":"),
        )

    safe_method = _sanitize_log_field(method)
    safe_path = _sanitize_log_field(path)
    safe_client = _sanitize_log_field(client)
    return f"{timestamp} | {safe_client} | {safe_method} {safe_path} | {status_code}"


def log_access(
    method: str,
    path: str,
    client: str,
    status_code: int,
    fmt: str = "text",
    log_file: Optional[str] = None,
) -> None:
    """
    Log one completed request for auditing.

    Args:
        method: HTTP method
        path: Request path
        client: The rate limit client key
        status_code: HTTP status code sent to the client
        fmt: "text" (pipe-delimited) or "json" (JSONL)
        log_file: Append to this file; stderr when None
    """
    entry = format_access_entry(method, path, client, status_code, fmt)

    if not log_file:
        print(f"[access] {entry}", file=sys.stderr, flush=True)
        return

    try:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(log_file, "a") as f:
            f.write(entry + "\n")
    except OSError as e:
        # Don't fail the request if logging fails, but print warning
        print(f"[access] Warning: Failed to log access: {e}", file=sys.stderr, flush=True)
