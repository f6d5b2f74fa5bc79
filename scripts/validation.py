#!/usr/bin/env python3
"""
validation.py - Structural validation of chat completion requests

Only the shape of the request is checked: the body must be a JSON object with a
non-empty ``messages`` list. Individual messages are forwarded as-is; the
upstream provider reports bad roles or content itself.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from api_errors import InvalidRequestError


@dataclass(frozen=True)
class CompletionRequest:
    """A structurally valid chat completion request.

    ``messages`` holds the client's message objects verbatim so they can be
    forwarded without reshaping. ``model`` and ``stream`` are kept as sent,
    whatever their type, so the upstream reports a bad value itself. Optional
    fields are None when absent.
    """

    messages: tuple
    model: Any = None
    stream: Any = None
    temperature: Optional[float] = None
    max_tokens: Optional[float] = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_body(raw_body: Union[bytes, str, dict, None]) -> Any:
    if isinstance(raw_body, dict):
        return raw_body
    if raw_body is None:
        raise InvalidRequestError("Invalid JSON body")
    if isinstance(raw_body, bytes):
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidRequestError("Invalid JSON body: not UTF-8") from None
    try:
        return json.loads(raw_body)
    except json.JSONDecodeError as e:
        raise InvalidRequestError(f"Invalid JSON body: {e.msg}") from None
    except (RecursionError, ValueError):
        raise InvalidRequestError("Invalid JSON body: too deeply nested or too large") from None


def validate(raw_body: Union[bytes, str, dict, None]) -> CompletionRequest:
    """
    Validate an inbound request body.

    Args:
        raw_body: Raw bytes/str from the wire, or an already-decoded dict

    Returns:
        CompletionRequest built from the body

    Raises:
        InvalidRequestError: If the body is not a JSON object or ``messages``
            is missing, not a list, or empty
    """
    body = _parse_body(raw_body)

    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object.")

    if "messages" not in body:
        raise InvalidRequestError('Request must include non-empty "messages" array.')

    messages = body["messages"]
    if not isinstance(messages, list):
        raise InvalidRequestError('"messages" must be an array.')
    if len(messages) == 0:
        raise InvalidRequestError('Request must include non-empty "messages" array.')

    temperature = body.get("temperature")
    max_tokens = body.get("max_tokens")

    return CompletionRequest(
        messages=tuple(messages),
        model=body.get("model"),
        stream=body.get("stream"),
        temperature=temperature if _is_number(temperature) else None,
        max_tokens=max_tokens if _is_number(max_tokens) else None,
    )
