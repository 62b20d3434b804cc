"""
Translation of OpenAI-shaped chat requests into the upstream request body.

The upstream always receives the configured model; the caller's ``model``
is only logged. Sampling fields fall back to the configured defaults, and
a fixed allow-list of extra parameters is forwarded verbatim. Anything
else in the inbound body is dropped.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from errors import ConfigurationError, MalformedRequest
from state import GatewayConfig

logger = logging.getLogger(__name__)

# Forwarded verbatim when the caller sets them
PASSTHROUGH_FIELDS: tuple[str, ...] = (
    "top_p",
    "top_k",
    "frequency_penalty",
    "presence_penalty",
    "repetition_penalty",
    "min_p",
    "seed",
    "stop",
    "n",
    "context_length",
    "context_window",
    "truncate",
)

_MISSING = object()


def decode_body(raw: bytes | str | dict[str, Any]) -> dict[str, Any]:
    """
    Decode an inbound request body into a JSON object.

    Raises:
        MalformedRequest: If the body is not a JSON object
    """
    if isinstance(raw, dict):
        return raw
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequest(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise MalformedRequest("Request body must be a JSON object")
    return body


def _number(body: dict[str, Any], key: str) -> float | int | None:
    value = body.get(key)
    # bool is an int subclass but never a valid sampling value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _flag(body: dict[str, Any], key: str) -> bool | None:
    value = body.get(key)
    return value if isinstance(value, bool) else None


def translate(
    inbound_body: bytes | str | dict[str, Any], config: GatewayConfig
) -> dict[str, Any]:
    """
    Build the upstream request body for a chat completion.

    Args:
        inbound_body: Raw request body, or an already decoded JSON object
        config: Configuration snapshot to take the model and defaults from

    Returns:
        The outbound JSON object

    Raises:
        ConfigurationError: If no upstream credential is configured
        MalformedRequest: If the body is not a JSON object with ``messages``
    """
    if not config.has_api_key:
        raise ConfigurationError("API key not configured")

    body = decode_body(inbound_body)
    messages = body.get("messages", _MISSING)
    if messages is _MISSING:
        raise MalformedRequest("Missing required field: messages")

    temperature = _number(body, "temperature")
    max_tokens = _number(body, "max_tokens")
    stream = _flag(body, "stream")

    outbound: dict[str, Any] = {
        "model": config.current_model,
        "messages": messages,
        "temperature": temperature if temperature is not None else config.temperature,
        "max_tokens": int(max_tokens) if max_tokens is not None else config.max_tokens,
        "stream": stream if stream is not None else config.streaming_enabled,
    }

    for key in PASSTHROUGH_FIELDS:
        value = body.get(key, _MISSING)
        if value is not _MISSING:
            outbound[key] = value

    if config.log_requests:
        logger.info(f"{body.get('model')} -> {config.current_model}")

    return outbound
