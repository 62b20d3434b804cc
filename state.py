"""
Live configuration and usage statistics for the gateway.

The ``StateStore`` owns one ``GatewayConfig`` and one ``GatewayStats``.
Writers go through ``update()``, which runs a synchronous mutator while
holding an ``asyncio.Lock``; because a mutator never awaits, readers on the
event loop always see either the state before or after a write, never a
half-applied one, and can take snapshots without queueing behind writers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from errors import MalformedRequest

logger = logging.getLogger(__name__)

ERROR_LOG_LIMIT = 50

DEFAULT_MODEL = "deepseek-ai/deepseek-v3.2"

T = TypeVar("T")


def timestamp() -> str:
    """Current local time as an RFC 3339 string."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


class GatewayConfig(BaseModel):
    """User-editable gateway configuration (persisted, camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    show_reasoning: bool = False
    enable_thinking: bool = False
    log_requests: bool = True
    context_size: int = 128000
    max_tokens: int = Field(default=0, description="0 means no limit")
    temperature: float = 0.7
    streaming_enabled: bool = True
    current_model: str = DEFAULT_MODEL
    api_key: str = Field(default="", description="Upstream credential, empty when unset")

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def public_dict(self) -> dict[str, Any]:
        """Outward view of the configuration with the credential redacted."""
        data = self.model_dump(by_alias=True, exclude={"api_key"})
        data["apiKeyConfigured"] = self.has_api_key
        return data


@dataclass(frozen=True)
class ErrorEntry:
    """A single recorded failure."""

    timestamp: str
    message: str
    code: int

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "message": self.message, "code": self.code}


@dataclass
class GatewayStats:
    """Cumulative usage statistics since startup or the last reset."""

    message_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    error_count: int = 0
    last_request_time: str = ""
    start_time: str = field(default_factory=timestamp)
    # Most recent first; maxlen drops the oldest entry on overflow
    error_log: deque[ErrorEntry] = field(
        default_factory=lambda: deque(maxlen=ERROR_LOG_LIMIT)
    )

    def record_request(self) -> None:
        self.message_count += 1
        self.last_request_time = timestamp()

    def add_usage(
        self, prompt_tokens: int = 0, completion_tokens: int = 0, total_tokens: int = 0
    ) -> None:
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.total_tokens += total_tokens

    def record_error(self, message: str, code: int) -> ErrorEntry:
        entry = ErrorEntry(timestamp=timestamp(), message=message, code=code)
        self.error_count += 1
        self.error_log.appendleft(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "messageCount": self.message_count,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "errorCount": self.error_count,
            "lastRequestTime": self.last_request_time,
            "startTime": self.start_time,
            "errorLog": [entry.to_dict() for entry in self.error_log],
        }


@dataclass
class GatewayState:
    """The mutable record handed to ``StateStore.update`` mutators."""

    config: GatewayConfig
    stats: GatewayStats


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time copy of configuration and statistics."""

    config: GatewayConfig
    stats: dict[str, Any]


class StateStore:
    """
    Holds configuration and statistics with shared-reader / exclusive-writer
    access.

    Must be used from the event loop thread that serves requests.
    """

    def __init__(self, config: GatewayConfig | None = None):
        self._state = GatewayState(
            config=config or GatewayConfig(),
            stats=GatewayStats(),
        )
        self._lock = asyncio.Lock()

    def read(self) -> StateSnapshot:
        """Return a consistent snapshot of configuration and statistics."""
        state = self._state
        return StateSnapshot(
            config=state.config.model_copy(deep=True),
            stats=state.stats.to_dict(),
        )

    async def update(self, mutator: Callable[[GatewayState], T]) -> T:
        """
        Apply ``mutator`` to the live state exclusively.

        The mutator must be synchronous and must not block.
        """
        async with self._lock:
            return mutator(self._state)

    # -- configuration ------------------------------------------------------

    async def load_config(self, config: GatewayConfig) -> None:
        """Replace the configuration wholesale (used for the persisted record)."""

        def apply(state: GatewayState) -> None:
            state.config = config.model_copy(deep=True)

        await self.update(apply)

    async def save_config(self, changes: dict[str, Any]) -> GatewayConfig:
        """
        Merge ``changes`` (camelCase or snake_case keys) into the configuration.

        Keys that are not supplied keep their current value. An empty or
        missing credential never erases the stored one.

        Raises:
            MalformedRequest: If a supplied value has the wrong type
        """
        try:
            incoming = GatewayConfig.model_validate(changes)
        except ValidationError as e:
            raise MalformedRequest(f"Invalid configuration: {e.errors()[0]['msg']}") from e

        supplied = {name: getattr(incoming, name) for name in incoming.model_fields_set}
        if not supplied.get("api_key"):
            supplied.pop("api_key", None)

        def apply(state: GatewayState) -> GatewayConfig:
            state.config = state.config.model_copy(update=supplied)
            return state.config.model_copy()

        return await self.update(apply)

    async def set_model(self, model: str) -> GatewayConfig:
        def apply(state: GatewayState) -> GatewayConfig:
            state.config = state.config.model_copy(update={"current_model": model})
            return state.config.model_copy()

        return await self.update(apply)

    async def set_api_key(self, key: str) -> GatewayConfig:
        """
        Replace the upstream credential.

        Raises:
            MalformedRequest: If ``key`` is empty
        """
        if not key:
            raise MalformedRequest("API key must not be empty")

        def apply(state: GatewayState) -> GatewayConfig:
            state.config = state.config.model_copy(update={"api_key": key})
            return state.config.model_copy()

        return await self.update(apply)

    # -- statistics ---------------------------------------------------------

    async def record_request(self) -> None:
        await self.update(lambda state: state.stats.record_request())

    async def add_usage(
        self, prompt_tokens: int = 0, completion_tokens: int = 0, total_tokens: int = 0
    ) -> None:
        await self.update(
            lambda state: state.stats.add_usage(prompt_tokens, completion_tokens, total_tokens)
        )

    async def record_error(self, message: str, code: int) -> ErrorEntry:
        """Prepend an error entry, bump the error count and cap the log, atomically."""
        entry = await self.update(lambda state: state.stats.record_error(message, code))
        logger.warning(f"Recorded error ({code}): {message}")
        return entry

    async def reset_statistics(self) -> None:
        """Replace the statistics record with a fresh one."""

        def apply(state: GatewayState) -> None:
            state.stats = GatewayStats()

        await self.update(apply)
        logger.info("Statistics reset")
