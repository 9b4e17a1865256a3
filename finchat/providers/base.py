"""Completion engine interface shared by every LLM backend."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from finchat.types import Message

EngineEventType = Literal["text-delta", "reasoning-delta", "tool-call", "finish"]


@dataclass
class EngineEvent:
    type: EngineEventType
    text: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    tool_input: Any = None
    finish_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None


@dataclass
class EngineOptions:
    system: str = ""
    reasoning: bool = False
    max_output_tokens: int = 4000
    temperature: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class CompletionEngine(abc.ABC):
    """One provider/model pair. ``generate`` runs a single model step over the conversation."""

    provider: str = "base"

    def __init__(self, model: str) -> None:
        self.model = model

    @abc.abstractmethod
    def generate(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        options: EngineOptions,
    ) -> AsyncIterator[EngineEvent]:
        """Yield text/reasoning deltas and tool calls, then exactly one ``finish`` event."""
        ...

    @abc.abstractmethod
    def tool_definitions(self, registry: Any) -> list[dict[str, Any]]:
        """Render the tool registry in this provider's wire format."""
        ...
