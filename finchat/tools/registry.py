import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from finchat.storage import Store

logger = logging.getLogger(__name__)


class ToolCallState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    REJECTED = "rejected"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ToolContext:
    user_id: str | None
    session_id: str | None
    store: Store
    access_token: str | None = None


Executor = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    executor: Executor

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.args_model.model_json_schema()


@dataclass
class ToolOutcome:
    name: str
    state: ToolCallState = ToolCallState.PENDING
    output: Any = None
    error: str | None = None
    transitions: list[ToolCallState] = field(default_factory=lambda: [ToolCallState.PENDING])

    def move(self, state: ToolCallState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def ok(self) -> bool:
        return self.state == ToolCallState.SUCCEEDED


class ToolRegistry:
    def __init__(self, *, timeout_ms: int = 30000) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._timeout_s = max(0.1, timeout_ms / 1000.0)

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def anthropic_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "input_schema": spec.input_schema}
            for spec in self._tools.values()
        ]

    def openai_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": spec.name, "description": spec.description, "parameters": spec.input_schema},
            }
            for spec in self._tools.values()
        ]

    async def invoke(self, name: str, raw_input: Any, ctx: ToolContext) -> ToolOutcome:
        outcome = ToolOutcome(name=name)
        outcome.move(ToolCallState.VALIDATING)
        spec = self._tools.get(name)
        if spec is None:
            outcome.move(ToolCallState.REJECTED)
            outcome.error = f"Tool not allowed: {name}"
            outcome.output = {"error": outcome.error}
            return outcome
        try:
            args = spec.args_model.model_validate(raw_input if raw_input is not None else {})
        except ValidationError as exc:
            outcome.move(ToolCallState.REJECTED)
            outcome.error = f"Invalid arguments for {name}: {exc}"
            outcome.output = {"error": outcome.error}
            return outcome

        outcome.move(ToolCallState.EXECUTING)
        try:
            outcome.output = await asyncio.wait_for(spec.executor(args, ctx), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            outcome.move(ToolCallState.FAILED)
            outcome.error = f"Tool {name} timed out after {self._timeout_s:.1f}s"
            outcome.output = {"error": outcome.error}
            return outcome
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            outcome.move(ToolCallState.FAILED)
            outcome.error = str(exc) or exc.__class__.__name__
            outcome.output = {"error": outcome.error}
            return outcome
        outcome.move(ToolCallState.SUCCEEDED)
        return outcome
