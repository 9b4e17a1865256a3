import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from finchat.providers.base import CompletionEngine, EngineOptions
from finchat.tools.registry import ToolContext, ToolOutcome, ToolRegistry
from finchat.types import Message, ReasoningPart, StreamEvent, TextPart, ToolCallPart, ToolResultPart, new_id


@dataclass
class TurnState:
    message_id: str = field(default_factory=new_id)
    parts: list[Any] = field(default_factory=list)
    model: str | None = None
    usage_in: int = 0
    usage_out: int = 0
    steps: int = 0
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    def assistant_message(self) -> Message:
        return Message(id=self.message_id, role="assistant", parts=list(self.parts))

    def append_text(self, text: str) -> None:
        if self.parts and isinstance(self.parts[-1], TextPart):
            self.parts[-1].text += text
        else:
            self.parts.append(TextPart(text=text))

    def append_reasoning(self, text: str) -> None:
        if self.parts and isinstance(self.parts[-1], ReasoningPart):
            self.parts[-1].text += text
        else:
            self.parts.append(ReasoningPart(text=text))


async def _invoke(registry: ToolRegistry, call: ToolCallPart, ctx: ToolContext) -> tuple[ToolCallPart, ToolOutcome]:
    return call, await registry.invoke(call.tool_name, call.input, ctx)


async def run_agent_stream(
    *,
    engine: CompletionEngine,
    registry: ToolRegistry,
    history: list[Message],
    options: EngineOptions,
    ctx: ToolContext,
    state: TurnState,
    max_iters: int = 8,
) -> AsyncIterator[StreamEvent]:
    """Drive the model/tool loop, yielding stream events and recording parts on ``state``.

    Tool calls from one model step run concurrently. Their ``tool-result`` events
    are yielded as each finishes, but the result parts are recorded in call
    order so the stored part sequence does not depend on timing.
    """
    tools = engine.tool_definitions(registry)
    for _ in range(max(1, max_iters)):
        state.steps += 1
        calls: list[ToolCallPart] = []
        async for event in engine.generate(history + [state.assistant_message()], tools, options):
            if event.type == "text-delta":
                state.append_text(event.text)
                yield StreamEvent(type="text-delta", data={"id": state.message_id, "delta": event.text})
            elif event.type == "reasoning-delta":
                state.append_reasoning(event.text)
                yield StreamEvent(type="reasoning-delta", data={"id": state.message_id, "delta": event.text})
            elif event.type == "tool-call":
                call = ToolCallPart(
                    toolCallId=event.tool_call_id or new_id(),
                    toolName=event.tool_name,
                    input=event.tool_input,
                )
                calls.append(call)
                state.parts.append(call)
                state.tool_calls.append({"id": call.tool_call_id, "name": call.tool_name, "input": call.input})
                yield StreamEvent(
                    type="tool-call-start",
                    data={"toolCallId": call.tool_call_id, "toolName": call.tool_name, "input": call.input},
                )
            elif event.type == "finish":
                state.model = event.model or state.model
                state.usage_in += event.input_tokens
                state.usage_out += event.output_tokens

        if not calls:
            return

        outcomes: dict[str, ToolOutcome] = {}
        for next_done in asyncio.as_completed([_invoke(registry, c, ctx) for c in calls]):
            call, outcome = await next_done
            outcomes[call.tool_call_id] = outcome
            yield StreamEvent(
                type="tool-result",
                data={
                    "toolCallId": call.tool_call_id,
                    "toolName": call.tool_name,
                    "state": outcome.state.value,
                    "result": outcome.output,
                },
            )
        for call in calls:
            outcome = outcomes[call.tool_call_id]
            state.parts.append(ToolResultPart(toolCallId=call.tool_call_id, toolName=call.tool_name, result=outcome.output))
