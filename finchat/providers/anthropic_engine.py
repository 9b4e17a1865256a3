import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator

from anthropic import Anthropic, AsyncAnthropic

from finchat.providers.base import CompletionEngine, EngineEvent, EngineOptions
from finchat.types import Message, ReasoningPart, TextPart, ToolCallPart, ToolResultPart

logger = logging.getLogger(__name__)

THINKING_BUDGET_TOKENS = 2048


def _result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Flatten stored messages into alternating Anthropic user/assistant turns.

    Tool results recorded inside an assistant message become a following user
    turn of ``tool_result`` blocks. Reasoning parts are not replayed.
    """
    out: list[dict[str, Any]] = []

    def _append(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})

    for message in messages:
        if message.role == "user":
            _append("user", [{"type": "text", "text": message.text() or " "}])
            continue
        assistant_blocks: list[dict[str, Any]] = []
        result_blocks: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, ReasoningPart):
                continue
            if isinstance(part, ToolResultPart):
                _append("assistant", assistant_blocks)
                assistant_blocks = []
                result_blocks.append(
                    {"type": "tool_result", "tool_use_id": part.tool_call_id, "content": _result_content(part.result)}
                )
                continue
            if result_blocks:
                _append("user", result_blocks)
                result_blocks = []
            if isinstance(part, TextPart) and part.text:
                assistant_blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolCallPart):
                assistant_blocks.append(
                    {"type": "tool_use", "id": part.tool_call_id, "name": part.tool_name, "input": part.input or {}}
                )
        _append("assistant", assistant_blocks)
        _append("user", result_blocks)
    return out


class AnthropicEngine(CompletionEngine):
    provider = "anthropic"

    def __init__(self, api_key: str, model: str, temperature: float = 0.2, timeout_ms: int = 60000) -> None:
        super().__init__(model)
        self._async = AsyncAnthropic(api_key=api_key)
        self._temperature = temperature
        self._timeout_s = max(1.0, timeout_ms / 1000.0)

    def tool_definitions(self, registry: Any) -> list[dict[str, Any]]:
        return registry.anthropic_tools()

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        msg = str(exc).lower()
        return any(token in msg for token in ["429", "500", "503", "529", "rate limit", "overloaded"])

    @staticmethod
    def _request_id(exc: Exception) -> str | None:
        rid = getattr(exc, "request_id", None)
        if rid:
            return str(rid)
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            return body.get("request_id")
        return None

    def _request_kwargs(self, messages: list[Message], tools: list[dict[str, Any]], options: EngineOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "system": options.system,
            "messages": to_anthropic_messages(messages),
            "max_tokens": options.max_output_tokens,
        }
        if tools:
            kwargs["tools"] = tools
        if options.reasoning:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
            kwargs["max_tokens"] = max(options.max_output_tokens, THINKING_BUDGET_TOKENS + 1024)
        else:
            kwargs["temperature"] = options.temperature if options.temperature is not None else self._temperature
        return kwargs

    async def generate(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        options: EngineOptions,
    ) -> AsyncIterator[EngineEvent]:
        kwargs = self._request_kwargs(messages, tools, options)
        backoff = 0.6
        for attempt in range(3):
            emitted = False
            try:
                async with asyncio.timeout(self._timeout_s):
                    async with self._async.messages.stream(**kwargs) as stream:
                        async for event in stream:
                            if getattr(event, "type", "") != "content_block_delta":
                                continue
                            delta = event.delta
                            dtype = getattr(delta, "type", "")
                            if dtype == "text_delta" and delta.text:
                                emitted = True
                                yield EngineEvent(type="text-delta", text=delta.text, model=self.model)
                            elif dtype == "thinking_delta" and delta.thinking:
                                emitted = True
                                yield EngineEvent(type="reasoning-delta", text=delta.thinking, model=self.model)
                        final = await stream.get_final_message()
                for block in final.content:
                    if getattr(block, "type", "") == "tool_use":
                        yield EngineEvent(
                            type="tool-call",
                            tool_call_id=block.id,
                            tool_name=block.name,
                            tool_input=block.input,
                            model=self.model,
                        )
                usage = getattr(final, "usage", None)
                yield EngineEvent(
                    type="finish",
                    finish_reason=getattr(final, "stop_reason", None),
                    input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                    output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
                    model=self.model,
                )
                return
            except Exception as exc:
                logger.warning(
                    "Claude stream failed model=%s attempt=%s request_id=%s error=%s",
                    self.model,
                    attempt + 1,
                    self._request_id(exc),
                    exc,
                )
                if emitted or not self._is_retryable(exc) or attempt == 2:
                    raise
                await asyncio.sleep(backoff + random.uniform(0, 0.35))
                backoff *= 2


def select_claude_model(api_key: str, configured: list[str]) -> str:
    """Pick the first configured model the account can see, falling back to the first configured."""
    configured = [m.strip() for m in configured if m and m.strip()]
    try:
        page = Anthropic(api_key=api_key).models.list(limit=200)
        available = {m.id for m in page.data if getattr(m, "id", None)}
    except Exception as exc:
        logger.warning("Could not list Anthropic models: %s", exc)
        return configured[0]
    for model in configured:
        if model in available:
            return model
    if available:
        return sorted(available)[0]
    return configured[0]
