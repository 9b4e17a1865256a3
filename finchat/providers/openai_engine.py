import json
import logging
from typing import Any, AsyncIterator

from openai import AsyncOpenAI

from finchat.providers.base import CompletionEngine, EngineEvent, EngineOptions
from finchat.types import Message, ReasoningPart, TextPart, ToolCallPart, ToolResultPart

logger = logging.getLogger(__name__)

LOCAL_PROVIDERS = {"ollama", "lmstudio"}


def _result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False)


def to_openai_messages(messages: list[Message], system: str) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    if system:
        out.append({"role": "system", "content": system})
    for message in messages:
        if message.role == "user":
            out.append({"role": "user", "content": message.text()})
            continue
        text = ""
        calls: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []

        def _flush() -> None:
            nonlocal text, calls, results
            if text or calls:
                entry: dict[str, Any] = {"role": "assistant", "content": text or None}
                if calls:
                    entry["tool_calls"] = calls
                out.append(entry)
            out.extend(results)
            text, calls, results = "", [], []

        for part in message.parts:
            if isinstance(part, ReasoningPart):
                continue
            if isinstance(part, ToolResultPart):
                results.append(
                    {"role": "tool", "tool_call_id": part.tool_call_id, "content": _result_content(part.result)}
                )
                continue
            if results:
                _flush()
            if isinstance(part, TextPart):
                text += part.text
            elif isinstance(part, ToolCallPart):
                calls.append(
                    {
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {"name": part.tool_name, "arguments": json.dumps(part.input or {})},
                    }
                )
        _flush()
    return out


class OpenAICompatibleEngine(CompletionEngine):
    """Chat-completions streaming against OpenAI, GLM, Ollama or LM Studio."""

    def __init__(self, *, provider: str, model: str, api_key: str, base_url: str | None = None, timeout_ms: int = 60000) -> None:
        super().__init__(model)
        self.provider = provider
        self._client = AsyncOpenAI(api_key=api_key or "not-needed", base_url=base_url, timeout=max(1.0, timeout_ms / 1000.0))

    def tool_definitions(self, registry: Any) -> list[dict[str, Any]]:
        return registry.openai_tools()

    def _request_kwargs(self, messages: list[Message], tools: list[dict[str, Any]], options: EngineOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, options.system),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools
        if self.provider in LOCAL_PROVIDERS:
            kwargs["extra_body"] = {"think": bool(options.reasoning)}
        elif self.provider == "openai":
            kwargs["reasoning_effort"] = "medium"
        if options.temperature is not None and self.provider != "openai":
            kwargs["temperature"] = options.temperature
        return kwargs

    async def generate(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        options: EngineOptions,
    ) -> AsyncIterator[EngineEvent]:
        stream = await self._client.chat.completions.create(**self._request_kwargs(messages, tools, options))
        pending: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        input_tokens = 0
        output_tokens = 0
        async for chunk in stream:
            usage = getattr(chunk, "usage", None)
            if usage is not None:
                input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
                output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if reasoning:
                yield EngineEvent(type="reasoning-delta", text=reasoning, model=self.model)
            if delta.content:
                yield EngineEvent(type="text-delta", text=delta.content, model=self.model)
            for call in delta.tool_calls or []:
                slot = pending.setdefault(call.index, {"id": "", "name": "", "arguments": ""})
                if call.id:
                    slot["id"] = call.id
                if call.function is not None:
                    slot["name"] += call.function.name or ""
                    slot["arguments"] += call.function.arguments or ""
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            slot = pending[index]
            try:
                tool_input: Any = json.loads(slot["arguments"] or "{}")
            except ValueError:
                logger.warning("Unparseable tool arguments tool=%s model=%s", slot["name"], self.model)
                tool_input = {"_raw": slot["arguments"]}
            yield EngineEvent(
                type="tool-call",
                tool_call_id=slot["id"] or f"call_{index}",
                tool_name=slot["name"],
                tool_input=tool_input,
                model=self.model,
            )
        yield EngineEvent(
            type="finish",
            finish_reason=finish_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.model,
        )
