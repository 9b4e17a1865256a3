"""Conversation turn lifecycle: early user-message save, streaming, finish reconciliation."""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from finchat.agent.runtime import TurnState, run_agent_stream
from finchat.config import AppConfig
from finchat.errors import AuthRequiredError, InvalidRequestError, SessionNotFoundError, classify_engine_error
from finchat.logging import log_json
from finchat.metrics import MetricsTracker
from finchat.providers.base import EngineOptions
from finchat.providers.selection import EngineSelection, ProviderPreferences, select_engine
from finchat.security import AuthContext
from finchat.storage import Store
from finchat.tools.registry import ToolContext, ToolRegistry
from finchat.types import Message, StreamEvent, TextPart, utcnow

logger = logging.getLogger(__name__)

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_ID_NAMESPACE = uuid.UUID("6f1f1c2e-8a43-4f7e-9a55-3f8a3c2d9b10")

SYSTEM_PROMPT = (
    "You are a financial research assistant. Use the available tools to fetch market data, search the web "
    "and SEC filings, run calculations, and create charts or CSV tables.\n"
    "Cite search results inline with their numbers, e.g. [1] or [1][2].\n"
    "Embed charts with ![title](/api/charts/<chartId>/image) and tables with ![csv](csv:<csvId>).\n"
    "Run at most {max_parallel} tool calls in parallel."
)

TITLE_PROMPT = (
    "Write a concise title (max 50 characters) for a financial research chat that starts with the user "
    "message below. Reply with the title only, no quotes."
)

EngineSelector = Callable[[AppConfig, ProviderPreferences], Awaitable[EngineSelection]]


def canonical_id(raw_id: str | None, *, session_id: str, position: int) -> str:
    """Reuse a valid UUID; otherwise derive a stable UUID from the session, position and raw id."""
    if raw_id and UUID_RE.match(raw_id):
        return raw_id.lower()
    return str(uuid.uuid5(_ID_NAMESPACE, f"{session_id}:{position}:{raw_id or ''}"))


def reconcile_messages(session_id: str, messages: list[Message], processing_time_ms: int | None) -> list[Message]:
    """Canonicalize ids and attach the turn duration to the final assistant message only."""
    out: list[Message] = []
    last = len(messages) - 1
    for position, message in enumerate(messages):
        update: dict[str, Any] = {"id": canonical_id(message.id, session_id=session_id, position=position)}
        if position == last and message.role == "assistant" and processing_time_ms is not None:
            update["processing_time_ms"] = processing_time_ms
        out.append(message.model_copy(update=update))
    return out


def fallback_title(message: str) -> str:
    text = " ".join((message or "").split())
    if not text:
        return "New Chat"
    return text if len(text) <= 50 else text[:47] + "..."


@dataclass
class TurnRequest:
    session_id: str | None
    messages: list[Message]
    access_token: str | None = None
    prefs: ProviderPreferences = field(default_factory=ProviderPreferences)


@dataclass
class TurnHandle:
    session_id: str | None
    selection: EngineSelection
    _queue: asyncio.Queue
    task: asyncio.Task

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class ChatOrchestrator:
    def __init__(
        self,
        *,
        store: Store,
        registry: ToolRegistry,
        config: AppConfig,
        metrics: MetricsTracker,
        claude_model: str | None = None,
        selector: EngineSelector | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._config = config
        self._metrics = metrics
        self._claude_model = claude_model
        self._selector = selector
        self._tasks: set[asyncio.Task] = set()

    async def _select(self, prefs: ProviderPreferences) -> EngineSelection:
        if self._selector is not None:
            return await self._selector(self._config, prefs)
        return await select_engine(self._config, prefs, claude_model=self._claude_model)

    async def _persist(self, session_id: str, messages: list[Message], *, attempts: int = 1) -> bool:
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self._store.replace_messages, session_id, messages)
                await asyncio.to_thread(self._store.touch_session, session_id, utcnow())
                return True
            except Exception as exc:
                logger.warning(
                    "Persisting messages failed session_id=%s attempt=%s/%s error=%s",
                    session_id,
                    attempt,
                    attempts,
                    exc,
                )
        self._metrics.persistence_failures += 1
        return False

    async def _fill_from_store(self, session_id: str, prior: list[Message]) -> list[Message]:
        """Restore stored timing fields the client did not echo back."""
        try:
            stored = await asyncio.to_thread(self._store.get_messages, session_id)
        except Exception as exc:
            logger.warning("Could not load stored messages session_id=%s error=%s", session_id, exc)
            return prior
        by_id = {m.id: m for m in stored}
        out: list[Message] = []
        for position, message in enumerate(prior):
            known = by_id.get(message.id) or by_id.get(canonical_id(message.id, session_id=session_id, position=position))
            update: dict[str, Any] = {}
            if known is not None:
                if message.processing_time_ms is None and known.processing_time_ms is not None:
                    update["processing_time_ms"] = known.processing_time_ms
                if message.created_at is None and known.created_at is not None:
                    update["created_at"] = known.created_at
            out.append(message.model_copy(update=update) if update else message)
        return out

    async def start_turn(self, request: TurnRequest, auth: AuthContext) -> TurnHandle:
        if not request.messages or request.messages[-1].role != "user":
            raise InvalidRequestError("The last message of a turn must be a user message.")

        if not self._config.is_development and not request.access_token:
            raise AuthRequiredError("Sign in to continue. A delegated access token is required to start a chat turn.")

        session_id = request.session_id
        if session_id:
            session = await asyncio.to_thread(self._store.get_session, session_id, auth.user_id)
            if session is None:
                raise SessionNotFoundError("Session not found")

        prior = request.messages[:-1]
        if session_id and prior:
            prior = await self._fill_from_store(session_id, prior)
        incoming = request.messages[-1]
        user_message = Message(id=str(uuid.uuid4()), role="user", parts=list(incoming.parts), created_at=utcnow())
        history = prior + [user_message]

        if session_id:
            # Durable before generation; a storage failure must not block the turn.
            saved = await self._persist(session_id, reconcile_messages(session_id, history, None))
            if not saved:
                logger.error("User message not persisted before generation session_id=%s", session_id)

        selection = await self._select(request.prefs)
        queue: asyncio.Queue = asyncio.Queue()
        ctx = ToolContext(
            user_id=auth.user_id,
            session_id=session_id,
            store=self._store,
            access_token=request.access_token,
        )
        task = asyncio.create_task(self._drive(session_id, history, selection, ctx, queue))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return TurnHandle(session_id=session_id, selection=selection, _queue=queue, task=task)

    async def _drive(
        self,
        session_id: str | None,
        history: list[Message],
        selection: EngineSelection,
        ctx: ToolContext,
        queue: asyncio.Queue,
    ) -> None:
        started = time.perf_counter()
        state = TurnState()
        options = EngineOptions(
            system=SYSTEM_PROMPT.format(max_parallel=self._config.tools.max_parallel_calls),
            reasoning=selection.supports_reasoning,
            max_output_tokens=self._config.anthropic.max_output_tokens,
        )
        terminal: StreamEvent
        failed = False
        try:
            async for event in run_agent_stream(
                engine=selection.engine,
                registry=self._registry,
                history=history,
                options=options,
                ctx=ctx,
                state=state,
                max_iters=self._config.tools.max_iters,
            ):
                await queue.put(event)
        except Exception as exc:
            failed = True
            error = classify_engine_error(exc)
            logger.error("Chat turn failed session_id=%s provider=%s error=%s", session_id, selection.provider, exc)
            terminal = StreamEvent(type="error", data=error.to_payload())

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if not failed:
            if session_id:
                final = reconcile_messages(session_id, history + [state.assistant_message()], elapsed_ms)
                if not await self._persist(session_id, final, attempts=2):
                    logger.error("Finished turn not persisted session_id=%s; content was already streamed", session_id)
            terminal = StreamEvent(
                type="finish",
                data={
                    "messageId": state.message_id,
                    "model": state.model or selection.model,
                    "provider": selection.provider,
                    "processingTimeMs": elapsed_ms,
                    "usage": {"inputTokens": state.usage_in, "outputTokens": state.usage_out},
                },
            )

        self._metrics.record_turn(
            total_ms=elapsed_ms,
            llm_ms=elapsed_ms,
            tokens_in=state.usage_in,
            tokens_out=state.usage_out,
            tool_calls=len(state.tool_calls),
            error=failed,
        )
        log_json(
            logger,
            {
                "session_id": session_id,
                "user_id": ctx.user_id,
                "provider": selection.provider,
                "model": state.model or selection.model,
                "steps": state.steps,
                "tool_calls": [c["name"] for c in state.tool_calls],
                "tokens_in": state.usage_in,
                "tokens_out": state.usage_out,
                "latency_ms": elapsed_ms,
                "error": failed,
            },
        )
        await queue.put(terminal)
        await queue.put(None)

    async def generate_title(self, message: str, prefs: ProviderPreferences | None = None) -> str:
        text = (message or "").strip()
        if not text:
            return "New Chat"
        try:
            selection = await self._select(prefs or ProviderPreferences(local_enabled=False))
            chunks: list[str] = []
            async for event in selection.engine.generate(
                [Message(role="user", parts=[TextPart(text=text[:2000])])],
                [],
                EngineOptions(system=TITLE_PROMPT, max_output_tokens=60),
            ):
                if event.type == "text-delta":
                    chunks.append(event.text)
            title = " ".join("".join(chunks).split()).strip("\"'")
        except Exception as exc:
            logger.warning("Title generation failed, using fallback: %s", exc)
            return fallback_title(text)
        if not title:
            return fallback_title(text)
        return title[:50]
