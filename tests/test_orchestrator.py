import asyncio
import dataclasses
import uuid

from pydantic import BaseModel

from finchat.config import settings
from finchat.errors import AuthRequiredError, SessionNotFoundError
from finchat.metrics import MetricsTracker
from finchat.orchestrator import (
    ChatOrchestrator,
    TurnRequest,
    canonical_id,
    fallback_title,
    reconcile_messages,
)
from finchat.providers.base import CompletionEngine, EngineEvent, EngineOptions
from finchat.providers.selection import EngineSelection
from finchat.security import AuthContext
from finchat.storage import InMemoryStore
from finchat.tools import ToolSpec, build_registry
from finchat.types import Message, TextPart, ToolCallPart, ToolResultPart

AUTH = AuthContext(user_id="u1", auth_mode="none")
DEV = dataclasses.replace(settings, app_mode="development")


class ScriptedEngine(CompletionEngine):
    """Replays one list of events per model step."""

    provider = "fake"

    def __init__(self, steps, fail_with: Exception | None = None):
        super().__init__("fake-model")
        self.steps = list(steps)
        self.fail_with = fail_with
        self.seen: list[list[Message]] = []

    def tool_definitions(self, registry):
        return registry.anthropic_tools()

    async def generate(self, messages, tools, options: EngineOptions):
        self.seen.append(list(messages))
        if self.fail_with is not None:
            raise self.fail_with
        for event in self.steps.pop(0):
            yield event


def _selector(engine):
    async def select(config, prefs):
        return EngineSelection(provider="fake", model=engine.model, supports_reasoning=False, engine=engine)

    return select


def _user(text: str, msg_id: str = "client-1") -> Message:
    return Message(id=msg_id, role="user", parts=[TextPart(text=text)])


async def _run_turn(orch, request):
    handle = await orch.start_turn(request, AUTH)
    return [event async for event in handle.events()]


def _orchestrator(store, engine, config=DEV, *, metrics=None, registry=None):
    return ChatOrchestrator(
        store=store,
        registry=registry or build_registry(config),
        config=config,
        metrics=metrics or MetricsTracker(),
        selector=_selector(engine),
    )


def test_canonical_id_keeps_uuids_and_derives_stable_ids():
    valid = str(uuid.uuid4())
    assert canonical_id(valid, session_id="s", position=0) == valid
    derived = canonical_id("msg-abc", session_id="s", position=2)
    assert uuid.UUID(derived)
    assert derived == canonical_id("msg-abc", session_id="s", position=2)
    assert derived != canonical_id("msg-abc", session_id="s", position=3)


def test_reconcile_sets_processing_time_on_last_assistant_only():
    messages = [
        _user("hi"),
        Message(id="a1", role="assistant", parts=[TextPart(text="hello")]),
        _user("more", "client-2"),
        Message(id="a2", role="assistant", parts=[TextPart(text="sure")]),
    ]
    out = reconcile_messages("s1", messages, 1234)
    assert [m.processing_time_ms for m in out] == [None, None, None, 1234]
    assert all(uuid.UUID(m.id) for m in out)


def test_replace_twice_is_idempotent():
    store = InMemoryStore()
    session = store.create_session("u1")
    messages = reconcile_messages(session.id, [_user("q"), Message(id="x", role="assistant", parts=[])], 5)
    store.replace_messages(session.id, messages)
    first = store.get_messages(session.id)
    store.replace_messages(session.id, messages)
    second = store.get_messages(session.id)
    assert [m.id for m in first] == [m.id for m in second]
    assert len(second) == 2


def test_turn_streams_and_persists_history():
    store = InMemoryStore()
    session = store.create_session("u1")
    engine = ScriptedEngine([[EngineEvent(type="text-delta", text="Hello"), EngineEvent(type="text-delta", text=" there"),
                              EngineEvent(type="finish", input_tokens=10, output_tokens=3, model="fake-model")]])
    orch = _orchestrator(store, engine)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("Hi")])))

    assert [e.type for e in events] == ["text-delta", "text-delta", "finish"]
    finish = events[-1].data
    assert finish["usage"] == {"inputTokens": 10, "outputTokens": 3}
    stored = store.get_messages(session.id)
    assert [m.role for m in stored] == ["user", "assistant"]
    assert stored[1].text() == "Hello there"
    assert stored[1].processing_time_ms == finish["processingTimeMs"]
    assert stored[0].processing_time_ms is None


def test_tool_loop_records_call_and_result_parts():
    store = InMemoryStore()
    session = store.create_session("u1")
    chart_input = {
        "title": "AAPL",
        "type": "line",
        "dataSeries": [{"name": "AAPL", "data": [{"x": "2024-01-01", "y": 150.25}]}],
    }
    engine = ScriptedEngine(
        [
            [
                EngineEvent(type="tool-call", tool_call_id="t1", tool_name="createChart", tool_input=chart_input),
                EngineEvent(type="finish"),
            ],
            [EngineEvent(type="text-delta", text="Done"), EngineEvent(type="finish")],
        ]
    )
    orch = _orchestrator(store, engine)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("chart it")])))

    assert [e.type for e in events] == ["tool-call-start", "tool-result", "text-delta", "finish"]
    assert events[1].data["state"] == "succeeded"
    stored = store.get_messages(session.id)
    kinds = [type(p) for p in stored[-1].parts]
    assert kinds == [ToolCallPart, ToolResultPart, TextPart]
    chart_id = stored[-1].parts[1].result["chartId"]
    chart = store.get_chart(chart_id)
    assert chart.data_series[0].data[0].x == "2024-01-01"
    assert chart.data_series[0].data[0].y == 150.25
    assert chart.to_api()["dataSeries"] == chart_input["dataSeries"]
    assert events[1].data["result"]["dataSeries"] == chart_input["dataSeries"]


def test_user_message_survives_engine_failure():
    store = InMemoryStore()
    session = store.create_session("u1")
    engine = ScriptedEngine([], fail_with=RuntimeError("model does not support tools"))
    orch = _orchestrator(store, engine)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("Hi")])))

    assert [e.type for e in events] == ["error"]
    assert events[0].data["error"] == "MODEL_COMPATIBILITY_ERROR"
    assert events[0].data["compatibilityIssue"] == "tools"
    stored = store.get_messages(session.id)
    assert [m.role for m in stored] == ["user"]
    assert stored[0].text() == "Hi"


def test_missing_access_token_is_rejected_outside_development():
    store = InMemoryStore()
    session = store.create_session("u1")
    prod = dataclasses.replace(settings, app_mode="production")
    orch = _orchestrator(store, ScriptedEngine([]), config=prod)
    try:
        asyncio.run(orch.start_turn(TurnRequest(session_id=session.id, messages=[_user("Hi")]), AUTH))
    except AuthRequiredError as exc:
        assert exc.to_payload()["error"] == "AUTH_REQUIRED"
    else:
        raise AssertionError("expected AuthRequiredError")
    assert store.get_messages(session.id) == []


def test_foreign_session_is_not_found():
    store = InMemoryStore()
    session = store.create_session("someone-else")
    orch = _orchestrator(store, ScriptedEngine([]))
    try:
        asyncio.run(orch.start_turn(TurnRequest(session_id=session.id, messages=[_user("Hi")]), AUTH))
    except SessionNotFoundError:
        pass
    else:
        raise AssertionError("expected SessionNotFoundError")


def test_fallback_title_truncates():
    assert fallback_title("") == "New Chat"
    assert fallback_title("Short question") == "Short question"
    long = "x" * 80
    assert fallback_title(long) == "x" * 47 + "..."


def test_generate_title_uses_engine_text():
    store = InMemoryStore()
    engine = ScriptedEngine([[EngineEvent(type="text-delta", text='"Apple Q3 Earnings"'), EngineEvent(type="finish")]])
    orch = _orchestrator(store, engine)
    assert asyncio.run(orch.generate_title("How did Apple do in Q3?")) == "Apple Q3 Earnings"


class FlakyStore(InMemoryStore):
    """Fails the first ``failures`` calls to replace_messages."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.replace_calls = 0

    def replace_messages(self, session_id, messages):
        self.replace_calls += 1
        if self.replace_calls <= self.failures:
            raise RuntimeError("database unavailable")
        return super().replace_messages(session_id, messages)


def _hello_engine():
    return ScriptedEngine([[EngineEvent(type="text-delta", text="Hello"), EngineEvent(type="finish")]])


def test_early_save_failure_still_streams_to_finish():
    store = FlakyStore(failures=1)
    session = store.create_session("u1")
    metrics = MetricsTracker()
    orch = _orchestrator(store, _hello_engine(), metrics=metrics)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("Hi")])))

    assert [e.type for e in events] == ["text-delta", "finish"]
    assert store.replace_calls == 2
    assert metrics.persistence_failures == 1
    assert [m.role for m in store.get_messages(session.id)] == ["user", "assistant"]


def test_finish_save_failure_retries_and_still_finishes():
    store = FlakyStore(failures=10)
    session = store.create_session("u1")
    metrics = MetricsTracker()
    orch = _orchestrator(store, _hello_engine(), metrics=metrics)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("Hi")])))

    assert events[-1].type == "finish"
    assert store.replace_calls == 3
    assert metrics.persistence_failures == 2
    assert store.get_messages(session.id) == []


class _LookupArgs(BaseModel):
    symbol: str = "AAPL"


def test_slow_tool_does_not_reorder_stored_results():
    async def slow_lookup(args, ctx):
        await asyncio.sleep(0.2)
        return {"tool": "slow", "symbol": args.symbol}

    async def fast_lookup(args, ctx):
        return {"tool": "fast", "symbol": args.symbol}

    registry = build_registry(DEV)
    registry.register(ToolSpec(name="slowLookup", description="", args_model=_LookupArgs, executor=slow_lookup))
    registry.register(ToolSpec(name="fastLookup", description="", args_model=_LookupArgs, executor=fast_lookup))
    store = InMemoryStore()
    session = store.create_session("u1")
    engine = ScriptedEngine(
        [
            [
                EngineEvent(type="text-delta", text="Looking up"),
                EngineEvent(type="tool-call", tool_call_id="t1", tool_name="slowLookup", tool_input={}),
                EngineEvent(type="tool-call", tool_call_id="t2", tool_name="fastLookup", tool_input={}),
                EngineEvent(type="finish"),
            ],
            [EngineEvent(type="text-delta", text="Done"), EngineEvent(type="finish")],
        ]
    )
    orch = _orchestrator(store, engine, registry=registry)

    events = asyncio.run(_run_turn(orch, TurnRequest(session_id=session.id, messages=[_user("compare")])))

    assert [e.type for e in events] == [
        "text-delta",
        "tool-call-start",
        "tool-call-start",
        "tool-result",
        "tool-result",
        "text-delta",
        "finish",
    ]
    assert [e.data["toolCallId"] for e in events if e.type == "tool-result"] == ["t2", "t1"]

    parts = store.get_messages(session.id)[-1].parts
    assert [type(p) for p in parts] == [TextPart, ToolCallPart, ToolCallPart, ToolResultPart, ToolResultPart, TextPart]
    assert [p.tool_call_id for p in parts[3:5]] == ["t1", "t2"]
    assert parts[3].result == {"tool": "slow", "symbol": "AAPL"}
