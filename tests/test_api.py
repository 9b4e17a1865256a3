import asyncio
import dataclasses

from fastapi.testclient import TestClient

from finchat import main
from finchat.config import settings
from finchat.providers.base import CompletionEngine, EngineEvent
from finchat.providers.selection import EngineSelection
from finchat.storage import InMemoryStore
from finchat.tools import build_registry
from finchat.types import ChartConfig, CsvTable


class _EchoEngine(CompletionEngine):
    provider = "fake"

    def tool_definitions(self, registry):
        return []

    async def generate(self, messages, tools, options):
        yield EngineEvent(type="text-delta", text=f"echo: {messages[-1].text()}")
        yield EngineEvent(type="finish", input_tokens=1, output_tokens=1)


async def _select(config, prefs):
    engine = _EchoEngine("echo-model")
    return EngineSelection(provider="fake", model="echo-model", supports_reasoning=False, engine=engine)


def _client(app_mode="development", store=None):
    if store is None:
        store = InMemoryStore()
    config = dataclasses.replace(settings, app_mode=app_mode, auth_mode="none")
    main.configure(store_=store, registry_=build_registry(config), selector=_select, config=config)
    return TestClient(main.app), store


def test_session_crud():
    client, _ = _client()
    created = client.post("/api/chat/sessions", json={"title": "Tesla margins"}).json()["session"]
    assert created["title"] == "Tesla margins"

    listed = client.get("/api/chat/sessions").json()["sessions"]
    assert [s["id"] for s in listed] == [created["id"]]

    renamed = client.patch(f"/api/chat/sessions/{created['id']}", json={"title": "TSLA"}).json()["session"]
    assert renamed["title"] == "TSLA"

    detail = client.get(f"/api/chat/sessions/{created['id']}").json()
    assert detail["messages"] == []

    assert client.delete(f"/api/chat/sessions/{created['id']}").json() == {"success": True}
    assert client.get(f"/api/chat/sessions/{created['id']}").status_code == 404


def test_chat_streams_sse_and_persists():
    client, store = _client()
    session = store.create_session("local-user")
    resp = client.post(
        "/api/chat",
        json={"sessionId": session.id, "messages": [{"id": "tmp-1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}]},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert "event: text-delta" in resp.text
    assert "event: finish" in resp.text

    messages = client.get(f"/api/chat/sessions/{session.id}").json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["parts"][0]["text"] == "echo: hi"
    assert messages[1]["processing_time_ms"] is not None
    assert set(messages[0]) == {"id", "role", "parts", "createdAt", "processing_time_ms"}


def test_chat_requires_access_token_in_production():
    client, store = _client(app_mode="production")
    session = store.create_session("local-user")
    resp = client.post("/api/chat", json={"sessionId": session.id, "messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 401
    assert resp.json()["error"] == "AUTH_REQUIRED"


def test_chat_on_unknown_session_is_404():
    client, _ = _client()
    resp = client.post("/api/chat", json={"sessionId": "missing", "messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 404
    assert resp.json()["error"] == "SESSION_NOT_FOUND"


def test_artifact_endpoints():
    client, store = _client()
    assert client.get("/api/charts/nope").status_code == 404
    assert client.get("/api/csvs/nope").status_code == 404

    series = [{"name": "Rev", "data": [{"x": "2024", "y": 1.5}, {"x": "2025", "y": 2.0, "label": "est"}]}]
    chart = ChartConfig(chartType="bar", title="Rev", dataSeries=series)
    store.save_chart("c1", "local-user", None, chart)
    body = client.get("/api/charts/c1").json()
    assert body["chartType"] == "bar"
    assert body["dataSeries"] == series
    assert client.get("/api/charts/c1/image").headers["content-type"] == "image/png"
    assert "<svg" in client.get("/api/charts/c1/render").text

    table = CsvTable(title="T", headers=["a"], rows=[["1"]])
    store.save_csv(table, "local-user", None)
    assert client.get(f"/api/csvs/{table.id}").json()["rows"] == [["1"]]


def test_generate_pdf_validation():
    client, store = _client()
    assert client.post("/api/reports/generate-pdf", json={}).status_code == 400
    missing = client.post("/api/reports/generate-pdf", json={"sessionId": "nope"})
    assert missing.status_code == 404

    session = store.create_session("local-user", "Q3 Review")
    client.post(
        "/api/chat",
        json={"sessionId": session.id, "messages": [{"role": "user", "content": "summarize"}]},
    )
    resp = client.post("/api/reports/generate-pdf", json={"sessionId": session.id})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert 'filename="q3_review.pdf"' in resp.headers["content-disposition"]
    assert resp.content.startswith(b"%PDF")


def test_generate_title_falls_back_and_renames():
    client, store = _client()
    session = store.create_session("local-user")
    resp = client.post("/api/chat/generate-title", json={"message": "What moved NVDA?", "sessionId": session.id})
    assert resp.json()["title"] == "echo: What moved NVDA?"
    assert store.get_session(session.id, "local-user").title == "echo: What moved NVDA?"


class _LoopAwareStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.renamed_on_loop: bool | None = None

    def rename_session(self, session_id, user_id, title):
        try:
            asyncio.get_running_loop()
            self.renamed_on_loop = True
        except RuntimeError:
            self.renamed_on_loop = False
        return super().rename_session(session_id, user_id, title)


def test_generate_title_renames_off_the_event_loop():
    client, store = _client(store=_LoopAwareStore())
    session = store.create_session("local-user")
    client.post("/api/chat/generate-title", json={"message": "Rates outlook", "sessionId": session.id})
    assert store.renamed_on_loop is False
