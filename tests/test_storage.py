import json

import pytest

from finchat import db
from finchat.cache import BoundedCache
from finchat.storage import InMemoryStore, PostgresStore
from finchat.types import ChartConfig, Message, TextPart


def test_bounded_cache_evicts_least_recently_used():
    cache = BoundedCache[int](max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.stats.evictions == 1
    cache.clear()
    assert len(cache) == 0


def test_memory_store_scopes_sessions_by_owner():
    store = InMemoryStore()
    mine = store.create_session("u1", "Mine")
    store.create_session("u2", "Theirs")
    assert [s.title for s in store.list_sessions("u1")] == ["Mine"]
    assert store.get_session(mine.id, "u2") is None
    assert store.rename_session(mine.id, "u2", "hijack") is None
    assert store.delete_session(mine.id, "u2") is False


def test_delete_cascades_to_artifacts():
    store = InMemoryStore()
    session = store.create_session("u1")
    chart = ChartConfig(chartType="line", title="t", dataSeries=[{"name": "s", "data": [{"x": 1, "y": 2}]}])
    store.save_chart("c1", "u1", session.id, chart)
    assert store.delete_session(session.id, "u1")
    assert store.get_chart("c1") is None


def test_replace_messages_rejects_unknown_session():
    with pytest.raises(KeyError):
        InMemoryStore().replace_messages("missing", [])


def test_unreadable_rows_are_tolerated():
    store = InMemoryStore()
    store._charts["bad"] = {"chart_data": "{not json"}
    store._csvs["bad"] = {"headers": "[]", "rows": "oops"}
    assert store.get_chart("bad") is None
    assert store.get_csv("bad") is None


def test_postgres_replace_runs_in_one_transaction(monkeypatch):
    captured = {}

    def fake_execute_many(statements):
        captured["statements"] = list(statements)

    monkeypatch.setattr(db, "execute_many", fake_execute_many)
    messages = [
        Message(id="m1", role="user", parts=[TextPart(text="hi")]),
        Message(id="m2", role="assistant", parts=[TextPart(text="hello")], processing_time_ms=12),
    ]
    PostgresStore().replace_messages("s1", messages)

    statements = captured["statements"]
    assert statements[0] == ("DELETE FROM chat_messages WHERE session_id=%s", ("s1",))
    inserts = [params for _, params in statements[1:]]
    assert [(p[0], p[2], p[3]) for p in inserts] == [("m1", 0, "user"), ("m2", 1, "assistant")]
    assert json.loads(inserts[1][4]) == [{"type": "text", "text": "hello"}]
    assert inserts[1][5] == 12


def test_postgres_get_messages_parses_jsonb(monkeypatch):
    rows = [
        {"id": "m1", "role": "assistant", "content": [{"type": "text", "text": "ok"}], "processing_time_ms": 5, "created_at": None},
        {"id": "m2", "role": "user", "content": "not-a-list-json", "processing_time_ms": None, "created_at": None},
    ]
    monkeypatch.setattr(db, "query_all", lambda sql, params=None: rows)
    messages = PostgresStore().get_messages("s1")
    assert messages[0].text() == "ok"
    assert messages[0].processing_time_ms == 5
    assert messages[1].parts == []


class _FakeCursor:
    def __init__(self):
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))


def test_execute_many_uses_transaction_cursor(monkeypatch):
    cur = _FakeCursor()

    class _Ctx:
        def __enter__(self):
            return cur

        def __exit__(self, *exc):
            return False

    monkeypatch.setattr(db, "transaction_cursor", lambda: _Ctx())
    db.execute_many([("SELECT 1", ()), ("SELECT 2", ())])
    assert cur.executed == [("SELECT 1", ()), ("SELECT 2", ())]
