import json
import logging
from datetime import datetime
from threading import Lock
from typing import Any, Protocol

from pydantic import ValidationError

from finchat import db
from finchat.config import settings
from finchat.types import ChartConfig, CsvTable, Message, Session, dump_parts, parse_parts, utcnow

logger = logging.getLogger(__name__)


class Store(Protocol):
    def create_session(self, user_id: str, title: str = "New Chat") -> Session:
        ...

    def list_sessions(self, user_id: str) -> list[Session]:
        ...

    def get_session(self, session_id: str, user_id: str) -> Session | None:
        ...

    def rename_session(self, session_id: str, user_id: str, title: str) -> Session | None:
        ...

    def delete_session(self, session_id: str, user_id: str) -> bool:
        ...

    def touch_session(self, session_id: str, at: datetime | None = None) -> None:
        ...

    def get_messages(self, session_id: str) -> list[Message]:
        ...

    def replace_messages(self, session_id: str, messages: list[Message]) -> None:
        ...

    def save_chart(self, chart_id: str, user_id: str, session_id: str | None, chart: ChartConfig) -> None:
        ...

    def get_chart(self, chart_id: str) -> ChartConfig | None:
        ...

    def save_csv(self, table: CsvTable, user_id: str, session_id: str | None) -> None:
        ...

    def get_csv(self, csv_id: str) -> CsvTable | None:
        ...


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (bytes, str)):
        try:
            return json.loads(raw)
        except ValueError:
            return default
    return raw


def _message_from_row(row: dict[str, Any]) -> Message:
    parts = parse_parts(_load_json(row.get("content"), []))
    return Message(
        id=str(row["id"]),
        role=row["role"],
        parts=parts,
        created_at=row.get("created_at"),
        processing_time_ms=row.get("processing_time_ms"),
    )


def _chart_from_payload(chart_id: str, raw: Any) -> ChartConfig | None:
    payload = _load_json(raw, None)
    if not isinstance(payload, dict):
        logger.warning("Chart payload unreadable chart_id=%s", chart_id)
        return None
    if "chartType" not in payload and "type" in payload:
        payload = {**payload, "chartType": payload["type"]}
    try:
        return ChartConfig.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Chart payload invalid chart_id=%s error=%s", chart_id, exc)
        return None


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._charts: dict[str, dict[str, Any]] = {}
        self._csvs: dict[str, dict[str, Any]] = {}

    def create_session(self, user_id: str, title: str = "New Chat") -> Session:
        session = Session(user_id=user_id, title=title or "New Chat")
        with self._lock:
            self._sessions[session.id] = session
            self._messages[session.id] = []
        return session.model_copy()

    def list_sessions(self, user_id: str) -> list[Session]:
        with self._lock:
            owned = [s.model_copy() for s in self._sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str, user_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                return None
            return session.model_copy()

    def rename_session(self, session_id: str, user_id: str, title: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                return None
            session.title = title
            session.updated_at = utcnow()
            return session.model_copy()

    def delete_session(self, session_id: str, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                return False
            del self._sessions[session_id]
            self._messages.pop(session_id, None)
            for bucket in (self._charts, self._csvs):
                for key in [k for k, v in bucket.items() if v.get("session_id") == session_id]:
                    del bucket[key]
            return True

    def touch_session(self, session_id: str, at: datetime | None = None) -> None:
        ts = at or utcnow()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_message_at = ts
                session.updated_at = ts

    def get_messages(self, session_id: str) -> list[Message]:
        with self._lock:
            rows = list(self._messages.get(session_id, []))
        return [_message_from_row(r) for r in rows]

    def replace_messages(self, session_id: str, messages: list[Message]) -> None:
        now = utcnow()
        rows = [
            {
                "id": m.id,
                "role": m.role,
                "content": json.dumps(dump_parts(m.parts), ensure_ascii=False),
                "created_at": m.created_at or now,
                "processing_time_ms": m.processing_time_ms,
            }
            for m in messages
        ]
        with self._lock:
            if session_id not in self._sessions:
                raise KeyError(f"Unknown session: {session_id}")
            self._messages[session_id] = rows

    def save_chart(self, chart_id: str, user_id: str, session_id: str | None, chart: ChartConfig) -> None:
        with self._lock:
            self._charts[chart_id] = {
                "user_id": user_id,
                "session_id": session_id,
                "chart_data": json.dumps(chart.to_api(), ensure_ascii=False),
            }

    def get_chart(self, chart_id: str) -> ChartConfig | None:
        with self._lock:
            row = self._charts.get(chart_id)
        if row is None:
            return None
        return _chart_from_payload(chart_id, row.get("chart_data"))

    def save_csv(self, table: CsvTable, user_id: str, session_id: str | None) -> None:
        with self._lock:
            self._csvs[table.id] = {
                "user_id": user_id,
                "session_id": session_id,
                "title": table.title,
                "description": table.description,
                "headers": json.dumps(table.headers, ensure_ascii=False),
                "rows": json.dumps(table.rows, ensure_ascii=False),
                "created_at": table.created_at,
            }

    def get_csv(self, csv_id: str) -> CsvTable | None:
        with self._lock:
            row = self._csvs.get(csv_id)
        if row is None:
            return None
        return _csv_from_row(csv_id, row)


def _csv_from_row(csv_id: str, row: dict[str, Any]) -> CsvTable | None:
    headers = _load_json(row.get("headers"), None)
    rows = _load_json(row.get("rows"), None)
    if not isinstance(headers, list) or not isinstance(rows, list):
        logger.warning("CSV payload unreadable csv_id=%s", csv_id)
        return None
    try:
        return CsvTable(
            id=csv_id,
            title=row.get("title") or "Table",
            description=row.get("description"),
            headers=[str(h) for h in headers],
            rows=[[("" if c is None else str(c)) for c in r] for r in rows if isinstance(r, list)],
            created_at=row.get("created_at") or utcnow(),
        )
    except ValidationError as exc:
        logger.warning("CSV payload invalid csv_id=%s error=%s", csv_id, exc)
        return None


def _session_from_row(row: dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        title=row.get("title") or "New Chat",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_message_at=row.get("last_message_at"),
    )


class PostgresStore:
    def create_session(self, user_id: str, title: str = "New Chat") -> Session:
        session = Session(user_id=user_id, title=title or "New Chat")
        db.execute(
            """
            INSERT INTO chat_sessions (id, user_id, title, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (session.id, session.user_id, session.title, session.created_at, session.updated_at),
        )
        return session

    def list_sessions(self, user_id: str) -> list[Session]:
        rows = db.query_all(
            "SELECT * FROM chat_sessions WHERE user_id=%s ORDER BY updated_at DESC",
            (user_id,),
        )
        return [_session_from_row(r) for r in rows]

    def get_session(self, session_id: str, user_id: str) -> Session | None:
        row = db.query_one("SELECT * FROM chat_sessions WHERE id=%s AND user_id=%s", (session_id, user_id))
        return _session_from_row(row) if row else None

    def rename_session(self, session_id: str, user_id: str, title: str) -> Session | None:
        db.execute(
            "UPDATE chat_sessions SET title=%s, updated_at=NOW() WHERE id=%s AND user_id=%s",
            (title, session_id, user_id),
        )
        return self.get_session(session_id, user_id)

    def delete_session(self, session_id: str, user_id: str) -> bool:
        row = db.query_one(
            "DELETE FROM chat_sessions WHERE id=%s AND user_id=%s RETURNING id",
            (session_id, user_id),
        )
        return bool(row)

    def touch_session(self, session_id: str, at: datetime | None = None) -> None:
        ts = at or utcnow()
        db.execute(
            "UPDATE chat_sessions SET last_message_at=%s, updated_at=%s WHERE id=%s",
            (ts, ts, session_id),
        )

    def get_messages(self, session_id: str) -> list[Message]:
        rows = db.query_all(
            """
            SELECT id, role, content, processing_time_ms, created_at
            FROM chat_messages
            WHERE session_id=%s
            ORDER BY position ASC, created_at ASC
            """,
            (session_id,),
        )
        return [_message_from_row(r) for r in rows]

    def replace_messages(self, session_id: str, messages: list[Message]) -> None:
        now = utcnow()
        statements: list[tuple[str, tuple]] = [("DELETE FROM chat_messages WHERE session_id=%s", (session_id,))]
        for position, m in enumerate(messages):
            statements.append(
                (
                    """
                    INSERT INTO chat_messages (id, session_id, position, role, content, processing_time_ms, created_at)
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s)
                    """,
                    (
                        m.id,
                        session_id,
                        position,
                        m.role,
                        json.dumps(dump_parts(m.parts), ensure_ascii=False),
                        m.processing_time_ms,
                        m.created_at or now,
                    ),
                )
            )
        db.execute_many(statements)

    def save_chart(self, chart_id: str, user_id: str, session_id: str | None, chart: ChartConfig) -> None:
        db.execute(
            "INSERT INTO charts (id, user_id, session_id, chart_data) VALUES (%s, %s, %s, %s::jsonb)",
            (chart_id, user_id, session_id, json.dumps(chart.to_api(), ensure_ascii=False)),
        )

    def get_chart(self, chart_id: str) -> ChartConfig | None:
        row = db.query_one("SELECT chart_data FROM charts WHERE id=%s", (chart_id,))
        if not row:
            return None
        return _chart_from_payload(chart_id, row.get("chart_data"))

    def save_csv(self, table: CsvTable, user_id: str, session_id: str | None) -> None:
        db.execute(
            """
            INSERT INTO csvs (id, user_id, session_id, title, description, headers, rows, created_at)
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
            """,
            (
                table.id,
                user_id,
                session_id,
                table.title,
                table.description,
                json.dumps(table.headers, ensure_ascii=False),
                json.dumps(table.rows, ensure_ascii=False),
                table.created_at,
            ),
        )

    def get_csv(self, csv_id: str) -> CsvTable | None:
        row = db.query_one("SELECT * FROM csvs WHERE id=%s", (csv_id,))
        if not row:
            return None
        return _csv_from_row(csv_id, row)


def build_store() -> Store:
    if settings.store_backend == "postgres":
        db.ensure_schema()
        return PostgresStore()
    return InMemoryStore()
