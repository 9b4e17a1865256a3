"""Core data models for sessions, message parts, artifacts and stream events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Message parts
# ---------------------------------------------------------------------------

class _Part(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TextPart(_Part):
    type: Literal["text"] = "text"
    text: str = ""


class ReasoningPart(_Part):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""


class ToolCallPart(_Part):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(default="", alias="toolCallId")
    tool_name: str = Field(default="", alias="toolName")
    input: Any = None


class ToolResultPart(_Part):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(default="", alias="toolCallId")
    tool_name: str = Field(default="", alias="toolName")
    result: Any = None


Part = Annotated[
    Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]

_PART_ADAPTER: TypeAdapter[Any] = TypeAdapter(Part)


def parse_parts(raw: Any) -> list[Any]:
    """Validate a raw part list, dropping entries of unknown or malformed shape."""
    if isinstance(raw, str):
        return [TextPart(text=raw)]
    if not isinstance(raw, list):
        return []
    parts: list[Any] = []
    for item in raw:
        try:
            parts.append(_PART_ADAPTER.validate_python(item))
        except ValidationError:
            continue
    return parts


def dump_parts(parts: list[Any]) -> list[dict[str, Any]]:
    return [p.model_dump(by_alias=True, exclude_none=True) for p in parts]


# ---------------------------------------------------------------------------
# Sessions and messages
# ---------------------------------------------------------------------------

class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_message_at: Optional[datetime] = None


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    role: Literal["user", "assistant"]
    parts: list[Part] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    processing_time_ms: Optional[int] = None

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "parts": dump_parts(self.parts),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "processing_time_ms": self.processing_time_ms,
        }


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------

ChartType = Literal["line", "bar", "area", "scatter", "quadrant"]


class DataPoint(BaseModel):
    x: Union[float, str]
    y: float
    size: Optional[float] = None
    label: Optional[str] = None


class DataSeries(BaseModel):
    name: str
    data: list[DataPoint]


class ChartConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chart_type: ChartType = Field(alias="chartType")
    title: str
    x_axis_label: str = Field(default="", alias="xAxisLabel")
    y_axis_label: str = Field(default="", alias="yAxisLabel")
    data_series: list[DataSeries] = Field(alias="dataSeries")
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude={"data_series"})
        payload["dataSeries"] = [series.model_dump(exclude_none=True) for series in self.data_series]
        return payload


class CsvTable(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: Optional[str] = None
    headers: list[str]
    rows: list[list[str]]
    created_at: datetime = Field(default_factory=utcnow)

    def column_mismatches(self) -> int:
        expected = len(self.headers)
        return sum(1 for row in self.rows if len(row) != expected)

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "headers": self.headers,
            "rows": self.rows,
            "createdAt": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Citations and stream events
# ---------------------------------------------------------------------------

class Citation(BaseModel):
    number: int
    title: str
    url: str = ""
    description: Optional[str] = None
    source: Optional[str] = None
    date: Optional[str] = None
    authors: Optional[list[str]] = None
    doi: Optional[str] = None
    relevance_score: Optional[float] = None
    tool_type: Optional[str] = None


EventType = Literal["text-delta", "tool-call-start", "tool-result", "reasoning-delta", "error", "finish"]


class StreamEvent(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
