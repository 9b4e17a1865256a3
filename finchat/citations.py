"""Citation and artifact extraction over stored message parts.

Everything here is a pure function of its input: the live chat view and the
PDF renderer call the same code on the same stored parts and must arrive at the
same numbering and the same artifact placement.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from finchat.types import Citation, Message, TextPart, ToolResultPart

logger = logging.getLogger(__name__)

# "[1][2][3]" (adjacent run) or "[1, 2, 3]" (comma list inside one bracket).
MARKER_GROUP_RE = re.compile(r"((?:\[\d+\])+|\[\d+(?:\s*,\s*\d+)*\])")
_DIGITS_RE = re.compile(r"\d+")

ARTIFACT_RE = re.compile(
    r"!\[.*?\]\("
    r"(?:/api/charts/(?P<chart>[^/)\s]+)/image"
    r"|csv:(?P<csv>[a-f0-9-]+)"
    r"|/api/csvs/(?P<csv_path>[a-f0-9-]+))"
    r"\)"
)

CHART_PLACEHOLDER = "__CHART_{}__"
CSV_PLACEHOLDER = "__CSV_{}__"


@dataclass(frozen=True)
class ArtifactRef:
    kind: str  # chart | csv
    artifact_id: str

    @property
    def placeholder(self) -> str:
        template = CHART_PLACEHOLDER if self.kind == "chart" else CSV_PLACEHOLDER
        return template.format(self.artifact_id)


@dataclass
class Extraction:
    citations: dict[str, list[Citation]] = field(default_factory=dict)
    markers: list[str] = field(default_factory=list)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    next_ordinal: int = 1

    def sources(self) -> list[Citation]:
        return [c for group in self.citations.values() for c in group]

    def unbacked_markers(self) -> list[str]:
        return [m for m in self.markers if m not in self.citations]


def _group_markers(group: str) -> list[str]:
    return [f"[{int(d)}]" for d in _DIGITS_RE.findall(group)]


def parse_markers(text: str) -> list[str]:
    """Ordered, de-duplicated citation markers found in ``text``."""
    seen: dict[str, None] = {}
    for match in MARKER_GROUP_RE.finditer(text or ""):
        for marker in _group_markers(match.group(0)):
            seen.setdefault(marker, None)
    return list(seen)


def find_artifacts(text: str) -> list[ArtifactRef]:
    refs: list[ArtifactRef] = []
    for match in ARTIFACT_RE.finditer(text or ""):
        if match.group("chart"):
            refs.append(ArtifactRef("chart", match.group("chart")))
        else:
            refs.append(ArtifactRef("csv", match.group("csv") or match.group("csv_path")))
    return refs


def substitute_placeholders(text: str) -> str:
    """Replace every chart/CSV image reference with its positional placeholder token."""

    def _replace(match: re.Match[str]) -> str:
        if match.group("chart"):
            return CHART_PLACEHOLDER.format(match.group("chart"))
        return CSV_PLACEHOLDER.format(match.group("csv") or match.group("csv_path"))

    return ARTIFACT_RE.sub(_replace, text or "")


def tool_type_for(tool_name: str | None) -> str | None:
    if not tool_name:
        return None
    return "financial" if "financial" in tool_name.lower() else "web"


def _load_result(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    return raw if isinstance(raw, dict) else None


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _optional_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _citation_from_item(item: dict[str, Any], number: int, tool_name: str | None) -> Citation:
    authors = item.get("authors")
    return Citation(
        number=number,
        title=str(item.get("title") or f"Source {number}"),
        url=str(item.get("url") or ""),
        description=_optional_str(item.get("content") or item.get("summary") or item.get("description")),
        source=_optional_str(item.get("source")),
        date=_optional_str(item.get("date") or item.get("age")),
        authors=[str(a) for a in authors] if isinstance(authors, list) else None,
        doi=_optional_str(item.get("doi")),
        relevance_score=_optional_float(item.get("relevanceScore", item.get("relevance_score"))),
        tool_type=tool_type_for(tool_name),
    )


def extract(parts: Iterable[Any], *, start: int = 1) -> Extraction:
    """Derive citations, markers and artifact references from an ordered part list.

    Ordinals are handed out left to right over the nested ``results`` lists of
    tool-result parts, in stored part order, starting at ``start``. Sources are
    neither de-duplicated nor re-ranked. Tool results that do not parse are
    skipped.
    """
    out = Extraction(next_ordinal=start)
    seen_markers: dict[str, None] = {}
    for part in parts:
        if isinstance(part, TextPart):
            for marker in parse_markers(part.text):
                seen_markers.setdefault(marker, None)
            out.artifacts.extend(find_artifacts(part.text))
        elif isinstance(part, ToolResultPart):
            result = _load_result(part.result)
            if result is None:
                logger.debug("Skipping unparseable tool result tool=%s", part.tool_name)
                continue
            items = result.get("results")
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                number = out.next_ordinal
                out.citations.setdefault(f"[{number}]", []).append(_citation_from_item(item, number, part.tool_name))
                out.next_ordinal += 1
    out.markers = list(seen_markers)
    return out


def extract_messages(messages: Iterable[Message], *, role: str = "assistant") -> Extraction:
    """Report-scoped extraction: one ordinal sequence across every message with ``role``."""
    merged = Extraction()
    seen_markers: dict[str, None] = {}
    for message in messages:
        if message.role != role:
            continue
        part_out = extract(message.parts, start=merged.next_ordinal)
        merged.citations.update(part_out.citations)
        merged.artifacts.extend(part_out.artifacts)
        merged.next_ordinal = part_out.next_ordinal
        for marker in part_out.markers:
            seen_markers.setdefault(marker, None)
    merged.markers = list(seen_markers)
    return merged


def split_citation_segments(text: str, citations: dict[str, list[Citation]]) -> list[dict[str, Any]]:
    """Split text into plain and citation segments for rendering.

    A marker without a backing source stays in the text as plain characters.
    """
    segments: list[dict[str, Any]] = []

    def _push_text(value: str) -> None:
        if not value:
            return
        if segments and segments[-1]["type"] == "text":
            segments[-1]["text"] += value
        else:
            segments.append({"type": "text", "text": value})

    cursor = 0
    for match in MARKER_GROUP_RE.finditer(text or ""):
        _push_text(text[cursor : match.start()])
        cursor = match.end()
        markers = _group_markers(match.group(0))
        if not any(m in citations for m in markers):
            _push_text(match.group(0))
            continue
        backed: list[str] = []
        for marker in markers:
            if marker in citations:
                backed.append(marker)
                continue
            if backed:
                segments.append(_citation_segment(backed, citations))
                backed = []
            _push_text(marker)
        if backed:
            segments.append(_citation_segment(backed, citations))
    _push_text((text or "")[cursor:])
    return segments


def _citation_segment(markers: list[str], citations: dict[str, list[Citation]]) -> dict[str, Any]:
    return {
        "type": "citation",
        "markers": list(markers),
        "sources": [c.model_dump() for m in markers for c in citations[m]],
    }
