"""Session to PDF report rendering.

The renderer reads a session's stored assistant messages, numbers sources with
the same extractor the chat view uses, swaps chart and CSV references for
placeholders, resolves them to images and tables, and lays the result out on
A4 pages with a fixed header and footer.
"""

from __future__ import annotations

import asyncio
import html
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from reportlab.lib.colors import HexColor
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    Image,
    ListFlowable,
    ListItem,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from finchat.cache import BoundedCache
from finchat.citations import extract_messages, split_citation_segments, substitute_placeholders
from finchat.errors import ChatError
from finchat.report.charts import HEIGHT, WIDTH
from finchat.report.rasterize import ChartRasterizer
from finchat.report.tables import csv_to_markdown, is_table_line, parse_table
from finchat.storage import Store
from finchat.types import Citation, TextPart, utcnow

logger = logging.getLogger(__name__)

ChartCache = BoundedCache[bytes]

DEFAULT_TITLE = "Financial Analysis Report"
BRAND = "finchat"
CHART_TOKEN_RE = re.compile(r"__CHART_([A-Za-z0-9-]+)__")
CSV_TOKEN_RE = re.compile(r"__CSV_([A-Za-z0-9-]+)__")
_BOLD_ITALIC_RE = re.compile(r"\*\*\*(.+?)\*\*\*")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?![*\w])")
_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_NUMBERED_RE = re.compile(r"^\d+[.)]\s+")

INK = HexColor("#111827")
MUTED = HexColor("#6b7280")
RULE = HexColor("#e5e7eb")


class ReportNotFoundError(ChatError):
    code = "REPORT_NOT_FOUND"
    status_code = 404


class ReportTimeoutError(ChatError):
    code = "REPORT_TIMEOUT"
    status_code = 504


@dataclass
class ReportDocument:
    title: str
    markdown: str
    citations: dict[str, list[Citation]] = field(default_factory=dict)
    chart_images: dict[str, bytes] = field(default_factory=dict)
    csv_markdown: dict[str, str] = field(default_factory=dict)
    processing_time_ms: int = 0
    generated_at: datetime = field(default_factory=utcnow)

    def sources(self) -> list[Citation]:
        return [c for group in self.citations.values() for c in group]


def safe_filename(title: str | None) -> str:
    name = re.sub(r"[^a-z0-9]", "_", title or "", flags=re.IGNORECASE).lower()[:50]
    return name or "report"


def chart_png(chart_id: str, store: Store, rasterizer: ChartRasterizer, cache: ChartCache) -> bytes | None:
    cached = cache.get(chart_id)
    if cached is not None:
        return cached
    chart = store.get_chart(chart_id)
    if chart is None:
        logger.warning("Chart missing or unreadable chart_id=%s; leaving its slot empty", chart_id)
        return None
    try:
        png = rasterizer.rasterize(chart)
    except Exception as exc:
        logger.warning("Chart rasterization failed chart_id=%s error=%s", chart_id, exc)
        return None
    cache.set(chart_id, png)
    return png


def collect_report(
    store: Store,
    session_id: str,
    user_id: str,
    *,
    rasterizer: ChartRasterizer,
    cache: ChartCache,
) -> ReportDocument:
    session = store.get_session(session_id, user_id)
    if session is None:
        raise ReportNotFoundError("Session not found")
    messages = store.get_messages(session_id)
    if not messages:
        raise ReportNotFoundError("No messages found in session")

    assistant = [m for m in messages if m.role == "assistant"]
    texts = [p.text for m in assistant for p in m.parts if isinstance(p, TextPart) and p.text]
    extraction = extract_messages(assistant)
    doc = ReportDocument(
        title=session.title or DEFAULT_TITLE,
        markdown=substitute_placeholders("\n\n".join(texts)),
        citations=extraction.citations,
        processing_time_ms=sum(m.processing_time_ms or 0 for m in assistant),
    )

    for ref in extraction.artifacts:
        if ref.kind == "chart":
            if ref.artifact_id in doc.chart_images:
                continue
            png = chart_png(ref.artifact_id, store, rasterizer, cache)
            if png:
                doc.chart_images[ref.artifact_id] = png
        elif ref.artifact_id not in doc.csv_markdown:
            table = store.get_csv(ref.artifact_id)
            if table is None or not table.headers:
                logger.warning("CSV missing or headerless csv_id=%s; dropping placeholder", ref.artifact_id)
                continue
            doc.csv_markdown[ref.artifact_id] = csv_to_markdown(table)

    logger.info(
        "Collected report session_id=%s chars=%s citations=%s charts=%s csvs=%s",
        session_id,
        len(doc.markdown),
        len(doc.sources()),
        len(doc.chart_images),
        len(doc.csv_markdown),
    )
    return doc


def _escape_para(s: str) -> str:
    return (s or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _href(url: str) -> str:
    return html.escape(html.unescape(url), quote=True)


def _inline(text: str) -> str:
    text = _escape_para(text)
    text = _LINK_RE.sub(lambda m: f'<a href="{_href(m.group(2))}" color="#2563eb">{m.group(1)}</a>', text)
    text = _BOLD_ITALIC_RE.sub(r"<b><i>\1</i></b>", text)
    text = _BOLD_RE.sub(r"<b>\1</b>", text)
    return _ITALIC_RE.sub(r"<i>\1</i>", text)


def _markup(text: str, citations: dict[str, list[Citation]]) -> str:
    # Emphasis may span citation markers, so format the whole line first.
    out: list[str] = []
    for segment in split_citation_segments(_inline(text), citations):
        if segment["type"] == "text":
            out.append(segment["text"])
        else:
            label = "".join(segment["markers"])
            out.append(f'<super><font color="#2563eb">{label}</font></super>')
    return "".join(out)


def _paragraph(text: str, style: ParagraphStyle, citations: dict[str, list[Citation]]) -> Paragraph:
    try:
        return Paragraph(_markup(text, citations), style)
    except ValueError as exc:
        logger.warning("Rendering paragraph as plain text: %s", exc)
        return Paragraph(_escape_para(text), style)


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("ReportTitle", parent=base["Title"], alignment=TA_LEFT, textColor=INK, spaceAfter=6),
        "meta": ParagraphStyle("Meta", parent=base["BodyText"], fontSize=9, leading=12, textColor=MUTED, spaceAfter=14),
        "h1": ParagraphStyle("H1", parent=base["Heading1"], textColor=INK, spaceBefore=14, spaceAfter=8),
        "h2": ParagraphStyle("H2", parent=base["Heading2"], textColor=INK, spaceBefore=14, spaceAfter=8),
        "h3": ParagraphStyle("H3", parent=base["Heading3"], textColor=INK, spaceBefore=10, spaceAfter=6),
        "body": ParagraphStyle("Body", parent=base["BodyText"], fontSize=10.5, leading=14, textColor=INK, spaceAfter=6),
        "cell": ParagraphStyle("Cell", parent=base["BodyText"], fontSize=8.5, leading=11, textColor=INK),
        "source": ParagraphStyle("Source", parent=base["BodyText"], fontSize=9, leading=12, textColor=HexColor("#374151"), spaceAfter=6),
    }


def _table(rows: list[list[str]], styles: dict[str, ParagraphStyle], width: float) -> Table | None:
    if not rows or not rows[0]:
        return None
    cols = len(rows[0])
    data = [[_paragraph(cell, styles["cell"], {}) for cell in row] for row in rows]
    table = Table(data, colWidths=[width / cols] * cols, repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), HexColor("#f3f4f6")),
                ("GRID", (0, 0), (-1, -1), 0.5, RULE),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("TOPPADDING", (0, 0), (-1, -1), 4),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
            ]
        )
    )
    return table


def _chart_image(png: bytes, width: float) -> Image:
    return Image(io.BytesIO(png), width=width, height=width * HEIGHT / WIDTH)


def body_flowables(doc: ReportDocument, styles: dict[str, ParagraphStyle], width: float) -> list[Any]:
    """Markdown-ish layout: headings, bullets, numbered items, pipe tables, bold/italic/links, chart slots."""
    markdown = CSV_TOKEN_RE.sub(lambda m: "\n\n" + doc.csv_markdown.get(m.group(1), "") + "\n\n", doc.markdown)
    elements: list[Any] = []
    bullets: list[ListItem] = []
    numbered = False
    table_lines: list[str] = []

    def flush_bullets() -> None:
        nonlocal bullets
        if bullets:
            kind = "1" if numbered else "bullet"
            elements.append(ListFlowable(bullets, bulletType=kind, leftIndent=14))
            elements.append(Spacer(1, 6))
            bullets = []

    def flush_table() -> None:
        nonlocal table_lines
        if table_lines:
            table = _table(parse_table(table_lines), styles, width)
            if table is not None:
                elements.append(table)
                elements.append(Spacer(1, 8))
            table_lines = []

    for raw in markdown.splitlines():
        line = raw.strip()
        if is_table_line(line):
            flush_bullets()
            table_lines.append(line)
            continue
        flush_table()

        if not line:
            flush_bullets()
            elements.append(Spacer(1, 6))
            continue

        if CHART_TOKEN_RE.search(line):
            flush_bullets()
            pieces = CHART_TOKEN_RE.split(line)
            for index, piece in enumerate(pieces):
                if index % 2 == 1:
                    png = doc.chart_images.get(piece)
                    if png:
                        elements.append(Spacer(1, 6))
                        elements.append(_chart_image(png, width))
                        elements.append(Spacer(1, 6))
                elif piece.strip():
                    elements.append(_paragraph(piece.strip(), styles["body"], doc.citations))
            continue

        if line.startswith("#"):
            flush_bullets()
            level = len(line) - len(line.lstrip("#"))
            style = styles["h1"] if level == 1 else styles["h2"] if level == 2 else styles["h3"]
            elements.append(_paragraph(line.lstrip("#").strip(), style, doc.citations))
            continue

        if line.startswith(("- ", "* ", "• ")) or _NUMBERED_RE.match(line):
            is_numbered = bool(_NUMBERED_RE.match(line))
            if bullets and is_numbered != numbered:
                flush_bullets()
            numbered = is_numbered
            text = _NUMBERED_RE.sub("", line, count=1) if is_numbered else line[2:]
            bullets.append(ListItem(_paragraph(text.strip(), styles["body"], doc.citations)))
            continue

        flush_bullets()
        elements.append(_paragraph(line, styles["body"], doc.citations))

    flush_bullets()
    flush_table()
    return elements


def source_flowables(doc: ReportDocument, styles: dict[str, ParagraphStyle]) -> list[Any]:
    sources = doc.sources()
    if not sources:
        return []
    elements: list[Any] = [Spacer(1, 12), Paragraph("Sources", styles["h2"])]
    for citation in sources:
        details = [d for d in (citation.source, citation.date) if d]
        line = f"<b>[{citation.number}]</b> {_escape_para(citation.title)}"
        if details:
            line += f" <font color='#6b7280'>({_escape_para(', '.join(details))})</font>"
        if citation.url:
            line += f'<br/><a href="{html.escape(citation.url, quote=True)}" color="#2563eb">{_escape_para(citation.url)}</a>'
        elements.append(Paragraph(line, styles["source"]))
    return elements


def _canvas_for(title: str) -> type[canvas.Canvas]:
    class _ReportCanvas(canvas.Canvas):
        """Defers page chrome until the page count is known."""

        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, **kwargs)
            self._saved_pages: list[dict[str, Any]] = []

        def showPage(self) -> None:
            self._saved_pages.append(dict(self.__dict__))
            self._startPage()

        def save(self) -> None:
            total = len(self._saved_pages)
            for state in self._saved_pages:
                self.__dict__.update(state)
                self._draw_chrome(total)
                super().showPage()
            super().save()

        def _draw_chrome(self, total: int) -> None:
            page_width, page_height = self._pagesize
            self.saveState()
            self.setFont("Helvetica-Bold", 9)
            self.setFillColor(INK)
            self.drawString(2 * cm, page_height - 1.3 * cm, title[:90])
            self.setStrokeColor(RULE)
            self.line(2 * cm, page_height - 1.5 * cm, page_width - 2 * cm, page_height - 1.5 * cm)
            self.line(2 * cm, 1.8 * cm, page_width - 2 * cm, 1.8 * cm)
            self.setFont("Helvetica", 8)
            self.setFillColor(MUTED)
            self.drawCentredString(
                page_width / 2,
                1.2 * cm,
                f"{BRAND}    CONFIDENTIAL    Page {self._pageNumber} of {total}",
            )
            self.restoreState()

    return _ReportCanvas


def build_pdf(doc: ReportDocument) -> bytes:
    buffer = io.BytesIO()
    template = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=2 * cm,
        leftMargin=2 * cm,
        topMargin=2 * cm,
        bottomMargin=3 * cm,
        title=doc.title,
        author=BRAND,
    )
    styles = _styles()
    meta = f"<b>Generated:</b> {doc.generated_at.strftime('%Y-%m-%d %H:%M UTC')}"
    if doc.processing_time_ms:
        meta += f" &nbsp;&nbsp; <b>Analysis time:</b> {doc.processing_time_ms / 1000:.1f}s"
    elements: list[Any] = [Paragraph(_escape_para(doc.title), styles["title"]), Paragraph(meta, styles["meta"])]
    elements += body_flowables(doc, styles, template.width)
    elements += source_flowables(doc, styles)
    template.build(elements, canvasmaker=_canvas_for(doc.title))
    return buffer.getvalue()


def render_report_sync(
    store: Store,
    session_id: str,
    user_id: str,
    *,
    rasterizer: ChartRasterizer,
    cache: ChartCache,
) -> tuple[str, bytes]:
    doc = collect_report(store, session_id, user_id, rasterizer=rasterizer, cache=cache)
    return f"{safe_filename(doc.title)}.pdf", build_pdf(doc)


async def render_report(
    store: Store,
    session_id: str,
    user_id: str,
    *,
    rasterizer: ChartRasterizer,
    cache: ChartCache,
    timeout_ms: int,
) -> tuple[str, bytes]:
    """Render a session report as ``(filename, pdf_bytes)`` within ``timeout_ms``."""
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(
                render_report_sync,
                store,
                session_id,
                user_id,
                rasterizer=rasterizer,
                cache=cache,
            ),
            timeout=max(0.001, timeout_ms / 1000.0),
        )
    except TimeoutError as exc:
        raise ReportTimeoutError(f"Report generation exceeded {timeout_ms} ms") from exc
