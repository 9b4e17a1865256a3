import asyncio

import pytest

from finchat.cache import BoundedCache
from finchat.report.charts import chart_svg, render_chart_page
from finchat.report.rasterize import PillowChartRasterizer
from finchat.report.renderer import (
    ReportNotFoundError,
    ReportTimeoutError,
    _inline,
    _markup,
    _paragraph,
    _styles,
    collect_report,
    render_report,
    render_report_sync,
    safe_filename,
)
from finchat.report.tables import csv_to_markdown, parse_table
from finchat.storage import InMemoryStore
from finchat.types import ChartConfig, Citation, CsvTable, Message, TextPart, ToolResultPart

CHART = ChartConfig(
    chartType="line",
    title="AAPL <close>",
    xAxisLabel="Date",
    yAxisLabel="USD",
    dataSeries=[{"name": "AAPL", "data": [{"x": "2024-01-01", "y": 150.25}, {"x": "2024-01-02", "y": 152.0}]}],
    description="Daily close",
)


class _CountingRasterizer:
    def __init__(self):
        self.calls = 0

    def rasterize(self, chart):
        self.calls += 1
        return PillowChartRasterizer(scale=1).rasterize(chart)


class _BrokenRasterizer:
    def rasterize(self, chart):
        raise RuntimeError("browser crashed")


def _session_with_report(store, text, *, results=None):
    session = store.create_session("u1", "Apple Q3: Deep Dive")
    parts = [TextPart(text=text)]
    if results:
        parts.append(ToolResultPart(toolCallId="t1", toolName="webSearch", result={"results": results}))
    store.replace_messages(
        session.id,
        [
            Message(id="m1", role="user", parts=[TextPart(text="question")]),
            Message(id="m2", role="assistant", parts=parts, processing_time_ms=2500),
        ],
    )
    return session


def test_safe_filename():
    assert safe_filename("Apple Q3: Deep Dive") == "apple_q3__deep_dive"
    assert safe_filename("") == "report"
    assert len(safe_filename("a" * 80)) == 50


def test_missing_chart_still_renders_pdf():
    store = InMemoryStore()
    session = _session_with_report(store, "Intro [1]\n\n![Chart](/api/charts/does-not-exist/image)\n\nEnd.", results=[{"title": "Src", "url": "https://x"}])
    filename, pdf = render_report_sync(store, session.id, "u1", rasterizer=_CountingRasterizer(), cache=BoundedCache(max_size=4))
    assert filename == "apple_q3__deep_dive.pdf"
    assert pdf.startswith(b"%PDF")


def test_failed_rasterizer_leaves_empty_slot():
    store = InMemoryStore()
    store.save_chart("c1", "u1", None, CHART)
    session = _session_with_report(store, "![Chart](/api/charts/c1/image)")
    doc = collect_report(store, session.id, "u1", rasterizer=_BrokenRasterizer(), cache=BoundedCache(max_size=4))
    assert doc.chart_images == {}
    assert doc.markdown == "__CHART_c1__"


def test_report_collects_charts_tables_and_sources():
    store = InMemoryStore()
    store.save_chart("c1", "u1", None, CHART)
    table = CsvTable(id="0a1b-22", title="Revenue", headers=["Year", "Revenue"], rows=[["2024", "391"]])
    store.save_csv(table, "u1", None)
    session = _session_with_report(
        store,
        "Summary [1][2]\n\n![Chart](/api/charts/c1/image)\n\n![csv](csv:0a1b-22)\n\n![csv](csv:dead-beef)",
        results=[{"title": "One", "url": "https://one"}, {"title": "Two", "url": "https://two"}],
    )
    rasterizer = _CountingRasterizer()
    cache = BoundedCache(max_size=4)
    doc = collect_report(store, session.id, "u1", rasterizer=rasterizer, cache=cache)
    assert list(doc.chart_images) == ["c1"]
    assert doc.chart_images["c1"].startswith(b"\x89PNG")
    assert list(doc.csv_markdown) == ["0a1b-22"]
    assert [c.title for c in doc.sources()] == ["One", "Two"]
    assert doc.processing_time_ms == 2500

    collect_report(store, session.id, "u1", rasterizer=rasterizer, cache=cache)
    assert rasterizer.calls == 1

    _, pdf = render_report_sync(store, session.id, "u1", rasterizer=rasterizer, cache=cache)
    assert pdf.startswith(b"%PDF")


def test_missing_session_or_messages_is_not_found():
    store = InMemoryStore()
    with pytest.raises(ReportNotFoundError):
        collect_report(store, "nope", "u1", rasterizer=_CountingRasterizer(), cache=BoundedCache(max_size=1))
    empty = store.create_session("u1")
    with pytest.raises(ReportNotFoundError):
        collect_report(store, empty.id, "u1", rasterizer=_CountingRasterizer(), cache=BoundedCache(max_size=1))


def test_render_timeout(monkeypatch):
    import time

    store = InMemoryStore()
    session = _session_with_report(store, "text")

    def slow(*args, **kwargs):
        time.sleep(0.5)
        return "x.pdf", b""

    monkeypatch.setattr("finchat.report.renderer.render_report_sync", slow)
    with pytest.raises(ReportTimeoutError):
        asyncio.run(
            render_report(store, session.id, "u1", rasterizer=_CountingRasterizer(), cache=BoundedCache(max_size=1), timeout_ms=50)
        )


def test_chart_page_is_escaped_svg():
    page = render_chart_page(CHART)
    assert "AAPL &lt;close&gt;" in page
    assert '<svg width="1100" height="480"' in page
    assert page.count("<circle") == 2


def test_every_chart_type_draws():
    for chart_type in ("bar", "area", "scatter", "quadrant"):
        chart = CHART.model_copy(update={"chart_type": chart_type})
        assert "<svg" in chart_svg(chart)
        assert PillowChartRasterizer(scale=1).rasterize(chart).startswith(b"\x89PNG")


def test_csv_markdown_round_trips_through_table_parser():
    table = CsvTable(title="T", headers=["a", "b|c"], rows=[["1", "2"], ["3"]])
    lines = [line for line in csv_to_markdown(table).splitlines() if line.startswith("|")]
    assert parse_table(lines) == [["a", "b|c"], ["1", "2"], ["3", ""]]


def test_inline_markup_stays_balanced():
    assert _inline("***Key takeaway***") == "<b><i>Key takeaway</i></b>"
    assert 'href="https://x.com/a&quot;b"' in _inline('[filing](https://x.com/a"b)')
    cites = {"[1]": [Citation(number=1, title="Src")]}
    assert _markup("**Revenue rose 5% [1]**", cites) == (
        '<b>Revenue rose 5% <super><font color="#2563eb">[1]</font></super></b>'
    )


def test_unbalanced_markup_falls_back_to_plain_text():
    para = _paragraph("**a *b** c*", _styles()["body"], {})
    assert para.getPlainText() == "**a *b** c*"


def test_emphasis_and_quoted_urls_do_not_break_the_report():
    store = InMemoryStore()
    session = _session_with_report(
        store,
        '***Key takeaway***: revenue grew.\n\n**Revenue rose 5% [1]**\n\nSee [filing](https://x.com/a"b).',
        results=[{"title": "Src", "url": 'https://one.example/"q"'}],
    )
    _, pdf = render_report_sync(store, session.id, "u1", rasterizer=_CountingRasterizer(), cache=BoundedCache(max_size=1))
    assert pdf.startswith(b"%PDF")
