import asyncio
import logging
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from finchat.tools.registry import ToolContext, ToolSpec
from finchat.types import ChartConfig, CsvTable, DataSeries, new_id

logger = logging.getLogger(__name__)

CHART_DESCRIPTION = (
    "Create a chart for financial data. Types: line, bar, area (time series or categories), "
    "scatter (positioning/correlation, points may carry size and label) and quadrant (2x2 matrix). "
    "After creating a chart, embed it in your answer with ![chart title](/api/charts/<chartId>/image)."
)

CSV_DESCRIPTION = (
    "Create a downloadable CSV table. Every row must have exactly as many cells as there are headers. "
    "After creating it, embed the table in your answer with ![csv](csv:<csvId>)."
)


class CreateChartArgs(BaseModel):
    title: str = Field(min_length=1)
    type: Literal["line", "bar", "area", "scatter", "quadrant"]
    xAxisLabel: str = ""
    yAxisLabel: str = ""
    dataSeries: list[DataSeries] = Field(min_length=1)
    description: Optional[str] = None


class CreateCsvArgs(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    headers: list[str] = Field(min_length=1)
    rows: list[list[Union[str, int, float]]]


def _axis_range(values: list[float]) -> str:
    return f"{min(values):.1f}-{max(values):.1f}"


def chart_metadata(chart_type: str, series: list[DataSeries]) -> dict[str, Any]:
    date_range: dict[str, Any] | None = None
    if chart_type in {"scatter", "quadrant"}:
        xs: list[float] = []
        for s in series:
            for point in s.data:
                try:
                    xs.append(float(point.x))
                except ValueError:
                    continue
        ys = [point.y for s in series for point in s.data]
        if xs and ys:
            date_range = {"start": f"X: {_axis_range(xs)}", "end": f"Y: {_axis_range(ys)}"}
    elif series and series[0].data:
        date_range = {"start": series[0].data[0].x, "end": series[0].data[-1].x}
    return {
        "totalSeries": len(series),
        "totalDataPoints": sum(len(s.data) for s in series),
        "dateRange": date_range,
    }


async def create_chart(args: CreateChartArgs, ctx: ToolContext) -> dict[str, Any]:
    chart = ChartConfig(
        chartType=args.type,
        title=args.title,
        xAxisLabel=args.xAxisLabel,
        yAxisLabel=args.yAxisLabel,
        dataSeries=args.dataSeries,
        description=args.description,
        metadata=chart_metadata(args.type, args.dataSeries),
    )
    chart_id: str | None = None
    if not ctx.user_id:
        logger.warning("createChart without user id; chart will not be saved")
    else:
        chart_id = new_id()
        try:
            await asyncio.to_thread(ctx.store.save_chart, chart_id, ctx.user_id, ctx.session_id, chart)
        except Exception as exc:
            logger.error("Saving chart failed session_id=%s error=%s", ctx.session_id, exc)
            chart_id = None

    out = chart.to_api()
    if chart_id:
        out["chartId"] = chart_id
        out["imageUrl"] = f"/api/charts/{chart_id}/image"
    return out


def _csv_cell(cell: str) -> str:
    if "," in cell or '"' in cell or "\n" in cell:
        return '"' + cell.replace('"', '""') + '"'
    return cell


def csv_content(headers: list[str], rows: list[list[str]]) -> str:
    lines = [",".join(headers)]
    lines.extend(",".join(_csv_cell(c) for c in row) for row in rows)
    return "\n".join(lines)


async def create_csv(args: CreateCsvArgs, ctx: ToolContext) -> dict[str, Any]:
    headers = list(args.headers)
    rows = [[str(c) for c in row] for row in args.rows]
    expected = len(headers)
    invalid = [row for row in rows if len(row) != expected]
    if invalid:
        return {
            "error": True,
            "message": (
                f"❌ **CSV Validation Error**: All rows must have {expected} columns to match headers. "
                f"Found {len(invalid)} invalid row(s). Please regenerate the CSV with matching column counts."
            ),
            "title": args.title,
            "headers": headers,
            "expectedColumns": expected,
            "invalidRowCount": len(invalid),
        }

    table = CsvTable(title=args.title, description=args.description, headers=headers, rows=rows)
    csv_id: str | None = None
    if not ctx.user_id:
        logger.warning("createCSV without user id; CSV will not be saved")
    else:
        try:
            await asyncio.to_thread(ctx.store.save_csv, table, ctx.user_id, ctx.session_id)
            csv_id = table.id
        except Exception as exc:
            logger.error("Saving CSV failed session_id=%s error=%s", ctx.session_id, exc)

    out: dict[str, Any] = {
        "title": args.title,
        "description": args.description,
        "headers": headers,
        "rows": rows,
        "csvContent": csv_content(headers, rows),
        "rowCount": len(rows),
        "columnCount": expected,
    }
    if csv_id:
        out["csvId"] = csv_id
        out["csvUrl"] = f"/api/csvs/{csv_id}"
        out["_instructions"] = (
            "IMPORTANT: Include this EXACT line in your markdown response to display the table:\n\n"
            f"![csv](csv:{csv_id})\n\n"
            "Do not write [View Table] or any other text - use the image syntax above."
        )
    return out


ARTIFACT_TOOLS = [
    ToolSpec(name="createChart", description=CHART_DESCRIPTION, args_model=CreateChartArgs, executor=create_chart),
    ToolSpec(name="createCSV", description=CSV_DESCRIPTION, args_model=CreateCsvArgs, executor=create_csv),
]
