"""Chart geometry shared by the SVG render page and the PNG rasterizer."""

from __future__ import annotations

import html
from dataclasses import dataclass, field

from finchat.types import ChartConfig, DataPoint

WIDTH = 1100
HEIGHT = 480
PADDING = {"top": 40, "right": 60, "bottom": 60, "left": 80}
PALETTE = ["#3b82f6", "#10b981", "#f59e0b", "#ef4444", "#8b5cf6", "#ec4899"]
GRID_LINES = 5
LEGEND_ITEM_WIDTH = 200


def color_for(index: int) -> str:
    return PALETTE[index % len(PALETTE)]


def _numeric(value: float | str) -> float | None:
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class ChartGeometry:
    chart: ChartConfig
    x_labels: list[str] = field(default_factory=list)
    min_y: float = 0.0
    max_y: float = 1.0
    min_x: float = 0.0
    max_x: float = 1.0

    @property
    def plot_width(self) -> float:
        return WIDTH - PADDING["left"] - PADDING["right"]

    @property
    def plot_height(self) -> float:
        return HEIGHT - PADDING["top"] - PADDING["bottom"]

    @property
    def baseline(self) -> float:
        return PADDING["top"] + self.plot_height

    @classmethod
    def from_chart(cls, chart: ChartConfig) -> "ChartGeometry":
        geo = cls(chart=chart)
        ys: list[float] = []
        xs: list[float] = []
        for series in chart.data_series:
            for point in series.data:
                ys.append(point.y)
                label = str(point.x)
                if label not in geo.x_labels:
                    geo.x_labels.append(label)
                x = _numeric(point.x)
                if x is not None:
                    xs.append(x)
        if ys:
            geo.max_y = max(ys)
            geo.min_y = min(min(ys), 0.0)
        if geo.max_y == geo.min_y:
            geo.max_y = geo.min_y + 1.0
        if xs:
            geo.min_x, geo.max_x = min(xs), max(xs)
        if geo.max_x == geo.min_x:
            geo.max_x = geo.min_x + 1.0
        return geo

    def y_at(self, value: float) -> float:
        return self.baseline - (value - self.min_y) * self.plot_height / (self.max_y - self.min_y)

    def x_at_index(self, index: int) -> float:
        if len(self.x_labels) <= 1:
            return PADDING["left"] + self.plot_width / 2
        return PADDING["left"] + index / (len(self.x_labels) - 1) * self.plot_width

    def x_for_point(self, point: DataPoint) -> float:
        """Numeric x values are placed on a linear scale, categorical ones by label order."""
        x = _numeric(point.x)
        if self.chart.chart_type in ("scatter", "quadrant") and x is not None:
            return PADDING["left"] + (x - self.min_x) * self.plot_width / (self.max_x - self.min_x)
        return self.x_at_index(self.x_labels.index(str(point.x)))

    def grid_ys(self) -> list[float]:
        return [PADDING["top"] + self.plot_height / GRID_LINES * i for i in range(GRID_LINES + 1)]

    def y_ticks(self) -> list[tuple[float, str]]:
        span = self.max_y - self.min_y
        ticks = []
        for i, y in enumerate(self.grid_ys()):
            value = self.min_y + span / GRID_LINES * (GRID_LINES - i)
            ticks.append((y, f"{value:.0f}"))
        return ticks

    def bars(self) -> list[tuple[int, float, float, float, float]]:
        """(series index, x, y, width, height) for each grouped bar."""
        series_count = max(1, len(self.chart.data_series))
        slots = len(self.x_labels) * series_count + len(self.x_labels)
        bar_width = self.plot_width / max(1, slots)
        group_width = bar_width * series_count
        out = []
        for x_index, label in enumerate(self.x_labels):
            for s_index, series in enumerate(self.chart.data_series):
                point = next((p for p in series.data if str(p.x) == label), None)
                if point is None:
                    continue
                top = self.y_at(point.y)
                x = PADDING["left"] + x_index * (group_width + bar_width) + s_index * bar_width
                out.append((s_index, x, min(top, self.baseline), bar_width * 0.9, abs(self.baseline - top)))
        return out

    def series_points(self, s_index: int) -> list[tuple[float, float, DataPoint]]:
        series = self.chart.data_series[s_index]
        if self.chart.chart_type in ("scatter", "quadrant"):
            return [(self.x_for_point(p), self.y_at(p.y), p) for p in series.data]
        points = []
        for x_index, label in enumerate(self.x_labels):
            point = next((p for p in series.data if str(p.x) == label), None)
            if point is not None:
                points.append((self.x_at_index(x_index), self.y_at(point.y), point))
        return points

    def legend_origin(self) -> float:
        return (WIDTH - len(self.chart.data_series) * LEGEND_ITEM_WIDTH) / 2


def _fmt(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def chart_svg(chart: ChartConfig) -> str:
    geo = ChartGeometry.from_chart(chart)
    left, top = PADDING["left"], PADDING["top"]
    right = left + geo.plot_width
    elements: list[str] = []

    for y in geo.grid_ys():
        elements.append(
            f'<line x1="{left}" y1="{_fmt(y)}" x2="{_fmt(right)}" y2="{_fmt(y)}" stroke="#e5e7eb" stroke-dasharray="3,3"/>'
        )
    elements.append(f'<line x1="{left}" y1="{top}" x2="{left}" y2="{_fmt(geo.baseline)}" stroke="#333" stroke-width="2"/>')
    elements.append(
        f'<line x1="{left}" y1="{_fmt(geo.baseline)}" x2="{_fmt(right)}" y2="{_fmt(geo.baseline)}" stroke="#333" stroke-width="2"/>'
    )

    if chart.chart_type == "bar":
        for s_index, x, y, w, h in geo.bars():
            elements.append(
                f'<rect x="{_fmt(x)}" y="{_fmt(y)}" width="{_fmt(w)}" height="{_fmt(h)}" '
                f'fill="{color_for(s_index)}" rx="6" ry="6"/>'
            )
    elif chart.chart_type in ("line", "area"):
        for s_index in range(len(chart.data_series)):
            points = geo.series_points(s_index)
            if not points:
                continue
            color = color_for(s_index)
            path = "M " + " L ".join(f"{_fmt(x)},{_fmt(y)}" for x, y, _ in points)
            if chart.chart_type == "area":
                area = f"{path} L {_fmt(points[-1][0])},{_fmt(geo.baseline)} L {_fmt(points[0][0])},{_fmt(geo.baseline)} Z"
                elements.append(f'<path d="{area}" fill="{color}" opacity="0.3"/>')
            elements.append(
                f'<path d="{path}" fill="none" stroke="{color}" stroke-width="3" '
                'stroke-linecap="round" stroke-linejoin="round"/>'
            )
            for x, y, _ in points:
                elements.append(f'<circle cx="{_fmt(x)}" cy="{_fmt(y)}" r="5" fill="white" stroke="{color}" stroke-width="2"/>')
    else:
        if chart.chart_type == "quadrant":
            mid_x = left + geo.plot_width / 2
            mid_y = top + geo.plot_height / 2
            elements.append(f'<line x1="{_fmt(mid_x)}" y1="{top}" x2="{_fmt(mid_x)}" y2="{_fmt(geo.baseline)}" stroke="#9ca3af"/>')
            elements.append(f'<line x1="{left}" y1="{_fmt(mid_y)}" x2="{_fmt(right)}" y2="{_fmt(mid_y)}" stroke="#9ca3af"/>')
        for s_index in range(len(chart.data_series)):
            color = color_for(s_index)
            for x, y, point in geo.series_points(s_index):
                radius = max(4.0, min(point.size or 6.0, 20.0))
                elements.append(f'<circle cx="{_fmt(x)}" cy="{_fmt(y)}" r="{_fmt(radius)}" fill="{color}" opacity="0.8"/>')
                if point.label:
                    elements.append(
                        f'<text x="{_fmt(x + radius + 4)}" y="{_fmt(y + 4)}" fill="#374151" font-size="11">'
                        f"{html.escape(point.label)}</text>"
                    )

    for y, label in geo.y_ticks():
        elements.append(f'<text x="{left - 15}" y="{_fmt(y + 5)}" text-anchor="end" fill="#6b7280" font-size="11">{label}</text>')
    if chart.chart_type not in ("scatter", "quadrant"):
        for index, label in enumerate(geo.x_labels):
            elements.append(
                f'<text x="{_fmt(geo.x_at_index(index))}" y="{_fmt(geo.baseline + 30)}" text-anchor="middle" '
                f'fill="#6b7280" font-size="11">{html.escape(label)}</text>'
            )

    origin = geo.legend_origin()
    for index, series in enumerate(chart.data_series):
        x = origin + index * LEGEND_ITEM_WIDTH
        y = HEIGHT - 20
        elements.append(f'<rect x="{_fmt(x)}" y="{y - 12}" width="15" height="15" fill="{color_for(index)}" rx="3"/>')
        elements.append(
            f'<text x="{_fmt(x + 22)}" y="{y}" fill="#6b7280" font-size="13" font-weight="500">{html.escape(series.name)}</text>'
        )

    body = "\n  ".join(elements)
    return f'<svg width="{WIDTH}" height="{HEIGHT}" xmlns="http://www.w3.org/2000/svg">\n  {body}\n</svg>'


PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>{title}</title>
<style>
  * {{ margin: 0; padding: 0; box-sizing: border-box; }}
  body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: white; }}
  .chart-wrapper {{ background: white; border-radius: 8px; padding: 24px; width: {width}px; }}
  .chart-header {{ margin-bottom: 20px; padding-bottom: 12px; border-bottom: 1px solid #e5e7eb; }}
  .chart-title {{ font-size: 18px; font-weight: 600; color: #111827; margin-bottom: 4px; }}
  .chart-description {{ font-size: 12px; color: #6b7280; max-width: 700px; }}
</style>
</head>
<body>
<div class="chart-wrapper">
<div class="chart-header">
<div class="chart-title">{title}</div>
{description}
</div>
<div class="chart-content">
{svg}
</div>
</div>
</body>
</html>
"""


def render_chart_page(chart: ChartConfig) -> str:
    """Standalone HTML page for a chart; a headless browser screenshots ``.chart-wrapper``."""
    description = ""
    if chart.description:
        description = f'<div class="chart-description">{html.escape(chart.description)}</div>'
    return PAGE_TEMPLATE.format(
        title=html.escape(chart.title or "Chart"),
        width=WIDTH + 48,
        description=description,
        svg=chart_svg(chart),
    )
