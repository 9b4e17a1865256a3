import io
import logging
from typing import Protocol

from PIL import Image, ImageDraw, ImageFont

from finchat.report.charts import HEIGHT, LEGEND_ITEM_WIDTH, PADDING, WIDTH, ChartGeometry, color_for
from finchat.types import ChartConfig

logger = logging.getLogger(__name__)

SCALE = 2
GRID = "#e5e7eb"
AXIS = "#333333"
MUTED = "#6b7280"


class ChartRasterizer(Protocol):
    def rasterize(self, chart: ChartConfig) -> bytes:
        """Return PNG bytes for ``chart``."""


def _hex_rgba(color: str, alpha: int = 255) -> tuple[int, int, int, int]:
    color = color.lstrip("#")
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16), alpha


class PillowChartRasterizer:
    """Draws the same layout as the SVG render page straight onto a PNG canvas."""

    def __init__(self, scale: int = SCALE) -> None:
        self.scale = scale
        self._font = ImageFont.load_default()

    def _s(self, value: float) -> float:
        return value * self.scale

    def _text(self, draw: ImageDraw.ImageDraw, x: float, y: float, text: str, *, align: str = "left", fill: str = MUTED) -> None:
        width = draw.textlength(text, font=self._font)
        if align == "right":
            x -= width
        elif align == "center":
            x -= width / 2
        draw.text((x, y), text, fill=fill, font=self._font)

    def _dashed(self, draw: ImageDraw.ImageDraw, x1: float, x2: float, y: float) -> None:
        x = x1
        while x < x2:
            draw.line([(x, y), (min(x + self._s(3), x2), y)], fill=GRID, width=1)
            x += self._s(6)

    def rasterize(self, chart: ChartConfig) -> bytes:
        geo = ChartGeometry.from_chart(chart)
        s = self._s
        image = Image.new("RGBA", (int(s(WIDTH)), int(s(HEIGHT))), (255, 255, 255, 255))
        overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        shade = ImageDraw.Draw(overlay)
        left, right = s(PADDING["left"]), s(PADDING["left"] + geo.plot_width)
        top, base = s(PADDING["top"]), s(geo.baseline)

        for y in geo.grid_ys():
            self._dashed(draw, left, right, s(y))

        if chart.chart_type == "bar":
            for s_index, x, y, w, h in geo.bars():
                if h <= 0:
                    continue
                draw.rounded_rectangle([s(x), s(y), s(x + w), s(y + h)], radius=s(6), fill=color_for(s_index))
        elif chart.chart_type in ("line", "area"):
            for s_index in range(len(chart.data_series)):
                points = [(s(x), s(y)) for x, y, _ in geo.series_points(s_index)]
                if not points:
                    continue
                color = color_for(s_index)
                if chart.chart_type == "area" and len(points) > 1:
                    polygon = points + [(points[-1][0], base), (points[0][0], base)]
                    shade.polygon(polygon, fill=_hex_rgba(color, 77))
                if len(points) > 1:
                    draw.line(points, fill=color, width=int(s(3)), joint="curve")
                for x, y in points:
                    r = s(5)
                    draw.ellipse([x - r, y - r, x + r, y + r], fill="white", outline=color, width=int(s(2)))
        else:
            if chart.chart_type == "quadrant":
                mid_x = (left + right) / 2
                mid_y = (top + base) / 2
                draw.line([(mid_x, top), (mid_x, base)], fill="#9ca3af", width=1)
                draw.line([(left, mid_y), (right, mid_y)], fill="#9ca3af", width=1)
            for s_index in range(len(chart.data_series)):
                color = color_for(s_index)
                for x, y, point in geo.series_points(s_index):
                    r = s(max(4.0, min(point.size or 6.0, 20.0)))
                    shade.ellipse([s(x) - r, s(y) - r, s(x) + r, s(y) + r], fill=_hex_rgba(color, 204))
                    if point.label:
                        self._text(draw, s(x) + r + s(4), s(y) - s(5), point.label, fill="#374151")

        image = Image.alpha_composite(image, overlay)
        draw = ImageDraw.Draw(image)
        draw.line([(left, top), (left, base)], fill=AXIS, width=int(s(2)))
        draw.line([(left, base), (right, base)], fill=AXIS, width=int(s(2)))

        for y, label in geo.y_ticks():
            self._text(draw, left - s(15), s(y) - s(5), label, align="right")
        if chart.chart_type not in ("scatter", "quadrant"):
            for index, label in enumerate(geo.x_labels):
                self._text(draw, s(geo.x_at_index(index)), base + s(20), label, align="center")

        origin = geo.legend_origin()
        for index, series in enumerate(chart.data_series):
            x = s(origin + index * LEGEND_ITEM_WIDTH)
            y = s(HEIGHT - 20)
            draw.rounded_rectangle([x, y - s(12), x + s(15), y + s(3)], radius=s(3), fill=color_for(index))
            self._text(draw, x + s(22), y - s(10), series.name)

        buffer = io.BytesIO()
        image.convert("RGB").save(buffer, format="PNG")
        return buffer.getvalue()
