"""Raster rendering of the category pie chart with Pillow."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO
from typing import List, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from charts import AggregatedCategory, Slice, format_time, layout_slices, pie_radius

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "No data to display"
PLACEHOLDER_COLOR = "#ccc"
LABEL_COLOR = "white"
LEADER_COLOR = "#555"
LEADER_LENGTH = 18
LABEL_GAP = 4


@dataclass(frozen=True)
class ChartStyle:
    margin: int
    min_label_angle: float
    label_radius_ratio: float
    external_labels: bool = False


INTERACTIVE = ChartStyle(margin=20, min_label_angle=0.1, label_radius_ratio=0.7)
READ_ONLY = ChartStyle(margin=90, min_label_angle=0.2, label_radius_ratio=0.6, external_labels=True)


@lru_cache(maxsize=8)
def load_font(size: int, bold: bool = False) -> ImageFont.ImageFont:
    name = "DejaVuSans-Bold.ttf" if bold else "DejaVuSans.ttf"
    try:
        return ImageFont.truetype(name, size)
    except OSError:
        logger.debug("Font %s not found, falling back to the default font", name)
        return ImageFont.load_default(size=size)


def _point_on_circle(cx: float, cy: float, radius: float, angle: float) -> Tuple[float, float]:
    return cx + math.cos(angle) * radius, cy + math.sin(angle) * radius


def paint_pie_chart(
    categories: Sequence[AggregatedCategory], width: int, style: ChartStyle = INTERACTIVE
) -> Tuple[Image.Image, List[Slice]]:
    """Paint the chart on a fresh ``width`` x ``width`` surface.

    Returns the image together with the slices that were laid out, which is
    an empty list when the placeholder was painted instead.
    """
    image = Image.new("RGBA", (width, width), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    cx = cy = width / 2

    slices = layout_slices(categories)
    if not slices:
        draw.text((cx, cy), PLACEHOLDER_TEXT, fill=PLACEHOLDER_COLOR, font=load_font(20), anchor="mm")
        return image, []

    radius = pie_radius(width, style.margin)
    bbox = [cx - radius, cy - radius, cx + radius, cy + radius]
    percent_font = load_font(14, bold=True)

    for category, chart_slice in zip(categories, slices):
        if chart_slice.width <= 0:
            continue
        draw.pieslice(
            bbox,
            math.degrees(chart_slice.start_angle),
            math.degrees(chart_slice.end_angle),
            fill=category.color,
        )
        if chart_slice.width > style.min_label_angle:
            label_xy = _point_on_circle(cx, cy, radius * style.label_radius_ratio, chart_slice.mid_angle)
            draw.text(label_xy, f"{chart_slice.percentage}%", fill=LABEL_COLOR, font=percent_font, anchor="mm")

    if style.external_labels:
        name_font = load_font(12)
        for chart_slice in slices:
            mid = chart_slice.mid_angle
            edge = _point_on_circle(cx, cy, radius, mid)
            end_x, end_y = _point_on_circle(cx, cy, radius + LEADER_LENGTH, mid)
            draw.line([edge, (end_x, end_y)], fill=LEADER_COLOR, width=1)
            text = f"{chart_slice.name} {format_time(chart_slice.seconds)}"
            if math.cos(mid) >= 0:
                draw.text((end_x + LABEL_GAP, end_y), text, fill=LEADER_COLOR, font=name_font, anchor="lm")
            else:
                draw.text((end_x - LABEL_GAP, end_y), text, fill=LEADER_COLOR, font=name_font, anchor="rm")

    return image, slices


def render_pie_chart(
    categories: Sequence[AggregatedCategory], width: int, style: ChartStyle = INTERACTIVE
) -> bytes:
    image, _ = paint_pie_chart(categories, width, style)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
