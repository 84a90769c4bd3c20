from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence, Union

from storage import TimeEntry

PALETTE = [
    "#667eea",
    "#764ba2",
    "#f093fb",
    "#4facfe",
    "#43e97b",
    "#fa709a",
    "#fee140",
    "#30cfd0",
    "#a8edea",
    "#fed6e3",
    "#c471f5",
    "#12c2e9",
]

FULL_TURN = 2 * math.pi
START_ANGLE = -math.pi / 2
ANGLE_EPSILON = 1e-9


@dataclass(frozen=True)
class AggregatedCategory:
    name: str
    total_seconds: int
    color: str


@dataclass(frozen=True)
class Slice:
    start_angle: float
    end_angle: float
    name: str
    seconds: int
    percentage: str

    @property
    def width(self) -> float:
        return self.end_angle - self.start_angle

    @property
    def mid_angle(self) -> float:
        return self.start_angle + self.width / 2


def palette_color(index: int) -> str:
    return PALETTE[index % len(PALETTE)]


def aggregate_entries(entries: Iterable[TimeEntry]) -> List[AggregatedCategory]:
    """Sum seconds per lowercased category, keeping first-seen order."""
    totals: Dict[str, int] = {}
    for entry in entries:
        key = entry.category.lower()
        totals[key] = totals.get(key, 0) + entry.seconds

    return [
        AggregatedCategory(name=name, total_seconds=seconds, color=palette_color(index))
        for index, (name, seconds) in enumerate(totals.items())
    ]


def total_seconds(categories: Sequence[AggregatedCategory]) -> int:
    return sum(category.total_seconds for category in categories)


def layout_slices(categories: Sequence[AggregatedCategory]) -> List[Slice]:
    """Lay categories out clockwise from 12 o'clock.

    A zero total has no meaningful layout, so no slices are produced and
    the caller paints the empty placeholder.
    """
    total = total_seconds(categories)
    if total == 0:
        return []

    slices: List[Slice] = []
    current_angle = START_ANGLE
    for category in categories:
        fraction = category.total_seconds / total
        slice_angle = fraction * FULL_TURN
        slices.append(
            Slice(
                start_angle=current_angle,
                end_angle=current_angle + slice_angle,
                name=category.name,
                seconds=category.total_seconds,
                percentage=f"{fraction * 100:.1f}",
            )
        )
        current_angle += slice_angle
    return slices


def pie_radius(width: int, margin: int) -> float:
    center = width / 2
    return center - margin


def _normalize(angle: float) -> float:
    return angle % FULL_TURN


def slice_at(x: float, y: float, slices: Sequence[Slice], width: int, margin: int) -> Optional[Slice]:
    """Return the slice under the point ``(x, y)`` of a ``width``-square chart."""
    if not slices:
        return None

    center = width / 2
    dx = x - center
    dy = y - center
    if math.hypot(dx, dy) > pie_radius(width, margin):
        return None

    # Measured clockwise from 12 o'clock, the same zero as START_ANGLE.
    angle = _normalize(math.atan2(dy, dx) + math.pi / 2)

    for candidate in slices:
        if candidate.width >= FULL_TURN - ANGLE_EPSILON:
            return candidate
        # Each slice is normalized on its own; the one closing the circle
        # ends on the wrap boundary and comes out with end < start.
        start = _normalize(candidate.start_angle - START_ANGLE)
        end = _normalize(candidate.end_angle - START_ANGLE)
        if end < start:
            if angle >= start or angle <= end:
                return candidate
        elif start <= angle <= end:
            return candidate
    return None


def format_time(seconds: int) -> str:
    seconds = int(seconds or 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_date_time(value: Union[str, datetime], tz: Optional[tzinfo] = None) -> str:
    """Format a timestamp for display, in ``tz`` or the server's local zone.

    Naive values are shown as they are.
    """
    moment = datetime.fromisoformat(value) if isinstance(value, str) else value
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz)
    suffix = "AM" if moment.hour < 12 else "PM"
    hour12 = moment.hour % 12 or 12
    return f"{moment.strftime('%b')} {moment.day}, {moment.year} at {hour12}:{moment.minute:02d} {suffix}"


def tooltip_text(chart_slice: Slice) -> str:
    return f"{chart_slice.name} - {format_time(chart_slice.seconds)} ({chart_slice.percentage}%)"
