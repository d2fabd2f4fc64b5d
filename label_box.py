# label_box.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from overlay_config import StyleParams
from overlay_errors import MeasurementDegraded
from text_layout import TextMetricsProvider, estimate_width, measure_width

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabelBox:
    width_px: int
    height_px: int
    left_px: int
    top_px: int
    corner_radius_px: int

    @property
    def right_px(self) -> int:
        return self.left_px + self.width_px

    @property
    def bottom_px(self) -> int:
        return self.top_px + self.height_px

    def fits(self, canvas_w: int, canvas_h: int) -> bool:
        return (
            self.width_px > 0
            and self.height_px > 0
            and 0 <= self.left_px
            and 0 <= self.top_px
            and self.right_px <= canvas_w
            and self.bottom_px <= canvas_h
        )

    def as_dict(self) -> dict:
        return {
            "width": self.width_px,
            "height": self.height_px,
            "left": self.left_px,
            "top": self.top_px,
            "radius": self.corner_radius_px,
        }


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


class LabelBoxSizer:
    """Turns wrapped lines into label box geometry on the output canvas."""

    def __init__(self, metrics: TextMetricsProvider):
        self.metrics = metrics

    def longest_line_width(self, lines: Sequence[str], style: StyleParams) -> float:
        widest = 0.0
        for ln in lines:
            try:
                w = measure_width(self.metrics, ln)
            except MeasurementDegraded as e:
                logger.warning("Line width degraded, using estimate: %s", e)
                w = estimate_width(ln, style.font_size_px)
            widest = max(widest, w)
        return widest

    def compute_box(self, lines: Sequence[str], style: StyleParams) -> LabelBox:
        canvas_w = style.output_width_px
        canvas_h = style.output_height_px
        n = max(1, len(lines))

        longest = self.longest_line_width(lines, style)
        width = math.ceil(longest * style.width_safety_ratio) + 2 * style.padding_px
        width = min(width, canvas_w - style.margin_px, canvas_w)
        width = max(1, width)

        height = (
            n * style.line_height_px
            + style.inter_line_spacing_px * (n - 1)
            + 2 * style.vertical_padding_px
        )
        height = max(1, min(math.ceil(height), canvas_h))

        left = round((canvas_w - width) / 2)
        top = round(canvas_h - height - style.shift_up_px)
        left = _clamp(left, 0, canvas_w - width)
        top = _clamp(top, 0, canvas_h - height)

        radius = max(0, min(style.corner_radius_px, width // 2, height // 2))

        box = LabelBox(width_px=width, height_px=height, left_px=left, top_px=top, corner_radius_px=radius)
        logger.debug(
            "Label box for %d line(s): longest=%.1fpx box=%dx%d at (%d, %d)",
            n, longest, width, height, left, top,
        )
        return box
