# text_layout.py
from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Protocol, Sequence

from PIL import ImageFont

from overlay_errors import MeasurementDegraded

logger = logging.getLogger(__name__)

# Anything narrower than this for a non-empty string means the font backend
# isn't really measuring (missing font, headless canvas, ...).
MEASUREMENT_FLOOR_PX = 0.5

BALANCE_WINDOW = 2
MIN_WORDS_FOR_BALANCE = 4


class TextMetricsProvider(Protocol):
    def measure(self, text: str) -> float: ...


class PillowTextMetrics:
    """Measures advance width with a Pillow font (FreeType or bitmap)."""

    def __init__(self, font: ImageFont.ImageFont):
        self.font = font

    def measure(self, text: str) -> float:
        return self.font.getlength(text)


class WrappedText(tuple):
    """Caption lines in display order, top to bottom."""

    def __new__(cls, lines: Iterable[str] = ("",)):
        lines = tuple(lines)
        return super().__new__(cls, lines or ("",))

    @property
    def line_count(self) -> int:
        return len(self)

    def joined(self) -> str:
        return " ".join(ln for ln in self if ln)

    def words(self) -> List[str]:
        return self.joined().split()


def measure_width(metrics: TextMetricsProvider, text: str) -> float:
    """
    Measure text, raising MeasurementDegraded when the provider returns
    something unusable for a non-empty string.
    """
    if not text:
        return 0.0
    try:
        raw = metrics.measure(text)
    except (TypeError, ValueError, OSError) as e:
        raise MeasurementDegraded(f"measurement failed for {text!r}: {e}")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise MeasurementDegraded(f"non-numeric width {raw!r} for {text!r}")
    width = float(raw)
    if not math.isfinite(width) or width < MEASUREMENT_FLOOR_PX:
        raise MeasurementDegraded(f"implausible width {raw!r} for {text!r}")
    return width


def estimate_width(text: str, font_size_px: float) -> float:
    return len(text) * font_size_px * 0.6


# ----------------------------
# Wrapping
# ----------------------------

class TextLayoutEngine:
    def wrap(self, caption: str, max_width_px: float, metrics: TextMetricsProvider) -> WrappedText:
        words = (caption or "").split()
        if not words:
            return WrappedText([""])

        try:
            return self._wrap_measured(words, max_width_px, metrics)
        except MeasurementDegraded as e:
            logger.warning("Text measurement degraded, splitting by word count: %s", e)
            return self._split_by_word_count(words)

    def _wrap_measured(
        self, words: Sequence[str], max_width_px: float, metrics: TextMetricsProvider
    ) -> WrappedText:
        full = " ".join(words)
        if measure_width(metrics, full) <= max_width_px:
            return WrappedText([full])

        if len(words) >= MIN_WORDS_FOR_BALANCE:
            balanced = self._balanced_split(words, max_width_px, metrics)
            if balanced is not None:
                return balanced

        return self._greedy(words, max_width_px, metrics)

    @staticmethod
    def _balanced_split(
        words: Sequence[str], max_width_px: float, metrics: TextMetricsProvider
    ) -> Optional[WrappedText]:
        mid = len(words) // 2
        lo = max(1, mid - BALANCE_WINDOW)
        hi = min(len(words) - 1, mid + BALANCE_WINDOW)

        best = None
        best_diff = math.inf
        for i in range(lo, hi + 1):
            first = " ".join(words[:i])
            second = " ".join(words[i:])
            w1 = measure_width(metrics, first)
            w2 = measure_width(metrics, second)
            if w1 > max_width_px or w2 > max_width_px:
                continue
            diff = abs(w1 - w2)
            if diff < best_diff:
                best, best_diff = (first, second), diff

        if best is None:
            return None
        return WrappedText(best)

    @staticmethod
    def _greedy(words: Sequence[str], max_width_px: float, metrics: TextMetricsProvider) -> WrappedText:
        lines: List[str] = []
        cur = words[0]
        for w in words[1:]:
            candidate = cur + " " + w
            if measure_width(metrics, candidate) < max_width_px:
                cur = candidate
            else:
                lines.append(cur)
                # an over-wide single word still gets its own line
                cur = w
        lines.append(cur)
        return WrappedText(lines)

    @staticmethod
    def _split_by_word_count(words: Sequence[str]) -> WrappedText:
        if len(words) < 2:
            return WrappedText([" ".join(words)])
        mid = (len(words) + 1) // 2
        return WrappedText([" ".join(words[:mid]), " ".join(words[mid:])])
