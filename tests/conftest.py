"""Shared fixtures for the overlay tests.

Fake metrics providers make layout assertions exact: every character is
`char_px` wide, so a caption's width is simply len(text) * char_px.
"""

import io

import pytest
from PIL import Image

from overlay_compositor import FontRegistry, OverlayCompositor, RasterLabelBackend
from overlay_config import StyleParams
from overlay_pipeline import OverlayPipeline
from result_cache import ResultCache


class CharMetrics:
    def __init__(self, char_px: float = 10.0):
        self.char_px = char_px
        self.calls = 0

    def measure(self, text: str) -> float:
        self.calls += 1
        return len(text) * self.char_px


class ConstantMetrics:
    """Returns the same value for everything: 0, NaN, a string..."""

    def __init__(self, value):
        self.value = value

    def measure(self, text: str):
        return self.value


def make_jpeg(width: int = 800, height: int = 600, color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="JPEG", quality=90)
    return buf.getvalue()


@pytest.fixture
def char_metrics():
    return CharMetrics(10.0)


@pytest.fixture
def style():
    # spelled out so tests don't depend on environment overrides
    return StyleParams(
        font_family="Test Sans",
        font_size_px=15,
        padding_px=11,
        vertical_padding_px=5,
        corner_radius_px=5,
        shift_up_px=13,
        output_width_px=1200,
        output_height_px=628,
        line_height_multiplier=1.2,
        inter_line_spacing_px=0,
        margin_px=80,
        width_safety_ratio=1.0,
        box_opacity=0.95,
        jpeg_quality=95,
    )


@pytest.fixture
def source_jpeg():
    return make_jpeg()


@pytest.fixture
def fonts(tmp_path):
    registry = FontRegistry(str(tmp_path / "missing-font.ttf"), "Test Sans")
    registry.initialize()
    return registry


@pytest.fixture
def pipeline(fonts, char_metrics):
    return OverlayPipeline(
        fonts=fonts,
        compositor=OverlayCompositor(RasterLabelBackend(fonts)),
        cache=ResultCache(capacity=10),
        metrics=char_metrics,
    )
