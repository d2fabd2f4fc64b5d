import asyncio
import io

import pytest
from PIL import Image, ImageFont
from PIL._util import DeferredError

from label_box import LabelBoxSizer
from overlay_compositor import OverlayCompositor, RasterLabelBackend
from overlay_config import OverlayConfig, RenderRequest, StyleParams
from overlay_errors import ImageDecodeError, InputError
from overlay_pipeline import OverlayPipeline
from result_cache import ResultCache
from tests.conftest import ConstantMetrics, make_jpeg
from text_layout import TextLayoutEngine


def _decode(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


def test_render_hello_world(pipeline, style, source_jpeg):
    image = pipeline.render(RenderRequest(source_jpeg, "Hello world", style))
    assert _decode(image.data).size == (1200, 628)


def test_render_and_store_is_retrievable(pipeline, style, source_jpeg):
    image_id, image = pipeline.render_and_store(RenderRequest(source_jpeg, "Hello world", style))
    assert pipeline.cache.get(image_id).data == image.data


def test_render_without_cache_cannot_store(fonts, style, source_jpeg):
    bare = OverlayPipeline(fonts=fonts, compositor=OverlayCompositor(RasterLabelBackend(fonts)))
    with pytest.raises(RuntimeError):
        bare.render_and_store(RenderRequest(source_jpeg, "hi", style))


def test_zero_metrics_still_render_on_canvas(fonts, style, source_jpeg):
    zero = ConstantMetrics(0)
    degraded = OverlayPipeline(
        fonts=fonts,
        compositor=OverlayCompositor(RasterLabelBackend(fonts)),
        cache=ResultCache(capacity=2),
        metrics=zero,
    )
    caption = "a caption that would normally be measured by the font"
    image = degraded.render(RenderRequest(source_jpeg, caption, style))
    assert _decode(image.data).size == (1200, 628)

    lines = TextLayoutEngine().wrap(caption, style.max_text_width_px, zero)
    box = LabelBoxSizer(zero).compute_box(lines, style)
    assert len(lines) == 2
    assert box.fits(1200, 628)


def test_eight_word_caption_on_narrow_canvas_wraps_in_two(pipeline, source_jpeg):
    narrow = StyleParams(output_width_px=400, output_height_px=300, margin_px=80, padding_px=11)
    caption = "one two three four five six seven eight"
    lines = TextLayoutEngine().wrap(caption, narrow.max_text_width_px, pipeline.metrics_for(narrow))

    assert len(lines) == 2
    image = pipeline.render(RenderRequest(source_jpeg, caption, narrow))
    assert _decode(image.data).size == (400, 300)


def test_font_metrics_come_from_registry(fonts, style):
    real = OverlayPipeline(fonts=fonts, compositor=OverlayCompositor(RasterLabelBackend(fonts)))
    assert real.metrics_for(style).measure("Hello") > 0


def test_empty_source_is_an_input_error(pipeline, style):
    with pytest.raises(InputError):
        pipeline.render(RenderRequest(b"", "caption", style))


def test_garbage_source_is_a_decode_error(pipeline, style):
    with pytest.raises(ImageDecodeError):
        pipeline.render(RenderRequest(b"garbage", "caption", style))


def test_render_async_stores_by_default(pipeline, style):
    req = RenderRequest(make_jpeg(640, 480), "async caption", style)
    image_id, image = asyncio.run(pipeline.render_async(req))
    assert pipeline.cache.get(image_id).data == image.data

    no_id, _ = asyncio.run(pipeline.render_async(req, store=False))
    assert no_id is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"output_width_px": 0},
        {"font_size_px": -1},
        {"box_opacity": 0},
        {"box_opacity": 1.5},
        {"jpeg_quality": 101},
    ],
)
def test_invalid_style_is_rejected(style, overrides):
    with pytest.raises(InputError):
        style.with_overrides(**overrides)


def test_pipeline_starts_without_freetype(tmp_path, monkeypatch, style):
    monkeypatch.setattr(ImageFont, "core", DeferredError(ImportError("The _imagingft C module is not installed")))
    cfg = OverlayConfig(font_path=str(tmp_path / "missing-font.ttf"), label_backend="auto")

    pipeline = OverlayPipeline.from_config(cfg, cache=ResultCache(capacity=2))

    assert pipeline.fonts.available is False
    assert pipeline.compositor.backend.name == "svg"
    assert pipeline.metrics_for(style).measure("Hello") > 0
