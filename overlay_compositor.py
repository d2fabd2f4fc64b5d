# overlay_compositor.py
from __future__ import annotations

import io
import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
from xml.sax.saxutils import escape, quoteattr

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError, features

from label_box import LabelBox
from overlay_config import StyleParams, resolve_font_path
from overlay_errors import CompositeError, ImageDecodeError
from result_cache import RenderedImage

logger = logging.getLogger(__name__)

GENERIC_SANS_FALLBACKS = ("DejaVuSans-Bold.ttf", "DejaVuSans.ttf")


# ----------------------------
# Fonts
# ----------------------------

class FontRegistry:
    """
    Resolves the configured font file once and hands out per-size fonts.

    `available` tells whether the custom font loaded; when it didn't, a
    generic sans-serif is used instead and the warning is logged only once.
    `freetype` is False when Pillow can't load TrueType fonts at all; the
    registry then hands out Pillow's built-in bitmap font.

    Fonts are resolved from the single configured file, so the per-request
    font family only reaches the SVG backend (as a CSS font-family).
    """

    def __init__(self, font_path: str, family: str):
        self.font_path = resolve_font_path(font_path)
        self.family = family
        self.available = False
        self.freetype = True
        self._fallback_path: Optional[str] = None
        self._initialized = False
        self._fonts: Dict[int, ImageFont.ImageFont] = {}
        self._lock = threading.Lock()

    def initialize(self) -> bool:
        with self._lock:
            if self._initialized:
                return self.available

            try:
                self._probe_fonts()
            except ImportError as e:
                self.available = False
                self.freetype = False
                self._fallback_path = None
                logger.warning("Pillow has no FreeType support, using the built-in bitmap font: %s", e)

            self._initialized = True
            return self.available

    def _probe_fonts(self) -> None:
        if self.font_path and Path(self.font_path).exists():
            try:
                ImageFont.truetype(self.font_path, size=12)
                self.available = True
                logger.info("Custom font loaded successfully: %s", self.font_path)
            except OSError as e:
                logger.warning("Custom font failed to load, using fallback: %s", e)
        else:
            logger.warning("Custom font not found at %r, using fallback", self.font_path)

        if not self.available:
            for name in GENERIC_SANS_FALLBACKS:
                try:
                    ImageFont.truetype(name, size=12)
                except OSError:
                    continue
                self._fallback_path = name
                break
            logger.info("Fallback font: %s", self._fallback_path or "Pillow default")

    def css_family(self, family: Optional[str] = None) -> str:
        family = (family or self.family).replace("'", "")
        if family == self.family and not self.available:
            return "'DejaVu Sans', Arial, sans-serif"
        return f"'{family}', Arial, sans-serif"

    def get(self, size: float) -> ImageFont.ImageFont:
        if not self._initialized:
            self.initialize()
        px = max(1, int(round(size)))
        with self._lock:
            font = self._fonts.get(px)
            if font is None:
                font = self._load(px)
                self._fonts[px] = font
            return font

    def _load(self, px: int) -> ImageFont.ImageFont:
        if not self.freetype:
            # a sized load_default() needs FreeType too
            return ImageFont.load_default()
        if self.available:
            return ImageFont.truetype(self.font_path, size=px)
        if self._fallback_path:
            return ImageFont.truetype(self._fallback_path, size=px)
        return ImageFont.load_default(size=px)


# ----------------------------
# Label layer backends
# ----------------------------

class LabelBackend(Protocol):
    name: str

    def render_layer(self, box: LabelBox, lines: Sequence[str], style: StyleParams) -> Image.Image: ...


def line_centers(box: LabelBox, line_count: int, style: StyleParams) -> List[float]:
    """Vertical centre of each line, with the whole block centred in the box."""
    n = max(1, line_count)
    lh = style.line_height_px
    step = lh + style.inter_line_spacing_px
    block_h = n * lh + style.inter_line_spacing_px * (n - 1)
    top = (box.height_px - block_h) / 2
    return [top + i * step + lh / 2 for i in range(n)]


def _rgba(rgb: Tuple[int, int, int], opacity: float) -> Tuple[int, int, int, int]:
    return (rgb[0], rgb[1], rgb[2], max(0, min(255, round(255 * opacity))))


class RasterLabelBackend:
    """Draws the label with Pillow in the registry's font; `style.font_family` is not consulted."""

    name = "raster"

    def __init__(self, fonts: FontRegistry):
        self.fonts = fonts

    def render_layer(self, box: LabelBox, lines: Sequence[str], style: StyleParams) -> Image.Image:
        w, h = box.width_px, box.height_px
        layer = Image.new("RGBA", (w, h), (0, 0, 0, 0))
        ImageDraw.Draw(layer).rounded_rectangle(
            (0, 0, w - 1, h - 1),
            radius=box.corner_radius_px,
            fill=_rgba(style.box_color, style.box_opacity),
        )

        # glyphs on a separate layer, alpha-composited over the box
        text_layer = Image.new("RGBA", (w, h), (0, 0, 0, 0))
        draw = ImageDraw.Draw(text_layer)
        font = self.fonts.get(style.font_size_px)
        fill = _rgba(style.text_color, 1.0)

        for ln, cy in zip(lines, line_centers(box, len(lines), style)):
            if not ln:
                continue
            if isinstance(font, ImageFont.FreeTypeFont):
                draw.text((w / 2, cy), ln, font=font, fill=fill, anchor="mm")
            else:
                # bitmap fonts don't support anchors
                l, t, r, b = draw.textbbox((0, 0), ln, font=font)
                draw.text(((w - (r - l)) / 2 - l, cy - (b - t) / 2 - t), ln, font=font, fill=fill)

        layer.alpha_composite(text_layer)
        return layer


class SvgLabelBackend:
    """Builds the label as SVG markup and rasterises it with cairosvg."""

    name = "svg"

    def __init__(self, fonts: FontRegistry):
        self.fonts = fonts

    def build_svg(self, box: LabelBox, lines: Sequence[str], style: StyleParams) -> str:
        w, h = box.width_px, box.height_px
        r, g, b = style.box_color
        tr, tg, tb = style.text_color
        texts = "".join(
            f'<text x="50%" y="{cy:.2f}" dominant-baseline="middle" text-anchor="middle">{escape(ln)}</text>'
            for ln, cy in zip(lines, line_centers(box, len(lines), style))
            if ln
        )
        return (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{w}" height="{h}">'
            f'<rect x="0" y="0" width="{w}" height="{h}" rx="{box.corner_radius_px}" ry="{box.corner_radius_px}" '
            f'style="fill:rgb({r},{g},{b});fill-opacity:{style.box_opacity};"/>'
            f'<g fill="rgb({tr},{tg},{tb})" font-family={quoteattr(self.fonts.css_family(style.font_family))}'
            f' font-size="{style.font_size_px}" font-weight="bold">{texts}</g>'
            "</svg>"
        )

    def render_layer(self, box: LabelBox, lines: Sequence[str], style: StyleParams) -> Image.Image:
        # cairo is a native dependency; only touch it when this backend is in use
        import cairosvg

        svg = self.build_svg(box, lines, style)
        png = cairosvg.svg2png(
            bytestring=svg.encode("utf-8"),
            output_width=box.width_px,
            output_height=box.height_px,
        )
        return Image.open(io.BytesIO(png)).convert("RGBA")


def select_backend(name: str, fonts: FontRegistry) -> LabelBackend:
    name = (name or "auto").strip().lower()
    if name == "auto":
        fonts.initialize()
        name = "raster" if fonts.freetype and features.check("freetype2") else "svg"
        logger.info("Label backend auto-selected: %s", name)
    if name == "raster":
        return RasterLabelBackend(fonts)
    if name == "svg":
        return SvgLabelBackend(fonts)
    raise ValueError(f"Unknown label backend: {name!r} (expected auto, raster or svg)")


# ----------------------------
# Canvas helpers
# ----------------------------

def decode_image(data: bytes) -> Image.Image:
    if not data:
        raise ImageDecodeError("No image data provided")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Source is not a decodable image: {e}")
    logger.info("Processing image: %dx%d (%s)", img.width, img.height, img.format)
    return ImageOps.exif_transpose(img).convert("RGBA")


def cover_fit(img: Image.Image, width: int, height: int) -> Image.Image:
    """Scale to fill width x height, cropping the overflow around the centre."""
    return ImageOps.fit(img, (width, height), method=Image.LANCZOS, centering=(0.5, 0.5)).convert("RGBA")


# ----------------------------
# Compositor
# ----------------------------

class OverlayCompositor:
    def __init__(self, backend: LabelBackend):
        self.backend = backend

    def render(
        self,
        source_image: bytes,
        box: LabelBox,
        lines: Sequence[str],
        style: StyleParams,
    ) -> RenderedImage:
        canvas_w, canvas_h = style.output_width_px, style.output_height_px

        src = decode_image(source_image)
        canvas = cover_fit(src, canvas_w, canvas_h)

        if not box.fits(canvas_w, canvas_h):
            raise CompositeError(f"Label box {box.as_dict()} does not fit a {canvas_w}x{canvas_h} canvas")

        try:
            layer = self.backend.render_layer(box, lines, style)
        except CompositeError:
            raise
        except Exception as e:
            logger.exception("%s backend failed to draw the label", self.backend.name)
            raise CompositeError(f"{self.backend.name} backend failed to draw the label: {e}") from e

        if layer.size != (box.width_px, box.height_px):
            raise CompositeError(
                f"{self.backend.name} backend produced a {layer.size} layer for a "
                f"{box.width_px}x{box.height_px} box"
            )

        canvas.alpha_composite(layer, (box.left_px, box.top_px))

        out = io.BytesIO()
        try:
            canvas.convert("RGB").save(
                out,
                format="JPEG",
                quality=style.jpeg_quality,
                optimize=True,
                progressive=True,
            )
        except (OSError, ValueError) as e:
            raise CompositeError(f"JPEG encoding failed: {e}")

        data = out.getvalue()
        logger.info("Output image size: %d bytes", len(data))
        return RenderedImage(data=data, mime_type="image/jpeg", created_at=time.time())
