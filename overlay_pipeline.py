# overlay_pipeline.py
from __future__ import annotations

import logging
from typing import Optional, Tuple

from starlette.concurrency import run_in_threadpool

from label_box import LabelBoxSizer
from overlay_compositor import FontRegistry, OverlayCompositor, select_backend
from overlay_config import OverlayConfig, RenderRequest, StyleParams
from overlay_errors import InputError
from result_cache import BaseResultCache, RenderedImage
from text_layout import PillowTextMetrics, TextLayoutEngine, TextMetricsProvider

logger = logging.getLogger(__name__)


class OverlayPipeline:
    """
    caption + source bytes -> wrapped lines -> label box -> composited JPEG,
    optionally stored in the result cache.
    """

    def __init__(
        self,
        fonts: FontRegistry,
        compositor: OverlayCompositor,
        cache: Optional[BaseResultCache] = None,
        layout: Optional[TextLayoutEngine] = None,
        metrics: Optional[TextMetricsProvider] = None,
    ):
        self.fonts = fonts
        self.compositor = compositor
        self.cache = cache
        self.layout = layout or TextLayoutEngine()
        # fixed metrics override the font-based ones (tests, headless hosts)
        self._metrics = metrics

    @classmethod
    def from_config(cls, cfg: OverlayConfig, cache: Optional[BaseResultCache] = None) -> "OverlayPipeline":
        fonts = FontRegistry(cfg.font_path, cfg.font_family)
        fonts.initialize()
        backend = select_backend(cfg.label_backend, fonts)
        return cls(fonts=fonts, compositor=OverlayCompositor(backend), cache=cache)

    def metrics_for(self, style: StyleParams) -> TextMetricsProvider:
        if self._metrics is not None:
            return self._metrics
        return PillowTextMetrics(self.fonts.get(style.font_size_px))

    def render(self, req: RenderRequest) -> RenderedImage:
        if not req.source_image:
            raise InputError("No image data provided")

        style = req.style
        metrics = self.metrics_for(style)
        lines = self.layout.wrap(req.caption, style.max_text_width_px, metrics)
        box = LabelBoxSizer(metrics).compute_box(lines, style)

        logger.debug("Text lines: %d %r", len(lines), list(lines))
        logger.debug("Box: %s", box.as_dict())

        return self.compositor.render(req.source_image, box, lines, style)

    def render_and_store(self, req: RenderRequest) -> Tuple[str, RenderedImage]:
        if self.cache is None:
            raise RuntimeError("No result cache configured for this pipeline")
        image = self.render(req)
        image_id = self.cache.put(image)
        return image_id, image

    async def render_async(self, req: RenderRequest, store: bool = True) -> Tuple[Optional[str], RenderedImage]:
        """Run the CPU-bound render off the event loop."""
        if store:
            return await run_in_threadpool(self.render_and_store, req)
        image = await run_in_threadpool(self.render, req)
        return None, image
