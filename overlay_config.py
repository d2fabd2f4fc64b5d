# overlay_config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

from overlay_errors import InputError

load_dotenv(".env")

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_FONT_REL = "assets/RobotoCondensed-Bold.ttf"


def resolve_font_path(p: str) -> str:
    if not p:
        return ""
    path = Path(p)
    if path.is_absolute():
        return str(path)
    # relative paths are resolved against the app directory, not the cwd
    return str((PROJECT_ROOT / path).resolve())


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Config
# ----------------------------

@dataclass(frozen=True)
class OverlayConfig:
    # Output canvas (landscape link-preview ratio)
    width: int = int(os.getenv("OUTPUT_W", "1200"))
    height: int = int(os.getenv("OUTPUT_H", "628"))

    # Font
    font_family: str = os.getenv("FONT_FAMILY", "Roboto Condensed Bold").strip()
    font_path: str = os.getenv("FONT_TTF_PATH", DEFAULT_FONT_REL).strip()
    font_size: int = int(os.getenv("FONT_SIZE", "15"))

    # Label box
    h_padding: int = int(os.getenv("H_PADDING", "11"))  # each side
    v_padding: int = int(os.getenv("V_PADDING", "5"))   # each side
    corner_radius: int = int(os.getenv("CORNER_RADIUS", "5"))
    shift_up: int = int(os.getenv("SHIFT_UP", "13"))
    text_margin: int = int(os.getenv("TEXT_MARGIN", "80"))  # 40px each side
    line_height_mult: float = float(os.getenv("LINE_HEIGHT_MULT", "1.2"))
    line_spacing: int = int(os.getenv("LINE_SPACING", "0"))
    width_safety_ratio: float = float(os.getenv("WIDTH_SAFETY_RATIO", "1.0"))
    box_opacity: float = float(os.getenv("BOX_OPACITY", "0.95"))

    # Output encoding
    jpeg_quality: int = int(os.getenv("JPEG_QUALITY", "95"))

    # auto | raster | svg
    label_backend: str = os.getenv("LABEL_BACKEND", "auto").strip().lower()

    # Result cache
    cache_backend: str = os.getenv("RESULT_CACHE_BACKEND", "memory").strip().lower()
    cache_capacity: int = int(os.getenv("RESULT_CACHE_CAPACITY", "200"))
    cache_max_bytes: int = int(os.getenv("RESULT_CACHE_MAX_BYTES", "0"))  # 0 = no byte bound
    cache_ttl_hours: float = float(os.getenv("RESULT_CACHE_TTL_HOURS", "24"))
    cache_dir: str = os.getenv("RESULT_CACHE_DIR", "/tmp/overlays").strip()
    b2_prefix: str = os.getenv("B2_OVERLAY_PREFIX", "overlays/").strip()

    # Sweep scheduling
    sweep_interval_minutes: int = int(os.getenv("SWEEP_INTERVAL_MINUTES", "60"))
    sweep_enabled: bool = _env_bool("SWEEP_ENABLED", "true")
    redis_url: str = os.getenv("REDIS_URL", "").strip()

    # Used to build imageUrl in responses; falls back to the request base URL
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

    log_dir: str = os.getenv("LOG_DIR", "logs").strip()

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_hours * 3600

    def style(self, **overrides) -> "StyleParams":
        return StyleParams.from_config(self, **overrides)


CFG = OverlayConfig()


# ----------------------------
# Request data model
# ----------------------------

@dataclass(frozen=True)
class StyleParams:
    font_family: str = CFG.font_family
    font_size_px: float = CFG.font_size
    padding_px: int = CFG.h_padding
    vertical_padding_px: int = CFG.v_padding
    corner_radius_px: int = CFG.corner_radius
    shift_up_px: int = CFG.shift_up
    output_width_px: int = CFG.width
    output_height_px: int = CFG.height
    line_height_multiplier: float = CFG.line_height_mult
    inter_line_spacing_px: int = CFG.line_spacing
    margin_px: int = CFG.text_margin
    width_safety_ratio: float = CFG.width_safety_ratio
    box_opacity: float = CFG.box_opacity
    box_color: Tuple[int, int, int] = (0, 0, 0)
    text_color: Tuple[int, int, int] = (255, 255, 255)
    jpeg_quality: int = CFG.jpeg_quality

    def __post_init__(self):
        if self.output_width_px <= 0 or self.output_height_px <= 0:
            raise InputError(
                f"Output size must be positive, got {self.output_width_px}x{self.output_height_px}"
            )
        if self.font_size_px <= 0:
            raise InputError(f"Font size must be positive, got {self.font_size_px}")
        if not 0 < self.box_opacity <= 1:
            raise InputError(f"Box opacity must be in (0, 1], got {self.box_opacity}")
        if not 1 <= self.jpeg_quality <= 100:
            raise InputError(f"JPEG quality must be in 1..100, got {self.jpeg_quality}")
        if self.line_height_multiplier <= 0:
            raise InputError("Line height multiplier must be positive")

    @property
    def line_height_px(self) -> float:
        return self.font_size_px * self.line_height_multiplier

    @property
    def max_text_width_px(self) -> int:
        """Width available to a line of text once margins and padding are taken."""
        return max(1, self.output_width_px - self.margin_px - 2 * self.padding_px)

    def with_overrides(self, **overrides) -> "StyleParams":
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean) if clean else self

    @classmethod
    def from_config(cls, cfg: OverlayConfig, **overrides) -> "StyleParams":
        base = cls(
            font_family=cfg.font_family,
            font_size_px=cfg.font_size,
            padding_px=cfg.h_padding,
            vertical_padding_px=cfg.v_padding,
            corner_radius_px=cfg.corner_radius,
            shift_up_px=cfg.shift_up,
            output_width_px=cfg.width,
            output_height_px=cfg.height,
            line_height_multiplier=cfg.line_height_mult,
            inter_line_spacing_px=cfg.line_spacing,
            margin_px=cfg.text_margin,
            width_safety_ratio=cfg.width_safety_ratio,
            box_opacity=cfg.box_opacity,
            jpeg_quality=cfg.jpeg_quality,
        )
        return base.with_overrides(**overrides)


@dataclass(frozen=True)
class RenderRequest:
    source_image: bytes
    caption: str
    style: StyleParams = field(default_factory=StyleParams)
