# overlay_errors.py
from __future__ import annotations


class OverlayError(Exception):
    """Base class for every failure raised by the overlay core."""

    kind = "overlay_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class InputError(OverlayError):
    kind = "input_error"


class ImageDecodeError(InputError):
    kind = "image_decode_error"


class MeasurementDegraded(OverlayError):
    """
    Raised by measurement helpers when the font metrics can't be trusted.
    Never leaves the layout code: callers switch to heuristics instead.
    """

    kind = "measurement_degraded"


class CompositeError(OverlayError):
    kind = "composite_error"


class CacheCapacityError(OverlayError):
    kind = "cache_capacity_error"
