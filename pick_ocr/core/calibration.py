"""
Region calibration: resolve a pick label to a pixel rectangle in the current capture.

Two resolution strategies are supported and chosen by configuration:
- fixed pixel rectangles measured at a reference resolution
- fractional rectangles scaled to whatever size the capture has
"""

import logging
import math
from typing import Dict, Iterable, Tuple

from .errors import RegionOutOfBounds
from .utils import Rect, RegionSpec


logger = logging.getLogger(__name__)

CALIBRATION_MODES = ("auto", "fixed", "fractional")


def fraction_to_rect(width: int, height: int, frac: Tuple[float, float, float, float]) -> Rect:
    """Scale a fractional (x, y, w, h) rectangle to pixels, flooring sizes to at least 1px."""
    fx, fy, fw, fh = frac
    return Rect(
        int(math.floor(width * fx)),
        int(math.floor(height * fy)),
        max(1, int(math.floor(width * fw))),
        max(1, int(math.floor(height * fh))),
    )


class RegionCalibrator:
    """Resolves RegionSpecs against the size of the current RawImage."""

    def __init__(
        self,
        regions: Iterable[RegionSpec],
        reference_size: Tuple[int, int] = (1280, 720),
        mode: str = "auto"
    ):
        if mode not in CALIBRATION_MODES:
            raise ValueError(f"unknown calibration mode: {mode}")
        self.regions: Dict[str, RegionSpec] = {spec.label: spec for spec in regions}
        self.reference_size = (int(reference_size[0]), int(reference_size[1]))
        self.mode = mode

    def resolve(self, width: int, height: int, label: str) -> Rect:
        """
        Return an in-bounds rectangle for `label` in a width x height image.

        Never fails for a configured label: a rectangle that does not fit is
        clamped (logged as RegionOutOfBounds) and processing continues.
        """
        spec = self.regions[label]
        rect = self._raw_rect(width, height, spec)

        if not rect.fits(width, height):
            clamped = rect.clamp(width, height)
            err = RegionOutOfBounds(
                f"rect {rect} does not fit {width}x{height}, clamped to {clamped}",
                label=label, stage="calibrate"
            )
            logger.warning("[%s] %s: %s", err.stage, label, err)
            rect = clamped

        return rect

    def _raw_rect(self, width: int, height: int, spec: RegionSpec) -> Rect:
        use_pixels = spec.rect_px is not None and (
            self.mode == "fixed" or
            (self.mode == "auto" and (width, height) == self.reference_size)
        )
        if use_pixels:
            return Rect(*(int(v) for v in spec.rect_px))

        return fraction_to_rect(width, height, self._fractions(spec))

    def _fractions(self, spec: RegionSpec) -> Tuple[float, float, float, float]:
        if spec.rect_frac is not None:
            return tuple(float(v) for v in spec.rect_frac)
        if spec.rect_px is None:
            raise ValueError(f"region {spec.label} has neither rect_px nor rect_frac")
        ref_w, ref_h = self.reference_size
        x, y, w, h = spec.rect_px
        return (x / ref_w, y / ref_h, w / ref_w, h / ref_h)
