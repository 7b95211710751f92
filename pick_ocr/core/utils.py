"""
Utility functions and data classes for the pick reader.

Contains shared data structures, image I/O helpers, and debug artifact writers.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Iterator, Optional, Tuple, Any

import cv2
import numpy as np


logger = logging.getLogger(__name__)

# Placeholder character for a slice whose digit could not be determined
UNKNOWN = "?"

LABELS = ("P2", "P3", "P4", "P5")
EXPECTED_DIGITS = {"P2": 2, "P3": 3, "P4": 4, "P5": 5}

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.tiff', '.webp'}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class Rect:
    """Axis-aligned pixel rectangle."""
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def fits(self, width: int, height: int) -> bool:
        """True if the rectangle lies inside [0,width) x [0,height) with positive size."""
        return (
            self.width >= 1 and self.height >= 1 and
            self.x >= 0 and self.y >= 0 and
            self.right <= width and self.bottom <= height
        )

    def clamp(self, width: int, height: int) -> 'Rect':
        """Clamp into [0,width) x [0,height), keeping at least 1px on each side."""
        x = min(max(0, self.x), max(0, width - 1))
        y = min(max(0, self.y), max(0, height - 1))
        w = min(max(1, self.width), max(1, width - x))
        h = min(max(1, self.height), max(1, height - y))
        return Rect(x, y, w, h)

    def crop(self, image: np.ndarray) -> np.ndarray:
        return image[self.y:self.bottom, self.x:self.right]


@dataclass(frozen=True)
class RawImage:
    """One captured screenshot. Holds a private read-only copy of the pixels."""
    pixels: np.ndarray
    source: str = ""
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.pixels is None or self.pixels.size == 0:
            raise ValueError("RawImage requires a non-empty pixel buffer")
        pixels = np.array(self.pixels, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass(frozen=True)
class RegionSpec:
    """Static calibration for one pick label."""
    label: str
    digits: int
    rows: int = 1
    rect_px: Optional[Tuple[int, int, int, int]] = None  # x, y, w, h at the reference size
    rect_frac: Optional[Tuple[float, float, float, float]] = None  # x, y, w, h as fractions of W, H


@dataclass
class Band:
    """Horizontal strip of glyph content, rows [y0, y1)."""
    y0: int
    y1: int
    score: float = 0.0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


@dataclass
class Slice:
    """Sub-rectangle of a crop expected to hold exactly one glyph."""
    index: int
    band_index: int
    rect: Rect


@dataclass
class CharBox:
    """A character (or short token) and its box as returned by a recognition engine."""
    text: str
    confidence: float
    rect: Rect


@dataclass
class RecognitionResult:
    """Outcome of recognizing a single slice."""
    slice_index: int
    char: str
    confidence: Optional[float] = None
    raw_text: str = ""

    @property
    def is_unknown(self) -> bool:
        return self.char == UNKNOWN


@dataclass
class DigitString:
    """Assembled reading for one label."""
    label: str
    text: str
    expected: int
    valid: bool
    reason: str = ""
    results: List[RecognitionResult] = field(default_factory=list)

    @property
    def value(self) -> Optional[str]:
        """The digits when valid, otherwise None."""
        return self.text if self.valid else None


@dataclass
class RegionReading:
    """Everything one label's sub-pipeline produced in a cycle (diagnostics only)."""
    label: str
    rect: Rect
    bands: List[Band] = field(default_factory=list)
    slices: List[Slice] = field(default_factory=list)
    digit_string: Optional[DigitString] = None
    used_band_fallback: bool = False


# =============================================================================
# File I/O Utilities
# =============================================================================

def load_image(path: str) -> Optional[RawImage]:
    """Read an image file into a RawImage, or None if it cannot be decoded."""
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        return None
    return RawImage(pixels=image, source=str(path))


def iter_captures(input_path: str) -> Iterator[RawImage]:
    """
    Yield captures from a single image or a folder of images.

    Args:
        input_path: Path to an image file or a folder of images

    Yields:
        RawImage per readable file, in filename order
    """
    path = Path(input_path)

    if path.is_file():
        raw = load_image(str(path))
        if raw is not None:
            yield raw
        return

    if path.is_dir():
        image_files = sorted([
            f for f in path.iterdir()
            if f.suffix.lower() in IMAGE_EXTENSIONS
        ])
        for img_path in image_files:
            raw = load_image(str(img_path))
            if raw is None:
                logger.warning("[capture] skipping unreadable image %s", img_path)
                continue
            yield raw


def save_json(payload: Dict[str, Any], out_path: Path) -> None:
    """Write a JSON document next to the other outputs."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w") as f:
        json.dump(payload, f, indent=2)


def draw_annotations(
    crop: np.ndarray,
    reading: RegionReading
) -> np.ndarray:
    """Draw band and slice boxes with recognized characters on a crop."""
    if crop.ndim == 2:
        annotated = cv2.cvtColor(crop, cv2.COLOR_GRAY2BGR)
    else:
        annotated = crop.copy()

    width = annotated.shape[1]
    for band in reading.bands:
        cv2.rectangle(annotated, (0, band.y0), (width - 1, band.y1 - 1), (255, 128, 0), 1)

    chars = {}
    if reading.digit_string is not None:
        chars = {r.slice_index: r.char for r in reading.digit_string.results}

    for s in reading.slices:
        r = s.rect
        cv2.rectangle(annotated, (r.x, r.y), (r.right - 1, r.bottom - 1), (0, 200, 0), 1)
        label = chars.get(s.index, "")
        if label:
            cv2.putText(
                annotated, label,
                (r.x + 2, max(10, r.y + 12)),
                cv2.FONT_HERSHEY_SIMPLEX, 0.4,
                (0, 0, 255), 1
            )

    return annotated


def save_debug_artifacts(
    debug_dir: Path,
    reading: RegionReading,
    crop: np.ndarray
) -> None:
    """
    Overwrite the per-label debug images for this cycle.

    Writes <label>.png (preprocessed crop), <label>_annotated.png and
    slices/<label>_<n>.png. Failures are logged; these files are diagnostic only.
    """
    try:
        slices_dir = debug_dir / "slices"
        slices_dir.mkdir(parents=True, exist_ok=True)

        cv2.imwrite(str(debug_dir / f"{reading.label}.png"), crop)
        cv2.imwrite(
            str(debug_dir / f"{reading.label}_annotated.png"),
            draw_annotations(crop, reading)
        )
        for s in reading.slices:
            piece = s.rect.crop(crop)
            if piece.size > 0:
                cv2.imwrite(str(slices_dir / f"{reading.label}_{s.index + 1}.png"), piece)
    except (OSError, cv2.error) as e:
        logger.warning("[debug] %s: could not write debug artifacts: %s", reading.label, e)
