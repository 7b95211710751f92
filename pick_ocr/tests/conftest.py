"""
Pytest configuration and shared fixtures for the pick reader tests.

This module provides:
- Synthetic "bar glyph" images: each digit d is drawn as a solid vertical bar
  (d + 1) * BAR_UNIT pixels wide, centered in its glyph cell
- A deterministic recognition engine that reads those bars back by width
- A synthetic results screen with all four pick regions and a matching config
- Store and pipeline factories writing to a temporary directory

No fixture touches a real OCR engine.

Usage:
    pytest pick_ocr/tests/ -v
    pytest pick_ocr/tests/test_pipeline.py -v
"""

import sys
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pytest

# Add repository root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pick_ocr.core.config import PipelineConfig  # noqa: E402
from pick_ocr.core.pipeline import PickOCRPipeline  # noqa: E402
from pick_ocr.core.publishing import ResultStore  # noqa: E402
from pick_ocr.core.recognition import DigitRecognizer  # noqa: E402
from pick_ocr.core.utils import RawImage, RegionSpec  # noqa: E402


# =============================================================================
# Synthetic Glyph Constants
# =============================================================================

BAR_UNIT = 4        # bar width per digit step, in source pixels
GLYPH_PITCH = 48    # glyph cell width; wide enough for the "9" bar (40px)
ROW_HEIGHT = 40     # height of one row of glyphs
PREPROCESS_SCALE = 3  # ImagePreprocessor default upscale

SCREEN_SIZE = (640, 400)

# label -> (x, y, w, h, rows) on the synthetic screen
SCREEN_REGIONS = {
    "P2": (20, 20, 2 * GLYPH_PITCH, ROW_HEIGHT, 1),
    "P3": (20, 80, 3 * GLYPH_PITCH, ROW_HEIGHT, 1),
    "P4": (20, 140, 4 * GLYPH_PITCH, ROW_HEIGHT, 1),
    "P5": (20, 200, 4 * GLYPH_PITCH, 2 * ROW_HEIGHT, 2),
}


# =============================================================================
# Image Builders
# =============================================================================

def draw_bar_row(canvas: np.ndarray, digits: str, top: int, pitch: int = GLYPH_PITCH, left: int = 0):
    """Draw one row of bar glyphs; bars cover the middle half of the row."""
    y0 = top + ROW_HEIGHT // 4
    y1 = top + 3 * ROW_HEIGHT // 4
    for i, ch in enumerate(digits):
        width = (int(ch) + 1) * BAR_UNIT
        center = left + i * pitch + pitch // 2
        x0 = center - width // 2
        canvas[y0:y1, x0:x0 + width] = 0


def make_bar_crop(rows, pitch: int = GLYPH_PITCH, cells: Optional[int] = None) -> np.ndarray:
    """
    White BGR crop holding one row of bar glyphs per entry of `rows`.

    Args:
        rows: A digit string, or a list of digit strings (one per row)
        pitch: Glyph cell width
        cells: Number of glyph cells across; defaults to the longest row
    """
    if isinstance(rows, str):
        rows = [rows]
    cells = cells or max(len(r) for r in rows)
    crop = np.full((ROW_HEIGHT * len(rows), cells * pitch, 3), 255, dtype=np.uint8)
    for r, digits in enumerate(rows):
        draw_bar_row(crop, digits, r * ROW_HEIGHT, pitch)
    return crop


def p5_rows(value: str) -> list:
    """P5 layout: four digits on top, the fifth alone below."""
    return [value[:4], value[4:]]


def make_screen(values: Dict[str, Optional[str]]) -> np.ndarray:
    """
    White synthetic results screen with bar glyphs in each pick region.

    A label mapped to None (or missing) is left blank.
    """
    width, height = SCREEN_SIZE
    screen = np.full((height, width, 3), 255, dtype=np.uint8)
    for label, (x, y, w, h, rows) in SCREEN_REGIONS.items():
        value = values.get(label)
        if not value:
            continue
        layout = p5_rows(value) if rows == 2 else [value]
        crop = make_bar_crop(layout, cells=w // GLYPH_PITCH)
        screen[y:y + h, x:x + w] = crop
    return screen


def screen_config() -> PipelineConfig:
    """Pixel calibration matching make_screen, at its own reference size."""
    width, height = SCREEN_SIZE
    regions = []
    for label, (x, y, w, h, rows) in SCREEN_REGIONS.items():
        regions.append(RegionSpec(
            label=label,
            digits=int(label[1]),
            rows=rows,
            rect_px=(x, y, w, h),
            rect_frac=(x / width, y / height, w / width, h / height),
        ))
    return PipelineConfig(regions=regions, reference_size=SCREEN_SIZE)


# =============================================================================
# Stub Recognition Engines
# =============================================================================

class BarWidthEngine:
    """Reads a bar glyph back from the number of dark columns in a slice."""

    def __init__(self, scale: int = PREPROCESS_SCALE, unit: int = BAR_UNIT):
        self.scale = scale
        self.unit = unit
        self.calls = 0

    def recognize_char(self, image: np.ndarray) -> Tuple[str, Optional[float]]:
        self.calls += 1
        dark_columns = int((image < 128).any(axis=0).sum())
        if dark_columns == 0:
            return "", None
        digit = int(round(dark_columns / (self.scale * self.unit))) - 1
        if not 0 <= digit <= 9:
            return "", None
        return str(digit), 0.99

    def detect_characters(self, image: np.ndarray):
        return []


class SlowEngine(BarWidthEngine):
    """BarWidthEngine that sleeps before every answer."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def recognize_char(self, image):
        time.sleep(self.delay)
        return super().recognize_char(image)


class FixedEngine:
    """Returns a canned (text, confidence) answer, or raises it if it is an exception."""

    def __init__(self, answer):
        self.answer = answer

    def recognize_char(self, image):
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def bar_engine() -> BarWidthEngine:
    return BarWidthEngine()


@pytest.fixture
def screen_raw():
    """Factory: RawImage of a synthetic screen for the given values."""
    def _make(values: Dict[str, Optional[str]], source: str = "synthetic.png") -> RawImage:
        return RawImage(pixels=make_screen(values), source=source)
    return _make


@pytest.fixture
def state_path(tmp_path) -> Path:
    return tmp_path / "state" / "results.json"


@pytest.fixture
def store(state_path) -> ResultStore:
    return ResultStore(state_path)


@pytest.fixture
def make_pipeline(store):
    """Factory for a pipeline over the synthetic screen calibration."""
    def _make(engine=None, **kwargs) -> PickOCRPipeline:
        engine = engine or BarWidthEngine()
        kwargs.setdefault("store", store)
        return PickOCRPipeline(screen_config(), DigitRecognizer(engine), **kwargs)
    return _make


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks end-to-end cycle tests"
    )


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their names."""
    for item in items:
        if "make_pipeline" in item.fixturenames:
            item.add_marker(pytest.mark.integration)
        if "timeout" in item.name:
            item.add_marker(pytest.mark.slow)


def pytest_report_header(config):
    """Add project info to test report header."""
    return [
        "Pick Reader Test Suite",
        f"Project Root: {PROJECT_ROOT}",
    ]
