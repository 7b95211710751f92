"""
Unit tests for band detection, column slicing and slicing strategies.

Tests:
- Uniform crops produce zero bands and the full-height fallback
- Percentile thresholding and strongest-band selection
- Exactly k slices for any crop, including narrow and noisy ones
- Peak detection on uneven glyph spacing
- Digit allocation across two bands
- Box ordering strategy and its fallback

Usage:
    pytest pick_ocr/tests/test_detection.py -v
"""

import numpy as np
import pytest

from conftest import make_bar_crop
from pick_ocr.core.detection import (
    BoxOrderSlicer, ColumnSlicer, ProjectionSlicer, RowBandDetector,
    Segmentation, SlicingStrategy, allocate_digits, group_rows,
)
from pick_ocr.core.preprocessing import ImagePreprocessor
from pick_ocr.core.utils import Band, CharBox, Rect, RegionSpec


def preprocessed(rows, **kwargs) -> np.ndarray:
    return ImagePreprocessor().preprocess(make_bar_crop(rows, **kwargs))


# =============================================================================
# Row Bands
# =============================================================================

class TestRowBandDetector:
    """Row band detection."""

    def test_uniform_crop_has_no_bands(self):
        detector = RowBandDetector()
        for value in (0, 128, 255):
            gray = np.full((60, 90), value, dtype=np.uint8)
            assert detector.detect(gray) == [], f"value {value} produced bands"

    def test_fallback_band_margins(self):
        band = RowBandDetector(margin_ratio=0.12).fallback_band(100)
        assert (band.y0, band.y1) == (12, 88)

    def test_fallback_band_tiny_crop(self):
        band = RowBandDetector(margin_ratio=0.5).fallback_band(1)
        assert band.height == 1

    def test_single_row_of_glyphs(self):
        gray = preprocessed("805")
        bands = RowBandDetector().detect(gray, max_bands=1)
        assert len(bands) == 1
        # Bars cover the middle half of the (upscaled) row
        assert bands[0].y0 <= 31 and bands[0].y1 >= 89

    def test_rows_below_percentile_are_inactive(self):
        gray = np.full((100, 50), 255, dtype=np.uint8)
        gray[:60, 0] = 250   # faint ink on every upper row
        gray[60:, :] = 0     # heavy ink below
        gray[60:, 49] = 255  # keep a white reference pixel per row
        bands = RowBandDetector().detect(gray, max_bands=2)
        assert [(b.y0, b.y1) for b in bands] == [(60, 100)]

    def test_keeps_strongest_bands_in_order(self):
        gray = np.full((90, 100), 255, dtype=np.uint8)
        gray[10:20, :] = 0     # strong
        gray[40:50, :20] = 0   # weak
        gray[70:80, :] = 0     # strong
        bands = RowBandDetector().detect(gray, max_bands=2)
        assert [(b.y0, b.y1) for b in bands] == [(10, 20), (70, 80)]

    def test_short_bands_are_discarded(self):
        gray = np.full((100, 40), 255, dtype=np.uint8)
        gray[5:7, :] = 0      # 2 rows, below the height floor
        gray[40:70, :] = 0
        bands = RowBandDetector().detect(gray, max_bands=2)
        assert [(b.y0, b.y1) for b in bands] == [(40, 70)]

    def test_two_rows_detected_top_to_bottom(self):
        gray = preprocessed(["1234", "5"])
        bands = RowBandDetector().detect(gray, max_bands=2)
        assert len(bands) == 2
        assert bands[0].y1 <= bands[1].y0


# =============================================================================
# Column Slicing
# =============================================================================

class TestColumnSlicer:
    """Exactly-k slicing and peak detection."""

    def test_exactly_k_on_glyphs(self):
        gray = preprocessed("805")
        band = Band(0, gray.shape[0])
        rects = ColumnSlicer().slice_band(gray, band, 3)
        assert len(rects) == 3
        xs = [r.x for r in rects]
        assert xs == sorted(xs)

    def test_exactly_k_when_narrower_than_k(self):
        gray = np.full((10, 3), 255, dtype=np.uint8)
        band = Band(0, 10)
        for k in range(1, 7):
            rects = ColumnSlicer().slice_band(gray, band, k)
            assert len(rects) == k
            for r in rects:
                assert r.width >= 1 and r.x >= 0 and r.right <= 3

    def test_exactly_k_on_noise(self):
        rng = np.random.default_rng(7)
        gray = rng.integers(0, 255, size=(40, 200), dtype=np.uint8)
        band = Band(5, 35)
        for k in range(1, 6):
            rects = ColumnSlicer().slice_band(gray, band, k)
            assert len(rects) == k, f"k={k}"
            for r in rects:
                assert r.width >= 1 and r.x >= 0 and r.right <= 200
                assert (r.y, r.bottom) == (5, 35)

    def test_blank_band_uses_equal_partition(self):
        gray = np.full((20, 90), 255, dtype=np.uint8)
        rects = ColumnSlicer().slice_band(gray, Band(0, 20), 3)
        assert [(r.x, r.width) for r in rects] == [(0, 30), (30, 30), (60, 30)]

    def test_peaks_on_uneven_spacing(self):
        scores = np.zeros(300, dtype=np.int64)
        scores[35:46] = 50
        scores[95:106] = 50
        scores[245:256] = 50
        slicer = ColumnSlicer(smooth=False)
        assert slicer.find_peaks(scores, 3) == [40, 100, 250]

    def test_small_peaks_ignored(self):
        scores = np.zeros(300, dtype=np.int64)
        scores[35:46] = 50
        scores[95:106] = 50
        scores[245:256] = 50
        scores[180] = 4  # below 10% of the maximum
        slicer = ColumnSlicer(smooth=False)
        assert slicer.find_peaks(scores, 4) == [40, 100, 250]

    def test_strongest_peaks_kept(self):
        scores = np.zeros(300, dtype=np.int64)
        scores[20:30] = 20
        scores[100:110] = 80
        scores[200:210] = 60
        slicer = ColumnSlicer(smooth=False)
        assert slicer.find_peaks(scores, 2) == [104, 204]

    def test_number_narrower_than_crop(self, bar_engine):
        # Three glyphs in the left half of a six-cell crop
        gray = preprocessed("805", cells=6)
        seg = ProjectionSlicer().segment(gray, RegionSpec("P3", 3))
        rects = [s.rect for s in seg.slices]
        assert len(rects) == 3
        for left, right in zip(rects, rects[1:]):
            assert left.right <= right.x, f"{left} overlaps {right}"
        read = "".join(bar_engine.recognize_char(r.crop(gray))[0] for r in rects)
        assert read == "805"

    def test_half_width_from_pitch(self):
        slicer = ColumnSlicer()
        test_cases = [
            # (centers, width, expected)
            ([72, 216, 360], 864, 72),
            ([10, 40, 100], 300, 15),
            ([50], 200, 100),
        ]
        for centers, width, expected in test_cases:
            assert slicer.half_width(centers, width) == expected, f"{centers}"

    def test_invalid_settings(self):
        test_cases = [
            {"window_divisor": 0},
            {"half_width_ratio": 0},
            {"min_peak_ratio": 1.5},
        ]
        for kwargs in test_cases:
            with pytest.raises(ValueError):
                ColumnSlicer(**kwargs)

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            ColumnSlicer().slice_band(np.zeros((5, 5), dtype=np.uint8), Band(0, 5), 0)


# =============================================================================
# Digit Allocation
# =============================================================================

class TestAllocateDigits:
    """Top band first, capped, deficit to the first band."""

    def test_allocation_cases(self):
        test_cases = [
            # (total, bands, cap, expected)
            (5, 2, 4, [4, 1]),
            (5, 1, 4, [5]),
            (3, 2, 4, [3, 0]),
            (5, 2, 2, [3, 2]),
            (4, 2, 4, [4, 0]),
        ]
        for total, bands, cap, expected in test_cases:
            counts = allocate_digits(total, bands, cap)
            assert counts == expected, f"{total}/{bands}/{cap}: {counts}"
            assert sum(counts) == total

    def test_no_bands(self):
        assert allocate_digits(3, 0) == []


# =============================================================================
# Projection Strategy
# =============================================================================

class TestProjectionSlicer:
    """Bands plus column slicing."""

    def test_single_row(self):
        gray = preprocessed("805")
        seg = ProjectionSlicer().segment(gray, RegionSpec("P3", 3))
        assert len(seg.slices) == 3
        assert [s.index for s in seg.slices] == [0, 1, 2]
        assert not seg.used_band_fallback
        assert seg.strategy == "peaks"

    def test_two_rows_band_major(self):
        gray = preprocessed(["1234", "5"])
        seg = ProjectionSlicer().segment(gray, RegionSpec("P5", 5, rows=2))
        assert [s.band_index for s in seg.slices] == [0, 0, 0, 0, 1]
        top = [s.rect.x for s in seg.slices[:4]]
        assert top == sorted(top)

    def test_zero_count_band_skipped(self):
        gray = preprocessed(["805", "1"])
        seg = ProjectionSlicer().segment(gray, RegionSpec("P3", 3, rows=2))
        assert len(seg.bands) == 2
        assert len(seg.slices) == 3
        assert all(s.band_index == 0 for s in seg.slices)

    def test_blank_crop_uses_fallback(self):
        gray = np.full((120, 432), 255, dtype=np.uint8)
        seg = ProjectionSlicer().segment(gray, RegionSpec("P3", 3))
        assert seg.used_band_fallback
        assert len(seg.bands) == 1
        assert (seg.bands[0].y0, seg.bands[0].y1) == (14, 106)
        assert len(seg.slices) == 3

    def test_slice_returns_only_slices(self):
        gray = preprocessed("42")
        slices = ProjectionSlicer().slice(gray, RegionSpec("P2", 2))
        assert len(slices) == 2


# =============================================================================
# Box Ordering Strategy
# =============================================================================

class BoxEngine:
    def __init__(self, boxes):
        self.boxes = boxes

    def detect_characters(self, image):
        if isinstance(self.boxes, Exception):
            raise self.boxes
        return self.boxes


class RecordingStrategy(SlicingStrategy):
    name = "recording"

    def __init__(self):
        self.calls = 0

    def segment(self, gray, spec):
        self.calls += 1
        return Segmentation(strategy=self.name)


def box(text, x, y, w=20, h=30):
    return CharBox(text, 0.9, Rect(x, y, w, h))


class TestBoxOrderSlicer:
    """Character boxes grouped into rows."""

    def test_group_rows(self):
        boxes = [box("3", 90, 52), box("1", 10, 10), box("2", 50, 12), box("4", 10, 55)]
        rows = group_rows(boxes)
        assert [[b.text for b in row] for row in rows] == [["1", "2"], ["4", "3"]]

    def test_last_n_of_best_row(self):
        boxes = [box("9", 10, 10), box("1", 40, 10), box("2", 70, 10), box("3", 100, 10)]
        gray = np.full((60, 200), 255, dtype=np.uint8)
        seg = BoxOrderSlicer(BoxEngine(boxes)).segment(gray, RegionSpec("P3", 3))
        assert seg.strategy == "boxes"
        assert len(seg.slices) == 3
        xs = [s.rect.x for s in seg.slices]
        assert xs == sorted(xs)
        # The leading "9" box is dropped
        assert xs[0] > 10

    def test_rows_concatenate(self):
        boxes = [box("1", 10, 10), box("2", 40, 10), box("3", 70, 10),
                 box("4", 100, 10), box("5", 10, 60)]
        gray = np.full((100, 200), 255, dtype=np.uint8)
        seg = BoxOrderSlicer(BoxEngine(boxes)).segment(gray, RegionSpec("P5", 5, rows=2))
        assert len(seg.bands) == 2
        assert [s.band_index for s in seg.slices] == [0, 0, 0, 0, 1]
        for s in seg.slices:
            assert s.rect.fits(200, 100)

    def test_non_digit_boxes_ignored_and_fallback(self):
        boxes = [box("$", 10, 10), box("1", 40, 10), box("12", 70, 10)]
        fallback = RecordingStrategy()
        gray = np.full((60, 200), 255, dtype=np.uint8)
        seg = BoxOrderSlicer(BoxEngine(boxes), fallback=fallback).segment(gray, RegionSpec("P2", 2))
        assert fallback.calls == 1
        assert seg.strategy == "recording"

    def test_engine_error_falls_back(self):
        fallback = RecordingStrategy()
        gray = np.full((60, 200), 255, dtype=np.uint8)
        BoxOrderSlicer(BoxEngine(RuntimeError("boom")), fallback=fallback).segment(
            gray, RegionSpec("P2", 2)
        )
        assert fallback.calls == 1
