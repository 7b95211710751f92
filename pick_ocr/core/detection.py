"""
Glyph segmentation for the pick reader.

Contains row band detection, column slicing, digit allocation across bands, and
the two interchangeable slicing strategies:
- ProjectionSlicer: ink projections with peak detection and an equal-width fallback
- BoxOrderSlicer: orders character boxes returned by the recognition engine
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .utils import Band, CharBox, Rect, RegionSpec, Slice


logger = logging.getLogger(__name__)

DIGIT_CHARS = "0123456789"


def ink_image(gray: np.ndarray) -> np.ndarray:
    """Per-pixel ink: distance below the brightest pixel of the crop."""
    g = gray.astype(np.int64)
    return int(g.max()) - g


def _runs(mask: np.ndarray) -> List[List[int]]:
    """Return [start, end) runs of True values."""
    runs = []
    start = None
    for i, v in enumerate(mask):
        if v and start is None:
            start = i
        elif not v and start is not None:
            runs.append([start, i])
            start = None
    if start is not None:
        runs.append([start, len(mask)])
    return runs


@dataclass
class Segmentation:
    """Bands and ordered slices for one region crop."""
    bands: List[Band] = field(default_factory=list)
    slices: List[Slice] = field(default_factory=list)
    used_band_fallback: bool = False
    strategy: str = ""


class RowBandDetector:
    """Finds horizontal strips of glyph content in a preprocessed crop."""

    def __init__(
        self,
        percentile: float = 60.0,
        min_height_px: int = 3,
        min_height_ratio: float = 0.10,
        merge_gap_ratio: float = 0.03,
        margin_ratio: float = 0.12
    ):
        if not 0 <= percentile <= 100:
            raise ValueError("percentile must be in [0, 100]")
        if min(min_height_px, min_height_ratio, merge_gap_ratio, margin_ratio) < 0:
            raise ValueError("band heights and ratios must not be negative")
        self.percentile = percentile
        self.min_height_px = min_height_px
        self.min_height_ratio = min_height_ratio
        self.merge_gap_ratio = merge_gap_ratio
        self.margin_ratio = margin_ratio

    def row_scores(self, gray: np.ndarray) -> np.ndarray:
        return ink_image(gray).sum(axis=1)

    def detect(self, gray: np.ndarray, max_bands: int = 2) -> List[Band]:
        """
        Detect bands of active rows, ordered top-to-bottom.

        Returns:
            Up to `max_bands` bands; empty when the crop has no ink.
        """
        scores = self.row_scores(gray)
        height = len(scores)
        if height == 0 or scores.max() <= 0:
            return []

        threshold = np.percentile(scores, self.percentile)
        active = (scores >= threshold) & (scores > 0)

        runs = _runs(active)

        # Bridge short gaps inside one row of glyphs
        max_gap = int(self.merge_gap_ratio * height)
        merged: List[List[int]] = []
        for start, end in runs:
            if merged and start - merged[-1][1] <= max_gap:
                merged[-1][1] = end
            else:
                merged.append([start, end])

        min_height = max(self.min_height_px, int(round(self.min_height_ratio * height)))
        bands = [
            Band(y0=s, y1=e, score=float(scores[s:e].sum()))
            for s, e in merged
            if e - s >= min_height
        ]

        if len(bands) > max_bands:
            strongest = sorted(bands, key=lambda b: b.score, reverse=True)[:max_bands]
            bands = sorted(strongest, key=lambda b: b.y0)

        return bands

    def fallback_band(self, height: int) -> Band:
        """Single band covering the crop minus fixed top/bottom margins."""
        margin = int(self.margin_ratio * height)
        if height - 2 * margin < 1:
            margin = 0
        return Band(y0=margin, y1=height - margin, score=0.0)


class ColumnSlicer:
    """Splits one band into exactly k single-glyph rectangles."""

    def __init__(
        self,
        window_divisor: int = 30,
        half_width_ratio: float = 0.5,
        min_peak_ratio: float = 0.10,
        smooth: bool = True
    ):
        if int(window_divisor) < 1:
            raise ValueError("window_divisor must be >= 1")
        if not 0 < half_width_ratio <= 1:
            raise ValueError("half_width_ratio must be in (0, 1]")
        if not 0 <= min_peak_ratio <= 1:
            raise ValueError("min_peak_ratio must be in [0, 1]")
        self.window_divisor = int(window_divisor)
        self.half_width_ratio = half_width_ratio
        self.min_peak_ratio = min_peak_ratio
        self.smooth = smooth

    def column_scores(self, gray: np.ndarray, band: Band) -> np.ndarray:
        ink = ink_image(gray)
        return ink[band.y0:band.y1].sum(axis=0)

    def find_peaks(self, scores: np.ndarray, k: int) -> List[int]:
        """
        Up to k glyph centers, left to right.

        A column is a peak if it is >= every score within +/- width/30; runs of
        equal neighbouring peaks (plateaus) count once, at their midpoint.
        """
        width = len(scores)
        if width == 0 or k < 1:
            return []

        radius = max(1, width // self.window_divisor)
        hist = scores.astype(np.int64)
        if self.smooth:
            # Never wider than the peak radius, or close glyphs merge
            box = max(1, min(width // (2 * k), radius))
            hist = np.convolve(hist, np.ones(box, dtype=np.int64), mode="same")

        top = int(hist.max())
        if top <= 0:
            return []

        padded = np.pad(hist, radius, mode="constant", constant_values=np.iinfo(np.int64).min)
        window_max = np.lib.stride_tricks.sliding_window_view(padded, 2 * radius + 1).max(axis=1)

        candidate = (hist >= window_max) & (hist > 0) & (hist >= self.min_peak_ratio * top)

        peaks = [((s + e - 1) // 2, int(hist[(s + e - 1) // 2])) for s, e in _runs(candidate)]
        peaks.sort(key=lambda p: (-p[1], p[0]))

        kept: List[int] = []
        for x, _ in peaks:
            if any(abs(x - other) <= radius for other in kept):
                continue
            kept.append(x)
            if len(kept) == k:
                break

        return sorted(kept)

    def slice_band(self, gray: np.ndarray, band: Band, k: int) -> List[Rect]:
        """Exactly k rectangles inside the band, left to right."""
        if k < 1:
            raise ValueError("k must be >= 1")
        width = gray.shape[1]

        centers = self.find_peaks(self.column_scores(gray, band), k)
        if len(centers) < k:
            logger.debug("[slice] %d/%d peaks, using equal partition", len(centers), k)
            return self.equal_partition(width, band, k)

        half_width = self.half_width(centers, width)
        rects = []
        for c in centers:
            x0 = max(0, c - half_width)
            x1 = min(width, max(x0 + 1, c + half_width))
            rects.append(Rect(x0, band.y0, x1 - x0, band.height))
        return rects

    def half_width(self, centers: Sequence[int], width: int) -> int:
        """Slice half-width from the glyph pitch; the crop width stands in for a lone glyph."""
        if len(centers) > 1:
            pitch = min(b - a for a, b in zip(centers, centers[1:]))
        else:
            pitch = width
        return max(1, int(pitch * self.half_width_ratio))

    def equal_partition(self, width: int, band: Band, k: int) -> List[Rect]:
        rects = []
        for i in range(k):
            x0 = min(i * width // k, width - 1)
            x1 = max(x0 + 1, (i + 1) * width // k)
            rects.append(Rect(x0, band.y0, min(x1, width) - x0, band.height))
        return rects


def allocate_digits(total: int, num_bands: int, cap: int = 4) -> List[int]:
    """
    Split `total` digits over bands, top band first.

    Each band receives up to `cap`; any shortfall is added to the first band so
    the counts always sum to `total`.
    """
    if num_bands < 1:
        return []
    counts = []
    remaining = total
    for _ in range(num_bands):
        take = min(cap, remaining)
        counts.append(take)
        remaining -= take
    counts[0] += total - sum(counts)
    return counts


class SlicingStrategy(ABC):
    """Turns a preprocessed crop into ordered single-glyph slices."""

    name = ""

    @abstractmethod
    def segment(self, gray: np.ndarray, spec: RegionSpec) -> Segmentation:
        pass

    def slice(self, gray: np.ndarray, spec: RegionSpec) -> List[Slice]:
        """Ordered slices only, in reading order."""
        return self.segment(gray, spec).slices


class ProjectionSlicer(SlicingStrategy):
    """Row bands by ink percentile, columns by peak detection."""

    name = "peaks"

    def __init__(
        self,
        band_detector: RowBandDetector = None,
        column_slicer: ColumnSlicer = None,
        first_band_cap: int = 4
    ):
        self.band_detector = band_detector or RowBandDetector()
        self.column_slicer = column_slicer or ColumnSlicer()
        self.first_band_cap = first_band_cap

    def segment(self, gray: np.ndarray, spec: RegionSpec) -> Segmentation:
        bands = self.band_detector.detect(gray, max_bands=max(1, spec.rows))
        used_fallback = False
        if not bands:
            logger.info("[bands] %s: no bands found, using full-height fallback", spec.label)
            bands = [self.band_detector.fallback_band(gray.shape[0])]
            used_fallback = True

        counts = allocate_digits(spec.digits, len(bands), self.first_band_cap)

        slices: List[Slice] = []
        for band_index, (band, count) in enumerate(zip(bands, counts)):
            if count == 0:
                continue
            for rect in self.column_slicer.slice_band(gray, band, count):
                slices.append(Slice(index=len(slices), band_index=band_index, rect=rect))

        return Segmentation(bands=bands, slices=slices,
                            used_band_fallback=used_fallback, strategy=self.name)


def group_rows(boxes: Sequence[CharBox]) -> List[List[CharBox]]:
    """
    Cluster character boxes into rows by y-center, top to bottom.

    Each row is sorted left to right.
    """
    if not boxes:
        return []

    from sklearn.cluster import DBSCAN

    heights = [b.rect.height for b in boxes]
    eps = max(1.0, float(np.median(heights)) * 0.5)
    y_centers = np.array([[b.rect.center_y] for b in boxes])
    labels = DBSCAN(eps=eps, min_samples=1).fit(y_centers).labels_

    groups = {}
    for box, label in zip(boxes, labels):
        groups.setdefault(label, []).append(box)

    rows = [sorted(items, key=lambda b: b.rect.x) for items in groups.values()]
    rows.sort(key=lambda row: float(np.mean([b.rect.center_y for b in row])))
    return rows


class BoxOrderSlicer(SlicingStrategy):
    """
    Slices taken from character boxes reported by the recognition engine.

    Falls back to another strategy when the engine does not report enough
    single-digit boxes.
    """

    name = "boxes"

    def __init__(self, engine, fallback: SlicingStrategy = None, pad_ratio: float = 0.15):
        self.engine = engine
        self.fallback = fallback or ProjectionSlicer()
        self.pad_ratio = pad_ratio

    def segment(self, gray: np.ndarray, spec: RegionSpec) -> Segmentation:
        try:
            boxes = self.engine.detect_characters(gray)
        except Exception as e:
            logger.warning("[boxes] %s: character detection failed: %s", spec.label, e)
            boxes = []

        digits = [b for b in boxes if len(b.text) == 1 and b.text in DIGIT_CHARS]
        picked = self._pick(group_rows(digits), spec.digits)

        if picked is None:
            logger.info("[boxes] %s: %d digit boxes for %d digits, delegating to %s",
                        spec.label, len(digits), spec.digits, self.fallback.name)
            return self.fallback.segment(gray, spec)

        height, width = gray.shape[:2]
        bands: List[Band] = []
        slices: List[Slice] = []
        for row in picked:
            y0 = max(0, min(b.rect.y for b in row))
            y1 = min(height, max(b.rect.bottom for b in row))
            bands.append(Band(y0=y0, y1=max(y0 + 1, y1)))
            for box in row:
                pad = int(round(box.rect.height * self.pad_ratio))
                rect = Rect(box.rect.x - pad, box.rect.y - pad,
                            box.rect.width + 2 * pad, box.rect.height + 2 * pad)
                slices.append(Slice(index=len(slices), band_index=len(bands) - 1,
                                    rect=rect.clamp(width, height)))

        return Segmentation(bands=bands, slices=slices, strategy=self.name)

    def _pick(self, rows: List[List[CharBox]], n: int) -> Optional[List[List[CharBox]]]:
        """Choose n boxes in reading order, grouped per row, or None if there are too few."""
        if not rows:
            return None

        best_index = max(range(len(rows)), key=lambda i: (len(rows[i]), -i))
        if len(rows[best_index]) >= n:
            # Extra boxes usually precede the number, keep the rightmost n
            return [rows[best_index][-n:]]

        if sum(len(r) for r in rows) < n:
            return None

        picked = []
        remaining = n
        for row in rows:
            take = row[:remaining]
            picked.append(take)
            remaining -= len(take)
            if remaining == 0:
                break
        return picked
