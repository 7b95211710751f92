"""
Image preprocessing for the pick reader.

Turns a raw region crop into an upscaled, contrast-normalized grayscale image
with dark glyphs on a light background. Every step is deterministic so the same
capture always produces the same crop.
"""

import cv2
import numpy as np


POLARITIES = ("auto", "dark_on_light", "light_on_dark")


class ImagePreprocessor:
    """Fixed preprocessing pipeline for small on-screen digits."""

    def __init__(
        self,
        scale: int = 3,
        interpolation: int = cv2.INTER_CUBIC,
        polarity: str = "auto",
        binarize: bool = False,
        binarize_cutoff: int = 160,
        smooth_kernel: int = 3
    ):
        if int(scale) != scale or scale < 1:
            raise ValueError("scale must be a positive integer")
        if polarity not in POLARITIES:
            raise ValueError(f"unknown polarity: {polarity}")
        self.scale = int(scale)
        self.interpolation = interpolation
        self.polarity = polarity
        self.binarize = binarize
        self.binarize_cutoff = binarize_cutoff
        self.smooth_kernel = smooth_kernel

    def preprocess(self, crop: np.ndarray) -> np.ndarray:
        """
        Full preprocessing pipeline.

        Args:
            crop: BGR, BGRA or grayscale region crop

        Returns:
            uint8 grayscale image, `scale` times larger, glyphs dark on light
        """
        if crop is None or crop.size == 0:
            raise ValueError("cannot preprocess an empty crop")

        gray = self._to_gray(crop)

        # Upscale
        if self.scale > 1:
            h, w = gray.shape[:2]
            gray = cv2.resize(
                gray, (w * self.scale, h * self.scale),
                interpolation=self.interpolation
            )

        gray = self._stretch_contrast(gray)

        if self._needs_inversion(gray):
            gray = 255 - gray

        if self.binarize:
            _, gray = cv2.threshold(gray, self.binarize_cutoff, 255, cv2.THRESH_BINARY)
            # Light smoothing to drop binarization speckle
            if self.smooth_kernel > 1:
                gray = cv2.medianBlur(gray, self.smooth_kernel | 1)

        return gray

    def _to_gray(self, image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image.astype(np.uint8, copy=True)
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    def _stretch_contrast(self, gray: np.ndarray) -> np.ndarray:
        """Min-max stretch to 0..255. Flat crops are left untouched."""
        lo, hi = int(gray.min()), int(gray.max())
        if hi <= lo:
            return gray
        return cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

    def _needs_inversion(self, gray: np.ndarray) -> bool:
        if self.polarity == "dark_on_light":
            return False
        if self.polarity == "light_on_dark":
            return True
        # Background dominates the crop, so a dark median means light glyphs
        return float(np.median(gray)) < 128.0
