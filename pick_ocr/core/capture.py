"""
Capture sources for the pick reader.

A capture source hands the pipeline one RawImage per cycle. Browser automation
that produces the screenshot lives outside this package; these sources read the
resulting files.
"""

import logging
from pathlib import Path

from .errors import CaptureUnavailable
from .utils import IMAGE_EXTENSIONS, RawImage, load_image


logger = logging.getLogger(__name__)


class ImageFileCapture:
    """Always reads the same file, e.g. a screenshot overwritten by the scraper."""

    def __init__(self, path):
        self.path = Path(path)

    def capture(self) -> RawImage:
        if not self.path.is_file():
            raise CaptureUnavailable(f"no screenshot at {self.path}", stage="capture")
        raw = load_image(str(self.path))
        if raw is None:
            raise CaptureUnavailable(f"could not decode {self.path}", stage="capture")
        return raw


class LatestFileCapture:
    """Reads the most recently modified image in a directory."""

    def __init__(self, directory):
        self.directory = Path(directory)

    def capture(self) -> RawImage:
        if not self.directory.is_dir():
            raise CaptureUnavailable(f"capture directory missing: {self.directory}", stage="capture")

        candidates = [
            f for f in self.directory.iterdir()
            if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
        ]
        if not candidates:
            raise CaptureUnavailable(f"no images in {self.directory}", stage="capture")

        newest = max(candidates, key=lambda f: (f.stat().st_mtime, f.name))
        raw = load_image(str(newest))
        if raw is None:
            raise CaptureUnavailable(f"could not decode {newest}", stage="capture")
        logger.debug("[capture] using %s", newest)
        return raw
