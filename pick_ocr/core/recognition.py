"""
OCR recognition engines for the pick reader.

Contains engine wrappers for Tesseract, EasyOCR and the Google Cloud Vision REST
API, plus the DigitRecognizer adapter that turns any engine response for one
slice into a single digit or the unknown sentinel.
"""

import base64
import logging
import os
import re
import shutil
from typing import List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageOps

from .errors import RecognitionUnknown
from .utils import UNKNOWN, CharBox, Rect, RecognitionResult


logger = logging.getLogger(__name__)

DIGITS = "0123456789"
VISION_URL = "https://vision.googleapis.com/v1/images:annotate"


def _setup_tesseract_path() -> Optional[str]:
    for p in [os.environ.get("TESSERACT_CMD"), shutil.which("tesseract")]:
        if p and os.path.isfile(p):
            import pytesseract
            pytesseract.pytesseract.tesseract_cmd = p
            return p
    return None


def _pad_white(image: np.ndarray, pad: int) -> np.ndarray:
    """Surround a grayscale slice with a white border (single glyphs need breathing room)."""
    pil = Image.fromarray(image)
    if pil.mode != "L":
        pil = pil.convert("L")
    return np.asarray(ImageOps.expand(pil, border=pad, fill=255))


def _polygon_to_rect(polygon) -> Rect:
    xs = [int(p[0]) for p in polygon]
    ys = [int(p[1]) for p in polygon]
    return Rect(min(xs), min(ys), max(1, max(xs) - min(xs)), max(1, max(ys) - min(ys)))


def _split_token(text: str, conf: float, rect: Rect) -> List[CharBox]:
    """Split a multi-character token box evenly into per-character boxes."""
    n = len(text)
    if n <= 1:
        return [CharBox(text, conf, rect)]
    step = rect.width / n
    boxes = []
    for i, ch in enumerate(text):
        x0 = rect.x + int(round(i * step))
        x1 = rect.x + int(round((i + 1) * step))
        boxes.append(CharBox(ch, conf, Rect(x0, rect.y, max(1, x1 - x0), rect.height)))
    return boxes


class OCREngine:
    """Wrapper for OCR engines (Tesseract, EasyOCR, Google Cloud Vision)."""

    def __init__(
        self,
        engine_name: str = "tesseract",
        lang: str = "en",
        api_key: str = None,
        timeout: float = 10.0,
        pad: int = 8
    ):
        self.engine_name = engine_name.lower()
        self.lang = lang
        self.api_key = api_key
        self.timeout = timeout
        self.pad = pad
        self.engine = None
        self._initialize_engine()

    def _initialize_engine(self):
        """Initialize the selected OCR engine."""
        if self.engine_name == "easyocr":
            try:
                import easyocr
                self.engine = easyocr.Reader([self.lang], gpu=False, verbose=False)
                logger.info("[ocr] initialized EasyOCR (lang=%s)", self.lang)
            except ImportError:
                logger.warning("[ocr] EasyOCR not available, falling back to Tesseract")
                self.engine_name = "tesseract"
                self._initialize_engine()

        elif self.engine_name == "tesseract":
            try:
                import pytesseract
            except ImportError:
                raise RuntimeError("No OCR engine available. Install pytesseract or easyocr.")
            self.engine = pytesseract
            cmd = _setup_tesseract_path()
            logger.info("[ocr] initialized Tesseract (%s)", cmd or "default binary")

        elif self.engine_name == "vision":
            import requests
            self.api_key = self.api_key or os.environ.get("VISION_API_KEY", "")
            if not self.api_key:
                raise RuntimeError("Google Cloud Vision needs VISION_API_KEY")
            self.engine = requests.Session()
            logger.info("[ocr] initialized Google Cloud Vision REST client")

        else:
            raise ValueError(f"unknown OCR engine: {self.engine_name}")

    def recognize_char(self, image: np.ndarray) -> Tuple[str, Optional[float]]:
        """
        Recognize a single glyph.

        Returns:
            (text, confidence); confidence is None when the engine gives none.
        """
        if image is None or image.size == 0:
            return "", None

        padded = _pad_white(image, self.pad)

        if self.engine_name == "tesseract":
            return self._recognize_tesseract(padded)
        elif self.engine_name == "easyocr":
            return self._recognize_easyocr(padded)
        elif self.engine_name == "vision":
            return self._recognize_vision(padded)
        return "", None

    def detect_characters(self, image: np.ndarray) -> List[CharBox]:
        """Per-character boxes for a whole region crop, in crop coordinates."""
        if image is None or image.size == 0:
            return []

        if self.engine_name == "tesseract":
            return self._boxes_tesseract(image)
        elif self.engine_name == "easyocr":
            return self._boxes_easyocr(image)
        elif self.engine_name == "vision":
            return self._boxes_vision(image)
        return []

    # --- Tesseract -----------------------------------------------------------

    def _tesseract_config(self, psm: int) -> str:
        return f"--oem 1 --psm {psm} -c tessedit_char_whitelist={DIGITS}"

    def _recognize_tesseract(self, image: np.ndarray) -> Tuple[str, Optional[float]]:
        data = self.engine.image_to_data(
            image, config=self._tesseract_config(10),
            output_type=self.engine.Output.DICT
        )
        texts = []
        confs = []
        for text, conf in zip(data.get("text", []), data.get("conf", [])):
            text = (text or "").strip()
            if not text:
                continue
            texts.append(text)
            c = float(conf)
            if c >= 0:
                confs.append(c / 100.0)
        conf = sum(confs) / len(confs) if confs else None
        return "".join(texts), conf

    def _boxes_tesseract(self, image: np.ndarray) -> List[CharBox]:
        height = image.shape[0]
        raw = self.engine.image_to_boxes(image, config=self._tesseract_config(7))
        boxes = []
        for line in raw.splitlines():
            parts = line.split()
            if len(parts) < 5:
                continue
            ch = parts[0]
            x1, y1, x2, y2 = (int(v) for v in parts[1:5])
            # Tesseract box origin is bottom-left
            rect = Rect(x1, height - y2, max(1, x2 - x1), max(1, y2 - y1))
            boxes.append(CharBox(ch, 0.5, rect))
        return boxes

    # --- EasyOCR -------------------------------------------------------------

    def _recognize_easyocr(self, image: np.ndarray) -> Tuple[str, Optional[float]]:
        result = self.engine.readtext(image, allowlist=DIGITS, detail=1, paragraph=False)
        if not result:
            return "", None
        texts = [item[1] for item in result]
        confs = [float(item[2]) for item in result]
        return "".join(texts), sum(confs) / len(confs)

    def _boxes_easyocr(self, image: np.ndarray) -> List[CharBox]:
        result = self.engine.readtext(
            image, allowlist=DIGITS, detail=1, paragraph=False,
            width_ths=0.1  # Prevent horizontal merging of neighbouring digits
        )
        boxes = []
        for polygon, text, conf in result:
            text = (text or "").strip()
            if text:
                boxes.extend(_split_token(text, float(conf), _polygon_to_rect(polygon)))
        return boxes

    # --- Google Cloud Vision -------------------------------------------------

    def _annotate_vision(self, image: np.ndarray) -> dict:
        ok, buffer = cv2.imencode('.png', image)
        if not ok:
            raise RuntimeError("could not encode slice as PNG")
        payload = {
            "requests": [{
                "image": {"content": base64.b64encode(buffer).decode('utf-8')},
                "features": [{"type": "TEXT_DETECTION"}],
            }]
        }
        response = self.engine.post(
            VISION_URL, params={"key": self.api_key},
            json=payload, timeout=self.timeout
        )
        response.raise_for_status()
        responses = response.json().get("responses", [])
        result = responses[0] if responses else {}
        if "error" in result:
            raise RuntimeError(result["error"].get("message", "vision error"))
        return result

    def _recognize_vision(self, image: np.ndarray) -> Tuple[str, Optional[float]]:
        result = self._annotate_vision(image)
        annotations = result.get("textAnnotations") or []
        text = annotations[0].get("description", "") if annotations else ""
        return text.strip(), None

    def _boxes_vision(self, image: np.ndarray) -> List[CharBox]:
        result = self._annotate_vision(image)
        boxes = []
        # The first annotation is the full text, the rest are tokens
        for ann in (result.get("textAnnotations") or [])[1:]:
            vertices = ann.get("boundingPoly", {}).get("vertices", [])
            text = (ann.get("description") or "").strip()
            if not text or not vertices:
                continue
            polygon = [(v.get("x", 0), v.get("y", 0)) for v in vertices]
            boxes.extend(_split_token(text, 1.0, _polygon_to_rect(polygon)))
        return boxes


class DigitRecognizer:
    """
    Adapter from an OCR engine to per-slice digit results.

    Any engine error, empty or non-digit answer becomes the unknown sentinel;
    nothing raised by the engine escapes `recognize`.
    """

    def __init__(self, engine, min_confidence: float = 0.0):
        if not 0 <= min_confidence <= 1:
            raise ValueError("min_confidence must be in [0, 1]")
        self.engine = engine
        self.min_confidence = min_confidence

    def recognize(
        self,
        image: np.ndarray,
        slice_index: int = 0,
        label: str = ""
    ) -> RecognitionResult:
        text, conf = "", None
        try:
            text, conf = self.engine.recognize_char(image)
            text = "" if text is None else str(text)
            char = self._to_digit(text, conf, label)
        except RecognitionUnknown as e:
            logger.info("[%s] %s slice %d: %s", e.stage, label, slice_index, e)
            return RecognitionResult(slice_index, UNKNOWN, conf, text)
        except Exception as e:
            logger.warning("[recognize] %s slice %d: engine error: %s", label, slice_index, e)
            return RecognitionResult(slice_index, UNKNOWN)

        return RecognitionResult(slice_index, char, conf, text)

    def _to_digit(self, text: str, conf: Optional[float], label: str) -> str:
        digits = re.findall(r"[0-9]", text.strip())
        if len(digits) != 1:
            raise RecognitionUnknown(f"no single digit in {text!r}", label=label, stage="recognize")
        if conf is not None and conf < self.min_confidence:
            raise RecognitionUnknown(
                f"confidence {conf:.2f} below {self.min_confidence:.2f}",
                label=label, stage="recognize"
            )
        return digits[0]
