"""
Configuration for the pick reader.

Two layers:
- Settings: process-level knobs read from the environment
- PipelineConfig: region calibration and tuning constants read from a JSON file

Calibration rectangles and thresholds depend on the captured page and are meant
to be swapped per deployment; the built-in defaults are only a starting point.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .detection import ColumnSlicer, RowBandDetector
from .errors import ConfigError
from .preprocessing import ImagePreprocessor
from .recognition import DigitRecognizer
from .utils import EXPECTED_DIGITS, LABELS, RegionSpec


logger = logging.getLogger(__name__)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_path(name: str, default: Optional[str]) -> Optional[Path]:
    raw = (os.getenv(name) or default or "").strip()
    return Path(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    # OCR
    engine: str  # tesseract | easyocr | vision
    vision_api_key: str

    # Files
    regions_path: Optional[Path]
    state_path: Optional[Path]
    debug_dir: Optional[Path]

    # Cycle
    cycle_timeout: float
    max_workers: int

    # Strategy points
    slicer: str  # peaks | boxes
    calibration: str  # auto | fixed | fractional

    log_level: str

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            engine=(os.getenv("PICK_OCR_ENGINE") or "tesseract").strip().lower(),
            vision_api_key=(os.getenv("VISION_API_KEY") or "").strip(),
            regions_path=_get_path("PICK_OCR_REGIONS", None),
            state_path=_get_path("PICK_OCR_STATE_PATH", "data/results.json"),
            debug_dir=_get_path("PICK_OCR_DEBUG_DIR", None),
            cycle_timeout=_get_float("PICK_OCR_CYCLE_TIMEOUT", 60.0),
            max_workers=max(1, _get_int("PICK_OCR_MAX_WORKERS", 4)),
            slicer=(os.getenv("PICK_OCR_SLICER") or "peaks").strip().lower(),
            calibration=(os.getenv("PICK_OCR_CALIBRATION") or "auto").strip().lower(),
            log_level=(os.getenv("PICK_OCR_LOG_LEVEL") or "INFO").strip().upper(),
        )


# Example calibration for a 1280x720 capture of the results page
DEFAULT_REFERENCE_SIZE = (1280, 720)
DEFAULT_REGIONS: Dict[str, Dict[str, Any]] = {
    "P2": {"digits": 2, "rows": 1, "rect_px": [107, 286, 102, 54], "rect_frac": [0.0836, 0.397, 0.0797, 0.075]},
    "P3": {"digits": 3, "rows": 1, "rect_px": [94, 325, 160, 51], "rect_frac": [0.0734, 0.451, 0.125, 0.071]},
    "P4": {"digits": 4, "rows": 1, "rect_px": [94, 363, 211, 54], "rect_frac": [0.0734, 0.504, 0.165, 0.075]},
    "P5": {"digits": 5, "rows": 2, "rect_px": [94, 424, 262, 66], "rect_frac": [0.0734, 0.589, 0.205, 0.092]},
}


@dataclass
class PipelineConfig:
    """Region calibration plus keyword arguments for each pipeline component."""
    regions: List[RegionSpec]
    reference_size: Tuple[int, int] = DEFAULT_REFERENCE_SIZE
    preprocess: Dict[str, Any] = field(default_factory=dict)
    bands: Dict[str, Any] = field(default_factory=dict)
    columns: Dict[str, Any] = field(default_factory=dict)
    recognizer: Dict[str, Any] = field(default_factory=dict)
    first_band_cap: int = 4

    def region(self, label: str) -> RegionSpec:
        for spec in self.regions:
            if spec.label == label:
                return spec
        raise KeyError(label)


def _quad(value, name: str, cast) -> Optional[tuple]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)) or len(value) != 4:
        raise ConfigError(f"{name} must be a list of four numbers")
    try:
        return tuple(cast(v) for v in value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a list of four numbers")


def parse_regions(raw: Dict[str, Any]) -> List[RegionSpec]:
    """Build RegionSpecs for every pick label from a {label: {...}} mapping."""
    if not isinstance(raw, dict):
        raise ConfigError("regions must be an object keyed by label", stage="config")

    specs = []
    for label in LABELS:
        entry = raw.get(label)
        if entry is None:
            raise ConfigError(f"missing region for {label}", label=label, stage="config")
        if not isinstance(entry, dict):
            raise ConfigError(f"region for {label} must be an object", label=label, stage="config")

        try:
            digits = int(entry.get("digits", EXPECTED_DIGITS[label]))
            rows = max(1, int(entry.get("rows", 1)))
        except (TypeError, ValueError):
            raise ConfigError(f"{label}: digits and rows must be integers", label=label, stage="config")
        if digits != EXPECTED_DIGITS[label]:
            raise ConfigError(
                f"{label} must have {EXPECTED_DIGITS[label]} digits, got {digits}",
                label=label, stage="config"
            )

        rect_px = _quad(entry.get("rect_px"), f"{label}.rect_px", int)
        rect_frac = _quad(entry.get("rect_frac"), f"{label}.rect_frac", float)
        if rect_px is None and rect_frac is None:
            raise ConfigError(f"{label} needs rect_px or rect_frac", label=label, stage="config")

        specs.append(RegionSpec(
            label=label,
            digits=digits,
            rows=rows,
            rect_px=rect_px,
            rect_frac=rect_frac,
        ))
    return specs


SECTIONS = {
    "preprocess": ImagePreprocessor,
    "bands": RowBandDetector,
    "columns": ColumnSlicer,
    "recognizer": lambda **kwargs: DigitRecognizer(None, **kwargs),
}


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Keyword arguments for one component, checked by building it once."""
    values = data.get(name, {})
    if not isinstance(values, dict):
        raise ConfigError(f"{name} must be an object", stage="config")
    try:
        SECTIONS[name](**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: {e}", stage="config")
    return dict(values)


def load_pipeline_config(path: Optional[Path] = None) -> PipelineConfig:
    """
    Load calibration and tuning from JSON.

    Without a path, or when the file does not exist, the built-in example
    calibration is used.

    Raises:
        ConfigError: if the file exists but cannot be parsed, is incomplete,
            or names an unknown or out-of-range tuning setting.
    """
    if path is None:
        return PipelineConfig(regions=parse_regions(DEFAULT_REGIONS))

    path = Path(path)
    if not path.exists():
        logger.warning("[config] %s not found, using built-in regions", path)
        return PipelineConfig(regions=parse_regions(DEFAULT_REGIONS))

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read {path}: {e}", stage="config")

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be an object", stage="config")

    ref = data.get("reference_size", DEFAULT_REFERENCE_SIZE)
    try:
        reference_size = (int(ref[0]), int(ref[1]))
        if len(ref) != 2 or min(reference_size) < 1:
            raise ValueError(ref)
    except (TypeError, ValueError, KeyError, IndexError):
        raise ConfigError("reference_size must be [width, height]", stage="config")

    try:
        first_band_cap = int(data.get("first_band_cap", 4))
    except (TypeError, ValueError):
        first_band_cap = 0
    if first_band_cap < 1:
        raise ConfigError("first_band_cap must be a positive integer", stage="config")

    return PipelineConfig(
        regions=parse_regions(data.get("regions", {})),
        reference_size=reference_size,
        preprocess=_section(data, "preprocess"),
        bands=_section(data, "bands"),
        columns=_section(data, "columns"),
        recognizer=_section(data, "recognizer"),
        first_band_cap=first_band_cap,
    )
