"""
Core module for the pick reader.

This package contains modular components for reading pick numbers:
- utils: Data classes, image I/O, and debug artifacts
- config: Environment settings and region calibration files
- calibration: Label to pixel rectangle resolution
- preprocessing: Crop normalization
- detection: Row bands, column slicing, and slicing strategies
- recognition: OCR engine wrappers and the per-slice digit adapter
- postprocessing: Assembly and validation of digit strings
- publishing: Persisted results and the all-or-nothing publisher
- capture: Screenshot sources
- pipeline: Cycle orchestration
"""

# Data classes
from .utils import (
    UNKNOWN,
    LABELS,
    EXPECTED_DIGITS,
    Rect,
    RawImage,
    RegionSpec,
    Band,
    Slice,
    CharBox,
    RecognitionResult,
    DigitString,
    RegionReading,
)

# File I/O utilities
from .utils import (
    load_image,
    iter_captures,
    save_json,
    draw_annotations,
    save_debug_artifacts,
)

# Errors
from .errors import (
    PickOCRError,
    ConfigError,
    CaptureUnavailable,
    RegionOutOfBounds,
    RecognitionUnknown,
    ValidationFailed,
    CycleTimeout,
    PublishRejected,
)

# Configuration
from .config import Settings, PipelineConfig, load_pipeline_config

# Calibration
from .calibration import RegionCalibrator, fraction_to_rect

# Preprocessing
from .preprocessing import ImagePreprocessor

# Detection
from .detection import (
    RowBandDetector,
    ColumnSlicer,
    SlicingStrategy,
    ProjectionSlicer,
    BoxOrderSlicer,
    allocate_digits,
    group_rows,
)

# Recognition
from .recognition import OCREngine, DigitRecognizer

# Postprocessing
from .postprocessing import DigitAssembler, is_valid_digits, publish_candidate

# Publishing
from .publishing import PickResults, ResultStore, Publisher

# Capture
from .capture import ImageFileCapture, LatestFileCapture

# Main pipeline
from .pipeline import PickOCRPipeline, CycleReport, build_pipeline


__all__ = [
    # Data classes
    "UNKNOWN",
    "LABELS",
    "EXPECTED_DIGITS",
    "Rect",
    "RawImage",
    "RegionSpec",
    "Band",
    "Slice",
    "CharBox",
    "RecognitionResult",
    "DigitString",
    "RegionReading",
    # File I/O
    "load_image",
    "iter_captures",
    "save_json",
    "draw_annotations",
    "save_debug_artifacts",
    # Errors
    "PickOCRError",
    "ConfigError",
    "CaptureUnavailable",
    "RegionOutOfBounds",
    "RecognitionUnknown",
    "ValidationFailed",
    "CycleTimeout",
    "PublishRejected",
    # Configuration
    "Settings",
    "PipelineConfig",
    "load_pipeline_config",
    # Calibration
    "RegionCalibrator",
    "fraction_to_rect",
    # Preprocessing
    "ImagePreprocessor",
    # Detection
    "RowBandDetector",
    "ColumnSlicer",
    "SlicingStrategy",
    "ProjectionSlicer",
    "BoxOrderSlicer",
    "allocate_digits",
    "group_rows",
    # Recognition
    "OCREngine",
    "DigitRecognizer",
    # Postprocessing
    "DigitAssembler",
    "is_valid_digits",
    "publish_candidate",
    # Publishing
    "PickResults",
    "ResultStore",
    "Publisher",
    # Capture
    "ImageFileCapture",
    "LatestFileCapture",
    # Pipeline
    "PickOCRPipeline",
    "CycleReport",
    "build_pipeline",
]
