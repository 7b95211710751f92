"""
Cycle orchestration for the pick reader.

One cycle: capture -> (per label, concurrently) calibrate, crop, preprocess,
segment, recognize, assemble -> all-or-nothing publish.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


from .calibration import RegionCalibrator
from .config import PipelineConfig, Settings, load_pipeline_config
from .detection import BoxOrderSlicer, ColumnSlicer, ProjectionSlicer, RowBandDetector, SlicingStrategy
from .errors import CaptureUnavailable, CycleTimeout, PublishRejected
from .postprocessing import DigitAssembler, publish_candidate
from .preprocessing import ImagePreprocessor
from .publishing import PickResults, Publisher, ResultStore
from .recognition import DigitRecognizer, OCREngine
from .utils import LABELS, DigitString, RawImage, RegionReading, RegionSpec, save_debug_artifacts


logger = logging.getLogger(__name__)

SLICERS = ("peaks", "boxes")


@dataclass
class CycleReport:
    """
    Outcome of one cycle.

    status is one of: published, read (no publish requested), rejected,
    write_failed, busy, no_capture, timeout.
    """
    status: str
    source: str = ""
    captured_at: Optional[datetime] = None
    strings: Dict[str, DigitString] = field(default_factory=dict)
    readings: Dict[str, RegionReading] = field(default_factory=dict)
    published: Optional[PickResults] = None
    details: Dict[str, bool] = field(default_factory=dict)
    message: str = ""
    elapsed: float = 0.0

    @property
    def candidate(self) -> Dict[str, Optional[str]]:
        return publish_candidate(self.strings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "source": self.source,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "elapsed": round(self.elapsed, 3),
            "strings": {
                label: {"text": ds.text, "valid": ds.valid, "reason": ds.reason}
                for label, ds in self.strings.items()
            },
            "published": self.published.to_dict() if self.published else None,
            "details": dict(self.details),
            "message": self.message,
        }


class PickOCRPipeline:
    """Reads the four pick labels from a screenshot and publishes complete sets."""

    def __init__(
        self,
        config: PipelineConfig,
        recognizer: DigitRecognizer,
        strategy: SlicingStrategy = None,
        store: ResultStore = None,
        capture=None,
        calibration: str = "auto",
        debug_dir: Optional[Path] = None,
        cycle_timeout: Optional[float] = 60.0,
        max_workers: int = 4
    ):
        self.config = config
        self.regions = list(config.regions)
        self.calibrator = RegionCalibrator(self.regions, config.reference_size, calibration)
        self.preprocessor = ImagePreprocessor(**config.preprocess)
        self.strategy = strategy or build_strategy("peaks", config)
        self.recognizer = recognizer
        self.assembler = DigitAssembler()
        self.store = store if store is not None else ResultStore()
        self.publisher = Publisher(self.store)
        self.capture = capture
        self.debug_dir = Path(debug_dir) if debug_dir else None
        self.cycle_timeout = cycle_timeout
        self.max_workers = max(1, int(max_workers))

        self._run_lock = threading.Lock()

    # --- Per-region sub-pipeline ---------------------------------------------

    def read_region(self, raw: RawImage, spec: RegionSpec) -> RegionReading:
        """Calibrate, crop, preprocess, segment, recognize and assemble one label."""
        rect = self.calibrator.resolve(*raw.size, spec.label)
        gray = self.preprocessor.preprocess(rect.crop(raw.pixels))

        segmentation = self.strategy.segment(gray, spec)
        results = [
            self.recognizer.recognize(s.rect.crop(gray), s.index, spec.label)
            for s in segmentation.slices
        ]
        digit_string = self.assembler.assemble(spec.label, spec.digits, results)

        reading = RegionReading(
            label=spec.label,
            rect=rect,
            bands=segmentation.bands,
            slices=segmentation.slices,
            digit_string=digit_string,
            used_band_fallback=segmentation.used_band_fallback,
        )
        logger.info("[assemble] %s: %r (%s, %d band(s), %d unknown%s)",
                    spec.label, digit_string.text,
                    "valid" if digit_string.valid else "invalid",
                    len(segmentation.bands),
                    sum(r.is_unknown for r in results),
                    ", fallback" if segmentation.used_band_fallback else "")

        if self.debug_dir is not None:
            save_debug_artifacts(self.debug_dir, reading, gray)

        return reading

    def _read_safely(self, raw: RawImage, spec: RegionSpec) -> RegionReading:
        """read_region, with any failure recorded on an invalid DigitString."""
        try:
            return self.read_region(raw, spec)
        except Exception as e:
            logger.exception("[region] %s: sub-pipeline failed", spec.label)
            rect = self.calibrator.resolve(*raw.size, spec.label)
            failed = DigitString(spec.label, "", spec.digits, False, f"region failed: {e!r}")
            return RegionReading(label=spec.label, rect=rect, digit_string=failed)

    def process_image(self, raw: RawImage, timeout: Optional[float] = None) -> Dict[str, RegionReading]:
        """
        Run every label's sub-pipeline concurrently.

        Returns:
            Readings keyed by label, in label order

        Raises:
            CycleTimeout: if not every region finished within `timeout` seconds.
        """
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        readings: Dict[str, RegionReading] = {}
        try:
            futures = {executor.submit(self._read_safely, raw, spec): spec.label for spec in self.regions}
            try:
                for future in as_completed(futures, timeout=timeout):
                    readings[futures[future]] = future.result()
            except FutureTimeout:
                pending = sorted(label for f, label in futures.items() if not f.done())
                raise CycleTimeout(
                    f"regions still running after {timeout}s: {', '.join(pending)}",
                    stage="cycle"
                )
        finally:
            # Do not block on a hung engine call; abandoned results are discarded
            executor.shutdown(wait=False, cancel_futures=True)

        return {label: readings[label] for label in LABELS if label in readings}

    # --- Cycle ---------------------------------------------------------------

    def run_cycle(self, raw: Optional[RawImage] = None, publish: bool = True) -> CycleReport:
        """
        One full cycle.

        Args:
            raw: Image to read; taken from the capture source when None
            publish: Submit the assembled set to the publisher

        Returns:
            CycleReport; a cycle requested while another runs reports "busy"
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning("[cycle] previous cycle still running, skipping")
            return CycleReport(status="busy", message="previous cycle still running")

        start = time.monotonic()
        try:
            report = self._run_locked(raw, publish)
        finally:
            self._run_lock.release()

        report.elapsed = time.monotonic() - start
        logger.info("[cycle] %s in %.2fs", report.status, report.elapsed)
        return report

    def _run_locked(self, raw: Optional[RawImage], publish: bool) -> CycleReport:
        if raw is None:
            try:
                if self.capture is None:
                    raise CaptureUnavailable("no capture source configured", stage="capture")
                raw = self.capture.capture()
            except CaptureUnavailable as e:
                logger.warning("[%s] %s", e.stage, e)
                return CycleReport(status="no_capture", message=str(e))

        timeout = self.cycle_timeout if self.cycle_timeout and self.cycle_timeout > 0 else None
        try:
            readings = self.process_image(raw, timeout=timeout)
        except CycleTimeout as e:
            logger.error("[%s] %s: aborted without publishing", e.stage, e)
            return CycleReport(status="timeout", source=raw.source,
                               captured_at=raw.captured_at, message=str(e))

        strings = {label: r.digit_string for label, r in readings.items()}
        report = CycleReport(
            status="read",
            source=raw.source,
            captured_at=raw.captured_at,
            strings=strings,
            readings=readings,
            details={label: ds.valid for label, ds in strings.items()},
        )
        if not publish:
            return report

        try:
            report.published = self.publisher.publish(publish_candidate(strings))
            report.status = "published"
        except PublishRejected as e:
            logger.warning("[%s] rejected: %s", e.stage, e)
            report.status = "rejected"
            report.details = e.details
            report.message = str(e)
        except OSError as e:
            logger.error("[publish] could not persist results: %s", e)
            report.status = "write_failed"
            report.message = str(e)

        return report


def build_strategy(name: str, config: PipelineConfig, engine=None) -> SlicingStrategy:
    """Slicing strategy by name; "boxes" needs an engine that reports character boxes."""
    if name not in SLICERS:
        raise ValueError(f"unknown slicer: {name}")

    projection = ProjectionSlicer(
        RowBandDetector(**config.bands),
        ColumnSlicer(**config.columns),
        first_band_cap=config.first_band_cap
    )
    if name == "peaks":
        return projection
    if engine is None:
        raise ValueError("box slicing needs a recognition engine")
    return BoxOrderSlicer(engine, fallback=projection)


def build_pipeline(
    settings: Settings,
    config: Optional[PipelineConfig] = None,
    capture=None,
    engine=None
) -> PickOCRPipeline:
    """Wire a pipeline from environment settings and the region config."""
    if config is None:
        config = load_pipeline_config(settings.regions_path)
    if engine is None:
        engine = OCREngine(settings.engine, api_key=settings.vision_api_key or None)

    recognizer = DigitRecognizer(engine, **config.recognizer)
    return PickOCRPipeline(
        config,
        recognizer,
        strategy=build_strategy(settings.slicer, config, engine),
        store=ResultStore(settings.state_path),
        capture=capture,
        calibration=settings.calibration,
        debug_dir=settings.debug_dir,
        cycle_timeout=settings.cycle_timeout,
        max_workers=settings.max_workers,
    )
