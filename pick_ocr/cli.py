#!/usr/bin/env python3
"""
Pick reader command line.

Reads the P2..P5 pick numbers off a results screenshot and publishes complete
sets to the results file.

Usage:
    pick-ocr run --image shot.png
    pick-ocr read --image shot.png --engine easyocr
    pick-ocr replay --input captures/ --publish
    pick-ocr latest
    pick-ocr reset
"""

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .core.capture import ImageFileCapture, LatestFileCapture
from .core.config import Settings
from .core.errors import ConfigError
from .core.pipeline import CycleReport, build_pipeline
from .core.publishing import ResultStore
from .core.utils import LABELS, iter_captures, save_json


logger = logging.getLogger("pick_ocr")

EXIT_OK = 0
EXIT_ABORT = 1
EXIT_REJECTED = 2


def _settings_from_args(args) -> Settings:
    """Environment settings with command-line overrides applied."""
    settings = Settings.from_env()
    overrides = {}
    if getattr(args, "engine", None):
        overrides["engine"] = args.engine
    if getattr(args, "regions", None):
        overrides["regions_path"] = Path(args.regions)
    if getattr(args, "state", None):
        overrides["state_path"] = Path(args.state)
    if getattr(args, "debug_dir", None):
        overrides["debug_dir"] = Path(args.debug_dir)
    if getattr(args, "slicer", None):
        overrides["slicer"] = args.slicer
    if getattr(args, "calibration", None):
        overrides["calibration"] = args.calibration
    if getattr(args, "timeout", None) is not None:
        overrides["cycle_timeout"] = args.timeout
    if getattr(args, "verbose", False):
        overrides["log_level"] = "DEBUG"
    return dataclasses.replace(settings, **overrides)


def _print_report(report: CycleReport):
    print("\n" + "=" * 60)
    print(f"CYCLE: {report.status.upper()}")
    print("=" * 60)
    if report.source:
        print(f"Source: {report.source}")
    for label in LABELS:
        ds = report.strings.get(label)
        if ds is None:
            continue
        mark = "ok" if ds.valid else f"invalid ({ds.reason})"
        print(f"  {label}: {ds.text or '-':<6} {mark}")
    if report.message:
        print("-" * 60)
        print(report.message)
    print("=" * 60)


def _exit_code(report: CycleReport) -> int:
    if report.status == "published":
        return EXIT_OK
    if report.status == "read":
        return EXIT_OK if all(report.details.values()) and report.details else EXIT_REJECTED
    if report.status == "rejected":
        return EXIT_REJECTED
    return EXIT_ABORT


# =============================================================================
# Commands
# =============================================================================

def cmd_run(args, settings: Settings) -> int:
    if args.capture_dir:
        capture = LatestFileCapture(args.capture_dir)
    else:
        capture = ImageFileCapture(args.image)

    pipeline = build_pipeline(settings, capture=capture)
    report = pipeline.run_cycle()
    _print_report(report)
    return _exit_code(report)


def cmd_read(args, settings: Settings) -> int:
    pipeline = build_pipeline(settings, capture=ImageFileCapture(args.image))
    report = pipeline.run_cycle(publish=False)
    _print_report(report)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    return _exit_code(report)


def cmd_replay(args, settings: Settings) -> int:
    captures = list(iter_captures(args.input))
    if not captures:
        print(f"Error: no readable images in {args.input}")
        return EXIT_ABORT

    pipeline = build_pipeline(settings)
    reports = []
    for raw in tqdm(captures, desc="Replaying captures"):
        reports.append(pipeline.run_cycle(raw, publish=args.publish))

    complete = sum(1 for r in reports if _exit_code(r) == EXIT_OK)

    print("\n" + "=" * 60)
    print("REPLAY COMPLETE")
    print("=" * 60)
    print(f"Images processed: {len(reports)}")
    print(f"Complete sets: {complete}")
    for r in reports:
        values = " ".join(
            f"{label}={r.strings[label].text or '-'}" for label in LABELS if label in r.strings
        )
        print(f"  {Path(r.source).name}: {r.status:<10} {values}")
    print("=" * 60)

    if args.out:
        save_json({"reports": [r.to_dict() for r in reports]}, Path(args.out))
        print(f"\n[Output] Saved replay report to {args.out}")

    return EXIT_OK


def cmd_latest(args, settings: Settings) -> int:
    results = ResultStore(settings.state_path).latest()
    if results is None:
        print("No published results yet")
        return EXIT_OK
    print(json.dumps(results.to_dict(), indent=2))
    return EXIT_OK


def cmd_reset(args, settings: Settings) -> int:
    cleared = ResultStore(settings.state_path).reset()
    print(json.dumps(cleared.to_dict(), indent=2))
    return EXIT_OK


# =============================================================================
# Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pick-ocr",
        description="Read P2-P5 pick numbers from results screenshots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One cycle on the latest screenshot, publish when all four labels read
  pick-ocr run --image captures/latest.png

  # One cycle on the newest image in a directory
  pick-ocr run --capture-dir captures/

  # Dry run with debug crops
  pick-ocr read --image shot.png --debug-dir debug/

  # Re-read a folder of saved captures
  pick-ocr replay --input captures/ --out replay.json
        """
    )
    parser.add_argument(
        "--state", default=None,
        help="Results file (default: $PICK_OCR_STATE_PATH or data/results.json)"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose output"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    def add_pipeline_args(p):
        p.add_argument(
            "--engine", "-e", choices=["tesseract", "easyocr", "vision"], default=None,
            help="OCR engine (default: $PICK_OCR_ENGINE or tesseract)"
        )
        p.add_argument(
            "--regions", default=None,
            help="Region calibration JSON (default: built-in example calibration)"
        )
        p.add_argument(
            "--slicer", choices=["peaks", "boxes"], default=None,
            help="Slicing strategy (default: peaks)"
        )
        p.add_argument(
            "--calibration", choices=["auto", "fixed", "fractional"], default=None,
            help="Rectangle resolution mode (default: auto)"
        )
        p.add_argument(
            "--debug-dir", dest="debug_dir", default=None,
            help="Write per-label crops and slices here"
        )
        p.add_argument(
            "--timeout", type=float, default=None,
            help="Cycle timeout in seconds (default: 60)"
        )

    p_run = sub.add_parser("run", help="Run one cycle and publish a complete set")
    source = p_run.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", "-i", help="Screenshot file")
    source.add_argument("--capture-dir", dest="capture_dir", help="Use the newest image in this directory")
    add_pipeline_args(p_run)
    p_run.set_defaults(func=cmd_run)

    p_read = sub.add_parser("read", help="Read an image without publishing")
    p_read.add_argument("--image", "-i", required=True, help="Screenshot file")
    p_read.add_argument("--json", action="store_true", help="Also print the cycle report as JSON")
    add_pipeline_args(p_read)
    p_read.set_defaults(func=cmd_read)

    p_replay = sub.add_parser("replay", help="Read every image in a folder")
    p_replay.add_argument("--input", required=True, help="Image file or folder of images")
    p_replay.add_argument("--publish", action="store_true", help="Publish complete sets while replaying")
    p_replay.add_argument("--out", "-o", default=None, help="Write all cycle reports to this JSON file")
    add_pipeline_args(p_replay)
    p_replay.set_defaults(func=cmd_replay)

    p_latest = sub.add_parser("latest", help="Print the last published results")
    p_latest.set_defaults(func=cmd_latest)

    p_reset = sub.add_parser("reset", help="Clear the published results")
    p_reset.set_defaults(func=cmd_reset)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = _settings_from_args(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args, settings)
    except ConfigError as e:
        print(f"Error: invalid configuration: {e}")
        return EXIT_ABORT
    except (RuntimeError, ValueError) as e:
        # Engine missing or misconfigured
        print(f"Error: {e}")
        return EXIT_ABORT
    except OSError as e:
        print(f"Error: could not write results: {e}")
        return EXIT_ABORT


if __name__ == "__main__":
    sys.exit(main())
