"""
Persisted pick results and the all-or-nothing publisher.

ResultStore owns the last published record. Writes go through a temp file and
an atomic rename under a lock, so readers never observe a partial record.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .errors import PublishRejected
from .postprocessing import is_valid_digits
from .utils import EXPECTED_DIGITS, LABELS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PickResults:
    """One published record."""
    at: str
    P2: Optional[str]
    P3: Optional[str]
    P4: Optional[str]
    P5: Optional[str]
    source: str = "ocr"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> 'PickResults':
        return cls(
            at=str(data.get("at") or ""),
            P2=data.get("P2"),
            P3=data.get("P3"),
            P4=data.get("P4"),
            P5=data.get("P5"),
            source=str(data.get("source") or "ocr"),
        )


Subscriber = Callable[[PickResults], None]


class ResultStore:
    """Single owner of the last published pick results."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._replace_lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._current: Optional[PickResults] = self._load()

    def _load(self) -> Optional[PickResults]:
        if self.path is None or not self.path.exists():
            return None
        try:
            with open(self.path, "r") as f:
                return PickResults.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning("[store] could not read %s: %s", self.path, e)
            return None

    def latest(self) -> Optional[PickResults]:
        with self._lock:
            return self._current

    def replace(self, results: PickResults) -> None:
        """Atomically persist `results` and make them current, then notify subscribers."""
        # Whole replacements are serialized so notifications arrive in write order
        with self._replace_lock:
            with self._lock:
                if self.path is not None:
                    self._write(results)
                self._current = results
                subscribers = list(self._subscribers)

            for callback in subscribers:
                try:
                    callback(results)
                except Exception:
                    logger.exception("[store] subscriber %r failed", callback)

    def reset(self) -> PickResults:
        """Replace the current record with an all-empty one."""
        cleared = PickResults(at=_now(), P2=None, P3=None, P4=None, P5=None, source="reset")
        self.replace(cleared)
        return cleared

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for accepted results; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _write(self, results: PickResults) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(results.to_dict(), f, indent=2)
            os.replace(tmp, self.path)
        finally:
            if tmp.exists():
                tmp.unlink()


class Publisher:
    """Accepts a pick set only when all four labels are exact-length digit strings."""

    def __init__(self, store: ResultStore):
        self.store = store

    def publish(self, candidate: Mapping[str, Optional[str]], source: str = "ocr") -> PickResults:
        """
        Validate and persist a candidate set.

        Raises:
            PublishRejected: if any label is missing or invalid. The store is
                left untouched.
        """
        details = {
            label: is_valid_digits(candidate.get(label), EXPECTED_DIGITS[label])
            for label in LABELS
        }
        if not all(details.values()):
            failed = ", ".join(label for label, ok in details.items() if not ok)
            raise PublishRejected(f"invalid or missing: {failed}", details=details)

        results = PickResults(
            at=_now(),
            P2=str(candidate["P2"]),
            P3=str(candidate["P3"]),
            P4=str(candidate["P4"]),
            P5=str(candidate["P5"]),
            source=source,
        )
        self.store.replace(results)
        logger.info("[publish] accepted P2=%s P3=%s P4=%s P5=%s (%s)",
                    results.P2, results.P3, results.P4, results.P5, source)
        return results


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
