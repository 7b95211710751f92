"""
Assembly and validation of per-label digit strings.
"""

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ValidationFailed
from .utils import LABELS, UNKNOWN, DigitString, RecognitionResult


logger = logging.getLogger(__name__)


def is_valid_digits(text: Optional[str], expected: int) -> bool:
    """True iff `text` is exactly `expected` decimal digits."""
    if not isinstance(text, str):
        return False
    return re.fullmatch(r"[0-9]{%d}" % expected, text) is not None


class DigitAssembler:
    """Concatenates slice results into a DigitString and validates it."""

    def assemble(
        self,
        label: str,
        expected: int,
        results: Iterable[RecognitionResult]
    ) -> DigitString:
        ordered: List[RecognitionResult] = sorted(results, key=lambda r: r.slice_index)
        text = "".join(r.char for r in ordered)

        try:
            self.validate(label, text, expected)
        except ValidationFailed as e:
            logger.warning("[%s] %s: %s", e.stage, label, e)
            return DigitString(label, text, expected, False, str(e), ordered)

        return DigitString(label, text, expected, True, "", ordered)

    def validate(self, label: str, text: str, expected: int) -> None:
        if UNKNOWN in text:
            unknown = text.count(UNKNOWN)
            raise ValidationFailed(
                f"{unknown} unrecognized slice(s) in {text!r}", label=label, stage="validate"
            )
        if len(text) != expected:
            raise ValidationFailed(
                f"expected {expected} digits, got {len(text)} in {text!r}",
                label=label, stage="validate"
            )
        if not is_valid_digits(text, expected):
            raise ValidationFailed(f"non-digit character in {text!r}", label=label, stage="validate")


def publish_candidate(strings: Mapping[str, DigitString]) -> Dict[str, Optional[str]]:
    """
    Candidate set for the publisher: the value of every valid label, None otherwise.

    Labels missing from `strings` are None as well.
    """
    return {
        label: (strings[label].value if label in strings else None)
        for label in LABELS
    }
