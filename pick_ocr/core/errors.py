"""
Error taxonomy for the pick reader.

Nothing here is fatal to the process: region-level errors are recorded on the
affected DigitString and logged with label and stage, cycle-level errors end the
cycle without publishing.
"""

from typing import Dict, Optional


class PickOCRError(Exception):
    """Base class for all pick reader errors."""

    def __init__(self, message: str = "", label: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.label = label
        self.stage = stage


class ConfigError(PickOCRError):
    """Raised when region or tuning configuration cannot be loaded."""
    pass


class CaptureUnavailable(PickOCRError):
    """Raised when no raw image is available for the cycle."""
    pass


class RegionOutOfBounds(PickOCRError):
    """A configured rectangle did not fit the image and was clamped."""
    pass


class RecognitionUnknown(PickOCRError):
    """A slice's character could not be determined."""
    pass


class ValidationFailed(PickOCRError):
    """An assembled string has the wrong length or a non-digit character."""
    pass


class CycleTimeout(PickOCRError):
    """The region sub-pipelines did not finish within the cycle deadline."""
    pass


class PublishRejected(PickOCRError):
    """The publisher declined an incomplete or invalid result set."""

    def __init__(self, message: str = "", details: Optional[Dict[str, bool]] = None):
        super().__init__(message, stage="publish")
        self.details = dict(details or {})
