# ============================================================
# Biometric Matching Core
# core/exceptions.py
# ============================================================
# Exception hierarchy shared by every component.
#
# Most of the core degrades instead of raising: invalid input yields
# the zero sentinel, a failing primitive falls back to a simpler one.
# These types are raised only at the public seams that cannot degrade
# (enrolment, gallery records, configuration).
# ============================================================

from __future__ import annotations


class FaceMatchingError(Exception):
    """Base class for all biometric matching errors."""


class InvalidInputError(FaceMatchingError, ValueError):
    """The supplied image or vector cannot be processed at all."""


class ExtractionFailure(FaceMatchingError):
    """
    Feature extraction produced the zero sentinel.

    Raised by ``FaceMatcher.enroll`` so that an unusable sample is never
    written to the gallery.
    """

    def __init__(self, message: str = "Feature extraction failed", person_id: str | None = None) -> None:
        self.person_id = person_id
        suffix = f" (person_id={person_id!r})" if person_id else ""
        super().__init__(f"{message}{suffix}")


class DimensionMismatchError(FaceMatchingError, ValueError):
    """Two vectors that must share a length do not."""

    def __init__(self, expected: int, got: int) -> None:
        self.expected = expected
        self.got = got
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {got}. "
            "Re-enrol the gallery with the current configuration."
        )


class GalleryError(FaceMatchingError):
    """A gallery record is missing, corrupt or cannot be persisted."""
