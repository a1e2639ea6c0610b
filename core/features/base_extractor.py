# ============================================================
# Biometric Matching Core
# core/features/base_extractor.py
# ============================================================
# Shared data types for everything that turns a face image into
# numbers, plus the abstract contract for extractors.
#
# Hierarchy:
#   BaseExtractor  (abstract)
#       └── FeatureExtractor     (histogram + LBP + edge grid)
#       └── SignatureExtractor   (128-dim coarse signature)
#
# Key data types:
#   RecognitionMode     — FAST | STANDARD | ULTRA_PRECISION
#   FaceEmbedding       — L2-normalised vector, or the zero sentinel
#   BiometricSignature  — 4 × 32 block signature
# ============================================================

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Union

import numpy as np

# Norms below this are treated as zero
EPSILON: float = 1e-10

SIGNATURE_DIM: int = 128
SIGNATURE_BLOCK: int = 32


# ============================================================
# Enums
# ============================================================

class RecognitionMode(str, Enum):
    """Feature set and fusion profile used end-to-end."""

    FAST = "fast"
    STANDARD = "standard"
    ULTRA_PRECISION = "ultra_precision"

    @classmethod
    def parse(cls, value: Union[str, "RecognitionMode"]) -> "RecognitionMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown recognition mode {value!r}. Valid: {valid}") from exc


# ============================================================
# Data Types
# ============================================================

@dataclass(eq=False)
class FaceEmbedding:
    """
    A fixed-length face embedding.

    Every non-sentinel embedding produced by ``FeatureExtractor`` has unit
    L2 norm. The all-zero vector is the extraction-failed sentinel: it is
    never a valid match candidate.

    Attributes:
        vector:  Array of shape (D,), float32.
        mode:    Mode the embedding was produced under, if known.
        quality: Quality score of the source image, if known.
    """

    vector: np.ndarray
    mode: Optional[RecognitionMode] = None
    quality: Optional[float] = None

    def __post_init__(self) -> None:
        self.vector = np.asarray(self.vector, dtype=np.float32).ravel()

    @classmethod
    def sentinel(cls, dim: int, mode: Optional[RecognitionMode] = None) -> "FaceEmbedding":
        """The all-zero 'extraction failed' embedding."""
        return cls(vector=np.zeros(dim, dtype=np.float32), mode=mode)

    # ------------------------------------------------------------------
    # Embedding properties
    # ------------------------------------------------------------------

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    @property
    def norm(self) -> float:
        return float(np.linalg.norm(self.vector))

    @property
    def is_sentinel(self) -> bool:
        """True for the zero vector (or an empty one)."""
        return is_sentinel_vector(self.vector)

    @property
    def is_normalised(self) -> bool:
        return abs(self.norm - 1.0) < 1e-6

    def as_list(self) -> List[float]:
        return self.vector.tolist()

    def __repr__(self) -> str:
        mode = self.mode.value if self.mode else "?"
        if self.is_sentinel:
            return f"FaceEmbedding(dim={self.dim}, mode={mode}, SENTINEL)"
        return f"FaceEmbedding(dim={self.dim}, mode={mode}, norm={self.norm:.4f})"


# ──────────────────────────────────────────────────────────────────────────────

@dataclass(eq=False)
class BiometricSignature:
    """
    Coarse 128-float signature split into four 32-element blocks.

    Blocks (in order): geometry, texture, gradient, frequency.
    Not unit-normalised. All zeros when extraction failed outright.
    """

    vector: np.ndarray

    def __post_init__(self) -> None:
        self.vector = np.asarray(self.vector, dtype=np.float32).ravel()
        if self.vector.shape[0] != SIGNATURE_DIM:
            raise ValueError(
                f"BiometricSignature needs {SIGNATURE_DIM} values, got {self.vector.shape[0]}"
            )

    @classmethod
    def empty(cls) -> "BiometricSignature":
        return cls(vector=np.zeros(SIGNATURE_DIM, dtype=np.float32))

    @classmethod
    def from_blocks(
        cls,
        geometry: np.ndarray,
        texture: np.ndarray,
        gradient: np.ndarray,
        frequency: np.ndarray,
    ) -> "BiometricSignature":
        return cls(vector=np.concatenate([geometry, texture, gradient, frequency]))

    def block(self, index: int) -> np.ndarray:
        start = index * SIGNATURE_BLOCK
        return self.vector[start:start + SIGNATURE_BLOCK]

    @property
    def geometry(self) -> np.ndarray:
        return self.block(0)

    @property
    def texture(self) -> np.ndarray:
        return self.block(1)

    @property
    def gradient(self) -> np.ndarray:
        return self.block(2)

    @property
    def frequency(self) -> np.ndarray:
        return self.block(3)

    @property
    def is_empty(self) -> bool:
        return not np.any(self.vector)

    def __repr__(self) -> str:
        filled = sum(1 for i in range(4) if np.any(self.block(i)))
        return f"BiometricSignature(blocks_filled={filled}/4)"


# ============================================================
# Vector helpers (module-level, no class needed)
# ============================================================

def as_vector(value: Any) -> np.ndarray:
    """
    Return the underlying 1-D float vector of an embedding-like value.

    Accepts ``FaceEmbedding``, ``BiometricSignature``, numpy arrays and
    plain sequences.
    """
    if isinstance(value, (FaceEmbedding, BiometricSignature)):
        return value.vector
    return np.asarray(value, dtype=np.float32).ravel()


def is_sentinel_vector(vector: np.ndarray) -> bool:
    """True for an empty or all-zero vector."""
    return vector.size == 0 or not np.any(vector)


def l2_normalise(vector: np.ndarray) -> np.ndarray:
    """
    Return *vector* scaled to unit L2 norm.

    Vectors with norm ≤ 1e-10 are returned unchanged (as float32) so the
    zero sentinel survives normalisation.
    """
    vector = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vector)
    if norm <= EPSILON:
        return vector.astype(np.float32)
    return (vector / norm).astype(np.float32)


def fit_length(vector: np.ndarray, length: int) -> np.ndarray:
    """Zero-pad or truncate *vector* to exactly *length* elements."""
    if vector.shape[0] >= length:
        return vector[:length]
    out = np.zeros(length, dtype=vector.dtype)
    out[: vector.shape[0]] = vector
    return out


# ============================================================
# Abstract Base Extractor
# ============================================================

class BaseExtractor(ABC):
    """
    Abstract base class for image → vector extractors.

    Subclasses must implement ``extract(image)`` and must never raise for
    bad input: they return their documented zero value instead.
    """

    @abstractmethod
    def extract(self, image: Any):
        """Compute the representation for one face image."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"
