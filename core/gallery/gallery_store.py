# ============================================================
# Biometric Matching Core
# core/gallery/gallery_store.py
# ============================================================
# In-memory gallery of enrolled identities, implementing the
# store interface the matcher consumes:
#
#   load_all_embeddings() -> [(person_id, vector)]
#   load_signature(person_id) -> BiometricSignature | None
#   save_embedding(person_id, vector)
#   save_signature(person_id, signature)
#
# Features:
#   - Multi-shot enrolment with a per-identity cap (oldest dropped)
#   - One embedding length per gallery (mismatch rejected)
#   - Thread-safe read/write operations
#   - Pickle persistence (save / load / from_settings) and dict
#     import / export
# ============================================================

from __future__ import annotations

import pickle
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from config.settings import GallerySettings
from core.exceptions import DimensionMismatchError, GalleryError, InvalidInputError
from core.features.base_extractor import (
    BiometricSignature,
    as_vector,
    is_sentinel_vector,
    l2_normalise,
)
from utils.logger import get_logger

logger = get_logger(__name__)

_FORMAT_VERSION = "1.0"


# ============================================================
# Data Types
# ============================================================

@dataclass(eq=False)
class GalleryEntry:
    """
    One enrolled identity.

    Attributes:
        person_id:   Identity label.
        embeddings:  Unit-norm float32 vectors (oldest first).
        signature:   Reference biometric signature, if one was stored.
        metadata:    Free-form dict (e.g. enrolment source).
        created_at:  Unix timestamp of first enrolment.
        updated_at:  Unix timestamp of most recent change.
    """

    person_id:  str
    embeddings: List[np.ndarray] = field(default_factory=list)
    signature:  Optional[BiometricSignature] = None
    metadata:   dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def num_embeddings(self) -> int:
        return len(self.embeddings)

    def copy(self) -> "GalleryEntry":
        return GalleryEntry(
            person_id=self.person_id,
            embeddings=[e.copy() for e in self.embeddings],
            signature=self.signature,
            metadata=dict(self.metadata),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def __repr__(self) -> str:
        sig = "yes" if self.signature is not None else "no"
        return (
            f"GalleryEntry({self.person_id!r}, "
            f"embeddings={self.num_embeddings}, signature={sig})"
        )


# ============================================================
# GalleryStore
# ============================================================

class GalleryStore:
    """
    Thread-safe gallery of enrolled face embeddings.

    Quick usage::

        gallery = GalleryStore()
        matcher.enroll(alice_crop, person_id="alice", gallery=gallery)
        result = matcher.recognize(query_crop, gallery)
        gallery.save("cache/gallery.pkl")

    Args:
        settings: Per-identity cap and optional persistence path.
    """

    def __init__(self, settings: Optional[GallerySettings] = None) -> None:
        self.settings = settings or GallerySettings()
        self._entries: Dict[str, GalleryEntry] = {}
        self._dim: Optional[int] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Store interface consumed by the matcher
    # ------------------------------------------------------------------

    def load_all_embeddings(self) -> List[Tuple[str, np.ndarray]]:
        """Every stored ``(person_id, vector)`` pair, in enrolment order."""
        with self._lock:
            return [
                (entry.person_id, vec.copy())
                for entry in self._entries.values()
                for vec in entry.embeddings
            ]

    def load_signature(self, person_id: str) -> Optional[BiometricSignature]:
        with self._lock:
            entry = self._entries.get(person_id)
            return entry.signature if entry is not None else None

    def save_embedding(
        self,
        person_id: str,
        embedding: Any,
        *,
        metadata: Optional[dict] = None,
    ) -> GalleryEntry:
        """
        Append one embedding to *person_id*, creating the identity if needed.

        Raises:
            ValueError:             Empty id.
            InvalidInputError:      Sentinel, empty or non-finite vector.
            DimensionMismatchError: Vector length differs from the gallery's.
        """
        person_id = (person_id or "").strip()
        if not person_id:
            raise ValueError("person_id must not be empty.")

        vector = self._validate_vector(as_vector(embedding))

        with self._lock:
            if self._dim is not None and vector.shape[0] != self._dim:
                raise DimensionMismatchError(self._dim, vector.shape[0])

            entry = self._entries.get(person_id)
            if entry is None:
                entry = GalleryEntry(person_id=person_id)
                self._entries[person_id] = entry
                logger.info("Gallery: new identity {!r}", person_id)

            while entry.num_embeddings >= self.settings.max_embeddings_per_identity:
                entry.embeddings.pop(0)

            entry.embeddings.append(l2_normalise(vector))
            entry.updated_at = time.time()
            if metadata:
                entry.metadata.update(metadata)
            self._dim = vector.shape[0]

            logger.debug("Gallery: {!r} now has {} embedding(s)", person_id, entry.num_embeddings)
            return entry

    def save_signature(self, person_id: str, signature: Any) -> None:
        """
        Store the reference signature of an enrolled identity.

        Raises:
            GalleryError: *person_id* is not enrolled.
        """
        sig = signature if isinstance(signature, BiometricSignature) else BiometricSignature(vector=signature)
        with self._lock:
            entry = self._entries.get(person_id)
            if entry is None:
                raise GalleryError(f"Cannot store signature: {person_id!r} is not enrolled.")
            entry.signature = sig
            entry.updated_at = time.time()

    # ------------------------------------------------------------------
    # Identity management
    # ------------------------------------------------------------------

    def entries(self) -> List[GalleryEntry]:
        """Copies of every entry, in enrolment order."""
        with self._lock:
            return [entry.copy() for entry in self._entries.values()]

    def get(self, person_id: str) -> Optional[GalleryEntry]:
        with self._lock:
            entry = self._entries.get(person_id)
            return entry.copy() if entry is not None else None

    def remove(self, person_id: str) -> bool:
        with self._lock:
            if person_id in self._entries:
                del self._entries[person_id]
                if not self._entries:
                    self._dim = None
                logger.info("Gallery: removed {!r}", person_id)
                return True
        logger.warning("Gallery: {!r} not found for removal", person_id)
        return False

    def rename(self, old_id: str, new_id: str) -> bool:
        """
        Rename an identity.

        Returns:
            True on success, False if *old_id* is unknown.

        Raises:
            ValueError: *new_id* is empty or already taken.
        """
        new_id = new_id.strip()
        if not new_id:
            raise ValueError("New person_id must not be empty.")

        with self._lock:
            if old_id not in self._entries:
                logger.warning("Gallery: rename failed, {!r} not found", old_id)
                return False
            if new_id in self._entries and new_id != old_id:
                raise ValueError(f"Cannot rename {old_id!r} → {new_id!r}: {new_id!r} exists.")
            entry = self._entries.pop(old_id)
            entry.person_id = new_id
            entry.updated_at = time.time()
            self._entries[new_id] = entry

        logger.info("Gallery: renamed {!r} → {!r}", old_id, new_id)
        return True

    def list_identities(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def has_identity(self, person_id: str) -> bool:
        with self._lock:
            return person_id in self._entries

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._dim = None
        logger.warning("Gallery cleared ({} identities removed)", count)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_embeddings(self) -> int:
        with self._lock:
            return sum(e.num_embeddings for e in self._entries.values())

    @property
    def dim(self) -> Optional[int]:
        """Embedding length shared by every stored vector, or None when empty."""
        with self._lock:
            return self._dim

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Optional[str | Path] = None) -> Path:
        """
        Pickle the gallery to *path* (or ``settings.db_path``).

        Raises:
            GalleryError: No path given and none configured.
        """
        target = Path(path) if path is not None else self.settings.db_path
        if target is None:
            raise GalleryError("No gallery path given and GALLERY_DB_PATH is not set.")
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            payload = {
                "version":  _FORMAT_VERSION,
                "saved_at": time.time(),
                "dim":      self._dim,
                "entries":  self.to_dict()["entries"],
            }
            with open(target, "wb") as f:
                pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)

        logger.info(
            "Gallery saved → {} ({} identities, {} embeddings)",
            target, self.count, self.total_embeddings,
        )
        return target

    @classmethod
    def load(cls, path: str | Path, settings: Optional[GallerySettings] = None) -> "GalleryStore":
        """
        Restore a gallery written by ``save``.

        Raises:
            FileNotFoundError: *path* does not exist.
            GalleryError:      The file is not a gallery pickle.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Gallery file not found: {path}")

        with open(path, "rb") as f:
            payload = pickle.load(f)

        if not isinstance(payload, dict) or "entries" not in payload:
            raise GalleryError(f"Unrecognised gallery format in: {path}")

        store = cls.from_dict(payload, settings=settings)
        logger.info(
            "Gallery loaded ← {} ({} identities, {} embeddings)",
            path, store.count, store.total_embeddings,
        )
        return store

    @classmethod
    def from_settings(cls, settings: Optional[GallerySettings] = None) -> "GalleryStore":
        """
        Open the gallery configured by *settings*.

        Loads ``settings.db_path`` when the file exists; otherwise starts an
        empty store that ``save()`` will write there.
        """
        settings = settings or GallerySettings()
        db_path = settings.db_path
        if db_path is not None and Path(db_path).exists():
            return cls.load(db_path, settings=settings)
        if db_path is None:
            logger.info("Gallery: memory only (GALLERY_DB_PATH not set)")
        else:
            logger.info("Gallery: starting fresh (will save to {})", db_path)
        return cls(settings)

    def to_dict(self) -> dict:
        """Plain-Python export (lists instead of arrays)."""
        with self._lock:
            records = [
                {
                    "person_id":  e.person_id,
                    "embeddings": [v.tolist() for v in e.embeddings],
                    "signature":  e.signature.vector.tolist() if e.signature is not None else None,
                    "metadata":   e.metadata,
                    "created_at": e.created_at,
                    "updated_at": e.updated_at,
                }
                for e in self._entries.values()
            ]
        return {"version": _FORMAT_VERSION, "count": len(records), "entries": records}

    @classmethod
    def from_dict(cls, data: dict, settings: Optional[GallerySettings] = None) -> "GalleryStore":
        store = cls(settings)
        for rec in data.get("entries", []):
            person_id = rec["person_id"]
            for vec in rec.get("embeddings", []):
                store.save_embedding(person_id, np.asarray(vec, dtype=np.float32))
            sig = rec.get("signature")
            if sig is not None and store.has_identity(person_id):
                store.save_signature(person_id, np.asarray(sig, dtype=np.float32))
            with store._lock:
                entry = store._entries.get(person_id)
                if entry is not None:
                    entry.metadata = dict(rec.get("metadata", {}))
                    entry.created_at = rec.get("created_at", entry.created_at)
                    entry.updated_at = rec.get("updated_at", entry.updated_at)
        return store

    # ------------------------------------------------------------------
    # Statistics & diagnostics
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        with self._lock:
            shots = [e.num_embeddings for e in self._entries.values()]
            return {
                "count":            len(shots),
                "total_embeddings": sum(shots),
                "avg_shots":        round(sum(shots) / len(shots), 2) if shots else 0.0,
                "with_signature":   sum(1 for e in self._entries.values() if e.signature is not None),
                "dim":              self._dim,
                "identities":       sorted(self._entries),
            }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_vector(vector: np.ndarray) -> np.ndarray:
        if vector.ndim != 1 or vector.size == 0:
            raise InvalidInputError(f"Embedding must be a non-empty 1-D vector, got shape {vector.shape}.")
        if not np.isfinite(vector).all():
            raise InvalidInputError("Embedding vector contains NaN or Inf values.")
        if is_sentinel_vector(vector):
            raise InvalidInputError("Refusing to store the all-zero extraction-failed embedding.")
        return vector.astype(np.float32)

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return self.count

    def __contains__(self, person_id: str) -> bool:
        return self.has_identity(person_id)

    def __repr__(self) -> str:
        return f"GalleryStore(count={self.count}, total_embeddings={self.total_embeddings}, dim={self._dim})"
