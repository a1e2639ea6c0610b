# ============================================================
# Biometric Matching Core
# core/matcher/face_matcher.py
# ============================================================
# Decides which enrolled identity (if any) a face crop belongs to.
#
# Per call:
#   1. empty gallery                → Unknown, 0.0
#   2. embedding, quality, signature computed once
#      (zero-sentinel embedding     → Unknown, 0.0)
#   3. per identity: max / avg fused similarity, signature match,
#      geometric consistency. Without crop signatures on both sides
#      the match compares signatures inferred from the embeddings
#   4. score = 0.4·max + 0.3·avg + 0.2·bio + 0.1·geo
#   5. strict mode: ×0.9 low quality, ×0.95 cold start
#   6. best identity clearing the dynamic threshold wins
#   7. threshold by quality tier, never laxer for worse input
#   8. no winner → plain-cosine fallback at base − margin
#   9. on match: update RecognitionStats, cache the signature
#
# The only shared mutable state (stats + signature caches) lives
# behind one RLock so concurrent callers serialise step 9.
# ============================================================

from __future__ import annotations

import math
import threading
import time
from collections.abc import Mapping
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

import numpy as np

from config.settings import MatcherSettings, Settings
from core.exceptions import ExtractionFailure
from core.features.base_extractor import (
    BiometricSignature,
    FaceEmbedding,
    RecognitionMode,
    as_vector,
    is_sentinel_vector,
)
from core.features.feature_extractor import FeatureExtractor
from core.features.signature_extractor import (
    SignatureExtractor,
    signature_from_embedding,
    signature_similarity,
)
from core.matcher.match_types import IdentityScore, MatchResult, RecognitionStats
from core.matcher.similarity import SimilarityEngine, cosine
from core.preprocessor.face_preprocessor import FacePreprocessor
from core.quality.quality_assessor import QualityAssessor
from core.quality.spoof_heuristic import SpoofHeuristic
from utils.logger import get_logger

logger = get_logger(__name__)

# Quality assumed by recognize_embedding() when the caller has none
DEFAULT_QUALITY = 0.6


def group_gallery(gallery: Any) -> Dict[str, List[np.ndarray]]:
    """
    Normalise any supported gallery shape to ``{person_id: [vectors]}``.

    Accepts an object exposing ``load_all_embeddings()``, a mapping of
    ``person_id → iterable of vectors`` or an iterable of
    ``(person_id, vector)`` pairs. Sentinel vectors are skipped. Order of
    first appearance is preserved.
    """
    if gallery is None:
        return {}
    if hasattr(gallery, "load_all_embeddings"):
        records: Iterable[Tuple[str, Any]] = gallery.load_all_embeddings()
    elif isinstance(gallery, Mapping):
        records = ((pid, vec) for pid, vecs in gallery.items() for vec in vecs)
    else:
        records = gallery

    groups: Dict[str, List[np.ndarray]] = {}
    for person_id, vec in records:
        vector = as_vector(vec)
        if is_sentinel_vector(vector):
            logger.debug("Gallery: skipping sentinel embedding for {!r}", person_id)
            continue
        groups.setdefault(str(person_id), []).append(vector)
    return groups


class FaceMatcher:
    """
    Quality-adaptive gallery matcher.

    Usage::

        cfg = load_settings()
        matcher = FaceMatcher(cfg)
        result = matcher.recognize(crop, gallery)
        print(result.label, result.confidence)

    All collaborators are built from *settings* unless injected.

    Args:
        settings:      Master ``Settings`` (a fresh default one if omitted).
        preprocessor:  Shared canonicaliser for features and signatures.
        quality:       Quality scorer.
        spoof:         Advisory spoof heuristic.
        features:      Embedding extractor.
        signatures:    Biometric signature extractor.
        similarity:    Fusion engine.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        preprocessor: Optional[FacePreprocessor] = None,
        quality: Optional[QualityAssessor] = None,
        spoof: Optional[SpoofHeuristic] = None,
        features: Optional[FeatureExtractor] = None,
        signatures: Optional[SignatureExtractor] = None,
        similarity: Optional[SimilarityEngine] = None,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings
        self.config: MatcherSettings = s.matcher
        self.mode = RecognitionMode.parse(s.features.recognition_mode)

        self.preprocessor = preprocessor or FacePreprocessor(s.preprocessor)
        self.quality = quality or QualityAssessor(s.quality, s.cache)
        self.spoof = spoof or SpoofHeuristic(s.spoof)
        self.features = features or FeatureExtractor(
            s.features, preprocessor=self.preprocessor, cache_settings=s.cache,
        )
        self.signatures = signatures or SignatureExtractor(
            s.signature, preprocessor=self.preprocessor,
        )
        self.similarity = similarity or SimilarityEngine(s.similarity, self.mode)

        self._lock = threading.RLock()
        self._stats: Dict[str, RecognitionStats] = {}
        self._signatures: Dict[str, BiometricSignature] = {}
        self._inferred: Dict[str, Tuple[np.ndarray, BiometricSignature]] = {}
        self._last_confidence: float = 0.0

        logger.info(
            "FaceMatcher ready | mode={} | dim={} | base_threshold={} | strict={}",
            self.mode.value,
            s.features.embedding_dim,
            self.config.base_threshold,
            self.config.strict_mode,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def recognize(
        self,
        image: Any,
        gallery: Any,
        *,
        frame_key: Optional[Hashable] = None,
    ) -> MatchResult:
        """
        Match one face crop against *gallery*.

        Never raises for bad input: unusable crops and empty galleries
        yield ``MatchResult(identity=None, confidence=0.0)``.

        Args:
            image:     Raw face crop.
            gallery:   Gallery store, mapping or ``(person_id, vector)`` pairs.
            frame_key: Optional caller cache key for this crop.
        """
        t0 = time.perf_counter()
        groups = group_gallery(gallery)
        if not groups:
            logger.debug("Recognition skipped: gallery is empty")
            return MatchResult.unknown(0.0, rejected_reason="empty_gallery")

        embedding = self.features.extract(image, frame_key=frame_key)
        if embedding.is_sentinel:
            logger.debug("Recognition skipped: extraction produced the zero sentinel")
            return MatchResult.unknown(0.0, rejected_reason="extraction_failed")

        quality = self.quality.assess(image, frame_key=frame_key)
        spoofed = self.spoof.looks_spoofed(image)
        cfg = self.config

        if cfg.reject_spoofed and spoofed:
            logger.info("Recognition rejected: spoof heuristic tripped")
            return MatchResult.unknown(0.0, quality=quality, spoof_suspected=True, rejected_reason="spoof")
        if cfg.min_quality > 0.0 and quality < cfg.min_quality:
            logger.info("Recognition rejected: quality {:.3f} < {:.3f}", quality, cfg.min_quality)
            return MatchResult.unknown(0.0, quality=quality, rejected_reason="low_quality")

        signature = self.signatures.extract(image) if cfg.biometric_analysis else None

        result = self._scan(embedding, groups, quality, signature, gallery)
        result.spoof_suspected = spoofed
        result.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        return result

    def recognize_embedding(
        self,
        embedding: Any,
        gallery: Any,
        quality: float = DEFAULT_QUALITY,
        signature: Optional[BiometricSignature] = None,
    ) -> MatchResult:
        """
        Match a precomputed embedding against *gallery*.

        Useful when embeddings come from elsewhere (batch jobs, tests).
        """
        t0 = time.perf_counter()
        groups = group_gallery(gallery)
        if not groups:
            return MatchResult.unknown(0.0, rejected_reason="empty_gallery")
        if is_sentinel_vector(as_vector(embedding)):
            return MatchResult.unknown(0.0, quality=quality, rejected_reason="extraction_failed")

        emb = embedding if isinstance(embedding, FaceEmbedding) else FaceEmbedding(vector=embedding)
        result = self._scan(emb, groups, float(quality), signature, gallery)
        result.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        return result

    def enroll(
        self,
        image: Any,
        *,
        person_id: Optional[str] = None,
        gallery: Any = None,
    ) -> FaceEmbedding:
        """
        Extract an enrolment embedding, optionally writing it to *gallery*.

        Args:
            image:     Raw face crop.
            person_id: Identity to enrol under (required with *gallery*);
                       surrounding whitespace is dropped.
            gallery:   Store exposing ``save_embedding`` (and optionally
                       ``save_signature``).

        Returns:
            The unit-norm ``FaceEmbedding``.

        Raises:
            ExtractionFailure: The crop produced the zero sentinel.
            ValueError:        *gallery* given without *person_id*.
        """
        if isinstance(person_id, str):
            person_id = person_id.strip()
        if gallery is not None and not person_id:
            raise ValueError("person_id is required when enrolling into a gallery")

        embedding = self.features.extract(image)
        if embedding.is_sentinel:
            raise ExtractionFailure("Cannot enrol: feature extraction failed", person_id=person_id)

        embedding.quality = self.quality.assess(image)

        if gallery is not None:
            gallery.save_embedding(person_id, embedding.vector)
            signature = self.signatures.extract(image)
            if not signature.is_empty and hasattr(gallery, "save_signature"):
                gallery.save_signature(person_id, signature)
            with self._lock:
                # Stored embeddings changed; re-derive on the next scan
                self._inferred.pop(person_id, None)
                if not signature.is_empty:
                    self._signatures.setdefault(person_id, signature)
            logger.info(
                "Enrolled '{}' | quality={:.3f} | dim={}",
                person_id, embedding.quality, embedding.dim,
            )
        return embedding

    def assess_quality(self, image: Any, frame_key: Optional[Hashable] = None) -> float:
        return self.quality.assess(image, frame_key=frame_key)

    def dynamic_threshold(self, quality: float) -> float:
        """
        Acceptance threshold for an input of the given quality.

        Tier thresholds are max-accumulated from the best tier down, so a
        worse input is never held to a laxer bar than a better one. Under
        strict + ultra-precision each tier is also raised to its floor.
        """
        cfg = self.config
        hardened = cfg.strict_mode and self.mode is RecognitionMode.ULTRA_PRECISION

        high = cfg.high_quality_threshold
        medium = cfg.medium_quality_threshold
        low = cfg.low_quality_threshold
        very_low = max(high, cfg.very_low_quality_floor)
        if hardened:
            high = max(high, cfg.high_quality_floor)
            medium = max(medium, cfg.medium_quality_floor)
            low = max(low, cfg.low_quality_floor)

        medium = max(medium, high)
        low = max(low, medium)
        very_low = max(very_low, low)

        if quality >= cfg.high_quality_cutoff:
            return high
        if quality >= cfg.medium_quality_cutoff:
            return medium
        if quality >= cfg.low_quality_cutoff:
            return low
        return very_low

    def clear_caches(self) -> None:
        """Drop stats, cached signatures and every per-image cache."""
        with self._lock:
            self._stats.clear()
            self._signatures.clear()
            self._inferred.clear()
            self._last_confidence = 0.0
        self.features.clear_cache()
        self.quality.clear_cache()
        logger.debug("FaceMatcher caches cleared")

    def stats_for(self, identity: str) -> Optional[RecognitionStats]:
        with self._lock:
            stats = self._stats.get(identity)
            return stats.snapshot() if stats else None

    def cached_signature(self, identity: str) -> Optional[BiometricSignature]:
        with self._lock:
            return self._signatures.get(identity)

    def cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            tracked = len(self._stats)
            signatures = len(self._signatures)
            inferred = len(self._inferred)
        return {
            "embedding": self.features.cache_stats(),
            "quality": self.quality.cache_stats(),
            "identities_tracked": tracked,
            "signatures_cached": signatures,
            "signatures_inferred": inferred,
        }

    @property
    def last_confidence(self) -> float:
        with self._lock:
            return self._last_confidence

    def close(self) -> None:
        self.features.close()

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> "FaceMatcher":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Gallery scan
    # ------------------------------------------------------------------

    def _scan(
        self,
        embedding: FaceEmbedding,
        groups: Dict[str, List[np.ndarray]],
        quality: float,
        signature: Optional[BiometricSignature],
        gallery: Any,
    ) -> MatchResult:
        cfg = self.config
        threshold = self.dynamic_threshold(quality)
        geometric = self._geometric_consistency(embedding.vector, quality)
        inferred_input = signature_from_embedding(embedding.vector) if cfg.biometric_analysis else None

        scores: List[IdentityScore] = []
        for person_id, vectors in groups.items():
            scores.append(self._score_identity(
                person_id, vectors, embedding, quality, signature, inferred_input, geometric, gallery,
            ))
        scores.sort(key=lambda s: s.score, reverse=True)

        best_seen = scores[0].score if scores else 0.0
        winner = next((s for s in scores if s.score >= threshold), None)

        if winner is not None:
            self._record_match(winner.identity, winner.score, quality, signature)
            logger.debug(
                "Matched '{}' | score={:.4f} | threshold={:.3f} | quality={:.3f}",
                winner.identity, winner.score, threshold, quality,
            )
            return MatchResult(
                identity=winner.identity,
                confidence=winner.score,
                quality=quality,
                threshold=threshold,
                scores=scores,
            )

        if cfg.fallback_enabled:
            fallback = self._fallback(embedding, groups)
            if fallback is not None:
                person_id, sim = fallback
                self._record_match(person_id, sim, quality, signature)
                logger.debug(
                    "Fallback matched '{}' | cosine={:.4f} | acceptance={:.3f}",
                    person_id, sim, cfg.base_threshold - cfg.fallback_margin,
                )
                return MatchResult(
                    identity=person_id,
                    confidence=sim,
                    quality=quality,
                    threshold=threshold,
                    used_fallback=True,
                    scores=scores,
                )

        logger.debug(
            "No match | best={:.4f} | threshold={:.3f} | quality={:.3f}",
            best_seen, threshold, quality,
        )
        return MatchResult.unknown(best_seen, quality=quality, threshold=threshold, scores=scores)

    def _score_identity(
        self,
        person_id: str,
        vectors: List[np.ndarray],
        embedding: FaceEmbedding,
        quality: float,
        signature: Optional[BiometricSignature],
        inferred_input: Optional[BiometricSignature],
        geometric: float,
        gallery: Any,
    ) -> IdentityScore:
        cfg = self.config
        sims = [self.similarity.similarity(embedding.vector, v, quality) for v in vectors]
        max_sim = max(sims)
        avg_sim = sum(sims) / len(sims)

        biometric = avg_sim
        if inferred_input is not None:
            biometric = self._biometric_match(
                person_id, vectors, embedding, signature, inferred_input, gallery,
            )

        weights = (cfg.max_weight, cfg.avg_weight, cfg.biometric_weight, cfg.geometric_weight)
        total = sum(weights) or 1.0
        score = (
            cfg.max_weight * max_sim
            + cfg.avg_weight * avg_sim
            + cfg.biometric_weight * biometric
            + cfg.geometric_weight * geometric
        ) / total

        if cfg.strict_mode:
            if quality < cfg.penalty_quality_cutoff:
                score *= cfg.low_quality_penalty
            with self._lock:
                stats = self._stats.get(person_id)
                prior = stats.count if stats else 0
            if prior < cfg.cold_start_count:
                score *= cfg.cold_start_penalty

        return IdentityScore(
            identity=person_id,
            max_sim=max_sim,
            avg_sim=avg_sim,
            biometric=biometric,
            geometric=geometric,
            score=float(min(1.0, max(0.0, score))),
            samples=len(vectors),
        )

    def _fallback(
        self,
        embedding: FaceEmbedding,
        groups: Dict[str, List[np.ndarray]],
    ) -> Optional[Tuple[str, float]]:
        """Best plain cosine over every stored embedding, if above base − margin."""
        acceptance = self.config.base_threshold - self.config.fallback_margin
        best_id: Optional[str] = None
        best_sim = 0.0
        for person_id, vectors in groups.items():
            for v in vectors:
                sim = cosine(embedding.vector, v)
                if sim > best_sim:
                    best_id, best_sim = person_id, sim
        if best_id is not None and best_sim > acceptance:
            return best_id, best_sim
        return None

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------

    def _biometric_match(
        self,
        person_id: str,
        vectors: List[np.ndarray],
        embedding: FaceEmbedding,
        signature: Optional[BiometricSignature],
        inferred_input: BiometricSignature,
        gallery: Any,
    ) -> float:
        """
        Signature agreement between the input and *person_id*.

        Crop signatures are compared when both sides have one. Otherwise
        both sides are inferred from embeddings: the input's own, and the
        identity's first stored one, which must share the input's length.
        """
        if signature is not None and not signature.is_empty:
            reference = self._reference_signature(person_id, gallery)
            if reference is not None:
                return signature_similarity(signature, reference)
        if vectors[0].shape != embedding.vector.shape:
            return 0.0
        return signature_similarity(inferred_input, self._inferred_signature(person_id, vectors))

    def _inferred_signature(self, person_id: str, vectors: List[np.ndarray]) -> BiometricSignature:
        source = vectors[0]
        with self._lock:
            cached = self._inferred.get(person_id)
            if cached is not None and np.array_equal(cached[0], source):
                return cached[1]
            inferred = signature_from_embedding(source)
            self._inferred[person_id] = (np.array(source, copy=True), inferred)
        logger.debug("Inferred reference signature for '{}' from its first embedding", person_id)
        return inferred

    def _reference_signature(self, person_id: str, gallery: Any) -> Optional[BiometricSignature]:
        """Cached crop signature for *person_id*, loading it from the store on first sight."""
        with self._lock:
            cached = self._signatures.get(person_id)
            if cached is not None:
                return cached

        loader = getattr(gallery, "load_signature", None)
        if loader is None:
            return None
        loaded = loader(person_id)
        if loaded is None:
            return None
        signature = loaded if isinstance(loaded, BiometricSignature) else BiometricSignature(vector=loaded)
        if signature.is_empty:
            return None
        with self._lock:
            return self._signatures.setdefault(person_id, signature)

    def _record_match(
        self,
        person_id: str,
        confidence: float,
        quality: float,
        signature: Optional[BiometricSignature],
    ) -> None:
        cfg = self.config
        with self._lock:
            stats = self._stats.get(person_id)
            if stats is None:
                stats = RecognitionStats.create(person_id, cfg.history_size)
                self._stats[person_id] = stats
            stats.update(confidence, quality, cfg.ema_alpha)
            if signature is not None and not signature.is_empty and person_id not in self._signatures:
                self._signatures[person_id] = signature
            self._last_confidence = confidence
            logger.debug(
                "Stats '{}' | count={} | ema={:.3f} | mean_quality={:.3f}",
                person_id, stats.count, stats.ema_confidence, stats.mean_quality,
            )

    def _geometric_consistency(self, vector: np.ndarray, quality: float) -> float:
        variance = float(np.var(vector.astype(np.float64)))
        return float(math.exp(-variance * self.config.geometric_scale) * quality)

    def __repr__(self) -> str:
        with self._lock:
            tracked = len(self._stats)
        return (
            f"FaceMatcher(mode={self.mode.value}, "
            f"base_threshold={self.config.base_threshold}, "
            f"tracked={tracked})"
        )
