# Unit tests for:
#   - group_gallery normalisation
#   - FaceMatcher.recognize_embedding (scoring, thresholds, fallback)
#   - FaceMatcher.recognize / enroll on real crops
#   - dynamic_threshold monotonicity
#   - RecognitionStats / MatchResult
#   - thread safety of the adaptive statistics

from __future__ import annotations

import threading

import numpy as np
import pytest

from config.settings import MatcherSettings, Settings
from core.exceptions import ExtractionFailure
from core.features.base_extractor import BiometricSignature, FaceEmbedding
from core.features.signature_extractor import signature_from_embedding, signature_similarity
from core.gallery.gallery_store import GalleryStore
from core.matcher.face_matcher import FaceMatcher, group_gallery
from core.matcher.match_types import MatchResult, RecognitionStats

DIM = 1536


def _rand_vec(dim: int = DIM, seed: int = 0) -> np.ndarray:
    """Return a random unit-normalised float32 vector."""
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(dim).astype(np.float32)
    return v / np.linalg.norm(v)


def _near_vec(base: np.ndarray, noise: float = 0.001, seed: int = 42) -> np.ndarray:
    """Return a vector close to *base* (same person, different capture)."""
    rng = np.random.default_rng(seed)
    v = base + rng.standard_normal(base.shape).astype(np.float32) * noise
    return v / np.linalg.norm(v)


def _make_matcher(**matcher_overrides) -> FaceMatcher:
    return FaceMatcher(Settings(matcher=MatcherSettings(**matcher_overrides)))


@pytest.fixture
def vec_alice() -> np.ndarray:
    return _rand_vec(seed=1)


@pytest.fixture
def alice_gallery(vec_alice) -> GalleryStore:
    store = GalleryStore()
    for seed in (10, 11, 12):
        store.save_embedding("alice", _near_vec(vec_alice, seed=seed))
    return store


# ============================================================
# group_gallery
# ============================================================

class TestGroupGallery:

    def test_from_store(self, alice_gallery):
        groups = group_gallery(alice_gallery)
        assert list(groups) == ["alice"]
        assert len(groups["alice"]) == 3

    def test_from_mapping(self):
        groups = group_gallery({"a": [_rand_vec(8, 1)], "b": [_rand_vec(8, 2), _rand_vec(8, 3)]})
        assert {k: len(v) for k, v in groups.items()} == {"a": 1, "b": 2}

    def test_from_pairs_keeps_first_appearance_order(self):
        pairs = [("b", _rand_vec(8, 1)), ("a", _rand_vec(8, 2)), ("b", _rand_vec(8, 3))]
        assert list(group_gallery(pairs)) == ["b", "a"]

    def test_sentinels_skipped(self):
        groups = group_gallery([("a", np.zeros(8)), ("b", _rand_vec(8))])
        assert list(groups) == ["b"]

    def test_none(self):
        assert group_gallery(None) == {}


# ============================================================
# recognize_embedding
# ============================================================

class TestRecognizeEmbedding:

    def test_near_identical_embedding_matches(self, matcher, alice_gallery, vec_alice):
        result = matcher.recognize_embedding(_near_vec(vec_alice, seed=99), alice_gallery, quality=0.9)
        assert result.identity == "alice"
        assert result.confidence >= 0.80
        assert not result.used_fallback
        assert result.threshold == pytest.approx(0.90)
        assert result.as_tuple() == ("alice", result.confidence)

    def test_sentinel_embedding_is_unknown(self, matcher, alice_gallery):
        result = matcher.recognize_embedding(np.zeros(DIM, dtype=np.float32), alice_gallery, quality=0.9)
        assert result.identity is None
        assert result.confidence <= 1e-9
        assert result.rejected_reason == "extraction_failed"
        assert result.label == "Unknown"

    @pytest.mark.parametrize("empty", [GalleryStore(), {}, [], None])
    def test_empty_gallery_is_unknown(self, matcher, vec_alice, empty):
        result = matcher.recognize_embedding(vec_alice, empty)
        assert result.as_tuple() == (None, 0.0)
        assert result.rejected_reason == "empty_gallery"

    def test_unrelated_embedding_is_unknown(self, matcher, alice_gallery):
        result = matcher.recognize_embedding(_rand_vec(seed=500), alice_gallery, quality=0.9)
        assert result.identity is None
        assert result.confidence < 0.90
        assert len(result.scores) == 1

    def test_best_identity_wins(self, matcher, vec_alice):
        vec_bob = _rand_vec(seed=2)
        store = GalleryStore()
        store.save_embedding("alice", vec_alice)
        store.save_embedding("bob", vec_bob)
        result = matcher.recognize_embedding(_near_vec(vec_bob), store, quality=0.9)
        assert result.identity == "bob"
        assert [s.identity for s in result.scores][0] == "bob"

    def test_dimension_mismatch_never_matches(self, matcher):
        store = [("alice", _rand_vec(128, seed=1))]
        result = matcher.recognize_embedding(_rand_vec(seed=1), store, quality=0.9)
        assert result.identity is None

    def test_fallback_rescues_low_quality_match(self, matcher, alice_gallery, vec_alice):
        result = matcher.recognize_embedding(_near_vec(vec_alice, seed=7), alice_gallery, quality=0.1)
        assert result.identity == "alice"
        assert result.used_fallback
        assert result.confidence > 0.80

    def test_no_fallback_when_disabled(self, alice_gallery, vec_alice):
        m = _make_matcher(fallback_enabled=False)
        result = m.recognize_embedding(_near_vec(vec_alice, seed=7), alice_gallery, quality=0.1)
        assert result.identity is None
        assert 0.0 < result.confidence < result.threshold

    def test_score_breakdown(self, matcher, alice_gallery, vec_alice):
        query = _near_vec(vec_alice, seed=5)
        result = matcher.recognize_embedding(query, alice_gallery, quality=0.9)
        score = result.scores[0]
        assert score.identity == "alice"
        assert score.samples == 3
        assert score.max_sim >= score.avg_sim
        # No crop signatures: both sides are inferred from embeddings
        first_stored = alice_gallery.load_all_embeddings()[0][1]
        expected = signature_similarity(
            signature_from_embedding(query), signature_from_embedding(first_stored),
        )
        assert score.biometric == pytest.approx(expected, abs=1e-5)

    def test_inferred_signature_separates_identities(self, matcher, vec_alice):
        vec_bob = _rand_vec(seed=2)
        pairs = [("alice", vec_alice), ("bob", vec_bob)]
        query = _near_vec(vec_bob, noise=0.002)
        result = matcher.recognize_embedding(query, pairs, quality=0.9)
        by_id = {s.identity: s for s in result.scores}
        assert by_id["bob"].biometric > 0.9
        assert by_id["alice"].biometric < 0.5
        for identity, vec in pairs:
            expected = signature_similarity(
                signature_from_embedding(query), signature_from_embedding(vec),
            )
            assert by_id[identity].biometric == pytest.approx(expected, abs=1e-5)
            assert by_id[identity].biometric != pytest.approx(by_id[identity].avg_sim)

    def test_inferred_signature_skips_other_dimensions(self, matcher):
        pairs = [("alice", _rand_vec(128, seed=1))]
        result = matcher.recognize_embedding(_rand_vec(seed=1), pairs, quality=0.9)
        assert result.scores[0].biometric == 0.0

    def test_biometric_analysis_off_uses_avg_sim(self, alice_gallery, vec_alice):
        m = _make_matcher(biometric_analysis=False)
        score = m.recognize_embedding(_near_vec(vec_alice, seed=5), alice_gallery, quality=0.9).scores[0]
        assert score.biometric == pytest.approx(score.avg_sim)

    def test_inferred_signature_follows_the_gallery(self, matcher, vec_alice):
        query = _near_vec(vec_alice, noise=0.002)
        near = matcher.recognize_embedding(query, [("alice", vec_alice)], quality=0.9)
        far = matcher.recognize_embedding(query, [("alice", _rand_vec(seed=300))], quality=0.9)
        assert near.scores[0].biometric > 0.9
        assert far.scores[0].biometric < 0.5

    def test_cold_start_penalty_lifts_after_three_matches(self, matcher, alice_gallery, vec_alice):
        query = _near_vec(vec_alice, seed=5)
        confidences = [
            matcher.recognize_embedding(query, alice_gallery, quality=0.9).confidence
            for _ in range(4)
        ]
        assert confidences[0] == pytest.approx(confidences[2])
        assert confidences[3] == pytest.approx(confidences[0] / 0.95)

    def test_non_strict_mode_skips_penalties(self, alice_gallery, vec_alice):
        strict = _make_matcher()
        relaxed = _make_matcher(strict_mode=False)
        query = _near_vec(vec_alice, seed=5)
        c_strict = strict.recognize_embedding(query, alice_gallery, quality=0.5).scores[0].score
        c_relaxed = relaxed.recognize_embedding(query, alice_gallery, quality=0.5).scores[0].score
        assert c_strict == pytest.approx(c_relaxed * 0.9 * 0.95)

    def test_signature_feeds_biometric_term(self, matcher, vec_alice):
        sig = BiometricSignature(vector=np.linspace(0.1, 1.0, 128))
        other = BiometricSignature(vector=np.linspace(1.0, 0.1, 128))
        store = GalleryStore()
        store.save_embedding("alice", vec_alice)
        store.save_signature("alice", sig)
        same = matcher.recognize_embedding(vec_alice, store, quality=0.9, signature=sig)
        assert same.scores[0].biometric == pytest.approx(1.0, abs=1e-6)
        matcher.clear_caches()
        diff = matcher.recognize_embedding(vec_alice, store, quality=0.9, signature=other)
        assert diff.scores[0].biometric < 1.0


# ============================================================
# Dynamic threshold
# ============================================================

class TestDynamicThreshold:

    def test_defaults_hold_every_tier_at_base(self, matcher):
        for q in (1.0, 0.8, 0.7, 0.6, 0.5, 0.4, 0.2, 0.0):
            assert matcher.dynamic_threshold(q) == pytest.approx(0.90)

    @pytest.mark.parametrize("overrides", [
        {},
        {"strict_mode": False},
        {"high_quality_threshold": 0.70, "medium_quality_threshold": 0.75,
         "low_quality_threshold": 0.80, "very_low_quality_floor": 0.60, "strict_mode": False},
        {"high_quality_threshold": 0.95, "medium_quality_threshold": 0.60,
         "low_quality_threshold": 0.50},
    ])
    def test_worse_quality_never_laxer(self, overrides):
        m = _make_matcher(**overrides)
        qs = np.linspace(0.0, 1.0, 41)
        thresholds = [m.dynamic_threshold(q) for q in qs]
        assert all(t_lo >= t_hi for t_lo, t_hi in zip(thresholds, thresholds[1:]))

    def test_custom_tiers(self):
        m = _make_matcher(
            strict_mode=False,
            high_quality_threshold=0.70,
            medium_quality_threshold=0.75,
            low_quality_threshold=0.80,
            very_low_quality_floor=0.60,
        )
        assert m.dynamic_threshold(0.9) == pytest.approx(0.70)
        assert m.dynamic_threshold(0.7) == pytest.approx(0.75)
        assert m.dynamic_threshold(0.5) == pytest.approx(0.80)
        assert m.dynamic_threshold(0.1) == pytest.approx(0.80)

    def test_strict_floors_raise_lax_tiers(self):
        m = _make_matcher(high_quality_threshold=0.5, medium_quality_threshold=0.5, low_quality_threshold=0.5)
        assert m.dynamic_threshold(0.9) == pytest.approx(0.80)
        assert m.dynamic_threshold(0.1) == pytest.approx(0.80)

    def test_cutoffs_must_be_ordered(self):
        with pytest.raises(ValueError):
            MatcherSettings(low_quality_cutoff=0.9, medium_quality_cutoff=0.6)


# ============================================================
# Image-level API
# ============================================================

class TestRecognizeImage:

    def test_enrolled_face_is_recognised(self, matcher, gallery, face_image):
        matcher.enroll(face_image, person_id="alice", gallery=gallery)
        result = matcher.recognize(face_image, gallery)
        assert result.identity == "alice"
        assert result.confidence > 0.0
        assert result.elapsed_ms >= 0.0

    def test_gallery_without_signatures_uses_inferred_term(self, matcher, face_image, other_face_image):
        pairs = [
            ("alice", matcher.enroll(face_image).vector),
            ("bob", matcher.enroll(other_face_image).vector),
        ]
        result = matcher.recognize(face_image, pairs)
        by_id = {s.identity: s for s in result.scores}
        embedded = signature_from_embedding(matcher.features.extract(face_image))
        for identity, vec in pairs:
            expected = signature_similarity(embedded, signature_from_embedding(vec))
            assert by_id[identity].biometric == pytest.approx(expected, abs=1e-5)
        assert by_id["alice"].biometric == pytest.approx(1.0, abs=1e-5)
        assert any(s.biometric != pytest.approx(s.avg_sim) for s in result.scores)

    def test_unusable_crop_is_unknown(self, matcher, alice_gallery):
        result = matcher.recognize(None, alice_gallery)
        assert result.as_tuple() == (None, 0.0)
        assert result.rejected_reason == "extraction_failed"

    def test_empty_gallery(self, matcher, face_image):
        assert matcher.recognize(face_image, GalleryStore()).rejected_reason == "empty_gallery"

    def test_spoof_gate(self, alice_gallery, mid_gray_image):
        advisory = _make_matcher().recognize(mid_gray_image, alice_gallery)
        assert advisory.spoof_suspected
        assert advisory.rejected_reason is None

        gated = _make_matcher(reject_spoofed=True).recognize(mid_gray_image, alice_gallery)
        assert gated.identity is None
        assert gated.rejected_reason == "spoof"

    def test_min_quality_gate(self, alice_gallery, tiny_dark_image):
        result = _make_matcher(min_quality=0.5).recognize(tiny_dark_image, alice_gallery)
        assert result.rejected_reason == "low_quality"
        assert result.quality < 0.5

    def test_assess_quality(self, matcher, mid_gray_image, tiny_dark_image):
        assert matcher.assess_quality(mid_gray_image) - matcher.assess_quality(tiny_dark_image) >= 0.2


class TestEnroll:

    def test_returns_unit_embedding_with_quality(self, matcher, face_image):
        emb = matcher.enroll(face_image)
        assert isinstance(emb, FaceEmbedding)
        assert emb.is_normalised
        assert 0.0 <= emb.quality <= 1.0

    def test_writes_embedding_and_signature(self, matcher, gallery, face_image):
        matcher.enroll(face_image, person_id="alice", gallery=gallery)
        assert "alice" in gallery
        assert gallery.load_signature("alice") is not None
        assert matcher.cached_signature("alice") is not None

    def test_unusable_crop_raises(self, matcher, gallery):
        with pytest.raises(ExtractionFailure) as exc_info:
            matcher.enroll(None, person_id="alice", gallery=gallery)
        assert exc_info.value.person_id == "alice"
        assert gallery.is_empty

    def test_person_id_is_normalised(self, matcher, gallery, face_image):
        matcher.enroll(face_image, person_id=" alice ", gallery=gallery)
        assert gallery.list_identities() == ["alice"]
        assert gallery.load_signature("alice") is not None
        assert matcher.cached_signature("alice") is not None
        assert matcher.recognize(face_image, gallery).identity == "alice"

    def test_blank_person_id_rejected(self, matcher, gallery, face_image):
        with pytest.raises(ValueError):
            matcher.enroll(face_image, person_id="   ", gallery=gallery)
        assert gallery.is_empty

    def test_returned_embedding_is_caller_owned(self, matcher, face_image):
        first = matcher.enroll(face_image)
        first.vector[:] = 0.0
        again = matcher.enroll(face_image)
        assert not again.is_sentinel
        assert again.is_normalised
        assert not matcher.features.extract(face_image).is_sentinel

    def test_gallery_requires_person_id(self, matcher, gallery, face_image):
        with pytest.raises(ValueError):
            matcher.enroll(face_image, gallery=gallery)


# ============================================================
# Statistics and caches
# ============================================================

class TestRecognitionStats:

    def test_first_update_seeds_ema(self):
        stats = RecognitionStats.create("alice", history_size=3)
        stats.update(0.9, 0.8, alpha=0.2)
        assert stats.ema_confidence == pytest.approx(0.9)
        stats.update(0.5, 0.6, alpha=0.2)
        assert stats.ema_confidence == pytest.approx(0.8 * 0.9 + 0.2 * 0.5)
        assert stats.count == 2
        assert stats.mean_quality == pytest.approx(0.7)

    def test_history_bounded(self):
        stats = RecognitionStats.create("alice", history_size=3)
        for q in (0.1, 0.2, 0.3, 0.4):
            stats.update(0.9, q)
        assert list(stats.quality_history) == [0.2, 0.3, 0.4]

    def test_snapshot_is_independent(self):
        stats = RecognitionStats.create("alice")
        stats.update(0.9, 0.8)
        snap = stats.snapshot()
        stats.update(0.1, 0.1)
        assert snap.count == 1


class TestMatcherState:

    def test_stats_updated_on_match(self, matcher, alice_gallery, vec_alice):
        query = _near_vec(vec_alice, seed=5)
        first = matcher.recognize_embedding(query, alice_gallery, quality=0.9)
        matcher.recognize_embedding(query, alice_gallery, quality=0.9)
        stats = matcher.stats_for("alice")
        assert stats.count == 2
        assert stats.ema_confidence == pytest.approx(first.confidence)
        assert matcher.last_confidence == pytest.approx(first.confidence)

    def test_no_stats_for_unknown(self, matcher, alice_gallery):
        matcher.recognize_embedding(_rand_vec(seed=500), alice_gallery, quality=0.9)
        assert matcher.stats_for("alice") is None
        assert matcher.last_confidence == 0.0

    def test_clear_caches(self, matcher, alice_gallery, vec_alice):
        matcher.recognize_embedding(_near_vec(vec_alice), alice_gallery, quality=0.9)
        assert matcher.cache_stats()["signatures_inferred"] == 1
        matcher.clear_caches()
        assert matcher.stats_for("alice") is None
        assert matcher.last_confidence == 0.0
        stats = matcher.cache_stats()
        assert stats["identities_tracked"] == 0
        assert stats["signatures_inferred"] == 0
        assert stats["embedding"]["size"] == 0

    def test_concurrent_updates_are_serialised(self, matcher, alice_gallery, vec_alice):
        query = _near_vec(vec_alice, seed=5)
        errors = []

        def worker():
            try:
                for _ in range(20):
                    matcher.recognize_embedding(query, alice_gallery, quality=0.9)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert matcher.stats_for("alice").count == 160

    def test_context_manager(self, alice_gallery, vec_alice):
        with FaceMatcher(Settings()) as m:
            assert m.recognize_embedding(vec_alice, alice_gallery, quality=0.9).is_known


class TestMatchResult:

    def test_unknown(self):
        r = MatchResult.unknown(0.42, quality=0.5)
        assert not r.is_known
        assert r.label == "Unknown"
        assert r.as_tuple() == (None, 0.42)
        assert "Unknown" in repr(r)
