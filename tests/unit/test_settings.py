# Unit tests for:
#   - load_settings defaults and overrides
#   - environment variable binding per component prefix
#   - cross-field validators
#   - logger setup from LoggingSettings

from __future__ import annotations

import json

import pytest
from loguru import logger

from config.settings import (
    DetectorSettings,
    FeatureSettings,
    LoggingSettings,
    MatcherSettings,
    Settings,
    SignatureSettings,
    load_settings,
)
from utils.logger import get_logger, setup_from_settings, setup_logger


class TestLoadSettings:

    def test_defaults(self):
        cfg = load_settings()
        assert isinstance(cfg, Settings)
        assert cfg.matcher.base_threshold == pytest.approx(0.90)
        assert cfg.features.embedding_dim == 1536
        assert cfg.features.recognition_mode == "ultra_precision"
        assert cfg.preprocessor.face_size == 160
        assert cfg.cache.max_size == 1000
        assert cfg.detector.cascade_name == "haarcascade_frontalface_alt.xml"
        assert cfg.gallery.db_path is None

    def test_override_replaces_component(self):
        cfg = load_settings(matcher=MatcherSettings(strict_mode=False))
        assert cfg.matcher.strict_mode is False
        assert cfg.features.embedding_dim == 1536

    def test_each_call_is_fresh(self):
        assert load_settings() is not load_settings()

    def test_env_var_binding(self, monkeypatch):
        monkeypatch.setenv("MATCHER_BASE_THRESHOLD", "0.88")
        monkeypatch.setenv("DETECTOR_MIN_NEIGHBORS", "5")
        cfg = load_settings()
        assert cfg.matcher.base_threshold == pytest.approx(0.88)
        assert cfg.detector.min_neighbors == 5

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            MatcherSettings(base_threshold=1.5)


class TestValidators:

    def test_cutoff_order(self):
        with pytest.raises(ValueError):
            MatcherSettings(high_quality_cutoff=0.5, medium_quality_cutoff=0.6)

    def test_signature_grid_must_fill_block(self):
        with pytest.raises(ValueError):
            SignatureSettings(grid_rows=4, grid_cols=4)

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            FeatureSettings(recognition_mode="turbo")

    def test_detector_passes(self):
        cfg = DetectorSettings(relaxed_pass=False, max_faces=3)
        assert cfg.relaxed_pass is False
        assert cfg.max_faces == 3


class TestLogger:

    def test_file_sink_from_settings(self, tmp_path):
        log_file = tmp_path / "logs" / "core.log"
        try:
            setup_from_settings(LoggingSettings(level="DEBUG", file_path=log_file, colorize=False))
            get_logger("tests").info("gallery loaded | {} identities", 3)
            logger.complete()
            assert log_file.exists()
            text = log_file.read_text(encoding="utf-8")
            assert "gallery loaded | 3 identities" in text
            assert "| tests |" in text
        finally:
            setup_logger(level="INFO")

    def test_json_file_sink_keeps_component(self, tmp_path):
        log_file = tmp_path / "core.jsonl"
        try:
            setup_logger(level="INFO", file_path=log_file, json_logs=True)
            get_logger("core.matcher").warning("threshold raised")
            logger.complete()
            lines = log_file.read_text(encoding="utf-8").splitlines()
            record = json.loads(lines[-1])["record"]
            assert record["message"] == "threshold raised"
            assert record["extra"]["component"] == "core.matcher"
        finally:
            setup_logger(level="INFO")
