"""Shared pytest fixtures for all test modules."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from config.settings import Settings
from core.gallery.gallery_store import GalleryStore
from core.matcher.face_matcher import FaceMatcher


def make_face(size: int = 160, seed: int = 3) -> np.ndarray:
    """
    Synthetic BGR face-like crop: shaded background, skin ellipse,
    eyes, nose and mouth, plus mild sensor noise.
    """
    rng = np.random.default_rng(seed)
    ramp = np.linspace(60, 180, size, dtype=np.float64)
    img = np.tile(ramp, (size, 1))
    img = np.dstack([img * 0.9, img, img * 1.05])

    c = size // 2
    cv2.ellipse(img, (c, c), (int(size * 0.32), int(size * 0.42)), 0, 0, 360, (150, 170, 200), -1)
    eye_y = int(size * 0.40)
    for ex in (int(size * 0.36), int(size * 0.64)):
        cv2.circle(img, (ex, eye_y), max(2, size // 16), (40, 40, 40), -1)
        cv2.circle(img, (ex, eye_y), max(1, size // 40), (230, 230, 230), -1)
    cv2.line(img, (c, int(size * 0.45)), (c - size // 20, int(size * 0.60)), (90, 100, 120), 2)
    cv2.ellipse(img, (c, int(size * 0.72)), (size // 8, size // 24), 0, 0, 180, (60, 60, 140), 2)

    img += rng.normal(0.0, 6.0, img.shape)
    return np.clip(img, 0, 255).astype(np.uint8)


@pytest.fixture
def face_image() -> np.ndarray:
    return make_face()


@pytest.fixture
def other_face_image() -> np.ndarray:
    return make_face(seed=11)


@pytest.fixture
def random_image() -> np.ndarray:
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, (160, 160, 3), dtype=np.uint8)


@pytest.fixture
def mid_gray_image() -> np.ndarray:
    return np.full((160, 160, 3), 128, dtype=np.uint8)


@pytest.fixture
def tiny_dark_image() -> np.ndarray:
    return np.full((10, 10, 3), 10, dtype=np.uint8)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def matcher(settings: Settings):
    m = FaceMatcher(settings)
    yield m
    m.close()


@pytest.fixture
def gallery() -> GalleryStore:
    return GalleryStore()
