# Unit tests for utils.image_utils helpers.

from __future__ import annotations

import numpy as np
import pytest

from utils.image_utils import (
    as_uint8,
    compute_blur_score,
    compute_brightness,
    content_key,
    is_usable_image,
    to_gray,
)


class TestIsUsableImage:

    @pytest.mark.parametrize("image", [
        np.zeros((4, 4), dtype=np.uint8),
        np.zeros((4, 4, 1), dtype=np.uint8),
        np.zeros((4, 4, 3), dtype=np.uint8),
        np.zeros((4, 4, 4), dtype=np.float32),
    ])
    def test_usable(self, image):
        assert is_usable_image(image)

    @pytest.mark.parametrize("image", [
        None,
        "image",
        np.zeros((0, 4), dtype=np.uint8),
        np.zeros((4,), dtype=np.uint8),
        np.zeros((4, 4, 2), dtype=np.uint8),
    ])
    def test_unusable(self, image):
        assert not is_usable_image(image)


class TestConversions:

    def test_as_uint8_clips(self):
        out = as_uint8(np.array([[-5.0, 300.0, np.nan]]))
        assert out.dtype == np.uint8
        assert out.tolist() == [[0, 255, 0]]

    def test_as_uint8_passthrough(self):
        img = np.zeros((2, 2), dtype=np.uint8)
        assert as_uint8(img) is img

    def test_to_gray_shapes(self):
        bgr = np.full((5, 6, 3), 100, dtype=np.uint8)
        bgra = np.full((5, 6, 4), 100, dtype=np.uint8)
        single = np.full((5, 6, 1), 100, dtype=np.uint8)
        for img in (bgr, bgra, single):
            gray = to_gray(img)
            assert gray.shape == (5, 6)
            assert np.all(gray == 100)


class TestContentKey:

    def test_equal_content_equal_key(self):
        rng = np.random.default_rng(0)
        a = rng.integers(0, 256, (8, 8, 3), dtype=np.uint8)
        assert content_key(a) == content_key(a.copy())

    def test_layout_independent(self):
        a = np.arange(16, dtype=np.uint8).reshape(4, 4)
        assert content_key(a.T) == content_key(np.ascontiguousarray(a.T))

    def test_shape_and_dtype_matter(self):
        a = np.zeros((4, 4), dtype=np.uint8)
        assert content_key(a) != content_key(a.reshape(2, 8))
        assert content_key(a) != content_key(a.astype(np.int8))

    def test_pixels_matter(self):
        a = np.zeros((4, 4), dtype=np.uint8)
        b = a.copy()
        b[0, 0] = 1
        assert content_key(a) != content_key(b)


class TestMeasurements:

    def test_brightness(self):
        assert compute_brightness(np.full((4, 4, 3), 60, dtype=np.uint8)) == pytest.approx(60.0)

    def test_blur_score_flat_is_zero(self):
        assert compute_blur_score(np.full((10, 10), 80, dtype=np.uint8)) == pytest.approx(0.0)

    def test_blur_score_texture_is_positive(self):
        checker = (np.indices((10, 10)).sum(axis=0) % 2 * 255).astype(np.uint8)
        assert compute_blur_score(checker) > 0.0
