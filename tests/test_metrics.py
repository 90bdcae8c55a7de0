"""Tests for the homogeneity measures and their dispatch."""

from __future__ import annotations

import numpy as np
import pytest

from quadcompress.metrics import (
    ErrorMethod,
    LOW_TARGET_THRESHOLDS,
    SMALL_REGION_SCALE,
    calculate_error,
    entropy,
    max_pixel_difference,
    mean_absolute_deviation,
    search_upper_bound,
    ssim_dissimilarity,
    threshold_warning,
    variance,
)
from quadcompress.pixels import mean_color, uniform_fill


def _black_white(h: int, w: int) -> np.ndarray:
    """Left half black, right half white."""
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[:, w // 2:] = 255
    return img


def _uniform(h: int, w: int, color=(40, 90, 200)) -> np.ndarray:
    img = np.empty((h, w, 3), dtype=np.uint8)
    img[...] = color
    return img


# ---------------------------------------------------------------------------
# Individual metrics
# ---------------------------------------------------------------------------


def test_variance_two_pixels():
    assert variance(_black_white(1, 2)) == pytest.approx(127.5 ** 2)


def test_variance_degenerate_regions_are_zero():
    assert variance(_uniform(1, 1)) == 0.0
    assert variance(np.zeros((0, 0, 3), dtype=np.uint8)) == 0.0
    assert variance(_uniform(8, 8)) == 0.0


def test_mad_two_pixels():
    assert mean_absolute_deviation(_black_white(1, 2)) == pytest.approx(127.5)


def test_max_pixel_difference_small_region_uses_first_pixel():
    block = np.zeros((2, 2, 3), dtype=np.uint8)
    block[1, 1] = (30, 60, 90)
    assert max_pixel_difference(block) == pytest.approx(60.0)


def test_max_pixel_difference_large_region_uses_channel_range():
    block = np.zeros((3, 3, 3), dtype=np.uint8)
    block[2, 2, 0] = 90
    assert max_pixel_difference(block) == pytest.approx(30.0)


def test_entropy_small_region_falls_back_to_normalized_max_diff():
    assert entropy(_black_white(2, 2)) == pytest.approx(1.0)
    assert entropy(_uniform(3, 3)) == 0.0


def test_entropy_two_level_region_is_one_bit():
    assert entropy(_black_white(4, 4)) == pytest.approx(1.0)


def test_entropy_is_capped():
    values = np.arange(256, dtype=np.uint8).reshape(16, 16)
    block = np.stack([values] * 3, axis=-1)
    assert entropy(block) == pytest.approx(5.0)


def test_ssim_uniform_region_is_zero():
    block = _uniform(8, 8)
    assert ssim_dissimilarity(block, uniform_fill(block, mean_color(block))) == 0.0


def test_ssim_small_region_falls_back_to_scaled_variance():
    block = _black_white(2, 2)
    ref = uniform_fill(block, mean_color(block))
    assert ssim_dissimilarity(block, ref) == pytest.approx(127.5 ** 2 / 1000.0)


def test_ssim_is_bounded_and_luma_weighted():
    rng = np.random.RandomState(3)
    noise = rng.randint(0, 256, (8, 8), dtype=np.uint8)
    red = np.zeros((8, 8, 3), dtype=np.uint8)
    red[..., 0] = noise
    blue = np.zeros((8, 8, 3), dtype=np.uint8)
    blue[..., 2] = noise

    red_score = calculate_error(ErrorMethod.SSIM, red)
    blue_score = calculate_error(ErrorMethod.SSIM, blue)
    assert 0.0 < blue_score < red_score <= 0.5


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("method", list(ErrorMethod))
def test_single_pixel_and_uniform_regions_score_zero(method):
    assert calculate_error(method, _uniform(1, 1)) == 0.0
    assert calculate_error(method, _uniform(16, 16)) == 0.0


def test_reference_ignored_for_non_similarity_methods():
    block = _black_white(4, 4)
    bogus = np.full_like(block, 7)
    assert calculate_error(ErrorMethod.VARIANCE, block, bogus) == variance(block)


def test_stable_small_regions_use_scaled_max_diff():
    block = _black_white(3, 3)
    plain = calculate_error(ErrorMethod.VARIANCE, block)
    stable = calculate_error(ErrorMethod.VARIANCE, block, stable_small_regions=True)
    assert stable == pytest.approx(max_pixel_difference(block) * SMALL_REGION_SCALE[ErrorMethod.VARIANCE])
    assert stable != plain
    # larger regions are untouched by the policy
    big = _black_white(4, 4)
    assert calculate_error(ErrorMethod.VARIANCE, big, stable_small_regions=True) == variance(big)


# ---------------------------------------------------------------------------
# Tables and parsing
# ---------------------------------------------------------------------------


def test_parse_accepts_keys_indices_and_labels():
    assert ErrorMethod.parse("mad") is ErrorMethod.MAD
    assert ErrorMethod.parse("3") is ErrorMethod.MAX_PIXEL_DIFF
    assert ErrorMethod.parse("Entropy") is ErrorMethod.ENTROPY
    assert ErrorMethod.parse(ErrorMethod.SSIM) is ErrorMethod.SSIM
    with pytest.raises(ValueError):
        ErrorMethod.parse("psnr")


def test_threshold_warning():
    assert threshold_warning(ErrorMethod.VARIANCE, 50) is None
    assert "low" in threshold_warning(ErrorMethod.VARIANCE, 0.5)
    assert "high" in threshold_warning(ErrorMethod.SSIM, 0.9)
    with pytest.raises(ValueError):
        threshold_warning(ErrorMethod.MAD, 0)


def test_search_bounds_follow_target_band():
    assert search_upper_bound(ErrorMethod.VARIANCE, 80) == 50.0
    assert search_upper_bound(ErrorMethod.VARIANCE, 90) == 200.0
    assert search_upper_bound(ErrorMethod.VARIANCE, 99) == 500.0
    assert search_upper_bound(ErrorMethod.ENTROPY, 99) == 5.0
    assert set(LOW_TARGET_THRESHOLDS) == set(ErrorMethod)
