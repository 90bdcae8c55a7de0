"""Tests for the target-percentage planner in its three regimes."""

from __future__ import annotations

import numpy as np
import pytest

from quadcompress import adaptive
from quadcompress.adaptive import (
    MODE_GRID,
    MODE_HYBRID,
    MODE_THRESHOLD,
    SEARCH_LOW,
    CompressionPlan,
    grid_leaves,
    leaf_compression_percentage,
    plan_for_target,
)
from quadcompress.metrics import ErrorMethod, LOW_TARGET_THRESHOLDS
from quadcompress.quadtree_core import Quadtree, serialize_quadtree


def _noise(h: int = 64, w: int = 64, seed: int = 1) -> np.ndarray:
    rng = np.random.RandomState(seed)
    return rng.randint(0, 256, (h, w, 3), dtype=np.uint8)


class _FakeTrials:
    """Stand-in for trial tree builds: percentage as a function of threshold."""

    def __init__(self, fn):
        self.fn = fn
        self.calls = []

    def __call__(self, image, threshold):
        self.calls.append((image.shape, threshold))
        return self.fn(threshold)


def _never_called(image, threshold):
    raise AssertionError("trial trees are only built in the search regime")


# ---------------------------------------------------------------------------
# Regime selection
# ---------------------------------------------------------------------------


def test_disabled_target_keeps_caller_values():
    plan = plan_for_target(_noise(), ErrorMethod.MAD, 7.5, 4, 9, 0.0, _never_called)
    assert plan == CompressionPlan(threshold=7.5, min_block_size=4, max_depth=9)
    assert not plan.forced


@pytest.mark.parametrize("method", list(ErrorMethod))
def test_low_target_regime(method):
    plan = plan_for_target(_noise(), method, 50.0, 1, 10, 10.0, _never_called)
    assert plan.mode == MODE_THRESHOLD
    assert plan.threshold == LOW_TARGET_THRESHOLDS[method]
    # sqrt(4096 * 0.9) ~ 60.7 -> 32
    assert plan.min_block_size == 32


def test_low_target_block_is_at_least_two():
    plan = plan_for_target(_noise(2, 2), ErrorMethod.VARIANCE, 1.0, 1, 10, 19.0, _never_called)
    assert plan.min_block_size == 2


def test_grid_regime_falls_back_to_hybrid_zone():
    plan = plan_for_target(_noise(), ErrorMethod.VARIANCE, 10.0, 1, 10, 30.0, _never_called)
    assert plan.forced
    assert plan.mode == MODE_HYBRID
    x, y, w, h = plan.center
    assert 0.3 * 64 - 1 <= w <= 0.6 * 64
    assert 0.3 * 64 - 1 <= h <= 0.6 * 64
    assert x == (64 - w) // 2 and y == (64 - h) // 2
    assert plan.center_min_block_size < plan.outer_min_block_size
    assert plan.center_max_depth > plan.outer_max_depth


def test_hybrid_limits_depend_on_center_overlap():
    plan = CompressionPlan(threshold=1.0, min_block_size=1, max_depth=7, mode=MODE_HYBRID,
                           center=(10, 10, 20, 20), center_min_block_size=1, center_max_depth=7,
                           outer_min_block_size=2, outer_max_depth=6)
    assert plan.limits_for(0, 0, 64, 64) == (1, 7)
    assert plan.limits_for(12, 12, 2, 2) == (1, 7)
    assert plan.limits_for(0, 0, 10, 10) == (2, 6)
    assert plan.limits_for(30, 30, 4, 4) == (2, 6)


def test_plain_grid_limits_ignore_position():
    plan = CompressionPlan(threshold=1.0, min_block_size=4, max_depth=5, mode=MODE_GRID)
    assert plan.forced
    assert plan.limits_for(0, 0, 8, 8) == (4, 5)


# ---------------------------------------------------------------------------
# Search regime
# ---------------------------------------------------------------------------


def test_search_converges_on_monotonic_response():
    trials = _FakeTrials(lambda t: 100.0 * t / (t + 10.0))
    plan = plan_for_target(_noise(), ErrorMethod.VARIANCE, 10.0, 1, 10, 90.0, trials)
    assert plan.mode == MODE_THRESHOLD
    assert abs(trials.fn(plan.threshold) - 90.0) <= adaptive.TOLERANCE_PCT
    assert len(trials.calls) <= 1 + adaptive.MAX_ITERATIONS + 1


def test_search_iteration_count_is_bounded_when_target_is_unreachable():
    trials = _FakeTrials(lambda t: 40.0)
    plan = plan_for_target(_noise(), ErrorMethod.MAD, 5.0, 1, 10, 97.0, trials)
    assert len(trials.calls) <= 1 + adaptive.MAX_ITERATIONS + 1
    assert plan.threshold >= SEARCH_LOW
    assert plan.estimated_pct == 40.0


def test_initial_threshold_accepted_within_tolerance():
    trials = _FakeTrials(lambda t: 88.0)
    plan = plan_for_target(_noise(), ErrorMethod.VARIANCE, 12.0, 1, 10, 90.0, trials)
    assert plan.threshold == 12.0
    assert len(trials.calls) == 1


def test_search_uses_half_scale_copy_for_large_images(monkeypatch):
    monkeypatch.setattr(adaptive, "SEARCH_DOWNSCALE_PIXELS", 1000)
    trials = _FakeTrials(lambda t: 90.0)
    plan_for_target(_noise(64, 48), ErrorMethod.VARIANCE, 10.0, 1, 10, 90.0, trials)
    assert trials.calls[0][0] == (32, 24, 3)


def test_leaf_compression_percentage():
    assert leaf_compression_percentage(1024, 4096) == pytest.approx(75.0)
    assert leaf_compression_percentage(0, 0) == 0.0


# ---------------------------------------------------------------------------
# End to end through the Quadtree
# ---------------------------------------------------------------------------


def test_target_fifty_on_noise_lands_near_target():
    qt = Quadtree(_noise(), 10.0, 1, ErrorMethod.VARIANCE, target_pct=50.0, timeout=None)
    qt.compress()
    assert qt.plan.forced
    assert abs(qt.leaf_compression_percentage() - 50.0) <= 15.0


def test_high_target_rewrites_threshold():
    # flat 16x16 tiles with faint noise: a tiny threshold keeps every pixel
    rng = np.random.RandomState(5)
    img = np.zeros((64, 64, 3), dtype=np.int16)
    for by in range(0, 64, 16):
        for bx in range(0, 64, 16):
            img[by:by + 16, bx:bx + 16] = rng.randint(20, 236, 3)
    img += rng.randint(-3, 4, img.shape)
    img = img.astype(np.uint8)

    qt = Quadtree(img, 0.5, 1, ErrorMethod.VARIANCE, target_pct=90.0, timeout=None)
    qt.compress()
    assert qt.plan.mode == MODE_THRESHOLD
    assert qt.threshold == qt.plan.threshold
    assert qt.threshold != 0.5
    assert qt.leaf_compression_percentage() > 50.0
    assert not qt.report.degraded


def test_repeated_compress_plans_from_the_callers_threshold():
    img = _noise(48, 48, seed=8)
    img[:24] //= 8
    qt = Quadtree(img, 1.0, 1, ErrorMethod.MAD, target_pct=85.0, timeout=None)
    assert qt.threshold == 1.0

    first = serialize_quadtree(qt.compress())
    first_threshold = qt.threshold
    second = serialize_quadtree(qt.compress())

    assert qt.base_threshold == 1.0
    assert qt.threshold == first_threshold
    assert second == first


def test_hybrid_estimate_accounts_for_aspect_ratio():
    qt = Quadtree(_noise(120, 200), 10.0, 1, ErrorMethod.VARIANCE, target_pct=50.0, timeout=None)
    qt.compress()
    assert qt.plan.mode == MODE_HYBRID
    assert abs(qt.plan.estimated_pct - qt.leaf_compression_percentage()) <= 8.0


@pytest.mark.parametrize("w,h,block,depth,expected", [
    (64, 64, 1, 7, 4096),
    (64, 64, 2, 6, 1024),
    (200, 120, 1, 8, 4 ** 7),
    (64, 64, 1, 3, 64),
])
def test_grid_leaves(w, h, block, depth, expected):
    assert grid_leaves(w, h, block, depth) == expected
