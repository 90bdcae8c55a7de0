# quadcompress/adaptive.py
"""Back-solve quadtree parameters from a target compression percentage.

Three regimes, picked by the target P:

* ``P < 20``   small fixed threshold, block size derived from the pixel count
* ``P < 75``   uniform grid (optionally a finer centered zone, "hybrid")
* otherwise    weighted bisection over the metric's threshold range, building
  a trial tree per step
"""
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
import logging
import math
import numpy as np

from .metrics import ErrorMethod, LOW_TARGET_THRESHOLDS, search_upper_bound
from .pixels import prev_power_of_two, downscale_image

log = logging.getLogger(__name__)

Rect = Tuple[int, int, int, int]

SEARCH_LOW = 0.0001
MAX_ITERATIONS = 7
TOLERANCE_PCT = 3.0
COLLAPSE_RATIO = 0.001
HYBRID_TRIGGER_PCT = 10.0
CENTER_RATIO_RANGE = (0.3, 0.6)
SEARCH_DOWNSCALE_PIXELS = 1_000_000

MODE_THRESHOLD = "threshold"
MODE_GRID = "grid"
MODE_HYBRID = "hybrid"


@dataclass
class CompressionPlan:
    threshold: float
    min_block_size: int
    max_depth: int
    mode: str = MODE_THRESHOLD
    center: Optional[Rect] = None
    center_min_block_size: int = 0
    center_max_depth: int = 0
    outer_min_block_size: int = 0
    outer_max_depth: int = 0
    estimated_pct: Optional[float] = None

    @property
    def forced(self) -> bool:
        """Grid-like plans split by size/depth only and never consult the metric."""
        return self.mode in (MODE_GRID, MODE_HYBRID)

    def limits_for(self, x: int, y: int, width: int, height: int) -> Tuple[int, int]:
        """(min_block_size, max_depth) that applies to a node rectangle."""
        if self.mode != MODE_HYBRID or self.center is None:
            return self.min_block_size, self.max_depth
        cx, cy, cw, ch = self.center
        overlaps = x < cx + cw and cx < x + width and y < cy + ch and cy < y + height
        if overlaps:
            return self.center_min_block_size, self.center_max_depth
        return self.outer_min_block_size, self.outer_max_depth


def leaf_compression_percentage(leaves: int, pixels: int) -> float:
    if pixels <= 0:
        return 0.0
    return (1.0 - leaves / pixels) * 100.0

def grid_depth(width: int, height: int, block: int) -> int:
    return int(math.log2(max(1, max(width, height) // block))) + 1

def grid_leaves(width: int, height: int, block: int, max_depth: int) -> int:
    """Approximate leaves of a forced build: splitting stops once either side reaches ``block``."""
    splits = 0
    w, h = float(width), float(height)
    while splits < max_depth and w > block and h > block:
        w, h = w / 2.0, h / 2.0
        splits += 1
    return 4 ** splits

# ---------------- regimes ----------------
def _low_target_plan(width, height, method, max_depth, target_pct) -> CompressionPlan:
    side = math.sqrt(width * height * (1.0 - target_pct / 100.0))
    block = max(2, prev_power_of_two(side))
    threshold = LOW_TARGET_THRESHOLDS[method]
    log.info("Target %.1f%%: high-precision plan, threshold=%g, min block=%d",
             target_pct, threshold, block)
    return CompressionPlan(threshold=threshold, min_block_size=block, max_depth=max_depth)

def _grid_plan(width, height, threshold, target_pct) -> CompressionPlan:
    total = width * height
    target_leaves = max(1, int(total * (1.0 - target_pct / 100.0)))
    grid = prev_power_of_two(math.sqrt(total / target_leaves))
    depth = grid_depth(width, height, grid)
    predicted = leaf_compression_percentage(grid_leaves(width, height, grid, depth), total)
    log.info("Target %.1f%%: fixed-grid plan, block %dx%d, depth %d, predicted %.2f%% "
             "(target leaves %d of %d)", target_pct, grid, grid, depth, predicted,
             target_leaves, total)
    plan = CompressionPlan(threshold=threshold, min_block_size=grid, max_depth=depth,
                           mode=MODE_GRID, estimated_pct=predicted)
    if abs(predicted - target_pct) <= HYBRID_TRIGGER_PCT:
        return plan

    # finer blocks in a centered zone, coarser outside; zone area solved from the
    # leaf target then clamped to the allowed side ratio
    fine, coarse = grid, grid * 2
    fine_leaves = float(grid_leaves(width, height, fine, grid_depth(width, height, fine)))
    coarse_leaves = float(grid_leaves(width, height, coarse, grid_depth(width, height, coarse)))
    area = (target_leaves - coarse_leaves) / max(1.0, fine_leaves - coarse_leaves)
    lo, hi = CENTER_RATIO_RANGE
    ratio = min(hi, max(lo, math.sqrt(max(0.0, area))))
    cw, ch = max(1, int(width * ratio)), max(1, int(height * ratio))
    plan.mode = MODE_HYBRID
    plan.center = ((width - cw) // 2, (height - ch) // 2, cw, ch)
    plan.center_min_block_size = fine
    plan.center_max_depth = grid_depth(width, height, fine)
    plan.outer_min_block_size = coarse
    plan.outer_max_depth = grid_depth(width, height, coarse)
    plan.estimated_pct = leaf_compression_percentage(
        int(ratio * ratio * fine_leaves + (1.0 - ratio * ratio) * coarse_leaves), total)
    log.info("  hybrid zone %dx%d at (%d, %d): center block %d, outer block %d, "
             "estimated %.2f%%", cw, ch, plan.center[0], plan.center[1], fine, coarse,
             plan.estimated_pct)
    return plan

def _search_plan(image, method, threshold, min_block_size, max_depth, target_pct,
                 build_trial) -> CompressionPlan:
    low = SEARCH_LOW
    high = search_upper_bound(method, target_pct)
    log.info("Target %.1f%%: adaptive search over [%g, %g]", target_pct, low, high)

    test = image
    if image.shape[0] * image.shape[1] > SEARCH_DOWNSCALE_PIXELS:
        test = downscale_image(image, 2)

    plan = CompressionPlan(threshold=threshold, min_block_size=min_block_size,
                           max_depth=max_depth)
    current = build_trial(test, threshold)
    best_threshold, best_diff, best_pct = threshold, abs(current - target_pct), current
    if best_diff <= TOLERANCE_PCT:
        log.info("Target reached with the initial threshold %g", threshold)
        plan.estimated_pct = current
        return plan
    if current < target_pct:
        low = threshold
    else:
        high = threshold

    for it in range(MAX_ITERATIONS):
        weight = 0.5
        if it > 0:
            weight = 0.7 if current < target_pct else 0.3
        candidate = low + (high - low) * weight
        if abs(candidate - best_threshold) < COLLAPSE_RATIO * best_threshold:
            break
        current = build_trial(test, candidate)
        log.debug("Iteration %d: threshold=%g -> %.2f%%", it + 1, candidate, current)
        diff = abs(current - target_pct)
        if diff < best_diff:
            best_threshold, best_diff, best_pct = candidate, diff, current
        if diff <= TOLERANCE_PCT:
            break
        if current < target_pct:
            low = candidate
        else:
            high = candidate
        if high - low < COLLAPSE_RATIO * low:
            break

    if best_diff > TOLERANCE_PCT and best_pct > 0.0:
        scaled = best_threshold * (target_pct / best_pct)
        scaled = max(low, min(high * 1.2, scaled))
        pct = build_trial(test, scaled)
        log.debug("Extrapolated threshold=%g -> %.2f%%", scaled, pct)
        if abs(pct - target_pct) < best_diff:
            best_threshold, best_diff, best_pct = scaled, abs(pct - target_pct), pct

    log.info("Using threshold %g (%.2f points from target)", best_threshold, best_diff)
    plan.threshold = best_threshold
    plan.estimated_pct = best_pct
    return plan

def plan_for_target(image: np.ndarray, method: ErrorMethod, threshold: float,
                    min_block_size: int, max_depth: int, target_pct: float,
                    build_trial: Callable[[np.ndarray, float], float]) -> CompressionPlan:
    """Compression plan for ``target_pct``; ``target_pct <= 0`` keeps the caller's values.

    ``build_trial(image, threshold)`` must build a plain threshold-driven tree and
    return its leaf-based compression percentage.
    """
    if target_pct <= 0.0:
        return CompressionPlan(threshold=threshold, min_block_size=min_block_size,
                               max_depth=max_depth)
    height, width = image.shape[:2]
    if target_pct < 20.0:
        return _low_target_plan(width, height, method, max_depth, target_pct)
    if target_pct < 75.0:
        return _grid_plan(width, height, threshold, target_pct)
    return _search_plan(image, method, threshold, min_block_size, max_depth,
                        target_pct, build_trial)
