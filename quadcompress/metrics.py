# quadcompress/metrics.py
"""Homogeneity measures over a rectangular RGB region.

Every metric returns a non-negative float; higher means less homogeneous.
Regions are ``HxWx3`` uint8 arrays as returned by :func:`pixels.safe_roi`.
"""
from enum import Enum
from typing import Optional, Dict, Tuple, Callable
import numpy as np

from .pixels import uniform_fill, mean_color


class ErrorMethod(Enum):
    VARIANCE = "variance"
    MAD = "mad"
    MAX_PIXEL_DIFF = "max-diff"
    ENTROPY = "entropy"
    SSIM = "ssim"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value) -> "ErrorMethod":
        """Accept an ErrorMethod, its key ("mad"), its 1-based menu index or its label."""
        if isinstance(value, cls):
            return value
        s = str(value).strip().lower()
        if s.isdigit() and 1 <= int(s) <= len(_ORDER):
            return _ORDER[int(s) - 1]
        for m in cls:
            if s in (m.value, m.name.lower(), m.label.lower()):
                return m
        raise ValueError(f"Unknown error method: {value!r}")


_LABELS = {
    ErrorMethod.VARIANCE: "Variance",
    ErrorMethod.MAD: "Mean Absolute Deviation",
    ErrorMethod.MAX_PIXEL_DIFF: "Max Pixel Difference",
    ErrorMethod.ENTROPY: "Entropy",
    ErrorMethod.SSIM: "SSIM",
}
_ORDER = [ErrorMethod.VARIANCE, ErrorMethod.MAD, ErrorMethod.MAX_PIXEL_DIFF,
          ErrorMethod.ENTROPY, ErrorMethod.SSIM]

# (low, high) range a user-supplied threshold is expected to fall in
RECOMMENDED_THRESHOLDS: Dict[ErrorMethod, Tuple[float, float]] = {
    ErrorMethod.VARIANCE: (1.0, 1000.0),
    ErrorMethod.MAD: (1.0, 100.0),
    ErrorMethod.MAX_PIXEL_DIFF: (1.0, 200.0),
    ErrorMethod.ENTROPY: (0.1, 5.0),
    ErrorMethod.SSIM: (0.01, 0.5),
}

# fixed thresholds for targets below 20%
LOW_TARGET_THRESHOLDS: Dict[ErrorMethod, float] = {
    ErrorMethod.VARIANCE: 5.0,
    ErrorMethod.MAD: 2.0,
    ErrorMethod.MAX_PIXEL_DIFF: 5.0,
    ErrorMethod.ENTROPY: 0.1,
    ErrorMethod.SSIM: 0.01,
}

# upper bound of the threshold search, per target band: P<85, P<95, otherwise
SEARCH_UPPER_BOUNDS: Dict[ErrorMethod, Tuple[float, float, float]] = {
    ErrorMethod.VARIANCE: (50.0, 200.0, 500.0),
    ErrorMethod.MAD: (15.0, 30.0, 50.0),
    ErrorMethod.MAX_PIXEL_DIFF: (30.0, 75.0, 150.0),
    ErrorMethod.ENTROPY: (1.0, 2.5, 5.0),
    ErrorMethod.SSIM: (0.15, 0.3, 0.5),
}

# small-region policy: max pixel difference rescaled into each metric's units
SMALL_REGION_PIXELS = 9
SMALL_REGION_SCALE: Dict[ErrorMethod, float] = {
    ErrorMethod.VARIANCE: 0.5,
    ErrorMethod.MAD: 0.25,
    ErrorMethod.MAX_PIXEL_DIFF: 0.5,
    ErrorMethod.ENTROPY: 0.5 / 255.0,
    ErrorMethod.SSIM: 0.5 / 255.0,
}

ENTROPY_MIN_PIXELS = 16
ENTROPY_CAP = 5.0

SSIM_L = 255.0
SSIM_C1 = (0.01 * SSIM_L) ** 2
SSIM_C2 = (0.03 * SSIM_L) ** 2
SSIM_WEIGHTS = (0.299, 0.587, 0.114)
SSIM_SCALE = 0.5
SSIM_NEAR_IDENTICAL = 0.99


def _pixels(block: np.ndarray) -> np.ndarray:
    return block.reshape(-1, 3).astype(np.float64)

# ---------------- metrics ----------------
def variance(block: np.ndarray) -> float:
    n = block.shape[0] * block.shape[1] if block.ndim == 3 else 0
    if n <= 1:
        return 0.0
    px = _pixels(block)
    dev = px - px.mean(axis=0)
    return float((dev * dev).sum() / (3.0 * n))

def mean_absolute_deviation(block: np.ndarray) -> float:
    if block.size == 0:
        return 0.0
    px = _pixels(block)
    return float(np.abs(px - px.mean(axis=0)).sum() / (3.0 * px.shape[0]))

def max_pixel_difference(block: np.ndarray) -> float:
    if block.size == 0:
        return 0.0
    px = _pixels(block)
    n = px.shape[0]
    if n == 1:
        return 0.0
    if n <= 4:
        return float((np.abs(px - px[0]).sum(axis=1) / 3.0).max())
    return float((px.max(axis=0) - px.min(axis=0)).sum() / 3.0)

def entropy(block: np.ndarray) -> float:
    """Mean per-channel Shannon entropy (bits), capped at 5.0.

    Too few samples make the histogram meaningless, so regions under 16 pixels
    fall back to the normalized max pixel difference.
    """
    if block.size == 0 or block.shape[0] * block.shape[1] < ENTROPY_MIN_PIXELS:
        return max_pixel_difference(block) / 255.0
    px = block.reshape(-1, 3)
    n = px.shape[0]
    total = 0.0
    for c in range(3):
        hist = np.bincount(px[:, c], minlength=256)
        p = hist[hist > 0] / n
        total -= float((p * np.log2(p)).sum())
    return min(total / 3.0, ENTROPY_CAP)

def ssim_dissimilarity(block: np.ndarray, reference: np.ndarray) -> float:
    """Luma-weighted ``1 - SSIM`` between a region and its candidate fill, halved."""
    if block.size == 0 or reference.size == 0:
        return 0.0
    if block.shape[0] < 4 or block.shape[1] < 4:
        return variance(block) / 1000.0
    a = _pixels(block)
    b = _pixels(reference)
    n = a.shape[0]
    scores = []
    for c in range(3):
        mu1, mu2 = a[:, c].mean(), b[:, c].mean()
        d1, d2 = a[:, c] - mu1, b[:, c] - mu2
        s1 = (d1 * d1).sum() / (n - 1)
        s2 = (d2 * d2).sum() / (n - 1)
        s12 = (d1 * d2).sum() / (n - 1)
        num = (2 * mu1 * mu2 + SSIM_C1) * (2 * s12 + SSIM_C2)
        den = (mu1 * mu1 + mu2 * mu2 + SSIM_C1) * (s1 + s2 + SSIM_C2)
        ssim = num / den if den > 0.001 else SSIM_NEAR_IDENTICAL
        scores.append(max(0.0, min(1.0, 1.0 - ssim)))
    weighted = sum(w * s for w, s in zip(SSIM_WEIGHTS, scores))
    return float(weighted * SSIM_SCALE)

# ---------------- dispatch ----------------
_TABLE: Dict[ErrorMethod, Callable[[np.ndarray], float]] = {
    ErrorMethod.VARIANCE: variance,
    ErrorMethod.MAD: mean_absolute_deviation,
    ErrorMethod.MAX_PIXEL_DIFF: max_pixel_difference,
    ErrorMethod.ENTROPY: entropy,
}

def calculate_error(method: ErrorMethod, block: np.ndarray,
                    reference: Optional[np.ndarray] = None,
                    stable_small_regions: bool = False) -> float:
    if block.size == 0 or (block.shape[0] == 1 and block.shape[1] == 1):
        return 0.0
    if stable_small_regions and block.shape[0] * block.shape[1] <= SMALL_REGION_PIXELS:
        return max_pixel_difference(block) * SMALL_REGION_SCALE[method]
    if method is ErrorMethod.SSIM:
        if reference is None:
            reference = uniform_fill(block, mean_color(block))
        return ssim_dissimilarity(block, reference)
    return _TABLE[method](block)

def threshold_warning(method: ErrorMethod, threshold: float) -> Optional[str]:
    if threshold <= 0.0:
        raise ValueError("threshold must be positive")
    low, high = RECOMMENDED_THRESHOLDS[method]
    if threshold < low:
        return f"Threshold {threshold:g} is very low for {method.label}; compression may be minimal"
    if threshold > high:
        return f"Threshold {threshold:g} is very high for {method.label}; image quality may be poor"
    return None

def search_upper_bound(method: ErrorMethod, target_pct: float) -> float:
    band = 0 if target_pct < 85.0 else 1 if target_pct < 95.0 else 2
    return SEARCH_UPPER_BOUNDS[method][band]
