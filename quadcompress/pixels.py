# quadcompress/pixels.py
from typing import Tuple
import math
import numpy as np
from PIL import Image

Color = Tuple[int, int, int]

NEUTRAL_GRAY: Color = (128, 128, 128)

def to_rgb_array(pil: Image.Image) -> np.ndarray:
    return np.array(pil.convert("RGB"))

def check_rgb(img: np.ndarray) -> None:
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError("img must be HxW x 3 RGB uint8")

def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0

def prev_power_of_two(n: float) -> int:
    """Largest power of two <= n (1 for anything below 2)."""
    p = 1
    while p * 2 <= n:
        p <<= 1
    return p

# ---------------- safe region access ----------------
def clamp_rect(img: np.ndarray, x: int, y: int, width: int, height: int):
    h, w = img.shape[:2]
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(x + width, w), min(y + height, h)
    if x0 >= x1 or y0 >= y1:
        return None
    return x0, y0, x1, y1

def safe_roi(img: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
    """Bounds-clamped view of a rectangle; empty (0, 0, 3) array when nothing overlaps."""
    r = clamp_rect(img, x, y, width, height)
    if r is None:
        return img[0:0, 0:0]
    x0, y0, x1, y1 = r
    return img[y0:y1, x0:x1]

def mean_color(block: np.ndarray) -> Color:
    if block.size == 0:
        return NEUTRAL_GRAY
    m = block.reshape(-1, 3).astype(np.float64).mean(axis=0)
    return tuple(int(min(255, max(0, round(c)))) for c in m)

def region_mean_color(img: np.ndarray, x: int, y: int, width: int, height: int) -> Color:
    return mean_color(safe_roi(img, x, y, width, height))

def uniform_fill(block: np.ndarray, color) -> np.ndarray:
    out = np.empty_like(block)
    out[...] = color
    return out

# ---------------- downscale-for-search helper ----------------
def downscale_image(img: np.ndarray, factor: int) -> np.ndarray:
    if factor <= 1:
        return img
    pil = Image.fromarray(img)
    w, h = pil.size
    neww = max(1, w // factor)
    newh = max(1, h // factor)
    small = pil.resize((neww, newh), Image.BILINEAR)
    return np.array(small)

def psnr(orig: np.ndarray, recon: np.ndarray) -> float:
    mse = float(np.mean((orig.astype(np.float64) - recon.astype(np.float64))**2))
    if mse == 0.0:
        return float("inf")
    PIXEL_MAX = 255.0
    return 20.0 * math.log10(PIXEL_MAX / math.sqrt(mse))
