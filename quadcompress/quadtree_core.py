# quadcompress/quadtree_core.py
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, List, Tuple, Dict, Any, Iterator
import logging
import os
import threading
import time
import numpy as np
from PIL import Image

from .adaptive import CompressionPlan, plan_for_target, leaf_compression_percentage
from .metrics import ErrorMethod, calculate_error, threshold_warning
from .pixels import (NEUTRAL_GRAY, Color, check_rgb, clamp_rect, is_power_of_two, mean_color,
                     uniform_fill)
from .visualize import FrameRecorder, draw_partition, save_animation

log = logging.getLogger(__name__)

MAX_NODES = 150_000
DEFAULT_TIMEOUT = 0.6
DEFAULT_MAX_DEPTH = 10
PARALLEL_PIXELS = 500_000
PARALLEL_MAX_DEPTH = 1

# depths whose subdivision is worth a snapshot
CAPTURE_DEPTHS = (0, 1, 3, 5)
FORCED_CAPTURE_DEPTHS = (0, 1, 2)

@dataclass
class QNode:
    x: int
    y: int
    width: int
    height: int
    depth: int = 0
    is_leaf: bool = True
    color: Color = NEUTRAL_GRAY
    children: Optional[List["QNode"]] = None

    @property
    def rect(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height

    def split(self) -> List["QNode"]:
        """Four children partitioning this rectangle; trailing halves absorb odd pixels."""
        hw = max(1, self.width // 2)
        hh = max(1, self.height // 2)
        d = self.depth + 1
        return [
            QNode(self.x,      self.y,      hw,              hh,               d),
            QNode(self.x + hw, self.y,      self.width - hw, hh,               d),
            QNode(self.x,      self.y + hh, hw,              self.height - hh, d),
            QNode(self.x + hw, self.y + hh, self.width - hw, self.height - hh, d),
        ]


@dataclass
class BuildReport:
    timed_out: bool = False
    node_cap_hit: bool = False
    elapsed: float = 0.0
    nodes_created: int = 0

    @property
    def degraded(self) -> bool:
        """True when part of the tree was abandoned because of the timeout or node cap."""
        return self.timed_out or self.node_cap_hit


class _Counter:
    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def add(self, n: int) -> int:
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0

# ---------------- tree walks ----------------
def tree_depth(node: Optional[QNode]) -> int:
    if node is None: return 0
    if node.is_leaf: return 1
    return 1 + max(tree_depth(c) for c in node.children)

def count_nodes(node: Optional[QNode]) -> int:
    if node is None: return 0
    if node.is_leaf: return 1
    return 1 + sum(count_nodes(c) for c in node.children)

def count_leaves(node: Optional[QNode]) -> int:
    if node is None: return 0
    if node.is_leaf: return 1
    return sum(count_leaves(c) for c in node.children)

def iter_leaves(node: Optional[QNode]) -> Iterator[QNode]:
    if node is None:
        return
    stack = [node]
    while stack:
        cur = stack.pop()
        if cur.is_leaf:
            yield cur
        else:
            stack.extend(reversed(cur.children))

# ---------------- render ----------------
def render_quadtree(node: Optional[QNode], canvas: np.ndarray) -> None:
    if node is None:
        return
    if node.is_leaf:
        r = clamp_rect(canvas, node.x, node.y, node.width, node.height)
        if r is not None:
            x0, y0, x1, y1 = r
            canvas[y0:y1, x0:x1] = node.color
        return
    for c in node.children:
        render_quadtree(c, canvas)

def render_image(node: QNode, width: int, height: int) -> np.ndarray:
    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    render_quadtree(node, canvas)
    return canvas

# ---------------- JSON helpers ----------------
def serialize_quadtree(node: QNode) -> Dict[str, Any]:
    d = {"leaf": node.is_leaf, "rect": list(node.rect)}
    if node.is_leaf:
        d["color"] = list(node.color)
    else:
        d["children"] = [serialize_quadtree(c) for c in node.children]
    return d

def deserialize_quadtree(d: Dict[str, Any], depth: int = 0) -> QNode:
    x, y, w, h = (int(v) for v in d["rect"])
    node = QNode(x, y, w, h, depth)
    if d["leaf"]:
        node.color = tuple(int(c) for c in d["color"])
        return node
    node.is_leaf = False
    node.children = [deserialize_quadtree(c, depth + 1) for c in d["children"]]
    return node

def estimate_serialized_bytes(node: QNode) -> int:
    if node.is_leaf: return 1 + 3
    return 1 + sum(estimate_serialized_bytes(c) for c in node.children)

# ---------------- file-size ratio ----------------
def file_compression_percentage(original_path, compressed_path) -> Optional[float]:
    """``(1 - compressed/original) * 100`` from on-disk sizes, None if either is unavailable."""
    try:
        original = os.stat(original_path).st_size
        compressed = os.stat(compressed_path).st_size
    except OSError as e:
        log.debug("Cannot read file sizes: %s", e)
        return None
    if original <= 0 or compressed <= 0:
        return None
    return (1.0 - compressed / original) * 100.0

# ---------------- caller-facing parameter checks ----------------
def check_parameters(width: int, height: int, method: ErrorMethod, threshold: float,
                     min_block_size: int, target_pct: float = 0.0) -> List[str]:
    """Raise ValueError for unusable parameters, return warnings for doubtful ones."""
    if threshold <= 0:
        raise ValueError("Threshold must be positive")
    if min_block_size <= 0:
        raise ValueError("Minimum block size must be positive")
    min_dim = min(width, height)
    if min_dim >= 4 and min_block_size >= min_dim // 2:
        raise ValueError(f"Minimum block size too large for this image; "
                         f"recommended maximum: {max(1, min_dim // 4)}")
    if not 0.0 <= target_pct <= 100.0:
        raise ValueError("Target compression must be between 0 and 100 percent")
    warnings = []
    w = threshold_warning(method, threshold)
    if w: warnings.append(w)
    if not is_power_of_two(min_block_size):
        warnings.append(f"Minimum block size {min_block_size} is not a power of 2; results may be uneven")
    if target_pct > 95.0:
        warnings.append("Target compression is very high (>95%); image quality may be very poor")
    elif 0.0 < target_pct < 10.0:
        warnings.append("Target compression is very low (<10%); it may be hard to reach")
    return warnings


class Quadtree:
    """Quadtree compressor over one decoded RGB image.

    Not meant to run several ``compress()`` calls concurrently: the node counter,
    timeout flag and plan belong to the instance.
    """

    def __init__(self, image: np.ndarray, threshold: float, min_block_size: int,
                 method: ErrorMethod = ErrorMethod.VARIANCE, target_pct: float = 0.0,
                 visualize: bool = False, max_depth: int = DEFAULT_MAX_DEPTH,
                 timeout: Optional[float] = DEFAULT_TIMEOUT, node_cap: int = MAX_NODES,
                 stable_small_regions: bool = False):
        check_rgb(image)
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        if min_block_size < 1:
            raise ValueError("min_block_size must be >= 1")
        if not 0.0 <= target_pct <= 100.0:
            raise ValueError("target_pct must be within [0, 100]")
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        self.image = np.array(image, dtype=np.uint8)
        self.image.flags.writeable = False
        self.height, self.width = self.image.shape[:2]
        self.base_threshold = float(threshold)
        self.min_block_size = int(min_block_size)
        self.method = ErrorMethod.parse(method)
        self.target_pct = float(target_pct)
        self.visualize = visualize
        self.max_depth = int(max_depth)
        self.timeout = timeout
        self.node_cap = node_cap
        self.stable_small_regions = stable_small_regions

        self.root = QNode(0, 0, self.width, self.height)
        self.plan: Optional[CompressionPlan] = None
        self.report = BuildReport()
        self.recorder = FrameRecorder(enabled=visualize)
        self._nodes = _Counter()
        self._expired = threading.Event()
        self._parallel = False

    @property
    def threshold(self) -> float:
        """Threshold of the last build's plan; the caller's value before any build."""
        if self.plan is None:
            return self.base_threshold
        return self.plan.threshold

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    # ---------------- build ----------------
    def _trial_percentage(self, image: np.ndarray, threshold: float) -> float:
        trial = Quadtree(image, threshold, self.min_block_size, self.method,
                         max_depth=self.max_depth, timeout=self.timeout,
                         node_cap=self.node_cap,
                         stable_small_regions=self.stable_small_regions)
        trial.compress()
        return trial.leaf_compression_percentage()

    def compress(self) -> QNode:
        log.info("Compressing %dx%d image using Quadtree (%s)...",
                 self.width, self.height, self.method.label)
        self.report = BuildReport()
        self.recorder.reset()
        self._nodes.reset()
        self._expired.clear()

        self.plan = plan_for_target(self.image, self.method, self.base_threshold,
                                    self.min_block_size, self.max_depth,
                                    self.target_pct, self._trial_percentage)
        log.info("Starting compression with threshold: %g (%s plan)",
                 self.threshold, self.plan.mode)
        self.recorder.capture(self.image)

        self.root = QNode(0, 0, self.width, self.height)
        self._parallel = self.pixel_count > PARALLEL_PIXELS
        start = time.perf_counter()
        watchdog = None
        if self.timeout is not None:
            watchdog = threading.Timer(self.timeout, self._expired.set)
            watchdog.daemon = True
            watchdog.start()
        try:
            self._build(self.root)
        finally:
            if watchdog is not None:
                watchdog.cancel()
        self.report.elapsed = time.perf_counter() - start
        self.report.nodes_created = self._nodes.value

        if self.report.timed_out:
            log.warning("Compression was stopped early due to timeout")
        if self.report.node_cap_hit:
            log.warning("Compression was stopped early: node cap %d reached", self.node_cap)
        log.info("Compression complete with threshold: %g in %.0f ms",
                 self.threshold, self.report.elapsed * 1000)

        if self.visualize:
            recon = self.reconstruct()
            self.recorder.capture_final(Image.fromarray(recon))
            self.recorder.capture_final(draw_partition(recon, self.root))
        return self.root

    def _snapshot(self, node: QNode, split: bool) -> None:
        if not self.visualize:
            return
        depths = FORCED_CAPTURE_DEPTHS if self.plan.forced else CAPTURE_DEPTHS
        if node.depth not in depths:
            return
        self.recorder.capture(self.image, node.rect if split else None)

    def _build(self, node: QNode) -> None:
        if self._expired.is_set():
            self.report.timed_out = True
            return
        if self._nodes.value > self.node_cap:
            self.report.node_cap_hit = True
            return
        r = clamp_rect(self.image, node.x, node.y, node.width, node.height)
        if r is None:
            return
        x0, y0, x1, y1 = r
        block = self.image[y0:y1, x0:x1]
        node.color = mean_color(block)

        min_block, max_depth = self.plan.limits_for(*node.rect)
        if node.depth >= max_depth or node.width <= min_block or node.height <= min_block:
            return

        if not self.plan.forced:
            reference = None
            if self.method is ErrorMethod.SSIM:
                reference = uniform_fill(block, node.color)
            error = calculate_error(self.method, block, reference,
                                    stable_small_regions=self.stable_small_regions)
            if error < self.plan.threshold:
                self._snapshot(node, split=False)
                return

        node.is_leaf = False
        self._nodes.add(4)
        self._snapshot(node, split=True)
        node.children = node.split()

        if self._parallel and node.depth <= PARALLEL_MAX_DEPTH:
            with ThreadPoolExecutor(max_workers=4) as pool:
                list(pool.map(self._build, node.children))
        else:
            for child in node.children:
                self._build(child)

    # ---------------- output & metrics ----------------
    def reconstruct(self) -> np.ndarray:
        return render_image(self.root, self.width, self.height)

    def tree_depth(self) -> int:
        return tree_depth(self.root)

    def node_count(self) -> int:
        return count_nodes(self.root)

    def leaf_count(self) -> int:
        return count_leaves(self.root)

    def leaf_compression_percentage(self) -> float:
        return leaf_compression_percentage(self.leaf_count(), self.pixel_count)

    def compression_percentage(self, original_path=None, compressed_path=None) -> Tuple[float, str]:
        """(percentage, basis) where basis is "file-size" or "leaf-count"."""
        if original_path is not None and compressed_path is not None:
            pct = file_compression_percentage(original_path, compressed_path)
            if pct is not None:
                return pct, "file-size"
            log.info("File sizes unavailable, using leaf-count compression")
        return self.leaf_compression_percentage(), "leaf-count"

    @property
    def frames(self) -> List[Image.Image]:
        return list(self.recorder.frames)

    def save_animation(self, output_path) -> bool:
        if not self.visualize:
            log.warning("Visualization was not enabled for this compression.")
            return False
        return save_animation(self.frames, output_path)
