# quadcompress/visualize.py
"""Snapshots of the subdivision process and their assembly into an animation."""
from pathlib import Path
from typing import List, Tuple
import logging
import shutil
import subprocess
import tempfile
import threading
import numpy as np
from PIL import Image, ImageDraw

log = logging.getLogger(__name__)

MAX_FRAMES = 30
FINAL_FRAMES = 4
FRAME_SIZE = (640, 480)
FPS = 2.0

SPLIT_OUTLINE = (255, 0, 0)
LEAF_OUTLINE = (0, 255, 0)
DEPTH_COLORS = [(0, 0, 255), (255, 0, 0), (255, 165, 0)]


def _fit(pil: Image.Image, size=FRAME_SIZE) -> Tuple[Image.Image, float]:
    w, h = pil.size
    scale = min(size[0] / max(1, w), size[1] / max(1, h))
    if scale < 1.0:
        pil = pil.resize((max(1, int(w * scale)), max(1, int(h * scale))), Image.BOX)
        return pil, scale
    return pil.copy(), 1.0


class FrameRecorder:
    """Rate-limited frame capture, safe to call from several split tasks.

    The first 5 requests are always kept; after that every 40th request is kept
    until 15 frames exist and every 80th until ``max_frames``.
    """

    def __init__(self, enabled: bool = True, max_frames: int = MAX_FRAMES):
        self.enabled = enabled
        self.max_frames = max_frames
        self.frames: List[Image.Image] = []
        self._requests = 0
        self._lock = threading.Lock()

    def _wanted(self) -> bool:
        n = len(self.frames)
        if n >= self.max_frames:
            return False
        if n < 5:
            return True
        if self._requests % 40 == 0 and n < 15:
            return True
        return self._requests % 80 == 0 and n < self.max_frames

    def capture(self, image: np.ndarray, rect=None) -> bool:
        if not self.enabled:
            return False
        with self._lock:
            self._requests += 1
            if not self._wanted():
                return False
            self._append(Image.fromarray(image), rect)
        return True

    def capture_final(self, pil: Image.Image) -> bool:
        """Closing frames bypass the sampling schedule but not the hard cap."""
        if not self.enabled:
            return False
        with self._lock:
            if len(self.frames) >= self.max_frames + FINAL_FRAMES:
                return False
            self._append(pil, None)
        return True

    def _append(self, pil: Image.Image, rect) -> None:
        frame, scale = _fit(pil.convert("RGB"))
        draw = ImageDraw.Draw(frame)
        if rect is not None:
            x, y, w, h = rect
            x0, y0 = int(x * scale), int(y * scale)
            x1 = max(x0, int((x + w) * scale) - 1)
            y1 = max(y0, int((y + h) * scale) - 1)
            draw.rectangle([x0, y0, x1, y1], outline=SPLIT_OUTLINE, width=2)
        draw.text((10, 10), f"Frame {len(self.frames) + 1}", fill=SPLIT_OUTLINE)
        self.frames.append(frame)

    def reset(self) -> None:
        with self._lock:
            self.frames = []
            self._requests = 0


def draw_partition(canvas: np.ndarray, root, max_line_depth: int = 8) -> Image.Image:
    """Leaves filled with their color, internal nodes outlined and cross-split."""
    pil = Image.fromarray(canvas.copy())
    draw = ImageDraw.Draw(pil)
    h, w = canvas.shape[:2]

    def rec(node, depth):
        if node is None:
            return
        x0, y0 = max(0, node.x), max(0, node.y)
        x1, y1 = min(w, node.x + node.width) - 1, min(h, node.y + node.height) - 1
        if x1 < x0 or y1 < y0:
            return
        if node.is_leaf:
            draw.rectangle([x0, y0, x1, y1], fill=tuple(node.color))
            if node.width >= 8 and node.height >= 8:
                draw.rectangle([x0, y0, x1, y1], outline=LEAF_OUTLINE)
            return
        for c in node.children:
            rec(c, depth + 1)
        if depth <= max_line_depth:
            color = DEPTH_COLORS[depth % 3]
            mx, my = (x0 + x1 + 1) // 2, (y0 + y1 + 1) // 2
            draw.rectangle([x0, y0, x1, y1], outline=color)
            draw.line([(mx, y0), (mx, y1)], fill=color)
            draw.line([(x0, my), (x1, my)], fill=color)

    rec(root, 0)
    return pil

# ---------------- animation output ----------------
def _save_gif(frames: List[Image.Image], path: Path, fps: float) -> None:
    frames[0].save(
        path,
        save_all=True,
        append_images=frames[1:],
        duration=int(1000 / fps), loop=0)

def _save_with_ffmpeg(frames: List[Image.Image], path: Path, fps: float) -> None:
    exe = shutil.which("ffmpeg")
    if exe is None:
        raise RuntimeError("ffmpeg not found on PATH")
    with tempfile.TemporaryDirectory() as tmp:
        for i, f in enumerate(frames):
            f.save(Path(tmp) / f"frame_{i:04d}.png")
        result = subprocess.run(
            [exe, "-y", "-loglevel", "error", "-framerate", str(fps),
             "-i", str(Path(tmp) / "frame_%04d.png"), "-pix_fmt", "yuv420p", str(path)],
            capture_output=True, text=True, timeout=120)
    if result.returncode != 0:
        raise RuntimeError(result.stderr.strip() or f"ffmpeg exited with {result.returncode}")

def save_animation(frames: List[Image.Image], output_path, fps: float = FPS) -> bool:
    """Write frames as a GIF (Pillow) or any ffmpeg-supported container."""
    if not frames:
        log.warning("No frames available for animation.")
        return False
    path = Path(output_path)
    log.info("Creating animation with %d frames...", len(frames))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() == ".gif":
            _save_gif(frames, path, fps)
        else:
            _save_with_ffmpeg(frames, path, fps)
    except (OSError, ValueError, RuntimeError, subprocess.SubprocessError) as e:
        log.warning("Could not create animation %s: %s", path, e)
        return False
    log.info("Animation saved to: %s", path)
    return True
