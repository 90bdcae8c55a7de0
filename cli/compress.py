#!/usr/bin/env python3
"""
cli/compress.py
Command-line wrapper around quadcompress.Quadtree

Usage examples:
  # compress an image (writes reconstruction + tree JSON to ./output)
  python cli/compress.py compress path/to/image.jpg --method variance --threshold 50 --min-block-size 4

  # let the compressor pick its parameters for a 90% target and record the process
  python cli/compress.py compress path/to/image.png --target 90 --gif output/process.gif

  # decompress a previously-saved JSON
  python cli/compress.py decompress output/image_qtree.json --out recon.png

  # roundtrip (compress in memory, print PSNR)
  python cli/compress.py roundtrip path/to/image.jpg --threshold 20 --out recon.png
"""

import sys
import argparse
import json
import logging
import math
import time
from pathlib import Path

# Make sure the package can be imported when running this script directly
this_dir = Path(__file__).resolve().parent
project_root = this_dir.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from quadcompress.metrics import ErrorMethod
from quadcompress.pixels import psnr, to_rgb_array
from quadcompress.quadtree_core import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_TIMEOUT,
    Quadtree,
    check_parameters,
    deserialize_quadtree,
    estimate_serialized_bytes,
    render_image,
    serialize_quadtree,
)
from PIL import Image
import numpy as np

OUTPUT_DIR = project_root / "output"
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}

class CliError(Exception):
    pass

def jpeg_quality(target_pct: float) -> int:
    if target_pct > 80: return 60
    if target_pct > 60: return 70
    if target_pct > 40: return 75
    if target_pct > 20: return 80
    return 85

def save_reconstruction(recon: np.ndarray, path: Path, target_pct: float) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    ext = path.suffix.lower()
    pil = Image.fromarray(recon)
    if ext in (".jpg", ".jpeg"):
        pil.save(path, quality=jpeg_quality(target_pct), optimize=True)
    elif ext == ".webp":
        pil.save(path, quality=80)
    else:
        pil.save(path, optimize=True)

def load_image(in_path: str) -> np.ndarray:
    p = Path(in_path)
    if not p.is_file():
        raise CliError(f"File not found: {in_path}")
    if p.suffix.lower() not in IMAGE_EXTENSIONS:
        raise CliError(f"Unsupported image type: {p.suffix} (allowed: {', '.join(sorted(IMAGE_EXTENSIONS))})")
    try:
        with Image.open(p) as img:
            return to_rgb_array(img)
    except OSError as e:
        raise CliError(f"Cannot open image: {e}") from e

def _warn_parameters(arr: np.ndarray, method: ErrorMethod, threshold: float, min_block_size: int,
                     target_pct: float) -> None:
    try:
        warnings = check_parameters(arr.shape[1], arr.shape[0], method, threshold,
                                    min_block_size, target_pct)
    except ValueError as e:
        raise CliError(str(e)) from e
    for w in warnings:
        print(f"[!] Warning: {w}")

def compress_image(in_path: str, threshold: float, min_block_size: int, method: ErrorMethod,
                   target_pct: float = 0.0, max_depth: int = DEFAULT_MAX_DEPTH,
                   timeout=DEFAULT_TIMEOUT, out_path: str = None, gif_path: str = None,
                   output_dir: Path = None):
    start = time.perf_counter()
    arr = load_image(in_path)
    _warn_parameters(arr, method, threshold, min_block_size, target_pct)

    print(f"[+] Input: {in_path}")
    print(f"[+] Size: {arr.shape[1]}x{arr.shape[0]}, method: {method.label}, threshold: {threshold:g}, "
          f"min block: {min_block_size}, target: {target_pct:g}%")
    qt = Quadtree(arr, threshold, min_block_size, method, target_pct=target_pct,
                  visualize=gif_path is not None, max_depth=max_depth, timeout=timeout)
    qt.compress()
    recon = qt.reconstruct()

    out_dir = Path(output_dir) if output_dir else OUTPUT_DIR
    base = Path(in_path).stem
    recon_name = Path(out_path) if out_path else out_dir / f"{base}_compressed{Path(in_path).suffix.lower()}"
    json_name = out_dir / f"{base}_qtree.json"
    save_reconstruction(recon, recon_name, target_pct)

    json_name.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "orig_w": qt.width, "orig_h": qt.height,
        "method": method.value, "threshold": qt.threshold,
        "tree": serialize_quadtree(qt.root)
    }
    with open(json_name, "w", encoding="utf-8") as f:
        json.dump(data, f, separators=(",", ":"), ensure_ascii=False)

    gif_ok = None
    if gif_path:
        gif_ok = qt.save_animation(gif_path)
        if not gif_ok:
            print("[!] Warning: could not create the process animation; continuing")

    elapsed = (time.perf_counter() - start) * 1000.0
    pct, basis = qt.compression_percentage(in_path, recon_name)
    p = psnr(arr, recon)
    stats = {
        "recon": str(recon_name), "json": str(json_name), "gif": gif_path if gif_ok else None,
        "elapsed_ms": elapsed,
        "original_bytes": Path(in_path).stat().st_size,
        "compressed_bytes": recon_name.stat().st_size,
        "compression_pct": pct, "compression_basis": basis,
        "leaf_compression_pct": qt.leaf_compression_percentage(),
        "threshold": qt.threshold, "depth": qt.tree_depth(), "nodes": qt.node_count(),
        "leaves": qt.leaf_count(), "est_bytes": estimate_serialized_bytes(qt.root),
        "psnr": p, "degraded": qt.report.degraded,
    }

    print(f"[+] Wrote: {recon_name}")
    print(f"[+] Wrote: {json_name}")
    if stats["gif"]:
        print(f"[+] Wrote: {gif_path}")
    print(f"[+] Execution time: {elapsed:.1f} ms")
    print(f"[+] Original size: {stats['original_bytes']} bytes, compressed size: {stats['compressed_bytes']} bytes")
    print(f"[+] Compression ({basis}): {pct:.2f}%  (leaf-count: {stats['leaf_compression_pct']:.2f}%)")
    print(f"[+] Final threshold: {qt.threshold:.4g}")
    print(f"[+] Tree depth: {stats['depth']}, nodes: {stats['nodes']}, leaves: {stats['leaves']}")
    print(f"[+] PSNR: {'inf' if math.isinf(p) else f'{p:.2f}'} dB")
    if qt.report.degraded:
        print("[!] Result is degraded: subdivision stopped early (timeout or node cap)")
    return stats

def decompress_json(json_path: str, out_path: str = None, output_dir: Path = None):
    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    root = deserialize_quadtree(data["tree"])
    recon = render_image(root, int(data["orig_w"]), int(data["orig_h"]))
    if out_path is None:
        out_dir = Path(output_dir) if output_dir else OUTPUT_DIR
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / (Path(json_path).stem + "_decompressed.png")
    Image.fromarray(recon).save(out_path, format="PNG")
    print(f"[+] Decompressed saved to {out_path}")
    return str(out_path)

def roundtrip(in_path: str, threshold: float, min_block_size: int, method: ErrorMethod,
              target_pct: float = 0.0, max_depth: int = DEFAULT_MAX_DEPTH,
              timeout=DEFAULT_TIMEOUT, out_path: str = None):
    arr = load_image(in_path)
    _warn_parameters(arr, method, threshold, min_block_size, target_pct)
    qt = Quadtree(arr, threshold, min_block_size, method, target_pct=target_pct,
                  max_depth=max_depth, timeout=timeout)
    qt.compress()
    recon = qt.reconstruct()
    if out_path:
        save_reconstruction(recon, Path(out_path), target_pct)
        print(f"[+] Wrote: {out_path}")
    p = psnr(arr, recon)
    print(f"[+] Roundtrip PSNR: {'inf' if math.isinf(p) else f'{p:.2f}'} dB")
    print(f"[+] Leaf-count compression: {qt.leaf_compression_percentage():.2f}%, nodes: {qt.node_count()}")
    return {"psnr": p, "nodes": qt.node_count(), "leaves": qt.leaf_count()}

def _timeout_arg(value: str):
    v = float(value)
    return None if v <= 0 else v

def _add_build_args(p):
    p.add_argument("input", help="Input image path (PNG/JPG/BMP/WEBP)")
    p.add_argument("--method", type=ErrorMethod.parse, default=ErrorMethod.VARIANCE,
                   help="error method: variance, mad, max-diff, entropy, ssim (or 1-5)")
    p.add_argument("--threshold", type=float, default=10.0, help="error threshold (lower = higher quality)")
    p.add_argument("--min-block-size", type=int, default=2, help="smallest block edge before a forced leaf")
    p.add_argument("--target", type=float, default=0.0, help="target compression percent (0 disables)")
    p.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="max subdivision depth")
    p.add_argument("--timeout", type=_timeout_arg, default=DEFAULT_TIMEOUT,
                   help="build time budget in seconds (<= 0 disables)")
    p.add_argument("--out", help="Output image path")

def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="compress.py", description="Quadtree image compressor CLI")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("compress", help="Compress image -> reconstructed image + JSON tree")
    _add_build_args(c)
    c.add_argument("--gif", help="write the subdivision process as an animation (GIF, or any ffmpeg container)")
    c.add_argument("--output-dir", help="directory for outputs (default ./output)")

    d = sub.add_parser("decompress", help="Decompress JSON -> PNG")
    d.add_argument("json", help="Compressed JSON file (produced by compress)")
    d.add_argument("--out", help="Output PNG path (default -> ./output/<json>_decompressed.png)")

    r = sub.add_parser("roundtrip", help="Compress in-memory and reconstruct (prints PSNR)")
    _add_build_args(r)

    return p.parse_args(argv)

def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "compress":
            compress_image(args.input, args.threshold, args.min_block_size, args.method,
                           target_pct=args.target, max_depth=args.max_depth, timeout=args.timeout,
                           out_path=args.out, gif_path=args.gif, output_dir=args.output_dir)
        elif args.cmd == "decompress":
            decompress_json(args.json, out_path=args.out)
        elif args.cmd == "roundtrip":
            roundtrip(args.input, args.threshold, args.min_block_size, args.method,
                      target_pct=args.target, max_depth=args.max_depth, timeout=args.timeout,
                      out_path=args.out)
    except (CliError, ValueError) as e:
        print(f"[!] {e}")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
