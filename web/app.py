#!/usr/bin/env python3
"""
web/app.py - Web entrypoint for the Quadtree Image Compressor.

Features:
- AJAX-friendly compress endpoint (returns JSON with base64 previews)
- Manual threshold or target-percentage driven compression (quadcompress.Quadtree)
- Saves outputs to ./output and returns download links

Usage (dev):
    python web/app.py
"""

import os
import io
import math
import json
import base64
import sys
import uuid
from pathlib import Path
from flask import Flask, request, render_template, send_file, redirect, url_for, flash, jsonify
from werkzeug.utils import secure_filename
from PIL import Image, UnidentifiedImageError

# Ensure project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quadcompress.metrics import ErrorMethod
from quadcompress.pixels import psnr, to_rgb_array
from quadcompress.quadtree_core import (
    DEFAULT_MAX_DEPTH,
    Quadtree,
    check_parameters,
    estimate_serialized_bytes,
    serialize_quadtree,
)

ALLOWED = {"png", "jpg", "jpeg"}
OUTPUT_DIR = PROJECT_ROOT / "output"

app = Flask(__name__, template_folder=str(PROJECT_ROOT / "web" / "templates"))
app.secret_key = os.environ.get("FLASK_SECRET", "change_me_for_prod")
app.config["OUTPUT_DIR"] = OUTPUT_DIR

def allowed_filename(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED

def pil_to_bytes_io(img: Image.Image, fmt="PNG"):
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    buf.seek(0)
    return buf

def output_dir() -> Path:
    d = Path(app.config["OUTPUT_DIR"])
    d.mkdir(parents=True, exist_ok=True)
    return d

@app.route("/", methods=["GET"])
def index():
    return render_template("index.html", result=None, methods=list(ErrorMethod),
                           default_threshold=10, default_block=2, default_depth=DEFAULT_MAX_DEPTH)

@app.route("/compress", methods=["POST"])
def compress():
    """
    Main compress endpoint.
    If request is AJAX (X-Requested-With: XMLHttpRequest) or Accept: application/json -> return JSON.
    Otherwise render template fallback.
    """
    prefer_json = (request.headers.get("X-Requested-With") == "XMLHttpRequest") or ("application/json" in (request.headers.get("Accept") or ""))

    def respond_error(msg, http_code=400):
        if prefer_json:
            return jsonify({"error": msg}), http_code
        flash(msg)
        return redirect(url_for("index"))

    if "image" not in request.files:
        return respond_error("No file uploaded")
    file = request.files["image"]
    if file.filename == "":
        return respond_error("No file selected")
    if not allowed_filename(file.filename):
        return respond_error("Unsupported file type (allowed: png, jpg, jpeg)")

    try:
        method = ErrorMethod.parse(request.form.get("method") or "variance")
        threshold = float(request.form.get("threshold") or 10.0)
        min_block = int(request.form.get("min_block_size") or 2)
        target_pct = float(request.form.get("target_pct") or 0.0)
        max_depth = int(request.form.get("max_depth") or DEFAULT_MAX_DEPTH)
    except ValueError as e:
        return respond_error(f"Invalid parameter: {e}")

    try:
        pil = Image.open(file.stream)
        arr = to_rgb_array(pil)
    except (UnidentifiedImageError, OSError) as e:
        return respond_error(f"Cannot open image: {e}")

    try:
        warnings = check_parameters(arr.shape[1], arr.shape[0], method, threshold,
                                    min_block, target_pct)
        qt = Quadtree(arr, threshold, min_block, method, target_pct=target_pct, max_depth=max_depth)
    except ValueError as e:
        return respond_error(str(e))
    for w in warnings:
        app.logger.info("%s", w)

    try:
        qt.compress()
        recon = qt.reconstruct()
        pil_recon = Image.fromarray(recon)
    except (MemoryError, RuntimeError) as e:
        return respond_error(f"Build failed: {e}", 500)

    pval = psnr(arr, recon)
    p_str = "inf" if math.isinf(pval) else f"{pval:.2f}"

    uid = uuid.uuid4().hex[:12]
    safe_recon_name = f"recon_{uid}.png"
    safe_json_name = f"tree_{uid}.json"
    out = output_dir()
    pil_recon.save(out / safe_recon_name, format="PNG")
    try:
        payload = {"orig_w": qt.width, "orig_h": qt.height, "method": method.value,
                   "threshold": qt.threshold, "tree": serialize_quadtree(qt.root)}
        with open(out / safe_json_name, "w", encoding="utf-8") as f:
            json.dump(payload, f, separators=(",", ":"), ensure_ascii=False)
    except OSError as e:
        # still continue, but warn
        app.logger.warning("Failed to write json: %s", e)

    result = {
        "psnr": p_str,
        "method": method.label,
        "nodes": qt.node_count(),
        "leaves": qt.leaf_count(),
        "depth": qt.tree_depth(),
        "compression_pct": round(qt.leaf_compression_percentage(), 2),
        "compression_basis": "leaf-count",
        "estimated_bytes": estimate_serialized_bytes(qt.root),
        "used_threshold": qt.threshold,
        "plan": qt.plan.mode,
        "degraded": qt.report.degraded,
        "warnings": warnings,
        "recon_name": safe_recon_name,
        "json_name": safe_json_name,
    }

    if prefer_json:
        result["orig_b64"] = base64.b64encode(pil_to_bytes_io(Image.fromarray(arr)).getvalue()).decode("ascii")
        result["recon_b64"] = base64.b64encode(pil_to_bytes_io(pil_recon).getvalue()).decode("ascii")
        return jsonify(result)

    return render_template("index.html", result=result, methods=list(ErrorMethod),
                           default_threshold=threshold, default_block=min_block, default_depth=max_depth)

@app.route("/download/recon/<fname>")
def download_recon(fname):
    p = output_dir() / secure_filename(fname)
    if not p.exists():
        flash("File not found")
        return redirect(url_for("index"))
    return send_file(str(p), as_attachment=True)

@app.route("/download/json/<fname>")
def download_json(fname):
    p = output_dir() / secure_filename(fname)
    if not p.exists():
        flash("File not found")
        return redirect(url_for("index"))
    return send_file(str(p), as_attachment=True)

if __name__ == "__main__":
    print("Starting quadtree web app on http://127.0.0.1:5000")
    app.run(host="0.0.0.0", port=5000, debug=True)
