"""Tests for the Flask front end."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from web.app import app


@pytest.fixture
def client(tmp_path):
    app.config.update(TESTING=True, OUTPUT_DIR=tmp_path)
    with app.test_client() as c:
        yield c


def _png_bytes(size: int = 24) -> bytes:
    rng = np.random.RandomState(9)
    arr = rng.randint(0, 256, (size, size, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


def _post(client, filename="in.png", data=None, json_reply=True, **fields):
    form = {"method": "mad", "threshold": "10", "min_block_size": "2"}
    form.update(fields)
    form["image"] = (io.BytesIO(data if data is not None else _png_bytes()), filename)
    headers = {"Accept": "application/json"} if json_reply else {}
    return client.post("/compress", data=form, content_type="multipart/form-data", headers=headers)


def test_index_renders(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"Quadtree Image Compressor" in resp.data


def test_compress_json_reply(client, tmp_path):
    resp = _post(client)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["nodes"] >= 1
    assert body["leaves"] <= 24 * 24
    assert body["compression_basis"] == "leaf-count"
    assert body["method"] == "Mean Absolute Deviation"
    assert body["recon_b64"]
    assert (tmp_path / body["recon_name"]).exists()
    assert (tmp_path / body["json_name"]).exists()


def test_compress_with_target(client):
    body = _post(client, target_pct="50").get_json()
    assert body["plan"] in ("grid", "hybrid")


def test_compress_html_reply(client):
    resp = _post(client, json_reply=False)
    assert resp.status_code == 200
    assert b"Download tree JSON" in resp.data


def test_missing_file(client):
    resp = client.post("/compress", data={"method": "mad"}, headers={"Accept": "application/json"})
    assert resp.status_code == 400
    assert "No file" in resp.get_json()["error"]


def test_rejects_other_file_types(client):
    resp = _post(client, filename="in.gif")
    assert resp.status_code == 400


def test_rejects_bad_parameters(client):
    assert _post(client, threshold="abc").status_code == 400
    assert _post(client, method="psnr").status_code == 400
    assert _post(client, threshold="-1").status_code == 400


def test_rejects_undecodable_upload(client):
    assert _post(client, data=b"not an image").status_code == 400


def test_errors_redirect_for_browsers(client):
    resp = _post(client, filename="in.gif", json_reply=False)
    assert resp.status_code == 302


def test_downloads(client):
    body = _post(client).get_json()
    resp = client.get(f"/download/recon/{body['recon_name']}")
    assert resp.status_code == 200
    with Image.open(io.BytesIO(resp.data)) as img:
        assert img.size == (24, 24)
    assert client.get(f"/download/json/{body['json_name']}").status_code == 200
    assert client.get("/download/json/missing.json").status_code == 302


def test_parameter_warnings_are_reported(client):
    body = _post(client, min_block_size="3", threshold="0.5").get_json()
    assert any("power of 2" in w for w in body["warnings"])
    assert any("very low" in w for w in body["warnings"])


def test_oversized_block_is_rejected(client):
    resp = _post(client, min_block_size="12")
    assert resp.status_code == 400
    assert "too large" in resp.get_json()["error"]
