"""HTTP-level tests for the overlay server.

The app is built through `create_app` with an isolated in-memory cache so
every test starts empty; the lifespan (sweep scheduler) is not started
because the TestClient is not used as a context manager.
"""

import base64
import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import image_overlay
from app import create_app, run_sweep
from overlay_config import OverlayConfig
from result_cache import RenderedImage, ResultCache, is_valid_image_id, make_image_id
from tests.conftest import make_jpeg


@pytest.fixture
def cfg():
    return OverlayConfig(cache_backend="memory", sweep_enabled=False, redis_url="")


@pytest.fixture
def cache():
    return ResultCache(capacity=20, ttl_seconds=3600)


@pytest.fixture
def client(cfg, cache, pipeline):
    pipeline.cache = cache
    return TestClient(create_app(cfg=cfg, cache=cache, pipeline=pipeline))


def _upload(client, data=None, caption="Hello world", **params):
    return client.post(
        "/overlay",
        params=params,
        files={"image": ("in.jpg", data or make_jpeg(), "image/jpeg")},
        data={"caption": caption},
    )


def test_home(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["cache"] == "ResultCache"


def test_multipart_upload_returns_url_then_serves_image(client, cache):
    resp = _upload(client)
    assert resp.status_code == 200, resp.text
    payload = resp.json()

    assert payload["success"] is True
    image_id = payload["imageId"]
    assert is_valid_image_id(image_id)
    assert payload["imageUrl"].endswith(f"/images/{image_id}.jpg")
    assert payload["size"] == cache.get(image_id).byte_length

    served = client.get(f"/images/{image_id}.jpg")
    assert served.status_code == 200
    assert served.headers["content-type"] == "image/jpeg"
    assert "immutable" in served.headers["cache-control"]
    assert served.headers["access-control-allow-origin"] == "*"
    assert served.content == cache.get(image_id).data
    assert Image.open(io.BytesIO(served.content)).size == (1200, 628)


def test_serving_works_without_extension(client):
    image_id = _upload(client).json()["imageId"]
    assert client.get(f"/images/{image_id}").status_code == 200


def test_file_field_name_is_accepted(client):
    resp = client.post(
        "/overlay",
        files={"file": ("in.jpg", make_jpeg(), "image/jpeg")},
        data={"caption": "Via file field"},
    )
    assert resp.status_code == 200, resp.text


def test_output_image_streams_jpeg(client, cache):
    resp = _upload(client, output="image")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    assert Image.open(io.BytesIO(resp.content)).size == (1200, 628)
    assert cache.list_ids() == []


def test_raw_octet_stream_with_caption_header(client):
    resp = client.post(
        "/overlay",
        content=make_jpeg(),
        headers={"Content-Type": "application/octet-stream", "X-Caption": "Raw body caption"},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["success"] is True


def test_base64_body(client):
    resp = client.post(
        "/overlay",
        content=base64.b64encode(make_jpeg()),
        headers={"Content-Type": "text/plain", "X-Caption": "Encoded"},
    )
    assert resp.status_code == 200, resp.text


def test_invalid_base64_body_is_rejected(client):
    resp = client.post("/overlay", content=b"!!not base64!!", headers={"Content-Type": "text/plain"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "input_error"


def test_empty_body_is_rejected(client):
    resp = client.post("/overlay", content=b"", headers={"Content-Type": "application/octet-stream"})
    assert resp.status_code == 400


def test_undecodable_image_is_rejected(client):
    resp = _upload(client, data=b"this is not a jpeg")
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "image_decode_error"


def test_multipart_without_image_is_rejected(client):
    resp = client.post("/overlay", data={"caption": "no image"}, files={"other": ("x.txt", b"x", "text/plain")})
    assert resp.status_code == 400
    assert "image" in resp.json()["detail"]["message"]


def test_bad_output_mode(client):
    resp = _upload(client, output="gif")
    assert resp.status_code == 400
    assert resp.json()["detail"] == {"error": "input_error", "message": "output must be url or image"}


def test_unknown_and_malformed_ids(client):
    missing = client.get(f"/images/{make_image_id(b'x', 1)}.jpg")
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"] == "not_found"

    malformed = client.get("/images/not-an-id.jpg")
    assert malformed.status_code == 400
    assert malformed.json()["detail"]["error"] == "input_error"


def test_list_and_cleanup(client):
    ids = [_upload(client, caption=f"caption {i}").json()["imageId"] for i in range(3)]

    listed = client.get("/images").json()
    assert listed["count"] == 3
    assert listed["ids"] == ids

    resp = client.post("/cleanup")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["deletedCount"] == 0
    assert body["totalCount"] == 3


def test_from_url(client, monkeypatch):
    async def fake_fetch(url):
        assert url == "https://example.com/photo.jpg"
        return make_jpeg(1000, 1000)

    monkeypatch.setattr(image_overlay, "fetch_image_bytes", fake_fetch)
    resp = client.post(
        "/overlay/from-url",
        json={"image_url": "https://example.com/photo.jpg", "caption": "From a URL", "width": 1080, "height": 1080},
    )
    assert resp.status_code == 200, resp.text
    served = client.get(f"/images/{resp.json()['imageId']}.jpg")
    assert Image.open(io.BytesIO(served.content)).size == (1080, 1080)


def test_from_url_validates_style(client):
    resp = client.post("/overlay/from-url", json={"image_url": "https://example.com/a.jpg", "width": 5})
    assert resp.status_code == 422


def test_debug_font(client):
    body = client.get("/debug/font").json()
    assert body["available"] is False
    assert body["backend"] == "raster"


def test_run_sweep_on_memory_cache(cfg):
    cache = ResultCache(capacity=5, ttl_seconds=1, clock=lambda: 0.0)
    cache.put(RenderedImage(data=b"x"))
    assert run_sweep(cache, cfg) == {"deletedCount": 0, "totalCount": 1}


def test_app_config_drives_rendering(cache, pipeline):
    cfg = OverlayConfig(
        width=800,
        height=800,
        public_base_url="https://cdn.example.com",
        cache_backend="memory",
        sweep_enabled=False,
        redis_url="",
    )
    pipeline.cache = cache
    client = TestClient(create_app(cfg=cfg, cache=cache, pipeline=pipeline))

    streamed = _upload(client, output="image")
    assert Image.open(io.BytesIO(streamed.content)).size == (800, 800)

    stored = _upload(client).json()
    assert stored["imageUrl"] == f"https://cdn.example.com/images/{stored['imageId']}.jpg"


def test_label_backend_failure_is_structured_500(client, pipeline):
    class Broken:
        name = "broken"

        def render_layer(self, box, lines, style):
            raise OSError('no library called "cairo-2" was found')

    pipeline.compositor.backend = Broken()
    resp = _upload(client)
    assert resp.status_code == 500
    assert resp.json()["detail"]["error"] == "composite_error"


def test_cache_calls_run_in_threadpool(client, monkeypatch):
    image_id = _upload(client).json()["imageId"]
    offloaded = []

    async def recording_threadpool(fn, *args, **kwargs):
        offloaded.append(fn.__name__)
        return fn(*args, **kwargs)

    monkeypatch.setattr(image_overlay, "run_in_threadpool", recording_threadpool)

    assert client.get(f"/images/{image_id}.jpg").status_code == 200
    assert client.get("/images").json()["count"] == 1
    assert client.post("/cleanup").status_code == 200
    assert offloaded == ["get", "list_ids", "sweep"]
