from __future__ import annotations

import base64
from dataclasses import replace

from fastapi.testclient import TestClient

from rehome_classifier.api.app import create_app
from rehome_classifier.classifier import Classifier
from rehome_classifier.config import SecurityConfig, Settings
from rehome_classifier.errors import LoadError, LoadErrorKind
from rehome_classifier.inference.lifecycle import ModelLifecycle
from rehome_classifier.inference.model import ModelHandle
from tests._fakes import ConstModel, fake_handle, make_settings, png_bytes

_ELECTRONICS = [0.05, 0.05, 0.8, 0.05, 0.05]


def _client(settings: Settings | None = None, broken: bool = False) -> TestClient:
    s = settings or make_settings()
    handle = fake_handle(ConstModel(_ELECTRONICS))

    def _loader() -> ModelHandle:
        if broken:
            raise LoadError(LoadErrorKind.incompatible_shape, "layer missing")
        return handle

    clf = Classifier(s, lifecycle=ModelLifecycle(s, loader=_loader))
    return TestClient(create_app(s, classifier_provider=lambda: clf))


def _b64() -> str:
    return base64.b64encode(png_bytes()).decode("ascii")


def test_routes_health_ready_version() -> None:
    client = _client()
    r1 = client.get("/healthz")
    assert r1.status_code == 200 and r1.json() == {"status": "ok"}
    r2 = client.get("/readyz")
    assert r2.status_code == 200 and r2.json()["status"] == "not_ready"
    r3 = client.get("/version")
    assert r3.status_code == 200 and r3.json()["service"] == "rehome-classifier"
    r4 = client.get("/v1/models/active")
    assert r4.json() == {"model_loaded": False, "model_id": None}


def test_request_id_header_is_echoed_or_generated() -> None:
    client = _client()
    r1 = client.get("/healthz", headers={"X-Request-ID": "rid-42"})
    assert r1.headers["X-Request-ID"] == "rid-42"
    r2 = client.get("/healthz")
    assert r2.headers.get("X-Request-ID")


def test_classify_upload_returns_ranked_result() -> None:
    client = _client()
    r = client.post("/v1/classify", files={"file": ("a.png", png_bytes(), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["category"] == "electronics"
    assert body["isReusable"] is True
    assert body["modelId"] == "fake-model"
    assert len(body["allPredictions"]) == 5
    assert body["allPredictions"][0]["category"] == "electronics"
    assert isinstance(body["latency_ms"], int)
    ready = client.get("/readyz").json()
    assert ready == {"status": "ready"}
    active = client.get("/v1/models/active").json()
    assert active["model_loaded"] is True and active["model_id"] == "fake-model"


def test_classify_upload_rejects_unsupported_type() -> None:
    client = _client()
    r = client.post("/v1/classify", files={"file": ("x.txt", b"hello", "text/plain")})
    assert r.status_code == 415
    assert r.json()["code"] == "unsupported_media_type"


def test_classify_upload_corrupt_image_is_400() -> None:
    client = _client()
    r = client.post("/v1/classify", files={"file": ("a.png", b"not a png", "image/png")})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "invalid_image"
    assert body["message"] == "Failed to read image. Try a different photo."


def test_classify_upload_too_large_is_413() -> None:
    client = _client(make_settings(max_image_mb=0))
    r = client.post("/v1/classify", files={"file": ("a.png", png_bytes(), "image/png")})
    assert r.status_code == 413
    assert r.json()["code"] == "too_large"


def test_classify_image_json_base64_and_data_uri() -> None:
    client = _client()
    r1 = client.post("/v1/classify-image", json={"imageBase64": _b64()})
    assert r1.status_code == 200 and r1.json()["category"] == "electronics"
    r2 = client.post(
        "/v1/classify-image", json={"imageBase64": "data:image/png;base64," + _b64()}
    )
    assert r2.status_code == 200


def test_classify_image_json_requires_input() -> None:
    client = _client()
    r = client.post("/v1/classify-image", json={})
    assert r.status_code == 400
    assert r.json()["code"] == "bad_request"


def test_classify_image_json_invalid_base64() -> None:
    client = _client()
    r = client.post("/v1/classify-image", json={"imageBase64": "%%%not-base64%%%"})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_image"


def test_classify_image_blocked_origin_is_403() -> None:
    s = make_settings(allowed_origins=("cdn.rehome.app",))
    client = _client(s)
    r = client.post("/v1/classify-image", json={"imageUrl": "https://evil.example.com/a.png"})
    assert r.status_code == 403
    assert r.json()["code"] == "cross_origin_blocked"


def test_classify_batch_preserves_order_and_reports_errors() -> None:
    client = _client()
    payload = {
        "items": [
            {"id": "a", "imageBase64": _b64()},
            {"id": "b", "imageBase64": "@@@"},
            {"id": "c", "imageBase64": _b64()},
        ]
    }
    r = client.post("/v1/classify/batch", json=payload)
    assert r.status_code == 200
    results = r.json()["results"]
    assert [x["id"] for x in results] == ["a", "b", "c"]
    assert [x["ok"] for x in results] == [True, False, True]
    assert results[0]["result"]["category"] == "electronics"
    assert results[1]["error"]["code"] == "invalid_image"


def test_api_key_required_when_configured() -> None:
    s = replace(make_settings(), security=SecurityConfig(api_key="sekret"))
    client = _client(s)
    r1 = client.post("/v1/classify-image", json={"imageBase64": _b64()})
    assert r1.status_code == 401
    r2 = client.post(
        "/v1/classify-image", json={"imageBase64": _b64()}, headers={"X-Api-Key": "sekret"}
    )
    assert r2.status_code == 200
    # Health probes stay open
    assert client.get("/healthz").status_code == 200


def test_load_failure_is_503() -> None:
    client = _client(broken=True)
    r = client.post("/v1/classify", files={"file": ("a.png", png_bytes(), "image/png")})
    assert r.status_code == 503
    body = r.json()
    assert body["code"] == "service_not_ready"
    assert body["message"] == "Model failed to load."


def test_eager_load_runs_in_lifespan() -> None:
    client = _client(make_settings(eager_load=True))
    with client:
        assert client.get("/readyz").json() == {"status": "ready"}


def test_eager_load_failure_keeps_service_up() -> None:
    client = _client(make_settings(eager_load=True, load_retries=0), broken=True)
    with client:
        r = client.get("/readyz")
        assert r.status_code == 200 and r.json()["status"] == "not_ready"
