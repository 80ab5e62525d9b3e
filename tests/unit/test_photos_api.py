import base64
import io
import uuid
import pytest
from unittest.mock import patch
from PIL import Image

from app.dal.session_repo import session_repo
from app.errors import ModelUpdateError
from app.services.occlusion_geometry import GridCell
from app.services.occlusion_service import occlusion_service
from gateway_fakes import CellScoreGateway


def png_bytes(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def session_client(client):
    client.cookies.set("session_id", f"test-session-{uuid.uuid4()}")
    return client


@pytest.fixture
def gateway():
    fake = CellScoreGateway(cell_scores={GridCell(5, 5): 0.10})
    with patch("app.routers.photos.classifier_gateway", fake), \
            patch.object(occlusion_service, "gateway", fake):
        yield fake


def upload(client, image):
    files = {"file": ("photo.png", png_bytes(image), "image/png")}
    return client.post("/api/photos/upload", files=files)


def test_upload_classifies_prepared_image(session_client, gateway, base_image):
    resp = upload(session_client, base_image)
    assert resp.status_code == 200
    data = resp.json()
    assert data["classifier_id"] == "default"
    assert data["predictions"][0] == {"class_name": "cat", "score": 0.92}
    assert data["display_size"] == 224
    assert data["prepared_image_base64"].startswith("data:image/png;base64,")
    assert gateway.calls == 1

    resp = session_client.get("/api/photos/current/content")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(resp.content)).size == (224, 224)


def test_upload_rejects_non_image(session_client, gateway):
    files = {"file": ("notes.txt", b"hello", "text/plain")}
    resp = session_client.post("/api/photos/upload", files=files)
    assert resp.status_code == 400


def test_heatmap_flow_and_cache(session_client, gateway, base_image):
    upload(session_client, base_image)

    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    assert resp.status_code == 200
    data = resp.json()
    assert gateway.calls == 1 + 121
    assert data["cached"] is False
    assert data["peak_cell"] == [5, 5]
    assert data["max_importance"] == pytest.approx(0.82)
    assert data["baseline_score"] == 0.92
    assert data["unresolved_cells"] == []
    heatmap = Image.open(io.BytesIO(base64.b64decode(data["heatmap_base64"])))
    assert heatmap.mode == "RGBA"
    assert heatmap.size == (224, 224)

    progress = session_client.get("/api/photos/current/progress").json()
    assert progress["class_label"] == "cat"
    assert progress["completed"] == progress["total"] == 121

    # Same photo, same class: served from cache without touching the classifier
    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    assert resp.status_code == 200
    assert resp.json()["cached"] is True
    assert resp.json()["heatmap_base64"] == data["heatmap_base64"]
    assert gateway.calls == 1 + 121

    # A new photo invalidates everything computed for the old one
    upload(session_client, base_image)
    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    assert resp.json()["cached"] is False
    assert gateway.calls == 2 + 2 * 121


def test_heatmap_for_class_missing_from_baseline(session_client, gateway, base_image):
    upload(session_client, base_image)
    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "bird"})
    assert resp.status_code == 400
    assert gateway.calls == 1


def test_heatmap_when_classifier_is_down(session_client, gateway, base_image):
    upload(session_client, base_image)
    gateway.fail_all = True
    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    assert resp.status_code == 502

    # The failure is not cached
    gateway.fail_all = False
    resp = session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    assert resp.status_code == 200
    assert resp.json()["cached"] is False


def test_overlay_requires_computed_heatmap(session_client, gateway, base_image):
    upload(session_client, base_image)

    resp = session_client.get("/api/photos/current/overlay", params={"class_label": "cat"})
    assert resp.status_code == 404

    session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    resp = session_client.get("/api/photos/current/overlay", params={"class_label": "cat", "alpha": 0.8})
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/jpeg"
    assert Image.open(io.BytesIO(resp.content)).size == (224, 224)


def test_clear_current_photo(session_client, gateway, base_image):
    upload(session_client, base_image)
    session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    session = session_repo.get(session_client.cookies.get("session_id"))
    assert len(session.cache) == 1

    resp = session_client.delete("/api/photos/current")
    assert resp.status_code == 200
    assert len(session.cache) == 0
    assert session_client.get("/api/photos/current/content").status_code == 404
    assert session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"}).status_code == 404
    assert session_client.get("/api/photos/current/progress").json()["total"] == 0


def test_classifier_selection_is_persisted(session_client, gateway, base_image):
    with patch("app.routers.classifiers.classifier_gateway", gateway):
        listing = session_client.get("/api/classifiers").json()
        assert listing["selected"] == "default"
        assert listing["custom"] == ["custom-model-1"]
        assert "food" in listing["default"]

        resp = session_client.put("/api/classifiers/selected", json={"classifier_id": "custom-model-1"})
        assert resp.status_code == 200
        assert session_client.get("/api/classifiers").json()["selected"] == "custom-model-1"

    assert session_client.put("/api/classifiers/selected", json={"classifier_id": "  "}).status_code == 400

    # The next photo is classified with the selected model
    resp = upload(session_client, base_image)
    assert resp.json()["classifier_id"] == "custom-model-1"


@pytest.mark.parametrize("status_code, expected", [(404, 404), (401, 401), (None, 502), (503, 502)])
def test_update_classifier_errors(session_client, status_code, expected):
    error = ModelUpdateError("default", "Please try again.", status_code)
    with patch("app.routers.classifiers.local_classifier_service.update_model", side_effect=error):
        resp = session_client.post("/api/classifiers/default/update")
    assert resp.status_code == expected
    assert "Unable to download model" in resp.json()["detail"]


def test_update_classifier_success(session_client):
    with patch("app.routers.classifiers.local_classifier_service.update_model", return_value="/models/vit"):
        resp = session_client.post("/api/classifiers/default/update")
    assert resp.status_code == 200
    assert resp.json() == {"classifier_id": "default", "path": "/models/vit", "status": "ready"}


def test_analysis_history(session_client, gateway, base_image):
    upload(session_client, base_image)
    assert session_client.get("/api/analyses").json() == []

    session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})
    # Cache hits are not analyses
    session_client.post("/api/photos/current/heatmap", json={"class_label": "cat"})

    history = session_client.get("/api/analyses").json()
    assert len(history) == 1
    assert history[0]["class_label"] == "cat"
    assert history[0]["classifier_id"] == "default"
    assert history[0]["unresolved_cells"] == 0
