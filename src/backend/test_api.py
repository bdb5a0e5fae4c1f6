"""Tests for the HTTP and WebSocket surface."""
import pytest
from fastapi.testclient import TestClient

from conftest import FakeGateway
from octdx.main import create_app
from octdx.models.schemas import ImageStatus


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def client(fake_gateway):
    with TestClient(create_app(gateway=fake_gateway)) as c:
        yield c


def _submit(client, *files):
    return client.post(
        "/api/images",
        files=[("files", (name, data, ctype)) for name, data, ctype in files],
    )


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"
    assert "gemini_api_key_set" in client.get("/api/health/config").json()


def test_startup_without_api_key_fails(monkeypatch):
    from octdx.config import settings

    monkeypatch.setattr(settings, "gemini_api_key", "")
    # MissingCredentialError is a RuntimeError
    with pytest.raises(RuntimeError):
        with TestClient(create_app()):
            pass


def test_submit_ignores_non_images(client):
    r = _submit(
        client,
        ("a.png", b"png-bytes", "image/png"),
        ("notes.txt", b"hello", "text/plain"),
    )
    assert r.status_code == 200
    body = r.json()
    assert [img["filename"] for img in body] == ["a.png"]
    assert body[0]["status"] == "pending"

    preview = client.get(body[0]["preview_url"])
    assert preview.status_code == 200
    assert preview.content == b"png-bytes"

    listing = client.get("/api/images").json()
    assert listing["pending_count"] == 1
    assert listing["is_analyzing"] is False


def test_analyze_refine_delete_flow(client, fake_gateway):
    (img,) = _submit(client, ("a.png", b"png-bytes", "image/png")).json()

    listing = client.post("/api/images/analyze", params={"wait": True}).json()
    (analyzed,) = listing["images"]
    assert analyzed["status"] == "success"
    assert analyzed["result"]["diagnosis"] == "CNV"
    assert analyzed["result"]["uncertaintyStatement"]
    assert listing["pending_count"] == 0

    segmented = client.get(analyzed["segmented_image_url"])
    assert segmented.status_code == 200
    assert segmented.headers["content-type"] == "image/png"

    r = client.post(
        f"/api/images/{img['id']}/refine",
        params={"wait": True},
        json={"feedback": "reconsider fluid"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "success"
    assert client.get(analyzed["segmented_image_url"]).content == segmented.content
    assert len(fake_gateway.requests) == 6

    assert client.delete(f"/api/images/{img['id']}").status_code == 204
    assert client.get(f"/api/images/{img['id']}").status_code == 404
    assert client.get(img["preview_url"]).status_code == 404


def test_preview_by_image_id(client):
    (img,) = _submit(client, ("a.jpeg", b"jpeg-bytes", "image/jpeg")).json()

    r = client.get(f"/api/images/{img['id']}/preview")
    assert r.status_code == 200
    assert r.content == b"jpeg-bytes"
    assert r.headers["content-type"] == "image/jpeg"

    assert client.delete(f"/api/images/{img['id']}").status_code == 204
    assert client.get(f"/api/images/{img['id']}/preview").status_code == 404
    assert client.get("/api/images/nope/preview").status_code == 404


def test_refine_while_loading_conflicts(client, fake_gateway):
    (img,) = _submit(client, ("a.png", b"png-bytes", "image/png")).json()
    client.app.state.image_set._commit(img["id"], status=ImageStatus.LOADING)

    r = client.post(
        f"/api/images/{img['id']}/refine",
        params={"wait": True},
        json={"feedback": "reconsider"},
    )
    assert r.status_code == 409
    assert fake_gateway.requests == []
    assert client.get(f"/api/images/{img['id']}").json()["status"] == "loading"


def test_analyze_with_nothing_pending(client, fake_gateway):
    r = client.post("/api/images/analyze", params={"wait": True})
    assert r.status_code == 200
    assert r.json()["images"] == []
    assert fake_gateway.requests == []


def test_unknown_image_and_blank_feedback(client):
    assert client.get("/api/images/nope").status_code == 404
    assert client.delete("/api/images/nope").status_code == 404
    assert client.post("/api/images/nope/refine", json={"feedback": "x"}).status_code == 404

    (img,) = _submit(client, ("a.png", b"png-bytes", "image/png")).json()
    assert client.post(f"/api/images/{img['id']}/refine", json={"feedback": ""}).status_code == 422
    assert client.post(f"/api/images/{img['id']}/refine", json={"feedback": "   "}).status_code == 400
    assert client.get(f"/api/images/{img['id']}/artifacts/heatmap").status_code == 404


def test_websocket_streams_snapshot_and_updates(client):
    with client.websocket_connect("/ws/images") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert snapshot["images"] == []

        (img,) = _submit(client, ("a.png", b"png-bytes", "image/png")).json()
        update = ws.receive_json()
        assert update["type"] == "image_update"
        assert update["image"]["id"] == img["id"]
        assert update["image"]["status"] == "pending"

        client.delete(f"/api/images/{img['id']}")
        assert ws.receive_json() == {"type": "image_deleted", "id": img["id"]}
