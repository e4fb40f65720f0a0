import time

import pytest
from fastapi.testclient import TestClient

from camwatch import database
from camwatch.config import settings
from camwatch.errors import VendorError
from camwatch.main import app
from camwatch.models import Camera, CameraStatus, StreamRecord


class FakeVendor:
    def __init__(self, url=None):
        self.url = url
        self.calls = []

    async def get_live_stream_url_async(self, device_id, stream_type="main"):
        self.calls.append(device_id)
        if not self.url:
            raise VendorError("device offline")
        return self.url


@pytest.fixture
def vendor():
    return FakeVendor("fake://ok")


@pytest.fixture
def client(tmp_path, monkeypatch, make_registry, vendor):
    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'camwatch.db'}")
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_SessionLocal", None)
    monkeypatch.setattr(app.state, "streams", make_registry(max_streams=2, reconnect_delay=30), raising=False)
    monkeypatch.setattr(app.state, "vendor", vendor, raising=False)
    with TestClient(app) as c:
        yield c


def _seed_camera(client, **fields):
    async def seed():
        async with database.get_sessionmaker()() as db:
            cam = Camera(**fields)
            db.add(cam)
            await db.commit()
            return cam.id
    return client.portal.call(seed)


def _load(client, model, key):
    async def load():
        async with database.get_sessionmaker()() as db:
            return await db.get(model, key)
    return client.portal.call(load)


def _poll(client, url, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        r = client.get(url)
        if predicate(r):
            return r
        time.sleep(0.05)
    raise AssertionError(f"{url} never satisfied the condition")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_stream_lifecycle_over_http(client):
    r = client.post("/api/streams/start", json={"rtspUrl": "fake://ok", "streamId": "cam1", "quality": "low"})
    assert r.status_code == 201, r.text
    body = r.json()["stream"]
    assert body["id"] == "cam1"
    assert body["status"] == "running"
    assert body["playlistUrl"] == "/hls/cam1/playlist.m3u8"

    r = client.get("/api/streams/cam1")
    assert r.status_code == 200
    assert r.json()["stream"]["quality"] == "low"
    assert "rtsp" not in r.text and "fake://" not in r.text

    r = client.get("/api/streams/cam1/playlist")
    assert r.json() == {"streamId": "cam1", "playlistUrl": "/hls/cam1/playlist.m3u8", "status": "running"}

    listing = client.get("/api/streams").json()
    assert [s["id"] for s in listing["streams"]] == ["cam1"]
    assert listing["stats"]["runningStreams"] == 1
    assert client.get("/api/streams/stats").json()["stats"]["maxStreams"] == 2

    history = client.get("/api/streams/history").json()
    assert history[0]["id"] == "cam1" and history[0]["status"] == "running"

    r = client.post("/api/streams/cam1/stop")
    assert r.status_code == 200
    assert _load(client, StreamRecord, "cam1").status == "stopped"
    r = client.post("/api/streams/cam1/stop")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "STREAM_NOT_FOUND"
    assert client.get("/api/streams/cam1").status_code == 404


def test_start_for_camera_uses_vendor_lookup(client, vendor):
    cam_id = _seed_camera(client, name="Lobby", vendor_device_id="dev-7", default_quality="high")
    r = client.post("/api/streams/start", json={"cameraId": cam_id})
    assert r.status_code == 201, r.text
    stream = r.json()["stream"]
    assert stream["id"].startswith(f"camera_{cam_id}_")
    assert stream["quality"] == "high"
    assert stream["cameraName"] == "Lobby"
    assert vendor.calls == ["dev-7"]
    assert _load(client, Camera, cam_id).status is CameraStatus.streaming

    snap = client.get(f"/api/streams/{stream['id']}").json()["stream"]
    assert snap["cameraId"] == cam_id


def test_camera_stored_url_wins_over_vendor(client, vendor):
    cam_id = _seed_camera(client, name="Gate", rtsp_url="fake://ok", vendor_device_id="dev-9")
    r = client.post("/api/streams/start", json={"cameraId": cam_id, "streamId": "gate"})
    assert r.status_code == 201
    assert vendor.calls == []


def test_start_errors_map_to_status_codes(client, vendor):
    def start(**body):
        return client.post("/api/streams/start", json=body)

    r = start(cameraId="missing")
    assert (r.status_code, r.json()["detail"]["code"]) == (404, "CAMERA_NOT_FOUND")

    r = start(streamId="x")
    assert (r.status_code, r.json()["detail"]["code"]) == (400, "RTSP_URL_REQUIRED")

    vendor.url = None
    cam_id = _seed_camera(client, name="Dock", vendor_device_id="dev-1")
    r = start(cameraId=cam_id)
    assert (r.status_code, r.json()["detail"]["code"]) == (400, "NO_RTSP_URL")

    r = start(rtspUrl="fake://ok", quality="8k")
    assert (r.status_code, r.json()["detail"]["code"]) == (400, "INVALID_QUALITY")

    r = start(rtspUrl="fake://ok", streamId="../../etc")
    assert (r.status_code, r.json()["detail"]["code"]) == (400, "INVALID_STREAM_ID")

    r = start(rtspUrl="fake://noplaylist", streamId="dead")
    assert (r.status_code, r.json()["detail"]["code"]) == (502, "STREAM_START_FAILED")

    assert start(rtspUrl="fake://ok", streamId="a").status_code == 201
    r = start(rtspUrl="fake://ok?x=1", streamId="a")
    assert (r.status_code, r.json()["detail"]["code"]) == (409, "STREAM_ALREADY_RUNNING")
    assert start(rtspUrl="fake://ok", streamId="b").status_code == 201
    r = start(rtspUrl="fake://ok", streamId="c")
    assert (r.status_code, r.json()["detail"]["code"]) == (503, "MAX_STREAMS_REACHED")

    r = client.post("/api/streams/stop-all")
    assert r.json()["stoppedCount"] == 2


def test_playlist_requires_running_stream(client):
    client.post("/api/streams/start", json={"rtspUrl": "fake://crash?after=0.2", "streamId": "cam1"})
    _poll(client, "/api/streams/cam1", lambda r: r.json()["stream"]["status"] == "reconnecting")
    r = client.get("/api/streams/cam1/playlist")
    assert r.status_code == 400
    assert r.json()["detail"]["status"] == "reconnecting"


def test_restart_over_http(client):
    assert client.post("/api/streams/nope/restart").status_code == 404
    client.post("/api/streams/start", json={"rtspUrl": "fake://ok", "streamId": "cam1"})
    r = client.post("/api/streams/cam1/restart")
    assert r.status_code == 200
    assert r.json()["stream"]["status"] == "running"


def test_presets_list(client):
    presets = client.get("/api/streams/presets/list").json()
    assert [p["name"] for p in presets] == ["low", "medium", "high"]
    assert presets[1]["resolution"] == "1280x720"


def test_websocket_subscription(client):
    client.post("/api/streams/start", json={"rtspUrl": "fake://ok", "streamId": "cam1"})
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "bogus"})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "subscribe_stream", "streamId": "cam1"})
        status = ws.receive_json()
        assert status["type"] == "stream_status"
        assert status["data"]["status"] == "running"

        client.post("/api/streams/cam1/stop")
        stopped = ws.receive_json()
        assert stopped["type"] == "stream_stopped"
        assert stopped["data"]["streamId"] == "cam1"

        ws.send_json({"type": "unsubscribe_stream"})
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
    assert app.state.streams.bus.subscriber_count() == 0
