import asyncio
import sys
from pathlib import Path

import pytest
from aiohttp import FormData, web
from aiohttp.test_utils import TestClient, TestServer

sys.path.append(str(Path(__file__).resolve().parents[1]))

from api.status import setup_status_routes
from config import AgentConfig
from device_profile import DeviceSignals
from observability import observability_middleware
from queue_store import MemoryQueueStore
from services import bootstrap
from transport import UploadResult


class RecordingUploader:
    def __init__(self):
        self.sent = []

    def validate(self, job):
        return job.target_id

    async def upload(self, job, *, on_progress=None):
        self.sent.append(job.id)
        return UploadResult(status=201)


class IdleClient:
    def on(self, event, handler):
        pass

    async def connect(self, url, transports=None):
        pass

    async def disconnect(self):
        pass

    async def emit(self, event, data=None):
        pass


def _services(tmp_path, **config_kwargs):
    config = AgentConfig(data_dir=tmp_path, db_path=tmp_path / "uploader.db", **config_kwargs)
    services, _ = bootstrap(
        config,
        store=MemoryQueueStore(),
        signals=DeviceSignals(memory_gb=8, cpu_cores=8),
        channel_client=IdleClient(),
    )
    services.queue.uploader = RecordingUploader()
    return services


async def _client(services):
    app = web.Application(middlewares=[observability_middleware])
    setup_status_routes(app, services)
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client


@pytest.mark.asyncio
async def test_health_reports_queue_and_channel(tmp_path):
    services = _services(tmp_path)
    await services.queue.enqueue("lesson-1", b"video")
    client = await _client(services)
    try:
        response = await client.get("/v1/health")
        payload = await response.json()
    finally:
        await client.close()

    assert response.status == 200
    assert payload["ok"] is True
    assert payload["queue"]["pending"] == 1
    assert payload["channel"]["state"] == "idle"
    assert payload["device"]["low_end"] is False


@pytest.mark.asyncio
async def test_multipart_enqueue_wakes_queue(tmp_path):
    services = _services(tmp_path)
    client = await _client(services)
    try:
        form = FormData()
        form.add_field("target_id", "lesson-3")
        form.add_field("title", "Algebra")
        form.add_field("file", b"webm-bytes", filename="take.webm", content_type="video/webm")
        response = await client.post("/v1/uploads", data=form)
        payload = await response.json()
        await asyncio.sleep(0.05)
        listing = await (await client.get("/v1/uploads")).json()
    finally:
        await client.close()

    assert response.status == 202
    assert services.queue.uploader.sent == [payload["id"]]
    assert listing["jobs"] == []


@pytest.mark.asyncio
async def test_enqueue_requires_target_and_limits_size(tmp_path):
    services = _services(tmp_path, max_recording_mb=1.0)
    client = await _client(services)
    try:
        form = FormData()
        form.add_field("file", b"x", filename="a.webm")
        missing = await client.post("/v1/uploads", data=form)

        big = FormData()
        big.add_field("target_id", "lesson-1")
        big.add_field("file", b"x" * (1024 * 1024 + 1), filename="a.webm")
        too_large = await client.post("/v1/uploads", data=big)

        not_multipart = await client.post("/v1/uploads", json={"target_id": "x"})
    finally:
        await client.close()

    assert missing.status == 400
    assert too_large.status == 413
    assert not_multipart.status == 415
    assert services.queue.list_pending() == []


@pytest.mark.asyncio
async def test_delete_upload_is_idempotent(tmp_path):
    services = _services(tmp_path)
    job = await services.queue.enqueue("lesson-1", b"video")
    client = await _client(services)
    try:
        first = await client.delete(f"/v1/uploads/{job.id}")
        second = await client.delete(f"/v1/uploads/{job.id}")
    finally:
        await client.close()

    assert first.status == 204
    assert second.status == 204
    assert services.queue.list_pending() == []


@pytest.mark.asyncio
async def test_wake_accepts_only_host_signals(tmp_path):
    services = _services(tmp_path)
    client = await _client(services)
    try:
        ok = await client.post("/v1/wake", json={"source": "online"})
        bad = await client.post("/v1/wake", json={"source": "timer"})
    finally:
        await client.close()

    assert ok.status == 202
    assert bad.status == 400


@pytest.mark.asyncio
async def test_hud_events_drive_snapshot(tmp_path):
    services = _services(tmp_path)
    client = await _client(services)
    try:
        await client.post("/v1/hud/events", json={"state": "start", "title": "Lesson"})
        await client.post("/v1/hud/events", json={"state": "progress", "percent": 40})
        snapshot = await (await client.get("/v1/hud")).json()
        bad = await client.post("/v1/hud/events", json={"state": "paused"})
    finally:
        await client.close()

    assert snapshot["mode"] == "uploading"
    assert snapshot["percent"] == 40
    assert snapshot["title"] == "Lesson"
    assert bad.status == 400


@pytest.mark.asyncio
async def test_call_card_accept_flow(tmp_path):
    services = _services(tmp_path)
    services.channel.handle_call_offer(
        {"from": "user-1", "type": "video", "callerInfo": {"callId": "c-1", "nickname": "Ivan"}}
    )
    client = await _client(services)
    try:
        card = await (await client.get("/v1/calls")).json()
        accepted = await client.post("/v1/calls/accept")
        again = await client.post("/v1/calls/accept")
        pending = await (await client.get("/v1/calls/pending")).json()
        after = await (await client.get("/v1/calls")).json()
    finally:
        await client.close()

    assert card["active"]["caller"] == "Ivan"
    assert accepted.status == 200
    assert again.status == 409
    assert pending["pending"]["callId"] == "c-1"
    assert after["navigation"] == ["chats?call=user-1"]
    assert after["active"] is None


@pytest.mark.asyncio
async def test_device_override_persists(tmp_path):
    services = _services(tmp_path)
    client = await _client(services)
    try:
        forced = await client.put("/v1/device/override", json={"value": "1"})
        body = await forced.json()
        invalid = await client.put("/v1/device/override", json={"value": "yes"})
        current = await (await client.get("/v1/device")).json()
    finally:
        await client.close()

    assert forced.status == 200
    assert body["profile"]["low_end"] is True
    assert body["profile"]["source"] == "forced_on"
    assert invalid.status == 400
    assert current["override"] == "1"
    assert services.device.low_end is True


@pytest.mark.asyncio
async def test_device_endpoint_survives_corrupt_override_file(tmp_path):
    services = _services(tmp_path)
    services.overrides.path.write_text("{not json", encoding="utf-8")
    client = await _client(services)
    try:
        response = await client.get("/v1/device")
        payload = await response.json()
    finally:
        await client.close()

    assert response.status == 200
    assert payload["override"] is None
    assert payload["profile"]["low_end"] is False
