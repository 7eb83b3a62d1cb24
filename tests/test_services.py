import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from config import AgentConfig
from device_profile import DeviceSignals
from events import NAVIGATE_EVENT
from main import UploaderAgent, create_app
from services import bootstrap, get_services, reset_services


class IdleClient:
    def __init__(self):
        self.connected = False

    def on(self, event, handler):
        pass

    async def connect(self, url, transports=None):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def emit(self, event, data=None):
        pass


def _config(tmp_path, **kwargs) -> AgentConfig:
    return AgentConfig(data_dir=tmp_path, db_path=tmp_path / "uploader.db", **kwargs)


def test_bootstrap_builds_graph_once(tmp_path):
    services, created = bootstrap(_config(tmp_path), signals=DeviceSignals())
    again, created_again = bootstrap(_config(tmp_path / "other"), signals=DeviceSignals())

    assert created is True
    assert created_again is False
    assert again is services
    assert get_services() is services
    assert services.store.list_all() == []


def test_get_services_requires_bootstrap():
    reset_services()
    with pytest.raises(RuntimeError):
        get_services()


def test_bootstrap_applies_persisted_override(tmp_path):
    (tmp_path / "device_profile.json").write_text('{"low_end": "1"}', encoding="utf-8")
    services, _ = bootstrap(_config(tmp_path), signals=DeviceSignals(memory_gb=32, cpu_cores=16))
    assert services.device.profile.source == "forced_on"
    assert "low-end" in services.device.style_classes


def test_corrupted_override_falls_back_to_detection(tmp_path):
    (tmp_path / "device_profile.json").write_text("garbage", encoding="utf-8")
    services, _ = bootstrap(_config(tmp_path), signals=DeviceSignals(cpu_cores=2))
    assert services.device.profile.source == "auto"
    assert services.device.low_end is True


def test_navigation_is_broadcast(tmp_path):
    services, _ = bootstrap(_config(tmp_path), signals=DeviceSignals(), channel_client=IdleClient())
    targets = []
    services.bus.subscribe(NAVIGATE_EVENT, targets.append)
    services.channel.navigator("chats?call=u1")
    assert targets == ["chats?call=u1"]
    assert list(services.navigation) == ["chats?call=u1"]


@pytest.mark.asyncio
async def test_agent_start_and_close(tmp_path):
    client = IdleClient()
    services, _ = bootstrap(
        _config(tmp_path, initial_delay=60, poll_interval=60, current_view="lessons"),
        signals=DeviceSignals(),
        channel_client=client,
    )
    agent = UploaderAgent(services)
    await agent.start()
    assert services.transport.session is not None
    assert services.scheduler.running is True
    assert services.channel.state == "connected"
    assert client.connected is True

    await agent.close()
    assert services.transport.session is None
    assert services.scheduler.running is False
    assert client.connected is False


@pytest.mark.asyncio
async def test_agent_skips_channel_when_disabled(tmp_path):
    client = IdleClient()
    services, _ = bootstrap(
        _config(tmp_path, initial_delay=60, calls_enabled=False),
        signals=DeviceSignals(),
        channel_client=client,
    )
    agent = UploaderAgent(services)
    await agent.start()
    try:
        assert services.channel.state == "idle"
        assert client.connected is False
    finally:
        await agent.close()


def test_create_app_registers_routes(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    app = create_app(_config(tmp_path))
    paths = {resource.canonical for resource in app.router.resources()}
    assert {"/v1/health", "/v1/uploads", "/v1/calls/pending", "/metrics"} <= paths
    assert app["services"] is get_services()
