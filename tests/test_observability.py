import io
import json
import logging
import os
import sys

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from observability import (
    context,
    metrics_handler,
    observability_middleware,
    record_call_notification,
    record_upload,
    set_queue_depth,
    setup_logging,
)


@pytest.mark.asyncio
async def test_request_id_middleware_propagates():
    app = web.Application(middlewares=[observability_middleware])

    async def handler(request: web.Request) -> web.Response:
        assert request["request_id"] == "req-123"
        return web.json_response({"ok": True})

    app.router.add_get("/", handler)

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            response = await client.get("/", headers={"X-Request-ID": "req-123"})
            assert response.status == 200
            assert response.headers.get("X-Request-ID") == "req-123"


def test_logging_redacts_sensitive_values(monkeypatch):
    stream = io.StringIO()
    monkeypatch.setenv("LOG_FORMAT", "json")
    setup_logging(stream=stream)

    logger = logging.getLogger("test-redaction")
    logger.info("Authorization: Bearer abc.def token=xyz123")

    output = stream.getvalue().strip().splitlines()[-1]
    payload = json.loads(output)
    assert "***" in payload["msg"]
    assert "abc.def" not in payload["msg"]
    assert "xyz123" not in payload["msg"]


def test_logging_includes_bound_context(monkeypatch):
    stream = io.StringIO()
    monkeypatch.setenv("LOG_FORMAT", "json")
    setup_logging(stream=stream)

    with context(upload_id="job-9", trigger="online"):
        logging.getLogger("test-context").info("QUEUE pass")
    logging.getLogger("test-context").info("outside")

    lines = [json.loads(line) for line in stream.getvalue().strip().splitlines()]
    assert lines[-2]["upload_id"] == "job-9"
    assert lines[-2]["trigger"] == "online"
    assert "upload_id" not in lines[-1]


def test_pretty_format_lists_context(monkeypatch):
    stream = io.StringIO()
    monkeypatch.setenv("LOG_FORMAT", "pretty")
    setup_logging(stream=stream)

    with context(call_key="direct:c1"):
        logging.getLogger("test-pretty").warning("CALL dropped")

    line = stream.getvalue().strip().splitlines()[-1]
    assert "WARNING" in line
    assert "call_key=direct:c1" in line
    monkeypatch.setenv("LOG_FORMAT", "json")
    setup_logging()


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_agent_metrics():
    record_upload("success", size=2048, duration=1.5)
    record_upload("timeout")
    set_queue_depth("uploads", 3)
    record_call_notification("direct-call", "shown")

    app = web.Application(middlewares=[observability_middleware])
    app.router.add_get("/metrics", metrics_handler)

    async with TestServer(app) as server:
        async with TestClient(server) as client:
            await client.get("/metrics")
            response = await client.get("/metrics")
            text = await response.text()
            assert response.status == 200
            assert response.headers["Content-Type"].startswith("text/plain")
            assert 'uploads_total{outcome="timeout"}' in text
            assert 'queue_depth{queue="uploads"} 3.0' in text
            assert "call_notifications_total" in text
            assert "http_requests_total" in text
