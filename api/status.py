from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from device_profile import collect_signals, detect
from errors import StorageFailure
from events import UPLOAD_UX_EVENT, UX_STATES, UploadUxEvent
from local_state import OVERRIDE_VALUES
from observability import context, log_exc, metrics_handler
from services import Services
from upload_queue import TriggerSource

WAKE_SOURCES = (TriggerSource.ONLINE, TriggerSource.FOCUS, TriggerSource.VISIBLE)


def _json_error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


def _services(request: web.Request) -> Services:
    services = request.app.get("services")
    if services is None:
        raise RuntimeError("Services are not configured")
    return services


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


async def handle_health(request: web.Request) -> web.Response:
    services = _services(request)
    try:
        depth = len(services.queue.list_pending())
        queue_ok = True
    except StorageFailure as exc:
        log_exc("health queue check failed", exc)
        depth = None
        queue_ok = False
    profile = services.device.profile
    channel = services.channel
    payload = {
        "ok": queue_ok,
        "queue": {
            "pending": depth,
            "processing": services.queue.processing,
            "scheduler": services.scheduler.running,
        },
        "channel": {
            "state": channel.state,
            "transport": channel.transport,
            "error": str(channel.last_error) if channel.last_error else None,
        },
        "device": {
            "low_end": profile.low_end if profile else None,
            "source": profile.source if profile else None,
            "style_classes": sorted(services.device.style_classes),
        },
    }
    return web.json_response(payload, status=200 if queue_ok else 503)


async def handle_get_hud(request: web.Request) -> web.Response:
    return web.json_response(_services(request).hud.snapshot().to_dict())


async def handle_hud_event(request: web.Request) -> web.Response:
    data = await _read_json(request)
    if data is None:
        return _json_error(400, "invalid_json", "Expected a JSON object.")
    state = data.pop("state", None)
    if state not in UX_STATES:
        return _json_error(400, "invalid_state", f"state must be one of {', '.join(UX_STATES)}.")
    services = _services(request)
    services.bus.emit(UPLOAD_UX_EVENT, UploadUxEvent(state, data))
    return web.json_response(services.hud.snapshot().to_dict(), status=202)


async def handle_list_uploads(request: web.Request) -> web.Response:
    services = _services(request)
    try:
        jobs = services.queue.list_pending()
    except StorageFailure as exc:
        log_exc("listing uploads failed", exc)
        return _json_error(503, "storage_unavailable", "Upload queue is unavailable.")
    return web.json_response(
        {"processing": services.queue.processing, "jobs": [job.describe() for job in jobs]}
    )


async def handle_create_upload(request: web.Request) -> web.Response:
    if request.content_type is None or not request.content_type.startswith("multipart/"):
        return _json_error(415, "invalid_content_type", "Expected multipart/form-data payload.")

    services = _services(request)
    max_bytes = services.config.max_recording_bytes
    fields: dict[str, str] = {}
    payload = bytearray()
    filename: str | None = None

    reader = await request.multipart()
    async for part in reader:
        if part.filename is not None or part.name == "file":
            filename = part.filename
            while True:
                chunk = await part.read_chunk(65536)
                if not chunk:
                    break
                payload.extend(chunk)
                if len(payload) > max_bytes:
                    return _json_error(413, "payload_too_large", "Recording exceeds the size limit.")
        elif part.name:
            fields[part.name] = (await part.text()).strip()

    target_id = fields.get("target_id") or fields.get("targetId") or ""
    if not target_id:
        return _json_error(400, "missing_target", "Field 'target_id' is required.")
    if not payload:
        return _json_error(400, "missing_file", "A non-empty file part is required.")

    try:
        job = await services.queue.enqueue(
            target_id,
            bytes(payload),
            filename=filename,
            title=fields.get("title") or None,
            auth_token=services.transport.current_credential(),
        )
    except StorageFailure as exc:
        log_exc("enqueue failed", exc)
        return _json_error(503, "storage_unavailable", "Recording could not be queued.")
    request["upload_id"] = job.id
    with context(upload_id=job.id):
        logging.info("UPLOAD accepted from host UI size=%s", job.size)
    services.scheduler.wake(TriggerSource.ENQUEUED)
    return web.json_response({"id": job.id, "status": "queued"}, status=202)


async def handle_delete_upload(request: web.Request) -> web.Response:
    services = _services(request)
    job_id = request.match_info["id"]
    try:
        await services.queue.remove(job_id)
    except StorageFailure as exc:
        log_exc("remove failed", exc)
        return _json_error(503, "storage_unavailable", "Upload queue is unavailable.")
    return web.Response(status=204)


async def handle_wake(request: web.Request) -> web.Response:
    data = await _read_json(request) or {}
    raw = str(data.get("source") or "").strip().lower()
    allowed = {source.value: source for source in WAKE_SOURCES}
    if raw not in allowed:
        return _json_error(
            400, "invalid_source", f"source must be one of {', '.join(sorted(allowed))}."
        )
    task = _services(request).scheduler.wake(allowed[raw])
    return web.json_response({"started": task is not None}, status=202)


async def handle_get_call(request: web.Request) -> web.Response:
    services = _services(request)
    card = services.notifications.active
    return web.json_response(
        {
            "channel": services.channel.state,
            "active": card.to_dict() if card else None,
            "navigation": list(services.navigation),
        }
    )


async def handle_call_action(request: web.Request) -> web.Response:
    services = _services(request)
    action = request.match_info["action"]
    notifications = services.notifications
    if action == "accept":
        handled = notifications.accept()
    elif action == "reject":
        handled = notifications.reject()
    else:
        handled = notifications.active is not None
        notifications.dismiss()
    if not handled:
        return _json_error(409, "no_active_call", "There is no active call card.")
    return web.json_response({"ok": True, "action": action})


async def handle_pending_call(request: web.Request) -> web.Response:
    services = _services(request)
    try:
        record = services.pending_calls.consume()
    except StorageFailure as exc:
        log_exc("pending call unreadable", exc)
        record = None
    return web.json_response({"pending": record})


async def handle_get_device(request: web.Request) -> web.Response:
    services = _services(request)
    profile = services.device.profile
    try:
        override = services.overrides.get()
    except StorageFailure as exc:
        log_exc("device override unreadable", exc)
        override = None
    return web.json_response(
        {
            "profile": profile.to_dict() if profile else None,
            "override": override,
        }
    )


async def handle_set_device_override(request: web.Request) -> web.Response:
    data = await _read_json(request)
    if data is None or "value" not in data:
        return _json_error(400, "invalid_json", "Expected {\"value\": \"1\" | \"0\" | null}.")
    value = data["value"]
    if value is not None:
        value = str(value)
        if value not in OVERRIDE_VALUES:
            return _json_error(400, "invalid_override", "value must be \"1\", \"0\" or null.")
    services = _services(request)
    try:
        services.overrides.set(value)
    except StorageFailure as exc:
        log_exc("override not persisted", exc)
        return _json_error(503, "storage_unavailable", "Override could not be saved.")
    signals = services.device.profile.signals if services.device.profile else collect_signals()
    profile = services.device.apply(detect(signals, value))
    return web.json_response({"profile": profile.to_dict(), "override": value})


def setup_status_routes(app: web.Application, services: Services) -> None:
    app["services"] = services
    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/hud", handle_get_hud)
    app.router.add_post("/v1/hud/events", handle_hud_event)
    app.router.add_get("/v1/uploads", handle_list_uploads)
    app.router.add_post("/v1/uploads", handle_create_upload)
    app.router.add_delete("/v1/uploads/{id}", handle_delete_upload)
    app.router.add_post("/v1/wake", handle_wake)
    app.router.add_get("/v1/calls", handle_get_call)
    app.router.add_post("/v1/calls/{action:accept|reject|dismiss}", handle_call_action)
    app.router.add_get("/v1/calls/pending", handle_pending_call)
    app.router.add_get("/v1/device", handle_get_device)
    app.router.add_put("/v1/device/override", handle_set_device_override)
    app.router.add_get("/metrics", metrics_handler)
