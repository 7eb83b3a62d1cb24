from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import uuid4

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)

_LOG_FORMAT = "json"
_LOG_LEVEL = logging.INFO

_SENSITIVE_KEYS = (
    "secret",
    "token",
    "authorization",
    "password",
    "credential",
)

_CONTEXT_KEYS = (
    "request_id",
    "route",
    "method",
    "status",
    "duration_ms",
    "upload_id",
    "target_id",
    "trigger",
    "call_key",
)

_HEADER_RE = re.compile(
    r"(?i)(secret|token|authorization)([:=]\s*)([^\s,;]+)"
)
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([^\s,;]+)")
_JSON_RE = re.compile(
    r"(?i)(\"(?:secret|token|authorization|auth_token)\"\s*:\s*)\"[^\"]*\""
)

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "message",
    "taskName",
}


def _redact_value(key: str | None, value: Any) -> Any:
    if key and any(token in key.lower() for token in _SENSITIVE_KEYS):
        return "***"
    if isinstance(value, str):
        redacted = _BEARER_RE.sub(lambda match: f"{match.group(1)}***", value)
        redacted = _HEADER_RE.sub(
            lambda match: f"{match.group(1)}{match.group(2)}***",
            redacted,
        )
        redacted = _JSON_RE.sub(
            lambda match: f"{match.group(1)}\"***\"",
            redacted,
        )
        return redacted
    if isinstance(value, Mapping):
        return {k: _redact_value(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return type(value)(_redact_value(None, item) for item in value)  # type: ignore[call-arg]
    return value


def _current_context() -> dict[str, Any]:
    return dict(_LOG_CONTEXT.get({}))


def bind_context(**updates: Any) -> contextvars.Token[dict[str, Any]]:
    ctx = _current_context()
    for key, value in updates.items():
        if value is None:
            ctx.pop(key, None)
        else:
            ctx[key] = value
    return _LOG_CONTEXT.set(ctx)


@contextlib.contextmanager
def context(**updates: Any):
    token = bind_context(**updates)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        for key, value in _current_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        for key in _CONTEXT_KEYS:
            if not hasattr(record, key):
                setattr(record, key, None)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        base["msg"] = _redact_value("msg", record.getMessage())
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_") or key in base:
                continue
            if value is None:
                continue
            base[key] = _redact_value(key, value)
        if record.exc_info:
            base["error_type"] = getattr(record.exc_info[0], "__name__", "Exception")
            if _LOG_FORMAT == "pretty":
                base["stack"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S.%fZ"
        )
        message = _redact_value("msg", record.getMessage())
        parts = [f"[{ts}]", record.levelname.ljust(5), str(message)]
        extras: list[str] = []
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value:
                extras.append(f"{key}={_redact_value(key, value)}")
        if extras:
            parts.append("(" + " ".join(extras) + ")")
        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def setup_logging(*, stream: Any | None = None) -> None:
    global _LOG_FORMAT, _LOG_LEVEL
    format_name = os.getenv("LOG_FORMAT", "json").strip().lower()
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    formatter: logging.Formatter
    if format_name == "pretty":
        formatter = PrettyFormatter()
    else:
        format_name = "json"
        formatter = JsonFormatter()
    _LOG_FORMAT = format_name
    _LOG_LEVEL = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_LOG_LEVEL)


def is_pretty_format() -> bool:
    return _LOG_FORMAT == "pretty"


def log_exc(ctx: str, err: BaseException) -> None:
    logger = logging.getLogger("observability")
    extra = {"error_type": type(err).__name__, "error": str(err)}
    if is_pretty_format():
        logger.exception(ctx, extra=extra)
    else:
        logger.error(ctx, extra=extra)


_HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests served by the local status API",
    labelnames=("method", "route", "status"),
)
_HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labelnames=("route",),
)
_UPLOADS_TOTAL = Counter(
    "uploads_total",
    "Upload attempts by outcome",
    labelnames=("outcome",),
)
_UPLOAD_BYTES_TOTAL = Counter(
    "upload_bytes_total",
    "Total payload bytes delivered to the server",
)
_UPLOAD_DURATION = Histogram(
    "upload_duration_seconds",
    "Duration of successful uploads",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200),
)
_QUEUE_DEPTH = Gauge(
    "queue_depth",
    "Jobs waiting in the durable upload queue",
    labelnames=("queue",),
)
_CALL_NOTIFICATIONS_TOTAL = Counter(
    "call_notifications_total",
    "Inbound call notification decisions",
    labelnames=("kind", "outcome"),
)


async def metrics_handler(request: web.Request) -> web.Response:
    payload = generate_latest()
    return web.Response(body=payload, headers={"Content-Type": CONTENT_TYPE_LATEST})


def _resolve_route_label(request: web.Request) -> str:
    route = request.match_info.route
    if route is not None:
        resource = getattr(route, "resource", None)
        if resource is not None:
            canonical = getattr(resource, "canonical", None)
            if canonical:
                return canonical
    return request.rel_url.path


@web.middleware
async def observability_middleware(request: web.Request, handler):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    token = bind_context(
        request_id=request_id,
        method=request.method,
        route=request.rel_url.path,
    )
    request["request_id"] = request_id
    start = time.perf_counter()
    response: web.StreamResponse | None = None
    status: int = 500
    try:
        try:
            response = await handler(request)
        except web.HTTPException as http_exc:
            status = http_exc.status
            http_exc.headers.setdefault("X-Request-ID", request_id)
            raise
        else:
            status = response.status
            return response
    finally:
        duration = time.perf_counter() - start
        route_label = _resolve_route_label(request)
        if response is not None:
            response.headers.setdefault("X-Request-ID", request_id)
        _HTTP_REQUESTS_TOTAL.labels(
            method=request.method,
            route=route_label,
            status=str(status),
        ).inc()
        _HTTP_REQUEST_DURATION.labels(route=route_label).observe(duration)
        logging.getLogger("aiohttp.access").info(
            "request_completed",
            extra={
                "route": route_label,
                "status": status,
                "duration_ms": round(duration * 1000.0, 3),
                "upload_id": request.get("upload_id"),
            },
        )
        _LOG_CONTEXT.reset(token)


def record_upload(outcome: str, *, size: int = 0, duration: float | None = None) -> None:
    _UPLOADS_TOTAL.labels(outcome=outcome).inc()
    if outcome == "success":
        if size > 0:
            _UPLOAD_BYTES_TOTAL.inc(size)
        if duration is not None and duration >= 0:
            _UPLOAD_DURATION.observe(duration)


def set_queue_depth(queue: str, depth: int) -> None:
    _QUEUE_DEPTH.labels(queue=queue).set(depth)


def record_call_notification(kind: str, outcome: str) -> None:
    _CALL_NOTIFICATIONS_TOTAL.labels(kind=kind, outcome=outcome).inc()


__all__ = [
    "bind_context",
    "context",
    "log_exc",
    "metrics_handler",
    "observability_middleware",
    "record_call_notification",
    "record_upload",
    "set_queue_depth",
    "setup_logging",
]
