from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logging.warning("CONFIG invalid integer env %s=%s, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logging.warning("CONFIG %s=%s below %s, using %s", name, raw, minimum, default)
        return default
    return value


def _env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logging.warning("CONFIG invalid float env %s=%s, using %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logging.warning("CONFIG %s=%s below %s, using %s", name, raw, minimum, default)
        return default
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    logging.warning("CONFIG invalid boolean env %s=%s, using %s", name, raw, default)
    return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(slots=True)
class AgentConfig:
    data_dir: Path = Path("data")
    db_path: Path = Path("data/uploader.db")
    upload_base_url: str = "http://localhost:3000"
    upload_path_template: str = "/api/lessons/{target_id}/recording"
    upload_field_name: str = "video"
    upload_timeout: float = 20 * 60.0
    upload_chunk_size: int = 64 * 1024
    max_recording_mb: float = 1024.0
    poll_interval: float = 15.0
    initial_delay: float = 2.0
    hud_done_hide: float = 1.5
    hud_error_hide: float = 2.6
    socket_url: str = "http://localhost:3000"
    reconnect_attempts: int = 8
    reconnect_delay_ms: int = 1000
    call_timeout: float = 45.0
    call_seen_cap: int = 120
    pending_call_ttl: float = 60.0
    call_ui_views: tuple[str, ...] = ("chats", "video-call", "group-call")
    current_view: str = ""
    calls_enabled: bool = True
    status_host: str = "127.0.0.1"
    status_port: int = 8787
    auth_token: str | None = field(default=None, repr=False)
    auth_token_file: Path | None = None

    @property
    def max_recording_bytes(self) -> int:
        return int(self.max_recording_mb * 1024 * 1024)

    @property
    def override_path(self) -> Path:
        return self.data_dir / "device_profile.json"

    @property
    def pending_call_path(self) -> Path:
        return self.data_dir / "pending_call.json"


def load_config() -> AgentConfig:
    data_dir = Path(_env_str("UPLOADER_DATA_DIR", "data"))
    db_raw = os.getenv("UPLOADER_DB_PATH")
    db_path = Path(db_raw.strip()) if db_raw and db_raw.strip() else data_dir / "uploader.db"

    base_url = _env_str("UPLOAD_BASE_URL", "http://localhost:3000").rstrip("/")
    path_template = _env_str("UPLOAD_PATH_TEMPLATE", "/api/lessons/{target_id}/recording")
    if "{target_id}" not in path_template:
        logging.warning(
            "CONFIG UPLOAD_PATH_TEMPLATE=%s has no {target_id} placeholder, using default",
            path_template,
        )
        path_template = "/api/lessons/{target_id}/recording"

    token_file_raw = os.getenv("AUTH_TOKEN_FILE")
    token_file = Path(token_file_raw.strip()) if token_file_raw and token_file_raw.strip() else None

    return AgentConfig(
        data_dir=data_dir,
        db_path=db_path,
        upload_base_url=base_url,
        upload_path_template=path_template,
        upload_field_name=_env_str("UPLOAD_FIELD_NAME", "video"),
        upload_timeout=_env_float("UPLOAD_TIMEOUT_SEC", 20 * 60.0, minimum=1.0),
        upload_chunk_size=_env_int("UPLOAD_CHUNK_SIZE", 64 * 1024, minimum=1024),
        max_recording_mb=_env_float("MAX_RECORDING_MB", 1024.0, minimum=1.0),
        poll_interval=_env_float("QUEUE_POLL_INTERVAL_SEC", 15.0, minimum=0.1),
        initial_delay=_env_float("QUEUE_INITIAL_DELAY_SEC", 2.0, minimum=0.0),
        hud_done_hide=_env_float("HUD_DONE_HIDE_SEC", 1.5, minimum=0.0),
        hud_error_hide=_env_float("HUD_ERROR_HIDE_SEC", 2.6, minimum=0.0),
        socket_url=_env_str("SOCKET_URL", base_url).rstrip("/"),
        reconnect_attempts=_env_int("SOCKET_RECONNECT_ATTEMPTS", 8, minimum=0),
        reconnect_delay_ms=_env_int("SOCKET_RECONNECT_DELAY_MS", 1000, minimum=0),
        call_timeout=_env_float("CALL_NOTIFICATION_TIMEOUT_SEC", 45.0, minimum=1.0),
        call_seen_cap=_env_int("CALL_SEEN_CAP", 120, minimum=1),
        pending_call_ttl=_env_float("PENDING_CALL_TTL_SEC", 60.0, minimum=1.0),
        call_ui_views=_env_list("CALL_UI_VIEWS", ("chats", "video-call", "group-call")),
        current_view=_env_str("CURRENT_VIEW", ""),
        calls_enabled=_env_bool("CALLS_ENABLED", True),
        status_host=_env_str("STATUS_HOST", "127.0.0.1"),
        status_port=_env_int("PORT", 8787, minimum=1),
        auth_token=os.getenv("AUTH_TOKEN") or None,
        auth_token_file=token_file,
    )


def credential_provider(config: AgentConfig) -> Callable[[], str | None]:
    """Return a callable resolving the bearer token fresh on every call."""

    def _resolve() -> str | None:
        if config.auth_token_file is not None:
            try:
                token = config.auth_token_file.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                token = ""
            except OSError as exc:
                logging.warning("CONFIG cannot read token file %s: %s", config.auth_token_file, exc)
                token = ""
            if token:
                return token
        env_token = os.getenv("AUTH_TOKEN")
        if env_token and env_token.strip():
            return env_token.strip()
        return config.auth_token

    return _resolve
