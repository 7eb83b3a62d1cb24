"""Process-scoped service graph, built once by :func:`bootstrap`."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from calls import CallChannel, NotificationCenter, embeds_call_ui_predicate
from config import AgentConfig, credential_provider, load_config
from device_profile import DeviceProfileService, DeviceSignals, collect_signals, detect
from errors import StorageFailure
from events import NAVIGATE_EVENT, EventBus
from hud import UploadHud
from local_state import PendingCallStore, ProfileOverrideStore
from observability import log_exc
from queue_store import QueueStore, SqliteQueueStore
from transport import UploadTransport
from upload_queue import TriggerSource, UploadQueue, UploadScheduler


@dataclass(slots=True)
class Services:
    config: AgentConfig
    bus: EventBus
    device: DeviceProfileService
    overrides: ProfileOverrideStore
    hud: UploadHud
    store: QueueStore
    transport: UploadTransport
    queue: UploadQueue
    scheduler: UploadScheduler
    notifications: NotificationCenter
    pending_calls: PendingCallStore
    channel: CallChannel
    navigation: deque[str] = field(default_factory=lambda: deque(maxlen=20))


_SERVICES: Services | None = None


def _read_override(store: ProfileOverrideStore) -> str | None:
    try:
        return store.get()
    except StorageFailure as exc:
        log_exc("DEVICE override unreadable, using auto-detection", exc)
        return None


def bootstrap(
    config: AgentConfig | None = None,
    *,
    store: QueueStore | None = None,
    signals: DeviceSignals | None = None,
    channel_client: Any | None = None,
) -> tuple[Services, bool]:
    """Build the service graph on first call.

    Returns ``(services, True)`` when the graph was created by this call and
    ``(services, False)`` when it already existed.
    """

    global _SERVICES
    if _SERVICES is not None:
        return _SERVICES, False

    config = config or load_config()
    bus = EventBus()

    overrides = ProfileOverrideStore(config.override_path)
    device = DeviceProfileService(bus)
    device.apply(detect(signals or collect_signals(), _read_override(overrides)))

    hud = UploadHud.install(
        bus,
        done_hide_delay=config.hud_done_hide,
        error_hide_delay=config.hud_error_hide,
    )

    credentials = credential_provider(config)
    queue_store = store or SqliteQueueStore.open(config.db_path)
    transport = UploadTransport(
        config.upload_base_url,
        credential_provider=credentials,
        path_template=config.upload_path_template,
        field_name=config.upload_field_name,
        timeout=config.upload_timeout,
        chunk_size=config.upload_chunk_size,
    )
    queue = UploadQueue(queue_store, transport, bus)
    scheduler = UploadScheduler(
        queue,
        poll_interval=config.poll_interval,
        initial_delay=config.initial_delay,
    )

    notifications = NotificationCenter(timeout=config.call_timeout, seen_cap=config.call_seen_cap)
    pending_calls = PendingCallStore(config.pending_call_path, ttl=config.pending_call_ttl)
    navigation: deque[str] = deque(maxlen=20)

    def _navigate(target: str) -> None:
        navigation.append(target)
        logging.info("CALL navigate to %s", target)
        bus.emit(NAVIGATE_EVENT, target)

    channel = CallChannel(
        config.socket_url,
        notifications,
        credential_provider=credentials,
        pending_calls=pending_calls,
        navigator=_navigate,
        embeds_call_ui=embeds_call_ui_predicate(config.call_ui_views),
        on_online=lambda: scheduler.wake(TriggerSource.ONLINE),
        reconnect_attempts=config.reconnect_attempts,
        reconnect_delay_ms=config.reconnect_delay_ms,
        client=channel_client,
    )

    _SERVICES = Services(
        config=config,
        bus=bus,
        device=device,
        overrides=overrides,
        hud=hud,
        store=queue_store,
        transport=transport,
        queue=queue,
        scheduler=scheduler,
        notifications=notifications,
        pending_calls=pending_calls,
        channel=channel,
        navigation=navigation,
    )
    return _SERVICES, True


def get_services() -> Services:
    if _SERVICES is None:
        raise RuntimeError("bootstrap() has not been called")
    return _SERVICES


def reset_services() -> None:
    """Drop the service graph (tests only)."""

    global _SERVICES
    if _SERVICES is not None:
        close = getattr(_SERVICES.store, "close", None)
        if callable(close):
            close()
    _SERVICES = None
    UploadHud.reset_instance()
