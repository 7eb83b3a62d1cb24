"""In-process event bus shared by the agent services."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

DEVICE_PROFILE_EVENT = "device_profile"
UPLOAD_UX_EVENT = "upload_ux"
NAVIGATE_EVENT = "navigate"

UX_STATES = ("start", "progress", "done", "error", "hide")

Listener = Callable[[Any], None]


@dataclass(frozen=True, slots=True)
class UploadUxEvent:
    """Payload of ``upload_ux``; ``state`` is one of :data:`UX_STATES`."""

    state: str
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.state not in UX_STATES:
            raise ValueError(f"unknown upload UX state: {self.state!r}")


class EventBus:
    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(name, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(name, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    def emit(self, name: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every listener; returns how many succeeded."""

        delivered = 0
        for listener in list(self._listeners.get(name, ())):
            try:
                listener(payload)
            except Exception:
                logging.exception("EVENT listener for %s failed", name)
                continue
            delivered += 1
        return delivered
