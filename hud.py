"""Upload status surface.

The HUD is a single process-wide state machine with five verbs. Producers
either call the verbs directly or emit :class:`events.UploadUxEvent` on the
bus; renderers observe every transition.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from events import UPLOAD_UX_EVENT, EventBus, UploadUxEvent

DONE_HIDE_DELAY = 1.5
ERROR_HIDE_DELAY = 2.6


@dataclass(frozen=True, slots=True)
class HudState:
    visible: bool = False
    mode: str = "idle"
    percent: int = 0
    title: str = ""
    subtitle: str = ""
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "visible": self.visible,
            "mode": self.mode,
            "percent": self.percent,
            "title": self.title,
            "subtitle": self.subtitle,
            "text": self.text,
        }


HudRenderer = Callable[[HudState], None]


def log_renderer(state: HudState) -> None:
    if not state.visible:
        logging.debug("HUD hidden")
        return
    logging.info(
        "HUD %s %s%% %s %s",
        state.mode,
        state.percent,
        state.title,
        state.text or state.subtitle,
    )


def _clamp(percent: Any) -> int:
    try:
        value = int(round(float(percent)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


class UploadHud:
    _instance: "UploadHud | None" = None

    def __init__(
        self,
        *,
        done_hide_delay: float = DONE_HIDE_DELAY,
        error_hide_delay: float = ERROR_HIDE_DELAY,
    ) -> None:
        self.done_hide_delay = done_hide_delay
        self.error_hide_delay = error_hide_delay
        self._state = HudState()
        self._renderers: list[HudRenderer] = []
        self._hide_handle: asyncio.TimerHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    def install(
        cls,
        bus: EventBus,
        *,
        done_hide_delay: float = DONE_HIDE_DELAY,
        error_hide_delay: float = ERROR_HIDE_DELAY,
        renderer: HudRenderer | None = log_renderer,
    ) -> "UploadHud":
        """Return the process HUD, creating and wiring it on first use."""

        if cls._instance is not None:
            return cls._instance
        hud = cls(done_hide_delay=done_hide_delay, error_hide_delay=error_hide_delay)
        if renderer is not None:
            hud.add_renderer(renderer)
        hud.attach(bus)
        cls._instance = hud
        return hud

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.detach()
            cls._instance._cancel_hide()
        cls._instance = None

    def attach(self, bus: EventBus) -> None:
        if self._unsubscribe is not None:
            return
        self._unsubscribe = bus.subscribe(UPLOAD_UX_EVENT, self.handle_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def add_renderer(self, renderer: HudRenderer) -> None:
        if renderer not in self._renderers:
            self._renderers.append(renderer)

    def snapshot(self) -> HudState:
        return self._state

    def _set(self, state: HudState) -> None:
        self._state = state
        for renderer in list(self._renderers):
            try:
                renderer(state)
            except Exception:
                logging.exception("HUD renderer failed")

    def _cancel_hide(self) -> None:
        if self._hide_handle is not None:
            self._hide_handle.cancel()
            self._hide_handle = None

    def _schedule_hide(self, delay: float) -> None:
        self._cancel_hide()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logging.debug("HUD no running loop, auto-hide skipped")
            return
        self._hide_handle = loop.call_later(delay, self.hide)

    def start(self, title: str = "", subtitle: str = "") -> None:
        self._cancel_hide()
        self._set(
            HudState(visible=True, mode="uploading", percent=0, title=title, subtitle=subtitle)
        )

    def progress(self, percent: Any, subtitle: str | None = None) -> None:
        self._cancel_hide()
        current = self._state
        value = _clamp(percent)
        if current.mode == "uploading":
            value = max(current.percent, value)
        self._set(
            replace(
                current,
                visible=True,
                mode="uploading",
                percent=value,
                subtitle=current.subtitle if subtitle is None else subtitle,
            )
        )

    def done(self, text: str = "") -> None:
        self._set(replace(self._state, visible=True, mode="done", percent=100, text=text))
        self._schedule_hide(self.done_hide_delay)

    def error(self, text: str = "") -> None:
        self._set(replace(self._state, visible=True, mode="error", text=text))
        self._schedule_hide(self.error_hide_delay)

    def hide(self) -> None:
        self._cancel_hide()
        if not self._state.visible:
            return
        self._set(replace(self._state, visible=False))

    def handle_event(self, event: UploadUxEvent) -> None:
        payload = event.payload
        if event.state == "start":
            self.start(payload.get("title", ""), payload.get("subtitle", ""))
        elif event.state == "progress":
            self.progress(payload.get("percent", 0), payload.get("subtitle"))
        elif event.state == "done":
            self.done(payload.get("text", ""))
        elif event.state == "error":
            self.error(payload.get("text", ""))
        else:
            self.hide()
