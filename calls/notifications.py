from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable

from observability import context, record_call_notification

from .models import CallNotification

DEFAULT_TIMEOUT = 45.0
DEFAULT_SEEN_CAP = 120

CardObserver = Callable[["CallNotification | None"], None]


class NotificationCenter:
    """Single-active call card overlay with per-session de-duplication."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        seen_cap: int = DEFAULT_SEEN_CAP,
    ) -> None:
        self.timeout = timeout
        self.seen_cap = seen_cap
        self._seen: set[str] = set()
        self._active: CallNotification | None = None
        self._expire_handle: asyncio.TimerHandle | None = None
        self._observers: list[CardObserver] = []
        self._pending: set[asyncio.Task] = set()

    @property
    def active(self) -> CallNotification | None:
        return self._active

    @property
    def seen_count(self) -> int:
        return len(self._seen)

    def has_seen(self, key: str) -> bool:
        return key in self._seen

    def add_observer(self, observer: CardObserver) -> None:
        self._observers.append(observer)

    def _notify(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self._active)
            except Exception:
                logging.exception("CALL card observer failed")

    def offer(self, notification: CallNotification) -> bool:
        """Show ``notification`` unless another card is up or the key was seen."""

        kind = notification.kind.value
        with context(call_key=notification.key):
            active = self._active
            if active is not None and active.key != notification.key:
                logging.info("CALL dropped, card %s already active", active.key)
                record_call_notification(kind, "busy")
                return False
            if notification.key in self._seen:
                logging.debug("CALL duplicate ignored")
                record_call_notification(kind, "duplicate")
                return False
            if len(self._seen) > self.seen_cap:
                self._seen.clear()
            self._seen.add(notification.key)
            notification.expires_at = time.monotonic() + self.timeout
            self._active = notification
            self._schedule_expiry(notification.key)
            record_call_notification(kind, "shown")
            logging.info(
                "CALL card shown kind=%s caller=%s type=%s",
                kind,
                notification.caller,
                notification.call_type,
            )
        self._notify()
        return True

    def _schedule_expiry(self, key: str) -> None:
        self._cancel_expiry()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logging.debug("CALL no running loop, auto-dismiss skipped")
            return
        self._expire_handle = loop.call_later(self.timeout, self._expire, key)

    def _cancel_expiry(self) -> None:
        if self._expire_handle is not None:
            self._expire_handle.cancel()
            self._expire_handle = None

    def _expire(self, key: str) -> None:
        self._expire_handle = None
        if self._active is None or self._active.key != key:
            return
        record_call_notification(self._active.kind.value, "expired")
        logging.info("CALL card %s expired", key)
        self._clear()

    def _clear(self) -> CallNotification | None:
        card = self._active
        self._cancel_expiry()
        self._active = None
        if card is not None:
            self._notify()
        return card

    def dismiss(self) -> None:
        """Hide the active card; the key stays in the seen set."""

        card = self._clear()
        if card is not None:
            record_call_notification(card.kind.value, "dismissed")

    def _run_action(self, action: Callable[[], object]) -> None:
        result = action()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._action_done)

    def _action_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logging.error("CALL card action failed: %s", exc, exc_info=exc)

    def accept(self) -> bool:
        card = self._clear()
        if card is None:
            return False
        record_call_notification(card.kind.value, "accepted")
        with context(call_key=card.key):
            logging.info("CALL accepted")
            self._run_action(card.on_accept)
        return True

    def reject(self) -> bool:
        card = self._clear()
        if card is None:
            return False
        record_call_notification(card.kind.value, "rejected")
        with context(call_key=card.key):
            logging.info("CALL rejected")
            self._run_action(card.on_reject)
        return True

    async def drain(self) -> None:
        """Wait for async accept/reject actions still running."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
