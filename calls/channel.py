from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

from errors import ChannelUnavailable, StorageFailure
from local_state import PendingCallStore
from observability import log_exc

from .models import (
    CallKind,
    CallNotification,
    direct_call_id,
    direct_call_key,
    group_call_key,
)
from .notifications import NotificationCenter

Navigator = Callable[[str], Any]
ViewPredicate = Callable[[str], bool]

TRANSPORT_FALLBACK: tuple[tuple[str, ...], ...] = (("websocket",), ("polling",))
# Allowance per reconnect attempt for the connect handshake itself.
RECONNECT_ATTEMPT_GRACE = 5.0


def _normalize_view(view: str) -> str:
    name = (view or "").strip().lower()
    name = name.split("?", 1)[0].split("#", 1)[0].strip("/")
    if name.endswith(".html"):
        name = name[: -len(".html")]
    return name


def embeds_call_ui_predicate(views: Iterable[str]) -> ViewPredicate:
    """Build the check for views that already carry their own calling UI."""

    names = {_normalize_view(view) for view in views if view and view.strip()}

    def _embeds(view: str) -> bool:
        return _normalize_view(view) in names

    return _embeds


class CallChannel:
    """Socket.IO connection that turns call events into notification cards."""

    def __init__(
        self,
        url: str,
        notifications: NotificationCenter,
        *,
        credential_provider: Callable[[], str | None],
        pending_calls: PendingCallStore,
        navigator: Navigator,
        embeds_call_ui: ViewPredicate | None = None,
        on_online: Callable[[], Any] | None = None,
        reconnect_attempts: int = 8,
        reconnect_delay_ms: int = 1000,
        give_up_after: float | None = None,
        client: Any | None = None,
    ) -> None:
        self.url = url
        self.notifications = notifications
        self._credential_provider = credential_provider
        self.pending_calls = pending_calls
        self.navigator = navigator
        self.embeds_call_ui = embeds_call_ui or (lambda view: False)
        self.on_online = on_online
        delay = reconnect_delay_ms / 1000.0
        self.client = client or socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=reconnect_attempts,
            reconnection_delay=delay,
            reconnection_delay_max=delay,
            randomization_factor=0,
            logger=False,
        )
        self.state = "idle"
        self.transport: str | None = None
        self.last_error: ChannelUnavailable | None = None
        self.reconnect_attempts = reconnect_attempts
        # python-socketio treats 0 attempts as unlimited, so never give up then.
        if give_up_after is None and reconnect_attempts > 0:
            give_up_after = reconnect_attempts * (delay + RECONNECT_ATTEMPT_GRACE)
        self.give_up_after = give_up_after
        self._handlers_registered = False
        self._reconnect_watchdog: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self.state not in {"idle", "skipped", "unavailable"}

    def _register_handlers(self) -> None:
        if self._handlers_registered:
            return
        self.client.on("connect", self._on_connect)
        self.client.on("disconnect", self._on_disconnect)
        self.client.on("authenticated", self._on_authenticated)
        self.client.on("authenticationError", self._on_authentication_error)
        self.client.on("callOffer", self.handle_call_offer)
        self.client.on("groupCallIncomingGlobal", self.handle_group_call)
        self._handlers_registered = True

    async def start(self, view: str = "") -> bool:
        """Connect unless ``view`` embeds a dedicated calling UI.

        Returns ``True`` when connected. Failure to connect disables the
        notification feature for this session instead of raising.
        """

        if self.embeds_call_ui(view):
            logging.info("CALL channel skipped on view %s", view)
            self.state = "skipped"
            return False
        if self.state in {"connecting", "connected", "disconnected"}:
            return self.state == "connected"
        self._register_handlers()
        self.state = "connecting"
        try:
            self.transport = await self._connect()
        except ChannelUnavailable as exc:
            self.state = "unavailable"
            self.last_error = exc
            log_exc("CALL channel unavailable, notifications disabled", exc)
            return False
        self.state = "connected"
        logging.info("CALL channel connected via %s", self.transport)
        return True

    async def _connect(self) -> str:
        last_error: Exception | None = None
        for transports in TRANSPORT_FALLBACK:
            try:
                await self.client.connect(self.url, transports=list(transports))
            except SocketConnectionError as exc:
                last_error = exc
                logging.warning("CALL connect via %s failed: %s", transports[0], exc)
                continue
            return transports[0]
        raise ChannelUnavailable(f"cannot reach {self.url}: {last_error}")

    async def stop(self) -> None:
        if self.state == "connecting" or self.transport is not None:
            await self.client.disconnect()
        await self._cancel_watchdog()
        self.transport = None
        self.notifications.dismiss()
        await self.notifications.drain()
        if self.state != "unavailable":
            self.state = "idle"

    async def _on_connect(self) -> None:
        await self._cancel_watchdog()
        if self.state == "unavailable":
            logging.info("CALL channel reconnected after giving up")
            self.last_error = None
        self.state = "connected"
        token = self._credential_provider()
        if token:
            await self.client.emit("authenticate", token)
        else:
            logging.warning("CALL connected without credential, not authenticating")
        if self.on_online is not None:
            try:
                self.on_online()
            except Exception:
                logging.exception("CALL online hook failed")

    async def _on_disconnect(self, *args: Any) -> None:
        if self.state == "connected":
            self.state = "disconnected"
            self._arm_watchdog()
        logging.info("CALL channel disconnected")

    def _arm_watchdog(self) -> None:
        if self.give_up_after is None:
            return
        if self._reconnect_watchdog is not None and not self._reconnect_watchdog.done():
            return
        self._reconnect_watchdog = asyncio.create_task(self._give_up_when_exhausted())

    async def _cancel_watchdog(self) -> None:
        task, self._reconnect_watchdog = self._reconnect_watchdog, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _give_up_when_exhausted(self) -> None:
        await asyncio.sleep(self.give_up_after)
        if self.state != "disconnected":
            return
        self.state = "unavailable"
        self.last_error = ChannelUnavailable(
            f"gave up reconnecting to {self.url} after {self.reconnect_attempts} attempts"
        )
        logging.warning("CALL channel lost, notifications disabled: %s", self.last_error)

    async def _on_authenticated(self, data: Any = None) -> None:
        logging.info("CALL channel authenticated")

    async def _on_authentication_error(self, data: Any = None) -> None:
        logging.warning("CALL channel authentication rejected: %s", data)

    def handle_call_offer(self, data: Mapping[str, Any]) -> bool:
        if not isinstance(data, Mapping):
            logging.warning("CALL malformed callOffer payload ignored")
            return False
        info = data.get("callerInfo") if isinstance(data.get("callerInfo"), Mapping) else {}
        caller_id = str(data.get("from") or info.get("userId") or "")
        call_id = direct_call_id(data)
        call_type = str(data.get("type") or "audio")
        caller_name = str(info.get("nickname") or info.get("username") or caller_id or "Unknown")
        record = {
            "kind": CallKind.DIRECT.value,
            "from": caller_id,
            "callId": call_id,
            "type": call_type,
            "offer": data.get("offer"),
            "callerInfo": dict(info),
        }

        def _accept() -> None:
            self._save_pending(record)
            self.navigator(f"chats?call={caller_id}")

        async def _reject() -> None:
            await self.client.emit("callRejected", {"to": caller_id, "callId": call_id})

        notification = CallNotification(
            key=direct_call_key(data),
            kind=CallKind.DIRECT,
            title=f"Incoming {'video' if call_type == 'video' else 'audio'} call",
            caller=caller_name,
            call_type=call_type,
            on_accept=_accept,
            on_reject=_reject,
            data=record,
        )
        return self.notifications.offer(notification)

    def handle_group_call(self, data: Mapping[str, Any]) -> bool:
        if not isinstance(data, Mapping):
            logging.warning("CALL malformed group call payload ignored")
            return False
        key = group_call_key(data)
        if key is None:
            logging.warning("CALL group call without groupId/callId ignored")
            return False
        group_id = str(data["groupId"])
        call_id = str(data["callId"])
        call_type = str(data.get("type") or data.get("callType") or "audio")
        group_name = str(data.get("groupName") or "Group")
        record = {
            "kind": CallKind.GROUP.value,
            "groupId": group_id,
            "callId": call_id,
            "type": call_type,
            "groupName": group_name,
        }

        def _accept() -> None:
            self._save_pending(record)
            self.navigator(f"groups/{group_id}?call={call_id}")

        notification = CallNotification(
            key=key,
            kind=CallKind.GROUP,
            title=f"{group_name}: group call",
            caller=str(data.get("callerName") or data.get("from") or ""),
            call_type=call_type,
            on_accept=_accept,
            data=record,
        )
        return self.notifications.offer(notification)

    def _save_pending(self, record: dict[str, Any]) -> None:
        try:
            self.pending_calls.save(record)
        except StorageFailure as exc:
            log_exc("CALL pending call not persisted", exc)
