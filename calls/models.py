"""Data structures describing inbound call cards."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CallKind(str, Enum):
    DIRECT = "direct-call"
    GROUP = "group-call"


def _noop() -> None:
    return None


@dataclass(slots=True)
class CallNotification:
    """One call card. ``expires_at`` is a ``time.monotonic`` deadline."""

    key: str
    kind: CallKind
    title: str
    caller: str = ""
    call_type: str = "audio"
    expires_at: float = 0.0
    on_accept: Callable[[], Any] = _noop
    on_reject: Callable[[], Any] = _noop
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "title": self.title,
            "caller": self.caller,
            "call_type": self.call_type,
            "expires_in": max(0.0, round(self.expires_at - time.monotonic(), 3)),
        }


def _caller_info(data: Mapping[str, Any]) -> Mapping[str, Any]:
    info = data.get("callerInfo")
    return info if isinstance(info, Mapping) else {}


def direct_call_id(data: Mapping[str, Any]) -> str | None:
    call_id = data.get("callId") or _caller_info(data).get("callId")
    return str(call_id) if call_id else None


def direct_call_key(data: Mapping[str, Any], *, now_ms: int | None = None) -> str:
    """Dedup key for a ``callOffer`` payload.

    Offers without a call id get a caller+timestamp key and are therefore
    never deduplicated.
    """

    call_id = direct_call_id(data)
    if call_id:
        return f"direct:{call_id}"
    caller = data.get("from") or _caller_info(data).get("userId") or "unknown"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"direct:{caller}:{stamp}"


def group_call_key(data: Mapping[str, Any]) -> str | None:
    group_id = data.get("groupId")
    call_id = data.get("callId")
    if not group_id or not call_id:
        return None
    return f"group:{group_id}:{call_id}"
