"""Inbound call notifications delivered over the platform socket."""

from .channel import CallChannel, embeds_call_ui_predicate
from .models import CallKind, CallNotification, direct_call_key, group_call_key
from .notifications import NotificationCenter

__all__ = [
    "CallChannel",
    "CallKind",
    "CallNotification",
    "NotificationCenter",
    "direct_call_key",
    "embeds_call_ui_predicate",
    "group_call_key",
]
