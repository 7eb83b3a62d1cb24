"""Classify the host as resource-constrained or not.

``detect`` is a pure function of :class:`DeviceSignals` plus the persisted
override; ``collect_signals`` gathers the signals from the running machine
and from environment overrides supplied by the host UI.
"""

from __future__ import annotations

import importlib.util
import logging
import os
import platform
import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

import psutil

from events import DEVICE_PROFILE_EVENT, EventBus

LOW_MEMORY_GB = 2.0
LOW_CPU_CORES = 4
SLOW_EFFECTIVE_TYPES = frozenset({"slow-2g", "2g", "3g"})
# Minimum major version considered current, per mobile platform.
LEGACY_PLATFORM_CUTOFFS = {"android": 8, "ios": 13}

_ANDROID_RE = re.compile(r"android[\s/_-]*(\d+)", re.IGNORECASE)
_IOS_RE = re.compile(r"(?:iphone\s+os|cpu\s+os|ios)[\s/_-]*(\d+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class DeviceSignals:
    memory_gb: float | None = None
    cpu_cores: int | None = None
    effective_type: str | None = None
    save_data: bool = False
    prefers_reduced_motion: bool = False
    viewport_width: int | None = None
    platform: str | None = None
    realtime_media: bool = False


@dataclass(frozen=True, slots=True)
class DeviceProfile:
    low_end: bool
    low_memory: bool
    low_cpu: bool
    slow_net: bool
    reduced_motion: bool
    legacy_platform: bool
    has_realtime_media_support: bool
    source: str = "auto"
    signals: DeviceSignals = field(default_factory=DeviceSignals)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["signals"] = asdict(self.signals)
        return data


def _parse_bool(raw: str | None) -> bool | None:
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on", "reduce"}:
        return True
    if value in {"0", "false", "no", "off", "no-preference"}:
        return False
    return None


def _parse_number(raw: str | None, kind: type) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return kind(raw.strip())
    except ValueError:
        logging.warning("DEVICE ignoring malformed signal value %r", raw)
        return None


def _realtime_media_available() -> bool:
    return importlib.util.find_spec("aiortc") is not None


def collect_signals(env: Mapping[str, str] | None = None) -> DeviceSignals:
    env = os.environ if env is None else env

    memory = _parse_number(env.get("DEVICE_MEMORY_GB"), float)
    if memory is None:
        try:
            memory = psutil.virtual_memory().total / (1024**3)
        except (OSError, RuntimeError):
            memory = None

    cores = _parse_number(env.get("DEVICE_CPU_CORES"), int)
    if cores is None:
        cores = psutil.cpu_count(logical=True)

    effective_type = (env.get("NETWORK_EFFECTIVE_TYPE") or "").strip().lower() or None
    save_data = bool(_parse_bool(env.get("SAVE_DATA")))
    reduced_motion = bool(_parse_bool(env.get("PREFERS_REDUCED_MOTION")))
    viewport = _parse_number(env.get("VIEWPORT_WIDTH"), int)
    platform_name = (env.get("CLIENT_PLATFORM") or "").strip() or platform.platform()

    realtime = _parse_bool(env.get("REALTIME_MEDIA"))
    if realtime is None:
        realtime = _realtime_media_available()

    return DeviceSignals(
        memory_gb=memory,
        cpu_cores=cores,
        effective_type=effective_type,
        save_data=save_data,
        prefers_reduced_motion=reduced_motion,
        viewport_width=viewport,
        platform=platform_name,
        realtime_media=bool(realtime),
    )


def is_legacy_platform(platform_name: str | None) -> bool:
    if not platform_name:
        return False
    match = _IOS_RE.search(platform_name)
    if match:
        return int(match.group(1)) < LEGACY_PLATFORM_CUTOFFS["ios"]
    match = _ANDROID_RE.search(platform_name)
    if match:
        return int(match.group(1)) < LEGACY_PLATFORM_CUTOFFS["android"]
    return False


def detect(signals: DeviceSignals, override: str | None = None) -> DeviceProfile:
    low_memory = signals.memory_gb is not None and signals.memory_gb <= LOW_MEMORY_GB
    low_cpu = signals.cpu_cores is not None and signals.cpu_cores <= LOW_CPU_CORES
    slow_net = signals.save_data or (signals.effective_type or "") in SLOW_EFFECTIVE_TYPES
    reduced_motion = signals.prefers_reduced_motion
    legacy = is_legacy_platform(signals.platform)

    low_end = low_memory or low_cpu or slow_net or reduced_motion or legacy
    source = "auto"
    if override == "1":
        low_end, source = True, "forced_on"
    elif override == "0":
        low_end, source = False, "forced_off"

    return DeviceProfile(
        low_end=low_end,
        low_memory=low_memory,
        low_cpu=low_cpu,
        slow_net=slow_net,
        reduced_motion=reduced_motion,
        legacy_platform=legacy,
        has_realtime_media_support=signals.realtime_media,
        source=source,
        signals=signals,
    )


class DeviceProfileService:
    """Process-wide holder of the applied profile."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.profile: DeviceProfile | None = None
        self.flags: dict[str, bool] = {}
        self.style_classes: set[str] = set()
        self._broadcast = False

    @property
    def low_end(self) -> bool:
        return bool(self.profile and self.profile.low_end)

    def apply(self, profile: DeviceProfile) -> DeviceProfile:
        self.profile = profile
        self.flags = {
            "low_end": profile.low_end,
            "reduced_motion": profile.reduced_motion,
            "slow_net": profile.slow_net,
            "realtime_media": profile.has_realtime_media_support,
        }
        self.style_classes.difference_update({"low-end", "reduced-motion", "slow-net"})
        if profile.low_end:
            self.style_classes.add("low-end")
        if profile.reduced_motion:
            self.style_classes.add("reduced-motion")
        if profile.slow_net:
            self.style_classes.add("slow-net")
        if self._broadcast:
            return profile
        self._broadcast = True
        try:
            self._bus.emit(DEVICE_PROFILE_EVENT, profile)
        except Exception:
            logging.exception("DEVICE profile broadcast failed")
        logging.info(
            "DEVICE profile low_end=%s source=%s",
            profile.low_end,
            profile.source,
        )
        return profile
