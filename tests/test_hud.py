import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from events import UPLOAD_UX_EVENT, EventBus, UploadUxEvent
from hud import UploadHud


def _emit(bus: EventBus, state: str, **payload) -> None:
    bus.emit(UPLOAD_UX_EVENT, UploadUxEvent(state, payload))


@pytest.mark.asyncio
async def test_upload_lifecycle_ends_hidden():
    bus = EventBus()
    hud = UploadHud.install(bus, done_hide_delay=0.05, renderer=None)
    frames = []
    hud.add_renderer(frames.append)

    _emit(bus, "start", title="Lesson", subtitle="Uploading...")
    _emit(bus, "progress", percent=40)
    _emit(bus, "progress", percent=85)
    _emit(bus, "done", text="Recording uploaded")

    assert [frame.percent for frame in frames] == [0, 40, 85, 100]
    assert hud.snapshot().mode == "done"
    assert hud.snapshot().visible is True

    await asyncio.sleep(0.1)
    assert hud.snapshot().visible is False


@pytest.mark.asyncio
async def test_progress_never_goes_backward():
    hud = UploadHud.install(EventBus(), renderer=None)
    hud.start("Lesson")
    hud.progress(60)
    hud.progress(30)
    hud.progress("150")
    assert hud.snapshot().percent == 100
    hud.start("Next")
    assert hud.snapshot().percent == 0


@pytest.mark.asyncio
async def test_error_hides_after_its_own_delay():
    hud = UploadHud.install(EventBus(), done_hide_delay=5, error_hide_delay=0.05, renderer=None)
    hud.start("Lesson")
    hud.error("Upload failed")
    assert hud.snapshot().mode == "error"
    await asyncio.sleep(0.1)
    assert hud.snapshot().visible is False


@pytest.mark.asyncio
async def test_new_upload_cancels_pending_hide():
    hud = UploadHud.install(EventBus(), done_hide_delay=0.05, renderer=None)
    hud.start("First")
    hud.done()
    hud.start("Second")
    await asyncio.sleep(0.1)
    assert hud.snapshot().visible is True
    assert hud.snapshot().title == "Second"


def test_install_returns_single_instance():
    bus = EventBus()
    first = UploadHud.install(bus, renderer=None)
    second = UploadHud.install(bus, renderer=None)
    assert first is second
    assert bus.listener_count(UPLOAD_UX_EVENT) == 1


def test_hide_event_without_loop():
    bus = EventBus()
    hud = UploadHud.install(bus, renderer=None)
    _emit(bus, "start", title="Lesson")
    _emit(bus, "hide")
    assert hud.snapshot().visible is False


def test_unknown_state_is_rejected():
    with pytest.raises(ValueError):
        UploadUxEvent("paused")
