from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol
from uuid import uuid4

from errors import InvalidJob, StorageFailure, UploadFailure
from events import UPLOAD_UX_EVENT, EventBus, UploadUxEvent
from observability import context, log_exc, record_upload, set_queue_depth
from queue_store import QueueStore, UploadJob
from transport import ProgressCallback, UploadResult

__all__ = [
    "ProcessReport",
    "TriggerSource",
    "UploadJob",
    "UploadQueue",
    "UploadScheduler",
]


class Uploader(Protocol):
    def validate(self, job: UploadJob) -> str: ...

    async def upload(
        self, job: UploadJob, *, on_progress: ProgressCallback | None = None
    ) -> UploadResult: ...


class TriggerSource(str, Enum):
    ONLINE = "online"
    FOCUS = "focus"
    VISIBLE = "visible"
    TIMER = "timer"
    STARTUP = "startup"
    ENQUEUED = "enqueued"


@dataclass(slots=True)
class ProcessReport:
    uploaded: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    failed: str | None = None
    error: str | None = None


class UploadQueue:
    """Durable queue of recordings; one upload in flight at a time."""

    def __init__(
        self,
        store: QueueStore,
        uploader: Uploader,
        bus: EventBus,
        *,
        label: str = "uploads",
    ) -> None:
        self.store = store
        self.uploader = uploader
        self.bus = bus
        self.label = label
        self._running = False
        self._reported_invalid: set[str] = set()

    @property
    def processing(self) -> bool:
        return self._running

    def emit_ux(self, state: str, **payload: object) -> None:
        self.bus.emit(UPLOAD_UX_EVENT, UploadUxEvent(state, dict(payload)))

    async def _update_depth(self) -> None:
        try:
            depth = len(await asyncio.to_thread(self.store.list_all, with_payload=False))
        except StorageFailure as exc:
            log_exc("queue_depth_metric", exc)
            return
        set_queue_depth(self.label, depth)

    async def enqueue(
        self,
        target_id: str,
        payload: bytes,
        *,
        filename: str | None = None,
        title: str | None = None,
        auth_token: str | None = None,
    ) -> UploadJob:
        job = UploadJob(
            id=uuid4().hex,
            target_id=target_id,
            payload=bytes(payload),
            enqueued_at=datetime.now(UTC),
            filename=filename,
            title=title,
            auth_token=auth_token,
        )
        await asyncio.to_thread(self.store.put, job)
        logging.info(
            "QUEUE enqueued %s target=%s size=%s", job.id, job.target_id, job.size
        )
        await self._update_depth()
        return job

    def iter_pending(self) -> Iterator[UploadJob]:
        """Yield pending jobs oldest first; each call starts from the head."""

        for job in self.store.list_all(with_payload=False):
            yield job

    def list_pending(self) -> list[UploadJob]:
        return list(self.iter_pending())

    async def remove(self, job_id: str) -> None:
        await asyncio.to_thread(self.store.delete, job_id)
        await self._update_depth()

    async def _next_job(self, attempted: set[str]) -> UploadJob | None:
        summaries = await asyncio.to_thread(self.store.list_all, with_payload=False)
        for summary in summaries:
            if summary.id in attempted:
                continue
            job = await asyncio.to_thread(self.store.get, summary.id)
            if job is not None:
                return job
        return None

    def _progress_callback(self) -> ProgressCallback:
        def _on_progress(percent: int) -> None:
            self.emit_ux("progress", percent=percent)

        return _on_progress

    async def process_all(self) -> ProcessReport | None:
        """Run one processing pass; returns ``None`` if a pass is already running.

        The pass stops at the first transport failure and leaves that job and
        everything behind it queued for the next trigger.
        """

        if self._running:
            logging.debug("QUEUE pass already running, skipping")
            return None
        self._running = True
        report = ProcessReport()
        try:
            attempted: set[str] = set()
            while True:
                job = await self._next_job(attempted)
                if job is None:
                    break
                attempted.add(job.id)
                with context(upload_id=job.id, target_id=job.target_id):
                    try:
                        await self._process_job(job)
                    except InvalidJob as exc:
                        report.invalid.append(job.id)
                        self._report_invalid(job, exc)
                        continue
                    except UploadFailure as exc:
                        report.failed = job.id
                        report.error = str(exc)
                        await asyncio.to_thread(self.store.mark_attempt, job.id, str(exc))
                        logging.warning("QUEUE pass stopped at %s: %s", job.id, exc)
                        self.emit_ux("error", text=f"Upload failed, will retry: {exc}")
                        break
                    report.uploaded.append(job.id)
        finally:
            self._running = False
            await self._update_depth()
        return report

    async def _process_job(self, job: UploadJob) -> None:
        # Invalid jobs are rejected before the HUD is shown.
        self.uploader.validate(job)
        title = job.title or job.filename or "Lesson recording"
        self.emit_ux("start", title=title, subtitle="Uploading...")
        try:
            await self.uploader.upload(job, on_progress=self._progress_callback())
        except InvalidJob:
            self.emit_ux("hide")
            raise
        await asyncio.to_thread(self.store.delete, job.id)
        logging.info("QUEUE job %s uploaded and removed", job.id)
        self.emit_ux("done", text="Recording uploaded")

    def _report_invalid(self, job: UploadJob, exc: InvalidJob) -> None:
        if job.id in self._reported_invalid:
            return
        self._reported_invalid.add(job.id)
        record_upload("invalid")
        logging.warning("QUEUE skipping invalid job %s: %s", job.id, exc.reason)
        self.emit_ux("error", text=f"Recording cannot be uploaded: {exc.reason}")


class UploadScheduler:
    """Collapses wake triggers into at most one processing pass."""

    def __init__(
        self,
        queue: UploadQueue,
        *,
        poll_interval: float = 15.0,
        initial_delay: float = 2.0,
    ) -> None:
        self.queue = queue
        self.poll_interval = poll_interval
        self.initial_delay = initial_delay
        self._running = False
        self._pass_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._timer_task = asyncio.create_task(self._timer_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._timer_task:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None
        if self._pass_task and not self._pass_task.done():
            self._pass_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pass_task
        self._pass_task = None

    async def _timer_loop(self) -> None:
        try:
            await asyncio.sleep(self.initial_delay)
            await self.run_pass(TriggerSource.STARTUP)
            while self._running:
                await asyncio.sleep(self.poll_interval)
                await self.run_pass(TriggerSource.TIMER)
        except asyncio.CancelledError:
            pass

    def wake(self, source: TriggerSource | str) -> asyncio.Task | None:
        """Start a background pass unless one is already in flight."""

        source = TriggerSource(source)
        if self.queue.processing or (self._pass_task and not self._pass_task.done()):
            logging.debug("QUEUE wake from %s ignored, pass in flight", source.value)
            return None
        self._pass_task = asyncio.create_task(self.run_pass(source))
        return self._pass_task

    async def run_pass(self, source: TriggerSource) -> ProcessReport | None:
        with context(trigger=source.value):
            try:
                report = await self.queue.process_all()
            except StorageFailure as exc:
                log_exc("QUEUE pass aborted by storage failure", exc)
                self.queue.emit_ux("error", text="Upload queue unavailable")
                return None
            if report is not None and (report.uploaded or report.failed):
                logging.info(
                    "QUEUE pass via %s uploaded=%s failed=%s",
                    source.value,
                    len(report.uploaded),
                    report.failed,
                )
            return report
