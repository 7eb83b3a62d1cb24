from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout, FormData

from errors import InvalidJob, NetworkFailure, ServerRejected, UploadTimeout
from observability import context, record_upload
from queue_store import UploadJob

ProgressCallback = Callable[[int], None]
CredentialProvider = Callable[[], "str | None"]

DEFAULT_UPLOAD_TIMEOUT = 20 * 60.0
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(slots=True)
class UploadResult:
    status: int
    body: Any = None
    elapsed: float = 0.0


def _default_filename(job: UploadJob) -> str:
    return job.filename or f"recording-{job.id}.webm"


def _content_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    if filename.lower().endswith(".webm"):
        return "video/webm"
    return "application/octet-stream"


class UploadTransport:
    """Delivers one queued recording to the platform as a multipart POST."""

    def __init__(
        self,
        base_url: str,
        *,
        session: ClientSession | None = None,
        credential_provider: CredentialProvider | None = None,
        path_template: str = "/api/lessons/{target_id}/recording",
        field_name: str = "video",
        timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session
        self._credential_provider = credential_provider
        self.path_template = path_template
        self.field_name = field_name
        self.timeout = timeout
        self.chunk_size = max(1, chunk_size)

    def url_for(self, target_id: str) -> str:
        return self.base_url + self.path_template.format(target_id=target_id)

    def current_credential(self) -> str | None:
        if self._credential_provider is None:
            return None
        try:
            return self._credential_provider() or None
        except Exception:
            logging.exception("UPLOAD credential provider failed")
            return None

    def resolve_credential(self, job: UploadJob) -> str | None:
        return self.current_credential() or job.auth_token

    def validate(self, job: UploadJob) -> str:
        """Raise ``InvalidJob`` for jobs that can never be sent; returns the target id."""

        if not job.payload:
            raise InvalidJob(job.id, "empty payload")
        target_id = (job.target_id or "").strip()
        if not target_id:
            raise InvalidJob(job.id, "missing target id")
        return target_id

    async def _iter_payload(
        self,
        payload: bytes,
        on_progress: ProgressCallback | None,
    ) -> AsyncIterator[bytes]:
        total = len(payload)
        sent = 0
        last_percent = -1
        view = memoryview(payload)
        while sent < total:
            chunk = bytes(view[sent : sent + self.chunk_size])
            yield chunk
            sent += len(chunk)
            if on_progress is None or not total:
                continue
            percent = min(100, int(sent * 100 / total))
            if percent != last_percent:
                last_percent = percent
                try:
                    on_progress(percent)
                except Exception:
                    logging.exception("UPLOAD progress callback failed")

    def _build_form(
        self,
        job: UploadJob,
        on_progress: ProgressCallback | None,
    ) -> FormData:
        filename = _default_filename(job)
        form = FormData()
        form.add_field(
            self.field_name,
            self._iter_payload(job.payload, on_progress),
            filename=filename,
            content_type=_content_type(filename),
        )
        if job.title:
            form.add_field("title", job.title)
        return form

    async def upload(
        self,
        job: UploadJob,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        target_id = self.validate(job)
        if self.session is None:
            raise RuntimeError("UploadTransport has no client session")

        url = self.url_for(target_id)
        headers: dict[str, str] = {}
        credential = self.resolve_credential(job)
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        with context(upload_id=job.id, target_id=target_id):
            logging.info("UPLOAD start url=%s size=%s", url, job.size)
            started = time.perf_counter()
            try:
                async with self.session.post(
                    url,
                    data=self._build_form(job, on_progress),
                    headers=headers,
                    timeout=ClientTimeout(total=self.timeout),
                ) as resp:
                    text = await resp.text()
                    status = resp.status
            except asyncio.TimeoutError as exc:
                record_upload("timeout")
                logging.warning("UPLOAD timed out after %.0fs", self.timeout)
                raise UploadTimeout(f"upload timed out after {self.timeout:.0f}s") from exc
            except aiohttp.ClientError as exc:
                record_upload("network")
                logging.warning("UPLOAD network failure: %s", exc)
                raise NetworkFailure(str(exc) or type(exc).__name__) from exc

            elapsed = time.perf_counter() - started
            if not 200 <= status < 300:
                record_upload("rejected")
                logging.warning("UPLOAD rejected HTTP %s: %s", status, text[:200])
                raise ServerRejected(status, text)

            try:
                body: Any = json.loads(text) if text else None
            except json.JSONDecodeError:
                body = text
            record_upload("success", size=job.size, duration=elapsed)
            logging.info("UPLOAD done HTTP %s in %.3f seconds", status, elapsed)
            return UploadResult(status=status, body=body, elapsed=elapsed)
