from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from errors import StorageFailure

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True, slots=True)
class UploadJob:
    id: str
    target_id: str
    payload: bytes
    enqueued_at: datetime
    filename: str | None = None
    title: str | None = None
    auth_token: str | None = None
    attempts: int = 0
    last_error: str | None = None
    size: int = -1

    def __post_init__(self) -> None:
        if self.size < 0:
            object.__setattr__(self, "size", len(self.payload))

    def describe(self) -> dict[str, Any]:
        """Metadata view without the payload or the credential."""

        return {
            "id": self.id,
            "target_id": self.target_id,
            "filename": self.filename,
            "title": self.title,
            "size": self.size,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


class QueueStore(Protocol):
    def get(self, job_id: str) -> UploadJob | None: ...

    def put(self, job: UploadJob) -> None: ...

    def delete(self, job_id: str) -> None: ...

    def list_all(self, *, with_payload: bool = True) -> list[UploadJob]: ...

    def mark_attempt(self, job_id: str, error: str | None) -> None: ...


def _sort_key(job: UploadJob) -> datetime:
    return job.enqueued_at


class MemoryQueueStore:
    """Dictionary-backed store; ordering ties fall back to insertion order."""

    def __init__(self) -> None:
        self._jobs: dict[str, UploadJob] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> UploadJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def put(self, job: UploadJob) -> None:
        with self._lock:
            self._jobs[job.id] = job

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def list_all(self, *, with_payload: bool = True) -> list[UploadJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=_sort_key)
        if with_payload:
            return jobs
        return [replace(job, payload=b"", size=job.size) for job in jobs]

    def mark_attempt(self, job_id: str, error: str | None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            self._jobs[job_id] = replace(job, attempts=job.attempts + 1, last_error=error)


def apply_migrations(conn: sqlite3.Connection) -> None:
    """Apply migrations stored in the migrations directory."""

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {row[0] for row in conn.execute("SELECT id FROM schema_migrations")}
    migration_files = sorted(
        p for p in MIGRATIONS_DIR.iterdir() if p.suffix == ".py" and p.stem[:1].isdigit()
    )
    for path in migration_files:
        migration_id = path.stem
        if migration_id in applied:
            continue
        logging.info("QUEUE applying migration %s", migration_id)
        with conn:
            namespace: dict[str, Any] = {}
            exec(path.read_text(encoding="utf-8"), namespace)
            runner = namespace.get("run")
            if not callable(runner):
                raise ValueError(f"Migration {migration_id} missing run()")
            runner(conn)
            conn.execute(
                "INSERT INTO schema_migrations (id, applied_at) VALUES (?, ?)",
                (migration_id, datetime.now(UTC).isoformat()),
            )


class SqliteQueueStore:
    """Upload queue persisted in SQLite; every write is committed before returning.

    Calls may come from worker threads (the queue runs them through
    ``asyncio.to_thread``), so the connection is opened with
    ``check_same_thread=False`` and every statement holds ``_lock``.
    """

    _COLUMNS = "id, target_id, filename, title, auth_token, enqueued_at, attempts, last_error"

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.conn = connection
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        try:
            apply_migrations(self.conn)
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot prepare upload queue: {exc}") from exc

    @classmethod
    def open(cls, path: Path | str) -> "SqliteQueueStore":
        db_path = Path(path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot open upload queue at {db_path}: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _row_to_job(self, row: sqlite3.Row, *, with_payload: bool) -> UploadJob:
        keys = row.keys()
        payload = bytes(row["payload"]) if with_payload and "payload" in keys else b""
        size = int(row["size"]) if "size" in keys else len(payload)
        return UploadJob(
            id=row["id"],
            target_id=row["target_id"],
            payload=payload,
            enqueued_at=datetime.fromisoformat(row["enqueued_at"]),
            filename=row["filename"],
            title=row["title"],
            auth_token=row["auth_token"],
            attempts=int(row["attempts"] or 0),
            last_error=row["last_error"],
            size=size,
        )

    def get(self, job_id: str) -> UploadJob | None:
        try:
            with self._lock:
                row = self.conn.execute(
                    f"SELECT {self._COLUMNS}, payload, LENGTH(payload) AS size "
                    "FROM upload_queue WHERE id=?",
                    (job_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot read job {job_id}: {exc}") from exc
        if row is None:
            return None
        return self._row_to_job(row, with_payload=True)

    def put(self, job: UploadJob) -> None:
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    """
                    INSERT INTO upload_queue
                        (id, target_id, payload, filename, title, auth_token,
                         enqueued_at, attempts, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        target_id=excluded.target_id,
                        payload=excluded.payload,
                        filename=excluded.filename,
                        title=excluded.title,
                        auth_token=excluded.auth_token,
                        attempts=excluded.attempts,
                        last_error=excluded.last_error
                    """,
                    (
                        job.id,
                        job.target_id,
                        sqlite3.Binary(job.payload),
                        job.filename,
                        job.title,
                        job.auth_token,
                        job.enqueued_at.isoformat(timespec="microseconds"),
                        job.attempts,
                        job.last_error,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot persist job {job.id}: {exc}") from exc

    def delete(self, job_id: str) -> None:
        try:
            with self._lock, self.conn:
                self.conn.execute("DELETE FROM upload_queue WHERE id=?", (job_id,))
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot delete job {job_id}: {exc}") from exc

    def list_all(self, *, with_payload: bool = True) -> list[UploadJob]:
        payload_column = "payload, " if with_payload else ""
        try:
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT {self._COLUMNS}, {payload_column}LENGTH(payload) AS size "
                    "FROM upload_queue ORDER BY enqueued_at, seq"
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot list upload queue: {exc}") from exc
        return [self._row_to_job(row, with_payload=with_payload) for row in rows]

    def mark_attempt(self, job_id: str, error: str | None) -> None:
        try:
            with self._lock, self.conn:
                self.conn.execute(
                    "UPDATE upload_queue SET attempts=attempts + 1, last_error=? WHERE id=?",
                    (error, job_id),
                )
        except sqlite3.Error as exc:
            raise StorageFailure(f"cannot update job {job_id}: {exc}") from exc
