"""Small JSON-file records that must survive restarts."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from errors import StorageFailure

OVERRIDE_VALUES = ("1", "0")


class _JsonRecord:
    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    @property
    def path(self) -> Path:
        return self._storage_path

    def _read(self) -> dict[str, Any]:
        if not self._storage_path.exists():
            return {}
        try:
            data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageFailure(f"cannot read {self._storage_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageFailure(f"corrupted record {self._storage_path}: expected object at root")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._storage_path.write_text(
                json.dumps(data, separators=(",", ":"), ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise StorageFailure(f"cannot write {self._storage_path}: {exc}") from exc

    def _delete(self) -> None:
        try:
            self._storage_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"cannot delete {self._storage_path}: {exc}") from exc


class ProfileOverrideStore(_JsonRecord):
    """Persisted low-end override: ``"1"`` forces on, ``"0"`` forces off."""

    def get(self) -> str | None:
        value = self._read().get("low_end")
        if value in OVERRIDE_VALUES:
            return value
        return None

    def set(self, value: str | None) -> None:
        if value is None:
            self._delete()
            return
        if value not in OVERRIDE_VALUES:
            raise ValueError(f"override must be one of {OVERRIDE_VALUES} or None")
        self._write({"low_end": value})


class PendingCallStore(_JsonRecord):
    """Accepted call handed over to the view the user is sent to.

    Records older than ``ttl`` seconds are treated as absent.
    """

    def __init__(self, storage_path: Path, *, ttl: float = 60.0) -> None:
        super().__init__(storage_path)
        self.ttl = ttl

    def save(self, record: dict[str, Any]) -> dict[str, Any]:
        data = dict(record)
        data["saved_at"] = time.time()
        self._write(data)
        return data

    def load(self) -> dict[str, Any] | None:
        data = self._read()
        if not data:
            return None
        saved_at = data.get("saved_at")
        if not isinstance(saved_at, (int, float)):
            return None
        if time.time() - saved_at > self.ttl:
            return None
        return data

    def consume(self) -> dict[str, Any] | None:
        data = self.load()
        self._delete()
        return data
