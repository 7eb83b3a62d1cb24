"""Inspect or seed the durable upload queue from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from collections.abc import Sequence
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from errors import StorageFailure
from events import EventBus
from queue_store import SqliteQueueStore
from upload_queue import UploadQueue

DEFAULT_DB_FALLBACK = "data/uploader.db"


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage queued lesson recordings.")
    parser.add_argument(
        "--db-path",
        help="Path to the queue database. Defaults to UPLOADER_DB_PATH env or data/uploader.db.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    enqueue = commands.add_parser("enqueue", help="Queue a recording file for upload.")
    enqueue.add_argument("target_id", help="Server-side target the recording belongs to.")
    enqueue.add_argument("file", help="Recording file to queue.")
    enqueue.add_argument("--title", help="Display title shown while uploading.")
    enqueue.add_argument("--token", help="Bearer token stored with the job.")

    commands.add_parser("list", help="Print pending jobs as JSON lines.")

    remove = commands.add_parser("remove", help="Drop a pending job by id.")
    remove.add_argument("job_id")
    return parser.parse_args(list(argv) if argv is not None else None)


def _resolve_db_path(candidate: str | None) -> str:
    if candidate:
        return candidate
    env_value = os.getenv("UPLOADER_DB_PATH")
    if env_value:
        return env_value
    return DEFAULT_DB_FALLBACK


async def run(args: argparse.Namespace, queue: UploadQueue) -> int:
    if args.command == "enqueue":
        path = Path(args.file).expanduser()
        try:
            payload = path.read_bytes()
        except OSError as exc:
            print(f"Cannot read {path}: {exc}")
            return 1
        job = await queue.enqueue(
            args.target_id,
            payload,
            filename=path.name,
            title=args.title,
            auth_token=args.token,
        )
        print(job.id)
        return 0
    if args.command == "list":
        for job in queue.list_pending():
            print(json.dumps(job.describe(), ensure_ascii=False))
        return 0
    await queue.remove(args.job_id)
    print(f"Removed {args.job_id}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    db_path = _resolve_db_path(args.db_path)
    try:
        store = SqliteQueueStore.open(db_path)
    except StorageFailure as exc:
        print(f"Failed to open queue at {db_path}: {exc}")
        return 1
    try:
        return asyncio.run(run(args, UploadQueue(store, uploader=None, bus=EventBus())))
    except StorageFailure as exc:
        print(f"Queue operation failed: {exc}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
