from __future__ import annotations

import sqlite3


def run(conn: sqlite3.Connection) -> None:
    """Create the durable upload queue table."""

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS upload_queue (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            target_id TEXT NOT NULL,
            payload BLOB NOT NULL,
            filename TEXT,
            title TEXT,
            auth_token TEXT,
            enqueued_at TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_upload_queue_order ON upload_queue(enqueued_at, seq)"
    )
