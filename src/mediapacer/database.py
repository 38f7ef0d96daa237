"""SQLite database layer for upload queues.

Manages schema initialization, WAL mode pragmas, queue creation, status
queries, the cross-process pause flag, and the activity log.  The async
orchestration store (:mod:`mediapacer.upload.state`) shares this schema.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from mediapacer.models import ItemStatus, ProgressLedger, QueueItem, QueueStatus

logger = logging.getLogger(__name__)


class QueueNotFoundError(Exception):
    """Raised when a queue id or name does not exist in the database."""


SCHEMA_SQL = """
-- Queues (aggregate status lives here)
CREATE TABLE IF NOT EXISTS queues (
    queue_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'ready'
        CHECK(status IN ('ready', 'uploading', 'paused', 'error', 'completed')),
    pause_requested INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    completed_at TEXT
);

-- Items, processed strictly in position order
CREATE TABLE IF NOT EXISTS items (
    item_id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'uploading', 'uploaded', 'archiving', 'completed', 'failed')),
    remote_handle TEXT,
    last_error TEXT,
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    UNIQUE(queue_id, position),
    FOREIGN KEY (queue_id) REFERENCES queues(queue_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_items_queue ON items(queue_id, position);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);

-- Resume ledger, one row per queue
CREATE TABLE IF NOT EXISTS progress_ledgers (
    queue_id INTEGER PRIMARY KEY,
    current_index INTEGER NOT NULL DEFAULT 0,
    total INTEGER NOT NULL DEFAULT 0,
    consecutive_auto_retries INTEGER NOT NULL DEFAULT 0,
    resume_index INTEGER,
    is_paused INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    FOREIGN KEY (queue_id) REFERENCES queues(queue_id) ON DELETE CASCADE
);

-- Account-wide gates (cooldown / lockout), epoch seconds
CREATE TABLE IF NOT EXISTS account_gates (
    gate TEXT PRIMARY KEY,
    until_ts REAL NOT NULL
);

-- Single worker per queue
CREATE TABLE IF NOT EXISTS run_locks (
    queue_id INTEGER PRIMARY KEY,
    instance_id TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    last_heartbeat REAL NOT NULL
);

-- Activity log: item status transitions and orchestration events
CREATE TABLE IF NOT EXISTS _activity_log (
    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_id INTEGER,
    item_id INTEGER,
    event TEXT NOT NULL,
    old_status TEXT,
    new_status TEXT,
    details TEXT,
    timestamp TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_activity_queue ON _activity_log(queue_id);

-- Auto-log item status transitions
CREATE TRIGGER IF NOT EXISTS log_item_status_change
    AFTER UPDATE OF status ON items
    FOR EACH ROW
    WHEN OLD.status != NEW.status
    BEGIN
        INSERT INTO _activity_log(queue_id, item_id, event, old_status, new_status, details)
        VALUES (NEW.queue_id, NEW.item_id, 'item_status', OLD.status, NEW.status, NEW.last_error);
    END;
"""


def row_to_item(row: sqlite3.Row) -> QueueItem:
    """Build a :class:`QueueItem` from an ``items`` row."""
    return QueueItem(
        id=row["item_id"],
        queue_id=row["queue_id"],
        position=row["position"],
        payload=row["payload"],
        status=ItemStatus(row["status"]),
        remote_handle=row["remote_handle"],
        last_error=row["last_error"],
    )


def row_to_ledger(row: sqlite3.Row) -> ProgressLedger:
    """Build a :class:`ProgressLedger` from a ``progress_ledgers`` row."""
    return ProgressLedger(
        current_index=row["current_index"],
        total=row["total"],
        consecutive_auto_retries=row["consecutive_auto_retries"],
        resume_index=row["resume_index"],
        is_paused=bool(row["is_paused"]),
    )


class Database:
    """SQLite database wrapper for upload queues.

    Usage:
        with Database("data/mediapacer.db") as db:
            queue_id = db.create_queue("spring-set", ["a.jpg", "b.jpg"])
            items = db.get_items(queue_id)
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = sqlite3.connect(
            self.db_path,
            autocommit=sqlite3.LEGACY_TRANSACTION_CONTROL,
        )
        self.conn.row_factory = sqlite3.Row
        self._setup_pragmas()
        self._setup_schema()

    def _setup_pragmas(self) -> None:
        """Configure SQLite pragmas for performance and reliability."""
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

        result = self.conn.execute("PRAGMA journal_mode").fetchone()[0]
        if result != "wal":
            logger.warning("WAL mode not enabled, got: %s", result)

    def _setup_schema(self) -> None:
        """Create tables, indexes, and triggers if they don't exist."""
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("PRAGMA user_version = 1")

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def create_queue(self, name: str, payloads: list[str]) -> int:
        """Create a queue with one pending item per payload, in order.

        Raises:
            ValueError: If a queue with *name* already exists.
        """
        try:
            with self.conn:
                cursor = self.conn.execute(
                    "INSERT INTO queues (name) VALUES (?)", (name,)
                )
                queue_id = cursor.lastrowid
                self.conn.executemany(
                    "INSERT INTO items (queue_id, position, payload) VALUES (?, ?, ?)",
                    [(queue_id, pos, payload) for pos, payload in enumerate(payloads)],
                )
                self.conn.execute(
                    "INSERT INTO progress_ledgers (queue_id, total) VALUES (?, ?)",
                    (queue_id, len(payloads)),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Queue {name!r} already exists") from exc

        logger.info("Created queue %s (%d items)", name, len(payloads))
        return queue_id  # type: ignore[return-value]

    def append_items(self, queue_id: int, payloads: list[str]) -> int:
        """Append payloads to the end of an existing queue.

        Returns:
            Number of items appended.
        """
        self.get_queue(queue_id)
        row = self.conn.execute(
            "SELECT COALESCE(MAX(position), -1) AS last FROM items WHERE queue_id = ?",
            (queue_id,),
        ).fetchone()
        start = row["last"] + 1
        with self.conn:
            self.conn.executemany(
                "INSERT INTO items (queue_id, position, payload) VALUES (?, ?, ?)",
                [(queue_id, start + i, p) for i, p in enumerate(payloads)],
            )
            self.conn.execute(
                "UPDATE progress_ledgers SET total = total + ? WHERE queue_id = ?",
                (len(payloads), queue_id),
            )
        return len(payloads)

    def get_queue(self, queue: int | str) -> sqlite3.Row:
        """Return the queue row for an id or a name.

        Raises:
            QueueNotFoundError: If no such queue exists.
        """
        if isinstance(queue, int) or str(queue).isdigit():
            row = self.conn.execute(
                "SELECT * FROM queues WHERE queue_id = ?", (int(queue),)
            ).fetchone()
        else:
            row = self.conn.execute(
                "SELECT * FROM queues WHERE name = ?", (queue,)
            ).fetchone()
        if row is None:
            raise QueueNotFoundError(f"Queue not found: {queue}")
        return row

    def list_queues(self) -> list[sqlite3.Row]:
        """Return every queue with completed/total item counts."""
        cursor = self.conn.execute(
            """SELECT q.queue_id, q.name, q.status, q.created_at, q.completed_at,
                      COUNT(i.item_id) AS total,
                      SUM(CASE WHEN i.status = 'completed' THEN 1 ELSE 0 END) AS completed
               FROM queues q
               LEFT JOIN items i ON i.queue_id = q.queue_id
               GROUP BY q.queue_id
               ORDER BY q.queue_id"""
        )
        return cursor.fetchall()

    def get_items(self, queue_id: int) -> list[QueueItem]:
        """Return the queue's items in stable position order."""
        cursor = self.conn.execute(
            "SELECT * FROM items WHERE queue_id = ? ORDER BY position", (queue_id,)
        )
        return [row_to_item(row) for row in cursor.fetchall()]

    def get_status_counts(self, queue_id: int) -> dict[str, int]:
        """Return item counts grouped by status."""
        cursor = self.conn.execute(
            "SELECT status, COUNT(*) as count FROM items WHERE queue_id = ? GROUP BY status",
            (queue_id,),
        )
        return {row["status"]: row["count"] for row in cursor.fetchall()}

    def get_ledger(self, queue_id: int) -> ProgressLedger | None:
        """Return the persisted resume ledger, if any."""
        row = self.conn.execute(
            "SELECT * FROM progress_ledgers WHERE queue_id = ?", (queue_id,)
        ).fetchone()
        return row_to_ledger(row) if row else None

    def set_queue_status(self, queue_id: int, status: QueueStatus) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE queues SET status = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f', 'now') "
                "WHERE queue_id = ?",
                (status.value, queue_id),
            )

    # ------------------------------------------------------------------
    # Pause flag (observed by a running orchestrator at its checkpoints)
    # ------------------------------------------------------------------

    def request_pause(self, queue_id: int) -> None:
        """Ask a running orchestrator (possibly in another process) to pause."""
        with self.conn:
            self.conn.execute(
                "UPDATE queues SET pause_requested = 1 WHERE queue_id = ?", (queue_id,)
            )
        logger.info("Pause requested for queue %d", queue_id)

    def is_locked(self, queue_id: int) -> bool:
        """True if a run lock is currently held for the queue."""
        row = self.conn.execute(
            "SELECT 1 FROM run_locks WHERE queue_id = ?", (queue_id,)
        ).fetchone()
        return row is not None

    def release_lock(self, queue_id: int) -> None:
        """Forcefully drop a run lock left behind by a crashed process."""
        with self.conn:
            self.conn.execute("DELETE FROM run_locks WHERE queue_id = ?", (queue_id,))
        logger.warning("Run lock for queue %d released manually", queue_id)

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def get_activity(self, queue_id: int, limit: int = 50) -> list[sqlite3.Row]:
        """Return the newest activity log entries for a queue, newest first."""
        cursor = self.conn.execute(
            """SELECT a.timestamp, a.event, a.old_status, a.new_status, a.details,
                      i.position
               FROM _activity_log a
               LEFT JOIN items i ON i.item_id = a.item_id
               WHERE a.queue_id = ?
               ORDER BY a.log_id DESC
               LIMIT ?""",
            (queue_id, limit),
        )
        return cursor.fetchall()

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
