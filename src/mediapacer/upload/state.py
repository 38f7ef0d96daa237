"""Async SQLite store for the orchestration loop.

Wraps aiosqlite to give the orchestrator the queue-owner capabilities it
needs: ordered item enumeration, item status/handle/error updates, the
queue's aggregate status, the resume ledger, the cross-process pause flag,
account-wide gates, and a per-queue single-worker lock.

Each write method commits immediately -- no transaction is held across an
``await`` on a remote call.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Protocol

import aiosqlite

from mediapacer.database import SCHEMA_SQL
from mediapacer.models import ItemStatus, ProgressLedger, QueueItem, QueueStatus

logger = logging.getLogger(__name__)

_UNSET: object = object()


class QueueStore(Protocol):
    """Capabilities the orchestrator needs from the queue owner."""

    async def list_items(self, queue_id: int) -> list[QueueItem]: ...

    async def get_interrupted_items(self, queue_id: int) -> list[QueueItem]: ...

    async def update_item(
        self,
        item_id: int,
        status: ItemStatus,
        *,
        remote_handle: object = _UNSET,
        last_error: object = _UNSET,
    ) -> None: ...

    async def replace_payload(self, item_id: int, payload: str) -> None: ...

    async def set_queue_status(self, queue_id: int, status: QueueStatus) -> None: ...

    async def load_ledger(self, queue_id: int) -> ProgressLedger | None: ...

    async def save_ledger(self, queue_id: int, ledger: ProgressLedger) -> None: ...

    async def is_pause_requested(self, queue_id: int) -> bool: ...

    async def clear_pause_request(self, queue_id: int) -> None: ...

    async def get_gate(self, gate: str) -> float | None: ...

    async def set_gate(self, gate: str, until_ts: float) -> None: ...

    async def log_event(
        self, queue_id: int, event: str, details: str | None = None, item_id: int | None = None
    ) -> None: ...

    async def acquire_lock(
        self, queue_id: int, instance_id: str, stale_after: float = 600
    ) -> bool: ...

    async def release_lock(self, queue_id: int, instance_id: str) -> None: ...

    async def update_heartbeat(self, queue_id: int, instance_id: str) -> None: ...


class AsyncQueueStore:
    """aiosqlite implementation of :class:`QueueStore`.

    Usage::

        async with AsyncQueueStore("data/mediapacer.db") as store:
            items = await store.list_items(queue_id)
            await store.update_item(items[0].id, ItemStatus.UPLOADING)
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open an aiosqlite connection with WAL mode and foreign keys."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> AsyncQueueStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def list_items(self, queue_id: int) -> list[QueueItem]:
        """Return the queue's items ordered by position."""
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT item_id, queue_id, position, payload, status,
                      remote_handle, last_error
               FROM items
               WHERE queue_id = ?
               ORDER BY position""",
            (queue_id,),
        )
        rows = await cursor.fetchall()
        return [
            QueueItem(
                id=row["item_id"],
                queue_id=row["queue_id"],
                position=row["position"],
                payload=row["payload"],
                status=ItemStatus(row["status"]),
                remote_handle=row["remote_handle"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    async def get_interrupted_items(self, queue_id: int) -> list[QueueItem]:
        """Return items left mid-call by a crash (``uploading`` / ``archiving``)."""
        items = await self.list_items(queue_id)
        return [
            item
            for item in items
            if item.status in (ItemStatus.UPLOADING, ItemStatus.ARCHIVING)
        ]

    async def update_item(
        self,
        item_id: int,
        status: ItemStatus,
        *,
        remote_handle: object = _UNSET,
        last_error: object = _UNSET,
    ) -> None:
        """Update an item's status and, when given, its handle and last error.

        Pass ``None`` explicitly to clear ``remote_handle`` or ``last_error``;
        omit them to leave the stored values untouched.
        """
        db = self._ensure_connected()
        assignments = ["status = ?", "updated_at = ?"]
        params: list[object] = [status.value, self._now_iso()]
        if remote_handle is not _UNSET:
            assignments.append("remote_handle = ?")
            params.append(remote_handle)
        if last_error is not _UNSET:
            assignments.append("last_error = ?")
            params.append(last_error)
        params.append(item_id)

        await db.execute(
            f"UPDATE items SET {', '.join(assignments)} WHERE item_id = ?",
            params,
        )
        await db.commit()
        logger.debug("Item %d -> %s", item_id, status.value)

    async def replace_payload(self, item_id: int, payload: str) -> None:
        """Swap in a new payload and reset the item for a fresh upload."""
        db = self._ensure_connected()
        await db.execute(
            """UPDATE items
               SET payload = ?, remote_handle = NULL, last_error = NULL,
                   status = 'pending', updated_at = ?
               WHERE item_id = ?""",
            (payload, self._now_iso(), item_id),
        )
        await db.commit()
        logger.info("Replaced payload of item %d", item_id)

    # ------------------------------------------------------------------
    # Queue aggregate status
    # ------------------------------------------------------------------

    async def set_queue_status(self, queue_id: int, status: QueueStatus) -> None:
        db = self._ensure_connected()
        now = self._now_iso()
        if status == QueueStatus.COMPLETED:
            await db.execute(
                "UPDATE queues SET status = ?, updated_at = ?, completed_at = ? WHERE queue_id = ?",
                (status.value, now, now, queue_id),
            )
        else:
            await db.execute(
                "UPDATE queues SET status = ?, updated_at = ? WHERE queue_id = ?",
                (status.value, now, queue_id),
            )
        await db.commit()

    # ------------------------------------------------------------------
    # Resume ledger
    # ------------------------------------------------------------------

    async def load_ledger(self, queue_id: int) -> ProgressLedger | None:
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT current_index, total, consecutive_auto_retries,
                      resume_index, is_paused
               FROM progress_ledgers WHERE queue_id = ?""",
            (queue_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return ProgressLedger(
            current_index=row["current_index"],
            total=row["total"],
            consecutive_auto_retries=row["consecutive_auto_retries"],
            resume_index=row["resume_index"],
            is_paused=bool(row["is_paused"]),
        )

    async def save_ledger(self, queue_id: int, ledger: ProgressLedger) -> None:
        db = self._ensure_connected()
        await db.execute(
            """INSERT INTO progress_ledgers
                   (queue_id, current_index, total, consecutive_auto_retries,
                    resume_index, is_paused, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(queue_id) DO UPDATE SET
                   current_index = excluded.current_index,
                   total = excluded.total,
                   consecutive_auto_retries = excluded.consecutive_auto_retries,
                   resume_index = excluded.resume_index,
                   is_paused = excluded.is_paused,
                   updated_at = excluded.updated_at""",
            (
                queue_id,
                ledger.current_index,
                ledger.total,
                ledger.consecutive_auto_retries,
                ledger.resume_index,
                int(ledger.is_paused),
                self._now_iso(),
            ),
        )
        await db.commit()

    # ------------------------------------------------------------------
    # Pause flag
    # ------------------------------------------------------------------

    async def is_pause_requested(self, queue_id: int) -> bool:
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT pause_requested FROM queues WHERE queue_id = ?", (queue_id,)
        )
        row = await cursor.fetchone()
        return bool(row and row["pause_requested"])

    async def clear_pause_request(self, queue_id: int) -> None:
        db = self._ensure_connected()
        await db.execute(
            "UPDATE queues SET pause_requested = 0 WHERE queue_id = ?", (queue_id,)
        )
        await db.commit()

    # ------------------------------------------------------------------
    # Account-wide gates
    # ------------------------------------------------------------------

    async def get_gate(self, gate: str) -> float | None:
        """Return the epoch timestamp a gate is closed until, if set."""
        db = self._ensure_connected()
        cursor = await db.execute(
            "SELECT until_ts FROM account_gates WHERE gate = ?", (gate,)
        )
        row = await cursor.fetchone()
        return float(row["until_ts"]) if row else None

    async def set_gate(self, gate: str, until_ts: float) -> None:
        db = self._ensure_connected()
        await db.execute(
            """INSERT INTO account_gates (gate, until_ts) VALUES (?, ?)
               ON CONFLICT(gate) DO UPDATE SET until_ts = excluded.until_ts""",
            (gate, until_ts),
        )
        await db.commit()

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    async def log_event(
        self,
        queue_id: int,
        event: str,
        details: str | None = None,
        item_id: int | None = None,
    ) -> None:
        """Append an orchestration event (halt, pause, escalation, ...) to the log."""
        db = self._ensure_connected()
        await db.execute(
            "INSERT INTO _activity_log (queue_id, item_id, event, details) VALUES (?, ?, ?, ?)",
            (queue_id, item_id, event, details),
        )
        await db.commit()

    # ------------------------------------------------------------------
    # Single-worker lock
    # ------------------------------------------------------------------

    async def acquire_lock(
        self, queue_id: int, instance_id: str, stale_after: float = 600
    ) -> bool:
        """Acquire the per-queue run lock.

        A lock whose heartbeat is older than *stale_after* seconds is treated
        as abandoned by a crashed process and taken over.

        Returns:
            True if the lock was acquired.
        """
        db = self._ensure_connected()
        now = time.time()
        await db.execute(
            "DELETE FROM run_locks WHERE queue_id = ? AND last_heartbeat < ?",
            (queue_id, now - stale_after),
        )
        try:
            await db.execute(
                """INSERT INTO run_locks (queue_id, instance_id, acquired_at, last_heartbeat)
                   VALUES (?, ?, ?, ?)""",
                (queue_id, instance_id, self._now_iso(), now),
            )
            await db.commit()
        except aiosqlite.IntegrityError:
            await db.rollback()
            logger.error("Queue %d is locked by another run", queue_id)
            return False
        logger.info("Acquired run lock for queue %d (instance=%s)", queue_id, instance_id)
        return True

    async def release_lock(self, queue_id: int, instance_id: str) -> None:
        """Release the run lock if this instance holds it."""
        db = self._ensure_connected()
        await db.execute(
            "DELETE FROM run_locks WHERE queue_id = ? AND instance_id = ?",
            (queue_id, instance_id),
        )
        await db.commit()
        logger.info("Released run lock for queue %d", queue_id)

    async def update_heartbeat(self, queue_id: int, instance_id: str) -> None:
        """Refresh the lock heartbeat so long runs are not taken over."""
        db = self._ensure_connected()
        await db.execute(
            "UPDATE run_locks SET last_heartbeat = ? WHERE queue_id = ? AND instance_id = ?",
            (time.time(), queue_id, instance_id),
        )
        await db.commit()
