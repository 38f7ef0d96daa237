"""Tests for the synchronous queue database used by the CLI."""

from __future__ import annotations

import pytest

from mediapacer.database import Database, QueueNotFoundError
from mediapacer.models import ItemStatus, QueueStatus


class TestQueues:
    """Tests for queue creation and lookup."""

    def test_create_queue_items_in_order(self, tmp_db: Database):
        """Items are pending and keep the given order."""
        queue_id = tmp_db.create_queue("album", ["a.jpg", "b.jpg", "c.jpg"])
        items = tmp_db.get_items(queue_id)
        assert [i.payload for i in items] == ["a.jpg", "b.jpg", "c.jpg"]
        assert [i.position for i in items] == [0, 1, 2]
        assert all(i.status == ItemStatus.PENDING for i in items)

    def test_create_queue_initializes_ledger(self, tmp_db: Database):
        queue_id = tmp_db.create_queue("album", ["a.jpg", "b.jpg"])
        ledger = tmp_db.get_ledger(queue_id)
        assert ledger.total == 2
        assert ledger.current_index == 0
        assert ledger.resume_index is None

    def test_duplicate_name_rejected(self, tmp_db: Database):
        tmp_db.create_queue("album", ["a.jpg"])
        with pytest.raises(ValueError):
            tmp_db.create_queue("album", ["b.jpg"])

    def test_append_items_continues_positions(self, tmp_db: Database):
        """Appended items go after the existing ones and grow the ledger total."""
        queue_id = tmp_db.create_queue("album", ["a.jpg", "b.jpg"])
        assert tmp_db.append_items(queue_id, ["c.jpg"]) == 1
        items = tmp_db.get_items(queue_id)
        assert [i.position for i in items] == [0, 1, 2]
        assert tmp_db.get_ledger(queue_id).total == 3

    def test_get_queue_by_name_or_id(self, tmp_db: Database):
        queue_id = tmp_db.create_queue("album", ["a.jpg"])
        assert tmp_db.get_queue("album")["queue_id"] == queue_id
        assert tmp_db.get_queue(queue_id)["name"] == "album"
        assert tmp_db.get_queue(str(queue_id))["name"] == "album"

    def test_missing_queue_raises(self, tmp_db: Database):
        with pytest.raises(QueueNotFoundError):
            tmp_db.get_queue("nope")

    def test_list_queues_counts(self, tmp_db: Database):
        """list_queues reports total and completed counts per queue."""
        first = tmp_db.create_queue("one", ["a.jpg", "b.jpg"])
        tmp_db.create_queue("two", ["c.jpg"])
        tmp_db.conn.execute(
            "UPDATE items SET status = 'completed' WHERE queue_id = ? AND position = 0",
            (first,),
        )
        tmp_db.conn.commit()

        rows = {row["name"]: row for row in tmp_db.list_queues()}
        assert rows["one"]["total"] == 2
        assert rows["one"]["completed"] == 1
        assert rows["two"]["completed"] == 0

    def test_status_counts(self, tmp_db: Database, queue_id: int):
        assert tmp_db.get_status_counts(queue_id) == {"pending": 3}

    def test_set_queue_status(self, tmp_db: Database, queue_id: int):
        tmp_db.set_queue_status(queue_id, QueueStatus.PAUSED)
        assert tmp_db.get_queue(queue_id)["status"] == "paused"


class TestPauseAndLocks:
    """Tests for the cross-process pause flag and run locks."""

    def test_request_pause_sets_flag(self, tmp_db: Database, queue_id: int):
        tmp_db.request_pause(queue_id)
        assert tmp_db.get_queue(queue_id)["pause_requested"] == 1

    def test_lock_release(self, tmp_db: Database, queue_id: int):
        """A lock left by a crashed run can be dropped manually."""
        tmp_db.conn.execute(
            "INSERT INTO run_locks (queue_id, instance_id, acquired_at, last_heartbeat) "
            "VALUES (?, 'dead', 'then', 0)",
            (queue_id,),
        )
        tmp_db.conn.commit()
        assert tmp_db.is_locked(queue_id) is True
        tmp_db.release_lock(queue_id)
        assert tmp_db.is_locked(queue_id) is False


class TestActivityLog:
    """Tests for the item status trigger and activity listing."""

    def test_status_change_logged(self, tmp_db: Database, queue_id: int):
        """Changing an item's status writes an item_status log entry."""
        tmp_db.conn.execute(
            "UPDATE items SET status = 'failed', last_error = 'boom' "
            "WHERE queue_id = ? AND position = 1",
            (queue_id,),
        )
        tmp_db.conn.commit()

        rows = tmp_db.get_activity(queue_id)
        assert len(rows) == 1
        assert rows[0]["event"] == "item_status"
        assert rows[0]["old_status"] == "pending"
        assert rows[0]["new_status"] == "failed"
        assert rows[0]["details"] == "boom"
        assert rows[0]["position"] == 1

    def test_unchanged_status_not_logged(self, tmp_db: Database, queue_id: int):
        tmp_db.conn.execute(
            "UPDATE items SET last_error = 'x' WHERE queue_id = ?", (queue_id,)
        )
        tmp_db.conn.commit()
        assert tmp_db.get_activity(queue_id) == []
