"""Crash recovery for items left mid-call by an interrupted run.

A process that dies while a remote call is in flight leaves its item in
``uploading`` or ``archiving``.  Neither status is a valid starting point
for the next run, so before any work begins:

* ``uploading`` items go back to ``pending`` -- no handle was recorded, so
  the upload is repeated.
* ``archiving`` items go back to ``uploaded`` -- the handle is kept and only
  the archive step is repeated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from mediapacer.models import ItemStatus
from mediapacer.upload.exceptions import InvalidTransitionError
from mediapacer.upload.fsm import next_status
from mediapacer.upload.state import QueueStore

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Summary of a recovery pass.

    Attributes:
        reset_to_pending: Items moved from ``uploading`` back to ``pending``.
        reset_to_uploaded: Items moved from ``archiving`` back to ``uploaded``.
        errors: Human-readable descriptions of items that could not be reset.
    """

    reset_to_pending: int = 0
    reset_to_uploaded: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.reset_to_pending + self.reset_to_uploaded


class RecoveryManager:
    """Normalizes interrupted items of one queue.

    Intended to be called once at the start of every run, before the
    orchestration loop looks at item statuses.
    """

    def __init__(self, store: QueueStore, queue_id: int) -> None:
        self._store = store
        self._queue_id = queue_id

    async def run(self) -> RecoveryResult:
        result = RecoveryResult()
        items = await self._store.get_interrupted_items(self._queue_id)

        for item in items:
            if item.status == ItemStatus.UPLOADING:
                event = "interrupt_upload"
            else:
                event = "interrupt_archive"

            if item.status == ItemStatus.ARCHIVING and not item.remote_handle:
                # No handle to archive with; the upload has to be repeated.
                await self._store.update_item(item.id, ItemStatus.PENDING)
                result.reset_to_pending += 1
                continue

            try:
                status = next_status(item.status, event)
            except InvalidTransitionError as exc:
                result.errors.append(f"item {item.position}: {exc}")
                continue

            await self._store.update_item(item.id, status)
            if status == ItemStatus.PENDING:
                result.reset_to_pending += 1
            else:
                result.reset_to_uploaded += 1

        if result.total:
            logger.warning(
                "Recovered %d interrupted item(s) in queue %d "
                "(%d to pending, %d to uploaded)",
                result.total,
                self._queue_id,
                result.reset_to_pending,
                result.reset_to_uploaded,
            )
        return result
