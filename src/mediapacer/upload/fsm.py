"""Queue item lifecycle finite state machine.

Each item gets its own FSM instance, initialized at the item's current
status.  Used to validate transition legality before the store persists a
status change -- the FSM performs no DB writes and has no callbacks.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from mediapacer.models import ItemStatus
from mediapacer.upload.exceptions import InvalidTransitionError


class ItemLifecycleSM(StateMachine):
    """Six-state lifecycle for an item's upload-then-archive journey.

    States:
        pending   -- Enqueued, nothing sent yet.
        uploading -- Upload call in flight.
        uploaded  -- Remote handle assigned; only the archive step remains.
        archiving -- Archive call in flight.
        completed -- Fully done; never reprocessed.
        failed    -- Last attempt failed (``last_error`` says why) or the
                     item was skipped by the user.
    """

    pending = State("pending", initial=True, value="pending")
    uploading = State("uploading", value="uploading")
    uploaded = State("uploaded", value="uploaded")
    archiving = State("archiving", value="archiving")
    completed = State("completed", final=True, value="completed")
    failed = State("failed", value="failed")

    start_upload = pending.to(uploading) | failed.to(uploading)
    complete_upload = uploading.to(uploaded)
    start_archive = uploaded.to(archiving) | failed.to(archiving)
    complete_archive = archiving.to(completed)
    fail = (
        pending.to(failed)
        | uploading.to(failed)
        | uploaded.to(failed)
        | archiving.to(failed)
        | failed.to.itself()
    )
    # Payload replaced: the old remote handle is discarded.
    reset = pending.to.itself() | uploaded.to(pending) | failed.to(pending)
    # Crash recovery of calls that were in flight.
    interrupt_upload = uploading.to(pending)
    interrupt_archive = archiving.to(uploaded)


def create_fsm(status: ItemStatus | str) -> ItemLifecycleSM:
    """Create an FSM instance positioned at *status*."""
    value = status.value if isinstance(status, ItemStatus) else status
    return ItemLifecycleSM(start_value=value)


def next_status(status: ItemStatus | str, event: str) -> ItemStatus:
    """Return the status reached by firing *event* from *status*.

    Raises:
        InvalidTransitionError: If *event* is not allowed from *status*.
    """
    fsm = create_fsm(status)
    try:
        fsm.send(event)
    except TransitionNotAllowed as exc:
        raise InvalidTransitionError(
            f"Cannot {event} an item in status {ItemStatus(status).value!r}"
        ) from exc
    return ItemStatus(fsm.current_state_value)
