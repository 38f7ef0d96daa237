"""Tests for the queue item lifecycle state machine."""

from __future__ import annotations

import pytest

from mediapacer.models import ItemStatus
from mediapacer.upload.exceptions import InvalidTransitionError
from mediapacer.upload.fsm import ItemLifecycleSM, create_fsm, next_status


class TestItemLifecycle:
    """Tests for legal and illegal item transitions."""

    def test_starts_pending(self):
        """A fresh FSM is in the pending state."""
        assert ItemLifecycleSM().current_state_value == "pending"

    def test_full_lifecycle(self):
        """pending -> uploading -> uploaded -> archiving -> completed."""
        fsm = create_fsm(ItemStatus.PENDING)
        for event in ("start_upload", "complete_upload", "start_archive", "complete_archive"):
            fsm.send(event)
        assert fsm.current_state_value == "completed"

    @pytest.mark.parametrize(
        "status, event, expected",
        [
            (ItemStatus.UPLOADING, "fail", ItemStatus.FAILED),
            (ItemStatus.ARCHIVING, "fail", ItemStatus.FAILED),
            (ItemStatus.FAILED, "start_upload", ItemStatus.UPLOADING),
            (ItemStatus.FAILED, "start_archive", ItemStatus.ARCHIVING),
            (ItemStatus.FAILED, "fail", ItemStatus.FAILED),
            (ItemStatus.PENDING, "fail", ItemStatus.FAILED),
            (ItemStatus.UPLOADED, "reset", ItemStatus.PENDING),
            (ItemStatus.FAILED, "reset", ItemStatus.PENDING),
            (ItemStatus.PENDING, "reset", ItemStatus.PENDING),
            (ItemStatus.UPLOADING, "interrupt_upload", ItemStatus.PENDING),
            (ItemStatus.ARCHIVING, "interrupt_archive", ItemStatus.UPLOADED),
        ],
    )
    def test_legal_transitions(self, status, event, expected):
        """Retry, skip, replace and recovery paths are allowed."""
        assert next_status(status, event) == expected

    @pytest.mark.parametrize(
        "status, event",
        [
            (ItemStatus.PENDING, "complete_upload"),
            (ItemStatus.PENDING, "start_archive"),
            (ItemStatus.UPLOADED, "start_upload"),
            (ItemStatus.COMPLETED, "fail"),
            (ItemStatus.COMPLETED, "reset"),
            (ItemStatus.COMPLETED, "start_upload"),
            (ItemStatus.ARCHIVING, "reset"),
        ],
    )
    def test_illegal_transitions_raise(self, status, event):
        """Completed items are immutable and steps cannot be skipped."""
        with pytest.raises(InvalidTransitionError):
            next_status(status, event)

    def test_accepts_plain_strings(self):
        assert next_status("uploaded", "start_archive") == ItemStatus.ARCHIVING
