"""Data models and enums for the paced upload-then-archive pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

SKIPPED_BY_USER = "Skipped by user"


class ItemStatus(str, Enum):
    """Status of a single queue item."""

    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ARCHIVING = "archiving"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """Aggregate status of a queue, kept on the queue row."""

    READY = "ready"
    UPLOADING = "uploading"
    PAUSED = "paused"
    ERROR = "error"
    COMPLETED = "completed"


@dataclass(slots=True)
class QueueItem:
    """One upload+archive unit of work.

    ``remote_handle`` is assigned once the upload succeeds; its presence
    means only the archive step remains.
    """

    id: int
    queue_id: int
    position: int
    payload: str
    status: ItemStatus = ItemStatus.PENDING
    remote_handle: str | None = None
    last_error: str | None = None

    @property
    def is_done(self) -> bool:
        return self.remote_handle is not None and self.status == ItemStatus.COMPLETED

    @property
    def is_skipped(self) -> bool:
        """Abandoned by the user; never processed again."""
        return self.status == ItemStatus.FAILED and self.last_error == SKIPPED_BY_USER


@dataclass
class ProgressLedger:
    """Minimal persisted state that allows exact resumption of a run.

    Attributes:
        current_index: Number of items committed so far (next index to run).
        total: Number of items in the queue.
        consecutive_auto_retries: Auto-retries since the last committed item,
            counted across items.
        resume_index: Index a halted run must restart from, or ``None``.
        is_paused: Whether the run stopped in a paused state.
    """

    current_index: int = 0
    total: int = 0
    consecutive_auto_retries: int = 0
    resume_index: int | None = None
    is_paused: bool = False

    def copy(self) -> ProgressLedger:
        return replace(self)


class PhaseKind(str, Enum):
    """What the orchestrator is doing right now."""

    IDLE = "idle"
    UPLOADING = "uploading"
    ARCHIVING = "archiving"
    WAITING_NEXT_ITEM = "waiting_next_item"
    COOLDOWN = "cooldown"
    AUTO_RETRYING = "auto_retrying"
    WAITING_NETWORK = "waiting_network"
    ESCALATED_PAUSE = "escalated_pause"
    LOCKED_OUT = "locked_out"
    SESSION_EXPIRED = "session_expired"
    ITEM_REJECTED = "item_rejected"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Phase:
    """Tagged orchestration phase.

    Only the fields meaningful for ``kind`` are set; build instances with
    the classmethod constructors (``Phase.uploading(3)``,
    ``Phase.cooldown(42)``, ...). Item numbers are 1-based for display.
    """

    kind: PhaseKind
    item: int | None = None
    next_item: int | None = None
    remaining: int | None = None
    attempt: int | None = None

    @classmethod
    def idle(cls) -> Phase:
        return cls(PhaseKind.IDLE)

    @classmethod
    def uploading(cls, item: int) -> Phase:
        return cls(PhaseKind.UPLOADING, item=item)

    @classmethod
    def archiving(cls, item: int) -> Phase:
        return cls(PhaseKind.ARCHIVING, item=item)

    @classmethod
    def waiting_next_item(cls, next_item: int, remaining: int) -> Phase:
        return cls(PhaseKind.WAITING_NEXT_ITEM, next_item=next_item, remaining=remaining)

    @classmethod
    def cooldown(cls, remaining: int) -> Phase:
        return cls(PhaseKind.COOLDOWN, remaining=remaining)

    @classmethod
    def auto_retrying(cls, remaining: int, attempt: int) -> Phase:
        return cls(PhaseKind.AUTO_RETRYING, remaining=remaining, attempt=attempt)

    @classmethod
    def waiting_network(cls, attempt: int) -> Phase:
        return cls(PhaseKind.WAITING_NETWORK, attempt=attempt)

    @classmethod
    def escalated_pause(cls, remaining: int) -> Phase:
        return cls(PhaseKind.ESCALATED_PAUSE, remaining=remaining)

    @classmethod
    def locked_out(cls, remaining: int) -> Phase:
        return cls(PhaseKind.LOCKED_OUT, remaining=remaining)

    @classmethod
    def session_expired(cls) -> Phase:
        return cls(PhaseKind.SESSION_EXPIRED)

    @classmethod
    def item_rejected(cls, item: int) -> Phase:
        return cls(PhaseKind.ITEM_REJECTED, item=item)

    @classmethod
    def paused(cls) -> Phase:
        return cls(PhaseKind.PAUSED)

    @classmethod
    def completed(cls) -> Phase:
        return cls(PhaseKind.COMPLETED)

    def describe(self) -> str:
        """Human-readable one-line description."""
        k = self.kind
        if k == PhaseKind.UPLOADING:
            return f"Uploading item #{self.item}"
        if k == PhaseKind.ARCHIVING:
            return f"Archiving item #{self.item}"
        if k == PhaseKind.WAITING_NEXT_ITEM:
            return f"Next item #{self.next_item} in {_clock(self.remaining)}"
        if k == PhaseKind.COOLDOWN:
            return f"Cooldown {_clock(self.remaining)}"
        if k == PhaseKind.AUTO_RETRYING:
            return f"Auto-retrying in {self.remaining}s (attempt {self.attempt})"
        if k == PhaseKind.WAITING_NETWORK:
            return f"Waiting for connection (attempt {self.attempt})"
        if k == PhaseKind.ESCALATED_PAUSE:
            return f"Multiple errors - cooling down {_clock(self.remaining)}"
        if k == PhaseKind.LOCKED_OUT:
            return f"Bot detection - account locked {_clock(self.remaining)}"
        if k == PhaseKind.SESSION_EXPIRED:
            return "Session expired - re-login required"
        if k == PhaseKind.ITEM_REJECTED:
            return f"Item #{self.item} rejected - skip or replace it"
        if k == PhaseKind.PAUSED:
            return "Paused - ready to resume"
        if k == PhaseKind.COMPLETED:
            return "Completed"
        return "Idle"


def _clock(seconds: int | None) -> str:
    seconds = seconds or 0
    return f"{seconds // 60}:{seconds % 60:02d}"


@dataclass
class PacingConfig:
    """Timing and retry settings for the orchestration loop.

    All durations are in seconds. Ranges are ``(low, high)`` inclusive.
    """

    max_attempts: int = 3
    pre_archive_delay: tuple[float, float] = (5.0, 10.0)
    inter_item_fallback: tuple[int, int] = (160, 220)
    cooldown_jitter: tuple[int, int] = (5, 15)
    cooldown_margin: int = 30
    cooldown_floor: int = 30
    generic_retry_base: int = 60
    generic_retry_jitter: int = 30
    network_poll_interval: int = 2
    network_poll_ceiling: int = 120
    network_settle: int = 5
    lockout_seconds: int = 900
    escalation_seconds: int = 300
    archive_cooldown: tuple[int, int] = (160, 220)
    lock_stale_seconds: int = 600
    db_path: str = "data/mediapacer.db"
