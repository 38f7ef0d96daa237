"""Paced upload-then-archive runner for rate-limited media services."""

__version__ = "0.1.0"

from mediapacer.models import (
    ItemStatus,
    PacingConfig,
    Phase,
    PhaseKind,
    ProgressLedger,
    QueueItem,
    QueueStatus,
)

__all__ = [
    "ItemStatus",
    "PacingConfig",
    "Phase",
    "PhaseKind",
    "ProgressLedger",
    "QueueItem",
    "QueueStatus",
    "__version__",
]
