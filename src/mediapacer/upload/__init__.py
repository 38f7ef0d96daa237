"""Upload orchestration pipeline.

Public API
----------
.. autoclass:: UploadOrchestrator
.. autoclass:: RunResult
.. autoclass:: AsyncQueueStore
.. autoclass:: GlobalCooldownCoordinator
.. autoclass:: RetryPolicy
.. autoclass:: InterruptibleDelay
.. autoclass:: RecoveryManager
.. autoclass:: RecoveryResult
.. autoclass:: PhaseDisplay
"""

from mediapacer.upload.classifier import ClassifiedError, ErrorKind, classify, classify_error
from mediapacer.upload.client import RemoteMediaClient, load_client
from mediapacer.upload.cooldown import GlobalCooldownCoordinator
from mediapacer.upload.delay import InterruptibleDelay
from mediapacer.upload.exceptions import (
    ArchiveRejectedError,
    InvalidTransitionError,
    QueueLockedError,
    RemoteCallError,
)
from mediapacer.upload.orchestrator import RunResult, UploadOrchestrator
from mediapacer.upload.policy import (
    Escalate,
    Halt,
    HaltReason,
    RetryAfter,
    RetryPolicy,
    RetryWhenNetworkRecovers,
    decide,
    parse_cooldown_seconds,
)
from mediapacer.upload.progress import PhaseDisplay
from mediapacer.upload.recovery import RecoveryManager, RecoveryResult
from mediapacer.upload.state import AsyncQueueStore, QueueStore

__all__ = [
    "ArchiveRejectedError",
    "AsyncQueueStore",
    "ClassifiedError",
    "ErrorKind",
    "Escalate",
    "GlobalCooldownCoordinator",
    "Halt",
    "HaltReason",
    "InterruptibleDelay",
    "InvalidTransitionError",
    "PhaseDisplay",
    "QueueLockedError",
    "QueueStore",
    "RecoveryManager",
    "RecoveryResult",
    "RemoteCallError",
    "RemoteMediaClient",
    "RetryAfter",
    "RetryPolicy",
    "RetryWhenNetworkRecovers",
    "RunResult",
    "UploadOrchestrator",
    "classify",
    "classify_error",
    "decide",
    "load_client",
    "parse_cooldown_seconds",
]
