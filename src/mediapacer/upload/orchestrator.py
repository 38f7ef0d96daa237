"""Paced upload-then-archive orchestrator.

Drives one queue through the remote service, strictly one item and one
remote call at a time:

* Waits out any account-wide cooldown before the first attempt
* Uploads, pauses a human-like moment, then archives each item
* Classifies every remote failure and lets the retry policy decide between
  a delayed retry, a network-recovery wait, escalation, or a halt
* Spaces items apart using the remote cooldown (or a safe fallback window)
* Persists the resume ledger on every halt and after every committed item
* Publishes each phase on a reactivex ``BehaviorSubject``

Every wait is an :class:`InterruptibleDelay` with 1-second checkpoints, so a
pause request (in-process or from another process through the queue row)
takes effect within one tick and never interrupts a remote call.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from reactivex.subject import BehaviorSubject
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from mediapacer.models import (
    PacingConfig,
    Phase,
    PhaseKind,
    ProgressLedger,
    QueueItem,
    QueueStatus,
    SKIPPED_BY_USER,
)
from mediapacer.upload.classifier import classify_error
from mediapacer.upload.client import RemoteMediaClient
from mediapacer.upload.cooldown import GlobalCooldownCoordinator
from mediapacer.upload.delay import InterruptibleDelay, TickObserver
from mediapacer.upload.exceptions import (
    ArchiveRejectedError,
    QueueLockedError,
    RemoteCallError,
)
from mediapacer.upload.fsm import next_status
from mediapacer.upload.policy import (
    Escalate,
    Halt,
    HaltReason,
    RetryAfter,
    RetryPolicy,
    RetryWhenNetworkRecovers,
)
from mediapacer.upload.recovery import RecoveryManager
from mediapacer.upload.state import QueueStore

logger = logging.getLogger(__name__)

# Phases that re-emit every tick; only their first emission is logged at info.
_TICKING = frozenset(
    {
        PhaseKind.WAITING_NEXT_ITEM,
        PhaseKind.COOLDOWN,
        PhaseKind.AUTO_RETRYING,
        PhaseKind.ESCALATED_PAUSE,
        PhaseKind.LOCKED_OUT,
    }
)


class _RemoteCallFailed(Exception):
    """Carries a remote failure from the attempt to the policy branch."""

    def __init__(self, error: Exception) -> None:
        super().__init__(str(error))
        self.error = error


@dataclass
class RunResult:
    """Outcome of one call to :meth:`UploadOrchestrator.run`.

    Attributes:
        phase: Phase the run stopped in.
        ledger: Snapshot of the persisted resume ledger.
        halt_reason: Why the run halted, for the halts that need action.
        escalated: Whether the run stopped after an escalation pause.
        committed: Items completed during this run.
        retries: Automatic retries performed during this run.
        recovered: Interrupted items normalized before the run started.
    """

    phase: Phase
    ledger: ProgressLedger
    halt_reason: HaltReason | None = None
    escalated: bool = False
    committed: int = 0
    retries: int = 0
    recovered: int = 0

    @property
    def completed(self) -> bool:
        return self.phase.kind == PhaseKind.COMPLETED


class UploadOrchestrator:
    """Single-worker orchestration loop for one queue.

    Usage::

        orchestrator = UploadOrchestrator(client, store, queue_id)
        orchestrator.phases.subscribe(lambda phase: print(phase.describe()))
        result = await orchestrator.run()

    Args:
        client: Remote media service client.
        store: Queue store (items, ledger, pause flag, gates, run lock).
        queue_id: Queue to process.
        config: Pacing settings.
        coordinator: Account-wide cooldown/lockout gate; built from
            *client* and *store* when omitted.
        policy: Retry policy; built from *config* when omitted.
        delay: Interruptible delay; inject one with a fake sleep in tests.
        rng: Random generator for pacing jitter.
    """

    def __init__(
        self,
        client: RemoteMediaClient,
        store: QueueStore,
        queue_id: int,
        config: PacingConfig | None = None,
        *,
        coordinator: GlobalCooldownCoordinator | None = None,
        policy: RetryPolicy | None = None,
        delay: InterruptibleDelay | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._queue_id = queue_id
        self._config = config or PacingConfig()
        self._rng = rng or random.Random()
        self._coordinator = coordinator or GlobalCooldownCoordinator(
            client, store, self._config, self._rng
        )
        self._policy = policy or RetryPolicy(self._config, self._rng)
        self._delay = delay or InterruptibleDelay()
        self._instance_id = uuid.uuid4().hex

        self._phases: BehaviorSubject[Phase] = BehaviorSubject(Phase.idle())
        self._pause_event = asyncio.Event()
        self._ledger = ProgressLedger()
        self._items: list[QueueItem] = []
        self._attempt = 0
        self._committed = 0
        self._retries = 0
        self._recovered = 0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def phases(self) -> BehaviorSubject[Phase]:
        """Stream of every phase transition; replays the current phase."""
        return self._phases

    @property
    def phase(self) -> Phase:
        return self._phases.value

    @property
    def ledger(self) -> ProgressLedger:
        return self._ledger.copy()

    def _emit(self, phase: Phase) -> None:
        previous = self._phases.value
        if phase.kind != previous.kind or phase.kind not in _TICKING:
            logger.info("Queue %d: %s", self._queue_id, phase.describe())
        else:
            logger.debug("Queue %d: %s", self._queue_id, phase.describe())
        self._phases.on_next(phase)

    # ------------------------------------------------------------------
    # Pause control
    # ------------------------------------------------------------------

    def request_pause(self) -> None:
        """Ask the running loop to pause at its next checkpoint."""
        logger.warning("Pause requested for queue %d", self._queue_id)
        self._pause_event.set()

    async def pause_requested(self) -> bool:
        """Whether a pause was requested in-process or through the queue row."""
        if self._pause_event.is_set():
            return True
        return await self._store.is_pause_requested(self._queue_id)

    async def clear_pause(self) -> None:
        """Drop any pending pause request so the next run proceeds."""
        self._pause_event.clear()
        await self._store.clear_pause_request(self._queue_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, start_index: int | None = None) -> RunResult:
        """Process the queue from *start_index* (default: the ledger's resume point).

        Raises:
            QueueLockedError: If another process is running this queue.
            ValueError: If *start_index* is outside ``0..total``.
        """
        async with self._run_lock():
            return await self._run(start_index)

    async def resume(self) -> RunResult:
        """Clear the pause request and continue at the saved resume index."""
        await self.clear_pause()
        return await self.run()

    async def skip_item(self, index: int) -> RunResult:
        """Abandon the item at *index* and continue with the next one."""
        async with self._run_lock():
            item = await self._item_at(index)
            status = next_status(item.status, "fail")
            await self._store.update_item(item.id, status, last_error=SKIPPED_BY_USER)
            await self._store.log_event(
                self._queue_id, "item_skipped", SKIPPED_BY_USER, item_id=item.id
            )
            logger.warning("Skipped item #%d of queue %d", index + 1, self._queue_id)
            await self.clear_pause()
            return await self._run(index + 1)

    async def replace_item(self, index: int, payload: str) -> RunResult:
        """Swap the payload of the item at *index* and retry it from scratch."""
        async with self._run_lock():
            item = await self._item_at(index)
            next_status(item.status, "reset")
            await self._store.replace_payload(item.id, payload)
            await self._store.log_event(
                self._queue_id, "item_replaced", payload, item_id=item.id
            )
            await self.clear_pause()
            return await self._run(index)

    async def _item_at(self, index: int) -> QueueItem:
        items = await self._store.list_items(self._queue_id)
        if not 0 <= index < len(items):
            raise IndexError(f"Queue {self._queue_id} has no item at index {index}")
        return items[index]

    @asynccontextmanager
    async def _run_lock(self) -> AsyncIterator[None]:
        acquired = await self._store.acquire_lock(
            self._queue_id, self._instance_id, self._config.lock_stale_seconds
        )
        if not acquired:
            raise QueueLockedError(
                f"Queue {self._queue_id} is already being processed by another run"
            )
        try:
            yield
        finally:
            await self._store.release_lock(self._queue_id, self._instance_id)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self, start_index: int | None) -> RunResult:
        self._committed = 0
        self._retries = 0
        recovery = await RecoveryManager(self._store, self._queue_id).run()
        self._recovered = recovery.total

        self._items = await self._store.list_items(self._queue_id)
        total = len(self._items)
        ledger = await self._store.load_ledger(self._queue_id) or ProgressLedger()
        ledger.total = total
        if start_index is None:
            start_index = (
                ledger.resume_index
                if ledger.resume_index is not None
                else ledger.current_index
            )
        if not 0 <= start_index <= total:
            raise ValueError(f"start index {start_index} outside 0..{total}")

        ledger.current_index = start_index
        ledger.resume_index = None
        ledger.is_paused = False
        ledger.consecutive_auto_retries = 0
        self._ledger = ledger
        await self._save_ledger()

        logger.info(
            "Starting queue %d at item #%d of %d", self._queue_id, start_index + 1, total
        )
        await self._store.set_queue_status(self._queue_id, QueueStatus.UPLOADING)
        await self._store.log_event(self._queue_id, "run_started", f"index={start_index}")

        halted = await self._check_preconditions(start_index)
        if halted is not None:
            return halted

        index = start_index
        while index < total:
            item = self._items[index]
            if item.is_done or item.is_skipped:
                logger.debug("Item #%d already settled, skipping", index + 1)
                index += 1
                self._ledger.current_index = index
                continue

            halted = await self._process_item(index)
            if halted is not None:
                return halted

            index += 1
            self._committed += 1
            self._attempt = 0
            self._ledger.current_index = index
            self._ledger.consecutive_auto_retries = 0
            await self._save_ledger()
            await self._store.update_heartbeat(self._queue_id, self._instance_id)

            if index < total and not await self._inter_item_delay(index):
                return await self._halt_paused(index)

        return await self._finish()

    async def _check_preconditions(self, index: int) -> RunResult | None:
        if await self.pause_requested():
            return await self._halt_paused(index)

        locked, remaining = await self._coordinator.is_locked_out()
        if locked:
            return await self._halt_locked_out(index, remaining)

        on_cooldown, remaining = await self._coordinator.is_on_cooldown()
        if on_cooldown:
            logger.info("Account cooldown active, waiting %ds before first item", remaining)
            finished = await self._delay.wait(
                remaining,
                should_stop=self.pause_requested,
                on_tick=self._tick(Phase.cooldown),
            )
            if not finished:
                return await self._halt_paused(index)

        try:
            await self._client.probe_network_stability()
        except Exception as exc:
            logger.warning("Network not stable at start: %s", exc)
            if not await self._await_network(0):
                return await self._halt_paused(index)
        return None

    async def _checkpoint(self, index: int) -> RunResult | None:
        """Pause and lockout checks made before every attempt."""
        if await self.pause_requested():
            return await self._halt_paused(index)
        locked, remaining = await self._coordinator.is_locked_out()
        if locked:
            return await self._halt_locked_out(index, remaining)
        return None

    async def _process_item(self, index: int) -> RunResult | None:
        """Attempt the item at *index* until it commits or the run halts."""
        item = self._items[index]
        self._attempt = 0
        while True:
            halted = await self._checkpoint(index)
            if halted is not None:
                return halted
            try:
                return await self._attempt_item(item, index)
            except _RemoteCallFailed as failure:
                halted = await self._on_failure(item, index, failure.error)
                if halted is not None:
                    return halted

    async def _attempt_item(self, item: QueueItem, index: int) -> RunResult | None:
        if item.remote_handle is None:
            self._emit(Phase.uploading(index + 1))
            await self._transition(item, "start_upload")
            try:
                handle = await self._client.upload(item.payload)
                if not handle:
                    raise RemoteCallError("Upload returned no remote handle")
            except Exception as exc:
                raise _RemoteCallFailed(exc) from exc
            await self._transition(
                item, "complete_upload", remote_handle=handle, last_error=None
            )
            logger.info("Uploaded item #%d (handle=%s)", index + 1, handle)

            low, high = self._config.pre_archive_delay
            finished = await self._delay.wait(
                self._rng.uniform(low, high), should_stop=self.pause_requested
            )
            # Pause checkpoint between upload and archive.
            if not finished or await self.pause_requested():
                return await self._halt_paused(index)
        else:
            logger.info("Item #%d already uploaded, archiving only", index + 1)

        self._emit(Phase.archiving(index + 1))
        await self._transition(item, "start_archive")
        try:
            archived = await self._client.archive(item.remote_handle)
            if not archived:
                raise ArchiveRejectedError("Archive was not confirmed by the service")
        except Exception as exc:
            raise _RemoteCallFailed(exc) from exc
        await self._transition(item, "complete_archive", last_error=None)

        cooldown = await self._coordinator.arm_after_archive()
        logger.info(
            "Completed item #%d of %d (cooldown armed for %ds)",
            index + 1,
            len(self._items),
            cooldown,
        )
        return None

    async def _transition(self, item: QueueItem, event: str, **fields: object) -> None:
        status = next_status(item.status, event)
        await self._store.update_item(item.id, status, **fields)
        item.status = status
        if "remote_handle" in fields:
            item.remote_handle = fields["remote_handle"]
        if "last_error" in fields:
            item.last_error = fields["last_error"]

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _on_failure(
        self, item: QueueItem, index: int, error: Exception
    ) -> RunResult | None:
        """Record a failure and act on the policy; ``None`` means retry."""
        classified = classify_error(error)
        await self._transition(item, "fail", last_error=classified.message)
        logger.warning(
            "Item #%d failed (%s): %s", index + 1, classified.kind.value, classified.message
        )

        action = self._policy.decide(
            classified, self._attempt, self._ledger.consecutive_auto_retries
        )

        if isinstance(action, Halt):
            await self._store.log_event(
                self._queue_id, action.reason.value, classified.message, item_id=item.id
            )
            if action.reason == HaltReason.SESSION_EXPIRED:
                return await self._halt_session_expired(index)
            if action.reason == HaltReason.LOCKED_OUT:
                return await self._halt_bot_detected(index)
            return await self._halt_item_rejected(index)

        if isinstance(action, Escalate):
            await self._store.log_event(
                self._queue_id, "escalated", classified.message, item_id=item.id
            )
            return await self._halt_escalated(index)

        self._attempt += 1
        self._retries += 1
        self._ledger.consecutive_auto_retries += 1
        await self._save_ledger()

        if isinstance(action, RetryAfter):
            logger.warning(
                "Retrying item #%d in %ds (attempt %d)", index + 1, action.seconds, self._attempt
            )
            attempt = self._attempt
            finished = await self._delay.wait(
                action.seconds,
                should_stop=self.pause_requested,
                on_tick=self._tick(lambda r: Phase.auto_retrying(r, attempt)),
            )
        elif isinstance(action, RetryWhenNetworkRecovers):
            finished = await self._await_network(self._attempt)
        else:
            raise TypeError(f"Unknown policy action: {action!r}")

        if not finished:
            return await self._halt_paused(index)
        return None

    async def _await_network(self, attempt: int) -> bool:
        """Poll the network probe until it succeeds or the ceiling passes.

        Returns:
            ``False`` if a pause was requested while waiting.
        """
        self._emit(Phase.waiting_network(attempt))
        interval = self._config.network_poll_interval
        polls = max(1, self._config.network_poll_ceiling // interval)
        try:
            async for poll in AsyncRetrying(
                sleep=self._network_sleep,
                stop=stop_after_attempt(polls),
                wait=wait_fixed(interval),
                retry=retry_if_exception_type(Exception),
            ):
                with poll:
                    if await self.pause_requested():
                        return False
                    await self._client.probe_network_stability()
        except RetryError:
            logger.warning(
                "Network still unstable after %ds, retrying anyway",
                self._config.network_poll_ceiling,
            )
        return await self._delay.wait(
            self._config.network_settle, should_stop=self.pause_requested
        )

    async def _network_sleep(self, seconds: float) -> None:
        await self._delay.wait(seconds, should_stop=self.pause_requested)

    async def _inter_item_delay(self, next_index: int) -> bool:
        on_cooldown, remaining = await self._coordinator.is_on_cooldown()
        if on_cooldown:
            seconds = remaining + self._rng.randint(*self._config.cooldown_jitter)
        else:
            seconds = self._rng.randint(*self._config.inter_item_fallback)
        logger.info("Waiting %ds before item #%d", seconds, next_index + 1)
        return await self._delay.wait(
            seconds,
            should_stop=self.pause_requested,
            on_tick=self._tick(lambda r: Phase.waiting_next_item(next_index + 1, r)),
        )

    def _tick(self, make_phase: Callable[[int], Phase]) -> TickObserver:
        async def on_tick(remaining: int) -> None:
            self._emit(make_phase(remaining))

        return on_tick

    # ------------------------------------------------------------------
    # Halts
    # ------------------------------------------------------------------

    async def _stop(
        self,
        index: int,
        phase: Phase,
        status: QueueStatus,
        *,
        paused: bool,
        halt_reason: HaltReason | None = None,
        escalated: bool = False,
    ) -> RunResult:
        self._ledger.resume_index = index
        self._ledger.is_paused = paused
        await self._save_ledger()
        await self._store.set_queue_status(self._queue_id, status)
        self._emit(phase)
        return self._result(halt_reason=halt_reason, escalated=escalated)

    async def _halt_paused(self, index: int) -> RunResult:
        await self._store.log_event(self._queue_id, "paused", f"resume_index={index}")
        return await self._stop(index, Phase.paused(), QueueStatus.PAUSED, paused=True)

    async def _halt_locked_out(self, index: int, remaining: int) -> RunResult:
        logger.error("Account is locked out (%ds remaining), not starting work", remaining)
        return await self._stop(
            index,
            Phase.locked_out(remaining),
            QueueStatus.ERROR,
            paused=False,
            halt_reason=HaltReason.LOCKED_OUT,
        )

    async def _halt_session_expired(self, index: int) -> RunResult:
        logger.error("Session expired on item #%d; re-login required", index + 1)
        return await self._stop(
            index,
            Phase.session_expired(),
            QueueStatus.ERROR,
            paused=False,
            halt_reason=HaltReason.SESSION_EXPIRED,
        )

    async def _halt_item_rejected(self, index: int) -> RunResult:
        logger.error("Item #%d rejected; skip or replace it", index + 1)
        return await self._stop(
            index,
            Phase.item_rejected(index + 1),
            QueueStatus.PAUSED,
            paused=True,
            halt_reason=HaltReason.ITEM_REJECTED,
        )

    async def _halt_bot_detected(self, index: int) -> RunResult:
        seconds = self._config.lockout_seconds
        logger.error("Bot detection on item #%d; locking out for %ds", index + 1, seconds)
        await self._coordinator.arm_lockout(seconds)
        self._ledger.resume_index = index
        await self._save_ledger()
        await self._store.set_queue_status(self._queue_id, QueueStatus.ERROR)
        await self._delay.wait(seconds, on_tick=self._tick(Phase.locked_out))
        self._emit(Phase.locked_out(0))
        return await self._stop(
            index,
            Phase.paused(),
            QueueStatus.ERROR,
            paused=True,
            halt_reason=HaltReason.LOCKED_OUT,
        )

    async def _halt_escalated(self, index: int) -> RunResult:
        seconds = self._config.escalation_seconds
        logger.error(
            "Repeated failures on item #%d; escalation pause of %ds", index + 1, seconds
        )
        self._ledger.resume_index = index
        await self._save_ledger()
        await self._delay.wait(seconds, on_tick=self._tick(Phase.escalated_pause))
        self._emit(Phase.escalated_pause(0))
        return await self._stop(
            index, Phase.paused(), QueueStatus.PAUSED, paused=True, escalated=True
        )

    async def _finish(self) -> RunResult:
        self._ledger.current_index = self._ledger.total
        self._ledger.resume_index = None
        self._ledger.is_paused = False
        self._ledger.consecutive_auto_retries = 0
        await self._save_ledger()
        await self._store.set_queue_status(self._queue_id, QueueStatus.COMPLETED)
        await self._store.log_event(
            self._queue_id, "completed", f"committed={self._committed}"
        )
        self._emit(Phase.completed())
        return self._result()

    async def _save_ledger(self) -> None:
        await self._store.save_ledger(self._queue_id, self._ledger)

    def _result(
        self, *, halt_reason: HaltReason | None = None, escalated: bool = False
    ) -> RunResult:
        return RunResult(
            phase=self.phase,
            ledger=self._ledger.copy(),
            halt_reason=halt_reason,
            escalated=escalated,
            committed=self._committed,
            retries=self._retries,
            recovered=self._recovered,
        )
