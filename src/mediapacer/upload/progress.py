"""Rich live display of a run's orchestration phases.

One progress bar for the queue, with the current phase description (and
any countdown) as its status text.  Feed it by subscribing to the
orchestrator's phase stream::

    display = PhaseDisplay(total=12, start_index=3)
    with display:
        subscription = display.attach(orchestrator.phases)
        result = await orchestrator.run()
        subscription.dispose()
"""

from __future__ import annotations

from reactivex import Observable
from reactivex.abc import DisposableBase
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)

from mediapacer.models import Phase, PhaseKind

_STYLES: dict[PhaseKind, str] = {
    PhaseKind.UPLOADING: "cyan",
    PhaseKind.ARCHIVING: "cyan",
    PhaseKind.WAITING_NEXT_ITEM: "dim",
    PhaseKind.COOLDOWN: "yellow",
    PhaseKind.AUTO_RETRYING: "yellow",
    PhaseKind.WAITING_NETWORK: "yellow",
    PhaseKind.ESCALATED_PAUSE: "red",
    PhaseKind.LOCKED_OUT: "red",
    PhaseKind.SESSION_EXPIRED: "red",
    PhaseKind.ITEM_REJECTED: "red",
    PhaseKind.PAUSED: "magenta",
    PhaseKind.COMPLETED: "green",
}


class PhaseDisplay:
    """Single-bar Rich progress display driven by :class:`Phase` values."""

    def __init__(
        self, total: int, start_index: int = 0, console: Console | None = None
    ) -> None:
        self._total = total
        self._completed = start_index
        self._last: Phase | None = None
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("{task.fields[status]}"),
            console=console,
        )
        self._task: TaskID | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._task = self._progress.add_task(
            "[green]Queue",
            total=self._total,
            completed=self._completed,
            status="starting...",
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> PhaseDisplay:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Phase handling
    # ------------------------------------------------------------------

    @property
    def completed(self) -> int:
        """Items known to be committed, derived from the phases seen."""
        return self._completed

    @property
    def last_phase(self) -> Phase | None:
        return self._last

    def attach(self, phases: Observable[Phase]) -> DisposableBase:
        """Subscribe to a phase stream; dispose the result to detach."""
        return phases.subscribe(on_next=self.on_phase)

    def on_phase(self, phase: Phase) -> None:
        """Update the bar and status text for *phase*."""
        self._last = phase
        # Item numbers in phases are 1-based; everything before them is done.
        if phase.kind in (PhaseKind.UPLOADING, PhaseKind.ARCHIVING):
            self._completed = max(self._completed, (phase.item or 1) - 1)
        elif phase.kind == PhaseKind.WAITING_NEXT_ITEM:
            self._completed = max(self._completed, (phase.next_item or 1) - 1)
        elif phase.kind == PhaseKind.COMPLETED:
            self._completed = self._total

        if self._task is None:
            return
        style = _STYLES.get(phase.kind, "white")
        self._progress.update(
            self._task,
            completed=self._completed,
            status=f"[{style}]{phase.describe()}[/{style}]",
        )
