"""Account-wide cooldown and lockout gates.

The remote account's rate limit outlives any single queue run, so the gate
is kept in two places and merged on read:

* the remote client's own view (``is_on_cooldown`` / ``is_account_locked_out``)
* a timestamp row in the ``account_gates`` table, written when this process
  archives an item or detects a bot flag, and visible to every queue
"""

from __future__ import annotations

import logging
import math
import random
import time
from typing import Callable

from mediapacer.models import PacingConfig
from mediapacer.upload.client import RemoteMediaClient
from mediapacer.upload.state import QueueStore

logger = logging.getLogger(__name__)

COOLDOWN_GATE = "cooldown"
LOCKOUT_GATE = "lockout"


class GlobalCooldownCoordinator:
    """Single source of truth for "may the account act right now?".

    Args:
        client: Remote client supplying the service-side flags.
        store: Queue store persisting the shared gate timestamps.
        config: Pacing settings (archive cooldown window).
        rng: Random generator for the post-archive window.
        clock: Epoch-seconds clock; injectable for tests.
    """

    def __init__(
        self,
        client: RemoteMediaClient,
        store: QueueStore,
        config: PacingConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._store = store
        self._config = config or PacingConfig()
        self._rng = rng or random.Random()
        self._clock = clock

    async def _gate_remaining(self, gate: str) -> int:
        until = await self._store.get_gate(gate)
        if until is None:
            return 0
        return max(0, math.ceil(until - self._clock()))

    async def _extend_gate(self, gate: str, seconds: int) -> None:
        until = self._clock() + seconds
        current = await self._store.get_gate(gate)
        if current is not None and current >= until:
            return
        await self._store.set_gate(gate, until)

    async def is_on_cooldown(self) -> tuple[bool, int]:
        """Return ``(active, remaining_seconds)``, the longer of both sources."""
        local = await self._gate_remaining(COOLDOWN_GATE)
        active, remote = await self._client.is_on_cooldown()
        remaining = max(local, remote if active else 0)
        return remaining > 0, remaining

    async def arm(self, seconds: int) -> None:
        """Close the cooldown gate for at least *seconds* from now."""
        await self._extend_gate(COOLDOWN_GATE, seconds)
        logger.debug("Cooldown gate armed for %ds", seconds)

    async def arm_after_archive(self) -> int:
        """Arm the randomized post-archive cooldown; return its length."""
        low, high = self._config.archive_cooldown
        seconds = self._rng.randint(low, high)
        await self.arm(seconds)
        return seconds

    async def is_locked_out(self) -> tuple[bool, int]:
        """Return ``(locked, remaining_seconds)``.

        A remote flag without a known end reports ``remaining == 0``.
        """
        local = await self._gate_remaining(LOCKOUT_GATE)
        remote = await self._client.is_account_locked_out()
        return (local > 0 or remote), local

    async def arm_lockout(self, seconds: int) -> None:
        """Record a bot-detection lockout of *seconds* from now."""
        await self._extend_gate(LOCKOUT_GATE, seconds)
        logger.warning("Account lockout recorded for %ds", seconds)
