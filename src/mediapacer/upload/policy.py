"""Retry/backoff decisions for classified upload failures.

Kinds that need a human (expired session, bot flag, rejected payload) always
halt.  Kinds that plausibly resolve on their own (cooldown, network, generic)
get a bounded number of automatic retries and then escalate to a long,
non-auto-resuming pause.  Escalation also wins as soon as the cross-item
consecutive retry counter reaches the attempt limit.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Union

from mediapacer.models import PacingConfig
from mediapacer.upload.classifier import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
COOLDOWN_MARGIN_SECONDS = 30
COOLDOWN_FLOOR_SECONDS = 30

_TIME_TOKEN = re.compile(r"^(\d+)([ms])$")


class HaltReason(str, Enum):
    """Why a run stopped without retrying."""

    SESSION_EXPIRED = "session_expired"
    LOCKED_OUT = "locked_out"
    ITEM_REJECTED = "item_rejected"


@dataclass(frozen=True)
class RetryAfter:
    """Retry the same item after *seconds*."""

    seconds: int


@dataclass(frozen=True)
class RetryWhenNetworkRecovers:
    """Retry the same item once the network probe succeeds."""


@dataclass(frozen=True)
class Escalate:
    """Stop retrying; run the escalation pause, then leave the run paused."""


@dataclass(frozen=True)
class Halt:
    """Stop the run for a reason that needs external action."""

    reason: HaltReason


Action = Union[RetryAfter, RetryWhenNetworkRecovers, Escalate, Halt]

_HALTS: dict[ErrorKind, HaltReason] = {
    ErrorKind.SESSION_EXPIRED: HaltReason.SESSION_EXPIRED,
    ErrorKind.BOT_DETECTED: HaltReason.LOCKED_OUT,
    ErrorKind.ITEM_REJECTED: HaltReason.ITEM_REJECTED,
}


def parse_cooldown_seconds(message: str, floor: int = COOLDOWN_FLOOR_SECONDS) -> int:
    """Extract the server-declared wait from a cooldown message.

    Sums whitespace-separated tokens of the form ``<int>m`` (minutes) and
    ``<int>s`` (seconds), ignoring trailing punctuation.

    >>> parse_cooldown_seconds("Please wait 1m 30s before uploading another photo.")
    90
    >>> parse_cooldown_seconds("please wait a moment")
    30
    """
    total = 0
    for token in message.lower().split():
        match = _TIME_TOKEN.match(token.strip(".,;:!()"))
        if match is None:
            continue
        value, unit = int(match.group(1)), match.group(2)
        total += value * 60 if unit == "m" else value
    return max(total, floor)


def decide(
    kind: ErrorKind,
    attempt: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    consecutive_retries: int = 0,
    cooldown_seconds: int = COOLDOWN_FLOOR_SECONDS,
    cooldown_margin: int = COOLDOWN_MARGIN_SECONDS,
    generic_delay: int | None = None,
) -> Action:
    """Decide what to do after a failure.

    Args:
        kind: Classified failure kind.
        attempt: Auto-retries already spent on the current item.
        max_attempts: Retry budget, per item and across items.
        consecutive_retries: Auto-retries since the last committed item.
        cooldown_seconds: Parsed server wait for ``COOLDOWN_ACTIVE``.
        cooldown_margin: Safety margin added to the server wait.
        generic_delay: Delay for ``GENERIC_TRANSIENT``; defaults to
            ``60 + randint(0, 30)``.

    Returns:
        One of :class:`RetryAfter`, :class:`RetryWhenNetworkRecovers`,
        :class:`Escalate` or :class:`Halt`.
    """
    halt = _HALTS.get(kind)
    if halt is not None:
        return Halt(halt)

    if attempt >= max_attempts or consecutive_retries >= max_attempts:
        return Escalate()

    if kind == ErrorKind.COOLDOWN_ACTIVE:
        return RetryAfter(cooldown_seconds + cooldown_margin)
    if kind == ErrorKind.NETWORK_TRANSIENT:
        return RetryWhenNetworkRecovers()
    if generic_delay is None:
        generic_delay = 60 + random.randint(0, 30)
    return RetryAfter(generic_delay)


class RetryPolicy:
    """Binds :func:`decide` to a :class:`PacingConfig` and a random source.

    Args:
        config: Pacing settings (attempt limit, margins, jitter).
        rng: Random generator for jitter; pass a seeded one in tests.
    """

    def __init__(
        self,
        config: PacingConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or PacingConfig()
        self._rng = rng or random.Random()

    def decide(
        self,
        error: ClassifiedError,
        attempt: int,
        consecutive_retries: int = 0,
    ) -> Action:
        """Decide for a classified error, deriving waits from its message."""
        cfg = self._config
        cooldown = COOLDOWN_FLOOR_SECONDS
        if error.kind == ErrorKind.COOLDOWN_ACTIVE:
            cooldown = parse_cooldown_seconds(error.message, cfg.cooldown_floor)
        generic = cfg.generic_retry_base + self._rng.randint(0, cfg.generic_retry_jitter)

        action = decide(
            error.kind,
            attempt,
            cfg.max_attempts,
            consecutive_retries=consecutive_retries,
            cooldown_seconds=cooldown,
            cooldown_margin=cfg.cooldown_margin,
            generic_delay=generic,
        )
        logger.debug(
            "Policy: kind=%s attempt=%d consecutive=%d -> %s",
            error.kind.value,
            attempt,
            consecutive_retries,
            action,
        )
        return action
