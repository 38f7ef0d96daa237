"""Maps an opaque remote-call failure to one of six error kinds.

Rules are evaluated in a fixed order and the first match wins:

1. ``SESSION_EXPIRED``  -- authenticated session no longer valid
2. ``BOT_DETECTED``     -- challenge / checkpoint / spam signal
3. ``ITEM_REJECTED``    -- the payload itself is invalid
4. ``COOLDOWN_ACTIVE``  -- server-imposed "please wait" rate limit
5. ``NETWORK_TRANSIENT``-- connectivity-layer failure
6. ``GENERIC_TRANSIENT``-- anything else

A message mentioning both a bot signal and a network word resolves to
``BOT_DETECTED``; the stricter class always wins.
"""

from __future__ import annotations

import re
import socket
from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Failure classes, each with its own recovery policy."""

    SESSION_EXPIRED = "session_expired"
    BOT_DETECTED = "bot_detected"
    ITEM_REJECTED = "item_rejected"
    COOLDOWN_ACTIVE = "cooldown_active"
    NETWORK_TRANSIENT = "network_transient"
    GENERIC_TRANSIENT = "generic_transient"


@dataclass(frozen=True)
class ClassifiedError:
    """An error kind together with the message it was derived from."""

    kind: ErrorKind
    message: str


_SESSION_PATTERNS = (
    r"session expired",
    r"session invalid",
    r"invalid session",
    r"please log ?in again",
    r"login required",
)

_BOT_PATTERNS = (
    r"challenge",
    r"checkpoint",
    r"\bspam\b",
    r"login_required",
    r"feedback_required",
    r"\bbots?\b",
    r"automated behaviou?r",
)

_REJECTED_PATTERNS = (
    r"aspect ratio",
    r"invalid image",
    r"file format",
    r"unsupported (media|format)",
    r"dimensions?",
    r"content rejected",
)

_COOLDOWN_PATTERNS = (
    r"please wait.*before upload",
    r"please wait.*uploading another",
    r"please wait.*try again",
    r"rate limit",
    r"too many requests",
)

_NETWORK_PATTERNS = (
    r"time(d)? ?out",
    r"network",
    r"connection",
    r"offline",
    r"no internet",
    r"unreachable",
    r"\bdns\b",
    r"name resolution",
)

_NETWORK_CODES = frozenset(
    {
        "ETIMEDOUT",
        "ECONNRESET",
        "ECONNREFUSED",
        "ECONNABORTED",
        "ENETUNREACH",
        "EHOSTUNREACH",
        "ENOTCONN",
        "EAI_AGAIN",
    }
)

_COOLDOWN_CODES = frozenset({429, "429"})

_RULES: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = tuple(
    (kind, re.compile("|".join(patterns)))
    for kind, patterns in (
        (ErrorKind.SESSION_EXPIRED, _SESSION_PATTERNS),
        (ErrorKind.BOT_DETECTED, _BOT_PATTERNS),
        (ErrorKind.ITEM_REJECTED, _REJECTED_PATTERNS),
        (ErrorKind.COOLDOWN_ACTIVE, _COOLDOWN_PATTERNS),
        (ErrorKind.NETWORK_TRANSIENT, _NETWORK_PATTERNS),
    )
)


def error_message(error: BaseException | str) -> str:
    """Return the message text of *error* (the string itself for ``str``)."""
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or type(error).__name__


def classify(error: BaseException | str) -> ErrorKind:
    """Classify *error* into an :class:`ErrorKind`.

    Args:
        error: An exception raised by the remote client, or a bare message.

    Returns:
        The first matching kind in precedence order.
    """
    text = error_message(error).lower()

    for kind, pattern in _RULES:
        if kind == ErrorKind.COOLDOWN_ACTIVE and _code_of(error) in _COOLDOWN_CODES:
            return kind
        if pattern.search(text):
            return kind
        if kind == ErrorKind.NETWORK_TRANSIENT and _is_network_exception(error):
            return kind

    return ErrorKind.GENERIC_TRANSIENT


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Classify *error* and keep its message for logging and item records."""
    return ClassifiedError(kind=classify(error), message=error_message(error))


def _code_of(error: BaseException | str) -> object:
    if isinstance(error, str):
        return None
    return getattr(error, "code", None)


def _is_network_exception(error: BaseException | str) -> bool:
    if isinstance(error, str):
        return False
    if isinstance(error, (TimeoutError, ConnectionError, socket.gaierror)):
        return True
    code = _code_of(error)
    return isinstance(code, str) and code.upper() in _NETWORK_CODES
