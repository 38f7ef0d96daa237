"""Remote media service capabilities consumed by the orchestrator.

The concrete client (wire protocol, authentication, media preparation) lives
outside this package.  Anything implementing :class:`RemoteMediaClient` can
be plugged in; the CLI loads one from a ``"package.module:factory"`` path.

Failures are reported by raising -- preferably :class:`RemoteCallError`
with the service's message and code -- and are classified by message.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class RemoteMediaClient(Protocol):
    """Async capability surface of the remote media service."""

    async def upload(self, payload: str) -> str:
        """Upload *payload* and return the remote handle."""
        ...

    async def archive(self, handle: str) -> bool:
        """Archive the uploaded item; ``False`` means the service did not confirm."""
        ...

    async def probe_network_stability(self) -> None:
        """Return once the connection is usable; raise while it is unstable."""
        ...

    async def is_account_locked_out(self) -> bool:
        """Whether the service has flagged the account for automated behaviour."""
        ...

    async def is_on_cooldown(self) -> tuple[bool, int]:
        """Whether a server-declared cooldown is active, and its remaining seconds."""
        ...


def load_client(spec: str, session_token: str | None = None, **kwargs: Any) -> RemoteMediaClient:
    """Import and build a client from a ``"package.module:factory"`` path.

    The factory is called with ``session_token`` and any extra keyword
    arguments.

    Raises:
        ValueError: If *spec* is not of the form ``module:attribute``.
        ImportError: If the module cannot be imported.
        AttributeError: If the module has no such factory.
        TypeError: If the factory's result lacks the client capabilities.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(
            f"Client must be given as 'package.module:factory', got {spec!r}"
        )

    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    client = factory(session_token=session_token, **kwargs)
    if not isinstance(client, RemoteMediaClient):
        raise TypeError(f"{spec} did not return a remote media client")

    logger.info("Loaded remote client %s", spec)
    return client
