"""Shared pytest fixtures for mediapacer tests.

Provides a fake clock whose ``sleep`` advances time instantly, a scripted
remote client, temporary sync/async databases, and an orchestrator factory
wired to the fake clock so every countdown completes without real waiting.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Callable

import pytest

from mediapacer.database import Database
from mediapacer.models import PacingConfig
from mediapacer.upload.cooldown import GlobalCooldownCoordinator
from mediapacer.upload.delay import InterruptibleDelay
from mediapacer.upload.orchestrator import UploadOrchestrator
from mediapacer.upload.state import AsyncQueueStore


class FakeClock:
    """Epoch clock advanced only by its own ``sleep``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    @property
    def elapsed(self) -> float:
        return sum(self.sleeps)


class ScriptedClient:
    """Remote client whose failures are scripted per payload / handle.

    ``upload_errors[payload]`` and ``archive_errors[handle]`` are lists of
    outcomes consumed one per call; an exception is raised, ``False`` (for
    archive) is returned as-is, and ``None`` (for upload) means no handle
    came back.  Once a list is empty, calls succeed.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str | None]] = []
        self.upload_errors: dict[str, list[Exception | None]] = {}
        self.archive_errors: dict[str, list[Exception | bool]] = {}
        self.probe_failures = 0
        self.locked_out = False
        self.cooldown: tuple[bool, int] = (False, 0)

    async def upload(self, payload: str) -> str | None:
        self.calls.append(("upload", payload))
        outcomes = self.upload_errors.get(payload)
        if outcomes:
            outcome = outcomes.pop(0)
            if outcome is None:
                return None
            raise outcome
        return f"handle-{payload}"

    async def archive(self, handle: str) -> bool:
        self.calls.append(("archive", handle))
        outcomes = self.archive_errors.get(handle)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, bool):
                return outcome
            raise outcome
        return True

    async def probe_network_stability(self) -> None:
        self.calls.append(("probe", None))
        if self.probe_failures > 0:
            self.probe_failures -= 1
            raise ConnectionError("network is unreachable")

    async def is_account_locked_out(self) -> bool:
        return self.locked_out

    async def is_on_cooldown(self) -> tuple[bool, int]:
        return self.cooldown

    @property
    def uploads(self) -> list[str]:
        return [arg for kind, arg in self.calls if kind == "upload"]

    @property
    def archives(self) -> list[str]:
        return [arg for kind, arg in self.calls if kind == "archive"]


PAYLOADS = ["photo-1.jpg", "photo-2.jpg", "photo-3.jpg"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def delay(clock: FakeClock) -> InterruptibleDelay:
    return InterruptibleDelay(sleep=clock.sleep)


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def tmp_db(db_path: Path) -> Database:
    """Create a temporary SQLite database (file-based for WAL support)."""
    db = Database(db_path)
    yield db
    db.close()


@pytest.fixture
def queue_id(tmp_db: Database) -> int:
    """A three-item queue of pending photos."""
    return tmp_db.create_queue("album", PAYLOADS)


@pytest.fixture
async def store(db_path: Path, tmp_db: Database):
    """Connected async store over the same database file as ``tmp_db``."""
    store = AsyncQueueStore(str(db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def make_orchestrator(
    client: ScriptedClient,
    store: AsyncQueueStore,
    queue_id: int,
    clock: FakeClock,
    delay: InterruptibleDelay,
) -> Callable[..., UploadOrchestrator]:
    """Factory for orchestrators on the fake clock; kwargs override PacingConfig."""

    def _make(**overrides: object) -> UploadOrchestrator:
        config = PacingConfig(**overrides)
        rng = random.Random(7)
        coordinator = GlobalCooldownCoordinator(client, store, config, rng, clock=clock)
        return UploadOrchestrator(
            client,
            store,
            queue_id,
            config,
            coordinator=coordinator,
            delay=delay,
            rng=rng,
        )

    return _make

