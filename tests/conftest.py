from __future__ import annotations

import io
from pathlib import Path

import pytest

from fleetsync_mcp.db.work_item_store import WorkItemStore
from fleetsync_mcp.services.event_bus import EventBus
from fleetsync_mcp.services.fleet import WorkerFleet
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.nudger import Nudger
from fleetsync_mcp.services.registry import WorkerRegistry
from fleetsync_mcp.services.work_queue import WorkQueue
from fleetsync_mcp.utils.config import Config


class FakeHandle:
    """In-memory stand-in for a worker process."""

    def __init__(self, with_stdin: bool = True):
        self.stdin = io.StringIO() if with_stdin else None
        self.stdout = io.StringIO()
        self.killed = False

    def kill(self) -> None:
        self.killed = True

    def is_running(self) -> bool:
        return not self.killed


class FakeSpawner:
    def __init__(self) -> None:
        self.spawned: list[tuple[str, str | None]] = []

    def spawn(self, command, cwd=None) -> FakeHandle:
        self.spawned.append((command, None))
        return FakeHandle()

    def spawn_with_resume(self, command, session_ref, cwd=None) -> FakeHandle:
        self.spawned.append((command, session_ref))
        return FakeHandle()


@pytest.fixture
def store(tmp_path: Path) -> WorkItemStore:
    return WorkItemStore(tmp_path / "items")


@pytest.fixture
def hooks(tmp_path: Path) -> HookChannel:
    return HookChannel(tmp_path / "workers")


@pytest.fixture
def registry() -> WorkerRegistry:
    return WorkerRegistry()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def nudger(hooks: HookChannel) -> Nudger:
    return Nudger(hooks, escalation_delay=0)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def fleet(
    registry: WorkerRegistry, nudger: Nudger, spawner: FakeSpawner, event_bus: EventBus
) -> WorkerFleet:
    return WorkerFleet(
        registry, nudger, spawner=spawner, worker_command="agent --headless", event_bus=event_bus
    )


@pytest.fixture
def work_queue(
    store: WorkItemStore, hooks: HookChannel, registry: WorkerRegistry, event_bus: EventBus
) -> WorkQueue:
    return WorkQueue(store, hooks, registry=registry, event_bus=event_bus)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        data_dir=tmp_path / "fleet",
        patrol_interval=3600,
        stuck_timeout=600,
        escalation_delay=0,
        worker_command="",
    )


@pytest.fixture
def handle() -> FakeHandle:
    return FakeHandle()
