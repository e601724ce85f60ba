from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from fleetsync_mcp.errors import FleetSyncError, NoHandleError, NotFoundError, ValidationError
from fleetsync_mcp.models.hook import HookMessage, HookType, parse_signal
from fleetsync_mcp.models.nudge import NudgeEvent, NudgeLevel, parse_level
from fleetsync_mcp.models.worker import WorkerRecord, WorkerStatus, WorkerType
from fleetsync_mcp.services.event_bus import EventBus
from fleetsync_mcp.services.jsonrpc import JsonRpcClient
from fleetsync_mcp.services.nudger import Nudger
from fleetsync_mcp.services.process import SubprocessSpawner, WorkerHandle
from fleetsync_mcp.services.registry import WorkerRegistry

logger = logging.getLogger(__name__)

VIRTUAL_PREFIX = "virtual-"


class WorkerFleet:
    """Keeps the registry and the nudger in step for every worker.

    The registry answers "who is out there and when did they last report";
    the nudger owns live process handles. Workers restored from a registry
    snapshot, or nudged by a name nobody registered, get a handle-less
    nudger entry so the hook level still reaches them.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        nudger: Nudger,
        spawner: SubprocessSpawner | None = None,
        worker_command: str = "",
        event_bus: EventBus | None = None,
    ):
        self.registry = registry
        self.nudger = nudger
        self.spawner = spawner
        self.worker_command = worker_command
        self.event_bus = event_bus or EventBus()
        self._rpc: dict[str, tuple[WorkerHandle, JsonRpcClient]] = {}
        self._rpc_mu = threading.Lock()

        for record in registry.list():
            nudger.register_worker(record.id, record.name)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register_worker(
        self,
        worker_id: str,
        name: str = "",
        type: WorkerType = WorkerType.EPHEMERAL,
        handle: WorkerHandle | None = None,
        workspace: str = "",
        session_id: str | None = None,
        task: str = "",
        status: WorkerStatus = WorkerStatus.ACTIVE,
    ) -> WorkerRecord:
        if not worker_id:
            raise ValidationError("worker id is required")
        record = self.registry.register(
            WorkerRecord(
                id=worker_id,
                name=name,
                type=type,
                status=status,
                task=task,
                workspace=workspace,
                session_id=session_id,
            )
        )
        self.nudger.register_worker(worker_id, name, handle)
        self.event_bus.publish(
            "worker_registered", {"worker_id": worker_id, "name": name, "type": type.value}
        )
        return record

    def deregister_worker(self, worker_id: str) -> None:
        self.registry.deregister(worker_id)
        self.nudger.unregister_worker(worker_id)
        with self._rpc_mu:
            self._rpc.pop(worker_id, None)
        self.event_bus.publish("worker_deregistered", {"worker_id": worker_id})

    def spawn_worker(
        self,
        worker_id: str,
        name: str,
        command: str = "",
        cwd: str | Path | None = None,
        type: WorkerType = WorkerType.PERSISTENT,
        workspace: str = "",
    ) -> WorkerRecord:
        """Start a worker process and register it with its live handle."""
        command = command or self.worker_command
        if self.spawner is None or not command:
            raise ValidationError("spawning needs a spawner and a worker command")
        handle = self.spawner.spawn(command, cwd=cwd)
        return self.register_worker(
            worker_id, name=name, type=type, handle=handle, workspace=workspace
        )

    def heartbeat(
        self,
        worker_id: str,
        status: WorkerStatus | None = None,
        task: str | None = None,
        name: str = "",
    ) -> WorkerRecord:
        """Refresh liveness. Unknown ids are registered on the spot."""
        try:
            return self.registry.heartbeat(worker_id, status=status, task=task)
        except NotFoundError:
            logger.info("Heartbeat from unknown worker %s, registering it", worker_id)
            return self.register_worker(
                worker_id,
                name=name,
                task=task or "",
                status=status or WorkerStatus.ACTIVE,
            )

    def list_workers(self) -> list[WorkerRecord]:
        return self.registry.list()

    def is_running(self, worker_id: str) -> bool:
        """Whether the worker's process is alive; True when no handle is held."""
        handle = self.nudger.handle(worker_id)
        if handle is None:
            return True
        return handle.is_running()

    # ------------------------------------------------------------------
    # Nudging
    # ------------------------------------------------------------------

    def nudge(self, name: str, level: NudgeLevel | int | str) -> None:
        level = parse_level(level)
        worker_id = self._resolve(name)
        self.nudger.nudge(worker_id, level)
        self.event_bus.publish(
            "worker_nudged", {"worker_id": worker_id, "name": name, "level": int(level)}
        )

    def nudge_escalating(self, name: str, cancel: threading.Event | None = None) -> NudgeLevel:
        return self.recover_worker(self._resolve(name), cancel)

    def recover_worker(self, worker_id: str, cancel: threading.Event | None = None) -> NudgeLevel:
        """Escalate until a level works; a restart respawns when configured."""
        level = self.nudger.nudge_escalating(worker_id, cancel)
        if level == NudgeLevel.RESTART:
            self._respawn(worker_id)
        self.event_bus.publish(
            "worker_recovered", {"worker_id": worker_id, "level": int(level)}
        )
        return level

    def nudge_all(self, level: NudgeLevel) -> dict[str, str | None]:
        """Nudge every named worker; maps name to error text, None on success."""
        results: dict[str, str | None] = {}
        for record in self.registry.list():
            if not record.name:
                continue
            try:
                self.nudge(record.name, level)
                results[record.name] = None
            except FleetSyncError as exc:
                results[record.name] = str(exc)
        return results

    def history(self, name: str) -> list[NudgeEvent]:
        worker_id = self.nudger.get_id_by_name(name)
        if worker_id is None:
            return []
        return self.nudger.history(worker_id)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def signal(self, name: str, signal: HookType | str, message: str = "") -> HookMessage:
        """Send ``abort``, ``pause`` or ``resume`` to a worker through its hook."""
        if not name:
            raise ValidationError("worker name is required")
        hook_type = parse_signal(signal)
        written = self.nudger.hooks.write(
            name, HookMessage(type=hook_type, message=message or f"{hook_type.value} requested")
        )
        logger.info("Sent %s to %s", hook_type.value, name)
        self.event_bus.publish("worker_signalled", {"name": name, "signal": hook_type.value})
        return written

    def call_worker(self, name: str, method: str, params: Any = None) -> Any:
        """Make a JSON-RPC request over the worker's stdio and return the result.

        Needs a live process handle; workers known only by name or restored
        from a snapshot raise NoHandleError.
        """
        worker_id = self._resolve(name)
        return self._rpc_client(worker_id).call(method, params)

    def _rpc_client(self, worker_id: str) -> JsonRpcClient:
        handle = self.nudger.handle(worker_id)
        if handle is None or handle.stdin is None or handle.stdout is None:
            raise NoHandleError(f"no stdio available for worker {worker_id}")
        with self._rpc_mu:
            cached = self._rpc.get(worker_id)
            # a respawn replaces the handle, so the client is rebuilt
            if cached is None or cached[0] is not handle:
                cached = (handle, JsonRpcClient(handle.stdin, handle.stdout))
                self._rpc[worker_id] = cached
            return cached[1]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve(self, name: str) -> str:
        if not name:
            raise ValidationError("worker name is required")
        worker_id = self.nudger.get_id_by_name(name)
        if worker_id is not None:
            return worker_id

        try:
            record = self.registry.get_by_name(name)
        except NotFoundError:
            worker_id = f"{VIRTUAL_PREFIX}{name}"
            logger.debug("Nudging unregistered worker %s as %s", name, worker_id)
        else:
            worker_id = record.id
        self.nudger.register_worker(worker_id, name)
        return worker_id

    def _respawn(self, worker_id: str) -> None:
        if self.spawner is None or not self.worker_command:
            logger.info("Worker %s was killed; no worker command set, not respawning", worker_id)
            return
        try:
            record = self.registry.get(worker_id)
        except NotFoundError:
            logger.info("Worker %s was killed and is no longer registered", worker_id)
            return

        handle = self.spawner.spawn_with_resume(self.worker_command, record.session_id)
        self.nudger.register_worker(worker_id, record.name, handle)
        self.registry.heartbeat(worker_id, status=WorkerStatus.ACTIVE)
        logger.info("Respawned worker %s (session %s)", worker_id, record.session_id or "new")
