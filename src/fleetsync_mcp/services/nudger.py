"""Escalating recovery for stuck workers.

Three levels, tried in order by :meth:`Nudger.nudge_escalating`:

0. wake    - write a newline to the worker's live stdin
1. hook    - drop a ``nudge`` message in the worker's hook file
2. restart - kill the process; respawning with resume is the spawner's job

The hook level needs nothing but a name, which is why workers can be
registered without a process handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from fleetsync_mcp.errors import CancelledError, NoHandleError, NotFoundError, ValidationError
from fleetsync_mcp.models.hook import HookMessage, HookType
from fleetsync_mcp.models.nudge import NudgeEvent, NudgeLevel, parse_level
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.process import WorkerHandle

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_DELAY = 30.0


@dataclass
class _Entry:
    worker_id: str
    name: str
    handle: WorkerHandle | None


class Nudger:
    """Nudges registered workers and keeps a per-worker attempt history."""

    def __init__(self, hooks: HookChannel, escalation_delay: float = DEFAULT_ESCALATION_DELAY):
        self.hooks = hooks
        self._mu = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._name_to_id: dict[str, str] = {}
        self._history: dict[str, list[NudgeEvent]] = {}
        self._escalation_delay = escalation_delay

    def set_escalation_delay(self, seconds: float) -> None:
        with self._mu:
            self._escalation_delay = seconds

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_worker(
        self, worker_id: str, name: str = "", handle: WorkerHandle | None = None
    ) -> None:
        with self._mu:
            previous = self._entries.get(worker_id)
            if previous is not None and previous.name and previous.name != name:
                self._name_to_id.pop(previous.name, None)
            self._entries[worker_id] = _Entry(worker_id, name, handle)
            if name:
                self._name_to_id[name] = worker_id

    def unregister_worker(self, worker_id: str) -> None:
        with self._mu:
            entry = self._entries.pop(worker_id, None)
            if entry is not None and entry.name and self._name_to_id.get(entry.name) == worker_id:
                del self._name_to_id[entry.name]

    def get_id_by_name(self, name: str) -> str | None:
        with self._mu:
            return self._name_to_id.get(name)

    def is_registered(self, worker_id: str) -> bool:
        with self._mu:
            return worker_id in self._entries

    def handle(self, worker_id: str) -> WorkerHandle | None:
        with self._mu:
            entry = self._entries.get(worker_id)
            return entry.handle if entry is not None else None

    # ------------------------------------------------------------------
    # Nudging
    # ------------------------------------------------------------------

    def nudge(self, worker_id: str, level: NudgeLevel | int | str) -> None:
        """Attempt exactly one level and record the outcome."""
        level = parse_level(level)
        with self._mu:
            entry = self._entries.get(worker_id)
        if entry is None:
            raise NotFoundError(f"worker not registered for nudging: {worker_id}")

        try:
            if level == NudgeLevel.WAKE:
                self._wake(entry)
            elif level == NudgeLevel.HOOK:
                self._hook(entry)
            else:
                self._restart(entry)
        except Exception as exc:
            self._record(worker_id, NudgeEvent(level=level, success=False, error=str(exc)))
            logger.warning("Nudge %s failed for %s: %s", level.label, worker_id, exc)
            raise
        self._record(worker_id, NudgeEvent(level=level, success=True))
        logger.info("Nudged %s (level %d: %s)", worker_id, level, level.label)

    def nudge_by_name(self, name: str, level: NudgeLevel | int | str) -> None:
        worker_id = self.get_id_by_name(name)
        if worker_id is None:
            raise NotFoundError(f"worker not registered for nudging: {name}")
        self.nudge(worker_id, level)

    def nudge_escalating(
        self, worker_id: str, cancel: threading.Event | None = None
    ) -> NudgeLevel:
        """Try wake, hook, then restart until one succeeds.

        Returns the level that worked. Waits ``escalation_delay`` between
        attempts; ``cancel`` aborts promptly with CancelledError. When every
        level fails the last error is raised.
        """
        cancel = cancel or threading.Event()
        with self._mu:
            delay = self._escalation_delay

        *earlier, final = list(NudgeLevel)
        for level in earlier:
            if cancel.is_set():
                raise CancelledError(f"escalation for {worker_id} cancelled")
            try:
                self.nudge(worker_id, level)
                return level
            except NotFoundError:
                raise
            except Exception:
                pass  # recorded in history; try the next level
            if cancel.wait(delay):
                raise CancelledError(f"escalation for {worker_id} cancelled")

        if cancel.is_set():
            raise CancelledError(f"escalation for {worker_id} cancelled")
        self.nudge(worker_id, final)
        return final

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def history(self, worker_id: str) -> list[NudgeEvent]:
        with self._mu:
            return [event.model_copy() for event in self._history.get(worker_id, [])]

    def all_history(self) -> dict[str, list[NudgeEvent]]:
        with self._mu:
            return {
                worker_id: [event.model_copy() for event in events]
                for worker_id, events in self._history.items()
            }

    def clear_history(self, worker_id: str) -> None:
        with self._mu:
            self._history.pop(worker_id, None)

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    @staticmethod
    def _wake(entry: _Entry) -> None:
        stdin = entry.handle.stdin if entry.handle is not None else None
        if stdin is None:
            raise NoHandleError(f"no stdin available for worker {entry.worker_id}")
        try:
            stdin.write("\n")
            stdin.flush()
        except (OSError, ValueError) as exc:
            raise NoHandleError(f"failed to write to stdin of {entry.worker_id}: {exc}") from exc

    def _hook(self, entry: _Entry) -> None:
        if not entry.name:
            raise ValidationError(f"worker {entry.worker_id} has no name, cannot write hook")
        self.hooks.write(
            entry.name, HookMessage(type=HookType.NUDGE, message="Wake up - nudge signal")
        )

    @staticmethod
    def _restart(entry: _Entry) -> None:
        if entry.handle is None:
            raise NoHandleError(f"no process handle for worker {entry.worker_id}")
        entry.handle.kill()

    def _record(self, worker_id: str, event: NudgeEvent) -> None:
        with self._mu:
            self._history.setdefault(worker_id, []).append(event)
