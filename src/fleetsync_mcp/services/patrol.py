from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from fleetsync_mcp.errors import CancelledError, NotFoundError
from fleetsync_mcp.models.worker import WorkerRecord, WorkerStatus
from fleetsync_mcp.services.registry import WorkerRegistry
from fleetsync_mcp.utils.clock import utc_now

logger = logging.getLogger(__name__)

RecoverFn = Callable[[str, threading.Event], object]
RunningChecker = Callable[[str], bool]


class Health(str, Enum):
    HEALTHY = "healthy"
    STUCK = "stuck"
    DEAD = "dead"


@dataclass
class WorkerHealth:
    worker_id: str
    name: str
    health: Health
    last_ping: datetime
    checked_at: datetime
    message: str = ""
    last_recovery: str = ""


@dataclass
class _Recovery:
    future: Future
    started_at: datetime
    harvested: bool = False


class Patrol:
    """Periodic health check over every registered worker.

    Design:
    - One daemon thread ticks every ``interval`` seconds; ``check_all`` runs
      immediately on start and then once per tick.
    - A worker silent for longer than ``stuck_timeout`` is marked stuck and a
      recovery is submitted to a thread pool. The loop never waits on it; the
      outcome is collected on a later tick.
    - At most one recovery per worker is in flight, and a still-stuck worker
      is only re-escalated once ``stuck_timeout`` has passed since the last
      attempt started.
    - ``stop()`` sets the shutdown token, which in-flight escalations also
      wait on, so shutdown never sits out an escalation delay.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        recover: RecoverFn,
        interval: float = 120.0,
        stuck_timeout: float = 600.0,
        running_checker: Optional[RunningChecker] = None,
        on_stuck: Optional[Callable[[WorkerHealth], None]] = None,
        on_dead: Optional[Callable[[WorkerHealth], None]] = None,
        max_recoveries: int = 4,
    ):
        self.registry = registry
        self._recover = recover
        self.interval = interval
        self.stuck_timeout = timedelta(seconds=stuck_timeout)
        self._running_checker = running_checker
        self._on_stuck = on_stuck
        self._on_dead = on_dead

        self._mu = threading.Lock()
        self._health: dict[str, WorkerHealth] = {}
        self._recoveries: dict[str, _Recovery] = {}
        self._shutdown = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=max_recoveries, thread_name_prefix="fleetsync-recovery"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="fleetsync-patrol", daemon=True)
        self._thread.start()
        logger.info(
            "Patrol started (interval=%ss, stuck_timeout=%ss)",
            self.interval,
            self.stuck_timeout.total_seconds(),
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        self._shutdown.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._executor.shutdown(wait=True, cancel_futures=True)
        logger.info("Patrol stopped")

    @property
    def shutdown_token(self) -> threading.Event:
        return self._shutdown

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while True:
            try:
                self.check_all()
            except Exception:
                logger.exception("Patrol tick failed")
            if self._shutdown.wait(self.interval):
                return

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_all(self, now: datetime | None = None) -> list[WorkerHealth]:
        now = now or utc_now()
        self._harvest()
        records = self.registry.list()
        results = [self._check_record(record, now) for record in records]

        known = {record.id for record in records}
        with self._mu:
            for worker_id in list(self._health):
                if worker_id not in known:
                    del self._health[worker_id]
        return results

    def check(self, worker_id: str, now: datetime | None = None) -> WorkerHealth:
        """Check one worker right away; NotFoundError if it is not registered."""
        self._harvest()
        return self._check_record(self.registry.get(worker_id), now or utc_now())

    def statuses(self) -> list[WorkerHealth]:
        with self._mu:
            return [replace(health) for health in self._health.values()]

    def recovery_in_flight(self, worker_id: str) -> bool:
        with self._mu:
            recovery = self._recoveries.get(worker_id)
            return recovery is not None and not recovery.future.done()

    def wait_for_recoveries(self, timeout: float | None = None) -> None:
        """Block until every submitted recovery has finished, then collect them."""
        with self._mu:
            futures = [recovery.future for recovery in self._recoveries.values()]
        wait(futures, timeout=timeout)
        self._harvest()

    def _check_record(self, record: WorkerRecord, now: datetime) -> WorkerHealth:
        with self._mu:
            previous = self._health.get(record.id)
        previous_health = previous.health if previous else None
        silent_for = now - record.last_ping

        if self._running_checker is not None and not self._running_checker(record.id):
            health, message = Health.DEAD, "worker process is not running"
        elif silent_for > self.stuck_timeout:
            health = Health.STUCK
            message = f"no heartbeat for {int(silent_for.total_seconds())}s"
        else:
            health, message = Health.HEALTHY, ""

        result = WorkerHealth(
            worker_id=record.id,
            name=record.name,
            health=health,
            last_ping=record.last_ping,
            checked_at=now,
            message=message,
            last_recovery=previous.last_recovery if previous else "",
        )
        with self._mu:
            self._health[record.id] = result

        try:
            if health == Health.DEAD:
                if record.status != WorkerStatus.DEAD:
                    self.registry.mark_dead(record.id)
                if previous_health != Health.DEAD:
                    logger.warning("Worker %s is dead: %s", record.id, message)
                    if self._on_dead is not None:
                        self._on_dead(replace(result))
            elif health == Health.STUCK:
                if record.status != WorkerStatus.STUCK:
                    self.registry.mark_stuck(record.id)
                if previous_health != Health.STUCK:
                    logger.warning("Worker %s is stuck: %s", record.id, message)
                    if self._on_stuck is not None:
                        self._on_stuck(replace(result))
                self._submit_recovery(record.id, now)
            elif record.status in (WorkerStatus.STUCK, WorkerStatus.DEAD):
                self.registry.update_status(record.id, WorkerStatus.ACTIVE)
                logger.info("Worker %s is healthy again (was %s)", record.id, record.status.value)
        except NotFoundError:
            logger.debug("Worker %s deregistered during patrol", record.id)
        return result

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _submit_recovery(self, worker_id: str, now: datetime) -> None:
        if self._shutdown.is_set():
            return
        with self._mu:
            current = self._recoveries.get(worker_id)
            if current is not None:
                if not current.future.done():
                    return
                if now - current.started_at < self.stuck_timeout:
                    return
            future = self._executor.submit(self._recover, worker_id, self._shutdown)
            self._recoveries[worker_id] = _Recovery(future=future, started_at=now)
        logger.info("Escalating recovery for %s", worker_id)

    def _harvest(self) -> None:
        """Log finished recoveries and note the outcome on the worker's health."""
        with self._mu:
            finished = [
                (worker_id, recovery)
                for worker_id, recovery in self._recoveries.items()
                if recovery.future.done() and not recovery.harvested
            ]
            for _, recovery in finished:
                recovery.harvested = True

        for worker_id, recovery in finished:
            future = recovery.future
            if future.cancelled():
                outcome = "cancelled"
            else:
                exc = future.exception()
                if exc is None:
                    outcome = f"recovered ({_level_label(future.result())})"
                    logger.info("Recovery for %s succeeded: %s", worker_id, outcome)
                elif isinstance(exc, CancelledError):
                    outcome = "cancelled"
                else:
                    outcome = f"failed: {exc}"
                    logger.error("Recovery for %s failed: %s", worker_id, exc)
            with self._mu:
                health = self._health.get(worker_id)
                if health is not None:
                    health.last_recovery = outcome


def _level_label(level: object) -> str:
    label = getattr(level, "label", None)
    return label if isinstance(label, str) else str(level)
