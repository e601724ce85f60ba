from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pydantic

from fleetsync_mcp.errors import NotFoundError, StorageError
from fleetsync_mcp.models.worker import WorkerRecord, WorkerStatus, WorkerType
from fleetsync_mcp.utils.clock import utc_now
from fleetsync_mcp.utils.files import atomic_write_text

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """In-memory index of known workers, optionally snapshotted to disk.

    Design:
    - Dict keyed by worker id, guarded by a ``threading.Lock``.
    - Every read returns copies so callers never mutate shared records.
    - With ``path`` set, the snapshot is loaded once at construction and
      rewritten atomically after each mutation. Without it the registry is
      rebuilt from heartbeats after a restart.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._workers: dict[str, WorkerRecord] = {}
        self._mu = threading.Lock()
        if self.path is not None:
            self._load(self.path)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, record: WorkerRecord) -> WorkerRecord:
        """Add or replace a worker; ``last_ping`` is refreshed."""
        with self._mu:
            stored = record.model_copy(update={"last_ping": utc_now()})
            self._workers[stored.id] = stored
            self._save()
        logger.info("Registered worker %s (%s)", stored.id, stored.name or "anonymous")
        return stored.model_copy()

    def deregister(self, worker_id: str) -> None:
        with self._mu:
            if self._workers.pop(worker_id, None) is None:
                raise NotFoundError(f"worker not found: {worker_id}")
            self._save()
        logger.info("Deregistered worker %s", worker_id)

    def heartbeat(
        self, worker_id: str, status: WorkerStatus | None = None, task: str | None = None
    ) -> WorkerRecord:
        """Record liveness, optionally with a new status and current task."""
        changes: dict[str, object] = {"last_ping": utc_now()}
        if status is not None:
            changes["status"] = status
        if task is not None:
            changes["task"] = task
        return self._modify(worker_id, changes)

    def ping(self, worker_id: str) -> WorkerRecord:
        return self._modify(worker_id, {"last_ping": utc_now()})

    def update_status(self, worker_id: str, status: WorkerStatus) -> WorkerRecord:
        return self._modify(worker_id, {"status": status, "last_ping": utc_now()})

    def update_task(self, worker_id: str, task: str) -> WorkerRecord:
        return self._modify(worker_id, {"task": task, "last_ping": utc_now()})

    def mark_stuck(self, worker_id: str) -> WorkerRecord:
        # last_ping is left alone: staleness must stay observable
        return self._modify(worker_id, {"status": WorkerStatus.STUCK})

    def mark_dead(self, worker_id: str) -> WorkerRecord:
        return self._modify(worker_id, {"status": WorkerStatus.DEAD})

    def clear(self) -> None:
        with self._mu:
            self._workers.clear()
            self._save()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, worker_id: str) -> WorkerRecord:
        with self._mu:
            record = self._workers.get(worker_id)
            if record is None:
                raise NotFoundError(f"worker not found: {worker_id}")
            return record.model_copy()

    def get_by_name(self, name: str) -> WorkerRecord:
        with self._mu:
            for record in self._workers.values():
                if name and record.name == name:
                    return record.model_copy()
        raise NotFoundError(f"worker not found: {name}")

    def list(self) -> list[WorkerRecord]:
        with self._mu:
            return [record.model_copy() for record in self._workers.values()]

    def list_by_type(self, worker_type: WorkerType) -> list[WorkerRecord]:
        return [record for record in self.list() if record.type == worker_type]

    def stale(self, threshold: timedelta, now: datetime | None = None) -> list[WorkerRecord]:
        """Workers whose last heartbeat is older than ``threshold``."""
        now = now or utc_now()
        return [record for record in self.list() if now - record.last_ping > threshold]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _modify(self, worker_id: str, changes: dict[str, object]) -> WorkerRecord:
        with self._mu:
            record = self._workers.get(worker_id)
            if record is None:
                raise NotFoundError(f"worker not found: {worker_id}")
            updated = record.model_copy(update=changes)
            self._workers[worker_id] = updated
            self._save()
            return updated.model_copy()

    def _save(self) -> None:
        """Persist the snapshot (caller must hold _mu)."""
        if self.path is None:
            return
        payload = {
            "workers": {
                worker_id: record.model_dump(mode="json")
                for worker_id, record in self._workers.items()
            }
        }
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2))
        except OSError as exc:
            raise StorageError(f"cannot write registry {self.path}") from exc

    def _load(self, path: Path) -> None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"cannot read registry {path}") from exc
        if not content.strip():
            return

        try:
            raw = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StorageError(f"malformed registry {path}") from exc
        for worker_id, data in (raw.get("workers") or {}).items():
            try:
                self._workers[worker_id] = WorkerRecord.model_validate(data)
            except pydantic.ValidationError:
                logger.warning("Skipping malformed worker record %s", worker_id)
        logger.info("Restored %d workers from %s", len(self._workers), path)
