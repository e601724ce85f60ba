from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Iterable

import pydantic

from fleetsync_mcp.errors import NotFoundError, StorageError, ValidationError
from fleetsync_mcp.models.work_item import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    DependencyTree,
    EventType,
    WorkItem,
    WorkItemEvent,
    WorkItemFilter,
    WorkItemStatus,
)
from fleetsync_mcp.utils.clock import utc_now
from fleetsync_mcp.utils.files import atomic_write_text
from fleetsync_mcp.utils.rwlock import RWLock

logger = logging.getLogger(__name__)

_ITEMS_FILE = "items.jsonl"
_ID_PREFIX = "wi-"
_EVENT_PREFIX = "ev-"


def _new_id(prefix: str) -> str:
    return prefix + secrets.token_hex(3)


class WorkItemStore:
    """JSONL-backed work-item store with dependency-aware scheduling queries.

    Design:
    - Every operation reads the whole backing file; there is no cache.
    - Mutations rewrite the full set through a temp file and ``os.replace``.
    - One reader/writer lock per instance: reads shared, writes exclusive.
    - Malformed lines are skipped on read rather than failing the operation.
    """

    def __init__(self, directory: str | Path, branch_prefix: str = "fleet/"):
        self.directory = Path(directory)
        self.path = self.directory / _ITEMS_FILE
        self.branch_prefix = branch_prefix
        self._lock = RWLock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create store directory {self.directory}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, item: WorkItem) -> WorkItem:
        """Assign an id and timestamps, record a ``created`` event and persist."""
        _validate(item)
        with self._lock.write():
            items = self._read_all()
            taken = {existing.id for existing in items}
            item_id = _new_id(_ID_PREFIX)
            while item_id in taken:
                item_id = _new_id(_ID_PREFIX)

            now = utc_now()
            created = item.model_copy(
                update={
                    "id": item_id,
                    "created_at": now,
                    "updated_at": now,
                    "branch": f"{self.branch_prefix}{item_id}",
                    "history": [
                        WorkItemEvent(
                            id=_new_id(_EVENT_PREFIX),
                            timestamp=now,
                            type=EventType.CREATED,
                            actor=item.created_by or "user",
                        )
                    ],
                },
                deep=True,
            )
            items.append(created)
            self._write_all(items)

        logger.info("Created work item %s (%s)", created.id, created.title)
        return created.model_copy(deep=True)

    def update(self, item: WorkItem, actor: str = "system") -> WorkItem:
        """Replace the stored record with ``item``.

        Stored history is kept as-is; caller events not yet stored (by id) are
        appended after it. A status change appends one ``status_changed`` event.
        """
        _validate(item)
        with self._lock.write():
            items = self._read_all()
            index = _index_of(items, item.id)
            if index is None:
                raise NotFoundError(f"work item not found: {item.id}")
            old = items[index]
            now = utc_now()

            history = [event.model_copy() for event in old.history]
            known = {event.id for event in history if event.id}
            for event in item.history:
                if event.id and event.id in known:
                    continue
                history.append(_complete_event(event, now))

            if old.assignee != item.assignee:
                history.append(
                    WorkItemEvent(
                        id=_new_id(_EVENT_PREFIX),
                        timestamp=now,
                        type=EventType.ASSIGNED,
                        actor=actor,
                        from_value=old.assignee or None,
                        to=item.assignee or None,
                    )
                )

            closed_at = item.closed_at
            if old.status != item.status:
                history.append(
                    WorkItemEvent(
                        id=_new_id(_EVENT_PREFIX),
                        timestamp=now,
                        type=EventType.STATUS_CHANGED,
                        actor=actor,
                        from_value=old.status.value,
                        to=item.status.value,
                    )
                )
                if item.status == WorkItemStatus.CLOSED:
                    closed_at = closed_at or now
                elif old.status == WorkItemStatus.CLOSED:
                    closed_at = None

            updated = item.model_copy(
                update={
                    # identity and creation data are owned by the store
                    "created_at": old.created_at,
                    "branch": item.branch or old.branch,
                    "updated_at": now,
                    "closed_at": closed_at,
                    "history": history,
                },
                deep=True,
            )
            items[index] = updated
            self._write_all(items)

        if old.status != updated.status:
            logger.info(
                "Work item %s: %s -> %s", updated.id, old.status.value, updated.status.value
            )
        return updated.model_copy(deep=True)

    def add_event(self, item_id: str, event: WorkItemEvent) -> WorkItemEvent:
        return self.add_events(item_id, [event])[0]

    def add_events(self, item_id: str, events: Iterable[WorkItemEvent]) -> list[WorkItemEvent]:
        """Append events to an item's history, all or nothing."""
        with self._lock.write():
            items = self._read_all()
            index = _index_of(items, item_id)
            if index is None:
                raise NotFoundError(f"work item not found: {item_id}")

            now = utc_now()
            completed = [_complete_event(event, now) for event in events]
            target = items[index]
            items[index] = target.model_copy(
                update={"history": [*target.history, *completed], "updated_at": now}
            )
            self._write_all(items)
        return [event.model_copy() for event in completed]

    def add_comment(self, item_id: str, actor: str, text: str) -> WorkItemEvent:
        return self.add_event(
            item_id, WorkItemEvent(type=EventType.COMMENTED, actor=actor, comment=text)
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> WorkItem:
        with self._lock.read():
            return _find(self._read_all(), item_id)

    def list(self, filter: WorkItemFilter | None = None) -> list[WorkItem]:
        with self._lock.read():
            items = self._read_all()
        if filter is None:
            return items
        return [item for item in items if filter.matches(item)]

    def list_ready(self, workspace: str | None = None) -> list[WorkItem]:
        """Open items with no unclosed blocker, highest priority (0) first.

        Ties keep file order.
        """
        with self._lock.read():
            items = self._read_all()

        blocked: set[str] = set()
        for item in items:
            if item.status != WorkItemStatus.CLOSED:
                blocked.update(item.blocking_ids)

        ready = [
            item
            for item in items
            if item.status == WorkItemStatus.OPEN
            and (not workspace or item.workspace == workspace)
            and item.id not in blocked
        ]
        return sorted(ready, key=lambda item: item.priority)

    def get_blocked_by(self, item_id: str) -> list[WorkItem]:
        """Items whose ``blocks`` list names ``item_id``."""
        with self._lock.read():
            items = self._read_all()
        _find(items, item_id)
        return [item for item in items if item_id in item.blocking_ids]

    def get_blocking(self, item_id: str) -> list[WorkItem]:
        """Items named in ``item_id``'s ``blocks`` list; unknown ids are skipped."""
        with self._lock.read():
            items = self._read_all()
        by_id = {item.id: item for item in items}
        target = _find(items, item_id)
        return [by_id[blocked] for blocked in target.blocking_ids if blocked in by_id]

    def get_dependency_tree(self, item_id: str) -> DependencyTree:
        """Resolve blockers and blocked items recursively.

        Each item is expanded once; revisits truncate the branch. Cycles in
        the ``blocks`` graph among the visited items are reported on the root.
        """
        with self._lock.read():
            items = self._read_all()
        by_id = {item.id: item for item in items}
        if item_id not in by_id:
            raise NotFoundError(f"work item not found: {item_id}")

        blockers: dict[str, list[str]] = {}
        for item in items:
            for blocked in item.blocking_ids:
                blockers.setdefault(blocked, []).append(item.id)

        visited: set[str] = set()

        def build(current: str) -> DependencyTree:
            visited.add(current)
            node = DependencyTree(item=by_id[current])
            for blocker in blockers.get(current, []):
                if blocker not in visited:
                    node.blocked_by.append(build(blocker))
            for blocked in by_id[current].blocking_ids:
                if blocked in by_id and blocked not in visited:
                    node.blocking.append(build(blocked))
            return node

        tree = build(item_id)
        tree.cycles = [
            cycle for cycle in _find_cycles(by_id) if any(node in visited for node in cycle)
        ]
        if tree.cycles:
            logger.warning("Dependency cycles around %s: %s", item_id, tree.cycles)
        return tree

    def find_cycles(self) -> list[list[str]]:
        """Cycles in the forward ``blocks`` graph, one id path per cycle."""
        with self._lock.read():
            items = self._read_all()
        return _find_cycles({item.id: item for item in items})

    # ------------------------------------------------------------------
    # Internal helpers (caller must hold the lock)
    # ------------------------------------------------------------------

    def _read_all(self) -> list[WorkItem]:
        try:
            handle = open(self.path, encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageError(f"cannot read {self.path}") from exc

        items: list[WorkItem] = []
        with handle:
            try:
                for lineno, line in enumerate(handle, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        items.append(WorkItem.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, pydantic.ValidationError):
                        logger.warning("Skipping malformed record at %s:%d", self.path, lineno)
            except OSError as exc:
                raise StorageError(f"cannot read {self.path}") from exc
        return items

    def _write_all(self, items: list[WorkItem]) -> None:
        content = "".join(item.to_json_line() + "\n" for item in items)
        try:
            atomic_write_text(self.path, content)
        except OSError as exc:
            raise StorageError(f"cannot write {self.path}") from exc


def _validate(item: WorkItem) -> None:
    if not MIN_PRIORITY <= item.priority <= MAX_PRIORITY:
        raise ValidationError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {item.priority}"
        )
    if item.id and item.id in item.blocking_ids:
        raise ValidationError(f"work item {item.id} cannot block itself")


def _complete_event(event: WorkItemEvent, now: datetime) -> WorkItemEvent:
    return event.model_copy(
        update={
            "id": event.id or _new_id(_EVENT_PREFIX),
            "timestamp": event.timestamp or now,
        }
    )


def _index_of(items: list[WorkItem], item_id: str) -> int | None:
    for index, item in enumerate(items):
        if item.id == item_id:
            return index
    return None


def _find(items: list[WorkItem], item_id: str) -> WorkItem:
    index = _index_of(items, item_id)
    if index is None:
        raise NotFoundError(f"work item not found: {item_id}")
    return items[index]


def _find_cycles(by_id: dict[str, WorkItem]) -> list[list[str]]:
    # Iterative DFS; a back edge to a node on the current path closes a cycle.
    cycles: list[list[str]] = []
    seen: set[frozenset[str]] = set()
    done: set[str] = set()

    for root in by_id:
        if root in done:
            continue
        path: list[str] = []
        on_path: set[str] = set()
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, edge = stack.pop()
            if edge == 0:
                path.append(node)
                on_path.add(node)
            targets = [t for t in by_id[node].blocking_ids if t in by_id]
            if edge < len(targets):
                stack.append((node, edge + 1))
                target = targets[edge]
                if target in on_path:
                    cycle = path[path.index(target):]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                elif target not in done:
                    stack.append((target, 0))
            else:
                path.pop()
                on_path.discard(node)
                done.add(node)
    return cycles
