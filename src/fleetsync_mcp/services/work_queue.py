from __future__ import annotations

import logging
from typing import Any

import pydantic

from fleetsync_mcp.db.work_item_store import WorkItemStore
from fleetsync_mcp.errors import NotFoundError, ValidationError
from fleetsync_mcp.models.hook import HookMessage, HookType
from fleetsync_mcp.models.work_item import (
    DependencyTree,
    EventType,
    WorkItem,
    WorkItemEvent,
    WorkItemFilter,
    WorkItemStatus,
)
from fleetsync_mcp.models.worker import WorkerStatus
from fleetsync_mcp.services.event_bus import EventBus
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.registry import WorkerRegistry

logger = logging.getLogger(__name__)


class WorkQueue:
    """Manages work items and hands them to workers."""

    def __init__(
        self,
        store: WorkItemStore,
        hooks: HookChannel,
        registry: WorkerRegistry | None = None,
        event_bus: EventBus | None = None,
    ):
        self.store = store
        self.hooks = hooks
        self.registry = registry
        self.event_bus = event_bus or EventBus()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def create_item(self, item: WorkItem) -> WorkItem:
        created = self.store.create(item)
        self.event_bus.publish(
            "item_created", {"item_id": created.id, "title": created.title}
        )
        return created

    def get_item(self, item_id: str) -> WorkItem:
        return self.store.get(item_id)

    def list_items(self, filter: WorkItemFilter | None = None) -> list[WorkItem]:
        return self.store.list(filter)

    def update_item(self, item: WorkItem, actor: str = "system") -> WorkItem:
        updated = self.store.update(item, actor=actor)
        self.event_bus.publish(
            "item_updated",
            {"item_id": updated.id, "status": updated.status.value, "actor": actor},
        )
        return updated

    def update_fields(self, item_id: str, actor: str = "system", **changes: Any) -> WorkItem:
        """Apply a partial update; ``None`` values are ignored."""
        changes = {key: value for key, value in changes.items() if value is not None}
        unknown = set(changes) - set(WorkItem.model_fields)
        if unknown:
            raise ValidationError(f"unknown work item fields: {', '.join(sorted(unknown))}")
        current = self.store.get(item_id)
        try:
            merged = WorkItem.model_validate({**current.model_dump(), **changes})
        except pydantic.ValidationError as exc:
            raise ValidationError(f"invalid update for {item_id}: {exc}") from exc
        return self.update_item(merged, actor=actor)

    def close_item(self, item_id: str, reason: str = "", actor: str = "system") -> WorkItem:
        item = self.store.get(item_id)
        closed = item.model_copy(
            update={"status": WorkItemStatus.CLOSED, "close_reason": reason or None}
        )
        return self.update_item(closed, actor=actor)

    def approve(self, item_id: str, actor: str = "user") -> WorkItem:
        """Release a ``pending_approval`` item back to ``open``."""
        item = self._pending(item_id)
        approved = self.update_item(
            item.model_copy(update={"status": WorkItemStatus.OPEN}), actor=actor
        )
        logger.info("Approved %s by %s", item_id, actor)
        self.event_bus.publish("item_approved", {"item_id": item_id, "actor": actor})
        return approved

    def reject(self, item_id: str, reason: str = "", actor: str = "user") -> WorkItem:
        """Close a ``pending_approval`` item with a reason."""
        item = self._pending(item_id)
        reason = reason or "rejected by user"
        rejected = self.update_item(
            item.model_copy(update={"status": WorkItemStatus.CLOSED, "close_reason": reason}),
            actor=actor,
        )
        logger.info("Rejected %s by %s: %s", item_id, actor, reason)
        self.event_bus.publish(
            "item_rejected", {"item_id": item_id, "actor": actor, "reason": reason}
        )
        return rejected

    def complete_work(self, item_id: str, worker_name: str, reason: str = "") -> WorkItem:
        """Worker-side close: records ``work_completed`` then closes the item."""
        item = self.store.get(item_id)
        finished = item.model_copy(
            update={
                "status": WorkItemStatus.CLOSED,
                "close_reason": reason or item.close_reason,
                "history": [
                    *item.history,
                    WorkItemEvent(type=EventType.WORK_COMPLETED, actor=worker_name),
                ],
            }
        )
        return self.update_item(finished, actor=worker_name)

    def comment(self, item_id: str, actor: str, text: str) -> WorkItemEvent:
        if not text.strip():
            raise ValidationError("comment text must not be empty")
        return self.store.add_comment(item_id, actor, text)

    # ------------------------------------------------------------------
    # Scheduling queries
    # ------------------------------------------------------------------

    def list_ready(self, workspace: str | None = None) -> list[WorkItem]:
        return self.store.list_ready(workspace)

    def dependencies(self, item_id: str) -> dict[str, list[WorkItem]]:
        """Direct edges only: what ``item_id`` waits on and what waits on it."""
        return {
            "blocked_by": self.store.get_blocked_by(item_id),
            "blocking": self.store.get_blocking(item_id),
        }

    def dependency_tree(self, item_id: str) -> DependencyTree:
        return self.store.get_dependency_tree(item_id)

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign(self, item_id: str, worker_name: str, actor: str = "supervisor") -> HookMessage:
        """Give ``item_id`` to ``worker_name`` and drop an assign hook for it.

        The item is persisted before the hook is written, so a failed hook
        write leaves an assigned item that ``dispatch`` or a manual re-assign
        can deliver again.
        """
        if not worker_name:
            raise ValidationError("worker name is required")
        item = self.store.get(item_id)
        if item.is_closed:
            raise ValidationError(f"work item {item_id} is closed")

        status = WorkItemStatus.IN_PROGRESS if item.status == WorkItemStatus.OPEN else item.status
        assigned = item.model_copy(
            update={
                "assignee": worker_name,
                "status": status,
                "history": [
                    *item.history,
                    WorkItemEvent(type=EventType.WORK_STARTED, actor=worker_name),
                ],
            }
        )
        self.store.update(assigned, actor=actor)

        message = self.hooks.write(
            worker_name,
            HookMessage(type=HookType.ASSIGN, item_id=item.id, message=item.title),
        )
        self._note_task(worker_name, f"{item.id}: {item.title}")

        logger.info("Assigned %s to %s", item.id, worker_name)
        self.event_bus.publish(
            "item_assigned", {"item_id": item.id, "worker": worker_name, "actor": actor}
        )
        return message

    def dispatch(
        self, workspace: str | None = None, actor: str = "supervisor"
    ) -> list[tuple[str, str]]:
        """Pair ready items (priority order) with idle named workers.

        Returns ``(item_id, worker_name)`` pairs for every assignment made.
        """
        if self.registry is None:
            raise ValidationError("dispatch needs a worker registry")
        idle = [
            record.name
            for record in self.registry.list()
            if record.name
            and record.status == WorkerStatus.IDLE
            and (not workspace or not record.workspace or record.workspace == workspace)
        ]
        if not idle:
            return []

        assignments: list[tuple[str, str]] = []
        for item, worker_name in zip(self.list_ready(workspace), idle):
            self.assign(item.id, worker_name, actor=actor)
            assignments.append((item.id, worker_name))
        if assignments:
            logger.info("Dispatched %d work items", len(assignments))
        return assignments

    def _note_task(self, worker_name: str, task: str) -> None:
        if self.registry is None:
            return
        try:
            record = self.registry.get_by_name(worker_name)
        except NotFoundError:
            return
        self.registry.heartbeat(record.id, status=WorkerStatus.ACTIVE, task=task)

    def _pending(self, item_id: str) -> WorkItem:
        item = self.store.get(item_id)
        if item.status != WorkItemStatus.PENDING_APPROVAL:
            raise ValidationError(
                f"work item {item_id} is not pending approval (current status: {item.status.value})"
            )
        return item
