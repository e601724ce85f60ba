from __future__ import annotations

import asyncio

from mcp.server.fastmcp import FastMCP

from fleetsync_mcp.models.work_item import WorkItem, WorkItemFilter, parse_status, parse_type
from fleetsync_mcp.services.work_queue import WorkQueue


def register(mcp: FastMCP, work_queue: WorkQueue) -> None:
    """Register work-item MCP tools."""

    @mcp.tool()
    async def create_work_item(
        title: str,
        description: str = "",
        type: str = "task",
        priority: int = 2,
        labels: str = "",
        workspace: str = "",
        blocks: list[str] | None = None,
        parent_id: str | None = None,
        created_by: str | None = None,
    ) -> dict:
        """Create a new work item and return it with its generated id.

        Args:
            title: Short summary of the work
            description: Longer explanation, acceptance criteria, context
            type: One of bug, feature, task, epic, chore, review
            priority: 0 (highest) to 4 (lowest)
            labels: Comma-separated labels
            workspace: Area of the codebase the item belongs to
            blocks: Ids of items that cannot start until this one is closed
            parent_id: Optional parent (epic) id
            created_by: Who is filing the item
        """
        item = WorkItem(
            title=title,
            description=description,
            type=parse_type(type),
            priority=priority,
            labels=labels,
            workspace=workspace,
            blocking_ids=blocks or [],
            parent_id=parent_id,
            created_by=created_by,
        )
        created = await asyncio.to_thread(work_queue.create_item, item)
        return created.to_dict()

    @mcp.tool()
    async def get_work_item(item_id: str) -> dict:
        """Get one work item, including its full event history."""
        item = await asyncio.to_thread(work_queue.get_item, item_id)
        return item.to_dict()

    @mcp.tool()
    async def list_work_items(
        status: str | None = None,
        workspace: str | None = None,
        assignee: str | None = None,
        type: str | None = None,
        parent_id: str | None = None,
    ) -> list[dict]:
        """List work items. Every filter that is set must match."""
        filter = WorkItemFilter.from_strings(
            status=status, workspace=workspace, assignee=assignee, type=type, parent_id=parent_id
        )
        items = await asyncio.to_thread(work_queue.list_items, filter)
        return [item.to_dict() for item in items]

    @mcp.tool()
    async def update_work_item(
        item_id: str,
        actor: str = "system",
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        type: str | None = None,
        assignee: str | None = None,
        labels: str | None = None,
        workspace: str | None = None,
        blocks: list[str] | None = None,
    ) -> dict:
        """Change fields of a work item. Fields left out are not touched.

        Status and assignee changes are recorded in the item's history.
        """
        updated = await asyncio.to_thread(
            work_queue.update_fields,
            item_id,
            actor=actor,
            title=title,
            description=description,
            status=parse_status(status) if status else None,
            priority=priority,
            type=parse_type(type) if type else None,
            assignee=assignee,
            labels=labels,
            workspace=workspace,
            blocking_ids=blocks,
        )
        return updated.to_dict()

    @mcp.tool()
    async def close_work_item(item_id: str, reason: str = "", actor: str = "system") -> dict:
        """Close a work item. Items it was blocking may become ready."""
        closed = await asyncio.to_thread(work_queue.close_item, item_id, reason, actor)
        return closed.to_dict()

    @mcp.tool()
    async def approve_work_item(item_id: str, actor: str = "user") -> dict:
        """Approve an item waiting in pending_approval so it can be picked up."""
        approved = await asyncio.to_thread(work_queue.approve, item_id, actor)
        return approved.to_dict()

    @mcp.tool()
    async def reject_work_item(item_id: str, reason: str = "", actor: str = "user") -> dict:
        """Reject an item waiting in pending_approval; it is closed with the reason."""
        rejected = await asyncio.to_thread(work_queue.reject, item_id, reason, actor)
        return rejected.to_dict()

    @mcp.tool()
    async def comment_work_item(item_id: str, text: str, actor: str = "user") -> dict:
        """Add a comment to a work item's history."""
        event = await asyncio.to_thread(work_queue.comment, item_id, actor, text)
        return event.model_dump(mode="json", by_alias=True, exclude_none=True)

    @mcp.tool()
    async def list_ready_work(workspace: str | None = None) -> list[dict]:
        """List open items with nothing unfinished blocking them, highest priority first.

        Use this to pick what to work on next.
        """
        items = await asyncio.to_thread(work_queue.list_ready, workspace)
        return [item.to_dict() for item in items]

    @mcp.tool()
    async def get_dependencies(item_id: str, tree: bool = False) -> dict:
        """Show what an item waits on and what waits on it.

        Args:
            item_id: The work item to inspect
            tree: Resolve the full dependency tree instead of direct edges
        """
        if tree:
            result = await asyncio.to_thread(work_queue.dependency_tree, item_id)
            return result.to_dict()
        deps = await asyncio.to_thread(work_queue.dependencies, item_id)
        return {
            "item_id": item_id,
            "blocked_by": [item.to_dict() for item in deps["blocked_by"]],
            "blocking": [item.to_dict() for item in deps["blocking"]],
        }

    @mcp.tool()
    async def assign_work_item(item_id: str, worker: str, actor: str = "supervisor") -> dict:
        """Assign a work item to a named worker and drop it in the worker's hook."""
        message = await asyncio.to_thread(work_queue.assign, item_id, worker, actor)
        return {
            "success": True,
            "item_id": item_id,
            "worker": worker,
            "hook": message.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    @mcp.tool()
    async def complete_work_item(item_id: str, worker: str, reason: str = "") -> dict:
        """Mark your assigned work item as done.

        Call this when you finish the work from your hook; it records the
        completion and closes the item.
        """
        finished = await asyncio.to_thread(work_queue.complete_work, item_id, worker, reason)
        return finished.to_dict()
