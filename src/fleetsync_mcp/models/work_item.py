from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from fleetsync_mcp.errors import ValidationError

MIN_PRIORITY = 0
MAX_PRIORITY = 4


class WorkItemStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    PENDING_APPROVAL = "pending_approval"
    CLOSED = "closed"


class WorkItemType(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"
    REVIEW = "review"


class EventType(str, Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    COMMENTED = "commented"
    WORK_STARTED = "work_started"
    WORK_COMPLETED = "work_completed"


class WorkItemEvent(BaseModel):
    """One audit entry in a work item's history."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    timestamp: Optional[datetime] = None
    type: EventType
    actor: str = ""
    from_value: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    comment: Optional[str] = None


class WorkItem(BaseModel):
    """Atomic unit of trackable work.

    ``blocking_ids`` (wire name ``blocks``) is the forward edge: every listed
    item stays out of the ready set until this item is closed.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    title: str
    description: str = ""
    status: WorkItemStatus = WorkItemStatus.OPEN
    priority: int = 2  # 0 = highest
    type: WorkItemType = WorkItemType.TASK
    assignee: str = ""
    labels: str = ""  # comma separated
    workspace: str = Field(default="", alias="turf")
    branch: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    close_reason: Optional[str] = None
    parent_id: Optional[str] = None
    blocking_ids: list[str] = Field(default_factory=list, alias="blocks")
    related: list[str] = Field(default_factory=list)
    discovered_from: Optional[str] = None
    history: list[WorkItemEvent] = Field(default_factory=list)

    @property
    def label_list(self) -> list[str]:
        return [label.strip() for label in self.labels.split(",") if label.strip()]

    @property
    def is_closed(self) -> bool:
        return self.status == WorkItemStatus.CLOSED

    def to_json_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkItemFilter(BaseModel):
    """Composable list filter. Set fields are ANDed; an empty filter matches all."""

    status: Optional[WorkItemStatus] = None
    workspace: Optional[str] = None
    assignee: Optional[str] = None
    type: Optional[WorkItemType] = None
    parent_id: Optional[str] = None

    @classmethod
    def from_strings(
        cls,
        status: str | None = None,
        workspace: str | None = None,
        assignee: str | None = None,
        type: str | None = None,
        parent_id: str | None = None,
    ) -> WorkItemFilter:
        return cls(
            status=parse_status(status) if status else None,
            workspace=workspace or None,
            assignee=assignee or None,
            type=parse_type(type) if type else None,
            parent_id=parent_id or None,
        )

    def matches(self, item: WorkItem) -> bool:
        if self.status is not None and item.status != self.status:
            return False
        if self.workspace is not None and item.workspace != self.workspace:
            return False
        if self.assignee is not None and item.assignee != self.assignee:
            return False
        if self.type is not None and item.type != self.type:
            return False
        if self.parent_id is not None and item.parent_id != self.parent_id:
            return False
        return True


def parse_status(value: str) -> WorkItemStatus:
    try:
        return WorkItemStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in WorkItemStatus)
        raise ValidationError(f"invalid status {value!r} (expected one of: {allowed})") from None


def parse_type(value: str) -> WorkItemType:
    try:
        return WorkItemType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in WorkItemType)
        raise ValidationError(f"invalid type {value!r} (expected one of: {allowed})") from None


@dataclass
class DependencyTree:
    """A work item with its blockers and the items it blocks, resolved recursively."""

    item: WorkItem
    blocked_by: list[DependencyTree] = field(default_factory=list)
    blocking: list[DependencyTree] = field(default_factory=list)
    # Only populated on the root: cycles among the tree's nodes, as id paths.
    cycles: list[list[str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.item.id,
            "title": self.item.title,
            "status": self.item.status.value,
            "priority": self.item.priority,
            "blocked_by": [child.to_dict() for child in self.blocked_by],
            "blocking": [child.to_dict() for child in self.blocking],
        }
        if self.cycles:
            data["cycles"] = self.cycles
        return data
