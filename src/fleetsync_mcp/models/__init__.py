from fleetsync_mcp.models.hook import HookMessage, HookType
from fleetsync_mcp.models.nudge import NudgeEvent, NudgeLevel
from fleetsync_mcp.models.work_item import (
    DependencyTree,
    EventType,
    WorkItem,
    WorkItemEvent,
    WorkItemFilter,
    WorkItemStatus,
    WorkItemType,
)
from fleetsync_mcp.models.worker import WorkerRecord, WorkerStatus, WorkerType

__all__ = [
    "DependencyTree",
    "EventType",
    "HookMessage",
    "HookType",
    "NudgeEvent",
    "NudgeLevel",
    "WorkItem",
    "WorkItemEvent",
    "WorkItemFilter",
    "WorkItemStatus",
    "WorkItemType",
    "WorkerRecord",
    "WorkerStatus",
    "WorkerType",
]
