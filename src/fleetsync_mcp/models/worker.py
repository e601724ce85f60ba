from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from fleetsync_mcp.utils.clock import utc_now


class WorkerType(str, Enum):
    PERSISTENT = "persistent"
    EPHEMERAL = "ephemeral"


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    STUCK = "stuck"
    DEAD = "dead"


class WorkerRecord(BaseModel):
    """A worker known to the supervisor, refreshed by heartbeats."""

    id: str
    name: str = ""  # empty for anonymous workers
    type: WorkerType = WorkerType.EPHEMERAL
    status: WorkerStatus = WorkerStatus.ACTIVE
    task: str = ""
    workspace: str = ""
    session_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    last_ping: datetime = Field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
