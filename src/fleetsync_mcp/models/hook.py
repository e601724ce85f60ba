from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from fleetsync_mcp.errors import ValidationError
from fleetsync_mcp.utils.clock import utc_now


class HookType(str, Enum):
    ASSIGN = "assign"  # new work assignment
    NUDGE = "nudge"  # wake up signal
    ABORT = "abort"  # drop the current item
    PAUSE = "pause"
    RESUME = "resume"


# Hook types a supervisor may send as control signals
SIGNALS = (HookType.ABORT, HookType.PAUSE, HookType.RESUME)


class HookMessage(BaseModel):
    """Single-slot message a worker polls from its hook file."""

    model_config = ConfigDict(populate_by_name=True)

    type: HookType
    item_id: Optional[str] = Field(default=None, alias="bead_id")
    message: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    seq: int = 0


def parse_signal(value: str) -> HookType:
    for signal in SIGNALS:
        if value == signal.value:
            return signal
    allowed = ", ".join(s.value for s in SIGNALS)
    raise ValidationError(f"invalid signal {value!r} (expected one of: {allowed})")
