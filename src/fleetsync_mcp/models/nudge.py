from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Optional, Union

from pydantic import BaseModel, Field

from fleetsync_mcp.errors import ValidationError
from fleetsync_mcp.utils.clock import utc_now


class NudgeLevel(IntEnum):
    WAKE = 0  # newline on the live input stream
    HOOK = 1  # nudge message in the hook file
    RESTART = 2  # kill; respawn is the spawner's job

    @property
    def label(self) -> str:
        return self.name.lower()


class NudgeEvent(BaseModel):
    level: NudgeLevel
    timestamp: datetime = Field(default_factory=utc_now)
    success: bool
    error: Optional[str] = None


def parse_level(value: Union[int, str]) -> NudgeLevel:
    """Accept a level number (``1``, ``"1"``) or its label (``"hook"``)."""
    try:
        return NudgeLevel(int(value))
    except ValueError:
        pass
    if isinstance(value, str) and value.upper() in NudgeLevel.__members__:
        return NudgeLevel[value.upper()]
    raise ValidationError(
        f"invalid nudge level {value!r} (expected 0/wake, 1/hook or 2/restart)"
    )
