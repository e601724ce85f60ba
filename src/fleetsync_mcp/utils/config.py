from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Storage
    data_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("FLEETSYNC_DATA_DIR", ".fleet"))
    )

    # Patrol
    patrol_interval: float = field(
        default_factory=lambda: float(os.environ.get("FLEETSYNC_PATROL_INTERVAL", "120"))
    )
    stuck_timeout: float = field(
        default_factory=lambda: float(os.environ.get("FLEETSYNC_STUCK_TIMEOUT", "600"))
    )
    escalation_delay: float = field(
        default_factory=lambda: float(os.environ.get("FLEETSYNC_ESCALATION_DELAY", "30"))
    )

    # Work items
    branch_prefix: str = field(
        default_factory=lambda: os.environ.get("FLEETSYNC_BRANCH_PREFIX", "fleet/")
    )

    # Respawn command for workers killed by a restart nudge (empty disables)
    worker_command: str = field(
        default_factory=lambda: os.environ.get("FLEETSYNC_WORKER_COMMAND", "")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("FLEETSYNC_LOG_LEVEL", "INFO")
    )

    @property
    def items_dir(self) -> Path:
        return self.data_dir / "items"

    @property
    def hooks_dir(self) -> Path:
        return self.data_dir / "workers"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "workers.json"


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()
