from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path

import pydantic

from fleetsync_mcp.errors import CancelledError, StorageError, ValidationError
from fleetsync_mcp.models.hook import HookMessage
from fleetsync_mcp.utils.files import atomic_write_text

logger = logging.getLogger(__name__)

HOOK_FILE_NAME = "hook.json"


class HookChannel:
    """Per-worker single-slot mailbox files under ``base_dir/<name>/hook.json``.

    Fire and overwrite: a write replaces any unread message and nothing
    acknowledges delivery. Workers poll their own file.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self._mu = threading.Lock()

    def path(self, name: str) -> Path:
        return self._worker_dir(name) / HOOK_FILE_NAME

    def write(self, name: str, message: HookMessage) -> HookMessage:
        """Atomically replace the worker's hook with ``message``.

        ``seq`` is set to the previous on-disk value plus one.
        """
        path = self.path(name)
        with self._mu:
            current = self._read(path)
            stamped = message.model_copy(update={"seq": (current.seq if current else 0) + 1})
            try:
                atomic_write_text(
                    path, stamped.model_dump_json(by_alias=True, exclude_none=True, indent=2)
                )
            except OSError as exc:
                raise StorageError(f"failed to write hook file {path}") from exc
        logger.debug("Wrote %s hook #%d for %s", stamped.type.value, stamped.seq, name)
        return stamped

    def read(self, name: str) -> HookMessage | None:
        """Return the current message, or None when the worker has no hook."""
        return self._read(self.path(name))

    def clear(self, name: str) -> None:
        """Remove the hook file after processing. Missing files are fine."""
        path = self.path(name)
        with self._mu:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageError(f"failed to clear hook file {path}") from exc

    def poll(
        self,
        name: str,
        after_seq: int = 0,
        cancel: threading.Event | None = None,
        interval: float = 0.5,
        timeout: float | None = None,
    ) -> HookMessage | None:
        """Wait until a message with ``seq > after_seq`` appears.

        Returns None on timeout; raises CancelledError if ``cancel`` fires.
        """
        cancel = cancel or threading.Event()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            message = self.read(name)
            if message is not None and message.seq > after_seq:
                return message
            wait = interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            if cancel.wait(wait):
                raise CancelledError(f"polling hook for {name} cancelled")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _worker_dir(self, name: str) -> Path:
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValidationError(f"invalid worker name for hook: {name!r}")
        return self.base_dir / name

    @staticmethod
    def _read(path: Path) -> HookMessage | None:
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read hook file {path}") from exc
        try:
            return HookMessage.model_validate(json.loads(data))
        except (json.JSONDecodeError, pydantic.ValidationError) as exc:
            raise StorageError(f"malformed hook file {path}") from exc
