from __future__ import annotations

import json
import logging
import threading
from typing import IO, Any

from fleetsync_mcp.errors import RpcError

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Line-delimited JSON-RPC 2.0 over a worker's stdin/stdout.

    One request is in flight at a time; notifications from the worker that
    arrive while waiting for a response are queued in ``pending_notifications``.
    """

    def __init__(self, stdin: IO[str], stdout: IO[str]):
        self._stdin = stdin
        self._stdout = stdout
        self._mu = threading.Lock()
        self._next_id = 1
        self.pending_notifications: list[dict[str, Any]] = []

    def call(self, method: str, params: Any = None) -> Any:
        """Send a request and block until its response; errors raise RpcError."""
        with self._mu:
            request_id = self._next_id
            self._next_id += 1
            self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})

            while True:
                message = self._receive()
                if "id" not in message or message["id"] is None:
                    self.pending_notifications.append(message)
                    continue
                if message["id"] != request_id:
                    logger.warning("Dropping response for unknown request id %s", message["id"])
                    continue
                error = message.get("error")
                if error:
                    raise RpcError(
                        error.get("code", -32603), error.get("message", ""), error.get("data")
                    )
                return message.get("result")

    def notify(self, method: str, params: Any = None) -> None:
        """Send a notification; no response is expected."""
        with self._mu:
            self._send({"jsonrpc": "2.0", "method": method, "params": params})

    def _send(self, payload: dict[str, Any]) -> None:
        try:
            self._stdin.write(json.dumps(payload) + "\n")
            self._stdin.flush()
        except OSError as exc:
            raise RpcError(-32000, f"failed to write to worker stdin: {exc}") from exc

    def _receive(self) -> dict[str, Any]:
        while True:
            try:
                line = self._stdout.readline()
            except OSError as exc:
                raise RpcError(-32000, f"failed to read from worker stdout: {exc}") from exc
            if not line:
                raise RpcError(-32000, "worker closed its output stream")
            line = line.strip()
            if not line:
                continue
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON worker output: %s", line[:200])
