from __future__ import annotations

import asyncio

from mcp.server.fastmcp import FastMCP

from fleetsync_mcp.errors import ValidationError
from fleetsync_mcp.models.nudge import parse_level
from fleetsync_mcp.models.worker import WorkerStatus, WorkerType
from fleetsync_mcp.services.fleet import WorkerFleet
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.patrol import Patrol


def _parse_worker_status(value: str) -> WorkerStatus:
    try:
        return WorkerStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in WorkerStatus)
        raise ValidationError(
            f"invalid worker status {value!r} (expected one of: {allowed})"
        ) from None


def register(mcp: FastMCP, fleet: WorkerFleet, hooks: HookChannel, patrol: Patrol) -> None:
    """Register worker-management MCP tools."""

    @mcp.tool()
    async def register_worker(
        worker_id: str,
        name: str = "",
        type: str = "ephemeral",
        workspace: str = "",
        session_id: str | None = None,
    ) -> dict:
        """Announce yourself to the supervisor.

        Call this once when you start. Send ``heartbeat`` regularly afterwards
        or the patrol will consider you stuck.

        Args:
            worker_id: Unique id for this worker session
            name: Stable worker name; hooks are delivered by name
            type: persistent or ephemeral
            workspace: Area of the codebase you work in
            session_id: Resumable session reference, used when respawning you
        """
        try:
            worker_type = WorkerType(type)
        except ValueError:
            raise ValidationError(f"invalid worker type {type!r}") from None
        record = await asyncio.to_thread(
            fleet.register_worker,
            worker_id,
            name=name,
            type=worker_type,
            workspace=workspace,
            session_id=session_id,
        )
        return record.to_dict()

    @mcp.tool()
    async def heartbeat(
        worker_id: str,
        status: str | None = None,
        task: str | None = None,
        name: str = "",
    ) -> dict:
        """Report that you are alive, optionally with your status and current task.

        Args:
            worker_id: Your worker id
            status: active, idle, stuck or dead
            task: What you are working on right now
            name: Your worker name, used if the supervisor does not know you yet
        """
        parsed = _parse_worker_status(status) if status else None
        record = await asyncio.to_thread(fleet.heartbeat, worker_id, parsed, task, name)
        return record.to_dict()

    @mcp.tool()
    async def list_workers() -> list[dict]:
        """List every known worker with its status and the patrol's last verdict."""
        records = await asyncio.to_thread(fleet.list_workers)
        health = {status.worker_id: status for status in patrol.statuses()}
        result = []
        for record in records:
            data = record.to_dict()
            checked = health.get(record.id)
            if checked is not None:
                data["health"] = checked.health.value
                data["last_recovery"] = checked.last_recovery
            result.append(data)
        return result

    @mcp.tool()
    async def nudge_worker(name: str, level: int = 1) -> dict:
        """Nudge a worker at one level: 0 wake (stdin), 1 hook, 2 restart."""
        parsed = parse_level(level)
        await asyncio.to_thread(fleet.nudge, name, parsed)
        return {"success": True, "name": name, "level": int(parsed), "label": parsed.label}

    @mcp.tool()
    async def nudge_worker_escalating(name: str) -> dict:
        """Try wake, then hook, then restart until one works.

        Waits the configured escalation delay between levels, so this can take
        a while.
        """
        level = await asyncio.to_thread(fleet.nudge_escalating, name, patrol.shutdown_token)
        return {"success": True, "name": name, "level": int(level), "label": level.label}

    @mcp.tool()
    async def signal_worker(name: str, signal: str, message: str = "") -> dict:
        """Tell a worker to abort its current item, pause, or resume.

        The signal lands in the worker's hook file and replaces whatever was
        there.
        """
        written = await asyncio.to_thread(fleet.signal, name, signal, message)
        return written.model_dump(mode="json", by_alias=True, exclude_none=True)

    @mcp.tool()
    async def call_worker(name: str, method: str, params: dict | None = None) -> dict:
        """Send a JSON-RPC request to a worker process the supervisor started.

        Only works for workers with a live process handle.
        """
        result = await asyncio.to_thread(fleet.call_worker, name, method, params)
        return {"name": name, "method": method, "result": result}

    @mcp.tool()
    async def read_hook(name: str) -> dict:
        """Read a worker's current hook message. Workers call this to pick up work."""
        message = await asyncio.to_thread(hooks.read, name)
        if message is None:
            return {"name": name, "hook": None}
        return {
            "name": name,
            "hook": message.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    @mcp.tool()
    async def get_nudge_history(name: str) -> list[dict]:
        """List every nudge attempt made on a worker, oldest first."""
        events = await asyncio.to_thread(fleet.history, name)
        return [event.model_dump(mode="json") for event in events]
