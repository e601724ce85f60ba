from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from fleetsync_mcp.models.work_item import WorkItemStatus
from fleetsync_mcp.models.worker import WorkerStatus
from fleetsync_mcp.services.bootstrap import FleetServices, build_services
from fleetsync_mcp.tools import work as work_tools
from fleetsync_mcp.tools import workers as worker_tools
from fleetsync_mcp.utils.config import get_config
from fleetsync_mcp.utils.logger import setup_logging

logger = logging.getLogger(__name__)


def render_stats(services: FleetServices) -> str:
    items = services.store.list()
    workers = services.registry.list()
    by_status = {status: 0 for status in WorkItemStatus}
    for item in items:
        by_status[item.status] += 1
    stuck = sum(1 for worker in workers if worker.status == WorkerStatus.STUCK)
    dead = sum(1 for worker in workers if worker.status == WorkerStatus.DEAD)
    return (
        "FleetSync Status:\n"
        f"- Open Items: {by_status[WorkItemStatus.OPEN]}\n"
        f"- In Progress: {by_status[WorkItemStatus.IN_PROGRESS]}\n"
        f"- Blocked: {by_status[WorkItemStatus.BLOCKED]}\n"
        f"- Closed: {by_status[WorkItemStatus.CLOSED]}\n"
        f"- Ready: {len(services.store.list_ready())}\n"
        f"- Workers: {len(workers)} ({stuck} stuck, {dead} dead)\n"
    )


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for FleetSync."""
    config = get_config()

    # --- Services ---
    services = await asyncio.to_thread(build_services, config)
    services.patrol.start()

    # --- Register MCP tools ---
    work_tools.register(server, services.work_queue)
    worker_tools.register(server, services.fleet, services.hooks, services.patrol)

    # --- Register MCP resource ---
    @server.resource("fleetsync://stats")
    async def get_stats() -> str:
        return await asyncio.to_thread(render_stats, services)

    logger.info("FleetSync MCP Server ready (data dir %s)", config.data_dir)

    try:
        yield
    finally:
        await asyncio.to_thread(services.patrol.stop)
        logger.info("FleetSync MCP Server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)

    server = FastMCP("FleetSync", lifespan=lifespan)
    return server


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()
