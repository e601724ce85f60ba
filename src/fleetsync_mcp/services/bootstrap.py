from __future__ import annotations

import logging
from dataclasses import dataclass

from fleetsync_mcp.db.work_item_store import WorkItemStore
from fleetsync_mcp.services.event_bus import EventBus
from fleetsync_mcp.services.fleet import WorkerFleet
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.nudger import Nudger
from fleetsync_mcp.services.patrol import Patrol, WorkerHealth
from fleetsync_mcp.services.process import SubprocessSpawner
from fleetsync_mcp.services.registry import WorkerRegistry
from fleetsync_mcp.services.work_queue import WorkQueue
from fleetsync_mcp.utils.config import Config

logger = logging.getLogger(__name__)


@dataclass
class FleetServices:
    config: Config
    store: WorkItemStore
    hooks: HookChannel
    registry: WorkerRegistry
    nudger: Nudger
    event_bus: EventBus
    work_queue: WorkQueue
    fleet: WorkerFleet
    patrol: Patrol


def build_services(config: Config) -> FleetServices:
    """Wire every service against ``config.data_dir``. Nothing is started."""
    event_bus = EventBus()
    store = WorkItemStore(config.items_dir, branch_prefix=config.branch_prefix)
    hooks = HookChannel(config.hooks_dir)
    registry = WorkerRegistry(config.registry_path)
    nudger = Nudger(hooks, escalation_delay=config.escalation_delay)
    fleet = WorkerFleet(
        registry,
        nudger,
        spawner=SubprocessSpawner(),
        worker_command=config.worker_command,
        event_bus=event_bus,
    )
    work_queue = WorkQueue(store, hooks, registry=registry, event_bus=event_bus)

    def _publish(event_type: str):
        def listener(health: WorkerHealth) -> None:
            event_bus.publish(
                event_type,
                {"worker_id": health.worker_id, "name": health.name, "message": health.message},
            )

        return listener

    patrol = Patrol(
        registry,
        recover=fleet.recover_worker,
        interval=config.patrol_interval,
        stuck_timeout=config.stuck_timeout,
        running_checker=fleet.is_running,
        on_stuck=_publish("worker_stuck"),
        on_dead=_publish("worker_dead"),
    )
    logger.debug("Services wired against %s", config.data_dir)
    return FleetServices(
        config=config,
        store=store,
        hooks=hooks,
        registry=registry,
        nudger=nudger,
        event_bus=event_bus,
        work_queue=work_queue,
        fleet=fleet,
        patrol=patrol,
    )
