#!/usr/bin/env python3
"""Demo: a supervisor handing work to two workers through hook files.

Each worker runs in its own thread, polls its hook, and reports back through
heartbeats and ``complete_work``. One worker then goes silent and the patrol
recovers it with a hook nudge.
"""

import sys
import tempfile
import threading
from datetime import timedelta
from pathlib import Path

# Add src to path so we can import without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fleetsync_mcp.models.hook import HookType
from fleetsync_mcp.models.work_item import WorkItem
from fleetsync_mcp.models.worker import WorkerStatus
from fleetsync_mcp.services.bootstrap import FleetServices, build_services
from fleetsync_mcp.utils.clock import utc_now
from fleetsync_mcp.utils.config import Config


def run_worker(services: FleetServices, worker_id: str, name: str, stop: threading.Event):
    """Pick up assignments from the hook, do the work, report idle again."""
    seq = 0
    while not stop.is_set():
        message = services.hooks.poll(name, after_seq=seq, cancel=stop, interval=0.05, timeout=2)
        if message is None:
            return
        seq = message.seq
        if message.type != HookType.ASSIGN or not message.item_id:
            print(f"[{name}] got {message.type.value}: {message.message}")
            continue
        print(f"[{name}] working on {message.item_id}: {message.message}")
        services.work_queue.complete_work(message.item_id, name, reason="demo")
        services.fleet.heartbeat(worker_id, status=WorkerStatus.IDLE, task="")
        print(f"[{name}] ✅ finished {message.item_id}")


def main():
    data_dir = Path(tempfile.mkdtemp(prefix="fleetsync-demo-"))
    services = build_services(Config(data_dir=data_dir, escalation_delay=0))
    queue = services.work_queue

    print("=" * 60)
    print("FleetSync Supervisor Demo")
    print("=" * 60)

    schema = queue.create_item(WorkItem(title="Add users table", priority=0, workspace="db"))
    migrate = queue.create_item(WorkItem(title="Backfill users", workspace="db"))
    queue.update_fields(schema.id, blocking_ids=[migrate.id])
    print(f"\nFiled {schema.id} (blocks {migrate.id}) and {migrate.id}")

    stop = threading.Event()
    threads = []
    for worker_id, name in (("w-alice", "alice"), ("w-bob", "bob")):
        services.fleet.register_worker(worker_id, name=name, status=WorkerStatus.IDLE)
        thread = threading.Thread(target=run_worker, args=(services, worker_id, name, stop))
        thread.start()
        threads.append(thread)

    for _ in range(2):
        for item_id, name in queue.dispatch("db"):
            print(f"[supervisor] {item_id} -> {name}")
        for thread in threads:
            thread.join(timeout=0.5)

    stop.set()
    for thread in threads:
        thread.join()

    # --- bob goes quiet; pretend the stuck timeout has passed ---
    later = utc_now() + timedelta(seconds=services.config.stuck_timeout + 1)
    for health in services.patrol.check_all(now=later):
        print(f"[patrol] {health.name}: {health.health.value}")
    services.patrol.wait_for_recoveries(timeout=5)
    for health in services.patrol.statuses():
        print(f"[patrol] {health.name}: {health.last_recovery}")
    services.patrol.stop()

    closed = [item for item in queue.list_items() if item.is_closed]
    print("\n" + "=" * 60)
    if len(closed) == 2:
        print("✅ SUCCESS - both items done, blocked item waited its turn")
    else:
        print("❌ FAIL - Something went wrong")
    print(f"Data left in {data_dir}")
    print("=" * 60)


if __name__ == "__main__":
    main()
