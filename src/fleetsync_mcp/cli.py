from __future__ import annotations

import dataclasses
import functools
import json
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import click

from fleetsync_mcp import __version__
from fleetsync_mcp.errors import FleetSyncError
from fleetsync_mcp.models.nudge import parse_level
from fleetsync_mcp.models.work_item import (
    DependencyTree,
    WorkItem,
    WorkItemFilter,
    parse_status,
    parse_type,
)
from fleetsync_mcp.services.patrol import Health
from fleetsync_mcp.utils.config import Config, get_config
from fleetsync_mcp.utils.logger import setup_logging

if TYPE_CHECKING:
    from fleetsync_mcp.services.bootstrap import FleetServices


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn domain errors into a clean ``Error: ...`` and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except FleetSyncError as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _services(ctx: click.Context) -> FleetServices:
    from fleetsync_mcp.services.bootstrap import build_services

    if "services" not in ctx.obj:
        ctx.obj["services"] = build_services(_config(ctx))
    return ctx.obj["services"]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _format_item(item: WorkItem) -> str:
    assignee = f" @{item.assignee}" if item.assignee else ""
    return f"{item.id}  [P{item.priority}] [{item.status.value}] {item.title}{assignee}"


def _echo_tree(tree: DependencyTree, depth: int = 0, relation: str = "") -> None:
    prefix = "  " * depth + (f"{relation} " if relation else "")
    click.echo(prefix + _format_item(tree.item))
    for child in tree.blocked_by:
        _echo_tree(child, depth + 1, "<- blocked by")
    for child in tree.blocking:
        _echo_tree(child, depth + 1, "-> blocks")


@click.group()
@click.version_option(version=__version__, prog_name="fleetsync-mcp")
@click.option(
    "--data-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for work items, hooks and the worker registry "
    "(default: FLEETSYNC_DATA_DIR or .fleet).",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Path | None) -> None:
    """FleetSync MCP - work tracking and supervision for agent fleets."""
    config = get_config()
    if data_dir is not None:
        config = dataclasses.replace(config, data_dir=data_dir)
    setup_logging(config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
@_handle_errors
def init(ctx: click.Context) -> None:
    """Create the data directory layout."""
    config = _config(ctx)
    try:
        config.items_dir.mkdir(parents=True, exist_ok=True)
        config.hooks_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise click.ClickException(f"cannot create {config.data_dir}: {exc}") from exc
    click.echo(f"FleetSync initialized at {config.data_dir}")


@main.command()
def start() -> None:
    """Start the FleetSync MCP server (stdio)."""
    from fleetsync_mcp.server import mcp

    click.echo("Starting FleetSync MCP Server...", err=True)
    mcp.run()


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"fleetsync-mcp {__version__}")


# ----------------------------------------------------------------------
# Work items
# ----------------------------------------------------------------------


@main.command()
@click.argument("title")
@click.option("-d", "--description", default="", help="Longer description.")
@click.option("-t", "--type", "item_type", default="task", show_default=True)
@click.option("-p", "--priority", default=2, show_default=True, type=int, help="0 is highest.")
@click.option("--labels", default="", help="Comma-separated labels.")
@click.option("--workspace", default="", help="Area of the codebase.")
@click.option("--blocks", multiple=True, help="Id of an item that waits on this one.")
@click.option("--parent", "parent_id", default=None, help="Parent item id.")
@click.option("--by", "created_by", default=None, help="Creator name.")
@click.pass_context
@_handle_errors
def create(
    ctx: click.Context,
    title: str,
    description: str,
    item_type: str,
    priority: int,
    labels: str,
    workspace: str,
    blocks: tuple[str, ...],
    parent_id: str | None,
    created_by: str | None,
) -> None:
    """Create a work item and print its id."""
    item = WorkItem(
        title=title,
        description=description,
        type=parse_type(item_type),
        priority=priority,
        labels=labels,
        workspace=workspace,
        blocking_ids=list(blocks),
        parent_id=parent_id,
        created_by=created_by,
    )
    created = _services(ctx).work_queue.create_item(item)
    click.echo(created.id)


@main.command()
@click.argument("item_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record.")
@click.pass_context
@_handle_errors
def show(ctx: click.Context, item_id: str, as_json: bool) -> None:
    """Show one work item with its history."""
    item = _services(ctx).work_queue.get_item(item_id)
    if as_json:
        _echo_json(item.to_dict())
        return

    click.echo(_format_item(item))
    click.echo(f"  type: {item.type.value}  branch: {item.branch}")
    if item.workspace:
        click.echo(f"  workspace: {item.workspace}")
    if item.labels:
        click.echo(f"  labels: {', '.join(item.label_list)}")
    if item.blocking_ids:
        click.echo(f"  blocks: {', '.join(item.blocking_ids)}")
    if item.description:
        click.echo("")
        click.echo(item.description)
    click.echo("")
    for event in item.history:
        detail = ""
        if event.from_value is not None or event.to is not None:
            detail = f" {event.from_value or '-'} -> {event.to or '-'}"
        if event.comment:
            detail += f" {event.comment!r}"
        stamp = event.timestamp.isoformat() if event.timestamp else ""
        click.echo(f"  {stamp} {event.type.value} by {event.actor or '?'}{detail}")


@main.command(name="list")
@click.option("-s", "--status", default=None)
@click.option("--workspace", default=None)
@click.option("-a", "--assignee", default=None)
@click.option("-t", "--type", "item_type", default=None)
@click.option("--parent", "parent_id", default=None)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
@_handle_errors
def list_items(
    ctx: click.Context,
    status: str | None,
    workspace: str | None,
    assignee: str | None,
    item_type: str | None,
    parent_id: str | None,
    as_json: bool,
) -> None:
    """List work items matching every given filter."""
    filter = WorkItemFilter.from_strings(
        status=status, workspace=workspace, assignee=assignee, type=item_type, parent_id=parent_id
    )
    items = _services(ctx).work_queue.list_items(filter)
    if as_json:
        _echo_json([item.to_dict() for item in items])
        return
    for item in items:
        click.echo(_format_item(item))


@main.command()
@click.option("--workspace", default=None)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
@_handle_errors
def ready(ctx: click.Context, workspace: str | None, as_json: bool) -> None:
    """List work that can start now, highest priority first."""
    items = _services(ctx).work_queue.list_ready(workspace)
    if as_json:
        _echo_json([item.to_dict() for item in items])
        return
    if not items:
        click.echo("No ready work.")
    for item in items:
        click.echo(_format_item(item))


@main.command()
@click.argument("item_id")
@click.option("--title", default=None)
@click.option("-d", "--description", default=None)
@click.option("-s", "--status", default=None)
@click.option("-p", "--priority", default=None, type=int)
@click.option("-t", "--type", "item_type", default=None)
@click.option("-a", "--assignee", default=None)
@click.option("--labels", default=None)
@click.option("--workspace", default=None)
@click.option("--actor", default="user", show_default=True)
@click.pass_context
@_handle_errors
def update(
    ctx: click.Context,
    item_id: str,
    title: str | None,
    description: str | None,
    status: str | None,
    priority: int | None,
    item_type: str | None,
    assignee: str | None,
    labels: str | None,
    workspace: str | None,
    actor: str,
) -> None:
    """Change fields of a work item."""
    updated = _services(ctx).work_queue.update_fields(
        item_id,
        actor=actor,
        title=title,
        description=description,
        status=parse_status(status) if status else None,
        priority=priority,
        type=parse_type(item_type) if item_type else None,
        assignee=assignee,
        labels=labels,
        workspace=workspace,
    )
    click.echo(_format_item(updated))


@main.command()
@click.argument("item_id")
@click.option("-r", "--reason", default="", help="Why the item is being closed.")
@click.option("--actor", default="user", show_default=True)
@click.pass_context
@_handle_errors
def close(ctx: click.Context, item_id: str, reason: str, actor: str) -> None:
    """Close a work item."""
    closed = _services(ctx).work_queue.close_item(item_id, reason, actor)
    click.echo(f"Closed {closed.id}")


@main.command()
@click.argument("item_id")
@click.option("--actor", default="user", show_default=True)
@click.pass_context
@_handle_errors
def approve(ctx: click.Context, item_id: str, actor: str) -> None:
    """Approve a pending item so workers can pick it up."""
    item = _services(ctx).work_queue.approve(item_id, actor)
    click.echo(f"Approved {item.id}: {item.title}")
    click.echo("  pending_approval -> open")


@main.command()
@click.argument("item_id")
@click.argument("reason", nargs=-1)
@click.option("--actor", default="user", show_default=True)
@click.pass_context
@_handle_errors
def reject(ctx: click.Context, item_id: str, reason: tuple[str, ...], actor: str) -> None:
    """Reject a pending item, closing it with REASON."""
    item = _services(ctx).work_queue.reject(item_id, " ".join(reason), actor)
    click.echo(f"Rejected {item.id}: {item.title}")
    click.echo("  pending_approval -> closed")
    click.echo(f"  reason: {item.close_reason}")


@main.command()
@click.argument("item_id")
@click.argument("text")
@click.option("--actor", default="user", show_default=True)
@click.pass_context
@_handle_errors
def comment(ctx: click.Context, item_id: str, text: str, actor: str) -> None:
    """Add a comment to a work item."""
    event = _services(ctx).work_queue.comment(item_id, actor, text)
    click.echo(f"Added {event.id} to {item_id}")


@main.command()
@click.argument("item_id")
@click.option("--tree", is_flag=True, help="Resolve dependencies recursively.")
@click.pass_context
@_handle_errors
def deps(ctx: click.Context, item_id: str, tree: bool) -> None:
    """Show what an item waits on and what waits on it."""
    queue = _services(ctx).work_queue
    if tree:
        root = queue.dependency_tree(item_id)
        _echo_tree(root)
        for cycle in root.cycles:
            click.echo(f"cycle: {' -> '.join([*cycle, cycle[0]])}")
        return

    edges = queue.dependencies(item_id)
    click.echo("Blocked by:")
    for item in edges["blocked_by"]:
        click.echo(f"  {_format_item(item)}")
    click.echo("Blocking:")
    for item in edges["blocking"]:
        click.echo(f"  {_format_item(item)}")


@main.command()
@click.argument("item_id")
@click.argument("worker")
@click.option("--actor", default="supervisor", show_default=True)
@click.pass_context
@_handle_errors
def assign(ctx: click.Context, item_id: str, worker: str, actor: str) -> None:
    """Assign a work item to a worker and write its hook."""
    message = _services(ctx).work_queue.assign(item_id, worker, actor)
    click.echo(f"Assigned {item_id} to {worker} (hook #{message.seq})")


@main.command()
@click.option("--workspace", default=None)
@click.pass_context
@_handle_errors
def dispatch(ctx: click.Context, workspace: str | None) -> None:
    """Hand ready work to idle workers."""
    assignments = _services(ctx).work_queue.dispatch(workspace)
    if not assignments:
        click.echo("Nothing dispatched.")
    for item_id, worker in assignments:
        click.echo(f"{item_id} -> {worker}")


# ----------------------------------------------------------------------
# Workers
# ----------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
@_handle_errors
def workers(ctx: click.Context, as_json: bool) -> None:
    """List workers known to the registry."""
    records = _services(ctx).fleet.list_workers()
    if as_json:
        _echo_json([record.to_dict() for record in records])
        return
    if not records:
        click.echo("No workers registered.")
    for record in records:
        task = f"  {record.task}" if record.task else ""
        click.echo(
            f"{record.id}  {record.name or '-'}  [{record.status.value}] "
            f"last ping {record.last_ping.isoformat()}{task}"
        )


@main.command()
@click.argument("name")
@click.option(
    "-l",
    "--level",
    default="1",
    show_default=True,
    type=click.Choice(["0", "1", "2", "wake", "hook", "restart"], case_sensitive=False),
    help="0/wake: newline on stdin, 1/hook: hook file, 2/restart: kill.",
)
@click.option("--escalate", is_flag=True, help="Try every level in turn until one works.")
@click.pass_context
@_handle_errors
def nudge(ctx: click.Context, name: str, level: str, escalate: bool) -> None:
    """Nudge worker NAME, or every named worker with "all"."""
    services = _services(ctx)
    fleet = services.fleet

    if escalate:
        if name == "all":
            raise click.UsageError("--escalate needs a single worker name")
        worked = fleet.nudge_escalating(name)
        click.echo(f"Nudged {name} at level {int(worked)} ({worked.label})")
        return

    parsed = parse_level(level)
    if name != "all":
        fleet.nudge(name, parsed)
        click.echo(f"Nudged {name} at level {int(parsed)} ({parsed.label})")
        return

    results = fleet.nudge_all(parsed)
    if not results:
        click.echo("No named workers to nudge.")
    failed = 0
    for worker, error in results.items():
        if error is None:
            click.echo(f"{worker}: ok")
        else:
            failed += 1
            click.echo(f"{worker}: {error}")
    if failed:
        raise click.ClickException(f"{failed} of {len(results)} nudges failed")


@main.command()
@click.argument("name")
@click.argument("signal", type=click.Choice(["abort", "pause", "resume"]))
@click.option("-m", "--message", default="", help="Text to include with the signal.")
@click.pass_context
@_handle_errors
def signal(ctx: click.Context, name: str, signal: str, message: str) -> None:
    """Send SIGNAL to worker NAME through its hook."""
    written = _services(ctx).fleet.signal(name, signal, message)
    click.echo(f"Sent {written.type.value} to {name} (seq {written.seq})")


@main.command()
@click.argument("name")
@click.option("--clear", is_flag=True, help="Remove the hook after printing it.")
@click.pass_context
@_handle_errors
def hook(ctx: click.Context, name: str, clear: bool) -> None:
    """Print worker NAME's current hook message."""
    hooks = _services(ctx).hooks
    message = hooks.read(name)
    if message is None:
        click.echo(f"No hook for {name}.")
        return
    _echo_json(message.model_dump(mode="json", by_alias=True, exclude_none=True))
    if clear:
        hooks.clear(name)


@main.command()
@click.option("--once", is_flag=True, help="Run a single check and exit.")
@click.pass_context
@_handle_errors
def patrol(ctx: click.Context, once: bool) -> None:
    """Watch worker heartbeats and recover stuck workers."""
    services = _services(ctx)
    if once:
        results = services.patrol.check_all()
        if any(health.health == Health.STUCK for health in results):
            click.echo("Recovering stuck workers...", err=True)
        services.patrol.wait_for_recoveries()
        recoveries = {
            health.worker_id: health.last_recovery for health in services.patrol.statuses()
        }
        services.patrol.stop()
        if not results:
            click.echo("No workers registered.")
        for health in results:
            message = f"  {health.message}" if health.message else ""
            click.echo(f"{health.worker_id}  {health.name or '-'}  {health.health.value}{message}")
            if health.health == Health.STUCK and recoveries.get(health.worker_id):
                click.echo(f"  recovery: {recoveries[health.worker_id]}")
        return

    services.patrol.start()
    click.echo("Patrol running, press Ctrl+C to stop.", err=True)
    try:
        while services.patrol.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        services.patrol.stop()


if __name__ == "__main__":
    main()
