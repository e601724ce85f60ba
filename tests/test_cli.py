from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from fleetsync_mcp import __version__, cli
from fleetsync_mcp.models.worker import WorkerRecord
from fleetsync_mcp.utils.clock import utc_now


@pytest.fixture
def run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # logging handlers would outlive CliRunner's captured streams
    monkeypatch.setattr(cli, "setup_logging", lambda level: None)
    monkeypatch.delenv("FLEETSYNC_WORKER_COMMAND", raising=False)
    runner = CliRunner()
    data_dir = tmp_path / "fleet"

    def invoke(*args: str):
        return runner.invoke(cli.main, ["--data-dir", str(data_dir), *args])

    invoke.data_dir = data_dir  # type: ignore[attr-defined]
    return invoke


def _create(run, *args: str) -> str:
    result = run("create", *args)
    assert result.exit_code == 0, result.output
    return result.output.strip()


class TestSetup:
    def test_version(self, run) -> None:
        result = run("version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_creates_layout(self, run) -> None:
        result = run("init")
        assert result.exit_code == 0
        assert (run.data_dir / "items").is_dir()
        assert (run.data_dir / "workers").is_dir()


class TestWorkItemCommands:
    def test_create_show_and_list(self, run) -> None:
        item_id = _create(run, "Fix login", "-p", "1", "--workspace", "api")
        assert item_id.startswith("wi-")

        shown = run("show", item_id, "--json")
        assert shown.exit_code == 0
        data = json.loads(shown.output)
        assert data["title"] == "Fix login"
        assert data["turf"] == "api"

        listed = run("list", "--workspace", "api")
        assert item_id in listed.output

    def test_ready_respects_blockers(self, run) -> None:
        x = _create(run, "X", "--workspace", "w")
        y = _create(run, "Y", "-p", "0", "--workspace", "w", "--blocks", x)

        ready = json.loads(run("ready", "--workspace", "w", "--json").output)
        assert [item["id"] for item in ready] == [y]

        assert run("close", y, "-r", "done").exit_code == 0
        ready = json.loads(run("ready", "--workspace", "w", "--json").output)
        assert [item["id"] for item in ready] == [x]

    def test_update_and_comment(self, run) -> None:
        item_id = _create(run, "Tune cache")

        updated = run("update", item_id, "-s", "blocked", "--actor", "lead")
        assert updated.exit_code == 0
        assert "[blocked]" in updated.output

        assert run("comment", item_id, "waiting on infra").exit_code == 0
        history = json.loads(run("show", item_id, "--json").output)["history"]
        assert history[-1]["comment"] == "waiting on infra"
        assert history[-2]["from"] == "open"
        assert history[-2]["to"] == "blocked"

    def test_deps_tree(self, run) -> None:
        later = _create(run, "Later")
        first = _create(run, "First", "--blocks", later)

        result = run("deps", later, "--tree")
        assert result.exit_code == 0
        assert "<- blocked by" in result.output
        assert first in result.output

        direct = run("deps", first)
        assert "Blocking:" in direct.output
        assert later in direct.output

    def test_approve_and_reject_pending_items(self, run) -> None:
        keep = _create(run, "Rotate keys")
        drop = _create(run, "Delete backups")
        for item_id in (keep, drop):
            assert run("update", item_id, "-s", "pending_approval").exit_code == 0

        approved = run("approve", keep)
        assert approved.exit_code == 0, approved.output
        assert "pending_approval -> open" in approved.output

        rejected = run("reject", drop, "not", "now")
        assert rejected.exit_code == 0, rejected.output
        assert "reason: not now" in rejected.output
        assert json.loads(run("show", drop, "--json").output)["status"] == "closed"

        again = run("approve", keep)
        assert again.exit_code == 1
        assert "not pending approval (current status: open)" in again.output

    def test_assign_writes_hook(self, run) -> None:
        item_id = _create(run, "Write docs")

        assert run("assign", item_id, "sal").exit_code == 0
        hook = run("hook", "sal")
        assert hook.exit_code == 0
        data = json.loads(hook.output)
        assert data["type"] == "assign"
        assert data["bead_id"] == item_id

    def test_invalid_type_is_a_clean_error(self, run) -> None:
        result = run("create", "Bad", "-t", "saga")
        assert result.exit_code == 1
        assert "invalid type" in result.output

    def test_unknown_item(self, run) -> None:
        result = run("show", "wi-nope")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_dispatch_without_idle_workers(self, run) -> None:
        _create(run, "Queued")
        result = run("dispatch")
        assert result.exit_code == 0
        assert "Nothing dispatched." in result.output


class TestWorkerCommands:
    def test_nudge_levels_for_unregistered_worker(self, run) -> None:
        wake = run("nudge", "sal", "-l", "0")
        assert wake.exit_code == 1
        assert "no stdin" in wake.output

        hook = run("nudge", "sal", "-l", "hook")
        assert hook.exit_code == 0
        data = json.loads((run.data_dir / "workers" / "sal" / "hook.json").read_text())
        assert data["type"] == "nudge"

    def test_nudge_all_without_workers(self, run) -> None:
        result = run("nudge", "all")
        assert result.exit_code == 0
        assert "No named workers" in result.output

    def test_signal_pause(self, run) -> None:
        result = run("signal", "sal", "pause", "-m", "hold for review")
        assert result.exit_code == 0, result.output
        assert "Sent pause to sal" in result.output

        data = json.loads(run("hook", "sal").output)
        assert data["type"] == "pause"
        assert data["message"] == "hold for review"

        assert run("signal", "sal", "explode").exit_code == 2

    def test_hook_without_message(self, run) -> None:
        result = run("hook", "sal")
        assert result.exit_code == 0
        assert "No hook for sal." in result.output

    def test_workers_and_patrol_once_when_empty(self, run) -> None:
        assert "No workers registered." in run("workers").output
        assert "No workers registered." in run("patrol", "--once").output

    def test_patrol_once_finishes_recovery(self, run, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FLEETSYNC_ESCALATION_DELAY", "0.2")
        silent = WorkerRecord(id="w1", name="sal", last_ping=utc_now() - timedelta(hours=1))
        run.data_dir.mkdir(parents=True)
        (run.data_dir / "workers.json").write_text(
            json.dumps({"workers": {"w1": silent.model_dump(mode="json")}})
        )

        result = run("patrol", "--once")

        assert result.exit_code == 0, result.output
        assert "w1  sal  stuck" in result.output
        assert "recovery: recovered (hook)" in result.output
        hook = json.loads((run.data_dir / "workers" / "sal" / "hook.json").read_text())
        assert hook["type"] == "nudge"
