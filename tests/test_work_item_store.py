from __future__ import annotations

import json

import pytest

from fleetsync_mcp.db.work_item_store import WorkItemStore
from fleetsync_mcp.errors import NotFoundError, ValidationError
from fleetsync_mcp.models.work_item import (
    EventType,
    WorkItem,
    WorkItemEvent,
    WorkItemFilter,
    WorkItemStatus,
)


def _create(store: WorkItemStore, title: str, **fields) -> WorkItem:
    return store.create(WorkItem(title=title, **fields))


class TestCreate:
    def test_assigns_id_branch_and_created_event(self, store: WorkItemStore) -> None:
        item = _create(store, "Fix login", created_by="alice")

        assert item.id.startswith("wi-")
        assert item.branch == f"fleet/{item.id}"
        assert item.created_at is not None
        assert item.updated_at == item.created_at
        assert [event.type for event in item.history] == [EventType.CREATED]
        assert item.history[0].actor == "alice"
        assert item.history[0].id.startswith("ev-")

    def test_created_event_defaults_to_user(self, store: WorkItemStore) -> None:
        item = _create(store, "Anonymous")
        assert item.history[0].actor == "user"

    def test_ids_are_unique(self, store: WorkItemStore) -> None:
        ids = {_create(store, f"item {n}").id for n in range(50)}
        assert len(ids) == 50

    def test_round_trip(self, store: WorkItemStore) -> None:
        created = _create(
            store,
            "Round trip",
            description="details",
            priority=1,
            labels="auth, backend",
            workspace="api",
            related=["wi-other"],
        )
        assert store.get(created.id) == created

    def test_priority_out_of_range_rejected(self, store: WorkItemStore) -> None:
        with pytest.raises(ValidationError):
            _create(store, "Too urgent", priority=5)
        assert store.list() == []

    def test_wire_names(self, store: WorkItemStore) -> None:
        blocked = _create(store, "Later")
        item = _create(store, "First", workspace="api", blocking_ids=[blocked.id])

        lines = store.path.read_text(encoding="utf-8").splitlines()
        record = json.loads(lines[1])
        assert record["id"] == item.id
        assert record["turf"] == "api"
        assert record["blocks"] == [blocked.id]
        assert "closed_at" not in record


class TestReadsAndFilters:
    def test_get_unknown_raises(self, store: WorkItemStore) -> None:
        with pytest.raises(NotFoundError):
            store.get("wi-missing")

    def test_list_filters_are_anded(self, store: WorkItemStore) -> None:
        _create(store, "a", workspace="api", assignee="sal")
        _create(store, "b", workspace="api")
        _create(store, "c", workspace="web", assignee="sal")

        found = store.list(WorkItemFilter(workspace="api", assignee="sal"))
        assert [item.title for item in found] == ["a"]
        assert len(store.list(WorkItemFilter())) == 3

    def test_filter_from_strings_rejects_unknown_status(self) -> None:
        with pytest.raises(ValidationError):
            WorkItemFilter.from_strings(status="finished")

    def test_malformed_lines_are_skipped(self, store: WorkItemStore) -> None:
        good = _create(store, "Survivor")
        with open(store.path, "a", encoding="utf-8") as handle:
            handle.write("{not json\n")
            handle.write('{"id": "wi-bad", "priority": "high"}\n')

        assert [item.id for item in store.list()] == [good.id]

    def test_missing_file_is_empty(self, tmp_path) -> None:
        assert WorkItemStore(tmp_path / "fresh").list() == []


class TestUpdate:
    def test_status_change_appends_event_and_stamps_closed_at(self, store: WorkItemStore) -> None:
        item = _create(store, "Ship it")
        closed = store.update(
            item.model_copy(update={"status": WorkItemStatus.CLOSED}), actor="bob"
        )

        last = closed.history[-1]
        assert last.type == EventType.STATUS_CHANGED
        assert (last.from_value, last.to, last.actor) == ("open", "closed", "bob")
        assert closed.closed_at is not None

        reopened = store.update(closed.model_copy(update={"status": WorkItemStatus.OPEN}))
        assert reopened.closed_at is None

    def test_assignee_change_appends_event(self, store: WorkItemStore) -> None:
        item = _create(store, "Assign me")
        updated = store.update(item.model_copy(update={"assignee": "sal"}), actor="lead")

        last = updated.history[-1]
        assert last.type == EventType.ASSIGNED
        assert last.to == "sal"

    def test_history_is_append_only(self, store: WorkItemStore) -> None:
        item = _create(store, "Audit")
        first = store.update(item.model_copy(update={"status": WorkItemStatus.IN_PROGRESS}))
        before = [event.id for event in first.history]

        # a caller that drops history cannot erase it
        stripped = first.model_copy(update={"history": [], "status": WorkItemStatus.BLOCKED})
        second = store.update(stripped)

        after = [event.id for event in second.history]
        assert after[: len(before)] == before
        assert len(after) == len(before) + 1

    def test_new_caller_events_are_appended(self, store: WorkItemStore) -> None:
        item = _create(store, "Work")
        extra = WorkItemEvent(type=EventType.WORK_STARTED, actor="sal")
        updated = store.update(item.model_copy(update={"history": [*item.history, extra]}))

        assert [event.type for event in updated.history] == [
            EventType.CREATED,
            EventType.WORK_STARTED,
        ]
        assert updated.history[-1].id.startswith("ev-")

    def test_created_at_is_preserved(self, store: WorkItemStore) -> None:
        item = _create(store, "Keep me")
        updated = store.update(item.model_copy(update={"created_at": None, "title": "Renamed"}))
        assert updated.created_at == item.created_at
        assert updated.title == "Renamed"

    def test_update_unknown_raises(self, store: WorkItemStore) -> None:
        with pytest.raises(NotFoundError):
            store.update(WorkItem(id="wi-ghost", title="ghost"))

    def test_self_block_rejected(self, store: WorkItemStore) -> None:
        item = _create(store, "Loop")
        with pytest.raises(ValidationError):
            store.update(item.model_copy(update={"blocking_ids": [item.id]}))


class TestEvents:
    def test_add_comment(self, store: WorkItemStore) -> None:
        item = _create(store, "Discuss")
        event = store.add_comment(item.id, "sal", "looks good")

        assert event.type == EventType.COMMENTED
        assert store.get(item.id).history[-1].comment == "looks good"

    def test_add_events_unknown_item_writes_nothing(self, store: WorkItemStore) -> None:
        item = _create(store, "Untouched")
        with pytest.raises(NotFoundError):
            store.add_events("wi-nope", [WorkItemEvent(type=EventType.COMMENTED)])
        assert store.get(item.id).history == item.history

    def test_add_events_appends_in_order(self, store: WorkItemStore) -> None:
        item = _create(store, "Batch")
        store.add_events(
            item.id,
            [
                WorkItemEvent(type=EventType.WORK_STARTED, actor="sal"),
                WorkItemEvent(type=EventType.WORK_COMPLETED, actor="sal"),
            ],
        )
        types = [event.type for event in store.get(item.id).history]
        assert types == [EventType.CREATED, EventType.WORK_STARTED, EventType.WORK_COMPLETED]


class TestReadySet:
    def test_blocked_item_waits_for_blocker(self, store: WorkItemStore) -> None:
        x = _create(store, "X", priority=2, workspace="w")
        y = _create(store, "Y", priority=0, workspace="w", blocking_ids=[x.id])

        assert [item.id for item in store.list_ready("w")] == [y.id]

        store.update(y.model_copy(update={"status": WorkItemStatus.CLOSED}))
        assert [item.id for item in store.list_ready("w")] == [x.id]

    def test_priority_order_with_stable_ties(self, store: WorkItemStore) -> None:
        low = _create(store, "low", priority=3)
        first_high = _create(store, "high-1", priority=0)
        mid = _create(store, "mid", priority=1)
        second_high = _create(store, "high-2", priority=0)

        ready = [item.id for item in store.list_ready()]
        assert ready == [first_high.id, second_high.id, mid.id, low.id]

    def test_only_open_items_are_ready(self, store: WorkItemStore) -> None:
        open_item = _create(store, "open")
        busy = _create(store, "busy")
        store.update(busy.model_copy(update={"status": WorkItemStatus.IN_PROGRESS}))

        assert [item.id for item in store.list_ready()] == [open_item.id]

    def test_workspace_filter(self, store: WorkItemStore) -> None:
        _create(store, "api work", workspace="api")
        web = _create(store, "web work", workspace="web")

        assert [item.id for item in store.list_ready("web")] == [web.id]
        assert len(store.list_ready()) == 2

    def test_closed_blocker_does_not_block(self, store: WorkItemStore) -> None:
        target = _create(store, "target")
        blocker = _create(store, "blocker", blocking_ids=[target.id])
        store.update(blocker.model_copy(update={"status": WorkItemStatus.CLOSED}))

        assert target.id in {item.id for item in store.list_ready()}


class TestDependencies:
    def test_direction(self, store: WorkItemStore) -> None:
        b = _create(store, "B")
        a = _create(store, "A", blocking_ids=[b.id])

        assert [item.id for item in store.get_blocked_by(b.id)] == [a.id]
        assert [item.id for item in store.get_blocking(a.id)] == [b.id]
        assert store.get_blocked_by(a.id) == []
        assert store.get_blocking(b.id) == []

    def test_unknown_blocked_ids_are_skipped(self, store: WorkItemStore) -> None:
        a = _create(store, "A", blocking_ids=["wi-gone"])
        assert store.get_blocking(a.id) == []

    def test_blocked_by_unknown_item_raises(self, store: WorkItemStore) -> None:
        with pytest.raises(NotFoundError):
            store.get_blocked_by("wi-missing")

    def test_tree_resolves_transitively(self, store: WorkItemStore) -> None:
        c = _create(store, "C")
        b = _create(store, "B", blocking_ids=[c.id])
        a = _create(store, "A", blocking_ids=[b.id])

        tree = store.get_dependency_tree(c.id)
        assert tree.item.id == c.id
        assert [child.item.id for child in tree.blocked_by] == [b.id]
        assert [child.item.id for child in tree.blocked_by[0].blocked_by] == [a.id]
        assert tree.cycles == []

    def test_cycles_terminate_and_are_reported(self, store: WorkItemStore) -> None:
        a = _create(store, "A")
        b = _create(store, "B", blocking_ids=[a.id])
        store.update(store.get(a.id).model_copy(update={"blocking_ids": [b.id]}))

        tree = store.get_dependency_tree(a.id)
        assert len(tree.cycles) == 1
        assert set(tree.cycles[0]) == {a.id, b.id}

        cycles = store.find_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {a.id, b.id}

        # neither item in the cycle can ever be ready
        assert store.list_ready() == []

    def test_tree_to_dict(self, store: WorkItemStore) -> None:
        b = _create(store, "B")
        a = _create(store, "A", blocking_ids=[b.id])

        data = store.get_dependency_tree(a.id).to_dict()
        assert data["id"] == a.id
        assert data["blocking"][0]["id"] == b.id
        assert "cycles" not in data
