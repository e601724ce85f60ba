from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import pytest

from fleetsync_mcp.errors import CancelledError, NoHandleError, NotFoundError, ValidationError
from fleetsync_mcp.models.hook import HookType
from fleetsync_mcp.models.nudge import NudgeLevel
from fleetsync_mcp.services.hook_channel import HookChannel
from fleetsync_mcp.services.nudger import Nudger

if TYPE_CHECKING:
    from conftest import FakeHandle


class TestNudgeLevels:
    def test_handleless_worker_hook_works_wake_does_not(
        self, nudger: Nudger, hooks: HookChannel
    ) -> None:
        nudger.register_worker("w-sal", "sal")

        with pytest.raises(NoHandleError):
            nudger.nudge_by_name("sal", NudgeLevel.WAKE)
        nudger.nudge_by_name("sal", NudgeLevel.HOOK)

        history = nudger.history("w-sal")
        assert [(event.level, event.success) for event in history] == [
            (NudgeLevel.WAKE, False),
            (NudgeLevel.HOOK, True),
        ]
        assert [event for event in history if event.success][0].level == NudgeLevel.HOOK

        message = hooks.read("sal")
        assert message is not None
        assert message.type == HookType.NUDGE

    def test_wake_writes_newline(self, nudger: Nudger, handle: FakeHandle) -> None:
        nudger.register_worker("w1", "sal", handle)

        nudger.nudge("w1", NudgeLevel.WAKE)
        assert handle.stdin.getvalue() == "\n"

    def test_wake_on_closed_stdin_fails(self, nudger: Nudger, handle: FakeHandle) -> None:
        handle.stdin.close()
        nudger.register_worker("w1", "sal", handle)

        with pytest.raises(NoHandleError):
            nudger.nudge("w1", NudgeLevel.WAKE)

    def test_restart_kills(self, nudger: Nudger, handle: FakeHandle) -> None:
        nudger.register_worker("w1", "sal", handle)

        nudger.nudge("w1", NudgeLevel.RESTART)
        assert handle.killed

    def test_restart_without_handle_fails(self, nudger: Nudger) -> None:
        nudger.register_worker("w1", "sal")
        with pytest.raises(NoHandleError):
            nudger.nudge("w1", NudgeLevel.RESTART)

    def test_hook_on_anonymous_worker_fails(self, nudger: Nudger) -> None:
        nudger.register_worker("w1")
        with pytest.raises(ValidationError):
            nudger.nudge("w1", NudgeLevel.HOOK)

    def test_unknown_worker(self, nudger: Nudger) -> None:
        with pytest.raises(NotFoundError):
            nudger.nudge("ghost", NudgeLevel.HOOK)
        with pytest.raises(NotFoundError):
            nudger.nudge_by_name("ghost", NudgeLevel.HOOK)
        assert nudger.history("ghost") == []

    def test_out_of_range_level_is_a_validation_error(self, nudger: Nudger) -> None:
        nudger.register_worker("w1", "sal")
        with pytest.raises(ValidationError):
            nudger.nudge("w1", 7)
        with pytest.raises(ValidationError):
            nudger.nudge_by_name("sal", "shout")
        assert nudger.history("w1") == []

    def test_level_given_by_label_or_number(self, nudger: Nudger, hooks: HookChannel) -> None:
        nudger.register_worker("w1", "sal")
        nudger.nudge("w1", "hook")
        nudger.nudge("w1", "1")

        assert [event.level for event in nudger.history("w1")] == [NudgeLevel.HOOK] * 2


class TestRegistration:
    def test_rename_drops_old_name(self, nudger: Nudger) -> None:
        nudger.register_worker("w1", "old")
        nudger.register_worker("w1", "new")

        assert nudger.get_id_by_name("old") is None
        assert nudger.get_id_by_name("new") == "w1"

    def test_unregister(self, nudger: Nudger, handle: FakeHandle) -> None:
        nudger.register_worker("w1", "sal", handle)
        nudger.unregister_worker("w1")

        assert not nudger.is_registered("w1")
        assert nudger.get_id_by_name("sal") is None
        assert nudger.handle("w1") is None


class TestEscalation:
    def test_stops_at_first_success(self, nudger: Nudger) -> None:
        nudger.register_worker("w1", "sal")

        level = nudger.nudge_escalating("w1")

        assert level == NudgeLevel.HOOK
        levels = [event.level for event in nudger.history("w1")]
        assert levels == [NudgeLevel.WAKE, NudgeLevel.HOOK]

    def test_wake_success_skips_the_rest(self, nudger: Nudger, handle: FakeHandle) -> None:
        nudger.register_worker("w1", "sal", handle)

        assert nudger.nudge_escalating("w1") == NudgeLevel.WAKE
        assert not handle.killed
        assert len(nudger.history("w1")) == 1

    def test_all_levels_fail_raises_last_error(self, nudger: Nudger) -> None:
        nudger.register_worker("w1")  # anonymous, no handle

        with pytest.raises(NoHandleError):
            nudger.nudge_escalating("w1")
        assert [event.level for event in nudger.history("w1")] == list(NudgeLevel)

    def test_unknown_worker_raises_immediately(self, nudger: Nudger) -> None:
        with pytest.raises(NotFoundError):
            nudger.nudge_escalating("ghost")

    def test_cancelled_before_start(self, nudger: Nudger) -> None:
        nudger.register_worker("w1", "sal")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CancelledError):
            nudger.nudge_escalating("w1", cancel)
        assert nudger.history("w1") == []

    def test_cancel_interrupts_delay(self, hooks: HookChannel) -> None:
        slow = Nudger(hooks, escalation_delay=60)
        slow.register_worker("w1", "sal")
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            with pytest.raises(CancelledError):
                slow.nudge_escalating("w1", cancel)
        finally:
            timer.join()
        # only the wake attempt ran before the delay was cut short
        assert [event.level for event in slow.history("w1")] == [NudgeLevel.WAKE]
