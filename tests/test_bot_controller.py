"""
Tests for the BotController run lifecycle.

Status transitions, start/stop preconditions, aggregation of per-device
outcomes, cancellation draining, bookkeeping release and event
publication. All device I/O goes through FakeExecutor.
"""
from __future__ import annotations

import asyncio

import pytest

from phonebot.bot_controller import BotController
from phonebot.device_sequence import DeviceOutcome
from phonebot.errors import AlreadyRunningError, ExecutionError, NoDevicesError
from phonebot.event_bus import LogLevel, RunStatus

from conftest import FOCUS_LAUNCHER


# ===================================================================
# Fixtures
# ===================================================================

@pytest.fixture
def recorder():
    """Collects published logs and statuses."""

    class _Recorder:
        def __init__(self):
            self.logs = []
            self.statuses = []

        def attach(self, controller):
            controller.events.subscribe_logs(self.logs.append)
            controller.events.subscribe_status(self.statuses.append)
            return controller

        def messages(self, device=None):
            return [e.message for e in self.logs if e.device == device]

    return _Recorder()


@pytest.fixture
def make_controller(target, fast_timing, recorder):
    def _make(executor):
        return recorder.attach(BotController(executor, target=target, timing=fast_timing))
    return _make


# ===================================================================
# Preconditions
# ===================================================================

class TestStartPreconditions:

    def test_initial_status_is_idle(self, make_executor, make_controller):
        controller = make_controller(make_executor())
        assert controller.status is RunStatus.IDLE
        assert controller.get_status() is RunStatus.IDLE
        assert controller.session is None

    @pytest.mark.asyncio
    async def test_empty_device_set_rejected(self, make_executor, make_controller, recorder):
        controller = make_controller(make_executor())

        with pytest.raises(NoDevicesError):
            controller.start_bot([])

        assert controller.status is RunStatus.IDLE
        assert recorder.logs == []
        assert recorder.statuses == []

    @pytest.mark.asyncio
    async def test_second_start_while_running_rejected(self, make_executor, make_controller, device_script):
        executor = make_executor(script={"A": device_script(), "B": device_script()})
        controller = make_controller(executor)

        first = controller.start_bot(["A"])
        with pytest.raises(AlreadyRunningError):
            controller.start_bot(["B"])

        assert controller.session is first
        assert await controller.wait_for_run() is RunStatus.COMPLETED
        assert executor.commands_for("B") == []

    @pytest.mark.asyncio
    async def test_duplicate_devices_collapsed(self, make_executor, make_controller, device_script, recorder):
        executor = make_executor(script={"A": device_script(), "B": device_script()})
        controller = make_controller(executor)

        session = controller.start_bot(["A", "B", "A"])
        await controller.wait_for_run()

        assert session.devices == ("A", "B")
        assert recorder.logs[0].message == "Starting bot for 2 device(s)"

    def test_start_requires_running_loop(self, make_executor, make_controller):
        controller = make_controller(make_executor())
        with pytest.raises(RuntimeError):
            controller.start_bot(["A"])


# ===================================================================
# Lifecycle
# ===================================================================

class TestRunLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_running_immediately_then_completes(
        self, make_executor, make_controller, device_script, recorder
    ):
        executor = make_executor(script={"A": device_script(), "B": device_script()})
        controller = make_controller(executor)

        session = controller.start_bot(["A", "B"])
        assert controller.status is RunStatus.RUNNING
        assert recorder.statuses == [RunStatus.RUNNING]

        status = await controller.wait_for_run()

        assert status is RunStatus.COMPLETED
        assert recorder.statuses == [RunStatus.RUNNING, RunStatus.COMPLETED]
        assert recorder.messages() == ["Starting bot for 2 device(s)", "Bot completed successfully"]
        assert {r.outcome for r in session.results} == {DeviceOutcome.DONE}

    @pytest.mark.asyncio
    async def test_device_logs_stay_in_order(self, make_executor, make_controller, device_script, recorder, target):
        executor = make_executor(script={"A": device_script(), "B": device_script()})
        controller = make_controller(executor)

        controller.start_bot(["A", "B"])
        await controller.wait_for_run()

        expected = ["bot start", "YouTube active", f"navigated to {target.url}", "bot end"]
        assert recorder.messages("A") == expected
        assert recorder.messages("B") == expected

    @pytest.mark.asyncio
    async def test_mixed_outcome_scenario(self, make_executor, make_controller, device_script, recorder):
        """A ready on attempt 1, B never ready with an empty fallback."""
        executor = make_executor(script={
            "A": device_script(),
            "B": device_script(focus=[FOCUS_LAUNCHER], pid=""),
        })
        controller = make_controller(executor)

        controller.start_bot(["A", "B"])
        status = await controller.wait_for_run()

        assert status is RunStatus.ERROR
        a_logs = recorder.messages("A")
        b_logs = recorder.messages("B")
        assert any("navigated" in m for m in a_logs)
        assert any("failed" in m for m in b_logs)
        assert not any("failed" in m for m in a_logs)
        assert not any("navigated" in m for m in b_logs)
        error_logs = [e for e in recorder.logs if e.level is LogLevel.ERROR]
        assert {e.device for e in error_logs} == {"B", None}
        assert recorder.messages()[-1] == "Bot error: 1 of 2 device(s) failed"

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_sibling(self, make_executor, make_controller, device_script, target):
        executor = make_executor(script={
            "A": device_script(extra={target.wake_command: ExecutionError("device offline")}),
            "B": device_script(),
        })
        controller = make_controller(executor)

        session = controller.start_bot(["A", "B"])
        assert await controller.wait_for_run() is RunStatus.ERROR

        outcomes = {r.device: r.outcome for r in session.results}
        assert outcomes == {"A": DeviceOutcome.FAILED, "B": DeviceOutcome.DONE}
        assert target.navigate_command in executor.commands_for("B")

    @pytest.mark.asyncio
    async def test_every_device_failing_still_settles(self, make_executor, make_controller, device_script):
        executor = make_executor(script={
            d: device_script(focus=[FOCUS_LAUNCHER], pid="") for d in ("A", "B", "C")
        })
        controller = make_controller(executor)

        controller.start_bot(["A", "B", "C"])

        assert await controller.wait_for_run() is RunStatus.ERROR
        assert controller.status is RunStatus.ERROR

    @pytest.mark.asyncio
    async def test_can_start_again_after_completion(self, make_executor, make_controller, device_script):
        executor = make_executor(script={"A": device_script()})
        controller = make_controller(executor)

        controller.start_bot(["A"])
        await controller.wait_for_run()
        second = controller.start_bot(["A"])

        assert controller.status is RunStatus.RUNNING
        assert await controller.wait_for_run() is RunStatus.COMPLETED
        assert controller.session is second

    @pytest.mark.asyncio
    async def test_bookkeeping_released_on_completion(self, make_executor, make_controller, device_script):
        executor = make_executor(script={"A": device_script(), "B": device_script(focus=[FOCUS_LAUNCHER])})
        controller = make_controller(executor)

        session = controller.start_bot(["A", "B"])
        assert set(session.handles) == {"A", "B"}
        await controller.wait_for_run()

        assert session.handles == {}
        assert session.finished


# ===================================================================
# Stop
# ===================================================================

class TestStop:

    def test_stop_when_idle_is_noop(self, make_executor, make_controller, recorder):
        controller = make_controller(make_executor())
        controller.stop_bot()
        assert controller.status is RunStatus.IDLE
        assert recorder.logs == []
        assert recorder.statuses == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("script_kind,final", [("ok", RunStatus.COMPLETED), ("bad", RunStatus.ERROR)])
    async def test_stop_after_run_finished_is_noop(
        self, make_executor, make_controller, device_script, recorder, script_kind, final
    ):
        script = device_script() if script_kind == "ok" else device_script(focus=[FOCUS_LAUNCHER])
        controller = make_controller(make_executor(script={"A": script}))
        controller.start_bot(["A"])
        await controller.wait_for_run()
        log_count = len(recorder.logs)

        controller.stop_bot()

        assert controller.status is final
        assert len(recorder.logs) == log_count

    @pytest.mark.asyncio
    async def test_stop_immediately_after_start(self, make_executor, make_controller, device_script, recorder, target):
        executor = make_executor(script={"A": device_script()})
        controller = make_controller(executor)

        session = controller.start_bot(["A"])
        controller.stop_bot()
        assert controller.status is RunStatus.IDLE

        status = await controller.wait_for_run()

        assert status is RunStatus.IDLE
        assert set(executor.commands_for("A")) <= {target.wake_command}
        assert "bot stopped by request" in recorder.messages("A")
        assert recorder.messages()[-2:] == ["Stopping bot...", "Bot stopped"]
        assert recorder.statuses == [RunStatus.RUNNING, RunStatus.IDLE]
        assert session.results[0].outcome is DeviceOutcome.CANCELLED
        assert session.handles == {}

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_executor, make_controller, device_script, recorder):
        controller = make_controller(make_executor(script={"A": device_script()}))
        controller.start_bot(["A"])

        controller.stop_bot()
        controller.stop_bot()
        await controller.wait_for_run()

        assert recorder.messages().count("Stopping bot...") == 1

    @pytest.mark.asyncio
    async def test_stop_mid_step_drains_every_device(
        self, make_executor, make_controller, device_script, recorder, target
    ):
        gates = {("A", target.wake_command): asyncio.Event(), ("B", target.wake_command): asyncio.Event()}
        executor = make_executor(script={"A": device_script(), "B": device_script()}, gates=gates)
        controller = make_controller(executor)

        session = controller.start_bot(["A", "B"])
        await executor.wait_for_calls(2)

        controller.stop_bot()
        assert controller.status is RunStatus.IDLE
        assert not session.finished

        for gate in gates.values():
            gate.set()
        assert await controller.wait_for_run() is RunStatus.IDLE

        for device in ("A", "B"):
            assert executor.commands_for(device) == [target.wake_command]
            assert recorder.messages(device)[-1] == "bot stopped by request"
        assert {r.outcome for r in session.results} == {DeviceOutcome.CANCELLED}

    @pytest.mark.asyncio
    async def test_cancelled_run_is_idle_even_with_failures(
        self, make_executor, make_controller, device_script, target
    ):
        gate = asyncio.Event()
        executor = make_executor(
            script={
                "A": device_script(extra={target.wake_command: ExecutionError("offline")}),
                "B": device_script(),
            },
            gates={("B", target.wake_command): gate},
        )
        controller = make_controller(executor)

        controller.start_bot(["A", "B"])
        await executor.wait_for_calls(2)
        controller.stop_bot()
        gate.set()

        assert await controller.wait_for_run() is RunStatus.IDLE

    @pytest.mark.asyncio
    async def test_new_run_after_stop_is_isolated_from_draining_run(
        self, make_executor, make_controller, device_script, recorder, target
    ):
        gate = asyncio.Event()
        executor = make_executor(
            script={"A": device_script(), "B": device_script()},
            gates={("A", target.wake_command): gate},
        )
        controller = make_controller(executor)

        old = controller.start_bot(["A"])
        await executor.wait_for_calls(1)
        controller.stop_bot()

        new = controller.start_bot(["B"])
        assert controller.status is RunStatus.RUNNING
        assert new.token is not old.token
        assert old.cancelled and not new.cancelled

        gate.set()
        await old.task
        assert await controller.wait_for_run() is RunStatus.COMPLETED

        assert executor.commands_for("A") == [target.wake_command]
        assert recorder.messages("A")[-1] == "bot stopped by request"
        assert target.navigate_command in executor.commands_for("B")
        assert controller.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_restart_on_draining_device_rejected(
        self, make_executor, make_controller, device_script, recorder, target
    ):
        gate = asyncio.Event()
        executor = make_executor(
            script={"A": device_script(), "B": device_script()},
            gates={("A", target.wake_command): gate},
        )
        controller = make_controller(executor)

        old = controller.start_bot(["A"])
        await executor.wait_for_calls(1)
        controller.stop_bot()

        with pytest.raises(AlreadyRunningError, match="still stopping on: A"):
            controller.start_bot(["B", "A"])
        assert controller.status is RunStatus.IDLE
        assert controller.session is old
        assert executor.commands_for("B") == []

        gate.set()
        assert await controller.wait_for_run() is RunStatus.IDLE

        controller.start_bot(["A"])
        assert await controller.wait_for_run() is RunStatus.COMPLETED
        assert executor.max_in_flight["A"] == 1
        assert recorder.statuses == [RunStatus.RUNNING, RunStatus.IDLE, RunStatus.RUNNING, RunStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_shutdown_stops_and_drains(self, make_executor, make_controller, device_script, target):
        gate = asyncio.Event()
        executor = make_executor(script={"A": device_script()}, gates={("A", target.wake_command): gate})
        controller = make_controller(executor)

        session = controller.start_bot(["A"])
        await executor.wait_for_calls(1)
        shutdown = asyncio.create_task(controller.shutdown())
        await asyncio.sleep(0)
        assert controller.status is RunStatus.IDLE

        gate.set()
        await shutdown

        assert session.finished
        assert session.handles == {}


# ===================================================================
# Publication & threading
# ===================================================================

class TestPublication:

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_run(self, make_executor, make_controller, device_script):
        controller = make_controller(make_executor(script={"A": device_script()}))

        def broken(_entry):
            raise ValueError("subscriber bug")

        controller.events.subscribe_logs(broken)
        controller.start_bot(["A"])

        assert await controller.wait_for_run() is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_from_another_thread(self, make_executor, make_controller, device_script):
        controller = make_controller(make_executor(script={"A": device_script()}))
        loop = asyncio.get_running_loop()

        session = await asyncio.to_thread(controller.start_bot_threadsafe, ["A"], loop)

        assert session.devices == ("A",)
        assert await controller.wait_for_run() is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_from_another_thread(self, make_executor, make_controller, device_script, target):
        gate = asyncio.Event()
        executor = make_executor(script={"A": device_script()}, gates={("A", target.wake_command): gate})
        controller = make_controller(executor)

        controller.start_bot(["A"])
        await executor.wait_for_calls(1)
        await asyncio.to_thread(controller.stop_bot_threadsafe)
        gate.set()

        assert await controller.wait_for_run() is RunStatus.IDLE

    def test_threadsafe_start_without_loop_raises(self, make_executor, make_controller):
        controller = make_controller(make_executor())
        with pytest.raises(RuntimeError):
            controller.start_bot_threadsafe(["A"])
