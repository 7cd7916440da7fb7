"""
Bot Controller -- runs the device sequence across many devices at once.

Architecture:
    BotController (one per process, built by the API lifespan or the CLI)
      |
      +-- EventBus              -- log + status fan-out to observers
      +-- RunSession            -- devices, task handles, cancellation token
      |
      v
    DeviceSequenceRunner(s)     -- one asyncio task per device

Status lifecycle:
    idle -> running -> completed | error | idle (stopped)

``start_bot`` returns as soon as the runner tasks are scheduled; the
outcome arrives through the event bus.  ``stop_bot`` flips the run's
token and reports ``idle`` right away; runners notice the token at their
next step boundary, so a command already in flight still finishes.

Usage:
    from phonebot.adb_manager import AdbManager
    from phonebot.bot_controller import BotController

    controller = BotController(AdbManager())
    controller.events.subscribe_logs(print)
    controller.start_bot(["emulator-5554", "R5CT123ABCD"])
    status = await controller.wait_for_run()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from phonebot.adb_manager import CommandExecutor
from phonebot.device_sequence import (
    CancellationToken,
    DeviceOutcome,
    DeviceResult,
    DeviceSequenceRunner,
    SequenceTiming,
    TargetApp,
)
from phonebot.errors import AlreadyRunningError, NoDevicesError
from phonebot.event_bus import EventBus, LogEntry, LogLevel, RunStatus

logger = logging.getLogger("phonebot.controller")


class RunSession:
    """Bookkeeping for one ``start_bot`` call."""

    def __init__(self, devices: Tuple[str, ...]) -> None:
        self.run_id = uuid.uuid4().hex[:12]
        self.devices = devices
        self.token = CancellationToken()
        self.handles: Dict[str, asyncio.Task] = {}
        self.results: List[DeviceResult] = []
        self.task: Optional[asyncio.Task] = None
        self.started_at = datetime.now(timezone.utc)

    @property
    def cancelled(self) -> bool:
        return self.token.is_cancelled

    @property
    def finished(self) -> bool:
        return self.task is not None and self.task.done()


class BotController:
    """
    Aggregate run controller.

    Only this class writes the run status.  Status checks and transitions
    share one re-entrant lock so ``start_bot`` / ``stop_bot`` can be called
    from any thread; everything else is lock-free.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        target: Optional[TargetApp] = None,
        timing: Optional[SequenceTiming] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.executor = executor
        self.target = target or TargetApp()
        self.timing = timing or SequenceTiming()
        self.events = events or EventBus()
        self._status = RunStatus.IDLE
        self._lock = threading.RLock()
        self._session: Optional[RunSession] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # latest runner per device, across runs; a stopped run may still be draining
        self._device_tasks: Dict[str, asyncio.Task] = {}

    # ----- Status & logs -----

    @property
    def status(self) -> RunStatus:
        return self._status

    def get_status(self) -> RunStatus:
        return self._status

    @property
    def session(self) -> Optional[RunSession]:
        """The current or most recent run, if any."""
        return self._session

    def _set_status(self, status: RunStatus) -> None:
        with self._lock:
            if status is self._status:
                return
            self._status = status
            logger.info("Bot status -> %s", status.value)
            self.events.publish_status(status)

    def _publish_log(self, entry: LogEntry) -> None:
        level = logging.ERROR if entry.level is LogLevel.ERROR else logging.INFO
        if entry.device:
            logger.log(level, "[%s] %s", entry.device, entry.message)
        else:
            logger.log(level, "%s", entry.message)
        self.events.publish_log(entry)

    def log(self, message: str, level: LogLevel = LogLevel.INFO, device: Optional[str] = None) -> None:
        self._publish_log(LogEntry(message=message, level=level, device=device))

    # ----- Control -----

    def start_bot(self, devices: Iterable[str]) -> RunSession:
        """
        Launch one sequence per device and return without waiting.

        Must be called from inside the event loop the runners should use;
        other threads go through ``start_bot_threadsafe``.  Raises
        ``AlreadyRunningError`` while a run is active or while a stopped
        run is still draining on any of *devices*, and ``NoDevicesError``
        for an empty device set.
        """
        loop = asyncio.get_running_loop()
        unique = tuple(dict.fromkeys(devices or ()))

        with self._lock:
            if self._status is RunStatus.RUNNING:
                raise AlreadyRunningError()
            if not unique:
                raise NoDevicesError()
            busy = [d for d in unique if d in self._device_tasks and not self._device_tasks[d].done()]
            if busy:
                raise AlreadyRunningError(f"Previous run still stopping on: {', '.join(busy)}")

            session = RunSession(unique)
            self._session = session
            self._loop = loop
            self._set_status(RunStatus.RUNNING)
            self.log(f"Starting bot for {len(unique)} device(s)")

            for device in unique:
                runner = DeviceSequenceRunner(
                    device,
                    self.executor,
                    session.token,
                    self._publish_log,
                    target=self.target,
                    timing=self.timing,
                )
                task = loop.create_task(runner.run())
                session.handles[device] = task
                self._device_tasks[device] = task
            session.task = loop.create_task(self._aggregate(session))

        logger.debug("Run %s launched for %s", session.run_id, ", ".join(unique))
        return session

    def stop_bot(self) -> None:
        """Request a stop of the active run. No-op unless running."""
        with self._lock:
            if self._status is not RunStatus.RUNNING or self._session is None:
                return
            self._session.token.cancel()
            self.log("Stopping bot...")
            self._set_status(RunStatus.IDLE)

    def start_bot_threadsafe(
        self,
        devices: Iterable[str],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        timeout: Optional[float] = 10.0,
    ) -> RunSession:
        """``start_bot`` for callers outside the controller's event loop."""
        loop = loop or self._loop
        if loop is None:
            raise RuntimeError("No event loop bound to the controller; pass one explicitly")
        devices = list(devices)

        async def _start() -> RunSession:
            return self.start_bot(devices)

        return asyncio.run_coroutine_threadsafe(_start(), loop).result(timeout)

    def stop_bot_threadsafe(self) -> None:
        # stop_bot only touches the lock, the token and the bus
        self.stop_bot()

    async def wait_for_run(self) -> RunStatus:
        """Wait until the current run has drained and return the final status."""
        session = self._session
        if session is not None and session.task is not None:
            await asyncio.shield(session.task)
        return self._status

    async def shutdown(self) -> None:
        """Stop the active run and wait for its runners to drain."""
        self.stop_bot()
        session = self._session
        if session is not None and session.task is not None and not session.task.done():
            await asyncio.gather(session.task, return_exceptions=True)

    # ----- Aggregation -----

    async def _aggregate(self, session: RunSession) -> RunStatus:
        try:
            devices = list(session.handles)
            outcomes = await asyncio.gather(*session.handles.values(), return_exceptions=True)
            results: List[DeviceResult] = []
            for device, outcome in zip(devices, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    results.append(DeviceResult(device, DeviceOutcome.CANCELLED))
                elif isinstance(outcome, BaseException):
                    results.append(DeviceResult(device, DeviceOutcome.FAILED, error=repr(outcome)))
                else:
                    results.append(outcome)
            session.results = results
            return self._finish(session)
        except asyncio.CancelledError:
            with self._lock:
                session.token.cancel()
                if self._session is session and self._status is RunStatus.RUNNING:
                    self._set_status(RunStatus.IDLE)
            raise
        finally:
            session.handles.clear()

    def _finish(self, session: RunSession) -> RunStatus:
        failed = [r for r in session.results if r.outcome is DeviceOutcome.FAILED]

        with self._lock:
            if session.cancelled:
                final = RunStatus.IDLE
                self.log("Bot stopped")
            elif failed:
                final = RunStatus.ERROR
                self.log(
                    f"Bot error: {len(failed)} of {len(session.results)} device(s) failed",
                    LogLevel.ERROR,
                )
            else:
                final = RunStatus.COMPLETED
                self.log("Bot completed successfully")

            if self._session is session:
                self._set_status(final)
            else:
                logger.info(
                    "Run %s drained after a newer run started; status left at %s",
                    session.run_id, self._status.value,
                )
        return final
