"""
Device Sequence -- the fixed automation run for a single device.

Steps, in order:
    WAKE_DEVICE    keyevent 224 (wake, not toggle), settle
    RESET_HOME     keyevent 3, settle
    LAUNCH_TARGET  monkey launch of the target package
    AWAIT_READY    poll the focused window for the target marker, then
                   fall back to a pidof check
    NAVIGATE       VIEW intent for the target URL, forced into the package

The cancellation token is checked before every step.  A set token ends
the sequence as CANCELLED; any error ends it as FAILED.  Neither outcome
is raised to the caller: ``DeviceSequenceRunner.run`` always returns a
``DeviceResult`` and reports progress through the log callback.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Tuple

from phonebot.errors import BotError, ExecutionError, ReadinessTimeoutError
from phonebot.event_bus import LogEntry, LogLevel

if TYPE_CHECKING:
    from phonebot.adb_manager import CommandExecutor

logger = logging.getLogger("phonebot.sequence")

# Delays (seconds) and readiness budget
SETTLE_DELAY = 0.5
NAVIGATE_DELAY = 1.5
READY_ATTEMPTS = 5
READY_INTERVAL = 0.7

KEYCODE_WAKEUP = 224
KEYCODE_HOME = 3


class SequenceStep(str, Enum):
    START = "start"
    WAKE_DEVICE = "wake_device"
    RESET_HOME = "reset_home"
    LAUNCH_TARGET = "launch_target"
    AWAIT_READY = "await_ready"
    NAVIGATE = "navigate"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeviceOutcome(str, Enum):
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DeviceResult:
    device: str
    outcome: DeviceOutcome
    error: Optional[str] = None


@dataclass(frozen=True)
class SequenceTiming:
    settle_delay: float = SETTLE_DELAY
    navigate_delay: float = NAVIGATE_DELAY
    ready_attempts: int = READY_ATTEMPTS
    ready_interval: float = READY_INTERVAL


@dataclass(frozen=True)
class TargetApp:
    """The app every device is driven into, and the commands that do it."""
    package: str = "com.google.android.youtube"
    marker: str = "youtube"
    url: str = "https://www.youtube.com/@MuseIndonesia"
    label: str = "YouTube"

    @property
    def wake_command(self) -> str:
        return f"shell input keyevent {KEYCODE_WAKEUP}"

    @property
    def home_command(self) -> str:
        return f"shell input keyevent {KEYCODE_HOME}"

    @property
    def launch_command(self) -> str:
        return f"shell monkey -p {self.package} 1"

    @property
    def focus_probe(self) -> str:
        return "shell dumpsys window | grep mCurrentFocus"

    @property
    def process_probe(self) -> str:
        return f"shell pidof {self.package}"

    @property
    def navigate_command(self) -> str:
        return f'shell am start -a android.intent.action.VIEW -d "{self.url}" -p {self.package}'


class CancellationToken:
    """Write-once stop flag shared by every runner of one run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


LogEmitter = Callable[[LogEntry], None]


async def wait_for_ready(
    executor: CommandExecutor,
    device: str,
    target: TargetApp,
    timing: SequenceTiming = SequenceTiming(),
) -> bool:
    """
    Poll until *target* is the focused window, or its process is at least alive.

    Makes exactly ``timing.ready_attempts`` focus probes, sleeping
    ``timing.ready_interval`` after each miss, then one process probe.
    Probe failures count as misses: ``grep`` and ``pidof`` exit non-zero
    when nothing matches.
    """
    marker = target.marker.lower()
    for attempt in range(1, timing.ready_attempts + 1):
        try:
            focus = await executor.execute(device, target.focus_probe)
        except ExecutionError as exc:
            logger.debug("[%s] focus probe %d failed: %s", device, attempt, exc)
            focus = ""

        if focus and marker in focus.lower():
            logger.debug("[%s] %s focused on attempt %d", device, target.label, attempt)
            return True

        await asyncio.sleep(timing.ready_interval)

    try:
        pid = await executor.execute(device, target.process_probe)
    except ExecutionError as exc:
        logger.debug("[%s] process probe failed: %s", device, exc)
        pid = ""
    return len(pid.strip()) > 0


class DeviceSequenceRunner:
    """Runs the step sequence for one device and classifies the outcome."""

    def __init__(
        self,
        device: str,
        executor: CommandExecutor,
        token: CancellationToken,
        emit: LogEmitter,
        target: Optional[TargetApp] = None,
        timing: Optional[SequenceTiming] = None,
    ) -> None:
        self.device = device
        self.state = SequenceStep.START
        self._executor = executor
        self._token = token
        self._emit = emit
        self._target = target or TargetApp()
        self._timing = timing or SequenceTiming()

    def _log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        self._emit(LogEntry(message=message, level=level, device=self.device))

    def _steps(self) -> List[Tuple[SequenceStep, Callable[[], Awaitable[None]]]]:
        return [
            (SequenceStep.WAKE_DEVICE, self._wake_device),
            (SequenceStep.RESET_HOME, self._reset_home),
            (SequenceStep.LAUNCH_TARGET, self._launch_target),
            (SequenceStep.AWAIT_READY, self._await_ready),
            (SequenceStep.NAVIGATE, self._navigate),
        ]

    # ----- Steps -----

    async def _wake_device(self) -> None:
        await self._executor.execute(self.device, self._target.wake_command)
        await asyncio.sleep(self._timing.settle_delay)

    async def _reset_home(self) -> None:
        await self._executor.execute(self.device, self._target.home_command)
        await asyncio.sleep(self._timing.settle_delay)

    async def _launch_target(self) -> None:
        await self._executor.execute(self.device, self._target.launch_command)

    async def _await_ready(self) -> None:
        ready = await wait_for_ready(self._executor, self.device, self._target, self._timing)
        if not ready:
            raise ReadinessTimeoutError(f"{self._target.label} failed to become ready")
        self._log(f"{self._target.label} active")

    async def _navigate(self) -> None:
        await self._executor.execute(self.device, self._target.navigate_command)
        await asyncio.sleep(self._timing.navigate_delay)
        self._log(f"navigated to {self._target.url}")

    # ----- Driver -----

    async def run(self) -> DeviceResult:
        self._log("bot start")
        try:
            for step, action in self._steps():
                if self._token.is_cancelled:
                    self.state = SequenceStep.CANCELLED
                    self._log("bot stopped by request")
                    return DeviceResult(self.device, DeviceOutcome.CANCELLED)
                self.state = step
                await action()
        except BotError as exc:
            return self._fail(exc)
        except Exception as exc:
            logger.exception("[%s] unexpected error in %s", self.device, self.state.value)
            return self._fail(exc)

        self.state = SequenceStep.DONE
        self._log("bot end")
        return DeviceResult(self.device, DeviceOutcome.DONE)

    def _fail(self, exc: Exception) -> DeviceResult:
        failed_in = self.state
        self.state = SequenceStep.FAILED
        self._log(f"Error: {exc}", LogLevel.ERROR)
        logger.debug("[%s] failed during %s", self.device, failed_in.value)
        return DeviceResult(self.device, DeviceOutcome.FAILED, error=str(exc))
