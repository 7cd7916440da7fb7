"""
Shared fixtures for the phonebot test suite.

Provides a scripted command executor, zero-delay timing and canned
``dumpsys`` output so that all tests run WITHOUT adb or real devices.
"""

import asyncio
from typing import Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from phonebot.adb_manager import CommandExecutor
from phonebot.device_sequence import SequenceTiming, TargetApp

FOCUS_TARGET = (
    "  mCurrentFocus=Window{4f1c2d u0 "
    "com.google.android.youtube/com.google.android.apps.youtube.app.WatchWhileActivity}"
)
FOCUS_LAUNCHER = "  mCurrentFocus=Window{9a8b7c u0 com.android.launcher3/.uioverride.QuickstepLauncher}"


# ---------------------------------------------------------------------------
# Fake executor
# ---------------------------------------------------------------------------

Result = Union[str, Exception]


class FakeExecutor(CommandExecutor):
    """
    Scripted executor.

    ``script`` maps device -> command -> list of results; results are
    consumed in order and the last one repeats.  An Exception result is
    raised.  Unscripted commands return "".  ``gates`` maps
    (device, command) to an asyncio.Event the call waits on first.
    """

    def __init__(
        self,
        script: Optional[Dict[str, Dict[str, List[Result]]]] = None,
        devices: Optional[List[str]] = None,
        devices_error: Optional[Exception] = None,
        gates: Optional[Dict[Tuple[str, str], asyncio.Event]] = None,
    ) -> None:
        self.script = script or {}
        self.devices = devices or []
        self.devices_error = devices_error
        self.gates = gates or {}
        self.calls: List[Tuple[str, str]] = []
        self.in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}
        self.closed = False

    async def execute(self, device: str, command: str) -> str:
        self.calls.append((device, command))
        self.in_flight[device] = self.in_flight.get(device, 0) + 1
        self.max_in_flight[device] = max(self.max_in_flight.get(device, 0), self.in_flight[device])
        try:
            gate = self.gates.get((device, command))
            if gate is not None:
                await gate.wait()
        finally:
            self.in_flight[device] -= 1
        results = self.script.get(device, {}).get(command)
        if not results:
            return ""
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def get_devices(self) -> List[str]:
        if self.devices_error is not None:
            raise self.devices_error
        return list(self.devices)

    async def close(self) -> None:
        self.closed = True

    def commands_for(self, device: str) -> List[str]:
        return [cmd for dev, cmd in self.calls if dev == device]

    async def wait_for_calls(self, count: int) -> None:
        for _ in range(1000):
            if len(self.calls) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} calls, got {len(self.calls)}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def target():
    """Default target app (YouTube channel deep link)."""
    return TargetApp()


@pytest.fixture
def fast_timing():
    """Real attempt budget, no waiting."""
    return SequenceTiming(settle_delay=0, navigate_delay=0, ready_attempts=5, ready_interval=0)


@pytest.fixture
def device_script(target):
    """Build the per-device script for the readiness probes."""

    def _make(focus=None, pid="", extra=None):
        script = {
            target.focus_probe: list(focus) if focus is not None else [FOCUS_TARGET],
            target.process_probe: [pid],
        }
        for command, result in (extra or {}).items():
            script[command] = [result]
        return script

    return _make


@pytest.fixture
def make_executor():
    """Factory for FakeExecutor instances."""

    def _make(**kwargs):
        return FakeExecutor(**kwargs)

    return _make


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text=""):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data or {})
        resp.text = AsyncMock(return_value=text)
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession answering every POST with empty stdout."""
    session = AsyncMock()
    session.closed = False
    session.post = MagicMock(return_value=mock_aiohttp_response(200, {"stdout": ""}))
    session.close = AsyncMock()
    return session
