"""
Exception types raised by the phonebot orchestrator and its executors.

Control errors (``AlreadyRunningError``, ``NoDevicesError``) are surfaced to
whoever called ``BotController.start_bot``.  Device errors
(``ExecutionError``, ``ReadinessTimeoutError``) end a single device's
sequence and never leave it.
"""

from __future__ import annotations

from typing import Optional


class BotError(Exception):
    """Base class for every phonebot error."""


class AlreadyRunningError(BotError):
    """``start_bot`` was called while a run is in progress."""

    def __init__(self, message: str = "Bot is already running") -> None:
        super().__init__(message)


class NoDevicesError(BotError):
    """``start_bot`` was called with an empty device set."""

    def __init__(self, message: str = "No devices provided") -> None:
        super().__init__(message)


class ExecutionError(BotError):
    """A command failed at the transport layer (ADB or the remote node)."""

    def __init__(
        self,
        message: str,
        device: Optional[str] = None,
        command: Optional[str] = None,
        returncode: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.device = device
        self.command = command
        self.returncode = returncode


class ReadinessTimeoutError(BotError):
    """The target app never reached the foreground and its process is not alive."""
