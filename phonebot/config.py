"""
Runtime configuration for phonebot.

Everything is read from environment variables once at import time, the
same way the rest of the package reads its constants.  ``BotConfig``
bundles the values the orchestrator needs and knows how to build the
configured command executor.

Environment:
    ADB_PATH                  explicit adb binary (skips resolution)
    PHONEBOT_BUNDLE_DIR       directory holding a bundled ``adb/adb[.exe]``
    ADB_COMMAND_TIMEOUT       seconds per device command (default 30)
    ADB_VALIDATE_TIMEOUT      seconds for ``adb version`` (default 5)
    PHONEBOT_EXECUTOR         ``adb`` (local binary) or ``node`` (HTTP relay)
    OPENCLAW_NODE_URL         relay URL used by the ``node`` executor
    OPENCLAW_ANDROID_NODE     node name the relay routes commands through
    PHONEBOT_TARGET_PACKAGE   Android package launched on every device
    PHONEBOT_TARGET_MARKER    substring expected in the focused window
    PHONEBOT_TARGET_URL       deep link opened inside the target app
    PHONEBOT_TARGET_LABEL     human name used in log messages
    PHONEBOT_API_PORT         HTTP port for ``phonebot serve``
    PHONEBOT_CORS_ORIGINS     comma separated list of allowed origins
    PHONEBOT_LOG_BUFFER       number of log entries kept for ``/bot/logs``
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from phonebot.device_sequence import SequenceTiming, TargetApp

if TYPE_CHECKING:
    from phonebot.adb_manager import CommandExecutor

# ---------------------------------------------------------------------------
# ADB / transport
# ---------------------------------------------------------------------------

ADB_PATH = os.getenv("ADB_PATH", "")
BUNDLE_DIR = os.getenv("PHONEBOT_BUNDLE_DIR", "")
DEV_ADB_PATH = r"C:\adb\adb.exe"
ADB_COMMAND_TIMEOUT = float(os.getenv("ADB_COMMAND_TIMEOUT", "30"))
ADB_VALIDATE_TIMEOUT = float(os.getenv("ADB_VALIDATE_TIMEOUT", "5"))
ADB_DEVICES_TIMEOUT = 15.0

EXECUTOR_KIND = os.getenv("PHONEBOT_EXECUTOR", "adb").lower()
NODE_URL = os.getenv("OPENCLAW_NODE_URL", "http://localhost:18789")
NODE_NAME = os.getenv("OPENCLAW_ANDROID_NODE", "android")

# ---------------------------------------------------------------------------
# Target application
# ---------------------------------------------------------------------------

TARGET_PACKAGE = os.getenv("PHONEBOT_TARGET_PACKAGE", "com.google.android.youtube")
TARGET_MARKER = os.getenv("PHONEBOT_TARGET_MARKER", "youtube")
TARGET_URL = os.getenv("PHONEBOT_TARGET_URL", "https://www.youtube.com/@MuseIndonesia")
TARGET_LABEL = os.getenv("PHONEBOT_TARGET_LABEL", "YouTube")

# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------

API_PORT = int(os.getenv("PHONEBOT_API_PORT", "8765"))
ALLOWED_ORIGINS = os.getenv(
    "PHONEBOT_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8765",
).split(",")
LOG_BUFFER_SIZE = int(os.getenv("PHONEBOT_LOG_BUFFER", "500"))

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


@dataclass
class BotConfig:
    """Settings needed to assemble an executor and a controller."""
    executor_kind: str = "adb"
    adb_path: Optional[str] = None
    command_timeout: float = ADB_COMMAND_TIMEOUT
    node_url: str = NODE_URL
    node_name: str = NODE_NAME
    target: TargetApp = field(default_factory=TargetApp)
    timing: SequenceTiming = field(default_factory=SequenceTiming)
    log_buffer_size: int = LOG_BUFFER_SIZE

    @classmethod
    def from_env(cls) -> BotConfig:
        return cls(
            executor_kind=EXECUTOR_KIND,
            adb_path=ADB_PATH or None,
            command_timeout=ADB_COMMAND_TIMEOUT,
            node_url=NODE_URL,
            node_name=NODE_NAME,
            target=TargetApp(
                package=TARGET_PACKAGE,
                marker=TARGET_MARKER,
                url=TARGET_URL,
                label=TARGET_LABEL,
            ),
        )

    def build_executor(self) -> CommandExecutor:
        """Create the command executor selected by ``executor_kind``."""
        from phonebot.adb_manager import AdbManager, NodeCommandExecutor

        if self.executor_kind == "node":
            return NodeCommandExecutor(
                node_url=self.node_url,
                node_name=self.node_name,
                command_timeout=self.command_timeout,
            )
        if self.executor_kind != "adb":
            raise ValueError(f"Unknown executor kind: {self.executor_kind!r} (expected 'adb' or 'node')")
        return AdbManager(adb_path=self.adb_path, command_timeout=self.command_timeout)
