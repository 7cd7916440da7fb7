"""
ADB Manager -- command execution against Android devices.

Two transports implement the same ``CommandExecutor`` contract:

    AdbManager           -- runs the local ``adb`` binary as an asyncio
                            subprocess (``adb -s <serial> <command>``)
    NodeCommandExecutor  -- relays the same command strings through an
                            OpenClaw-style Android node over HTTP

Both return the command's stripped stdout and raise ``ExecutionError`` on
any transport failure.  They keep no per-call shared state, so the
orchestrator can call them concurrently for different devices.

Usage:
    from phonebot.adb_manager import AdbManager

    adb = AdbManager()
    if await adb.validate_adb_path():
        serials = await adb.get_devices()
        output = await adb.execute(serials[0], "shell input keyevent 224")
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from phonebot import config
from phonebot.errors import ExecutionError

logger = logging.getLogger("phonebot.adb")


# ===================================================================
# EXECUTOR CONTRACT
# ===================================================================

class CommandExecutor(ABC):
    """Runs one command string against one device and returns its output."""

    @abstractmethod
    async def execute(self, device: str, command: str) -> str:
        """Execute *command* on *device*; raise ``ExecutionError`` on failure."""

    async def get_devices(self) -> List[str]:
        """Return the serials of the devices currently reachable."""
        raise NotImplementedError(f"{type(self).__name__} cannot discover devices")

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


# ===================================================================
# HELPERS
# ===================================================================

def resolve_adb_path(explicit: Optional[str] = None) -> str:
    """
    Pick the adb binary to use.

    Order: explicit argument, ``ADB_PATH`` env, a bundled binary under
    ``PHONEBOT_BUNDLE_DIR/adb/``, the development install at
    ``C:\\adb\\adb.exe``, whatever ``adb`` is on PATH, and finally the bare
    name ``adb``.
    """
    if explicit:
        return explicit
    if config.ADB_PATH:
        return config.ADB_PATH

    binary = "adb.exe" if os.name == "nt" else "adb"
    if config.BUNDLE_DIR:
        bundled = Path(config.BUNDLE_DIR) / "adb" / binary
        if bundled.exists():
            return str(bundled)

    if Path(config.DEV_ADB_PATH).exists():
        return config.DEV_ADB_PATH

    return shutil.which("adb") or "adb"


def parse_devices_output(output: str) -> List[str]:
    """
    Extract ready device serials from ``adb devices`` output.

    Lines look like ``emulator-5554\tdevice`` or ``R5CT123ABCD\tunauthorized``;
    only the ``device`` state counts as ready.
    """
    serials: List[str] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        if state != "device":
            logger.debug("Skipping non-ready device %s (state=%s)", serial, state)
            continue
        if serial not in serials:
            serials.append(serial)
    return serials


# ===================================================================
# LOCAL ADB
# ===================================================================

class AdbManager(CommandExecutor):
    """Executes commands through the local ``adb`` binary."""

    def __init__(
        self,
        adb_path: Optional[str] = None,
        command_timeout: float = config.ADB_COMMAND_TIMEOUT,
    ) -> None:
        self.adb_path = resolve_adb_path(adb_path)
        self.command_timeout = command_timeout
        logger.debug("Using adb binary: %s", self.adb_path)

    async def _run(
        self,
        args: List[str],
        timeout: float,
        device: Optional[str] = None,
        command: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Spawn adb with *args*; return (stdout, stderr) or raise ExecutionError."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.adb_path, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecutionError(
                f"Cannot run adb at '{self.adb_path}': {exc}",
                device=device, command=command,
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ExecutionError(
                f"adb {' '.join(args)} timed out after {timeout:g}s",
                device=device, command=command,
            ) from exc

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            detail = err.strip() or out.strip() or "no output"
            raise ExecutionError(
                f"adb exited with code {proc.returncode}: {detail}",
                device=device, command=command, returncode=proc.returncode,
            )
        return out, err

    async def execute(self, device: str, command: str) -> str:
        args = ["-s", device, *shlex.split(command)]
        logger.debug("[%s] adb %s", device, command)
        stdout, _ = await self._run(args, self.command_timeout, device=device, command=command)
        return stdout.strip()

    async def get_devices(self) -> List[str]:
        """Run ``adb devices`` and return the serials in the ``device`` state."""
        stdout, stderr = await self._run(["devices"], config.ADB_DEVICES_TIMEOUT, command="devices")
        if stderr.strip():
            logger.warning("adb devices stderr: %s", stderr.strip())
        devices = parse_devices_output(stdout)
        logger.info("Parsed devices: %s", devices)
        return devices

    async def validate_adb_path(self) -> bool:
        """Return True when ``adb version`` runs successfully."""
        try:
            await self._run(["version"], config.ADB_VALIDATE_TIMEOUT, command="version")
        except ExecutionError as exc:
            logger.warning("adb not available: %s", exc)
            return False
        return True


# ===================================================================
# REMOTE NODE
# ===================================================================

class NodeCommandExecutor(CommandExecutor):
    """
    Sends adb command strings to an Android node relay over HTTP.

    The relay API expects POST /api/nodes/invoke with:
        { "node": "<name>", "command": "adb.exec",
          "params": {"serial": "<device>", "args": "<command>", "timeout": N} }
    and answers ``{"stdout": "..."}`` or ``{"error": "..."}``.
    """

    def __init__(
        self,
        node_url: str = config.NODE_URL,
        node_name: str = config.NODE_NAME,
        command_timeout: float = config.ADB_COMMAND_TIMEOUT,
    ) -> None:
        self.node_url = node_url.rstrip("/")
        self.node_name = node_name
        self.command_timeout = command_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.command_timeout + 5)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _invoke_node(
        self,
        params: Dict[str, Any],
        device: Optional[str] = None,
        command: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = await self._ensure_session()
        payload = {"node": self.node_name, "command": "adb.exec", "params": params}
        url = f"{self.node_url}/api/nodes/invoke"

        try:
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise ExecutionError(
                        f"Node returned HTTP {resp.status}: {body[:500]}",
                        device=device, command=command,
                    )
                data = await resp.json()
        except aiohttp.ClientError as exc:
            raise ExecutionError(
                f"Failed to reach node at {url}: {exc}", device=device, command=command,
            ) from exc
        except asyncio.TimeoutError as exc:
            raise ExecutionError(
                f"Node at {url} timed out", device=device, command=command,
            ) from exc
        except ValueError as exc:
            raise ExecutionError(
                f"Node at {url} returned invalid JSON: {exc}", device=device, command=command,
            ) from exc

        if not isinstance(data, dict):
            raise ExecutionError(
                f"Node at {url} returned {type(data).__name__}, expected an object",
                device=device, command=command,
            )
        if data.get("error"):
            raise ExecutionError(f"Node error: {data['error']}", device=device, command=command)
        return data

    async def execute(self, device: str, command: str) -> str:
        data = await self._invoke_node(
            {"serial": device, "args": command, "timeout": self.command_timeout},
            device=device, command=command,
        )
        return str(data.get("stdout", "")).strip()

    async def get_devices(self) -> List[str]:
        data = await self._invoke_node({"args": "devices"}, command="devices")
        return parse_devices_output(str(data.get("stdout", "")))
