"""
phonebot command line.

CLI:
    phonebot devices                      list connected devices
    phonebot check                        verify the adb binary works
    phonebot run [--device SERIAL ...]    run the bot (all devices if none given)
    phonebot serve [--host H] [--port P]  start the HTTP API

Ctrl+C during ``run`` requests a stop; the command waits for every
device to reach its next step boundary before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from typing import List, Optional

from phonebot.adb_manager import AdbManager
from phonebot.bot_controller import BotController
from phonebot.config import API_PORT, LOG_DATEFMT, LOG_FORMAT, BotConfig
from phonebot.errors import BotError
from phonebot.event_bus import LogEntry, LogLevel, RunStatus

logger = logging.getLogger("phonebot.cli")


# ===================================================================
# HELPERS
# ===================================================================

def _format_table(headers: List[str], rows: List[List[str]]) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"
    widths = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in widths)]
    lines.extend(fmt.format(*row) for row in rows)
    return "\n".join(lines)


def format_log(entry: LogEntry) -> str:
    ts = entry.timestamp.astimezone().strftime("%H:%M:%S")
    source = f"[{entry.device}] " if entry.device else ""
    marker = "ERROR " if entry.level is LogLevel.ERROR else ""
    return f"{ts} {marker}{source}{entry.message}"


def _config_from_args(args: argparse.Namespace) -> BotConfig:
    config = BotConfig.from_env()
    if getattr(args, "executor", None):
        config.executor_kind = args.executor
    if getattr(args, "adb_path", None):
        config.adb_path = args.adb_path
    if getattr(args, "node_url", None):
        config.node_url = args.node_url
    if getattr(args, "package", None):
        config.target = replace(config.target, package=args.package)
    if getattr(args, "marker", None):
        config.target = replace(config.target, marker=args.marker)
    if getattr(args, "url", None):
        config.target = replace(config.target, url=args.url)
    return config


async def run_bot(config: BotConfig, devices: Optional[List[str]] = None) -> RunStatus:
    """Discover (if needed), run every device to completion, return the final status."""
    executor = config.build_executor()
    try:
        if not devices:
            devices = await executor.get_devices()
            print(f"Devices: {', '.join(devices) if devices else '(none)'}")

        controller = BotController(executor, target=config.target, timing=config.timing)
        controller.events.subscribe_logs(lambda entry: print(format_log(entry), flush=True))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, controller.stop_bot)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable on this platform")

        try:
            controller.start_bot(devices)
            return await controller.wait_for_run()
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
    finally:
        await executor.close()


# ===================================================================
# CLI COMMANDS
# ===================================================================

def _cmd_devices(args: argparse.Namespace) -> int:
    """List connected devices."""
    config = _config_from_args(args)

    async def _list() -> List[str]:
        executor = config.build_executor()
        try:
            return await executor.get_devices()
        finally:
            await executor.close()

    try:
        devices = asyncio.run(_list())
    except BotError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(_format_table(["#", "SERIAL"], [[str(i), d] for i, d in enumerate(devices, 1)]))
    return 0


def _cmd_check(args: argparse.Namespace) -> int:
    """Verify the configured transport works: ``adb version`` locally, discovery on a node."""
    config = _config_from_args(args)
    if config.executor_kind != "node":
        adb = AdbManager(adb_path=config.adb_path, command_timeout=config.command_timeout)
        ok = asyncio.run(adb.validate_adb_path())
        print(f"adb: {adb.adb_path} -> {'OK' if ok else 'NOT AVAILABLE'}")
        return 0 if ok else 1

    async def _probe() -> bool:
        executor = config.build_executor()
        try:
            await executor.get_devices()
        except (BotError, NotImplementedError) as exc:
            logger.warning("Node check failed: %s", exc)
            return False
        finally:
            await executor.close()
        return True

    ok = asyncio.run(_probe())
    print(f"node: {config.node_url} ({config.node_name}) -> {'OK' if ok else 'NOT AVAILABLE'}")
    return 0 if ok else 1


def _cmd_run(args: argparse.Namespace) -> int:
    """Run the bot on the given (or all connected) devices."""
    config = _config_from_args(args)
    try:
        status = asyncio.run(run_bot(config, args.device))
    except BotError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Final status: {status.value}")
    return 0 if status is RunStatus.COMPLETED else 1


def _cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP API."""
    from phonebot.api import serve

    serve(host=args.host, port=args.port)
    return 0


# ===================================================================
# CLI ENTRY POINT
# ===================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phonebot",
        description="Drive a fleet of Android devices into a target app over ADB",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--executor", choices=["adb", "node"], help="Command transport")
    parser.add_argument("--adb-path", help="Path to the adb binary")
    parser.add_argument("--node-url", help="Android node relay URL (node executor)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sp_devices = subparsers.add_parser("devices", help="List connected devices")
    sp_devices.set_defaults(func=_cmd_devices)

    sp_check = subparsers.add_parser("check", help="Check that adb (or the node relay) is reachable")
    sp_check.set_defaults(func=_cmd_check)

    sp_run = subparsers.add_parser("run", help="Run the bot")
    sp_run.add_argument("--device", "-d", action="append", default=None,
                        help="Device serial (repeatable); default: all connected")
    sp_run.add_argument("--package", help="Target app package")
    sp_run.add_argument("--marker", help="Substring identifying the focused target window")
    sp_run.add_argument("--url", help="Deep link opened in the target app")
    sp_run.set_defaults(func=_cmd_run)

    sp_serve = subparsers.add_parser("serve", help="Start the HTTP API")
    sp_serve.add_argument("--host", default="0.0.0.0")
    sp_serve.add_argument("--port", type=int, default=API_PORT)
    sp_serve.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
