"""
phonebot -- multi-device Android automation

Wakes every connected device, resets it to the home screen, launches the
target app, waits for it to come to the foreground and opens a deep link,
on all devices at once.

Usage:
    from phonebot.adb_manager import AdbManager
    from phonebot.bot_controller import BotController

    controller = BotController(AdbManager())
    controller.start_bot(await controller.executor.get_devices())
    status = await controller.wait_for_run()
"""

__version__ = "1.0.0"
