"""Entry point for running openwispr as a module: python -m openwispr"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from openwispr.app import DictationApp
from openwispr.config import Config
from openwispr.store import JsonStore, SettingsStore

QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "groq", "sounddevice", "uvicorn.access")


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity setting."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Reduce noise from third-party libraries
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openwispr", description="Push-to-talk dictation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("run", help="Hold the hotkey to dictate (default)")

    serve = commands.add_parser("serve", help="Run the background service")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--no-hotkeys", action="store_true", help="Do not register the global hotkey")

    hotkey = commands.add_parser("hotkey", help="Show or record the push-to-talk hotkey")
    hotkey.add_argument("--capture", action="store_true", help="Record a new chord from the keyboard")
    hotkey.add_argument("--timeout", type=float, default=15.0)

    commands.add_parser("devices", help="List audio input devices")
    return parser


def cmd_hotkey(config: Config, capture: bool, timeout_s: float) -> int:
    from openwispr.errors import InvalidHotkeyError
    from openwispr.hotkeys import display_hotkey
    from openwispr.statemachine import BindingCapture

    settings_store = SettingsStore(JsonStore(config.store_path), config.env_api_key)
    current = settings_store.get().hotkey

    if not capture:
        try:
            print(f"{current}  ({display_hotkey(current)})")
        except InvalidHotkeyError as e:
            print(f"{current}  (invalid: {e})")
        return 0

    print("⌨️  Press and release the new hotkey...")
    try:
        binding = asyncio.run(BindingCapture().capture(timeout_s))
    except asyncio.TimeoutError:
        print("⛔️ No hotkey captured")
        return 1
    settings_store.set({"hotkey": str(binding)})
    print(f"✅ Hotkey set to {binding.display()} ({binding})")
    return 0


def cmd_devices() -> int:
    from openwispr.audio import list_input_devices

    print("🎤 Available audio input devices:")
    for device in list_input_devices():
        print(f"  {device}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    # Load .env before reading configuration
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    args = build_parser().parse_args(argv)
    config = Config.from_env()
    config.verbose = config.verbose or args.verbose
    setup_logging(config.verbose)

    if args.command == "serve":
        from openwispr.server import serve

        serve(config, args.host, args.port, register_hotkeys=not args.no_hotkeys)
        return 0
    if args.command == "hotkey":
        return cmd_hotkey(config, args.capture, args.timeout)
    if args.command == "devices":
        return cmd_devices()

    app = DictationApp(config)
    try:
        app.run()
        return 0
    except KeyboardInterrupt:
        print("\n👋 Interrupted")
        return 130
    except Exception as e:
        logging.exception("Fatal error: %s", e)
        return 1
    finally:
        app.shutdown()


if __name__ == "__main__":
    sys.exit(main())
