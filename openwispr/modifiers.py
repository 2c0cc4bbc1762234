"""OS-specific probes reporting which modifier keys are physically held.

Global shortcut APIs only report the press edge, so the hold gesture is
tracked by sampling modifier state while a recording is active. Samples use
the physical names ``ctrl``, ``cmd``, ``shift``, ``alt`` and ``super``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from abc import ABC, abstractmethod

from pynput import keyboard

from openwispr.hotkeys import current_platform, physical_modifier

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_S = 2.0

WINDOWS_PROBE = (
    "Add-Type -AssemblyName System.Windows.Forms; "
    "[System.Windows.Forms.Control]::ModifierKeys"
)

MAC_PROBE = """
ObjC.import("Cocoa");
var flags = $.NSEvent.modifierFlags;
JSON.stringify({
  shift: (flags & $.NSEventModifierFlagShift) !== 0,
  control: (flags & $.NSEventModifierFlagControl) !== 0,
  command: (flags & $.NSEventModifierFlagCommand) !== 0,
  option: (flags & $.NSEventModifierFlagOption) !== 0
});
"""


class ProbeError(RuntimeError):
    """A single modifier probe failed; the caller keeps the previous sample."""


class ModifierPoller(ABC):
    """Capability interface for sampling held modifiers.

    ``pollable`` lists the modifiers whose live state this probe can observe.
    A failed probe never propagates: ``sample`` returns the last known state.
    """

    pollable: frozenset[str] = frozenset()

    def __init__(self) -> None:
        self._last: frozenset[str] = frozenset()

    async def activate(self, assumed_held: frozenset[str]) -> None:
        """Called when a hold gesture begins; the shortcut just fired, so its keys are down."""
        self._last = frozenset(assumed_held)

    async def deactivate(self) -> None:
        """Called when the hold gesture ends."""

    async def sample(self) -> frozenset[str]:
        try:
            self._last = await self._probe()
        except ProbeError as e:
            logger.warning("Modifier probe failed, keeping previous state: %s", e)
        return self._last

    @abstractmethod
    async def _probe(self) -> frozenset[str]:
        ...


class SubprocessModifierPoller(ModifierPoller):
    """Runs a short-lived child process per sample and parses its output."""

    def __init__(self, timeout_s: float = DEFAULT_PROBE_TIMEOUT_S) -> None:
        super().__init__()
        self._timeout_s = timeout_s

    @abstractmethod
    def command(self) -> list[str]:
        ...

    @abstractmethod
    def parse(self, output: str) -> frozenset[str]:
        ...

    async def _probe(self) -> frozenset[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"cannot start probe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout_s)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ProbeError("probe timed out") from e

        if proc.returncode != 0:
            raise ProbeError(stderr.decode(errors="replace").strip() or f"exit {proc.returncode}")
        return self.parse(stdout.decode(errors="replace"))


class WindowsModifierPoller(SubprocessModifierPoller):
    """Queries ``Control.ModifierKeys`` through PowerShell.

    The Windows key is not reported by ModifierKeys, so ``super`` is not
    pollable here.
    """

    pollable = frozenset({"ctrl", "shift", "alt"})

    def command(self) -> list[str]:
        return ["powershell", "-NoProfile", "-WindowStyle", "Hidden", "-Command", WINDOWS_PROBE]

    def parse(self, output: str) -> frozenset[str]:
        names = {part.strip().lower() for part in output.split(",")}
        held = set()
        if "control" in names:
            held.add("ctrl")
        if "shift" in names:
            held.add("shift")
        if "alt" in names:
            held.add("alt")
        return frozenset(held)


class MacModifierPoller(SubprocessModifierPoller):
    """Reads ``NSEvent.modifierFlags`` with JavaScript for Automation."""

    pollable = frozenset({"cmd", "ctrl", "shift", "alt"})

    def command(self) -> list[str]:
        return ["osascript", "-l", "JavaScript", "-e", MAC_PROBE]

    def parse(self, output: str) -> frozenset[str]:
        try:
            flags = json.loads(output.strip())
        except json.JSONDecodeError as e:
            raise ProbeError(f"unparseable probe output: {output!r}") from e
        mapping = {"command": "cmd", "control": "ctrl", "shift": "shift", "option": "alt"}
        return frozenset(token for flag, token in mapping.items() if flags.get(flag))


class ListenerModifierPoller(ModifierPoller):
    """Tracks modifier state from key events (X11 delivers key-up events).

    The listener only runs while a hold gesture is active.
    """

    pollable = frozenset({"ctrl", "shift", "alt", "super"})

    def __init__(self) -> None:
        super().__init__()
        self._held: set[str] = set()
        self._lock = threading.Lock()
        self._listener: keyboard.Listener | None = None

    async def activate(self, assumed_held: frozenset[str]) -> None:
        await super().activate(assumed_held)
        with self._lock:
            self._held = set(assumed_held)
        if self._listener is None:
            self._listener = keyboard.Listener(
                on_press=self._on_press, on_release=self._on_release
            )
            self._listener.start()

    async def deactivate(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

    def _on_press(self, key: keyboard.Key | keyboard.KeyCode | None) -> None:
        if (token := physical_modifier(key)) is not None:
            with self._lock:
                self._held.add(token)

    def _on_release(self, key: keyboard.Key | keyboard.KeyCode | None) -> None:
        if (token := physical_modifier(key)) is not None:
            with self._lock:
                self._held.discard(token)

    async def _probe(self) -> frozenset[str]:
        if self._listener is None:
            raise ProbeError("listener not running")
        with self._lock:
            return frozenset(self._held)


class NullModifierPoller(ModifierPoller):
    """No live modifier state available; every hold uses the timed fallback."""

    async def _probe(self) -> frozenset[str]:
        raise ProbeError("modifier state unavailable on this platform")


def create_modifier_poller(
    platform: str | None = None,
    timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
) -> ModifierPoller:
    platform = platform or current_platform()
    if platform == "win32":
        return WindowsModifierPoller(timeout_s)
    if platform == "darwin":
        return MacModifierPoller(timeout_s)
    if os.environ.get("DISPLAY"):
        return ListenerModifierPoller()
    logger.warning("No X11 display; hotkey release falls back to a timed hold window")
    return NullModifierPoller()
