"""Hotkey bindings: parsing, per-OS rendering and global registration.

A binding is serialized as a ``+``-joined string of canonical tokens, e.g.
``CommandOrControl+Shift+Space``. ``CommandOrControl`` is the primary
modifier: Cmd on macOS, Ctrl elsewhere.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Callable

from pynput import keyboard

from openwispr.config import DEFAULT_HOTKEY
from openwispr.errors import InvalidHotkeyError

logger = logging.getLogger(__name__)

PRIMARY = "CommandOrControl"
SHIFT = "Shift"
ALT = "Alt"
SUPER = "Super"

MODIFIER_ORDER = (PRIMARY, SUPER, ALT, SHIFT)

_MODIFIER_ALIASES = {
    "commandorcontrol": PRIMARY,
    "cmdorctrl": PRIMARY,
    "command": PRIMARY,
    "cmd": PRIMARY,
    "control": PRIMARY,
    "ctrl": PRIMARY,
    "shift": SHIFT,
    "alt": ALT,
    "option": ALT,
    "opt": ALT,
    "super": SUPER,
    "meta": SUPER,
    "win": SUPER,
}

_KEY_ALIASES = {
    "space": "Space",
    "enter": "Enter",
    "return": "Enter",
    "tab": "Tab",
    "esc": "Escape",
    "escape": "Escape",
    "backspace": "Backspace",
    "delete": "Delete",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "insert": "Insert",
}

_PYNPUT_KEYS = {
    "Space": "<space>",
    "Enter": "<enter>",
    "Tab": "<tab>",
    "Escape": "<esc>",
    "Backspace": "<backspace>",
    "Delete": "<delete>",
    "Up": "<up>",
    "Down": "<down>",
    "Left": "<left>",
    "Right": "<right>",
    "Home": "<home>",
    "End": "<end>",
    "PageUp": "<page_up>",
    "PageDown": "<page_down>",
    "Insert": "<insert>",
}


def current_platform() -> str:
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("win"):
        return "win32"
    return "linux"


def _canonical_key(token: str) -> str:
    lowered = token.lower()
    if lowered in _KEY_ALIASES:
        return _KEY_ALIASES[lowered]
    if lowered.startswith("f") and lowered[1:].isdigit() and 1 <= int(lowered[1:]) <= 24:
        return lowered.upper()
    if len(token) == 1 and not token.isspace():
        return token.upper()
    raise InvalidHotkeyError(f"Unsupported key: {token!r}")


@dataclass(frozen=True)
class HotkeyBinding:
    """An ordered set of modifiers plus at most one non-modifier key."""

    modifiers: tuple[str, ...]
    key: str | None = None

    @classmethod
    def parse(cls, value: str) -> "HotkeyBinding":
        """Parse canonical or display form ("Ctrl + Shift + Space")."""
        tokens = [t.strip() for t in value.split("+") if t.strip()]
        if not tokens:
            raise InvalidHotkeyError("Empty hotkey")

        modifiers: set[str] = set()
        key: str | None = None
        for token in tokens:
            modifier = _MODIFIER_ALIASES.get(token.lower())
            if modifier is not None:
                modifiers.add(modifier)
                continue
            if key is not None:
                raise InvalidHotkeyError(f"More than one non-modifier key in {value!r}")
            key = _canonical_key(token)

        if not modifiers:
            raise InvalidHotkeyError(f"Hotkey {value!r} needs at least one modifier")
        return cls(tuple(m for m in MODIFIER_ORDER if m in modifiers), key)

    def __str__(self) -> str:
        return "+".join([*self.modifiers, *([self.key] if self.key else [])])

    def for_platform(self, platform: str | None = None) -> "HotkeyBinding":
        """Normalize for the OS registrar. Super is not a usable modifier on macOS."""
        platform = platform or current_platform()
        if platform != "darwin" or SUPER not in self.modifiers:
            return self
        merged = {PRIMARY if m == SUPER else m for m in self.modifiers}
        return HotkeyBinding(tuple(m for m in MODIFIER_ORDER if m in merged), self.key)

    def display(self, platform: str | None = None) -> str:
        platform = platform or current_platform()
        names = {
            PRIMARY: "Cmd" if platform == "darwin" else "Ctrl",
            SUPER: {"darwin": "Cmd", "win32": "Win"}.get(platform, "Super"),
            ALT: "Option" if platform == "darwin" else "Alt",
            SHIFT: "Shift",
        }
        parts = [names[m] for m in self.modifiers]
        if self.key:
            parts.append(self.key)
        return " + ".join(parts)

    def poll_tokens(self, platform: str | None = None) -> frozenset[str]:
        """Physical modifier names a ModifierPoller reports for this binding."""
        platform = platform or current_platform()
        tokens = {
            PRIMARY: "cmd" if platform == "darwin" else "ctrl",
            SUPER: "cmd" if platform == "darwin" else "super",
            ALT: "alt",
            SHIFT: "shift",
        }
        return frozenset(tokens[m] for m in self.modifiers)

    def to_pynput(self, platform: str | None = None) -> str:
        platform = platform or current_platform()
        names = {
            PRIMARY: "<cmd>" if platform == "darwin" else "<ctrl>",
            SUPER: "<cmd>",
            ALT: "<alt>",
            SHIFT: "<shift>",
        }
        parts = [names[m] for m in self.modifiers]
        if self.key:
            if self.key in _PYNPUT_KEYS:
                parts.append(_PYNPUT_KEYS[self.key])
            elif len(self.key) == 1:
                parts.append(self.key.lower())
            else:
                parts.append(f"<{self.key.lower()}>")
        return "+".join(parts)


def display_hotkey(value: str, platform: str | None = None) -> str:
    return HotkeyBinding.parse(value).display(platform)


class HotkeyRegistrar:
    """Registers one global shortcut with the OS through pynput.

    Global shortcuts only report the press edge; release is detected by the
    modifier poller in ``openwispr.statemachine``.
    """

    def __init__(self, platform: str | None = None) -> None:
        self._platform = platform or current_platform()
        self._listener: keyboard.GlobalHotKeys | None = None
        self._binding: HotkeyBinding | None = None

    @property
    def binding(self) -> HotkeyBinding | None:
        return self._binding

    def register(self, hotkey: str, callback: Callable[[], None]) -> HotkeyBinding:
        """Register ``hotkey``, falling back to the default binding on failure."""
        self.unregister_all()
        try:
            binding = self._register(hotkey, callback)
        except Exception as e:
            logger.warning("Failed to register hotkey %r (%s); using %s", hotkey, e, DEFAULT_HOTKEY)
            if hotkey == DEFAULT_HOTKEY:
                raise
            binding = self._register(DEFAULT_HOTKEY, callback)
        logger.info("Hotkey registered: %s", binding.display(self._platform))
        return binding

    def _register(self, hotkey: str, callback: Callable[[], None]) -> HotkeyBinding:
        binding = HotkeyBinding.parse(hotkey).for_platform(self._platform)
        listener = keyboard.GlobalHotKeys({binding.to_pynput(self._platform): callback})
        listener.start()
        self._listener = listener
        self._binding = binding
        return binding

    def unregister_all(self) -> None:
        if self._listener is not None:
            try:
                self._listener.stop()
            except Exception as e:
                logger.warning("Error stopping hotkey listener: %s", e)
            finally:
                self._listener = None
                self._binding = None


def key_token(key: keyboard.Key | keyboard.KeyCode | None, platform: str | None = None) -> str | None:
    """Map a pynput key event to a canonical binding token."""
    platform = platform or current_platform()
    if key is None:
        return None
    name = getattr(key, "name", None)
    if name is None:
        # KeyCode: a printable character
        char = getattr(key, "char", None)
        if char == " ":
            return "Space"
        return char.upper() if char and char.isprintable() else None

    base = name.split("_")[0]
    if base == "ctrl":
        return PRIMARY
    if base == "cmd":
        return PRIMARY if platform == "darwin" else SUPER
    if base == "alt":
        return ALT
    if base == "shift":
        return SHIFT
    if base.startswith("f") and base[1:].isdigit():
        return base.upper()
    return _KEY_ALIASES.get(name.replace("_", ""))


def physical_modifier(key: keyboard.Key | keyboard.KeyCode | None, platform: str | None = None) -> str | None:
    """Map a pynput key event to the poll token of a physical modifier."""
    name = getattr(key, "name", None)
    if name is None:
        return None
    base = name.split("_")[0]
    if base == "cmd":
        return "cmd" if (platform or current_platform()) == "darwin" else "super"
    if base in ("ctrl", "alt", "shift"):
        return base
    return None
