"""Output handlers for transcribed text, and the delivery stage."""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pyperclip
from pynput.keyboard import Controller as KeyboardController
from pynput.keyboard import Key

from openwispr.config import OutputMode
from openwispr.errors import DeliveryFailed
from openwispr.hotkeys import current_platform

if TYPE_CHECKING:
    from openwispr.config import Settings
    from openwispr.store import HistoryStore, WordCounter
    from openwispr.types import TranscriptionRecordDict, WordStats

logger = logging.getLogger(__name__)

DEFAULT_FOCUS_SETTLE_S = 0.1


class OutputHandler(ABC):
    """Abstract base class for output handlers."""

    @abstractmethod
    async def output(self, text: str) -> bool:
        """Deliver the text. Returns True if it was pasted into the focused window."""
        ...


class ClipboardOutput(OutputHandler):
    """Outputs text to the system clipboard."""

    async def output(self, text: str) -> bool:
        try:
            await asyncio.to_thread(pyperclip.copy, text)
        except pyperclip.PyperclipException as e:
            raise DeliveryFailed(f"Clipboard unavailable: {e}") from e
        return False


def keystroke_supported(platform: str | None = None) -> bool:
    """Keystroke synthesis needs an X server on Linux; Wayland sessions don't qualify."""
    platform = platform or current_platform()
    if platform in ("darwin", "win32"):
        return True
    return bool(os.environ.get("DISPLAY"))


class PasteOutput(OutputHandler):
    """Copies text, then pastes it into the previously focused window.

    When keystrokes cannot be synthesized the text stays in the clipboard.
    """

    def __init__(
        self,
        focus_settle_s: float = DEFAULT_FOCUS_SETTLE_S,
        platform: str | None = None,
    ) -> None:
        self._clipboard = ClipboardOutput()
        self._focus_settle_s = focus_settle_s
        self._platform = platform or current_platform()
        self._controller: KeyboardController | None = None

    async def output(self, text: str) -> bool:
        await self._clipboard.output(text)

        if not keystroke_supported(self._platform):
            logger.warning("Paste keystroke unavailable on this system; text left in clipboard")
            return False

        # Let focus return to the target window.
        await asyncio.sleep(self._focus_settle_s)
        try:
            await asyncio.to_thread(self._paste)
        except Exception as e:
            logger.warning("Paste keystroke failed, text left in clipboard: %s", e)
            return False
        return True

    def _paste(self) -> None:
        if self._controller is None:
            self._controller = KeyboardController()
        modifier = Key.cmd if self._platform == "darwin" else Key.ctrl
        with self._controller.pressed(modifier):
            self._controller.press("v")
            self._controller.release("v")


def create_output_handler(mode: OutputMode, focus_settle_s: float = DEFAULT_FOCUS_SETTLE_S) -> OutputHandler:
    if mode == OutputMode.CLIPBOARD:
        return ClipboardOutput()
    return PasteOutput(focus_settle_s)


def count_words(text: str) -> int:
    return len(text.split())


@dataclass(frozen=True)
class DeliveryReport:
    word_count: int
    pasted: bool
    stats: "WordStats"
    record: "TranscriptionRecordDict | None" = None


class DeliveryStage:
    """Persists, counts and outputs the final text of a pipeline run."""

    def __init__(
        self,
        history: "HistoryStore",
        words: "WordCounter",
        focus_settle_s: float = DEFAULT_FOCUS_SETTLE_S,
    ) -> None:
        self._history = history
        self._words = words
        self._focus_settle_s = focus_settle_s

    async def deliver(self, text: str, settings: "Settings") -> DeliveryReport:
        word_count = count_words(text)

        record = None
        if settings.incognito_mode:
            logger.debug("Incognito mode, transcript not saved")
        else:
            record = await asyncio.to_thread(self._history.add, text, word_count)

        stats = await asyncio.to_thread(self._words.add, word_count)

        handler = create_output_handler(settings.output_mode, self._focus_settle_s)
        pasted = await handler.output(text)
        logger.info("Delivered %d words (%s)", word_count, "pasted" if pasted else "clipboard")
        return DeliveryReport(word_count=word_count, pasted=pasted, stats=stats, record=record)
