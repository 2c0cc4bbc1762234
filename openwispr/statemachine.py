"""Press-and-hold detection for the push-to-talk hotkey.

The OS only tells us that the global shortcut was pressed. From that edge the
state machine starts recording, then watches the binding's modifiers through
a ``ModifierPoller`` and stops once none of them is held any more. Bindings
whose modifiers cannot be observed on this OS use a fixed hold window.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from pynput import keyboard

from openwispr.config import HotkeyConfig
from openwispr.hotkeys import HotkeyBinding, current_platform, key_token
from openwispr.modifiers import ModifierPoller

logger = logging.getLogger(__name__)

StartHandler = Callable[[], Awaitable[None]]
StopHandler = Callable[[], Awaitable[None]]


class HotkeyState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    STOPPING_DEBOUNCE = "stopping_debounce"


class HotkeyStateMachine:
    """Single owner of the "is a session active" flag.

    ``on_start`` acquires the microphone; if it raises, the machine returns to
    idle. ``on_stop`` runs the stop-side processing; new presses are ignored
    until it has finished.
    """

    def __init__(
        self,
        binding: HotkeyBinding,
        poller: ModifierPoller,
        on_start: StartHandler,
        on_stop: StopHandler,
        timing: HotkeyConfig | None = None,
        platform: str | None = None,
    ) -> None:
        self._binding = binding
        self._poller = poller
        self._on_start = on_start
        self._on_stop = on_stop
        self._timing = timing or HotkeyConfig()
        self._platform = platform or current_platform()

        self._state = HotkeyState.IDLE
        self._watch_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> HotkeyState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state is HotkeyState.RECORDING

    @property
    def is_busy(self) -> bool:
        """True while recording or while stop-side processing is in flight."""
        return self._state is not HotkeyState.IDLE or (
            self._stop_task is not None and not self._stop_task.done()
        )

    @property
    def binding(self) -> HotkeyBinding:
        return self._binding

    @property
    def watched_modifiers(self) -> frozenset[str]:
        return self._binding.poll_tokens(self._platform) & self._poller.pollable

    def set_binding(self, binding: HotkeyBinding) -> None:
        self._binding = binding

    def trigger(self) -> None:
        """The OS reported a press of the global shortcut."""
        if self.is_busy:
            logger.debug("Hotkey press ignored (state=%s)", self._state.value)
            return
        self._state = HotkeyState.ARMED
        self._watch_task = asyncio.get_running_loop().create_task(self._run_session())

    async def stop(self) -> None:
        """Explicit stop, e.g. from a click on the capture surface."""
        if self._state is not HotkeyState.RECORDING:
            return
        if self._watch_task is not None and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
        self._finish()

    async def wait_idle(self) -> None:
        """Wait until the current session, including its processing, is done."""
        # The stop task only exists once the watch task has finished.
        for attr in ("_watch_task", "_stop_task"):
            task = getattr(self, attr)
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def shutdown(self) -> None:
        await self.stop()
        if self._stop_task is not None:
            await asyncio.gather(self._stop_task, return_exceptions=True)

    async def _run_session(self) -> None:
        self._state = HotkeyState.RECORDING
        logger.info("Recording started (%s)", self._binding)
        try:
            await self._on_start()
        except Exception as e:
            logger.error("Failed to start recording: %s", e)
            self._state = HotkeyState.IDLE
            return

        try:
            await self._wait_for_release()
        except asyncio.CancelledError:
            return
        self._finish()

    async def _wait_for_release(self) -> None:
        watched = self.watched_modifiers
        if not watched:
            logger.debug("No pollable modifier in %s, holding %.2fs", self._binding, self._timing.fallback_hold_s)
            await asyncio.sleep(self._timing.fallback_hold_s)
            return

        await self._poller.activate(watched)
        try:
            await asyncio.sleep(self._timing.first_poll_delay_s)
            while self._state is HotkeyState.RECORDING:
                held = await self._poller.sample()
                if not held & watched:
                    logger.debug("Modifiers released: %s", ", ".join(sorted(watched)))
                    return
                await asyncio.sleep(self._timing.poll_interval_s)
        finally:
            await self._poller.deactivate()

    def _finish(self) -> None:
        if self._state is not HotkeyState.RECORDING:
            return
        self._state = HotkeyState.IDLE
        logger.info("Recording stopped")
        self._stop_task = asyncio.get_running_loop().create_task(self._run_stop())

    async def _run_stop(self) -> None:
        try:
            await self._on_stop()
        except Exception:
            logger.exception("Stop handler failed")


class BindingCapture:
    """Records a hotkey chord for the settings surface.

    Pressing keys arms the capture. Once every key is released it enters
    ``STOPPING_DEBOUNCE``; a new press during the debounce restarts the chord,
    otherwise the chord is confirmed.
    """

    def __init__(self, debounce_s: float = 0.3, platform: str | None = None) -> None:
        self._debounce_s = debounce_s
        self._platform = platform or current_platform()
        self._state = HotkeyState.IDLE
        self._pressed: list[str] = []
        self._held: set[str] = set()
        self._released = asyncio.Event()

    @property
    def state(self) -> HotkeyState:
        return self._state

    def on_press(self, token: str) -> None:
        if self._state is HotkeyState.STOPPING_DEBOUNCE:
            self._pressed = []
            self._released.clear()
        self._state = HotkeyState.ARMED
        self._held.add(token)
        if token not in self._pressed:
            self._pressed.append(token)

    def on_release(self, token: str) -> None:
        self._held.discard(token)
        if not self._held and self._pressed:
            self._state = HotkeyState.STOPPING_DEBOUNCE
            self._released.set()

    async def confirm(self) -> HotkeyBinding:
        while True:
            await self._released.wait()
            await asyncio.sleep(self._debounce_s)
            if self._state is not HotkeyState.STOPPING_DEBOUNCE:
                continue
            chord = "+".join(self._pressed)
            self._pressed = []
            self._released.clear()
            self._state = HotkeyState.IDLE
            try:
                return HotkeyBinding.parse(chord)
            except ValueError as e:
                logger.info("Captured chord %r rejected: %s", chord, e)

    async def capture(self, timeout_s: float = 15.0) -> HotkeyBinding:
        """Listen to the keyboard until a full chord has been pressed and released."""
        loop = asyncio.get_running_loop()

        def press(key: keyboard.Key | keyboard.KeyCode | None) -> None:
            if (token := key_token(key, self._platform)) is not None:
                loop.call_soon_threadsafe(self.on_press, token)

        def release(key: keyboard.Key | keyboard.KeyCode | None) -> None:
            if (token := key_token(key, self._platform)) is not None:
                loop.call_soon_threadsafe(self.on_release, token)

        listener = keyboard.Listener(on_press=press, on_release=release)
        listener.start()
        try:
            return await asyncio.wait_for(self.confirm(), timeout_s)
        finally:
            listener.stop()
