"""Main Dictation application."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

from openwispr.config import Config, OutputMode, Settings
from openwispr.corrections import CorrectionDetector
from openwispr.errors import STATUS_MAX_CHARS, MicrophoneUnavailable
from openwispr.hotkeys import HotkeyBinding, HotkeyRegistrar, current_platform
from openwispr.modifiers import create_modifier_poller
from openwispr.output import DeliveryStage
from openwispr.statemachine import HotkeyStateMachine
from openwispr.store import DictionaryStore, HistoryStore, JsonStore, SettingsStore, WordCounter
from openwispr.transcribe import PipelineResult, PostProcessor, TextCleaner, TranscriptionClient, TranscriptionPipeline
from openwispr.wav import WavEncoder

if TYPE_CHECKING:
    from openwispr.audio import AudioCapturer

logger = logging.getLogger(__name__)

SETTINGS_POLL_S = 2.0


class StatusLine:
    """Short status text shown next to the capture affordance.

    Messages are truncated and clear themselves after a few seconds.
    """

    def __init__(
        self,
        clear_after_s: float = 3.0,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self._clear_after_s = clear_after_s
        self._on_change = on_change
        self._message = ""
        self._handle: asyncio.TimerHandle | None = None

    @property
    def message(self) -> str:
        return self._message

    def show(self, message: str) -> str:
        self._cancel_timer()
        self._message = message[:STATUS_MAX_CHARS]
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._handle = loop.call_later(self._clear_after_s, self.clear)
        self._notify()
        return self._message

    def clear(self) -> None:
        self._cancel_timer()
        if self._message:
            self._message = ""
            self._notify()

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._message)


class DictationCore(ABC):
    """Hotkey, stores and pipeline shared by the all-in-one app and the service.

    Subclasses decide where the microphone lives: ``begin_capture`` and
    ``end_capture`` are the only capture seams.
    """

    def __init__(self, config: Config | None = None, platform: str | None = None) -> None:
        self._config = config or Config()
        self._platform = platform or current_platform()

        store = JsonStore(self._config.store_path)
        self.settings = SettingsStore(store, self._config.env_api_key)
        self.history = HistoryStore(store)
        self.dictionary = DictionaryStore(store)
        self.words = WordCounter(store)
        self.corrections = CorrectionDetector(self.dictionary)

        self.pipeline = TranscriptionPipeline(
            settings=self.settings,
            dictionary=self.dictionary,
            encoder=WavEncoder(self._config.audio.sample_rate),
            client=TranscriptionClient(self._config.pipeline.request_timeout_s),
            post_processor=PostProcessor(TextCleaner(self._config.pipeline)),
            delivery=DeliveryStage(self.history, self.words, self._config.focus_settle_s),
        )
        self.status = StatusLine(self._config.status_clear_s, self.on_status)

        self._registrar = HotkeyRegistrar(self._platform)
        self._poller = create_modifier_poller(self._platform, self._config.hotkey.probe_timeout_s)
        self._machine: HotkeyStateMachine | None = None
        self._hotkey: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._processing = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def machine(self) -> HotkeyStateMachine | None:
        return self._machine

    @property
    def hotkey_registered(self) -> bool:
        return self._registrar.binding is not None

    @property
    def is_recording(self) -> bool:
        return self._machine is not None and self._machine.is_recording

    @property
    def is_processing(self) -> bool:
        return self._processing

    def start_hotkeys(self) -> HotkeyBinding:
        """Register the configured hotkey. Must run inside the event loop."""
        self._loop = asyncio.get_running_loop()
        settings = self.settings.get()
        binding = self._registrar.register(settings.hotkey, self._on_hotkey)
        self._hotkey = settings.hotkey
        self._machine = HotkeyStateMachine(
            binding,
            self._poller,
            on_start=self._start_session,
            on_stop=self._stop_session,
            timing=self._config.hotkey,
            platform=self._platform,
        )
        return binding

    def apply_settings(self, settings: Settings) -> bool:
        """Re-register the hotkey if it changed. Deferred while a session is active."""
        if self._machine is None or settings.hotkey == self._hotkey:
            return False
        if self._machine.is_busy:
            logger.debug("Hotkey change deferred until the session ends")
            return False
        binding = self._registrar.register(settings.hotkey, self._on_hotkey)
        self._hotkey = settings.hotkey
        self._machine.set_binding(binding)
        return True

    async def watch_settings(self, interval_s: float = SETTINGS_POLL_S) -> None:
        """Pick up settings written by the other process."""
        while True:
            await asyncio.sleep(interval_s)
            self.apply_settings(self.settings.get())

    async def stop_recording(self) -> None:
        """Explicit stop from the capture surface."""
        if self._machine is not None:
            await self._machine.stop()

    async def aclose(self) -> None:
        self._registrar.unregister_all()
        if self._machine is not None:
            await self._machine.shutdown()
        await self.cancel_capture()
        self.status.clear()

    def on_status(self, message: str) -> None:
        """Status line changed."""

    def on_delivered(self, result: PipelineResult) -> None:
        """Text reached the user."""

    @abstractmethod
    async def begin_capture(self, settings: Settings) -> None:
        ...

    @abstractmethod
    async def end_capture(self, settings: Settings) -> PipelineResult | None:
        ...

    async def cancel_capture(self) -> None:
        """Drop an in-flight capture on shutdown."""

    def report(self, result: PipelineResult, settings: Settings) -> None:
        if result.is_error:
            logger.error("Dictation failed (%s): %s", result.outcome.value, result.reason)
            self.status.show(result.status_message or "Error")
            self._tone(settings, self._config.tones.error_hz, self._config.tones.error_duration_s)
        else:
            self.on_delivered(result)

    def _on_hotkey(self) -> None:
        # Called on the pynput listener thread.
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._trigger)

    def _trigger(self) -> None:
        if self._machine is not None:
            self._machine.trigger()

    async def _start_session(self) -> None:
        settings = self.settings.get()
        try:
            await self.begin_capture(settings)
        except MicrophoneUnavailable as e:
            self.report(PipelineResult.from_error(e), settings)
            raise
        self._tone(settings, self._config.tones.start_hz)

    async def _stop_session(self) -> None:
        settings = self.settings.get()
        self._tone(settings, self._config.tones.stop_hz)
        self._processing = True
        try:
            result = await self.end_capture(settings)
        finally:
            self._processing = False
        if result is not None:
            self.report(result, settings)

    def _tone(self, settings: Settings, frequency_hz: int, duration_s: float | None = None) -> None:
        if not settings.sound_effects:
            return
        try:
            from openwispr.audio import play_tone
        except OSError as e:
            logger.debug("Audio output unavailable: %s", e)
            return
        play_tone(self._config.tones, frequency_hz, duration_s, self._config.audio.sample_rate)


class DictationApp(DictationCore):
    """
    Push-to-Talk Dictation Application.

    Records while the hotkey is held, transcribes the clip remotely, cleans
    up the text and pastes it into the focused window.
    """

    def __init__(self, config: Config | None = None, platform: str | None = None) -> None:
        from openwispr.audio import AudioCapturer

        super().__init__(config, platform)
        self._capturer = AudioCapturer(self._config.audio, self._config.pipeline.min_clip_bytes)
        self._stop_event: asyncio.Event | None = None

    @property
    def capturer(self) -> AudioCapturer:
        return self._capturer

    async def begin_capture(self, settings: Settings) -> None:
        self._capturer.preferred_microphone = settings.preferred_microphone
        await self._capturer.start()
        print("🎙️ Recording...")

    async def end_capture(self, settings: Settings) -> PipelineResult:
        print("🛑 Stopped.")
        return await self.pipeline.complete(self._capturer)

    async def cancel_capture(self) -> None:
        if self._capturer.is_recording:
            await self._capturer.cancel()

    def on_status(self, message: str) -> None:
        if message:
            print(f"⚠️  {message}")

    def on_delivered(self, result: PipelineResult) -> None:
        print(f'\n✅ Output: "{result.text}"')
        print("---")

    def _print_banner(self, binding: HotkeyBinding) -> None:
        from openwispr.audio import list_input_devices

        settings = self.settings.get()
        print("=" * 60)
        print("🎙️ OPENWISPR - Push-to-Talk Dictation")
        print("=" * 60)
        print("\n🎤 Available audio input devices:")
        print("-" * 50)
        for device in list_input_devices():
            print(f"  {device}")
        print("-" * 50)
        print(f"\n🔊 Output mode: {settings.output_mode.value}")
        print(f"🧹 Post-processing: {settings.post_processing.value}")
        if not settings.api_key:
            print("⚠️  No API key configured. Set GROQ_API_KEY or run 'openwispr serve'.")
        where = "pasted into the focused window" if settings.output_mode is OutputMode.TYPE else "copied to the clipboard"
        print("\n" + "=" * 60)
        print(f"📌 Hold {binding.display(self._platform)} to talk. Release to stop.")
        print(f"   Text will be {where}. Ctrl+C quits.")
        print("=" * 60)
        print("\n🟢 Ready!\n")

    async def run_async(self) -> None:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not available on Windows; KeyboardInterrupt still ends the loop there.
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._stop_event.set)

        binding = self.start_hotkeys()
        self._print_banner(binding)
        watcher = asyncio.create_task(self.watch_settings())
        try:
            await self._stop_event.wait()
        finally:
            watcher.cancel()
            await self.aclose()

    def run(self) -> None:
        """Run the application until interrupted."""
        asyncio.run(self.run_async())

    def shutdown(self) -> None:
        """Ask a running app to stop. Safe to call from any thread."""
        if self._loop is not None and self._stop_event is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stop_event.set)
