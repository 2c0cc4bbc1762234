"""Speech-to-text transcription, text cleanup and the stop-side pipeline."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from groq import AsyncGroq, GroqError

from openwispr.config import (
    AUTO_LANGUAGE,
    DEFAULT_LANGUAGE,
    DEFAULT_WHISPER_MODEL,
    PipelineConfig,
    PostProcessingMode,
)
from openwispr.errors import (
    DeliveryFailed,
    DictateError,
    EmptyAudio,
    MicrophoneUnavailable,
    MissingApiKey,
    PostProcessFailed,
    TooShort,
    TranscriptionFailed,
)

if TYPE_CHECKING:
    from openwispr.audio import AudioCapturer
    from openwispr.types import EncodedClip
    from openwispr.config import CleanupOptions, Settings
    from openwispr.output import DeliveryStage
    from openwispr.store import DictionaryEntry, DictionaryStore, SettingsStore
    from openwispr.wav import WavEncoder

logger = logging.getLogger(__name__)

_EXTENSIONS = (
    ("wav", "wav"),
    ("mp4", "mp4"),
    ("ogg", "ogg"),
    ("flac", "flac"),
)


def filename_for_mime(mime_type: str) -> str:
    """The service infers the audio format from the upload's extension."""
    for marker, extension in _EXTENSIONS:
        if marker in mime_type:
            return f"audio.{extension}"
    return "audio.webm"


def resolve_language(language: str | None) -> str | None:
    """``"auto"`` lets the service detect the language; unset means the default."""
    if language == AUTO_LANGUAGE:
        return None
    return language or DEFAULT_LANGUAGE


class TranscriptionClient:
    """Transcribes WAV clips with the Groq speech-to-text endpoint.

    Requests are never retried: a silent retry could bill or paste twice.
    """

    def __init__(self, timeout_s: float = 30.0) -> None:
        self._timeout_s = timeout_s

    async def transcribe(
        self,
        clip: "EncodedClip",
        api_key: str,
        model: str | None = None,
        language: str | None = None,
    ) -> str:
        if not api_key:
            raise MissingApiKey()

        params = {
            "file": (filename_for_mime(clip.mime_type), clip.data),
            "model": model or DEFAULT_WHISPER_MODEL,
        }
        if (resolved := resolve_language(language)) is not None:
            params["language"] = resolved

        logger.info("Sending %.1f KB to %s", len(clip) / 1024, params["model"])
        t0 = time.time()
        try:
            async with AsyncGroq(api_key=api_key, max_retries=0, timeout=self._timeout_s) as client:
                transcription = await client.audio.transcriptions.create(**params)
        except GroqError as e:
            logger.error("Transcription request failed: %s", e)
            raise TranscriptionFailed(str(e)) from e
        logger.info("Transcription done in %.2fs", time.time() - t0)

        text = transcription if isinstance(transcription, str) else transcription.text
        return (text or "").strip()


class TextCleaner:
    """Cleans up transcribed text with a chat completion model."""

    # Conversational openers the model sometimes adds despite the system prompt.
    PREAMBLES = (
        "Sure, here's the cleaned text:",
        "Sure, here is the cleaned text:",
        "Sure, here's the corrected text:",
        "Sure, here is the corrected text:",
        "Sure!",
        "Sure:",
        "Sure,",
        "Here's the cleaned text:",
        "Here is the cleaned text:",
        "Here's the cleaned transcription:",
        "Here is the cleaned transcription:",
        "Here's the corrected text:",
        "Here is the corrected text:",
        "Here's the text:",
        "Here is the text:",
        "Cleaned text:",
        "Cleaned transcription:",
        "Corrected text:",
        "Of course!",
        "Of course,",
        "Certainly!",
        "Certainly,",
        "Output:",
    )

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self._config = config or PipelineConfig()

    async def cleanup(self, text: str, api_key: str, options: "CleanupOptions") -> str:
        """Return the cleaned text. Raises PostProcessFailed on any failure."""
        if not options.any_enabled:
            return text

        messages = [
            {"role": "system", "content": options.system_prompt},
            {
                "role": "user",
                "content": (
                    "Clean this transcription. Output ONLY the cleaned text, nothing else:"
                    f'\n\n"""\n{text}\n"""'
                ),
            },
        ]
        try:
            async with AsyncGroq(
                api_key=api_key, max_retries=0, timeout=self._config.request_timeout_s
            ) as client:
                response = await client.chat.completions.create(
                    model=self._config.cleanup_model,
                    messages=messages,
                    temperature=self._config.cleanup_temperature,
                    max_tokens=self._config.cleanup_max_tokens,
                )
        except GroqError as e:
            raise PostProcessFailed(str(e)) from e

        try:
            content = response.choices[0].message.content or ""
            content = content.strip()
        except (AttributeError, IndexError, TypeError) as e:
            raise PostProcessFailed(f"Malformed cleanup response: {e}") from e
        cleaned = self._postprocess(content)
        if not cleaned:
            raise PostProcessFailed("Empty cleanup response")
        return cleaned

    def _postprocess(self, text: str) -> str:
        """Strip preambles and wrapping quotes the model may echo back."""
        text_lower = text.lower()
        for preamble in self.PREAMBLES:
            if text_lower.startswith(preamble.lower()):
                text = text[len(preamble):].strip()
                text_lower = text.lower()

        for quote in ('"""', '"', "'"):
            if len(text) >= 2 * len(quote) and text.startswith(quote) and text.endswith(quote):
                text = text[len(quote):-len(quote)].strip()
                break

        return text.strip()


LOCAL_CLEANUP_PATTERNS = (
    re.compile(r"\b(um+|uh+|er+|ah+)\b", re.IGNORECASE),
    re.compile(r"\b(you know)\b", re.IGNORECASE),
    re.compile(r"\b(I mean)\b", re.IGNORECASE),
    re.compile(r"\b(kind of|kinda)\b", re.IGNORECASE),
    re.compile(r"\b(sort of|sorta)\b", re.IGNORECASE),
    re.compile(r"^(so|well|basically|actually|literally),?\s*", re.IGNORECASE),
)


def local_cleanup(text: str) -> str:
    """Regex-only cleanup: fillers, hedges and leading discourse markers."""
    for pattern in LOCAL_CLEANUP_PATTERNS:
        text = pattern.sub("", text)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"\s+([.,!?])", r"\1", text)
    text = re.sub(r"([.,!?])\s*([.,!?])", r"\1", text)
    return text


def _entry_pattern(entry: "DictionaryEntry") -> re.Pattern[str]:
    # Already-corrected text matches first so a correction that contains its
    # original is left alone on later passes.
    flags = 0 if entry.case_sensitive else re.IGNORECASE
    forms = [re.escape(entry.original)]
    if entry.corrected:
        forms.insert(0, re.escape(entry.corrected))
    return re.compile(rf"(?<!\w)(?:{'|'.join(forms)})(?!\w)", flags)


def apply_dictionary(text: str, entries: Iterable["DictionaryEntry"]) -> str:
    """Literal whole-word substitution for every enabled entry.

    Applying the same entries twice gives the same text as applying them once.
    """
    for entry in entries:
        if not entry.enabled or not entry.original:
            continue
        text = _entry_pattern(entry).sub(lambda _match, corrected=entry.corrected: corrected, text)
    return text


@dataclass(frozen=True)
class CleanupResult:
    text: str
    error: PostProcessFailed | None = None


class PostProcessor:
    """Applies the configured cleanup strategy, then the dictionary.

    Remote cleanup failures are recovered here: the uncleaned text continues
    down the pipeline and the failure is only reported in the result.
    """

    def __init__(self, cleaner: TextCleaner | None = None) -> None:
        self._cleaner = cleaner or TextCleaner()

    async def process(
        self,
        text: str,
        settings: "Settings",
        entries: Iterable["DictionaryEntry"] = (),
    ) -> CleanupResult:
        error: PostProcessFailed | None = None
        mode = settings.post_processing

        if mode is PostProcessingMode.AI:
            try:
                text = await self._cleaner.cleanup(text, settings.api_key, settings.cleanup_options)
            except PostProcessFailed as e:
                logger.warning("Cleanup failed, keeping original text: %s", e.reason)
                error = e
        elif mode is PostProcessingMode.LOCAL:
            text = local_cleanup(text)

        return CleanupResult(apply_dictionary(text, entries), error)


class PipelineOutcome(str, Enum):
    OK = "ok"
    EMPTY_AUDIO = "empty_audio"
    TOO_SHORT = "too_short"
    NO_API_KEY = "no_api_key"
    TRANSCRIPTION_FAILED = "transcription_failed"
    POST_PROCESS_FAILED = "post_process_failed"
    EMPTY_TRANSCRIPT = "empty_transcript"
    DELIVERY_FAILED = "delivery_failed"
    MIC_UNAVAILABLE = "mic_unavailable"


_ERROR_OUTCOMES: tuple[tuple[type[DictateError], PipelineOutcome], ...] = (
    (EmptyAudio, PipelineOutcome.EMPTY_AUDIO),
    (TooShort, PipelineOutcome.TOO_SHORT),
    (MissingApiKey, PipelineOutcome.NO_API_KEY),
    (TranscriptionFailed, PipelineOutcome.TRANSCRIPTION_FAILED),
    (PostProcessFailed, PipelineOutcome.POST_PROCESS_FAILED),
    (DeliveryFailed, PipelineOutcome.DELIVERY_FAILED),
    (MicrophoneUnavailable, PipelineOutcome.MIC_UNAVAILABLE),
)


@dataclass(frozen=True)
class PipelineResult:
    """Terminal result of one pipeline run."""

    outcome: PipelineOutcome
    text: str = ""
    reason: str = ""
    status_message: str = ""

    @property
    def delivers(self) -> bool:
        """True when text reached the user; cleanup failures still deliver."""
        return self.outcome in (PipelineOutcome.OK, PipelineOutcome.POST_PROCESS_FAILED)

    @property
    def is_error(self) -> bool:
        return not self.delivers

    @classmethod
    def from_error(cls, error: DictateError) -> "PipelineResult":
        for error_type, outcome in _ERROR_OUTCOMES:
            if isinstance(error, error_type):
                return cls(outcome, reason=error.reason, status_message=error.status_message)
        return cls(
            PipelineOutcome.TRANSCRIPTION_FAILED,
            reason=error.reason,
            status_message=error.status_message,
        )


class TranscriptionPipeline:
    """Complete stop-side pipeline: clip → WAV → text → cleaned text → delivery."""

    def __init__(
        self,
        settings: "SettingsStore",
        dictionary: "DictionaryStore",
        encoder: "WavEncoder",
        client: TranscriptionClient,
        post_processor: PostProcessor,
        delivery: "DeliveryStage",
    ) -> None:
        self._settings = settings
        self._dictionary = dictionary
        self._encoder = encoder
        self._client = client
        self._post_processor = post_processor
        self._delivery = delivery

    async def complete(self, capturer: "AudioCapturer") -> PipelineResult:
        """Finalize the capturer's session and process the clip."""
        try:
            clip = await capturer.stop()
        except (EmptyAudio, TooShort) as e:
            logger.info("Nothing to transcribe: %s", e.reason)
            return PipelineResult.from_error(e)
        return await self.process(clip)

    async def process(self, clip: "EncodedClip") -> PipelineResult:
        # Settings are re-read so the other process's writes are honored.
        settings = self._settings.get()
        if not settings.api_key:
            logger.error("No API key configured")
            return PipelineResult.from_error(MissingApiKey())

        logger.info("Processing %s clip (%d bytes)", clip.mime_type, len(clip))
        try:
            wav = await self._encoder.encode(clip)
            raw_text = await self._client.transcribe(
                wav, settings.api_key, model=settings.whisper_model, language=settings.language
            )
        except TranscriptionFailed as e:
            logger.error("Transcription failed: %s", e.reason)
            return PipelineResult.from_error(e)

        if not raw_text:
            logger.warning("Transcription returned empty text")
            return PipelineResult(
                PipelineOutcome.EMPTY_TRANSCRIPT,
                reason="Transcription returned no text",
                status_message="Empty result",
            )
        logger.info('Raw transcription: "%s"', raw_text)

        cleanup = await self._post_processor.process(raw_text, settings, self._dictionary.enabled())
        text = cleanup.text.strip() or raw_text
        logger.info('Final text: "%s"', text)

        try:
            await self._delivery.deliver(text, settings)
        except DeliveryFailed as e:
            logger.error("Delivery failed: %s", e.reason)
            return PipelineResult(
                PipelineOutcome.DELIVERY_FAILED,
                text=text,
                reason=e.reason,
                status_message=e.status_message,
            )

        if cleanup.error is not None:
            return PipelineResult(PipelineOutcome.POST_PROCESS_FAILED, text=text, reason=cleanup.error.reason)
        return PipelineResult(PipelineOutcome.OK, text=text)
