"""Tests for transcription, text cleanup and the stop-side pipeline."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from groq import GroqError

from openwispr.config import CleanupOptions, PostProcessingMode, Settings
from openwispr.errors import (
    AudioDecodeError,
    DeliveryFailed,
    EmptyAudio,
    MissingApiKey,
    PostProcessFailed,
    TooShort,
    TranscriptionFailed,
)
from openwispr.store import DictionaryEntry, DictionaryStore, JsonStore, SettingsStore
from openwispr.transcribe import (
    PipelineOutcome,
    PipelineResult,
    PostProcessor,
    TextCleaner,
    TranscriptionClient,
    TranscriptionPipeline,
    apply_dictionary,
    filename_for_mime,
    local_cleanup,
    resolve_language,
)
from openwispr.types import EncodedClip

WAV_CLIP = EncodedClip(b"RIFF" + b"\x00" * 100, "audio/wav")
OGG_CLIP = EncodedClip(b"OggS" + b"\x00" * 300, "audio/ogg;codecs=opus")


def groq_client(mock_cls: MagicMock) -> MagicMock:
    """Make the patched ``AsyncGroq`` usable as an async context manager."""
    client = mock_cls.return_value
    client.__aenter__.return_value = client
    return client


def chat_response(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def entry(original: str, corrected: str, **kwargs) -> DictionaryEntry:
    return DictionaryEntry(id=original, original=original, corrected=corrected, **kwargs)


class TestRequestHelpers:
    @pytest.mark.parametrize(
        "mime_type, filename",
        [
            ("audio/wav", "audio.wav"),
            ("audio/mp4", "audio.mp4"),
            ("audio/ogg;codecs=opus", "audio.ogg"),
            ("audio/flac", "audio.flac"),
            ("audio/webm;codecs=opus", "audio.webm"),
            ("application/octet-stream", "audio.webm"),
        ],
    )
    def test_filename_for_mime(self, mime_type: str, filename: str) -> None:
        assert filename_for_mime(mime_type) == filename

    def test_resolve_language(self) -> None:
        assert resolve_language("auto") is None
        assert resolve_language("") == "en"
        assert resolve_language(None) == "en"
        assert resolve_language("de") == "de"


class TestTranscriptionClient:
    @patch("openwispr.transcribe.AsyncGroq")
    def test_transcribe(self, mock_groq: MagicMock) -> None:
        client = groq_client(mock_groq)
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="  Hello world. "))

        text = asyncio.run(TranscriptionClient(12.0).transcribe(WAV_CLIP, "gsk_key"))

        assert text == "Hello world."
        mock_groq.assert_called_once_with(api_key="gsk_key", max_retries=0, timeout=12.0)
        client.audio.transcriptions.create.assert_awaited_once_with(
            file=("audio.wav", WAV_CLIP.data),
            model="whisper-large-v3-turbo",
            language="en",
        )

    @patch("openwispr.transcribe.AsyncGroq")
    def test_auto_language_is_omitted(self, mock_groq: MagicMock) -> None:
        client = groq_client(mock_groq)
        client.audio.transcriptions.create = AsyncMock(return_value="bonjour")

        text = asyncio.run(TranscriptionClient().transcribe(WAV_CLIP, "gsk_key", model="custom", language="auto"))

        assert text == "bonjour"
        kwargs = client.audio.transcriptions.create.call_args.kwargs
        assert "language" not in kwargs
        assert kwargs["model"] == "custom"

    @patch("openwispr.transcribe.AsyncGroq")
    def test_missing_key(self, mock_groq: MagicMock) -> None:
        with pytest.raises(MissingApiKey):
            asyncio.run(TranscriptionClient().transcribe(WAV_CLIP, ""))
        mock_groq.assert_not_called()

    @patch("openwispr.transcribe.AsyncGroq")
    def test_service_error(self, mock_groq: MagicMock) -> None:
        client = groq_client(mock_groq)
        client.audio.transcriptions.create = AsyncMock(side_effect=GroqError("HTTP 503 Service Unavailable"))

        with pytest.raises(TranscriptionFailed) as exc_info:
            asyncio.run(TranscriptionClient().transcribe(WAV_CLIP, "gsk_key"))
        assert exc_info.value.status_message == "HTTP 503 Servic"


class TestTextCleaner:
    @patch("openwispr.transcribe.AsyncGroq")
    def test_all_options_disabled_is_passthrough(self, mock_groq: MagicMock) -> None:
        options = CleanupOptions(
            remove_filler_words=False,
            remove_false_starts=False,
            fix_punctuation=False,
            fix_capitalization=False,
        )
        assert asyncio.run(TextCleaner().cleanup("um hi", "gsk_key", options)) == "um hi"
        mock_groq.assert_not_called()

    @patch("openwispr.transcribe.AsyncGroq")
    def test_cleanup_request(self, mock_groq: MagicMock) -> None:
        client = groq_client(mock_groq)
        client.chat.completions.create = AsyncMock(
            return_value=chat_response('Here is the cleaned text: "Hello, world."')
        )

        cleaned = asyncio.run(TextCleaner().cleanup("um hello world", "gsk_key", CleanupOptions()))

        assert cleaned == "Hello, world."
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 1024
        system, user = kwargs["messages"]
        assert system["role"] == "system"
        assert "Remove filler words" in system["content"]
        assert "Fix basic grammar" not in system["content"]
        assert '"""\num hello world\n"""' in user["content"]

    @patch("openwispr.transcribe.AsyncGroq")
    def test_service_error(self, mock_groq: MagicMock) -> None:
        client = groq_client(mock_groq)
        client.chat.completions.create = AsyncMock(side_effect=GroqError("rate limited"))
        with pytest.raises(PostProcessFailed, match="rate limited"):
            asyncio.run(TextCleaner().cleanup("hello", "gsk_key", CleanupOptions()))

    @pytest.mark.parametrize(
        "response",
        [
            SimpleNamespace(choices=[]),
            SimpleNamespace(choices=None),
            SimpleNamespace(choices=[SimpleNamespace(message=None)]),
            chat_response(None),
            chat_response(42),
            chat_response("Sure!"),
        ],
    )
    @patch("openwispr.transcribe.AsyncGroq")
    def test_empty_response(self, mock_groq: MagicMock, response: SimpleNamespace) -> None:
        client = groq_client(mock_groq)
        client.chat.completions.create = AsyncMock(return_value=response)
        with pytest.raises(PostProcessFailed):
            asyncio.run(TextCleaner().cleanup("hello", "gsk_key", CleanupOptions()))

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Sure, here's the cleaned text: Hello.", "Hello."),
            ('"""Hello."""', "Hello."),
            ("'Hello.'", "Hello."),
            ("Cleaned text: Ship it.", "Ship it."),
            ('He said "hi"', 'He said "hi"'),
        ],
    )
    def test_postprocess(self, raw: str, expected: str) -> None:
        assert TextCleaner()._postprocess(raw) == expected


class TestLocalCleanup:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("um I think uh we should go", "I think we should go"),
            ("Basically, the build is green.", "the build is green."),
            ("I mean it works .", "it works."),
            ("it is kind of slow", "it is slow"),
            ("done!!", "done!"),
        ],
    )
    def test_local_cleanup(self, raw: str, expected: str) -> None:
        assert local_cleanup(raw) == expected

    def test_filler_inside_words_is_kept(self) -> None:
        assert local_cleanup("the umbrella is here") == "the umbrella is here"


class TestApplyDictionary:
    def test_case_insensitive_by_default(self) -> None:
        result = apply_dictionary("Gonna go, gonna win", [entry("gonna", "going to")])
        assert result == "going to go, going to win"

    def test_whole_words_only(self) -> None:
        assert apply_dictionary("concatenate the cat", [entry("cat", "dog")]) == "concatenate the dog"

    def test_case_sensitive_entry(self) -> None:
        result = apply_dictionary("api and API", [entry("API", "A.P.I.", case_sensitive=True)])
        assert result == "api and A.P.I."

    def test_special_characters_are_literal(self) -> None:
        entries = [entry("c++", "C++"), entry("home dir", r"C:\Users\me")]
        result = apply_dictionary("I use c++ in my home dir", entries)
        assert result == r"I use C++ in my C:\Users\me"

    def test_disabled_entries_are_skipped(self) -> None:
        assert apply_dictionary("the cat", [entry("cat", "dog", enabled=False)]) == "the cat"

    def test_idempotent(self) -> None:
        entries = [entry("tally dot io", "tallie.io")]
        once = apply_dictionary("visit tally dot io today", entries)
        assert once == "visit tallie.io today"
        assert apply_dictionary(once, entries) == once

    @pytest.mark.parametrize(
        "original, corrected, text, expected",
        [
            ("react", "React.js", "I use react daily", "I use React.js daily"),
            ("nyc", "NYC (New York)", "moving to nyc soon", "moving to NYC (New York) soon"),
            ("api", "API", "the api docs", "the API docs"),
        ],
    )
    def test_correction_containing_original(
        self, original: str, corrected: str, text: str, expected: str
    ) -> None:
        entries = [entry(original, corrected)]
        once = apply_dictionary(text, entries)
        assert once == expected
        assert apply_dictionary(once, entries) == expected


class TestPostProcessor:
    def test_off_applies_dictionary_only(self) -> None:
        cleaner = MagicMock()
        cleaner.cleanup = AsyncMock()
        result = asyncio.run(PostProcessor(cleaner).process("um the cat", Settings(), [entry("cat", "dog")]))
        assert result.text == "um the dog"
        assert result.error is None
        cleaner.cleanup.assert_not_awaited()

    def test_local_mode(self) -> None:
        settings = Settings(post_processing=PostProcessingMode.LOCAL)
        result = asyncio.run(PostProcessor().process("um the cat", settings, [entry("cat", "dog")]))
        assert result.text == "the dog"

    def test_ai_failure_keeps_original_text(self) -> None:
        cleaner = MagicMock()
        cleaner.cleanup = AsyncMock(side_effect=PostProcessFailed("model down"))
        settings = Settings(post_processing=PostProcessingMode.AI, api_key="gsk_key")

        result = asyncio.run(PostProcessor(cleaner).process("um the cat", settings, [entry("cat", "dog")]))

        assert result.text == "um the dog"
        assert isinstance(result.error, PostProcessFailed)

    def test_ai_success(self) -> None:
        cleaner = MagicMock()
        cleaner.cleanup = AsyncMock(return_value="The cat.")
        settings = Settings(post_processing=PostProcessingMode.AI, api_key="gsk_key")

        result = asyncio.run(PostProcessor(cleaner).process("um the cat", settings))

        assert result.text == "The cat."
        cleaner.cleanup.assert_awaited_once_with("um the cat", "gsk_key", settings.cleanup_options)


class TestPipelineResult:
    def test_from_error(self) -> None:
        result = PipelineResult.from_error(AudioDecodeError("Could not decode audio/ogg"))
        assert result.outcome is PipelineOutcome.TRANSCRIPTION_FAILED
        assert result.status_message == "Could not decod"
        assert result.is_error

    def test_cleanup_failure_still_delivers(self) -> None:
        result = PipelineResult(PipelineOutcome.POST_PROCESS_FAILED, text="hi")
        assert result.delivers
        assert not result.is_error


@pytest.fixture
def parts(json_store: JsonStore) -> SimpleNamespace:
    """Pipeline collaborators; only the stores are real."""
    encoder = MagicMock()
    encoder.encode = AsyncMock(return_value=WAV_CLIP)
    client = MagicMock()
    client.transcribe = AsyncMock(return_value="visit tally dot io today")
    cleaner = MagicMock()
    cleaner.cleanup = AsyncMock(side_effect=PostProcessFailed("model down"))
    delivery = MagicMock()
    delivery.deliver = AsyncMock()
    return SimpleNamespace(
        store=json_store,
        settings=SettingsStore(json_store, fallback_api_key="gsk_test_key_0123456789"),
        dictionary=DictionaryStore(json_store),
        encoder=encoder,
        client=client,
        cleaner=cleaner,
        delivery=delivery,
    )


def build_pipeline(parts: SimpleNamespace) -> TranscriptionPipeline:
    return TranscriptionPipeline(
        settings=parts.settings,
        dictionary=parts.dictionary,
        encoder=parts.encoder,
        client=parts.client,
        post_processor=PostProcessor(parts.cleaner),
        delivery=parts.delivery,
    )


class TestTranscriptionPipeline:
    def test_success_applies_dictionary(self, parts: SimpleNamespace) -> None:
        parts.dictionary.add("tally dot io", "tallie.io")

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.OK
        assert result.text == "visit tallie.io today"
        parts.encoder.encode.assert_awaited_once_with(OGG_CLIP)
        parts.client.transcribe.assert_awaited_once_with(
            WAV_CLIP, "gsk_test_key_0123456789", model="whisper-large-v3-turbo", language="en"
        )
        text, settings = parts.delivery.deliver.await_args.args
        assert text == "visit tallie.io today"
        assert settings.api_key == "gsk_test_key_0123456789"

    def test_cleanup_failure_delivers_uncleaned_text(self, parts: SimpleNamespace) -> None:
        parts.settings.set({"post_processing": "ai"})

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.POST_PROCESS_FAILED
        assert result.delivers
        assert result.text == "visit tally dot io today"
        parts.delivery.deliver.assert_awaited_once()

    def test_settings_are_reread_per_run(self, parts: SimpleNamespace) -> None:
        pipeline = build_pipeline(parts)
        asyncio.run(pipeline.process(OGG_CLIP))
        parts.settings.set({"language": "auto"})
        asyncio.run(pipeline.process(OGG_CLIP))
        assert parts.client.transcribe.await_args.kwargs["language"] == "auto"

    def test_missing_api_key(self, parts: SimpleNamespace) -> None:
        parts.settings = SettingsStore(parts.store)

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.NO_API_KEY
        assert result.status_message == "No API key"
        parts.encoder.encode.assert_not_awaited()

    def test_transcription_failure(self, parts: SimpleNamespace) -> None:
        parts.encoder.encode.side_effect = AudioDecodeError("Could not decode audio/ogg")

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.TRANSCRIPTION_FAILED
        parts.client.transcribe.assert_not_awaited()
        parts.delivery.deliver.assert_not_awaited()

    def test_empty_transcript(self, parts: SimpleNamespace) -> None:
        parts.client.transcribe.return_value = ""

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.EMPTY_TRANSCRIPT
        assert result.status_message == "Empty result"
        parts.delivery.deliver.assert_not_awaited()

    def test_delivery_failure(self, parts: SimpleNamespace) -> None:
        parts.delivery.deliver.side_effect = DeliveryFailed("Clipboard unavailable")

        result = asyncio.run(build_pipeline(parts).process(OGG_CLIP))

        assert result.outcome is PipelineOutcome.DELIVERY_FAILED
        assert result.is_error
        assert result.text == "visit tally dot io today"

    @pytest.mark.parametrize(
        "error, outcome",
        [(EmptyAudio(), PipelineOutcome.EMPTY_AUDIO), (TooShort(), PipelineOutcome.TOO_SHORT)],
    )
    def test_unusable_capture_skips_network(self, parts: SimpleNamespace, error, outcome) -> None:
        capturer = MagicMock()
        capturer.stop = AsyncMock(side_effect=error)

        result = asyncio.run(build_pipeline(parts).complete(capturer))

        assert result.outcome is outcome
        parts.encoder.encode.assert_not_awaited()
        parts.client.transcribe.assert_not_awaited()

    def test_complete_processes_clip(self, parts: SimpleNamespace) -> None:
        capturer = MagicMock()
        capturer.stop = AsyncMock(return_value=OGG_CLIP)

        result = asyncio.run(build_pipeline(parts).complete(capturer))

        assert result.outcome is PipelineOutcome.OK
        parts.encoder.encode.assert_awaited_once_with(OGG_CLIP)
