"""Tests for the config module."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from openwispr.config import (
    AudioConfig,
    CleanupOptions,
    Config,
    HotkeyConfig,
    OutputMode,
    PillVisibility,
    PostProcessingMode,
    Settings,
    ToneConfig,
    looks_like_api_key,
    should_show_pill,
)


class TestAudioConfig:
    """Tests for AudioConfig dataclass."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        config = AudioConfig()
        assert config.sample_rate == 16_000
        assert config.channels == 1
        assert config.slice_ms == 100
        assert config.device_id is None

    def test_block_size_is_one_slice(self) -> None:
        """Test block size covers one 100 ms slice."""
        assert AudioConfig().block_size == 1600

    def test_block_size_with_different_rates(self) -> None:
        config = AudioConfig(sample_rate=48000, slice_ms=20)
        assert config.block_size == 960


class TestToneAndHotkeyConfig:
    def test_tone_defaults(self) -> None:
        config = ToneConfig()
        assert (config.start_hz, config.stop_hz, config.error_hz) == (800, 600, 400)
        assert config.duration_s == 0.08
        assert config.error_duration_s == 0.2

    def test_hotkey_timing_defaults(self) -> None:
        config = HotkeyConfig()
        assert config.poll_interval_s == 0.1
        assert config.first_poll_delay_s == 0.3
        assert config.fallback_hold_s == 0.5


class TestSettings:
    """Tests for the persisted Settings dataclass."""

    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.hotkey == "CommandOrControl+Shift+Space"
        assert settings.output_mode is OutputMode.TYPE
        assert settings.pill_visibility is PillVisibility.ALWAYS
        assert settings.post_processing is PostProcessingMode.OFF
        assert settings.language == "en"
        assert settings.incognito_mode is False

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Test unknown keys read from disk are dropped."""
        settings = Settings.from_dict({"language": "auto", "theme": "dark"})
        assert settings.language == "auto"
        assert not hasattr(settings, "theme")

    def test_from_dict_ignores_invalid_values(self) -> None:
        settings = Settings.from_dict({"output_mode": "shout", "sound_effects": "yes"})
        assert settings.output_mode is OutputMode.TYPE
        assert settings.sound_effects is True

    def test_from_dict_coerces_enums(self) -> None:
        settings = Settings.from_dict({"output_mode": "clipboard", "post_processing": "ai"})
        assert settings.output_mode is OutputMode.CLIPBOARD
        assert settings.post_processing is PostProcessingMode.AI

    def test_to_dict_round_trips(self) -> None:
        settings = Settings(output_mode=OutputMode.CLIPBOARD, fix_grammar=True)
        data = settings.to_dict()
        assert data["output_mode"] == "clipboard"
        assert Settings.from_dict(data) == settings

    def test_merged_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValueError, match="Unknown settings keys"):
            Settings().merged({"colour": "blue"})

    def test_merged_rejects_bad_enum(self) -> None:
        with pytest.raises(ValueError):
            Settings().merged({"pill_visibility": "sometimes"})

    def test_merged_rejects_wrong_type(self) -> None:
        with pytest.raises(ValueError):
            Settings().merged({"incognito_mode": "true"})

    def test_merged_applies_partial(self) -> None:
        settings = Settings().merged({"hotkey": "Alt+Space", "incognito_mode": True})
        assert settings.hotkey == "Alt+Space"
        assert settings.incognito_mode is True
        assert settings.language == "en"


class TestCleanupOptions:
    def test_instructions_follow_enabled_options(self) -> None:
        options = CleanupOptions(
            remove_filler_words=False,
            remove_false_starts=False,
            fix_punctuation=True,
            fix_capitalization=False,
        )
        assert len(options.instructions()) == 1
        assert "punctuation" in options.instructions()[0]

    def test_system_prompt_numbers_steps(self) -> None:
        prompt = CleanupOptions().system_prompt
        assert "1. Remove filler words" in prompt
        assert "Output ONLY the cleaned transcription text" in prompt

    def test_any_enabled(self) -> None:
        assert CleanupOptions().any_enabled
        assert not CleanupOptions(
            remove_filler_words=False,
            remove_false_starts=False,
            fix_punctuation=False,
            fix_capitalization=False,
        ).any_enabled

    def test_settings_expose_cleanup_options(self) -> None:
        options = Settings(fix_grammar=True).cleanup_options
        assert options.fix_grammar is True


class TestHelpers:
    def test_looks_like_api_key(self) -> None:
        assert looks_like_api_key("gsk_" + "a" * 20)
        assert not looks_like_api_key("gsk_short")
        assert not looks_like_api_key("sk-" + "a" * 30)

    @pytest.mark.parametrize(
        ("visibility", "recording", "processing", "expected"),
        [
            (PillVisibility.ALWAYS, False, False, True),
            (PillVisibility.NEVER, True, True, False),
            (PillVisibility.RECORDING, False, False, False),
            (PillVisibility.RECORDING, True, False, True),
            (PillVisibility.RECORDING, False, True, True),
        ],
    )
    def test_should_show_pill(
        self, visibility: PillVisibility, recording: bool, processing: bool, expected: bool
    ) -> None:
        assert should_show_pill(visibility, recording, processing) is expected


class TestConfigFromEnv:
    """Tests for Config.from_env() method."""

    def test_default_config(self, clean_env: None) -> None:
        config = Config.from_env()
        assert config.audio.device_id is None
        assert config.env_api_key is None
        assert config.pipeline.min_clip_bytes == 100
        assert config.store_path.name == "store.json"
        assert config.verbose is False

    def test_env_overrides(self, clean_env: None, tmp_path: Path) -> None:
        os.environ["OPENWISPR_AUDIO_DEVICE"] = "3"
        os.environ["OPENWISPR_STORE"] = str(tmp_path / "s.json")
        os.environ["GROQ_API_KEY"] = " gsk_test "
        os.environ["OPENWISPR_MIN_CLIP_BYTES"] = "2048"
        os.environ["OPENWISPR_PORT"] = "9000"
        os.environ["OPENWISPR_SERVER_HOTKEYS"] = "0"
        os.environ["OPENWISPR_VERBOSE"] = "true"

        config = Config.from_env()

        assert config.audio.device_id == 3
        assert config.store_path == tmp_path / "s.json"
        assert config.env_api_key == "gsk_test"
        assert config.pipeline.min_clip_bytes == 2048
        assert config.server.port == 9000
        assert config.server.register_hotkeys is False
        assert config.verbose is True
