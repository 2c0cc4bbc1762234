"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Generator

import numpy as np
import pytest

# Tests never touch the real keyboard; the dummy backend imports without an X server.
os.environ.setdefault("PYNPUT_BACKEND", "dummy")

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from openwispr.store import JsonStore


@pytest.fixture
def sample_audio_16k() -> NDArray[np.float32]:
    """Generate 1 second of sample audio at 16kHz."""
    sample_rate = 16000
    duration = 1.0
    t = np.linspace(0, duration, int(sample_rate * duration), dtype=np.float32)
    # Generate a 440Hz sine wave
    return (np.sin(2 * np.pi * 440 * t) * 0.5).astype(np.float32)


@pytest.fixture
def sample_audio_silent() -> NDArray[np.float32]:
    """Generate 1 second of silent audio at 16kHz."""
    return np.zeros(16000, dtype=np.float32)


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "store.json"


@pytest.fixture
def json_store(store_path: Path) -> "JsonStore":
    """A JSON store in a temporary directory."""
    from openwispr.store import JsonStore

    return JsonStore(store_path)


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Fixture to clean environment variables before/after tests."""
    env_vars = [
        "GROQ_API_KEY",
        "OPENWISPR_AUDIO_DEVICE",
        "OPENWISPR_STORE",
        "OPENWISPR_MIN_CLIP_BYTES",
        "OPENWISPR_CLEANUP_MODEL",
        "OPENWISPR_HOST",
        "OPENWISPR_PORT",
        "OPENWISPR_SERVER_HOTKEYS",
        "OPENWISPR_VERBOSE",
    ]
    original_values = {var: os.environ.get(var) for var in env_vars}

    for var in env_vars:
        os.environ.pop(var, None)

    yield

    for var, value in original_values.items():
        if value is not None:
            os.environ[var] = value
        else:
            os.environ.pop(var, None)
