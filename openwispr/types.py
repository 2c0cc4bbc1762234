"""Type definitions for the OpenWispr application."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypedDict


class TranscriptionRecordDict(TypedDict):
    """A history entry as stored on disk and returned by the API."""

    id: str
    text: str
    timestamp: int
    word_count: int


class WordStats(TypedDict):
    words_this_month: int
    words_total: int


class CorrectionSuggestion(TypedDict):
    original: str
    corrected: str


class ClipConfigMessage(TypedDict):
    """Sent by the capture surface before the clip bytes."""

    type: Literal["config"]
    mime_type: str


class EventMessage(TypedDict, total=False):
    """Pushed to capture surfaces over the events WebSocket."""

    type: Literal["recording-start", "recording-stop", "settings-changed", "status"]
    message: str


class TranscribeResponseMessage(TypedDict, total=False):
    status: Literal["processing", "complete", "error"]
    outcome: str
    text: str
    message: str


class HealthCheck(TypedDict):
    status: Literal["healthy", "unhealthy"]
    hotkey_registered: bool
    recording: bool


@dataclass(frozen=True)
class EncodedClip:
    """One finalized recording, encoded in its container."""

    data: bytes
    mime_type: str

    def __len__(self) -> int:
        return len(self.data)
