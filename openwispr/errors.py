"""Error taxonomy for the dictation pipeline.

Every terminal failure of a pipeline run maps to one of these classes. Each
class carries a short ``label`` suitable for the status line next to the
capture affordance.
"""

from __future__ import annotations

STATUS_MAX_CHARS = 15


class DictateError(Exception):
    """Base class for all OpenWispr errors."""

    label = "Error"

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or self.label)
        self.reason = reason or self.label

    @property
    def status_message(self) -> str:
        return self.label[:STATUS_MAX_CHARS]


class MicrophoneUnavailable(DictateError):
    label = "Mic error"


class PermissionDenied(MicrophoneUnavailable):
    label = "Mic denied"


class DeviceNotFound(MicrophoneUnavailable):
    label = "No microphone"


class EmptyAudio(DictateError):
    label = "No audio"


class TooShort(DictateError):
    label = "Too short"


class MissingApiKey(DictateError):
    label = "No API key"


class TranscriptionFailed(DictateError):
    label = "Transcribe fail"

    @property
    def status_message(self) -> str:
        return (self.reason or self.label)[:STATUS_MAX_CHARS]


class AudioDecodeError(TranscriptionFailed):
    label = "Decode error"


class PostProcessFailed(DictateError):
    label = "Cleanup failed"


class DeliveryFailed(DictateError):
    label = "Paste failed"


class InvalidHotkeyError(DictateError, ValueError):
    label = "Bad hotkey"


class DuplicateEntryError(DictateError, ValueError):
    label = "Duplicate entry"
