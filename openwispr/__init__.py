"""
OpenWispr - Push-to-Talk Voice Dictation

Hold a global hotkey to talk, release to transcribe with Groq Whisper,
optionally clean the text up, and paste it into the focused application.
"""

__version__ = "1.0.0"

from openwispr.app import DictationApp
from openwispr.config import Config, Settings

__all__ = ["DictationApp", "Config", "Settings", "__version__"]
