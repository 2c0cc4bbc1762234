#!/usr/bin/env python3
"""
OpenWispr - Push-to-Talk Voice Dictation

Hold the hotkey, speak, release. The clip is transcribed with Groq Whisper,
optionally cleaned up, and pasted into the focused window.

Usage:
    python open_wispr.py [run|serve|hotkey|devices] [options]

Environment Variables:
    GROQ_API_KEY              API key used when none is stored in settings
    OPENWISPR_AUDIO_DEVICE    Audio input device index
    OPENWISPR_STORE           Path of the settings/history JSON store
    OPENWISPR_MIN_CLIP_BYTES  Clips smaller than this are reported as too short
    OPENWISPR_CLEANUP_MODEL   Chat model used for AI cleanup
    OPENWISPR_HOST            Service host for 'serve'
    OPENWISPR_PORT            Service port for 'serve'
    OPENWISPR_SERVER_HOTKEYS  Register the hotkey in 'serve': '1' or '0'
    OPENWISPR_VERBOSE         Enable verbose logging: '1' or 'true'
"""

from openwispr.__main__ import main

if __name__ == "__main__":
    raise SystemExit(main())
