"""Telephony ↔ voice-assistant media relay."""

__version__ = "0.1.0"
