"""Audio processing constants."""


class AudioConstants:
    """Audio format constants for the telephony and assistant legs."""

    # Sample rates
    DOWNSTREAM_SAMPLE_RATE = 8000   # Telephony leg
    UPSTREAM_SAMPLE_RATE = 16000    # Assistant leg

    # Frame timing
    FRAME_MS = 20  # 20ms frame duration

    # Frame sizes
    PCM16_8K_FRAME_SIZE = 320   # PCM16 @ 8kHz: (8000 * 20 * 2) / 1000 = 320 bytes

    # Logging intervals
    LOG_INTERVAL_FRAMES = 50   # Log every 50 frames (1 second @ 20ms)
    LOG_INTERVAL_DROPS = 25    # Warn every 25 dropped frames


class CloseCodes:
    """WebSocket close codes used by the relay."""

    NORMAL = 1000
    GOING_AWAY = 1001
    INTERNAL_ERROR = 1011
