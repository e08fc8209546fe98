"""Audio resampler for sample rate conversion."""

import numpy as np
import soxr


class Resampler:
    """Audio resampler using soxr for high-quality sample rate conversion.

    Stateless per call: every chunk is resampled on its own, so chunk
    boundaries may carry small filter edge artifacts.
    """

    def __init__(
        self,
        source_rate: int,
        target_rate: int,
        channels: int = 1,
        quality: str = "HQ"
    ) -> None:
        """Initialize resampler.

        Args:
            source_rate: Source sample rate in Hz
            target_rate: Target sample rate in Hz
            channels: Number of audio channels (default: 1 for mono)
            quality: Resampling quality ("LQ", "MQ", "HQ", "VHQ")

        Raises:
            ValueError: If rates or channels are invalid
        """
        if source_rate <= 0:
            raise ValueError(f"Source rate must be positive, got {source_rate}")
        if target_rate <= 0:
            raise ValueError(f"Target rate must be positive, got {target_rate}")
        if channels <= 0:
            raise ValueError(f"Channels must be positive, got {channels}")

        self._source_rate = source_rate
        self._target_rate = target_rate
        self._channels = channels
        self._sample_bytes = 2 * channels

        quality_map = {
            "LQ": soxr.LQ,
            "MQ": soxr.MQ,
            "HQ": soxr.HQ,
            "VHQ": soxr.VHQ,
        }
        if quality not in quality_map:
            raise ValueError(f"Unknown resampling quality: {quality}")
        self._quality = quality_map[quality]

    def resample(self, audio_data: bytes) -> bytes:
        """Resample audio data.

        A trailing partial sample (odd byte) is discarded.

        Args:
            audio_data: PCM16 audio data at source rate

        Returns:
            Resampled PCM16 audio data at target rate
        """
        usable = len(audio_data) - (len(audio_data) % self._sample_bytes)
        if usable == 0:
            return b""

        if self._source_rate == self._target_rate:
            return bytes(audio_data[:usable])

        samples = np.frombuffer(audio_data[:usable], dtype=np.int16)

        if self._channels > 1:
            samples = samples.reshape(-1, self._channels)

        resampled = soxr.resample(
            samples,
            self._source_rate,
            self._target_rate,
            quality=self._quality
        )

        # Convert back to int16
        resampled = np.clip(np.round(resampled), -32768, 32767).astype(np.int16)

        return resampled.tobytes()
