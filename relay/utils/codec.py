"""G.711 μ-law decoding for test audio."""

from typing import Literal

import numpy as np


class Codec:
    """G.711 μ-law decoder with vectorized table lookup."""

    ULAW_BIAS = 0x84  # Bias for linear code

    _ulaw_table: np.ndarray

    @staticmethod
    def ulaw_to_pcm16(ulaw_data: bytes) -> bytes:
        """Convert μ-law to 16-bit PCM.

        Args:
            ulaw_data: μ-law encoded audio data

        Returns:
            PCM16 encoded audio data
        """
        if not hasattr(Codec, '_ulaw_table'):
            Codec._ulaw_table = Codec._create_ulaw_table()

        ulaw_array = np.frombuffer(ulaw_data, dtype=np.uint8)
        pcm_array = Codec._ulaw_table[ulaw_array]
        return pcm_array.astype('<i2').tobytes()

    @staticmethod
    def _create_ulaw_table() -> np.ndarray:
        """Create μ-law to PCM16 lookup table."""
        table = np.zeros(256, dtype=np.int16)
        for i in range(256):
            # Complement to obtain normal u-law value
            ulaw = ~i & 0xFF

            sign = ulaw & 0x80
            exponent = (ulaw >> 4) & 0x07
            mantissa = ulaw & 0x0F

            sample = ((mantissa << 3) + Codec.ULAW_BIAS) << exponent
            sample -= Codec.ULAW_BIAS

            table[i] = -sample if sign else sample

        return table


def convert_g711_to_pcm16(data: bytes, encoding: Literal["ulaw"]) -> bytes:
    """Convert G.711 encoded audio to PCM16.

    Args:
        data: G.711 encoded audio data
        encoding: Encoding type (only "ulaw")

    Returns:
        PCM16 encoded audio data

    Raises:
        ValueError: If encoding type is not supported
    """
    if encoding == "ulaw":
        return Codec.ulaw_to_pcm16(data)
    else:
        raise ValueError(f"Unsupported encoding: {encoding}")
