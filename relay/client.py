"""Probe client for exercising a running relay.

Connects as the telephony side, streams PCM16 @ 8kHz in 20ms frames and
logs the assistant audio coming back. Reconnects after a delay when the
relay drops the connection.
"""

import argparse
import asyncio
import sys
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import structlog
import websockets

from relay.config import SystemSettings
from relay.core.constants import AudioConstants
from relay.main import setup_logging
from relay.utils.codec import convert_g711_to_pcm16

logger = structlog.get_logger(__name__)

DEFAULT_URL = "ws://localhost:8766"


@dataclass
class ProbeResult:
    """Outcome of one probe connection."""

    frames_sent: int = 0
    messages_received: int = 0
    bytes_received: int = 0
    close_code: Optional[int] = None
    close_reason: Optional[str] = None


def generate_tone(
    frequency: float,
    duration: float,
    sample_rate: int = AudioConstants.DOWNSTREAM_SAMPLE_RATE
) -> bytes:
    """Generate a pure tone as PCM16 bytes.

    Args:
        frequency: Frequency in Hz
        duration: Duration in seconds
        sample_rate: Sample rate in Hz

    Returns:
        PCM16 little-endian mono audio
    """
    t = np.linspace(0, duration, int(sample_rate * duration), False)
    tone = np.sin(2 * np.pi * frequency * t) * 0.5
    return (tone * 32767).astype('<i2').tobytes()


def load_audio(path: Path, encoding: str = "pcm16") -> bytes:
    """Load caller audio as PCM16 @ 8kHz.

    WAV files are read through the ``wave`` module; anything else is raw
    data in the given encoding.

    Args:
        path: Audio file
        encoding: "pcm16" or "ulaw" for raw files

    Returns:
        PCM16 audio bytes

    Raises:
        ValueError: If the file format is not usable
    """
    if path.suffix.lower() == ".wav":
        with wave.open(str(path), "rb") as wav:
            if wav.getsampwidth() != 2 or wav.getnchannels() != 1:
                raise ValueError(f"{path} must be mono 16-bit PCM")
            if wav.getframerate() != AudioConstants.DOWNSTREAM_SAMPLE_RATE:
                raise ValueError(
                    f"{path} is {wav.getframerate()}Hz, "
                    f"expected {AudioConstants.DOWNSTREAM_SAMPLE_RATE}Hz"
                )
            return wav.readframes(wav.getnframes())

    data = path.read_bytes()
    if encoding == "ulaw":
        return convert_g711_to_pcm16(data, "ulaw")
    if encoding != "pcm16":
        raise ValueError(f"Unsupported encoding: {encoding}")
    return data


def split_frames(audio: bytes, frame_size: int = AudioConstants.PCM16_8K_FRAME_SIZE) -> list[bytes]:
    """Split audio into fixed-size frames, padding the last with silence."""
    frames = []
    for offset in range(0, len(audio), frame_size):
        frame = audio[offset:offset + frame_size]
        if len(frame) < frame_size:
            frame += b'\x00' * (frame_size - len(frame))
        frames.append(frame)
    return frames


async def probe(url: str, audio: bytes, linger: float = 2.0) -> ProbeResult:
    """Stream audio to the relay once and collect what comes back.

    Args:
        url: Relay WebSocket URL
        audio: PCM16 @ 8kHz caller audio
        linger: Seconds to keep listening after the last frame is sent

    Returns:
        Probe statistics
    """
    result = ProbeResult()
    frame_interval = AudioConstants.FRAME_MS / 1000.0

    async with websockets.connect(url, max_size=None) as ws:
        logger.info("Connected to relay", url=url)

        async def receive() -> None:
            async for message in ws:
                if isinstance(message, bytes):
                    result.messages_received += 1
                    result.bytes_received += len(message)
                    logger.debug("Received audio", bytes=len(message))
                else:
                    logger.info("Received text message", message=message[:200])

        receiver = asyncio.create_task(receive(), name="probe-receiver")
        try:
            for frame in split_frames(audio):
                if receiver.done():
                    break
                await ws.send(frame)
                result.frames_sent += 1
                if result.frames_sent % AudioConstants.LOG_INTERVAL_FRAMES == 0:
                    logger.info("Sent frames", count=result.frames_sent)
                await asyncio.sleep(frame_interval)

            try:
                async with asyncio.timeout(linger):
                    await asyncio.shield(receiver)
            except TimeoutError:
                pass
        except websockets.ConnectionClosed:
            logger.info("Relay closed connection while sending")
        finally:
            receiver.cancel()
            try:
                await receiver
            except (asyncio.CancelledError, websockets.ConnectionClosed):
                pass

    result.close_code = ws.close_code
    result.close_reason = ws.close_reason
    logger.info(
        "Probe finished",
        frames_sent=result.frames_sent,
        messages_received=result.messages_received,
        bytes_received=result.bytes_received,
        close_code=result.close_code
    )
    return result


async def run_probe(
    url: str,
    audio: bytes,
    reconnect_delay: float = 3.0,
    max_attempts: int = 1,
    linger: float = 2.0
) -> list[ProbeResult]:
    """Run the probe, reconnecting after failures or relay-side closes.

    Args:
        url: Relay WebSocket URL
        audio: PCM16 @ 8kHz caller audio
        reconnect_delay: Seconds to wait between attempts
        max_attempts: Number of connections to make (0 = forever)
        linger: Seconds to listen after sending

    Returns:
        Results of the completed attempts
    """
    results: list[ProbeResult] = []
    attempt = 0
    while max_attempts == 0 or attempt < max_attempts:
        attempt += 1
        try:
            results.append(await probe(url, audio, linger=linger))
        except (OSError, websockets.InvalidHandshake, TimeoutError) as e:
            logger.error("Probe connection failed", attempt=attempt, error=str(e))

        if max_attempts == 0 or attempt < max_attempts:
            logger.info("Reconnecting", delay=reconnect_delay)
            await asyncio.sleep(reconnect_delay)
    return results


def cli() -> None:
    """CLI entry point for the probe client."""
    parser = argparse.ArgumentParser(description="Stream test audio through the relay")
    parser.add_argument("--url", default=DEFAULT_URL, help="Relay WebSocket URL")
    parser.add_argument("--file", type=Path, help="Audio file (.wav, raw PCM16 or raw μ-law)")
    parser.add_argument("--encoding", choices=["pcm16", "ulaw"], default="pcm16")
    parser.add_argument("--duration", type=float, default=3.0, help="Tone length when no file given")
    parser.add_argument("--linger", type=float, default=2.0)
    parser.add_argument("--reconnect-delay", type=float, default=3.0)
    parser.add_argument("--max-attempts", type=int, default=1, help="0 retries forever")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(SystemSettings(log_level=args.log_level))

    try:
        if args.file:
            audio = load_audio(args.file, args.encoding)
        else:
            audio = generate_tone(440, args.duration)
    except (OSError, ValueError) as e:
        logger.error("Cannot load audio", error=str(e))
        sys.exit(1)

    try:
        asyncio.run(run_probe(
            args.url,
            audio,
            reconnect_delay=args.reconnect_delay,
            max_attempts=args.max_attempts,
            linger=args.linger,
        ))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
