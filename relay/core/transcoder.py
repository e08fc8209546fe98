"""Sample-rate transcoders for PCM16 mono audio.

Two interchangeable backends, picked at composition time:

- ``SoxrTranscoder``: in-process soxr resampling run on a bounded thread
  pool, so the event loop keeps delivering frames for other calls.
- ``SoxTranscoder``: one ``sox`` process per frame, bounded by a semaphore.

Both enforce a per-invocation timeout and report every failure as
``TranscodeError``. Frames are converted one chunk at a time; chunk
boundaries are not aligned to any framing and may carry edge artifacts.
"""

import asyncio
import subprocess
from abc import abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Protocol, Tuple, runtime_checkable

import structlog

from relay.core.errors import TranscodeError
from relay.core.resampler import Resampler

logger = structlog.get_logger(__name__)

SOX_BINARY = "sox"


@runtime_checkable
class Transcoder(Protocol):
    """Protocol for sample-rate conversion backends."""

    @abstractmethod
    async def resample(self, frame: bytes, from_rate: int, to_rate: int) -> bytes:
        """Convert a PCM16 mono frame between sample rates.

        Args:
            frame: PCM16 little-endian mono audio at ``from_rate``
            from_rate: Source sample rate in Hz
            to_rate: Target sample rate in Hz

        Returns:
            PCM16 mono audio at ``to_rate``

        Raises:
            TranscodeError: If the conversion fails or times out
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release worker resources."""
        ...


class SoxrTranscoder:
    """In-process transcoder backed by soxr on a bounded thread pool."""

    def __init__(
        self,
        timeout: float = 2.0,
        max_workers: int = 4,
        quality: str = "HQ"
    ) -> None:
        """Initialize transcoder.

        Args:
            timeout: Per-frame conversion timeout in seconds
            max_workers: Thread pool size shared by all calls
            quality: soxr quality preset ("LQ", "MQ", "HQ", "VHQ")
        """
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        if max_workers <= 0:
            raise ValueError(f"Workers must be positive, got {max_workers}")

        self._timeout = timeout
        self._quality = quality
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="transcode"
        )
        self._resamplers: Dict[Tuple[int, int], Resampler] = {}

    def _resampler_for(self, from_rate: int, to_rate: int) -> Resampler:
        key = (from_rate, to_rate)
        resampler = self._resamplers.get(key)
        if resampler is None:
            resampler = Resampler(from_rate, to_rate, quality=self._quality)
            self._resamplers[key] = resampler
        return resampler

    async def resample(self, frame: bytes, from_rate: int, to_rate: int) -> bytes:
        if not frame:
            return b""
        if from_rate == to_rate:
            return frame

        try:
            resampler = self._resampler_for(from_rate, to_rate)
        except ValueError as e:
            raise TranscodeError(str(e)) from e

        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(self._timeout):
                return await loop.run_in_executor(
                    self._executor, resampler.resample, frame
                )
        except TimeoutError as e:
            raise TranscodeError(
                f"Resampling {len(frame)} bytes {from_rate}->{to_rate} "
                f"timed out after {self._timeout}s"
            ) from e
        except Exception as e:
            raise TranscodeError(f"Resampling failed: {e}") from e

    async def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("soxr transcoder closed")


class SoxTranscoder:
    """Out-of-process transcoder spawning ``sox`` for every frame."""

    def __init__(
        self,
        timeout: float = 2.0,
        max_concurrency: int = 4,
        binary: str = SOX_BINARY
    ) -> None:
        """Initialize transcoder.

        Args:
            timeout: Per-frame conversion timeout in seconds
            max_concurrency: Maximum number of sox processes alive at once
            binary: sox executable name or path
        """
        if timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout}")
        if max_concurrency <= 0:
            raise ValueError(f"Concurrency must be positive, got {max_concurrency}")

        self._timeout = timeout
        self._binary = binary
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @staticmethod
    def build_args(from_rate: int, to_rate: int) -> list[str]:
        """Build sox arguments for raw PCM16 mono stdin -> stdout."""
        raw_pcm = ["-t", "raw", "-b", "16", "-e", "signed-integer", "-c", "1"]
        return [
            *raw_pcm, "-r", str(from_rate), "-",
            *raw_pcm, "-r", str(to_rate), "-",
        ]

    async def resample(self, frame: bytes, from_rate: int, to_rate: int) -> bytes:
        if not frame:
            return b""
        if from_rate == to_rate:
            return frame

        async with self._semaphore:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._binary,
                    *self.build_args(from_rate, to_rate),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise TranscodeError(f"Cannot start {self._binary}: {e}") from e

            try:
                async with asyncio.timeout(self._timeout):
                    stdout, stderr = await proc.communicate(frame)
            except TimeoutError as e:
                raise TranscodeError(
                    f"{self._binary} timed out after {self._timeout}s"
                ) from e
            finally:
                if proc.returncode is None:
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                    await proc.wait()

        if proc.returncode != 0:
            raise TranscodeError(
                f"{self._binary} exited with {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return stdout

    async def close(self) -> None:
        logger.debug("sox transcoder closed")


def sox_available(binary: str = SOX_BINARY) -> bool:
    """Check whether the sox binary can be executed.

    Args:
        binary: sox executable name or path

    Returns:
        True if ``sox --version`` succeeds
    """
    try:
        subprocess.run(
            [binary, "--version"],
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, subprocess.CalledProcessError):
        return False
    return True


def create_transcoder(
    backend: str = "soxr",
    timeout: float = 2.0,
    max_workers: int = 4
) -> Transcoder:
    """Factory function to create a transcoder backend.

    Args:
        backend: "soxr" (in-process) or "sox" (external process)
        timeout: Per-frame conversion timeout in seconds
        max_workers: Thread pool size or maximum concurrent sox processes

    Returns:
        Transcoder instance

    Raises:
        ValueError: If backend is not supported
    """
    if backend == "soxr":
        return SoxrTranscoder(timeout=timeout, max_workers=max_workers)
    elif backend == "sox":
        return SoxTranscoder(timeout=timeout, max_concurrency=max_workers)
    else:
        raise ValueError(f"Unsupported transcoder backend: {backend}")
