"""Bounded async buffers for audio frames."""

import asyncio


class StreamBuffer:
    """Asyncio Queue-based buffer for async communication."""

    def __init__(self, capacity: int) -> None:
        """Initialize stream buffer.

        Args:
            capacity: Maximum number of items to buffer

        Raises:
            ValueError: If capacity is <= 0
        """
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")

        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=capacity)
        self._capacity = capacity
        self._closed = False

    @property
    def capacity(self) -> int:
        """Maximum number of items."""
        return self._capacity

    @property
    def closed(self) -> bool:
        """Whether the buffer has been closed."""
        return self._closed

    def qsize(self) -> int:
        """Current number of buffered items."""
        return self._queue.qsize()

    def send_nowait(self, item: bytes) -> None:
        """Send item without waiting.

        Items sent after close() are ignored.

        Args:
            item: Data to send

        Raises:
            asyncio.QueueFull: If buffer is full
        """
        if self._closed:
            return
        self._queue.put_nowait(item)

    async def send(self, item: bytes) -> None:
        """Send item, waiting if necessary.

        Args:
            item: Data to send
        """
        if self._closed:
            return
        await self._queue.put(item)

    async def receive(self) -> bytes:
        """Receive item, waiting if necessary.

        Returns:
            Received data
        """
        return await self._queue.get()

    def receive_nowait(self) -> bytes:
        """Receive item without waiting.

        Returns:
            Received data

        Raises:
            asyncio.QueueEmpty: If buffer is empty
        """
        return self._queue.get_nowait()

    def close(self) -> int:
        """Close the buffer and discard anything still queued.

        Returns:
            Number of items discarded
        """
        self._closed = True
        discarded = 0
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
                discarded += 1
            except asyncio.QueueEmpty:
                break
        return discarded
