"""Shared test fixtures and configuration."""

import asyncio
from typing import AsyncGenerator

import numpy as np
import pytest
import pytest_asyncio

from relay.bridge import Bridge, BridgeSettings
from relay.core.transcoder import SoxrTranscoder
from relay.transport.connection import Side
from tests.fakes import FakeBroker, FakeConnection, FakeTranscoder, FakeUpstreamOpener


@pytest.fixture
def pcm16_frame_8k() -> bytes:
    """20ms PCM16 frame at 8kHz (320 bytes)."""
    t = np.arange(160) / 8000
    return (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16).tobytes()


@pytest.fixture
def pcm16_frame_16k() -> bytes:
    """20ms PCM16 frame at 16kHz (640 bytes)."""
    t = np.arange(320) / 16000
    return (np.sin(2 * np.pi * 440 * t) * 8000).astype(np.int16).tobytes()


@pytest.fixture
def downstream() -> FakeConnection:
    return FakeConnection(Side.DOWNSTREAM)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def opener() -> FakeUpstreamOpener:
    return FakeUpstreamOpener()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def bridge_settings() -> BridgeSettings:
    return BridgeSettings()


@pytest.fixture
def bridge(
    downstream: FakeConnection,
    broker: FakeBroker,
    opener: FakeUpstreamOpener,
    transcoder: FakeTranscoder,
    bridge_settings: BridgeSettings
) -> Bridge:
    return Bridge(downstream, broker, opener, transcoder, bridge_settings, call_id="test-call")


@pytest_asyncio.fixture
async def soxr_transcoder() -> AsyncGenerator[SoxrTranscoder, None]:
    """Real in-process transcoder."""
    transcoder = SoxrTranscoder(timeout=5.0, max_workers=2)
    yield transcoder
    await transcoder.close()


@pytest_asyncio.fixture
async def run_bridge(bridge: Bridge) -> AsyncGenerator[asyncio.Task[None], None]:
    """Run the bridge in the background; make sure it finishes."""
    task = asyncio.create_task(bridge.run())
    yield task
    if not task.done():
        bridge.shutdown("test teardown")
        await asyncio.wait_for(task, timeout=2.0)
