"""Tests for the per-call bridge state machine."""

import asyncio

import pytest

from relay.bridge import Bridge, BridgeSettings, BridgeState, PendingAudioPolicy
from relay.core.constants import CloseCodes
from relay.core.errors import BrokerError
from relay.core.transcoder import SoxrTranscoder
from relay.transport.connection import Side
from tests.fakes import (
    FakeBroker,
    FakeConnection,
    FakeTranscoder,
    FakeUpstreamOpener,
    wait_until,
)


class StateRecordingConnection(FakeConnection):
    """Upstream that records the bridge state at every send."""

    def __init__(self, bridge_ref: list) -> None:
        super().__init__(Side.UPSTREAM)
        self._bridge_ref = bridge_ref
        self.states_at_send: list[BridgeState] = []

    async def send(self, frame: bytes) -> bool:
        self.states_at_send.append(self._bridge_ref[0].state)
        return await super().send(frame)


async def _finish(task: asyncio.Task, timeout: float = 2.0) -> None:
    await asyncio.wait_for(task, timeout=timeout)


class TestBridgeRouting:
    """Frame routing while ACTIVE."""

    @pytest.mark.asyncio
    async def test_uplink_frame_forwarded_verbatim(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        pcm16_frame_8k: bytes
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        downstream.feed(pcm16_frame_8k)

        await wait_until(lambda: opener.connection.sent)
        assert opener.connection.sent == [pcm16_frame_8k]
        assert len(opener.connection.sent[0]) == 320

    @pytest.mark.asyncio
    async def test_downlink_frame_resampled_to_8k(
        self,
        downstream: FakeConnection,
        broker: FakeBroker,
        opener: FakeUpstreamOpener,
        soxr_transcoder: SoxrTranscoder,
        pcm16_frame_16k: bytes
    ) -> None:
        bridge = Bridge(downstream, broker, opener, soxr_transcoder)
        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)

        opener.connection.feed(pcm16_frame_16k)
        await wait_until(lambda: downstream.sent, timeout=3.0)

        assert 300 <= len(downstream.sent[0]) <= 340
        assert len(downstream.sent[0]) % 2 == 0

        bridge.shutdown()
        await _finish(task)

    @pytest.mark.asyncio
    async def test_uplink_order_preserved(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        frames = [bytes([i]) * 320 for i in (1, 2, 3)]
        for frame in frames:
            downstream.feed(frame)

        await wait_until(lambda: len(opener.connection.sent) == 3)
        assert opener.connection.sent == frames

    @pytest.mark.asyncio
    async def test_downlink_order_preserved(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        for i in range(10):
            opener.connection.feed(bytes([i, 0]) * 320)

        await wait_until(lambda: len(downstream.sent) == 10)
        assert [frame[0] for frame in downstream.sent] == list(range(10))
        assert all(len(frame) == 320 for frame in downstream.sent)

    @pytest.mark.asyncio
    async def test_transcode_failure_drops_only_that_frame(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        bad = b'\x01\x00' * 320
        good = b'\x02\x00' * 320
        transcoder.fail_frames.add(bad)

        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        opener.connection.feed(bad)
        opener.connection.feed(good)

        await wait_until(lambda: downstream.sent)
        assert downstream.sent == [b'\x02\x00' * 160]
        assert bridge.state is BridgeState.ACTIVE
        assert bridge.stats()["transcode_failures"] == 1

    @pytest.mark.asyncio
    async def test_symmetric_uplink_transcode_hook(
        self,
        downstream: FakeConnection,
        broker: FakeBroker,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder,
        pcm16_frame_8k: bytes
    ) -> None:
        settings = BridgeSettings(transcode_uplink=True)
        bridge = Bridge(downstream, broker, opener, transcoder, settings)
        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)

        downstream.feed(pcm16_frame_8k)
        await wait_until(lambda: opener.connection.sent)

        assert transcoder.calls == [(320, 8000, 16000)]

        bridge.shutdown()
        await _finish(task)

    @pytest.mark.asyncio
    async def test_uplink_not_transcoded_by_default(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder,
        pcm16_frame_8k: bytes
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        downstream.feed(pcm16_frame_8k)
        await wait_until(lambda: opener.connection.sent)

        assert transcoder.calls == []


class TestBridgeEstablishment:
    """Upstream setup and the AWAITING_UPSTREAM state."""

    @pytest.mark.asyncio
    async def test_broker_failure_closes_downstream_without_upstream(
        self,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        broker = FakeBroker(error=BrokerError("network down", payload="ECONNREFUSED"))
        bridge = Bridge(downstream, broker, opener, transcoder)

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.state is BridgeState.CLOSED
        assert broker.calls == 1
        assert opener.endpoints == []
        assert downstream.close_calls == [
            (CloseCodes.INTERNAL_ERROR, "assistant session unavailable")
        ]

    @pytest.mark.asyncio
    async def test_upstream_dial_failure_closes_downstream(
        self,
        downstream: FakeConnection,
        broker: FakeBroker,
        transcoder: FakeTranscoder
    ) -> None:
        opener = FakeUpstreamOpener(error=ConnectionError("handshake refused"))
        bridge = Bridge(downstream, broker, opener, transcoder)

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert len(opener.endpoints) == 1
        assert bridge.close_reason == "upstream unavailable"
        assert downstream.close_calls[0][0] == CloseCodes.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_each_bridge_requests_its_own_session(
        self,
        broker: FakeBroker,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        bridges = [
            Bridge(FakeConnection(Side.DOWNSTREAM), broker, opener, transcoder)
            for _ in range(3)
        ]
        tasks = [asyncio.create_task(b.run()) for b in bridges]
        await wait_until(lambda: all(b.state is BridgeState.ACTIVE for b in bridges))

        assert broker.calls == 3
        assert len({e.call_id for e in opener.endpoints}) == 3

        for b in bridges:
            b.shutdown()
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)

    @pytest.mark.asyncio
    async def test_pending_audio_dropped_by_default(
        self,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        gate = asyncio.Event()
        broker = FakeBroker(gate=gate)
        bridge = Bridge(downstream, broker, opener, transcoder)
        task = asyncio.create_task(bridge.run())

        downstream.feed(b'\x01' * 320)
        downstream.feed(b'\x02' * 320)
        await wait_until(lambda: bridge.stats()["pending_dropped"] == 2)
        assert bridge.state is BridgeState.AWAITING_UPSTREAM
        assert opener.endpoints == []

        gate.set()
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        downstream.feed(b'\x03' * 320)
        await wait_until(lambda: opener.connection.sent)

        assert opener.connection.sent == [b'\x03' * 320]

        bridge.shutdown()
        await _finish(task)

    @pytest.mark.asyncio
    async def test_pending_audio_buffered_and_flushed_in_order(
        self,
        downstream: FakeConnection,
        transcoder: FakeTranscoder
    ) -> None:
        gate = asyncio.Event()
        broker = FakeBroker(gate=gate)
        bridge_ref: list = []
        upstream = StateRecordingConnection(bridge_ref)

        async def opener(endpoint):
            return upstream

        settings = BridgeSettings(
            pending_policy=PendingAudioPolicy.BUFFER,
            pending_capacity=2
        )
        bridge = Bridge(downstream, broker, opener, transcoder, settings)
        bridge_ref.append(bridge)
        task = asyncio.create_task(bridge.run())

        for i in (1, 2, 3):
            downstream.feed(bytes([i]) * 320)
        await wait_until(lambda: bridge.stats()["pending_dropped"] == 1)
        assert upstream.sent == []

        gate.set()
        await wait_until(lambda: len(upstream.sent) == 2)

        # Oldest frame evicted, remaining two flushed in arrival order
        assert upstream.sent == [bytes([2]) * 320, bytes([3]) * 320]
        assert upstream.states_at_send == [BridgeState.ACTIVE, BridgeState.ACTIVE]

        bridge.shutdown()
        await _finish(task)

    @pytest.mark.asyncio
    async def test_downstream_close_while_awaiting_broker(
        self,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        broker = FakeBroker(gate=asyncio.Event())
        bridge = Bridge(downstream, broker, opener, transcoder)
        task = asyncio.create_task(bridge.run())

        await wait_until(lambda: broker.calls == 1)
        downstream.peer_close()
        await _finish(task)

        assert bridge.state is BridgeState.CLOSED
        assert opener.endpoints == []
        assert bridge.close_reason == "downstream closed"

    @pytest.mark.asyncio
    async def test_opened_events_recorded_for_both_legs(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task
    ) -> None:
        await wait_until(lambda: len(bridge.stats()["opened_sides"]) == 2)

        assert bridge.stats()["opened_sides"] == ["downstream", "upstream"]
        assert bridge.state is BridgeState.ACTIVE


class TestBridgeTeardown:
    """CLOSING/CLOSED behaviour."""

    @pytest.mark.asyncio
    async def test_downstream_close_closes_upstream(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        downstream.peer_close()
        await _finish(run_bridge)

        assert bridge.state is BridgeState.CLOSED
        assert opener.connection.close_calls
        assert not opener.connection.is_open

    @pytest.mark.asyncio
    async def test_upstream_close_closes_downstream(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        opener.connection.peer_close()
        await _finish(run_bridge)

        assert bridge.close_reason == "upstream closed"
        assert downstream.close_calls == [(CloseCodes.NORMAL, "")]

    @pytest.mark.asyncio
    async def test_upstream_error_closes_downstream(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        opener.connection.peer_error("abnormal close: 1006")
        await _finish(run_bridge)

        assert bridge.close_reason == "upstream errored"
        assert downstream.close_calls

    @pytest.mark.asyncio
    async def test_in_flight_transcode_discarded_on_downstream_close(
        self,
        downstream: FakeConnection,
        broker: FakeBroker,
        opener: FakeUpstreamOpener,
        pcm16_frame_16k: bytes
    ) -> None:
        gate = asyncio.Event()
        transcoder = FakeTranscoder(gate=gate)
        bridge = Bridge(downstream, broker, opener, transcoder)
        task = asyncio.create_task(bridge.run())
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)

        opener.connection.feed(pcm16_frame_16k)
        await asyncio.wait_for(transcoder.started.wait(), timeout=1.0)

        downstream.peer_close()
        await _finish(task)
        gate.set()
        await asyncio.sleep(0.02)

        assert downstream.sent == []
        assert opener.connection.close_calls
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_no_frames_forwarded_once_closing(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)

        # Frames queued in the same tick as the close must not be relayed
        opener.connection.feed(b'\x01\x00' * 320)
        downstream.feed(b'\x02' * 320)
        bridge.shutdown("test")
        await _finish(run_bridge)

        assert downstream.sent == []
        assert opener.connection.sent == []

    @pytest.mark.asyncio
    async def test_shutdown_closes_both_legs(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection,
        opener: FakeUpstreamOpener
    ) -> None:
        await wait_until(lambda: bridge.state is BridgeState.ACTIVE)
        bridge.shutdown("relay shutting down")
        await _finish(run_bridge)

        assert downstream.close_calls == [(CloseCodes.GOING_AWAY, "")]
        assert opener.connection.close_calls == [(CloseCodes.GOING_AWAY, "")]
        assert bridge.close_reason == "relay shutting down"

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_session(
        self,
        downstream: FakeConnection,
        broker: FakeBroker,
        opener: FakeUpstreamOpener,
        transcoder: FakeTranscoder
    ) -> None:
        settings = BridgeSettings(idle_timeout=0.05)
        bridge = Bridge(downstream, broker, opener, transcoder, settings)

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.close_reason == "idle timeout"
        assert downstream.close_calls
        assert opener.connection.close_calls

    @pytest.mark.asyncio
    async def test_shutdown_after_closed_is_noop(
        self,
        bridge: Bridge,
        run_bridge: asyncio.Task,
        downstream: FakeConnection
    ) -> None:
        downstream.peer_close()
        await _finish(run_bridge)

        bridge.shutdown()
        await bridge.wait_closed()
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_run_twice_rejected(
        self,
        bridge: Bridge,
        downstream: FakeConnection
    ) -> None:
        downstream.peer_close()
        await asyncio.wait_for(bridge.run(), timeout=2.0)

        with pytest.raises(RuntimeError, match="only be run once"):
            await bridge.run()
