"""Tests for the per-conversation ElevenLabs voice channel."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from websockets.exceptions import ConnectionClosed

from dental_booking.services.voice_channel import ChannelNotRunningError, VoiceChannelManager


class FakeSocket:
    """Records outbound frames; yields queued inbound frames until ``None``."""

    def __init__(self, *incoming):
        self.sent: list[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()
        for frame in incoming:
            self._incoming.put_nowait(frame)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class DroppedSocket(FakeSocket):
    """Connects, then loses the link on the first write."""

    async def send(self, data: str) -> None:
        raise ConnectionClosed(None, None)


def _connector(*outcomes):
    """Fake ``websockets.connect``: each attempt uses the next socket or raises the next error."""
    attempts: list[str] = []
    remaining = list(outcomes)

    @asynccontextmanager
    async def connect(url):
        attempts.append(url)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        yield outcome

    return connect, attempts


def _manager(connect, **kwargs) -> VoiceChannelManager:
    kwargs.setdefault("initial_backoff", 0.01)
    kwargs.setdefault("max_backoff", 0.05)
    return VoiceChannelManager("wss://voice.test/convai", connect=connect, **kwargs)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestVoiceChannelManager:
    def test_delivers_message_and_closes_after(self):
        async def scenario():
            socket = FakeSocket()
            connect, attempts = _connector(socket)
            manager = _manager(connect)

            assert manager.start("conv_1") is True
            task = manager._channels["conv_1"].task
            await manager.send("conv_1", {"type": "appointment_confirmation"}, close_after=True)
            await asyncio.wait_for(task, timeout=2)

            assert socket.sent == [{"type": "appointment_confirmation"}]
            assert attempts == ["wss://voice.test/convai"]
            assert not manager.is_running("conv_1")

        asyncio.run(scenario())

    def test_start_twice_is_a_no_op(self):
        async def scenario():
            connect, _ = _connector(FakeSocket())
            manager = _manager(connect)
            assert manager.start("conv_1") is True
            assert manager.start("conv_1") is False
            assert manager.active == ["conv_1"]
            await manager.shutdown()

        asyncio.run(scenario())

    def test_send_without_channel_raises(self):
        async def scenario():
            manager = _manager(_connector()[0])
            with pytest.raises(ChannelNotRunningError):
                await manager.send("missing", {"type": "x"})

        asyncio.run(scenario())

    def test_answers_initiation_metadata_with_roster(self):
        roster = [{"practitioner_id": 7, "practitioner_name": "Ana Silva"}]

        async def scenario():
            socket = FakeSocket(json.dumps({"type": "conversation_initiation_metadata"}))
            connect, _ = _connector(socket)
            manager = _manager(connect)
            manager._roster = lambda: roster

            manager.start("conv_1")
            await _wait_for(lambda: socket.sent)
            await manager.stop("conv_1")

            assert socket.sent[0] == {"conversation_id": "conv_1", "text": roster}
            assert manager.active == []

        asyncio.run(scenario())

    def test_reconnects_after_connection_failure(self):
        async def scenario():
            socket = FakeSocket()
            connect, attempts = _connector(OSError("refused"), socket)
            manager = _manager(connect)

            manager.start("conv_1")
            task = manager._channels["conv_1"].task
            await manager.send("conv_1", {"type": "appointment_confirmation"}, close_after=True)
            await asyncio.wait_for(task, timeout=2)

            assert len(attempts) == 2
            assert socket.sent == [{"type": "appointment_confirmation"}]

        asyncio.run(scenario())

    def test_message_survives_a_dropped_link(self):
        async def scenario():
            socket = FakeSocket()
            connect, attempts = _connector(DroppedSocket(), socket)
            manager = _manager(connect)

            manager.start("conv_1")
            task = manager._channels["conv_1"].task
            await manager.send("conv_1", {"type": "appointment_confirmation"}, close_after=True)
            await asyncio.wait_for(task, timeout=2)

            assert len(attempts) == 2
            assert socket.sent == [{"type": "appointment_confirmation"}]
            assert not manager.is_running("conv_1")

        asyncio.run(scenario())

    def test_idle_channel_stops_itself(self):
        async def scenario():
            connect, _ = _connector(FakeSocket())
            manager = _manager(connect, idle_timeout=0.05)

            manager.start("conv_1")
            task = manager._channels["conv_1"].task
            await asyncio.wait_for(task, timeout=2)

            assert not manager.is_running("conv_1")

        asyncio.run(scenario())

    def test_shutdown_stops_every_channel(self):
        async def scenario():
            connect, _ = _connector(FakeSocket(), FakeSocket())
            manager = _manager(connect)
            manager.start("conv_1")
            manager.start("conv_2")
            await _wait_for(lambda: manager.is_connected("conv_1") and manager.is_connected("conv_2"))

            await manager.shutdown()

            assert manager.active == []

        asyncio.run(scenario())
