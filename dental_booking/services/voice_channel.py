"""Per-conversation push channel to the ElevenLabs voice agent.

``VoiceChannelManager`` owns a registry of conversation id → channel.  Each
channel is one asyncio task that keeps a websocket open to the ElevenLabs
conversation endpoint and drains an outbound queue into it.

Lifecycle
─────────
    start(id)      register the channel and spawn its task (no-op if running)
    connect        on failure or remote close, retry with exponential
                   backoff (``initial_backoff`` doubling up to ``max_backoff``)
    send(id, msg)  queue a JSON message; it is delivered once connected
    close_after    the channel stops itself after delivering that message
    idle timeout   no outbound message for ``idle_timeout`` seconds stops it
    stop(id)       cancel the task

The registry entry is removed whenever the task ends, whatever the cause,
so the registry only ever holds live channels.

Inbound traffic is only inspected for ``conversation_initiation_metadata``,
which is answered with the active practitioner roster.  Nothing on this
channel affects a booking outcome.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dental_booking.config import ELEVENLABS_WS_URL
from dental_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 5.0
MAX_BACKOFF_SECONDS = 60.0
IDLE_TIMEOUT_SECONDS = 600.0

RosterProvider = Callable[[], list[dict[str, Any]]]


class ChannelNotRunningError(RuntimeError):
    """Raised when sending to a conversation with no running channel."""


@dataclass
class _Channel:
    conversation_id: str
    deadline: float
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    stopped: bool = False
    connected: asyncio.Event = field(default_factory=asyncio.Event)
    # taken off the queue but not yet written; survives a reconnect
    pending: tuple[dict[str, Any], bool] | None = None


class VoiceChannelManager:
    def __init__(
        self,
        url: str = ELEVENLABS_WS_URL,
        roster: RosterProvider | None = None,
        *,
        connect: Callable[..., Any] = websockets.connect,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
    ):
        self._url = url
        self._roster = roster
        self._connect = connect
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._idle_timeout = idle_timeout
        self._channels: dict[str, _Channel] = {}

    # ── Registry ─────────────────────────────────────────────────────

    @property
    def active(self) -> list[str]:
        return list(self._channels)

    def is_running(self, conversation_id: str) -> bool:
        return conversation_id in self._channels

    def is_connected(self, conversation_id: str) -> bool:
        channel = self._channels.get(conversation_id)
        return bool(channel and channel.connected.is_set())

    def start(self, conversation_id: str) -> bool:
        """Spawn the channel for *conversation_id*.  Must run inside the event loop.

        Returns ``False`` if a channel for that conversation already runs.
        """
        if conversation_id in self._channels:
            logger.info("[voice %s] channel already running", conversation_id)
            return False
        loop = asyncio.get_running_loop()
        channel = _Channel(conversation_id, deadline=loop.time() + self._idle_timeout)
        self._channels[conversation_id] = channel
        channel.task = loop.create_task(
            self._run(channel), name=f"voice-channel-{conversation_id}",
        )
        logger.info("[voice %s] channel started", conversation_id)
        return True

    async def send(
        self, conversation_id: str, payload: dict[str, Any], *, close_after: bool = False,
    ) -> None:
        channel = self._channels.get(conversation_id)
        if channel is None or channel.stopped:
            raise ChannelNotRunningError(
                f"Voice channel for conversation {conversation_id} is not running"
            )
        channel.deadline = asyncio.get_running_loop().time() + self._idle_timeout
        await channel.queue.put((payload, close_after))

    async def stop(self, conversation_id: str) -> None:
        channel = self._channels.get(conversation_id)
        if channel is None:
            return
        channel.stopped = True
        if channel.task is not None and not channel.task.done():
            channel.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await channel.task
        self._channels.pop(conversation_id, None)
        logger.info("[voice %s] channel stopped", conversation_id)

    async def shutdown(self) -> None:
        for conversation_id in list(self._channels):
            await self.stop(conversation_id)

    # ── Channel task ─────────────────────────────────────────────────

    def _idle(self, channel: _Channel) -> bool:
        return asyncio.get_running_loop().time() >= channel.deadline

    async def _run(self, channel: _Channel) -> None:
        cid = channel.conversation_id
        backoff = self._initial_backoff
        try:
            while not channel.stopped:
                try:
                    async with self._connect(self._url) as ws:
                        channel.connected.set()
                        backoff = self._initial_backoff
                        logger.info("[voice %s] connected", cid)
                        await self._pump(channel, ws)
                except (OSError, WebSocketException) as exc:
                    metrics.record("elevenlabs", "connect", error_type=type(exc).__name__)
                    logger.warning("[voice %s] connection failed: %s", cid, exc)
                finally:
                    channel.connected.clear()

                if channel.stopped:
                    break
                if self._idle(channel):
                    logger.info("[voice %s] idle, not reconnecting", cid)
                    break
                logger.info("[voice %s] reconnecting in %.1fs", cid, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self._max_backoff)
        finally:
            channel.stopped = True
            if self._channels.get(cid) is channel:
                del self._channels[cid]
            logger.debug("[voice %s] channel task finished", cid)

    async def _pump(self, channel: _Channel, ws) -> None:
        """Deliver queued messages until close_after, idle timeout or remote close."""
        cid = channel.conversation_id
        receiver = asyncio.ensure_future(self._receive(channel, ws))
        try:
            while True:
                remaining = channel.deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    logger.info("[voice %s] idle timeout", cid)
                    channel.stopped = True
                    return
                if channel.pending is None:
                    getter = asyncio.ensure_future(channel.queue.get())
                    done, _ = await asyncio.wait(
                        {getter, receiver}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
                    )
                    if getter not in done:
                        getter.cancel()
                        if receiver in done:
                            logger.info("[voice %s] closed by remote", cid)
                            return
                        continue
                    channel.pending = getter.result()

                payload, close_after = channel.pending
                with metrics.track("elevenlabs", "send"):
                    await ws.send(json.dumps(payload))
                channel.pending = None
                logger.info("[voice %s] sent %s", cid, payload.get("type", "message"))
                if close_after:
                    channel.stopped = True
                    return
                if receiver.done():
                    return
        finally:
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver

    async def _receive(self, channel: _Channel, ws) -> None:
        cid = channel.conversation_id
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.debug("[voice %s] ignoring non-JSON frame", cid)
                    continue
                if isinstance(message, dict) and message.get("type") == "conversation_initiation_metadata":
                    await self._send_roster(channel)
        except ConnectionClosed as exc:
            logger.debug("[voice %s] receive loop closed: %s", cid, exc)

    async def _send_roster(self, channel: _Channel) -> None:
        if self._roster is None:
            return
        try:
            roster = await asyncio.to_thread(self._roster)
        except Exception:
            logger.exception("[voice %s] could not load practitioner roster", channel.conversation_id)
            return
        await channel.queue.put(
            ({"conversation_id": channel.conversation_id, "text": roster}, False),
        )
