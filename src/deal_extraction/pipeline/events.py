"""
Progress event bridge: per-session publish/subscribe.

Provides:
- ProgressChannel: one per session, keeps a bounded history
- Subscription: async iterator with its own bounded buffer (drop-oldest)
- ProgressEventBridge: session id -> channel lookup

publish() never blocks and never waits on a subscriber. Once a channel is
closed further publishes are ignored and subscriptions drain then stop.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque

import structlog

from ..errors import SessionNotFoundError
from ..models.events import ProgressEvent

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 256
DEFAULT_HISTORY_SIZE = 100


class Subscription:
    """
    One observer's view of a channel.

    Usage:
        async for event in bridge.subscribe(session_id):
            ...
    """

    def __init__(self, channel: ProgressChannel, buffer_size: int):
        self.channel = channel
        self._buffer: deque[ProgressEvent] = deque()
        self._buffer_size = buffer_size
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self._buffer_size:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def _finish(self) -> None:
        self._closed = True
        self._ready.set()

    def close(self) -> None:
        """Stop receiving events and detach from the channel."""
        self._finish()
        self._buffer.clear()
        self.channel._detach(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProgressEvent:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

        event = self._buffer.popleft()
        self.delivered += 1
        if event.is_terminal:
            # Nothing follows a terminal event
            self._finish()
            self._buffer.clear()
            self.channel._detach(self)
        return event

    async def next(self, timeout: float | None = None) -> ProgressEvent | None:
        """
        Next event, or None if the timeout expires first.

        Raises:
            StopAsyncIteration: When the subscription has ended
        """
        if timeout is None:
            return await self.__anext__()
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except asyncio.TimeoutError:
            return None


class ProgressChannel:
    """Fan-out of one session's events to its subscriptions."""

    def __init__(
        self,
        session_id: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        self.session_id = session_id
        self.buffer_size = buffer_size
        self.history: deque[ProgressEvent] = deque(maxlen=history_size)
        self._subscriptions: list[Subscription] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._closed:
                logger.debug(
                    'events.publish_after_close',
                    session_id=self.session_id,
                    event_type=event.type.value,
                )
                return
            self.history.append(event)
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._push(event)

    def subscribe(self, replay: bool = False) -> Subscription:
        """
        Attach a new subscription.

        With replay, buffered history is delivered first. Subscribing to a
        closed channel yields the history (when replaying) then stops.
        """
        subscription = Subscription(self, self.buffer_size)
        with self._lock:
            if replay:
                for event in self.history:
                    subscription._push(event)
            if self._closed:
                subscription._finish()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._finish()

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)


class ProgressEventBridge:
    """
    Owns one ProgressChannel per session.

    Args:
        buffer_size: Per-subscriber buffer length
        history_size: Events kept per channel for replay
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        self.buffer_size = buffer_size
        self.history_size = history_size
        self._channels: dict[str, ProgressChannel] = {}
        self._lock = threading.Lock()

    def create_emitter(self, session_id: str) -> ProgressChannel:
        """Create the channel for a session (once per session)."""
        with self._lock:
            if session_id in self._channels:
                raise ValueError(f"Progress channel already exists for session {session_id}")
            channel = ProgressChannel(session_id, self.buffer_size, self.history_size)
            self._channels[session_id] = channel
            return channel

    def get_channel(self, session_id: str) -> ProgressChannel:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is None:
            raise SessionNotFoundError(
                f"No progress channel for session {session_id}",
                context={'session_id': session_id},
            )
        return channel

    def publish(self, session_id: str, event: ProgressEvent) -> None:
        """Publish to a session's channel; unknown sessions are ignored."""
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is not None:
            channel.publish(event)

    def subscribe(self, session_id: str, replay: bool = False) -> Subscription:
        return self.get_channel(session_id).subscribe(replay=replay)

    def close(self, session_id: str) -> None:
        with self._lock:
            channel = self._channels.get(session_id)
        if channel is not None:
            channel.close()

    def remove(self, session_id: str) -> None:
        """Close and forget a session's channel."""
        with self._lock:
            channel = self._channels.pop(session_id, None)
        if channel is not None:
            channel.close()
