"""
Tests for the progress event bridge.

Tests cover:
- Per-subscriber ordering and fan-out
- History replay for late subscribers
- Drop-oldest on a full subscriber buffer
- Terminal events ending iteration
- Publish after close being ignored
- SSE frame encoding
"""

import asyncio
import json

import pytest

from deal_extraction.errors import SessionNotFoundError
from deal_extraction.models.events import ProgressEvent, ProgressEventType, format_sse
from deal_extraction.pipeline.events import ProgressChannel, ProgressEventBridge


def _event(event_type=ProgressEventType.FILE_PROGRESS, session_id='s1', **fields):
    return ProgressEvent(type=event_type, session_id=session_id, **fields)


async def _drain(subscription):
    return [event async for event in subscription]


class TestProgressChannel:
    @pytest.mark.asyncio
    async def test_events_delivered_in_publish_order(self):
        channel = ProgressChannel('s1')
        subscription = channel.subscribe()

        for i in range(5):
            channel.publish(_event(progress=i))
        channel.publish(_event(ProgressEventType.COMPLETE))

        events = await _drain(subscription)

        assert [e.progress for e in events[:5]] == [0, 1, 2, 3, 4]
        assert events[-1].type == ProgressEventType.COMPLETE

    @pytest.mark.asyncio
    async def test_every_subscriber_sees_every_event(self):
        channel = ProgressChannel('s1')
        first = channel.subscribe()
        second = channel.subscribe()

        channel.publish(_event(progress=1))
        channel.publish(_event(ProgressEventType.COMPLETE))

        assert len(await _drain(first)) == 2
        assert len(await _drain(second)) == 2

    @pytest.mark.asyncio
    async def test_late_subscriber_without_replay_sees_only_new_events(self):
        channel = ProgressChannel('s1')
        channel.publish(_event(progress=1))

        subscription = channel.subscribe()
        channel.publish(_event(progress=2))
        channel.close()

        assert [e.progress for e in await _drain(subscription)] == [2]

    @pytest.mark.asyncio
    async def test_replay_delivers_history_first(self):
        channel = ProgressChannel('s1')
        channel.publish(_event(ProgressEventType.START))
        channel.publish(_event(progress=10))

        subscription = channel.subscribe(replay=True)
        channel.publish(_event(progress=30))
        channel.close()

        events = await _drain(subscription)

        assert [e.type for e in events] == [
            ProgressEventType.START,
            ProgressEventType.FILE_PROGRESS,
            ProgressEventType.FILE_PROGRESS,
        ]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        channel = ProgressChannel('s1', history_size=3)
        for i in range(10):
            channel.publish(_event(progress=i))

        assert [e.progress for e in channel.history] == [7, 8, 9]

    @pytest.mark.asyncio
    async def test_full_buffer_drops_oldest(self):
        channel = ProgressChannel('s1', buffer_size=3)
        subscription = channel.subscribe()

        for i in range(5):
            channel.publish(_event(progress=i))
        channel.close()

        events = await _drain(subscription)

        assert [e.progress for e in events] == [2, 3, 4]
        assert subscription.dropped == 2
        assert subscription.delivered == 3

    @pytest.mark.asyncio
    async def test_terminal_event_ends_iteration_and_detaches(self):
        channel = ProgressChannel('s1')
        subscription = channel.subscribe()

        channel.publish(_event(ProgressEventType.ERROR, message='boom'))
        events = await _drain(subscription)

        assert [e.type for e in events] == [ProgressEventType.ERROR]
        assert subscription.closed
        assert channel.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_publish_after_close_is_ignored(self):
        channel = ProgressChannel('s1')
        channel.publish(_event(ProgressEventType.COMPLETE))
        channel.close()

        channel.publish(_event(progress=99))

        assert len(channel.history) == 1
        assert channel.closed

    @pytest.mark.asyncio
    async def test_subscribe_to_closed_channel_replays_then_stops(self):
        channel = ProgressChannel('s1')
        channel.publish(_event(ProgressEventType.START))
        channel.close()

        events = await _drain(channel.subscribe(replay=True))

        assert [e.type for e in events] == [ProgressEventType.START]

    @pytest.mark.asyncio
    async def test_subscriber_waits_for_future_events(self):
        channel = ProgressChannel('s1')
        subscription = channel.subscribe()

        async def publish_later():
            await asyncio.sleep(0.01)
            channel.publish(_event(progress=5))
            channel.publish(_event(ProgressEventType.COMPLETE))

        events, _ = await asyncio.gather(_drain(subscription), publish_later())

        assert [e.type for e in events] == [
            ProgressEventType.FILE_PROGRESS,
            ProgressEventType.COMPLETE,
        ]

    @pytest.mark.asyncio
    async def test_next_with_timeout_returns_none(self):
        channel = ProgressChannel('s1')
        subscription = channel.subscribe()

        assert await subscription.next(timeout=0.01) is None

        channel.publish(_event(progress=1))
        event = await subscription.next(timeout=0.01)
        assert event.progress == 1

    @pytest.mark.asyncio
    async def test_closed_subscription_stops(self):
        channel = ProgressChannel('s1')
        subscription = channel.subscribe()
        channel.publish(_event(progress=1))

        subscription.close()

        assert await _drain(subscription) == []
        assert channel.subscriber_count == 0


class TestProgressEventBridge:
    def test_create_emitter_once_per_session(self):
        bridge = ProgressEventBridge()
        bridge.create_emitter('s1')

        with pytest.raises(ValueError):
            bridge.create_emitter('s1')

    def test_unknown_session_raises(self):
        bridge = ProgressEventBridge()

        with pytest.raises(SessionNotFoundError):
            bridge.subscribe('nope')

    def test_publish_to_unknown_session_is_ignored(self):
        bridge = ProgressEventBridge()

        bridge.publish('nope', _event(session_id='nope'))

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        bridge = ProgressEventBridge()
        bridge.create_emitter('s1')
        bridge.create_emitter('s2')
        sub_1 = bridge.subscribe('s1')
        sub_2 = bridge.subscribe('s2')

        bridge.publish('s1', _event(session_id='s1'))
        bridge.close('s1')
        bridge.close('s2')

        assert len(await _drain(sub_1)) == 1
        assert await _drain(sub_2) == []

    @pytest.mark.asyncio
    async def test_remove_closes_and_forgets(self):
        bridge = ProgressEventBridge()
        bridge.create_emitter('s1')
        subscription = bridge.subscribe('s1')

        bridge.remove('s1')

        assert await _drain(subscription) == []
        with pytest.raises(SessionNotFoundError):
            bridge.get_channel('s1')

    def test_buffer_settings_passed_to_channels(self):
        bridge = ProgressEventBridge(buffer_size=4, history_size=2)
        channel = bridge.create_emitter('s1')

        assert channel.buffer_size == 4
        assert channel.history.maxlen == 2


class TestFormatSse:
    def test_frame_contains_event_name_and_json_payload(self):
        frame = format_sse(
            _event(ProgressEventType.FILE_START, file_index=1, total_files=3, filename='a.csv')
        )

        lines = frame.split('\n')
        assert lines[0] == 'event: file_start'
        payload = json.loads(lines[1].removeprefix('data: '))
        assert payload['file_index'] == 1
        assert payload['filename'] == 'a.csv'
        assert 'stage' not in payload
        assert frame.endswith('\n\n')
