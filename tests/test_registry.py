"""
Tests for the session registry.

Tests cover:
- Create / get / contains / list by deal
- Removal dropping the progress channel and clarification records
- TTL eviction of terminal sessions only
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import make_request
from deal_extraction.errors import SessionNotFoundError
from deal_extraction.models.session import SessionStatus
from deal_extraction.pipeline.clarifications import ClarificationManager
from deal_extraction.pipeline.events import ProgressEventBridge
from deal_extraction.pipeline.registry import SessionRegistry
from deal_extraction.pipeline.session import PipelineSession


@pytest.fixture
def events() -> ProgressEventBridge:
    return ProgressEventBridge()


@pytest.fixture
def clarifications() -> ClarificationManager:
    return ClarificationManager()


@pytest.fixture
def registry(events, clarifications) -> SessionRegistry:
    return SessionRegistry(events, clarifications, ttl_seconds=60)


def _make_session(events, clarifications, session_id, deal_id='deal-1', status=None):
    clarifications.open_session(session_id, deal_id=deal_id)
    session = PipelineSession(
        session_id=session_id,
        deal_id=deal_id,
        document_ids=['doc-1'],
        extractor=MagicMock(),
        clarifications=clarifications,
        channel=events.create_emitter(session_id),
    )
    if status is not None:
        session.status = status
    return session


class TestRegistry:
    def test_create_and_get(self, registry, events, clarifications):
        session = _make_session(events, clarifications, 's1')
        registry.create(session)

        assert registry.get('s1') is session
        assert 's1' in registry
        assert len(registry) == 1

    def test_duplicate_id_rejected(self, registry, events, clarifications):
        session = _make_session(events, clarifications, 's1')
        registry.create(session)

        with pytest.raises(ValueError):
            registry.create(session)

    def test_unknown_id_raises(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.get('nope')

    def test_list_sessions_by_deal(self, registry, events, clarifications):
        registry.create(_make_session(events, clarifications, 's1', deal_id='deal-1'))
        registry.create(_make_session(events, clarifications, 's2', deal_id='deal-2'))

        assert [s.session_id for s in registry.list_sessions('deal-2')] == ['s2']
        assert len(registry.list_sessions()) == 2

    def test_remove_drops_channel_and_clarifications(self, registry, events, clarifications):
        registry.create(_make_session(events, clarifications, 's1'))
        clarifications.register('s1', 'doc-1', [make_request()])

        assert registry.remove('s1') is True

        assert 's1' not in registry
        assert clarifications.get_all('s1') == []
        with pytest.raises(SessionNotFoundError):
            events.get_channel('s1')
        assert registry.remove('s1') is False


class TestEviction:
    def test_terminal_sessions_past_ttl_are_evicted(self, registry, events, clarifications):
        old = _make_session(events, clarifications, 'old', status=SessionStatus.COMPLETE)
        failed = _make_session(events, clarifications, 'failed', status=SessionStatus.ERROR)
        fresh = _make_session(events, clarifications, 'fresh', status=SessionStatus.COMPLETE)
        for session in (old, failed, fresh):
            registry.create(session)

        now = datetime.now()
        old.updated_at = now - timedelta(seconds=120)
        failed.updated_at = now - timedelta(seconds=61)
        fresh.updated_at = now - timedelta(seconds=5)

        evicted = registry.evict_expired(now=now)

        assert sorted(evicted) == ['failed', 'old']
        assert 'fresh' in registry
        assert len(registry) == 1

    def test_live_sessions_are_never_evicted(self, registry, events, clarifications):
        running = _make_session(events, clarifications, 'running')
        paused = _make_session(
            events, clarifications, 'paused', status=SessionStatus.AWAITING_CLARIFICATIONS
        )
        registry.create(running)
        registry.create(paused)

        evicted = registry.evict_expired(now=datetime.now() + timedelta(days=1))

        assert evicted == []
        assert len(registry) == 2
