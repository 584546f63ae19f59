"""
Postgres client for durable clarification records.

Uses SQLAlchemy 2.0 async engine + asyncpg with raw SQL. The in-memory
ClarificationManager is the source of truth while a session is live;
Postgres keeps a copy so pending clarifications can still be listed after
the session has been evicted from the registry.

Tables written:
- extraction_clarifications (UPSERT on id)
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..models.clarification import BenchmarkRange, Clarification, ClarificationStatus

logger = structlog.get_logger(__name__)


_SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS extraction_clarifications (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        deal_id TEXT,
        document_id TEXT NOT NULL,
        field_path TEXT NOT NULL,
        field_label TEXT NOT NULL,
        clarification_type TEXT NOT NULL,
        priority INTEGER NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        extracted_value JSONB,
        extracted_confidence DOUBLE PRECISION NOT NULL DEFAULT 0,
        suggested_values JSONB NOT NULL DEFAULT '[]'::jsonb,
        benchmark_range JSONB,
        status TEXT NOT NULL,
        resolved_value JSONB,
        resolved_by TEXT,
        note TEXT,
        resolved_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_extraction_clarifications_session_status
        ON extraction_clarifications (session_id, status)
    """,
)


def _sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand."""
    strip_params = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in strip_params}
    return urlunparse(parsed._replace(query=urlencode(filtered, doseq=True)))


def _normalize_driver(url: str) -> str:
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql://') and '+asyncpg' not in url:
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return url


def _to_jsonb(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _from_jsonb(value: Any) -> Any:
    # asyncpg returns JSONB as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value


def _clarification_params(clarification: Clarification) -> dict[str, Any]:
    benchmark = clarification.benchmark_range
    return {
        'id': clarification.id,
        'session_id': clarification.session_id,
        'deal_id': clarification.deal_id,
        'document_id': clarification.document_id,
        'field_path': clarification.field_path,
        'field_label': clarification.field_label,
        'clarification_type': clarification.clarification_type.value,
        'priority': clarification.priority,
        'reason': clarification.reason,
        'extracted_value': _to_jsonb(clarification.extracted_value),
        'extracted_confidence': clarification.extracted_confidence,
        'suggested_values': _to_jsonb(list(clarification.suggested_values)),
        'benchmark_range': _to_jsonb(benchmark.model_dump() if benchmark else None),
        'status': clarification.status.value,
        'resolved_value': _to_jsonb(clarification.resolved_value),
        'resolved_by': clarification.resolved_by,
        'note': clarification.note,
        'resolved_at': clarification.resolved_at,
        'created_at': clarification.created_at,
    }


def _row_to_clarification(row: Any) -> Clarification:
    data = dict(row._mapping)
    benchmark = _from_jsonb(data.get('benchmark_range'))
    return Clarification(
        id=data['id'],
        session_id=data['session_id'],
        deal_id=data.get('deal_id'),
        document_id=data['document_id'],
        field_path=data['field_path'],
        field_label=data['field_label'],
        clarification_type=data['clarification_type'],
        priority=data['priority'],
        reason=data.get('reason') or '',
        extracted_value=_from_jsonb(data.get('extracted_value')),
        extracted_confidence=data.get('extracted_confidence') or 0.0,
        suggested_values=_from_jsonb(data.get('suggested_values')) or [],
        benchmark_range=BenchmarkRange(**benchmark) if benchmark else None,
        status=data['status'],
        resolved_value=_from_jsonb(data.get('resolved_value')),
        resolved_by=data.get('resolved_by'),
        note=data.get('note'),
        resolved_at=data.get('resolved_at'),
        created_at=data.get('created_at') or datetime.now(),
    )


class PostgresClarificationStore:
    """
    Async Postgres store for clarification records.

    Callers treat every method as failure-isolated: a database error is
    logged and never changes the outcome of an in-memory operation.
    """

    def __init__(self, database_url: str | None = None):
        """
        Args:
            database_url: Postgres connection URL. 'postgres://' and
                          'postgresql://' prefixes are converted to asyncpg.
        """
        self._engine: AsyncEngine | None = None
        self._database_url = database_url

    async def connect(self, database_url: str | None = None) -> None:
        """Create the async engine. No-op if already connected."""
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        url = _normalize_driver(_sanitize_url(url))
        self._engine = create_async_engine(
            url,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,
            pool_timeout=30,
        )
        logger.info('postgres_client.connected')

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('postgres_client.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('PostgresClarificationStore not connected, call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except Exception:
            logger.exception('postgres_client.connectivity_check_failed')
            return False

    async def setup_schema(self) -> None:
        """Create the clarification table and index if missing."""
        async with self.engine.begin() as conn:
            for statement in _SCHEMA_SQL:
                await conn.execute(text(statement))
        logger.info('postgres_client.schema_ready')

    # =========================================================================
    # Clarifications
    # =========================================================================

    async def save_clarification(self, clarification: Clarification) -> None:
        """
        UPSERT a clarification on its id.

        Resolution columns are only overwritten while the stored row is
        still pending, so a late write of an older copy cannot reopen it.
        """
        sql = text("""
            INSERT INTO extraction_clarifications (
                id, session_id, deal_id, document_id, field_path, field_label,
                clarification_type, priority, reason, extracted_value,
                extracted_confidence, suggested_values, benchmark_range,
                status, resolved_value, resolved_by, note, resolved_at, created_at
            ) VALUES (
                :id, :session_id, :deal_id, :document_id, :field_path, :field_label,
                :clarification_type, :priority, :reason, CAST(:extracted_value AS jsonb),
                :extracted_confidence, CAST(:suggested_values AS jsonb),
                CAST(:benchmark_range AS jsonb),
                :status, CAST(:resolved_value AS jsonb), :resolved_by, :note,
                :resolved_at, :created_at
            )
            ON CONFLICT (id) DO UPDATE SET
                status = EXCLUDED.status,
                resolved_value = EXCLUDED.resolved_value,
                resolved_by = EXCLUDED.resolved_by,
                note = EXCLUDED.note,
                resolved_at = EXCLUDED.resolved_at
            WHERE extraction_clarifications.status = 'pending'
        """)

        async with self.engine.begin() as conn:
            await conn.execute(sql, _clarification_params(clarification))

        logger.debug(
            'postgres_client.save_clarification',
            clarification_id=clarification.id,
            status=clarification.status.value,
        )

    async def load_pending_clarifications(self, session_id: str) -> list[Clarification]:
        """Pending clarifications for a session, highest priority first."""
        sql = text("""
            SELECT * FROM extraction_clarifications
            WHERE session_id = :session_id AND status = :status
            ORDER BY priority DESC, created_at ASC
        """)

        async with self.engine.begin() as conn:
            result = await conn.execute(
                sql,
                {'session_id': session_id, 'status': ClarificationStatus.PENDING.value},
            )
            rows = result.fetchall()

        return [_row_to_clarification(row) for row in rows]
