"""
Clarification / context manager.

Single source of truth for clarification records across all sessions.
All operations are synchronous and lock-protected, so a resolution is
visible to can_proceed() as soon as resolve() returns.

Provides:
- Idempotent registration keyed by (document_id, field_path)
- Priority computation and benchmark ranges for known fields
- Single and bulk resolution
- Blocking check against the session's priority threshold
"""

import math
import re
import threading
from datetime import datetime
from typing import Any, Iterable

import structlog

from ..errors import (
    ClarificationAlreadyResolvedError,
    ClarificationError,
    ClarificationNotFoundError,
    SessionNotFoundError,
)
from ..models.clarification import (
    BenchmarkRange,
    Clarification,
    ClarificationResolution,
    ClarificationStatus,
    ClarificationType,
    ResolutionOutcome,
)
from ..models.extraction import ClarificationRequest, StructuredField

logger = structlog.get_logger(__name__)

DEFAULT_BLOCKING_THRESHOLD = 8
DEFAULT_AUTO_RESOLVE_CONFIDENCE = 0.95

# Fields whose clarifications get a priority bump
CRITICAL_FIELDS = frozenset({
    'revenue.total',
    'expenses.total',
    'metrics.noi',
    'metrics.ebitdar',
    'census.occupancyRate',
    'facilityInfo.licensedBeds',
})

# Skilled nursing industry ranges (min, max, median)
BENCHMARKS: dict[str, BenchmarkRange] = {
    'totalRevenue': BenchmarkRange(min=3_000_000, max=50_000_000, median=12_000_000),
    'occupancyRate': BenchmarkRange(min=0.60, max=0.98, median=0.82),
    'laborCostPercent': BenchmarkRange(min=0.45, max=0.70, median=0.55),
    'agencyLaborPercent': BenchmarkRange(min=0.0, max=0.30, median=0.08),
    'noiMargin': BenchmarkRange(min=0.05, max=0.25, median=0.12),
    'ebitdarMargin': BenchmarkRange(min=0.08, max=0.30, median=0.15),
    'medicaidPercent': BenchmarkRange(min=0.40, max=0.85, median=0.60),
    'medicarePercent': BenchmarkRange(min=0.05, max=0.35, median=0.15),
    'managementFeePercent': BenchmarkRange(min=0.03, max=0.08, median=0.05),
    'hppd': BenchmarkRange(min=3.0, max=5.5, median=4.0),
    'licensedBeds': BenchmarkRange(min=30, max=300, median=120),
    'revenuePerBed': BenchmarkRange(min=60_000, max=150_000, median=95_000),
}

# Field paths whose last segment does not name the benchmark
_FIELD_BENCHMARK_KEYS = {
    'revenue.total': 'totalRevenue',
}

_TYPE_BONUS = {
    ClarificationType.MISSING: 3,
    ClarificationType.CONFLICT: 2,
    ClarificationType.OUT_OF_RANGE: 1,
}

_CAMEL_RE = re.compile(r'(?<=[a-z0-9])(?=[A-Z])')


# =============================================================================
# Field helpers
# =============================================================================


def benchmark_for(field_path: str) -> BenchmarkRange | None:
    """Benchmark range for a dotted field path, if one is known."""
    key = _FIELD_BENCHMARK_KEYS.get(field_path, field_path.rsplit('.', 1)[-1])
    return BENCHMARKS.get(key)


def field_label_for(field_path: str) -> str:
    """'census.occupancyRate' -> 'Census Occupancy Rate'."""
    words = []
    for segment in field_path.split('.'):
        words.extend(_CAMEL_RE.sub(' ', segment).split())
    return ' '.join(w[:1].upper() + w[1:] for w in words) or field_path


def compute_priority(
    field_path: str,
    clarification_type: ClarificationType,
    confidence: float,
) -> int:
    """
    Priority 1-10 for a clarification.

    Base 5, +3 for critical fields, then +3 missing, +2 conflict,
    +1 out of range, or one point per 25 confidence points below 100
    for low confidence.
    """
    priority = 5
    if field_path in CRITICAL_FIELDS:
        priority += 3

    if clarification_type == ClarificationType.LOW_CONFIDENCE:
        priority += math.floor((100 - confidence * 100) / 25)
    else:
        priority += _TYPE_BONUS.get(clarification_type, 0)

    return max(1, min(10, priority))


def check_benchmarks(
    fields: Iterable[StructuredField],
    existing: Iterable[ClarificationRequest] = (),
) -> list[ClarificationRequest]:
    """
    Out-of-range requests for numeric fields outside their benchmark.

    Fields that already have a request are skipped.
    """
    flagged = {r.field_path for r in existing}
    requests = []
    for item in fields:
        if item.field_path in flagged or isinstance(item.value, str) or item.value is None:
            continue
        benchmark = benchmark_for(item.field_path)
        if benchmark is None:
            continue
        if benchmark.min <= item.value <= benchmark.max:
            continue
        requests.append(
            ClarificationRequest(
                field_path=item.field_path,
                extracted_value=item.value,
                confidence=item.confidence,
                reason=(
                    f"Value {item.value:,.2f} is outside the typical range "
                    f"{benchmark.min:,.2f} - {benchmark.max:,.2f}"
                ),
                clarification_type=ClarificationType.OUT_OF_RANGE.value,
                suggested_values=[benchmark.median],
            )
        )
        flagged.add(item.field_path)
    return requests


def _clarification_type(value: str) -> ClarificationType:
    try:
        return ClarificationType(value)
    except ValueError:
        return ClarificationType.LOW_CONFIDENCE


# =============================================================================
# Manager
# =============================================================================


class _SessionClarifications:
    def __init__(self, deal_id: str | None, blocking_threshold: int):
        self.deal_id = deal_id
        self.blocking_threshold = blocking_threshold
        self.by_id: dict[str, Clarification] = {}
        self.by_key: dict[tuple[str, str], str] = {}
        self.order: list[str] = []


class ClarificationManager:
    """
    Registry of clarification records for every live session.

    Args:
        blocking_threshold: Default priority at or above which a pending
                            clarification blocks completion
        auto_resolve_confidence: Requests at or above this confidence are
                                 stored auto_resolved
    """

    def __init__(
        self,
        blocking_threshold: int = DEFAULT_BLOCKING_THRESHOLD,
        auto_resolve_confidence: float = DEFAULT_AUTO_RESOLVE_CONFIDENCE,
    ):
        self.blocking_threshold = blocking_threshold
        self.auto_resolve_confidence = auto_resolve_confidence
        self._sessions: dict[str, _SessionClarifications] = {}
        self._lock = threading.Lock()

    def open_session(
        self,
        session_id: str,
        deal_id: str | None = None,
        blocking_threshold: int | None = None,
    ) -> None:
        """Start tracking a session. No-op if already open."""
        with self._lock:
            self._open(session_id, deal_id, blocking_threshold)

    def _open(
        self,
        session_id: str,
        deal_id: str | None,
        blocking_threshold: int | None = None,
    ) -> _SessionClarifications:
        state = self._sessions.get(session_id)
        if state is None:
            if blocking_threshold is None:
                blocking_threshold = self.blocking_threshold
            state = _SessionClarifications(deal_id, blocking_threshold)
            self._sessions[session_id] = state
        return state

    def _state(self, session_id: str) -> _SessionClarifications:
        state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(
                f"No clarifications tracked for session {session_id}",
                context={'session_id': session_id},
            )
        return state

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def remove_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        session_id: str,
        document_id: str,
        requests: Iterable[ClarificationRequest],
        deal_id: str | None = None,
    ) -> list[Clarification]:
        """
        Add or update clarifications for one document.

        Updating a pending record refreshes its value, confidence, reason and
        suggestions. Records that already left pending are never reopened.

        Returns:
            Copies of the newly created records
        """
        created: list[Clarification] = []
        with self._lock:
            state = self._open(session_id, deal_id)
            for request in requests:
                key = (document_id, request.field_path)
                existing_id = state.by_key.get(key)
                if existing_id is not None:
                    self._refresh(state.by_id[existing_id], request)
                    continue

                clarification = self._build(session_id, state, document_id, request)
                state.by_id[clarification.id] = clarification
                state.by_key[key] = clarification.id
                state.order.append(clarification.id)
                created.append(clarification.model_copy(deep=True))

        if created:
            logger.info(
                'clarifications.registered',
                session_id=session_id,
                document_id=document_id,
                created=len(created),
                auto_resolved=sum(1 for c in created if not c.is_pending),
            )
        return created

    def _build(
        self,
        session_id: str,
        state: _SessionClarifications,
        document_id: str,
        request: ClarificationRequest,
    ) -> Clarification:
        clarification_type = _clarification_type(request.clarification_type)
        priority = request.priority or compute_priority(
            request.field_path, clarification_type, request.confidence
        )
        clarification = Clarification(
            session_id=session_id,
            deal_id=state.deal_id,
            document_id=document_id,
            field_path=request.field_path,
            field_label=request.field_label or field_label_for(request.field_path),
            clarification_type=clarification_type,
            priority=priority,
            reason=request.reason,
            extracted_value=request.extracted_value,
            extracted_confidence=request.confidence,
            suggested_values=list(request.suggested_values),
            benchmark_range=benchmark_for(request.field_path),
        )
        if request.confidence >= self.auto_resolve_confidence:
            self._auto_resolve(clarification)
        return clarification

    def _refresh(self, clarification: Clarification, request: ClarificationRequest) -> None:
        if not clarification.is_pending:
            return
        clarification.extracted_value = request.extracted_value
        clarification.extracted_confidence = request.confidence
        clarification.suggested_values = list(request.suggested_values)
        if request.reason:
            clarification.reason = request.reason
        if request.confidence >= self.auto_resolve_confidence:
            self._auto_resolve(clarification)

    def _auto_resolve(self, clarification: Clarification) -> None:
        clarification.status = ClarificationStatus.AUTO_RESOLVED
        clarification.resolved_value = clarification.extracted_value
        clarification.resolved_by = 'system'
        clarification.resolved_at = datetime.now()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, session_id: str, clarification_id: str) -> Clarification:
        with self._lock:
            state = self._state(session_id)
            clarification = state.by_id.get(clarification_id)
            if clarification is None:
                raise ClarificationNotFoundError(
                    f"Clarification {clarification_id} not found",
                    context={'session_id': session_id, 'clarification_id': clarification_id},
                )
            return clarification.model_copy(deep=True)

    def get_all(self, session_id: str) -> list[Clarification]:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return []
            return [state.by_id[cid].model_copy(deep=True) for cid in state.order]

    def get_pending_clarifications(self, session_id: str) -> list[Clarification]:
        """Pending records, highest priority first, then in creation order."""
        with self._lock:
            return [c.model_copy(deep=True) for c in self._pending(session_id)]

    def _pending(self, session_id: str) -> list[Clarification]:
        state = self._sessions.get(session_id)
        if state is None:
            return []
        pending = [state.by_id[cid] for cid in state.order if state.by_id[cid].is_pending]
        # sorted() is stable, so creation order breaks priority ties
        return sorted(pending, key=lambda c: -c.priority)

    def get_blocking(self, session_id: str) -> list[Clarification]:
        with self._lock:
            threshold = self._threshold(session_id)
            return [
                c.model_copy(deep=True)
                for c in self._pending(session_id)
                if c.priority >= threshold
            ]

    def _threshold(self, session_id: str) -> int:
        state = self._sessions.get(session_id)
        return state.blocking_threshold if state else self.blocking_threshold

    def blocking_threshold_for(self, session_id: str) -> int:
        with self._lock:
            return self._threshold(session_id)

    def can_proceed(self, session_id: str) -> bool:
        """True iff no pending clarification is at or above the blocking threshold."""
        with self._lock:
            threshold = self._threshold(session_id)
            return all(c.priority < threshold for c in self._pending(session_id))

    def summary(self, session_id: str) -> dict[str, Any]:
        with self._lock:
            state = self._sessions.get(session_id)
            records = [state.by_id[cid] for cid in state.order] if state else []
            threshold = self._threshold(session_id)
            pending = [c for c in records if c.is_pending]
            return {
                'total': len(records),
                'pending': len(pending),
                'blocking': sum(1 for c in pending if c.priority >= threshold),
                'resolved': sum(1 for c in records if c.status == ClarificationStatus.RESOLVED),
                'auto_resolved': sum(
                    1 for c in records if c.status == ClarificationStatus.AUTO_RESOLVED
                ),
                'blocking_threshold': threshold,
            }

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(
        self,
        session_id: str,
        clarification_id: str,
        resolved_value: float | str | None,
        resolved_by: str = 'user',
        note: str | None = None,
    ) -> Clarification:
        """
        Move a pending clarification to resolved.

        Raises:
            SessionNotFoundError: Session is not tracked
            ClarificationNotFoundError: Unknown clarification id
            ClarificationAlreadyResolvedError: Record already left pending
        """
        with self._lock:
            state = self._state(session_id)
            clarification = state.by_id.get(clarification_id)
            if clarification is None:
                raise ClarificationNotFoundError(
                    f"Clarification {clarification_id} not found",
                    context={'session_id': session_id, 'clarification_id': clarification_id},
                )
            if not clarification.is_pending:
                raise ClarificationAlreadyResolvedError(
                    f"Clarification {clarification_id} is already {clarification.status.value}",
                    context={
                        'session_id': session_id,
                        'clarification_id': clarification_id,
                        'status': clarification.status.value,
                    },
                )

            clarification.status = ClarificationStatus.RESOLVED
            clarification.resolved_value = resolved_value
            clarification.resolved_by = resolved_by
            clarification.note = note
            clarification.resolved_at = datetime.now()
            resolved = clarification.model_copy(deep=True)

        logger.info(
            'clarifications.resolved',
            session_id=session_id,
            clarification_id=clarification_id,
            field_path=resolved.field_path,
            resolved_by=resolved_by,
        )
        return resolved

    def resolve_bulk(
        self,
        session_id: str,
        resolutions: Iterable[ClarificationResolution],
    ) -> list[ResolutionOutcome]:
        """Apply each resolution independently; never raises per item."""
        outcomes = []
        for resolution in resolutions:
            try:
                self.resolve(
                    session_id,
                    resolution.clarification_id,
                    resolution.resolved_value,
                    resolved_by=resolution.resolved_by,
                    note=resolution.note,
                )
                outcomes.append(
                    ResolutionOutcome(clarification_id=resolution.clarification_id, success=True)
                )
            except (ClarificationError, SessionNotFoundError) as e:
                outcomes.append(
                    ResolutionOutcome(
                        clarification_id=resolution.clarification_id,
                        success=False,
                        error=e.message,
                    )
                )
        return outcomes


async def persist_clarifications(store, records: Iterable[Clarification]) -> None:
    """
    Save records to the optional clarification store.

    Failures are logged and swallowed: the in-memory manager stays
    authoritative and persistence never blocks the pipeline.
    """
    if store is None:
        return
    for record in records:
        try:
            await store.save_clarification(record)
        except Exception:
            logger.exception(
                'clarifications.persist_failed',
                session_id=record.session_id,
                clarification_id=record.id,
            )
