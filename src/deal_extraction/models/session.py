"""
Pipeline session state models.

SessionSnapshot is the read-only view of a PipelineSession handed to
callers; the live session object lives in deal_extraction.pipeline.session.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .extraction import ExtractionResult


class SessionStatus(str, Enum):
    """Session state machine states."""

    RUNNING = 'running'
    AWAITING_CLARIFICATIONS = 'awaiting_clarifications'
    COMPLETE = 'complete'
    ERROR = 'error'

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.ERROR)


class PausePolicy(str, Enum):
    """When a session checks for blocking clarifications."""

    END_OF_BATCH = 'end_of_batch'
    EAGER = 'eager'


class AllFailedPolicy(str, Enum):
    """Final status when every document in the batch failed."""

    COMPLETE = 'complete'
    ERROR = 'error'


class DocumentStatus(str, Enum):
    SUCCESS = 'success'
    ERROR = 'error'


class DocumentOutcome(BaseModel):
    """What happened to one queued document."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    filename: str | None = None
    status: DocumentStatus
    result: ExtractionResult | None = None
    error: str | None = None
    processing_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == DocumentStatus.SUCCESS


class AggregateCounts(BaseModel):
    """Totals derived from a session's results and clarifications."""

    documents_total: int = 0
    documents_processed: int = 0
    documents_succeeded: int = 0
    documents_failed: int = 0
    financial_periods: int = 0
    census_periods: int = 0
    payer_rates: int = 0
    sheets: int = 0
    clarifications_pending: int = 0
    clarifications_blocking: int = 0


class PipelineOptions(BaseModel):
    """Per-session overrides supplied at start."""

    pause_policy: PausePolicy | None = None
    all_failed_policy: AllFailedPolicy | None = None
    blocking_threshold: int | None = Field(default=None, ge=1, le=10)


class SessionSnapshot(BaseModel):
    """Immutable copy of a session's state at one moment."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    deal_id: str
    status: SessionStatus
    document_queue: tuple[str, ...]
    cursor: int
    results: dict[str, DocumentOutcome] = Field(default_factory=dict)
    aggregate_counts: AggregateCounts = Field(default_factory=AggregateCounts)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def remaining_documents(self) -> tuple[str, ...]:
        return self.document_queue[self.cursor:]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return self.model_dump(mode='json')


class ContinueOutcome(str, Enum):
    """Result of asking a session to continue."""

    RESUMED = 'resumed'
    COMPLETED = 'completed'
    BLOCKED = 'blocked'
    ALREADY_RUNNING = 'already_running'
    NOTHING_TO_RESUME = 'nothing_to_resume'


class ContinueResult(BaseModel):
    """continue_pipeline response: the snapshot plus what happened."""

    outcome: ContinueOutcome
    snapshot: SessionSnapshot
    reason: str | None = None
    blocking_clarification_ids: list[str] = Field(default_factory=list)

    @property
    def continued(self) -> bool:
        return self.outcome in (ContinueOutcome.RESUMED, ContinueOutcome.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'continued': self.continued,
            'reason': self.reason,
            'blocking_clarification_ids': self.blocking_clarification_ids,
            'session': self.snapshot.to_dict(),
        }


class StartResult(BaseModel):
    """start_pipeline response."""

    session_id: str
    deal_id: str
    total_documents: int
