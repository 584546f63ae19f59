"""
Clarification records raised during extraction.

A Clarification is a single ambiguous, low-confidence, conflicting or missing
field awaiting human resolution. Status only ever moves forward:
pending -> resolved or pending -> auto_resolved.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class ClarificationType(str, Enum):
    """Why a field needs a human."""

    LOW_CONFIDENCE = 'low_confidence'
    CONFLICT = 'conflict'
    MISSING = 'missing'
    OUT_OF_RANGE = 'out_of_range'


class ClarificationStatus(str, Enum):
    """Lifecycle of a clarification."""

    PENDING = 'pending'
    RESOLVED = 'resolved'
    AUTO_RESOLVED = 'auto_resolved'


class BenchmarkRange(BaseModel):
    """Industry range a value is expected to fall in."""

    min: float
    max: float
    median: float


class Clarification(BaseModel):
    """A field awaiting human resolution for one pipeline session."""

    # Identity
    id: str = Field(default_factory=lambda: str(uuid4()), description='Clarification id')
    session_id: str = Field(..., description='Owning pipeline session')
    deal_id: str | None = Field(default=None, description='Deal the session runs for')
    document_id: str = Field(..., description='Document the field was extracted from')

    # What needs clarification
    field_path: str = Field(..., description='Dotted path, e.g. "revenue.total"')
    field_label: str = Field(..., description='Human readable label')
    clarification_type: ClarificationType = Field(
        default=ClarificationType.LOW_CONFIDENCE, description='Reason category'
    )
    priority: int = Field(..., ge=1, le=10, description='Severity (1-10)')
    reason: str = Field(default='', description='Explanation shown to the reviewer')

    # Current state
    extracted_value: float | str | None = Field(default=None, description='Extracted value')
    extracted_confidence: float = Field(
        default=0.0, ge=0.0, le=1.0, description='Confidence in the extracted value'
    )
    suggested_values: list[float | str] = Field(
        default_factory=list, description='Candidate alternatives'
    )
    benchmark_range: BenchmarkRange | None = Field(
        default=None, description='Expected range for the field, if known'
    )

    # Resolution
    status: ClarificationStatus = Field(default=ClarificationStatus.PENDING)
    resolved_value: float | str | None = Field(default=None)
    resolved_by: str | None = Field(default=None)
    note: str | None = Field(default=None)
    resolved_at: datetime | None = Field(default=None)

    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=None))

    @property
    def is_pending(self) -> bool:
        return self.status == ClarificationStatus.PENDING

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for idempotent registration."""
        return (self.document_id, self.field_path)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return self.model_dump(mode='json')


class ResolutionOutcome(BaseModel):
    """Per-item result of a bulk resolution."""

    clarification_id: str
    success: bool
    error: str | None = None


class ClarificationResolution(BaseModel):
    """One item of a bulk resolution request."""

    clarification_id: str
    resolved_value: float | str | None = None
    resolved_by: str = 'user'
    note: str | None = None
