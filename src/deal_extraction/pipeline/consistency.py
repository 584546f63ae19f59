"""
Cross-document consistency checks.

When two documents of the same session report the same facility period,
their totals should agree. Records are grouped by facility name and exact
period dates; any group with two or more positive values for a tracked
field is compared against its average:

    variance = max(|value - average|) / average

- variance <= AGREEMENT_TOLERANCE: the documents agree, nothing is raised
- otherwise a conflict request is raised with confidence 1 - variance, so
  the clarification manager auto-resolves conflicts inside its
  auto-resolve confidence (0.95 by default, i.e. within 5%) to the
  highest-confidence value and leaves the rest pending

Conflicts are registered under the first document (in queue order) that
contributed to the group, so later documents refresh the same record
instead of raising a new one.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

import structlog

from ..models.clarification import ClarificationType
from ..models.extraction import ClarificationRequest
from ..models.session import DocumentOutcome
from .clarifications import CRITICAL_FIELDS

logger = structlog.get_logger(__name__)

AGREEMENT_TOLERANCE = 0.03
HIGH_SEVERITY_VARIANCE = 0.15

# (record attribute, field path) pairs compared across documents
FINANCIAL_FIELDS = (
    ('total_revenue', 'revenue.total'),
    ('total_expenses', 'expenses.total'),
    ('noi', 'metrics.noi'),
)
CENSUS_FIELDS = (
    ('occupancy_rate', 'census.occupancyRate'),
    ('total_patient_days', 'census.totalPatientDays'),
)

_FIELD_LABELS = {
    'revenue.total': 'Total Revenue',
    'expenses.total': 'Total Expenses',
    'metrics.noi': 'Net Operating Income',
    'census.occupancyRate': 'Occupancy Rate',
    'census.totalPatientDays': 'Total Patient Days',
}


@dataclass
class SourceValue:
    """One document's value for a facility period field."""

    document_id: str
    filename: str
    value: float
    confidence: float


@dataclass
class PeriodGroup:
    facility_name: str
    period_start: date
    period_end: date
    records: list[tuple[str, str, object]] = field(default_factory=list)

    @property
    def document_ids(self) -> list[str]:
        return list(dict.fromkeys(document_id for document_id, _, _ in self.records))

    @property
    def period_label(self) -> str:
        return f"{self.period_start.isoformat()} to {self.period_end.isoformat()}"


@dataclass
class CrossDocumentConflict:
    """A disagreement between documents, ready for registration."""

    anchor_document_id: str
    request: ClarificationRequest
    variance: float
    values: list[SourceValue]


def _group_key(facility_name: str, period_start: date, period_end: date) -> tuple:
    return (' '.join(facility_name.lower().split()), period_start, period_end)


def _group(outcomes: Iterable[DocumentOutcome], attr: str) -> dict[tuple, PeriodGroup]:
    groups: dict[tuple, PeriodGroup] = {}
    for outcome in outcomes:
        if not outcome.succeeded or outcome.result is None:
            continue
        filename = outcome.filename or outcome.document_id
        for record in getattr(outcome.result, attr):
            if record.period_start is None or record.period_end is None:
                continue
            key = _group_key(record.facility_name, record.period_start, record.period_end)
            group = groups.get(key)
            if group is None:
                group = PeriodGroup(
                    facility_name=record.facility_name.strip(),
                    period_start=record.period_start,
                    period_end=record.period_end,
                )
                groups[key] = group
            group.records.append((outcome.document_id, filename, record))
    return groups


def measure_variance(values: list[SourceValue]) -> float:
    """Largest deviation from the average, as a fraction of the average."""
    if len(values) < 2:
        return 0.0
    average = sum(v.value for v in values) / len(values)
    if average <= 0:
        return 0.0
    return max(abs(v.value - average) for v in values) / average


def conflict_priority(field_path: str, variance: float) -> int:
    """8 above 15% variance, 6 otherwise; +2 for critical fields, capped at 10."""
    priority = 8 if variance > HIGH_SEVERITY_VARIANCE else 6
    if field_path in CRITICAL_FIELDS:
        priority += 2
    return min(10, priority)


def _suggested_values(values: list[SourceValue]) -> list[float]:
    suggestions: list[float] = []
    for v in sorted(values, key=lambda v: -v.confidence):
        if v.value not in suggestions:
            suggestions.append(v.value)
    average = round(sum(v.value for v in values) / len(values))
    if average not in suggestions:
        suggestions.append(average)
    return suggestions


def _format_value(value: float) -> str:
    return f"{value:.2%}" if value < 1 else f"{value:,.2f}"


def _build_conflict(
    group: PeriodGroup,
    field_path: str,
    values: list[SourceValue],
    variance: float,
) -> CrossDocumentConflict:
    best = max(values, key=lambda v: v.confidence)
    sources = ', '.join(f"{v.filename} {_format_value(v.value)}" for v in values)
    label = _FIELD_LABELS.get(field_path, field_path)
    request = ClarificationRequest(
        field_path=(
            f"{field_path}[{group.facility_name} "
            f"{group.period_start.isoformat()}/{group.period_end.isoformat()}]"
        ),
        field_label=f"{label} ({group.facility_name}, {group.period_label})",
        extracted_value=best.value,
        confidence=max(0.0, 1.0 - variance),
        reason=(
            f"Documents disagree on {label.lower()} for {group.facility_name} "
            f"{group.period_label} ({variance:.1%} variance): {sources}"
        ),
        clarification_type=ClarificationType.CONFLICT.value,
        suggested_values=_suggested_values(values),
        priority=conflict_priority(field_path, variance),
    )
    return CrossDocumentConflict(
        anchor_document_id=group.document_ids[0],
        request=request,
        variance=variance,
        values=values,
    )


def find_conflicts(
    outcomes: Iterable[DocumentOutcome],
    document_id: str,
) -> list[CrossDocumentConflict]:
    """
    Conflicts between `document_id` and the other processed documents.

    Only facility periods that `document_id` contributes to are checked,
    so each conflict is raised when its second source arrives.

    Args:
        outcomes: Session outcomes in queue order, including `document_id`
        document_id: The document that was just processed

    Returns:
        One conflict per disagreeing (facility period, field)
    """
    outcomes = list(outcomes)
    conflicts: list[CrossDocumentConflict] = []
    for attr, fields in (('financial_data', FINANCIAL_FIELDS), ('census_data', CENSUS_FIELDS)):
        for group in _group(outcomes, attr).values():
            document_ids = group.document_ids
            if document_id not in document_ids or len(document_ids) < 2:
                continue
            for record_attr, field_path in fields:
                values = [
                    SourceValue(
                        document_id=doc_id,
                        filename=filename,
                        value=float(getattr(record, record_attr)),
                        confidence=record.confidence,
                    )
                    for doc_id, filename, record in group.records
                    if (getattr(record, record_attr) or 0) > 0
                ]
                if len({v.document_id for v in values}) < 2:
                    continue
                variance = measure_variance(values)
                if variance <= AGREEMENT_TOLERANCE:
                    continue
                conflicts.append(_build_conflict(group, field_path, values, variance))

    if conflicts:
        logger.info(
            'consistency.conflicts_found',
            document_id=document_id,
            conflicts=len(conflicts),
            fields=[c.request.field_path for c in conflicts],
        )
    return conflicts
