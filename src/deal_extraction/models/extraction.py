"""
Extraction records and structuring-service output models.

Two groups of models live here:
- LLM structured output targets (StructuringResult and its parts), used as
  the response_format for the structuring stage.
- ExtractionResult, the immutable per-document record a pipeline session
  appends to its results once a document has been processed.
"""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class LineItem(BaseModel):
    """A single named amount (revenue line, payer days, PPD rate, ...)."""

    name: str = Field(..., description='Normalized field name, e.g. "medicaid"')
    value: float | None = Field(default=None, description='Numeric value if present')


class FinancialPeriod(BaseModel):
    """One P&L period for one facility."""

    facility_name: str = Field(..., description='Facility the period belongs to')
    period_start: date | None = Field(default=None, description='First day of the period')
    period_end: date | None = Field(default=None, description='Last day of the period')
    period_type: str = Field(
        default='monthly', description='"monthly", "quarterly", "annual" or "ttm"'
    )
    total_revenue: float | None = Field(default=None, description='Total revenue')
    total_expenses: float | None = Field(default=None, description='Total operating expenses')
    ebitdar: float | None = Field(default=None, description='EBITDAR if stated or derivable')
    noi: float | None = Field(default=None, description='Net operating income')
    line_items: list[LineItem] = Field(
        default_factory=list, description='Revenue and expense lines'
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description='Record confidence (0.0-1.0)')
    source_sheet: str | None = Field(default=None, description='Sheet the record came from')


class CensusPeriod(BaseModel):
    """Patient days and occupancy for one facility period."""

    facility_name: str = Field(..., description='Facility the period belongs to')
    period_start: date | None = Field(default=None, description='First day of the period')
    period_end: date | None = Field(default=None, description='Last day of the period')
    patient_days: list[LineItem] = Field(
        default_factory=list, description='Patient days by payer'
    )
    total_patient_days: float | None = Field(default=None, description='Total patient days')
    avg_daily_census: float | None = Field(default=None, description='Average daily census')
    total_beds: int | None = Field(default=None, description='Operational beds')
    occupancy_rate: float | None = Field(
        default=None, description='Occupancy as a fraction (0.0-1.0)'
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description='Record confidence (0.0-1.0)')
    source_sheet: str | None = Field(default=None, description='Sheet the record came from')


class PayerRate(BaseModel):
    """Per-patient-day rates by payer effective from a date."""

    facility_name: str = Field(..., description='Facility the rates apply to')
    effective_date: date | None = Field(default=None, description='Rate effective date')
    rates: list[LineItem] = Field(default_factory=list, description='PPD rate by payer')
    ancillary_ppd: float | None = Field(default=None, description='Ancillary revenue PPD')
    therapy_ppd: float | None = Field(default=None, description='Therapy revenue PPD')
    confidence: float = Field(..., ge=0.0, le=1.0, description='Record confidence (0.0-1.0)')
    source_sheet: str | None = Field(default=None, description='Sheet the record came from')


class StructuredField(BaseModel):
    """A scalar field value with its own confidence."""

    field_path: str = Field(..., description='Dotted path, e.g. "revenue.total"')
    value: float | str | None = Field(default=None, description='Extracted value')
    confidence: float = Field(..., ge=0.0, le=1.0, description='Field confidence (0.0-1.0)')


class ClarificationRequest(BaseModel):
    """
    A field the structuring service could not settle on its own.

    The pipeline turns each request into a Clarification record; priority
    is computed by the clarification manager when not supplied here.
    """

    field_path: str = Field(..., description='Dotted path of the uncertain field')
    field_label: str | None = Field(default=None, description='Human readable label')
    extracted_value: float | str | None = Field(
        default=None, description='Value the service extracted, if any'
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description='Confidence in the value')
    reason: str = Field(..., description='Why this field needs a human')
    clarification_type: str = Field(
        default='low_confidence',
        description='"low_confidence", "conflict", "missing" or "out_of_range"',
    )
    suggested_values: list[float | str] = Field(
        default_factory=list, description='Candidate alternatives'
    )
    priority: int | None = Field(
        default=None, ge=1, le=10, description='Optional explicit priority (1-10)'
    )


class StructuringResult(BaseModel):
    """Structured output returned by the AI structuring service."""

    financial_periods: list[FinancialPeriod] = Field(default_factory=list)
    census_periods: list[CensusPeriod] = Field(default_factory=list)
    payer_rates: list[PayerRate] = Field(default_factory=list)
    fields: list[StructuredField] = Field(
        default_factory=list, description='Scalar fields with per-field confidence'
    )
    clarifications: list[ClarificationRequest] = Field(
        default_factory=list, description='Fields needing clarification (may be empty)'
    )
    confidence: float = Field(
        ..., ge=0.0, le=1.0, description='Overall document confidence (0.0-1.0)'
    )
    notes: str | None = Field(default=None, description='Optional extraction notes')


class SheetSummary(BaseModel):
    """What the classifier learned about one sheet."""

    name: str
    sheet_type: str = 'unknown'
    row_count: int = 0
    column_count: int = 0
    detected_hints: list[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    """
    Per-document extraction output.

    Owned by the session that produced it and read-only once recorded.
    """

    model_config = ConfigDict(frozen=True)

    document_id: str
    filename: str
    file_type: str
    financial_data: list[FinancialPeriod] = Field(default_factory=list)
    census_data: list[CensusPeriod] = Field(default_factory=list)
    rate_data: list[PayerRate] = Field(default_factory=list)
    sheets: list[SheetSummary] = Field(default_factory=list)
    fields: list[StructuredField] = Field(default_factory=list)
    clarifications: list[ClarificationRequest] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warnings: list[str] = Field(default_factory=list)
    stages_completed: list[str] = Field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def record_count(self) -> int:
        return len(self.financial_data) + len(self.census_data) + len(self.rate_data)
