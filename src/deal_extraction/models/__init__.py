"""
Data models for the deal extraction pipeline.
"""

from .clarification import (
    BenchmarkRange,
    Clarification,
    ClarificationResolution,
    ClarificationStatus,
    ClarificationType,
    ResolutionOutcome,
)
from .document import (
    DocumentRef,
    FileType,
    NormalizedContent,
    SheetContent,
    file_type_for,
)
from .events import ProgressEvent, ProgressEventType, format_sse
from .extraction import (
    CensusPeriod,
    ClarificationRequest,
    ExtractionResult,
    FinancialPeriod,
    LineItem,
    PayerRate,
    SheetSummary,
    StructuredField,
    StructuringResult,
)
from .session import (
    AggregateCounts,
    AllFailedPolicy,
    ContinueOutcome,
    ContinueResult,
    DocumentOutcome,
    DocumentStatus,
    PausePolicy,
    PipelineOptions,
    SessionSnapshot,
    SessionStatus,
    StartResult,
)

__all__ = [
    # Clarifications
    'BenchmarkRange',
    'Clarification',
    'ClarificationResolution',
    'ClarificationStatus',
    'ClarificationType',
    'ResolutionOutcome',
    # Documents
    'DocumentRef',
    'FileType',
    'NormalizedContent',
    'SheetContent',
    'file_type_for',
    # Events
    'ProgressEvent',
    'ProgressEventType',
    'format_sse',
    # Extraction
    'CensusPeriod',
    'ClarificationRequest',
    'ExtractionResult',
    'FinancialPeriod',
    'LineItem',
    'PayerRate',
    'SheetSummary',
    'StructuredField',
    'StructuringResult',
    # Sessions
    'AggregateCounts',
    'AllFailedPolicy',
    'ContinueOutcome',
    'ContinueResult',
    'DocumentOutcome',
    'DocumentStatus',
    'PausePolicy',
    'PipelineOptions',
    'SessionSnapshot',
    'SessionStatus',
    'StartResult',
]
