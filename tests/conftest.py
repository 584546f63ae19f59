"""
Pytest configuration and shared fixtures.

All tests run offline: the AI collaborator is replaced by ScriptedAnalyzer
and documents live in an InMemoryDocumentStore.

Key fixtures:
- document_store: InMemoryDocumentStore with one deal (DEAL_ID)
- analyzer: ScriptedAnalyzer returning per-filename results
- service: ExtractionPipelineService wired to the two above
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from deal_extraction.clients.document_store import InMemoryDocumentStore
from deal_extraction.models.events import ProgressEventType
from deal_extraction.models.extraction import (
    ClarificationRequest,
    FinancialPeriod,
    StructuringResult,
)
from deal_extraction.models.session import SessionStatus
from deal_extraction.pipeline.structurer import DocumentAnalyzer

DEAL_ID = 'deal_test_001'

PL_CSV = """Line Item,Jan 2024,Feb 2024
Medicaid Revenue,"$410,000","$415,500"
Medicare Revenue,"$120,000","$118,250"
Total Revenue,"$530,000","$533,750"
Nursing Salaries,"$210,000","$212,000"
Total Expenses,"$470,000","$468,900"
NOI,"$60,000","$64,850"
"""


class ScriptedAnalyzer(DocumentAnalyzer):
    """
    DocumentAnalyzer fake.

    `script` maps filename -> StructuringResult or an exception to raise.
    Unknown filenames get a plain single-period result.
    """

    def __init__(self, script: dict | None = None):
        self.script = script or {}
        self.calls: list[str] = []

    async def analyze(
        self,
        content,
        document_type_hint,
        *,
        filename=None,
        sheet_types=None,
        candidates=None,
    ) -> StructuringResult:
        self.calls.append(filename)
        outcome = self.script.get(filename)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return make_structuring_result()


def make_structuring_result(
    clarifications: list[ClarificationRequest] | None = None,
    confidence: float = 0.85,
) -> StructuringResult:
    return StructuringResult(
        financial_periods=[
            FinancialPeriod(
                facility_name='Sunrise SNF',
                total_revenue=530_000,
                total_expenses=470_000,
                noi=60_000,
                confidence=0.9,
                source_sheet='P&L',
            )
        ],
        clarifications=clarifications or [],
        confidence=confidence,
    )


def make_request(
    field_path: str = 'census.occupancyRate',
    priority: int | None = None,
    confidence: float = 0.4,
    clarification_type: str = 'low_confidence',
) -> ClarificationRequest:
    return ClarificationRequest(
        field_path=field_path,
        extracted_value=0.71,
        confidence=confidence,
        reason='Occupancy period is ambiguous',
        clarification_type=clarification_type,
        priority=priority,
    )


async def wait_for_status(
    service,
    session_id: str,
    statuses: tuple[SessionStatus, ...] = (
        SessionStatus.AWAITING_CLARIFICATIONS,
        SessionStatus.COMPLETE,
        SessionStatus.ERROR,
    ),
    timeout: float = 5.0,
):
    """Poll until the session reaches one of `statuses`; returns the snapshot."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        snapshot = service.get_session(session_id)
        if snapshot.status in statuses:
            return snapshot
        if loop.time() > deadline:
            raise AssertionError(f"Session stuck in {snapshot.status.value}")
        await asyncio.sleep(0.01)


def event_types(events) -> list[ProgressEventType]:
    return [e.type for e in events]


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    store.add_deal(DEAL_ID)
    return store


@pytest.fixture
def analyzer() -> ScriptedAnalyzer:
    return ScriptedAnalyzer()


@pytest.fixture
def service(document_store, analyzer):
    from deal_extraction.pipeline.service import ExtractionPipelineService

    return ExtractionPipelineService(document_store=document_store, analyzer=analyzer)
