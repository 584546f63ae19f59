"""
Tests for the per-document extractor.

Tests cover:
- Stage order and progress reports
- Structured output copied into ExtractionResult
- A failing stage short-circuits with a warning and halved confidence
- DocumentNotFoundError propagating to the caller
- Empty documents skipping the structuring stage
- Benchmark checks adding out-of-range clarifications
- Baseline confidence per file type
"""

import pytest

from conftest import PL_CSV, ScriptedAnalyzer, make_request, make_structuring_result
from deal_extraction.clients.document_store import InMemoryDocumentStore
from deal_extraction.errors import DocumentNotFoundError
from deal_extraction.models.document import DocumentRef, FileType
from deal_extraction.models.extraction import StructuredField
from deal_extraction.pipeline.extractor import DocumentExtractor, baseline_confidence
from deal_extraction.pipeline.values import CandidateValue

DEAL_ID = 'deal-1'


def _make_extractor(documents: dict[str, tuple[str, bytes | str]], script=None):
    store = InMemoryDocumentStore()
    store.add_deal(DEAL_ID)
    for document_id, (filename, content) in documents.items():
        store.add_document(DEAL_ID, document_id, filename, content)
    analyzer = ScriptedAnalyzer(script)
    return DocumentExtractor(store, analyzer), analyzer


class TestExtractSingleFile:
    @pytest.mark.asyncio
    async def test_successful_extraction(self):
        extractor, analyzer = _make_extractor({'doc-1': ('pl.csv', PL_CSV)})
        ref = await extractor.resolve(DEAL_ID, 'doc-1')

        result = await extractor.extract_single_file(ref)

        assert result.document_id == 'doc-1'
        assert result.filename == 'pl.csv'
        assert result.file_type == 'csv'
        assert result.stages_completed == ['parse', 'classify', 'extract_values', 'structure']
        assert len(result.financial_data) == 1
        assert result.sheets[0].sheet_type == 'pl_statement'
        assert result.confidence == 0.85
        assert result.warnings == []
        assert analyzer.calls == ['pl.csv']

    @pytest.mark.asyncio
    async def test_progress_reported_around_each_stage(self):
        extractor, _ = _make_extractor({'doc-1': ('pl.csv', PL_CSV)})
        ref = await extractor.resolve(DEAL_ID, 'doc-1')
        reports = []

        await extractor.extract_single_file(ref, on_progress=reports.append)

        assert [(r.stage, r.progress) for r in reports] == [
            ('parse', 10),
            ('parse', 30),
            ('classify', 35),
            ('classify', 45),
            ('extract_values', 50),
            ('extract_values', 60),
            ('structure', 65),
            ('structure', 95),
            ('complete', 100),
        ]
        assert all(r.document_id == 'doc-1' and r.filename == 'pl.csv' for r in reports)

    @pytest.mark.asyncio
    async def test_analyzer_receives_hints(self):
        received = {}

        class RecordingAnalyzer(ScriptedAnalyzer):
            async def analyze(self, content, document_type_hint, **kwargs):
                received.update(kwargs, document_type_hint=document_type_hint)
                return make_structuring_result()

        store = InMemoryDocumentStore()
        store.add_document(DEAL_ID, 'doc-1', 'pl.csv', PL_CSV)
        extractor = DocumentExtractor(store, RecordingAnalyzer())

        await extractor.extract_single_file(await extractor.resolve(DEAL_ID, 'doc-1'))

        assert received['document_type_hint'] == 'pl_statement'
        assert received['filename'] == 'pl.csv'
        assert received['sheet_types'] == {'pl.csv': 'pl_statement'}
        assert any('Total Revenue' in c for c in received['candidates'])

    @pytest.mark.asyncio
    async def test_failed_structure_stage_is_partial_result(self):
        extractor, _ = _make_extractor(
            {'doc-1': ('pl.csv', PL_CSV)},
            script={'pl.csv': RuntimeError('model unavailable')},
        )
        ref = await extractor.resolve(DEAL_ID, 'doc-1')
        reports = []

        result = await extractor.extract_single_file(ref, on_progress=reports.append)

        assert result.stages_completed == ['parse', 'classify', 'extract_values']
        assert result.warnings == ['Stage structure failed: model unavailable']
        assert result.financial_data == []
        # CSV baseline with financial rows, halved once
        assert result.confidence == pytest.approx(0.3)
        assert ('structure', 95) not in [(r.stage, r.progress) for r in reports]
        assert reports[-1].stage == 'complete'

    @pytest.mark.asyncio
    async def test_unsupported_file_fails_parse_stage(self):
        extractor, analyzer = _make_extractor({'doc-1': ('memo.docx', b'PK\x03\x04')})
        ref = await extractor.resolve(DEAL_ID, 'doc-1')

        result = await extractor.extract_single_file(ref)

        assert result.stages_completed == []
        assert result.warnings[0].startswith('Stage parse failed: Unsupported file type')
        assert result.confidence == pytest.approx(0.15)
        assert analyzer.calls == []

    @pytest.mark.asyncio
    async def test_missing_document_propagates(self):
        extractor, _ = _make_extractor({})
        ref = DocumentRef(document_id='gone', deal_id=DEAL_ID, filename='gone.csv')

        with pytest.raises(DocumentNotFoundError):
            await extractor.extract_single_file(ref)

    @pytest.mark.asyncio
    async def test_empty_document_skips_structuring(self):
        extractor, analyzer = _make_extractor({'doc-1': ('notes.txt', '   ')})
        ref = await extractor.resolve(DEAL_ID, 'doc-1')

        result = await extractor.extract_single_file(ref)

        assert analyzer.calls == []
        assert result.stages_completed == ['parse', 'classify', 'extract_values']
        assert 'No extractable content in notes.txt' in result.warnings
        assert 'Structuring skipped: document is empty' in result.warnings

    @pytest.mark.asyncio
    async def test_clarifications_and_benchmark_checks_merged(self):
        structured = make_structuring_result(clarifications=[make_request()])
        structured.fields = [
            StructuredField(field_path='revenue.total', value=900_000_000, confidence=0.9),
        ]
        structured.notes = 'Two facilities share one P&L'
        extractor, _ = _make_extractor(
            {'doc-1': ('pl.csv', PL_CSV)}, script={'pl.csv': structured}
        )

        result = await extractor.extract_single_file(await extractor.resolve(DEAL_ID, 'doc-1'))

        assert [c.field_path for c in result.clarifications] == [
            'census.occupancyRate',
            'revenue.total',
        ]
        assert result.clarifications[1].clarification_type == 'out_of_range'
        assert 'Two facilities share one P&L' in result.warnings


class TestBaselineConfidence:
    def _candidates(self, *categories):
        return [CandidateValue(label=c, category=c, values=[1.0]) for c in categories]

    def test_pdf_with_rates(self):
        assert baseline_confidence(FileType.PDF, self._candidates('rate')) == 0.7

    def test_pdf_without_rates(self):
        assert baseline_confidence(FileType.PDF, self._candidates('revenue')) == 0.3

    def test_csv_with_financial_rows(self):
        assert baseline_confidence(FileType.CSV, self._candidates('expense')) == 0.6

    def test_text_without_financial_rows(self):
        assert baseline_confidence(FileType.TEXT, self._candidates('census')) == 0.3

    def test_workbook_weighted(self):
        confidence = baseline_confidence(
            FileType.EXCEL, self._candidates('revenue', 'census', 'rate')
        )

        assert confidence == pytest.approx(0.8)

    def test_workbook_with_nothing_found(self):
        assert baseline_confidence(FileType.EXCEL, []) == 0.3
