"""
Per-document staged extraction.

Stages run in a fixed order:
1. parse - fetch bytes, normalize sheets/text
2. classify - keyword sheet classification, document type hint
3. extract_values - deterministic candidate line items
4. structure - AI document analyzer

A failed stage short-circuits the rest for this document only; the result
carries a warning and reduced confidence. Only DocumentNotFoundError is
raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ..clients.document_store import DocumentStore
from ..errors import DocumentNotFoundError, StageError
from ..logging import PipelineTimer, get_logger, logging_context
from ..models.document import DocumentRef, FileType, NormalizedContent
from ..models.extraction import ExtractionResult, StructuringResult
from .classifier import Classification, classify_document
from .clarifications import check_benchmarks
from .parsing import parse_document
from .structurer import DocumentAnalyzer
from .values import CandidateValue, extract_candidates

logger = get_logger(__name__)

STAGES = ('parse', 'classify', 'extract_values', 'structure')

# (before, after) progress percentages per stage
_STAGE_PROGRESS = {
    'parse': (10, 30),
    'classify': (35, 45),
    'extract_values': (50, 60),
    'structure': (65, 95),
}

# Confidence multiplier applied once per failed stage
FAILED_STAGE_PENALTY = 0.5


@dataclass
class StageProgress:
    """Progress report for one stage of one document."""

    stage: str
    progress: int
    message: str
    document_id: str
    filename: str


ProgressCallback = Callable[[StageProgress], None]


def baseline_confidence(file_type: FileType, candidates: list[CandidateValue]) -> float:
    """
    Confidence when the structuring stage did not produce one.

    Workbooks weight financial rows 0.5, census rows 0.3 and rates 0.2;
    PDFs are 0.7 when rates were found, CSV/text 0.6 with financial rows.
    """
    categories = {c.category for c in candidates}
    has_financial = bool(categories & {'revenue', 'expense', 'metric'})

    if file_type == FileType.PDF:
        return 0.7 if 'rate' in categories else 0.3
    if file_type in (FileType.CSV, FileType.TEXT):
        return 0.6 if has_financial else 0.3

    score = 0.0
    factors = 0.0
    for present, weight in (
        (has_financial, 0.5),
        ('census' in categories, 0.3),
        ('rate' in categories, 0.2),
    ):
        if present:
            score += weight * 0.8
            factors += weight
    return score / factors if factors else 0.3


class DocumentExtractor:
    """
    Runs the extraction stages for one document at a time.

    Usage:
        extractor = DocumentExtractor(store, analyzer)
        ref = await extractor.resolve(deal_id, document_id)
        result = await extractor.extract_single_file(ref, on_progress=callback)
    """

    def __init__(self, document_store: DocumentStore, analyzer: DocumentAnalyzer):
        self.store = document_store
        self.analyzer = analyzer

    async def resolve(self, deal_id: str, document_id: str) -> DocumentRef:
        """Look up one of the deal's documents; raises DocumentNotFoundError."""
        return await self.store.resolve(deal_id, document_id)

    async def extract_single_file(
        self,
        document_ref: DocumentRef,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractionResult:
        """
        Extract one document.

        Args:
            document_ref: Resolved document reference
            on_progress: Called before and after each stage

        Returns:
            ExtractionResult (partial if a stage failed)

        Raises:
            DocumentNotFoundError: If the document bytes are gone
        """
        document_id = document_ref.document_id
        filename = document_ref.filename
        file_type = document_ref.file_type
        timer = PipelineTimer()

        def report(stage: str, progress: int, message: str) -> None:
            if on_progress is not None:
                on_progress(StageProgress(stage, progress, message, document_id, filename))

        warnings: list[str] = []
        completed: list[str] = []
        content: NormalizedContent | None = None
        classification: Classification | None = None
        candidates: list[CandidateValue] = []
        structured: StructuringResult | None = None
        failed_stages = 0

        with logging_context(document_id=document_id):
            logger.info('extractor.started', filename=filename, file_type=file_type.value)

            try:
                # Stage 1: parse
                content = await self._run_stage(
                    'parse', timer, report,
                    f"Reading {filename}...",
                    self._parse(document_ref),
                )
                completed.append('parse')
                if content.is_empty:
                    warnings.append(f"No extractable content in {filename}")

                # Stage 2: classify
                classification = await self._run_stage(
                    'classify', timer, report,
                    f"Classifying {len(content.sheets)} sheet(s)...",
                    self._classify(content),
                )
                completed.append('classify')

                # Stage 3: extract_values
                candidates = await self._run_stage(
                    'extract_values', timer, report,
                    'Scanning for line items...',
                    self._extract_values(content, classification),
                )
                completed.append('extract_values')

                # Stage 4: structure
                if content.is_empty:
                    warnings.append('Structuring skipped: document is empty')
                else:
                    structured = await self._run_stage(
                        'structure', timer, report,
                        f"Structuring {classification.document_type} data...",
                        self._structure(filename, content, classification, candidates),
                    )
                    completed.append('structure')

            except DocumentNotFoundError:
                raise
            except StageError as e:
                failed_stages += 1
                warnings.append(f"Stage {e.stage} failed: {e.message}")
                logger.warning(
                    'extractor.stage_failed',
                    stage=e.stage,
                    error=e.message,
                    skipped=[s for s in STAGES if s not in completed and s != e.stage],
                )

            result = self._build_result(
                document_ref=document_ref,
                classification=classification,
                candidates=candidates,
                structured=structured,
                warnings=warnings,
                completed=completed,
                failed_stages=failed_stages,
                processing_time_ms=int(timer.total_ms),
            )

            report(
                'complete', 100,
                f"Extracted {len(result.financial_data)} financial periods, "
                f"{len(result.census_data)} census periods, {len(result.rate_data)} rates",
            )
            logger.info(
                'extractor.completed',
                records=result.record_count,
                clarifications=len(result.clarifications),
                confidence=result.confidence,
                warnings=len(result.warnings),
                **timer.summary(),
            )
            return result

    async def _run_stage(self, stage, timer, report, message, work):
        """Time one stage, report around it and normalize its failures."""
        before, after = _STAGE_PROGRESS[stage]
        report(stage, before, message)
        try:
            with timer.stage(stage):
                value = await work
        except (DocumentNotFoundError, StageError):
            raise
        except Exception as e:
            raise StageError(stage, str(e) or type(e).__name__) from e
        report(stage, after, f"{stage} complete")
        return value

    # =========================================================================
    # Stages
    # =========================================================================

    async def _parse(self, document_ref: DocumentRef) -> NormalizedContent:
        content = await self.store.get_document_bytes(
            document_ref.deal_id, document_ref.document_id
        )
        return parse_document(content, document_ref.file_type, document_ref.filename)

    async def _classify(self, content: NormalizedContent) -> Classification:
        return classify_document(content)

    async def _extract_values(
        self,
        content: NormalizedContent,
        classification: Classification,
    ) -> list[CandidateValue]:
        return extract_candidates(content, classification)

    async def _structure(
        self,
        filename: str,
        content: NormalizedContent,
        classification: Classification,
        candidates: list[CandidateValue],
    ) -> StructuringResult:
        return await self.analyzer.analyze(
            content,
            classification.document_type,
            filename=filename,
            sheet_types=classification.sheet_types,
            candidates=[c.describe() for c in candidates],
        )

    # =========================================================================
    # Result assembly
    # =========================================================================

    def _build_result(
        self,
        document_ref: DocumentRef,
        classification: Classification | None,
        candidates: list[CandidateValue],
        structured: StructuringResult | None,
        warnings: list[str],
        completed: list[str],
        failed_stages: int,
        processing_time_ms: int,
    ) -> ExtractionResult:
        if structured is not None:
            confidence = structured.confidence
            clarifications = [
                *structured.clarifications,
                *check_benchmarks(structured.fields, structured.clarifications),
            ]
            if structured.notes:
                warnings.append(structured.notes)
        else:
            confidence = baseline_confidence(document_ref.file_type, candidates)
            clarifications = []

        confidence *= FAILED_STAGE_PENALTY ** failed_stages

        return ExtractionResult(
            document_id=document_ref.document_id,
            filename=document_ref.filename,
            file_type=document_ref.file_type.value,
            financial_data=structured.financial_periods if structured else [],
            census_data=structured.census_periods if structured else [],
            rate_data=structured.payer_rates if structured else [],
            sheets=classification.sheets if classification else [],
            fields=structured.fields if structured else [],
            clarifications=clarifications,
            confidence=max(0.0, min(1.0, confidence)),
            warnings=warnings,
            stages_completed=completed,
            processing_time_ms=processing_time_ms,
        )
