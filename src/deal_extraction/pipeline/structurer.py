"""
Structure stage: the AI document analyzer.

DocumentAnalyzer is the contract the extractor depends on; the OpenAI
implementation sends the normalized content through a structured-output
chat completion and returns a StructuringResult.
"""

from abc import ABC, abstractmethod

import structlog

from ..clients.openai_client import OpenAIClient
from ..models.document import NormalizedContent
from ..models.extraction import StructuringResult
from ..prompts.structure_document import build_structuring_prompt

logger = structlog.get_logger(__name__)

# Prompt budget for document content
DEFAULT_MAX_ROWS_PER_SHEET = 200
DEFAULT_MAX_CHARS = 60_000


class DocumentAnalyzer(ABC):
    """Turns normalized document content into typed records."""

    @abstractmethod
    async def analyze(
        self,
        content: NormalizedContent,
        document_type_hint: str,
        *,
        filename: str | None = None,
        sheet_types: dict[str, str] | None = None,
        candidates: list[str] | None = None,
    ) -> StructuringResult:
        """
        Structure one document.

        Args:
            content: Parse-stage output
            document_type_hint: Classifier hint (pl_statement, census_report, ...)
            filename: Original filename
            sheet_types: Sheet name -> detected type
            candidates: Human-readable candidate line items

        Returns:
            StructuringResult (an empty clarification list is valid)
        """


class OpenAIDocumentAnalyzer(DocumentAnalyzer):
    """DocumentAnalyzer backed by OpenAI structured output."""

    def __init__(
        self,
        openai_client: OpenAIClient,
        max_rows_per_sheet: int = DEFAULT_MAX_ROWS_PER_SHEET,
        max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self.openai = openai_client
        self.max_rows_per_sheet = max_rows_per_sheet
        self.max_chars = max_chars

    async def analyze(
        self,
        content: NormalizedContent,
        document_type_hint: str,
        *,
        filename: str | None = None,
        sheet_types: dict[str, str] | None = None,
        candidates: list[str] | None = None,
    ) -> StructuringResult:
        content_text = content.to_prompt_text(max_rows_per_sheet=self.max_rows_per_sheet)
        if len(content_text) > self.max_chars:
            logger.info(
                'structurer.content_truncated',
                filename=filename,
                original_chars=len(content_text),
                max_chars=self.max_chars,
            )
            content_text = content_text[: self.max_chars] + '\n... (truncated)'

        messages = build_structuring_prompt(
            content_text=content_text,
            document_type=document_type_hint,
            filename=filename,
            sheet_types=sheet_types,
            candidates=candidates,
        )

        result = await self.openai.chat_completion_structured(
            messages=messages,
            response_model=StructuringResult,
        )

        logger.info(
            'structurer.completed',
            filename=filename,
            financial_periods=len(result.financial_periods),
            census_periods=len(result.census_periods),
            payer_rates=len(result.payer_rates),
            clarifications=len(result.clarifications),
            confidence=result.confidence,
        )
        return result
