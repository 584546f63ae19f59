"""
Custom exceptions and error handling for the deal extraction pipeline.

Provides:
- Typed exception hierarchy for document, session and clarification failures
- Error context preservation for debugging
"""

from typing import Any

import openai


class DealExtractionError(Exception):
    """Base exception for all deal extraction errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# =============================================================================
# Client Errors
# =============================================================================


class ClientError(DealExtractionError):
    """Base class for external collaborator errors."""

    pass


class OpenAIError(ClientError):
    """Error from OpenAI API calls."""

    pass


class OpenAIRateLimitError(OpenAIError):
    """Rate limit exceeded on OpenAI API."""

    pass


class OpenAIModelError(OpenAIError):
    """Model refused request or returned invalid response."""

    pass


class DocumentStoreError(ClientError):
    """Error reading from the document store."""

    pass


class DocumentNotFoundError(DocumentStoreError):
    """The requested document does not exist in the store."""

    pass


# =============================================================================
# Pipeline Errors
# =============================================================================


class PipelineError(DealExtractionError):
    """Base class for pipeline-related errors."""

    pass


class ValidationError(PipelineError):
    """Input validation failed before a session could start."""

    pass


class DealNotFoundError(PipelineError):
    """The deal referenced by a start request is unknown."""

    pass


class ExtractionError(PipelineError):
    """Error while extracting a single document."""

    pass


class StageError(ExtractionError):
    """A single extraction stage failed for one document."""

    def __init__(
        self,
        stage: str,
        message: str,
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx['stage'] = stage
        super().__init__(message, context=ctx)
        self.stage = stage


class SessionNotFoundError(PipelineError):
    """No pipeline session is registered under the given id."""

    pass


# =============================================================================
# Clarification Errors
# =============================================================================


class ClarificationError(DealExtractionError):
    """Base class for clarification resolution errors."""

    pass


class ClarificationNotFoundError(ClarificationError):
    """Clarification id is unknown for the session."""

    pass


class ClarificationAlreadyResolvedError(ClarificationError):
    """Clarification has already left the pending state."""

    pass


# =============================================================================
# Error Handling Utilities
# =============================================================================


def wrap_openai_error(exc: Exception, context: dict[str, Any] | None = None) -> OpenAIError:
    """
    Wrap an OpenAI exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        Typed OpenAIError subclass
    """
    error_str = str(exc).lower()
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if isinstance(exc, openai.RateLimitError) or 'rate limit' in error_str:
        return OpenAIRateLimitError(
            f"OpenAI rate limit exceeded: {exc}",
            context=ctx,
        )
    elif 'content policy' in error_str or 'refused' in error_str:
        return OpenAIModelError(
            f"OpenAI model refused request: {exc}",
            context=ctx,
        )
    else:
        return OpenAIError(
            f"OpenAI API error: {exc}",
            context=ctx,
        )
