"""
Deal Extraction Pipeline

Orchestrates staged, AI-assisted extraction of financial, census and payer
rate data from a deal's documents, with human clarification checkpoints and
live progress events.
"""

__version__ = '0.1.0'

# Re-export key classes for convenience
from .pipeline import (
    ClarificationManager,
    DocumentExtractor,
    ExtractionPipelineService,
    PipelineSession,
    ProgressEventBridge,
    SessionRegistry,
)
from .logging import (
    configure_logging,
    get_logger,
    logging_context,
    PipelineTimer,
)
from .errors import (
    DealExtractionError,
    PipelineError,
    ValidationError,
    DealNotFoundError,
    SessionNotFoundError,
    ExtractionError,
    StageError,
    ClarificationError,
    DocumentNotFoundError,
    OpenAIError,
)

__all__ = [
    # Version
    '__version__',
    # Service and components
    'ExtractionPipelineService',
    'PipelineSession',
    'SessionRegistry',
    'DocumentExtractor',
    'ClarificationManager',
    'ProgressEventBridge',
    # Logging
    'configure_logging',
    'get_logger',
    'logging_context',
    'PipelineTimer',
    # Errors
    'DealExtractionError',
    'PipelineError',
    'ValidationError',
    'DealNotFoundError',
    'SessionNotFoundError',
    'ExtractionError',
    'StageError',
    'ClarificationError',
    'DocumentNotFoundError',
    'OpenAIError',
]
