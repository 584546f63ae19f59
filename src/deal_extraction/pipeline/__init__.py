"""
Pipeline components: staged extraction, clarifications, sessions and progress events.
"""

from .clarifications import ClarificationManager, compute_priority
from .events import ProgressChannel, ProgressEventBridge, Subscription
from .extractor import DocumentExtractor, StageProgress
from .registry import SessionRegistry
from .service import ExtractionPipelineService
from .session import PipelineSession
from .structurer import DocumentAnalyzer, OpenAIDocumentAnalyzer

__all__ = [
    # Service
    'ExtractionPipelineService',
    # Sessions
    'PipelineSession',
    'SessionRegistry',
    # Extraction
    'DocumentExtractor',
    'StageProgress',
    'DocumentAnalyzer',
    'OpenAIDocumentAnalyzer',
    # Clarifications
    'ClarificationManager',
    'compute_priority',
    # Progress events
    'ProgressEventBridge',
    'ProgressChannel',
    'Subscription',
]
