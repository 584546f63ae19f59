"""
External service clients for the deal extraction pipeline.
"""

from .document_store import DocumentStore, FileSystemDocumentStore, InMemoryDocumentStore
from .openai_client import OpenAIClient
from .postgres_client import PostgresClarificationStore

__all__ = [
    'DocumentStore',
    'FileSystemDocumentStore',
    'InMemoryDocumentStore',
    'OpenAIClient',
    'PostgresClarificationStore',
]
