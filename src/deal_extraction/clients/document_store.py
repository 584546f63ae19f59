"""
Document store clients.

The pipeline reads raw document bytes through the DocumentStore interface.
Every lookup is scoped to a deal, so a session can only see its own deal's
documents:
- resolve(deal_id, document_id) -> DocumentRef (raises DocumentNotFoundError)
- get_document_bytes(deal_id, document_id) -> bytes (raises DocumentNotFoundError)
- deal_exists(deal_id) -> bool

FileSystemDocumentStore lays documents out as
``<root>/<deal_id>/<document_id>/<original filename>``.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from ..errors import DocumentNotFoundError, DocumentStoreError
from ..models.document import DocumentRef

logger = structlog.get_logger(__name__)

# Ids become single path segments: no separators, wildcards or dot-only names
_SAFE_ID_RE = re.compile(r'^[A-Za-z0-9_\-][A-Za-z0-9_\-.]*$')


def is_safe_id(value: str | None) -> bool:
    return bool(value) and _SAFE_ID_RE.match(value) is not None and value.strip('.') != ''


def _not_found(deal_id: str, document_id: str) -> DocumentNotFoundError:
    return DocumentNotFoundError(
        f"Document not found: {document_id!r}",
        context={'deal_id': deal_id, 'document_id': document_id},
    )


class DocumentStore(ABC):
    """Read-only access to uploaded deal documents."""

    @abstractmethod
    async def deal_exists(self, deal_id: str) -> bool:
        """True if the deal is known to the store."""

    @abstractmethod
    async def resolve(self, deal_id: str, document_id: str) -> DocumentRef:
        """Look up one of the deal's documents by id."""

    @abstractmethod
    async def get_document_bytes(self, deal_id: str, document_id: str) -> bytes:
        """Return the raw content of one of the deal's documents."""


class FileSystemDocumentStore(DocumentStore):
    """Documents stored on local disk, one directory per deal."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    async def deal_exists(self, deal_id: str) -> bool:
        if not is_safe_id(deal_id):
            return False
        return await asyncio.to_thread((self.root / deal_id).is_dir)

    async def resolve(self, deal_id: str, document_id: str) -> DocumentRef:
        return await asyncio.to_thread(self._resolve_sync, deal_id, document_id)

    def _resolve_sync(self, deal_id: str, document_id: str) -> DocumentRef:
        if not is_safe_id(deal_id) or not is_safe_id(document_id):
            raise _not_found(deal_id, document_id)

        doc_dir = self.root / deal_id / document_id
        try:
            if not doc_dir.is_dir():
                raise _not_found(deal_id, document_id)
            files = sorted(p for p in doc_dir.iterdir() if p.is_file())
        except OSError as e:
            raise DocumentStoreError(
                f"Failed to list document {document_id}: {e}",
                context={'deal_id': deal_id, 'document_id': document_id},
            )

        if not files:
            raise _not_found(deal_id, document_id)
        if len(files) > 1:
            logger.warning(
                'document_store.multiple_files',
                deal_id=deal_id,
                document_id=document_id,
                using=files[0].name,
            )
        return DocumentRef(
            document_id=document_id,
            deal_id=deal_id,
            filename=files[0].name,
            location=str(files[0]),
        )

    async def get_document_bytes(self, deal_id: str, document_id: str) -> bytes:
        ref = await self.resolve(deal_id, document_id)
        try:
            return await asyncio.to_thread(Path(ref.location).read_bytes)
        except FileNotFoundError:
            raise DocumentNotFoundError(
                f"Document disappeared: {document_id}",
                context={'deal_id': deal_id, 'document_id': document_id, 'location': ref.location},
            )
        except OSError as e:
            raise DocumentStoreError(
                f"Failed to read document {document_id}: {e}",
                context={'deal_id': deal_id, 'document_id': document_id, 'location': ref.location},
            )


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed store for tests and local demos."""

    def __init__(self):
        self._deals: set[str] = set()
        self._refs: dict[tuple[str, str], DocumentRef] = {}
        self._content: dict[tuple[str, str], bytes] = {}

    def add_deal(self, deal_id: str) -> None:
        self._deals.add(deal_id)

    def add_document(
        self,
        deal_id: str,
        document_id: str,
        filename: str,
        content: bytes | str,
    ) -> DocumentRef:
        """Register a document (and its deal) with the store."""
        if isinstance(content, str):
            content = content.encode('utf-8')
        self._deals.add(deal_id)
        ref = DocumentRef(
            document_id=document_id,
            deal_id=deal_id,
            filename=filename,
            location=f'memory://{deal_id}/{document_id}',
        )
        self._refs[(deal_id, document_id)] = ref
        self._content[(deal_id, document_id)] = content
        return ref

    async def deal_exists(self, deal_id: str) -> bool:
        return deal_id in self._deals

    async def resolve(self, deal_id: str, document_id: str) -> DocumentRef:
        ref = self._refs.get((deal_id, document_id))
        if ref is None:
            raise _not_found(deal_id, document_id)
        return ref

    async def get_document_bytes(self, deal_id: str, document_id: str) -> bytes:
        await self.resolve(deal_id, document_id)
        return self._content[(deal_id, document_id)]
