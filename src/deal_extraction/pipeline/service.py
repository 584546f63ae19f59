"""
Extraction pipeline service: the operations exposed to callers.

Provides:
- start_pipeline: validate, create a session, run it in the background
- get_session / subscribe_to_progress
- list / resolve / bulk-resolve clarifications
- continue_pipeline / cancel_pipeline
"""

from __future__ import annotations

import asyncio
from typing import Iterable
from uuid import uuid4

from ..clients.document_store import DocumentStore, FileSystemDocumentStore
from ..clients.openai_client import OpenAIClient
from ..clients.postgres_client import PostgresClarificationStore
from ..config import Config
from ..errors import ClarificationError, DealNotFoundError, ValidationError
from ..logging import get_logger, logging_context
from ..models.clarification import Clarification, ClarificationResolution, ResolutionOutcome
from ..models.events import ProgressEvent, ProgressEventType
from ..models.session import (
    AllFailedPolicy,
    ContinueOutcome,
    ContinueResult,
    PausePolicy,
    PipelineOptions,
    SessionSnapshot,
    StartResult,
)
from .clarifications import ClarificationManager, persist_clarifications
from .events import ProgressEventBridge, Subscription
from .extractor import DocumentExtractor
from .registry import SessionRegistry
from .session import PipelineSession
from .structurer import DocumentAnalyzer, OpenAIDocumentAnalyzer

logger = get_logger(__name__)


class ExtractionPipelineService:
    """
    Facade over sessions, clarifications and progress events.

    Usage:
        service = await ExtractionPipelineService.from_config()
        started = await service.start_pipeline('deal-1', ['doc-a', 'doc-b'])
        async for event in service.subscribe_to_progress(started.session_id):
            ...
    """

    def __init__(
        self,
        document_store: DocumentStore,
        analyzer: DocumentAnalyzer,
        clarifications: ClarificationManager | None = None,
        events: ProgressEventBridge | None = None,
        registry: SessionRegistry | None = None,
        clarification_store: PostgresClarificationStore | None = None,
        pause_policy: PausePolicy = PausePolicy.END_OF_BATCH,
        all_failed_policy: AllFailedPolicy = AllFailedPolicy.ERROR,
        openai_client: OpenAIClient | None = None,
    ):
        """
        Args:
            document_store: Source of document bytes and deal lookups
            analyzer: AI structuring collaborator
            clarifications: Shared clarification manager
            events: Progress event bridge
            registry: Session registry (built from events/clarifications if omitted)
            clarification_store: Optional durable clarification store
            pause_policy: Default pause policy for new sessions
            all_failed_policy: Default policy when every document fails
            openai_client: Client to close on shutdown, if owned by the service
        """
        self.store = document_store
        self.clarifications = clarifications or ClarificationManager()
        self.events = events or ProgressEventBridge()
        self.registry = registry or SessionRegistry(self.events, self.clarifications)
        self.clarification_store = clarification_store
        self.pause_policy = pause_policy
        self.all_failed_policy = all_failed_policy
        self.extractor = DocumentExtractor(document_store, analyzer)
        self.openai = openai_client

        self._tasks: set[asyncio.Task] = set()
        self._eviction_task: asyncio.Task | None = None

    @classmethod
    async def from_config(cls, config: Config | None = None) -> ExtractionPipelineService:
        """
        Build a service from configuration.

        Accepts `Config` or any object with the same attribute names, such as
        the API `Settings`; the API lifespan builds its service here too.

        Postgres is optional: if DATABASE_URL is unset, unreachable or its
        schema cannot be created, the service runs without durable
        clarification storage.
        """
        config = config or Config()
        openai = OpenAIClient(api_key=config.OPENAI_API_KEY, chat_model=config.OPENAI_CHAT_MODEL)
        clarifications = ClarificationManager(
            blocking_threshold=config.BLOCKING_PRIORITY_THRESHOLD,
            auto_resolve_confidence=config.AUTO_RESOLVE_CONFIDENCE,
        )
        events = ProgressEventBridge(
            buffer_size=config.EVENT_BUFFER_SIZE,
            history_size=config.EVENT_HISTORY_SIZE,
        )
        registry = SessionRegistry(
            events, clarifications, ttl_seconds=config.SESSION_TTL_SECONDS
        )

        store: PostgresClarificationStore | None = None
        if config.DATABASE_URL:
            pg = PostgresClarificationStore(config.DATABASE_URL)
            try:
                await pg.connect()
                if await pg.verify_connectivity():
                    await pg.setup_schema()
                    store = pg
                    logger.info('service.clarification_store_enabled')
                else:
                    logger.warning('service.clarification_store_unreachable')
            except Exception:
                logger.exception('service.clarification_store_unavailable')
            if store is None:
                await pg.close()

        return cls(
            document_store=FileSystemDocumentStore(config.DOCUMENT_ROOT),
            analyzer=OpenAIDocumentAnalyzer(openai),
            clarifications=clarifications,
            events=events,
            registry=registry,
            clarification_store=store,
            pause_policy=PausePolicy(config.PAUSE_POLICY),
            all_failed_policy=AllFailedPolicy(config.ALL_FAILED_POLICY),
            openai_client=openai,
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_pipeline(
        self,
        deal_id: str,
        document_ids: list[str],
        options: PipelineOptions | None = None,
    ) -> StartResult:
        """
        Validate input, create a session and start it in the background.

        Raises:
            ValidationError: Blank deal id, empty, blank or duplicate document ids
            DealNotFoundError: Deal unknown to the document store
        """
        self._validate_start(deal_id, document_ids)
        if not await self.store.deal_exists(deal_id):
            raise DealNotFoundError(f"Deal not found: {deal_id}", context={'deal_id': deal_id})

        options = options or PipelineOptions()
        session_id = str(uuid4())

        self.clarifications.open_session(
            session_id, deal_id=deal_id, blocking_threshold=options.blocking_threshold
        )
        channel = self.events.create_emitter(session_id)
        session = PipelineSession(
            session_id=session_id,
            deal_id=deal_id,
            document_ids=document_ids,
            extractor=self.extractor,
            clarifications=self.clarifications,
            channel=channel,
            pause_policy=options.pause_policy or self.pause_policy,
            all_failed_policy=options.all_failed_policy or self.all_failed_policy,
            clarification_store=self.clarification_store,
        )
        self.registry.create(session)

        with logging_context(session_id=session_id, deal_id=deal_id):
            logger.info(
                'service.pipeline_started',
                total_documents=len(document_ids),
                pause_policy=session.pause_policy.value,
            )
        self._spawn(session)

        return StartResult(
            session_id=session_id, deal_id=deal_id, total_documents=len(document_ids)
        )

    def _validate_start(self, deal_id: str, document_ids: list[str]) -> None:
        if not deal_id or not deal_id.strip():
            raise ValidationError('deal_id is required')
        if not document_ids:
            raise ValidationError(
                'At least one document id is required', context={'deal_id': deal_id}
            )
        blank = [d for d in document_ids if not d or not d.strip()]
        if blank:
            raise ValidationError(
                'Document ids must not be blank', context={'deal_id': deal_id}
            )
        seen: set[str] = set()
        duplicates = sorted({d for d in document_ids if d in seen or seen.add(d)})
        if duplicates:
            raise ValidationError(
                f"Duplicate document ids: {', '.join(duplicates)}",
                context={'deal_id': deal_id, 'duplicates': duplicates},
            )

    def _spawn(self, session: PipelineSession) -> None:
        task = asyncio.create_task(session.run(), name=f"pipeline-{session.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('service.session_task_failed', task=task.get_name(), error=str(exc))

    def get_session(self, session_id: str) -> SessionSnapshot:
        """Raises SessionNotFoundError for unknown ids."""
        return self.registry.get(session_id).snapshot()

    def subscribe_to_progress(self, session_id: str, replay: bool = False) -> Subscription:
        self.registry.get(session_id)
        return self.events.subscribe(session_id, replay=replay)

    async def continue_pipeline(self, session_id: str) -> ContinueResult:
        """
        Resume a paused session.

        Only a RESUMED outcome schedules work; every other outcome is
        returned as-is with its reason.
        """
        session = self.registry.get(session_id)
        result = session.resume()
        if result.outcome == ContinueOutcome.RESUMED:
            self._spawn(session)
        logger.info(
            'service.continue_requested',
            session_id=session_id,
            outcome=result.outcome.value,
        )
        return result

    def cancel_pipeline(self, session_id: str) -> bool:
        return self.registry.get(session_id).request_cancel()

    # =========================================================================
    # Clarifications
    # =========================================================================

    async def list_pending_clarifications(self, session_id: str) -> list[Clarification]:
        """
        Pending clarifications, highest priority first.

        Falls back to the durable store for sessions no longer in memory.
        """
        if session_id in self.registry:
            return self.clarifications.get_pending_clarifications(session_id)
        if self.clarification_store is not None:
            try:
                return await self.clarification_store.load_pending_clarifications(session_id)
            except Exception:
                logger.exception('service.load_pending_failed', session_id=session_id)
        # Raises SessionNotFoundError
        self.registry.get(session_id)
        return []

    def clarification_summary(self, session_id: str) -> dict:
        self.registry.get(session_id)
        return self.clarifications.summary(session_id)

    async def resolve_clarification(
        self,
        session_id: str,
        clarification_id: str,
        resolved_value: float | str | None,
        resolved_by: str = 'user',
        note: str | None = None,
    ) -> bool:
        """
        Resolve one clarification.

        Returns:
            False if the id is unknown or already resolved

        Raises:
            SessionNotFoundError: Unknown session
        """
        session = self.registry.get(session_id)
        try:
            record = self.clarifications.resolve(
                session_id, clarification_id, resolved_value, resolved_by, note
            )
        except ClarificationError as e:
            logger.info(
                'service.resolve_rejected',
                session_id=session_id,
                clarification_id=clarification_id,
                reason=e.message,
            )
            return False

        self._announce_resolution(session, record)
        await persist_clarifications(self.clarification_store, [record])
        return True

    async def resolve_clarifications_bulk(
        self,
        session_id: str,
        resolutions: Iterable[ClarificationResolution],
    ) -> list[ResolutionOutcome]:
        session = self.registry.get(session_id)
        outcomes = self.clarifications.resolve_bulk(session_id, resolutions)

        resolved = [
            self.clarifications.get(session_id, o.clarification_id)
            for o in outcomes
            if o.success
        ]
        for record in resolved:
            self._announce_resolution(session, record)
        await persist_clarifications(self.clarification_store, resolved)

        logger.info(
            'service.bulk_resolved',
            session_id=session_id,
            requested=len(outcomes),
            succeeded=len(resolved),
        )
        return outcomes

    def _announce_resolution(self, session: PipelineSession, record: Clarification) -> None:
        session.channel.publish(
            ProgressEvent(
                type=ProgressEventType.CLARIFICATION_RESOLVED,
                session_id=session.session_id,
                message=f"Resolved: {record.field_label}",
                document_id=record.document_id,
                data={
                    'clarification': record.to_dict(),
                    'can_proceed': self.clarifications.can_proceed(session.session_id),
                },
            )
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start_eviction(self, interval_seconds: float) -> None:
        if self._eviction_task is None:
            self._eviction_task = asyncio.create_task(
                self.registry.run_eviction_loop(interval_seconds), name='session-eviction'
            )

    async def close(self) -> None:
        """Cancel background work and close owned clients."""
        tasks = list(self._tasks)
        if self._eviction_task is not None:
            tasks.append(self._eviction_task)
            self._eviction_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self.clarification_store is not None:
            await self.clarification_store.close()
        if self.openai is not None:
            await self.openai.close()
