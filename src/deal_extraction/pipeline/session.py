"""
Pipeline session state machine.

States:
    running -> awaiting_clarifications -> running (resumed)
    running -> complete | error (terminal)

A session walks its fixed document queue from `cursor`, one document at a
time. The cursor only moves forward and every document it passes has an
entry in `results`, so pausing and resuming never reprocesses anything.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from ..errors import DocumentNotFoundError
from ..logging import get_logger, logging_context
from ..models.clarification import Clarification
from ..models.events import ProgressEvent, ProgressEventType
from ..models.session import (
    AggregateCounts,
    AllFailedPolicy,
    ContinueOutcome,
    ContinueResult,
    DocumentOutcome,
    DocumentStatus,
    PausePolicy,
    SessionSnapshot,
    SessionStatus,
)
from .clarifications import ClarificationManager, persist_clarifications
from .consistency import find_conflicts
from .events import ProgressChannel
from .extractor import DocumentExtractor, StageProgress

logger = get_logger(__name__)

CANCELLED_MESSAGE = 'cancelled'


class PipelineSession:
    """
    One extraction run over an ordered batch of documents for a deal.

    Args:
        session_id: Unique session id
        deal_id: Deal the documents belong to
        document_ids: Ordered document queue (fixed for the session's life)
        extractor: Per-document extractor
        clarifications: Shared clarification manager
        channel: This session's progress channel
        pause_policy: When to check for blocking clarifications
        all_failed_policy: Final status when every document failed
        clarification_store: Optional durable store for clarification records
    """

    def __init__(
        self,
        session_id: str,
        deal_id: str,
        document_ids: list[str],
        extractor: DocumentExtractor,
        clarifications: ClarificationManager,
        channel: ProgressChannel,
        pause_policy: PausePolicy = PausePolicy.END_OF_BATCH,
        all_failed_policy: AllFailedPolicy = AllFailedPolicy.ERROR,
        clarification_store=None,
    ):
        self.session_id = session_id
        self.deal_id = deal_id
        self.document_queue: tuple[str, ...] = tuple(document_ids)
        self.extractor = extractor
        self.clarifications = clarifications
        self.channel = channel
        self.pause_policy = pause_policy
        self.all_failed_policy = all_failed_policy
        self.clarification_store = clarification_store

        self.status = SessionStatus.RUNNING
        self.cursor = 0
        self.results: dict[str, DocumentOutcome] = {}
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.error: str | None = None

        self.created_at = datetime.now()
        self.updated_at = self.created_at
        self.completed_at: datetime | None = None

        self._started = False
        self._cancel_requested = False

    @property
    def total_files(self) -> int:
        return len(self.document_queue)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    # =========================================================================
    # Execution loop
    # =========================================================================

    async def run(self) -> None:
        """
        Process documents from the cursor until paused or finished.

        Never raises (except task cancellation): unexpected failures move
        the session to error.
        """
        with logging_context(session_id=self.session_id, deal_id=self.deal_id):
            try:
                await self._run_loop()
            except asyncio.CancelledError:
                self._fail(CANCELLED_MESSAGE)
                raise
            except Exception as e:
                logger.exception('session.unexpected_error')
                self._fail(f"Unexpected pipeline error: {e}")

    async def _run_loop(self) -> None:
        if self.status != SessionStatus.RUNNING:
            logger.warning('session.run_skipped', status=self.status.value)
            return

        if not self._started:
            self._started = True
            logger.info('session.started', total_files=self.total_files)
            self._publish(
                ProgressEventType.START,
                f"Starting extraction of {self.total_files} document(s)",
                total_files=self.total_files,
                data={'deal_id': self.deal_id, 'document_ids': list(self.document_queue)},
            )

        while self.cursor < self.total_files:
            if self._cancel_requested:
                self._fail(CANCELLED_MESSAGE)
                return

            blocking_raised = await self._process_document(self.cursor)

            if (
                self.pause_policy == PausePolicy.EAGER
                and blocking_raised
                and self.cursor < self.total_files
                and not self.clarifications.can_proceed(self.session_id)
            ):
                self._pause()
                return

        self._finish()

    async def _process_document(self, index: int) -> bool:
        """
        Extract the document at `index` and advance the cursor.

        Returns:
            True if the document raised a blocking clarification
        """
        document_id = self.document_queue[index]
        file_index = index + 1
        started = datetime.now()

        with logging_context(document_id=document_id):
            ref = None
            error: str | None = None
            try:
                ref = await self.extractor.resolve(self.deal_id, document_id)
            except DocumentNotFoundError as e:
                error = e.message
            except Exception as e:
                logger.warning('session.document_resolve_failed', error=str(e))
                error = getattr(e, 'message', None) or str(e) or type(e).__name__
            filename = ref.filename if ref else None

            self._publish(
                ProgressEventType.FILE_START,
                f"Processing {filename or document_id} ({file_index}/{self.total_files})",
                file_index=file_index,
                document_id=document_id,
                filename=filename,
            )

            result = None
            if ref is not None:
                try:
                    result = await self.extractor.extract_single_file(
                        ref, on_progress=self._progress_forwarder(file_index)
                    )
                except Exception as e:
                    logger.warning('session.document_failed', error=str(e))
                    error = getattr(e, 'message', None) or str(e) or type(e).__name__

            elapsed_ms = int((datetime.now() - started).total_seconds() * 1000)

            if result is None:
                self.results[document_id] = DocumentOutcome(
                    document_id=document_id,
                    filename=filename,
                    status=DocumentStatus.ERROR,
                    error=error,
                    processing_time_ms=elapsed_ms,
                )
                self.errors.append(f"{filename or document_id}: {error}")
                self.cursor = index + 1
                self._touch()
                self._publish(
                    ProgressEventType.FILE_ERROR,
                    f"Error processing {filename or document_id}: {error}",
                    file_index=file_index,
                    document_id=document_id,
                    filename=filename,
                    data={'error': error},
                )
                return False

            self.results[document_id] = DocumentOutcome(
                document_id=document_id,
                filename=filename,
                status=DocumentStatus.SUCCESS,
                result=result,
                processing_time_ms=result.processing_time_ms or elapsed_ms,
            )
            self.warnings.extend(f"{filename}: {w}" for w in result.warnings)
            created = self.clarifications.register(
                self.session_id, document_id, result.clarifications, deal_id=self.deal_id
            )
            for conflict in find_conflicts(self.results.values(), document_id):
                created.extend(
                    self.clarifications.register(
                        self.session_id,
                        conflict.anchor_document_id,
                        [conflict.request],
                        deal_id=self.deal_id,
                    )
                )
            self.cursor = index + 1
            self._touch()

            threshold = self.clarifications.blocking_threshold_for(self.session_id)
            blocking_raised = False
            for clarification in created:
                if not clarification.is_pending:
                    continue
                blocking_raised = blocking_raised or clarification.priority >= threshold
                self._publish_clarification(clarification, file_index)

            self._publish(
                ProgressEventType.FILE_COMPLETE,
                f"Completed {filename}",
                file_index=file_index,
                document_id=document_id,
                filename=filename,
                data={
                    'confidence': result.confidence,
                    'financial_periods': len(result.financial_data),
                    'census_periods': len(result.census_data),
                    'payer_rates': len(result.rate_data),
                    'sheets': len(result.sheets),
                    'clarifications': len(result.clarifications),
                    'warnings': result.warnings,
                    'processing_time_ms': result.processing_time_ms,
                },
            )
            await persist_clarifications(self.clarification_store, created)
            return blocking_raised

    def _progress_forwarder(self, file_index: int):
        def forward(progress: StageProgress) -> None:
            self._publish(
                ProgressEventType.FILE_PROGRESS,
                progress.message,
                file_index=file_index,
                document_id=progress.document_id,
                filename=progress.filename,
                stage=progress.stage,
                progress=progress.progress,
            )

        return forward

    def _publish_clarification(self, clarification: Clarification, file_index: int) -> None:
        self._publish(
            ProgressEventType.CLARIFICATION_NEEDED,
            f"Clarification needed: {clarification.field_label}",
            file_index=file_index,
            document_id=clarification.document_id,
            data={'clarification': clarification.to_dict()},
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _finish(self) -> None:
        """Queue exhausted: pause on blockers, otherwise finalize."""
        if not self.clarifications.can_proceed(self.session_id):
            self._pause()
        else:
            self._finalize()

    def _pause(self) -> None:
        blocking = self.clarifications.get_blocking(self.session_id)
        self.status = SessionStatus.AWAITING_CLARIFICATIONS
        self._touch()
        logger.info(
            'session.awaiting_clarifications',
            blocking=len(blocking),
            cursor=self.cursor,
        )
        self._publish(
            ProgressEventType.AWAITING_CLARIFICATIONS,
            f"Waiting on {len(blocking)} blocking clarification(s)",
            data={
                'blocking_clarification_ids': [c.id for c in blocking],
                'pending': len(self.clarifications.get_pending_clarifications(self.session_id)),
                'remaining_documents': list(self.document_queue[self.cursor:]),
            },
        )

    def _finalize(self) -> None:
        counts = self.aggregate_counts()
        all_failed = counts.documents_total > 0 and counts.documents_succeeded == 0

        self.completed_at = datetime.now()
        self._touch()

        if all_failed and self.all_failed_policy == AllFailedPolicy.ERROR:
            self.status = SessionStatus.ERROR
            self.error = f"All {counts.documents_total} document(s) failed"
            logger.warning('session.all_documents_failed', **counts.model_dump())
            self._publish(
                ProgressEventType.ERROR,
                self.error,
                data={'error': self.error, 'summary': self._summary()},
            )
        else:
            self.status = SessionStatus.COMPLETE
            logger.info('session.completed', **counts.model_dump())
            self._publish(
                ProgressEventType.COMPLETE,
                f"Processed {counts.documents_processed} document(s): "
                f"{counts.documents_succeeded} succeeded, {counts.documents_failed} failed",
                data={'summary': self._summary()},
            )
        self.channel.close()

    def _fail(self, message: str) -> None:
        if self.is_terminal:
            return
        self.status = SessionStatus.ERROR
        self.error = message
        self.errors.append(message)
        self.completed_at = datetime.now()
        self._touch()
        logger.warning('session.failed', error=message, cursor=self.cursor)
        self._publish(
            ProgressEventType.ERROR,
            f"Pipeline failed: {message}",
            data={'error': message, 'summary': self._summary()},
        )
        self.channel.close()

    def resume(self) -> ContinueResult:
        """
        Leave awaiting_clarifications if nothing blocks any more.

        The status check-and-set happens without awaiting, so of two
        concurrent callers exactly one gets RESUMED. The caller must then
        schedule run() when the outcome is RESUMED.
        """
        if self.status == SessionStatus.RUNNING:
            return self._continue_result(
                ContinueOutcome.ALREADY_RUNNING, 'Session is already running'
            )
        if self.is_terminal:
            return self._continue_result(
                ContinueOutcome.NOTHING_TO_RESUME,
                f"Session already finished with status {self.status.value}",
            )

        blocking = self.clarifications.get_blocking(self.session_id)
        if blocking:
            return self._continue_result(
                ContinueOutcome.BLOCKED,
                f"{len(blocking)} blocking clarification(s) still pending",
                blocking_ids=[c.id for c in blocking],
            )

        self.status = SessionStatus.RUNNING
        self._touch()
        remaining = self.total_files - self.cursor
        logger.info('session.resumed', remaining=remaining)
        self._publish(
            ProgressEventType.RESUMED,
            f"Resuming with {remaining} document(s) remaining",
            data={'remaining_documents': list(self.document_queue[self.cursor:])},
        )

        if remaining == 0:
            self._finalize()
            return self._continue_result(ContinueOutcome.COMPLETED, 'All documents processed')
        return self._continue_result(ContinueOutcome.RESUMED)

    def request_cancel(self) -> bool:
        """
        Ask the session to stop.

        A running session stops before its next document; a paused one
        fails immediately. Returns False if already terminal.
        """
        if self.is_terminal:
            return False
        self._cancel_requested = True
        if self.status == SessionStatus.AWAITING_CLARIFICATIONS:
            self._fail(CANCELLED_MESSAGE)
        logger.info('session.cancel_requested', status=self.status.value)
        return True

    # =========================================================================
    # Views
    # =========================================================================

    def aggregate_counts(self) -> AggregateCounts:
        succeeded = [o for o in self.results.values() if o.succeeded]
        summary = self.clarifications.summary(self.session_id)
        return AggregateCounts(
            documents_total=self.total_files,
            documents_processed=len(self.results),
            documents_succeeded=len(succeeded),
            documents_failed=len(self.results) - len(succeeded),
            financial_periods=sum(len(o.result.financial_data) for o in succeeded),
            census_periods=sum(len(o.result.census_data) for o in succeeded),
            payer_rates=sum(len(o.result.rate_data) for o in succeeded),
            sheets=sum(len(o.result.sheets) for o in succeeded),
            clarifications_pending=summary['pending'],
            clarifications_blocking=summary['blocking'],
        )

    def _summary(self) -> dict[str, Any]:
        return {
            'counts': self.aggregate_counts().model_dump(),
            'documents': [
                {
                    'document_id': o.document_id,
                    'filename': o.filename,
                    'status': o.status.value,
                    'error': o.error,
                    'confidence': o.result.confidence if o.result else None,
                }
                for o in self.results.values()
            ],
            'errors': list(self.errors),
            'warnings': list(self.warnings),
        }

    def snapshot(self) -> SessionSnapshot:
        """Immutable copy of the current state."""
        return SessionSnapshot(
            session_id=self.session_id,
            deal_id=self.deal_id,
            status=self.status,
            document_queue=self.document_queue,
            cursor=self.cursor,
            results=dict(self.results),
            aggregate_counts=self.aggregate_counts(),
            errors=list(self.errors),
            warnings=list(self.warnings),
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )

    def _continue_result(
        self,
        outcome: ContinueOutcome,
        reason: str | None = None,
        blocking_ids: list[str] | None = None,
    ) -> ContinueResult:
        return ContinueResult(
            outcome=outcome,
            snapshot=self.snapshot(),
            reason=reason,
            blocking_clarification_ids=blocking_ids or [],
        )

    def _touch(self) -> None:
        self.updated_at = datetime.now()

    def _publish(
        self,
        event_type: ProgressEventType,
        message: str,
        *,
        file_index: int | None = None,
        total_files: int | None = None,
        **fields: Any,
    ) -> None:
        if file_index is not None and total_files is None:
            total_files = self.total_files
        self.channel.publish(
            ProgressEvent(
                type=event_type,
                session_id=self.session_id,
                message=message,
                file_index=file_index,
                total_files=total_files,
                **fields,
            )
        )
