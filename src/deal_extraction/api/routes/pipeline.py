"""Pipeline routes: start, inspect, stream, clarify and continue sessions."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from deal_extraction.errors import DealNotFoundError, SessionNotFoundError, ValidationError
from deal_extraction.models.clarification import ClarificationResolution
from deal_extraction.models.events import ProgressEvent, ProgressEventType, format_sse
from deal_extraction.models.session import PipelineOptions
from deal_extraction.pipeline.service import ExtractionPipelineService

from ..auth import verify_api_token
from ..config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_token)])


class StartPipelineRequest(BaseModel):
    document_ids: list[str]
    options: PipelineOptions | None = None


class ResolveClarificationRequest(BaseModel):
    clarification_id: str
    resolved_value: float | str | None = None
    resolved_by: str = "user"
    note: str | None = None
    continue_after_resolution: bool = False


class BulkResolveRequest(BaseModel):
    resolutions: list[ClarificationResolution] = Field(default_factory=list)
    continue_after_resolution: bool = False


def get_service(request: Request) -> ExtractionPipelineService:
    return request.app.state.service


def _not_found(e: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=e.message)


# =============================================================================
# Sessions
# =============================================================================


@router.post("/deals/{deal_id}/extraction/pipeline", status_code=202)
async def start_pipeline(
    deal_id: str,
    body: StartPipelineRequest,
    service: ExtractionPipelineService = Depends(get_service),
):
    """Start extracting a batch of documents; progress streams from /events."""
    try:
        started = await service.start_pipeline(deal_id, body.document_ids, body.options)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except DealNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    logger.info("api.pipeline_started", session_id=started.session_id, deal_id=deal_id)
    return {
        "session_id": started.session_id,
        "deal_id": started.deal_id,
        "total_documents": started.total_documents,
        "events_url": f"/extraction/pipeline/{started.session_id}/events",
    }


@router.get("/extraction/pipeline/{session_id}")
async def get_session(
    session_id: str,
    service: ExtractionPipelineService = Depends(get_service),
):
    try:
        return service.get_session(session_id).to_dict()
    except SessionNotFoundError as e:
        raise _not_found(e)


@router.get("/extraction/pipeline/{session_id}/events")
async def stream_events(
    session_id: str,
    request: Request,
    replay: bool = True,
    service: ExtractionPipelineService = Depends(get_service),
):
    """Server-Sent Events stream of a session's progress."""
    try:
        subscription = service.subscribe_to_progress(session_id, replay=replay)
    except SessionNotFoundError as e:
        raise _not_found(e)

    heartbeat_seconds = get_settings().SSE_HEARTBEAT_SECONDS

    async def event_stream():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await subscription.next(timeout=heartbeat_seconds)
                except StopAsyncIteration:
                    break
                if event is None:
                    event = ProgressEvent(
                        type=ProgressEventType.HEARTBEAT, session_id=session_id
                    )
                yield format_sse(event)
        finally:
            subscription.close()
            if subscription.dropped:
                logger.warning(
                    "api.events_dropped", session_id=session_id, dropped=subscription.dropped
                )

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/extraction/pipeline/{session_id}/continue")
async def continue_pipeline(
    session_id: str,
    service: ExtractionPipelineService = Depends(get_service),
):
    try:
        result = await service.continue_pipeline(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return result.to_dict()


@router.post("/extraction/pipeline/{session_id}/cancel")
async def cancel_pipeline(
    session_id: str,
    service: ExtractionPipelineService = Depends(get_service),
):
    try:
        cancelled = service.cancel_pipeline(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)
    return {"session_id": session_id, "cancelled": cancelled}


# =============================================================================
# Clarifications
# =============================================================================


@router.get("/extraction/pipeline/{session_id}/clarifications")
async def list_clarifications(
    session_id: str,
    service: ExtractionPipelineService = Depends(get_service),
):
    """Pending clarifications, highest priority first."""
    try:
        pending = await service.list_pending_clarifications(session_id)
    except SessionNotFoundError as e:
        raise _not_found(e)

    try:
        summary = service.clarification_summary(session_id)
        threshold = summary["blocking_threshold"]
    except SessionNotFoundError:
        # Evicted session served from the clarification store
        summary = None
        threshold = service.clarifications.blocking_threshold

    return {
        "session_id": session_id,
        "clarifications": [c.to_dict() for c in pending],
        "total": len(pending),
        "high_priority_count": sum(1 for c in pending if c.priority >= threshold),
        "summary": summary,
    }


@router.post("/extraction/pipeline/{session_id}/clarifications")
async def resolve_clarification(
    session_id: str,
    body: ResolveClarificationRequest,
    service: ExtractionPipelineService = Depends(get_service),
):
    try:
        resolved = await service.resolve_clarification(
            session_id,
            body.clarification_id,
            body.resolved_value,
            resolved_by=body.resolved_by,
            note=body.note,
        )
        if not resolved:
            return JSONResponse(
                status_code=409,
                content={
                    "resolved": False,
                    "clarification_id": body.clarification_id,
                    "error": "Clarification not found or already resolved",
                },
            )
        continued = None
        if body.continue_after_resolution:
            continued = (await service.continue_pipeline(session_id)).to_dict()
    except SessionNotFoundError as e:
        raise _not_found(e)

    return {
        "resolved": True,
        "clarification_id": body.clarification_id,
        "can_proceed": service.clarifications.can_proceed(session_id),
        "continue_result": continued,
    }


@router.put("/extraction/pipeline/{session_id}/clarifications")
async def resolve_clarifications_bulk(
    session_id: str,
    body: BulkResolveRequest,
    service: ExtractionPipelineService = Depends(get_service),
):
    try:
        outcomes = await service.resolve_clarifications_bulk(session_id, body.resolutions)
        continued = None
        if body.continue_after_resolution:
            continued = (await service.continue_pipeline(session_id)).to_dict()
    except SessionNotFoundError as e:
        raise _not_found(e)

    succeeded = sum(1 for o in outcomes if o.success)
    return {
        "results": [o.model_dump() for o in outcomes],
        "resolved": succeeded,
        "failed": len(outcomes) - succeeded,
        "can_proceed": service.clarifications.can_proceed(session_id),
        "continue_result": continued,
    }
