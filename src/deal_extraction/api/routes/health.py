"""Health check endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Report live sessions and clarification store connectivity."""
    service = request.app.state.service
    body = {"status": "ok", "sessions": len(service.registry)}

    store = service.clarification_store
    if store is not None:
        if not await store.verify_connectivity():
            return JSONResponse(
                status_code=503,
                content={**body, "status": "unhealthy", "clarification_store": "unreachable"},
            )
        body["clarification_store"] = "ok"
    return body
