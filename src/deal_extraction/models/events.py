"""
Progress events published by a pipeline session.

Every event carries the session id, a timestamp and a human-readable
message. Document-scoped events also carry file_index (1-based) and
total_files.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProgressEventType(str, Enum):
    """Kinds of progress events."""

    START = 'start'
    FILE_START = 'file_start'
    FILE_PROGRESS = 'file_progress'
    FILE_COMPLETE = 'file_complete'
    FILE_ERROR = 'file_error'
    CLARIFICATION_NEEDED = 'clarification_needed'
    CLARIFICATION_RESOLVED = 'clarification_resolved'
    AWAITING_CLARIFICATIONS = 'awaiting_clarifications'
    RESUMED = 'resumed'
    COMPLETE = 'complete'
    ERROR = 'error'
    HEARTBEAT = 'heartbeat'


# Events after which a session publishes nothing further
TERMINAL_EVENT_TYPES = frozenset({ProgressEventType.COMPLETE, ProgressEventType.ERROR})


class ProgressEvent(BaseModel):
    """A single progress notification."""

    type: ProgressEventType
    session_id: str
    message: str = ''
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=None))

    # Document scope
    file_index: int | None = None
    total_files: int | None = None
    document_id: str | None = None
    filename: str | None = None

    # Stage progress
    stage: str | None = None
    progress: int | None = None

    # Free-form payload (result summary, clarification, final summary, error)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES


def format_sse(event: ProgressEvent) -> str:
    """Encode an event as a Server-Sent Events frame."""
    payload = event.model_dump(mode='json', exclude_none=True)
    return f"event: {event.type.value}\ndata: {json.dumps(payload)}\n\n"
