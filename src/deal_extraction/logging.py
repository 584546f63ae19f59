"""
Structured logging for the deal extraction pipeline.

structlog is configured once at import. Events carry the session, deal and
document they belong to without threading ids through every call: the
pipeline sets them with logging_context() and add_context_info copies them
into each entry. Output is JSON when LOG_JSON is set, console otherwise.
"""

import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator

import structlog
from structlog.types import Processor

from .config import config

_CONTEXT_KEYS = ('session_id', 'deal_id', 'document_id')

_context: dict[str, ContextVar[str | None]] = {
    key: ContextVar(key, default=None) for key in _CONTEXT_KEYS
}

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ('httpx', 'openai', 'asyncpg', 'sqlalchemy.engine')


def get_session_id() -> str | None:
    return _context['session_id'].get()


def get_deal_id() -> str | None:
    return _context['deal_id'].get()


def get_document_id() -> str | None:
    return _context['document_id'].get()


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Copy the current session/deal/document ids into the entry."""
    for key, var in _context.items():
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(
    json_output: bool | None = None,
    log_level: str | None = None,
) -> None:
    """
    Configure structlog for the process.

    Args:
        json_output: JSON lines instead of console output
            (defaults to config.LOG_JSON)
        log_level: Level name (defaults to config.LOG_LEVEL)
    """
    if json_output is None:
        json_output = config.LOG_JSON
    level_num = getattr(logging, (log_level or config.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level_num)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level_num, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_context_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def logging_context(
    session_id: str | None = None,
    deal_id: str | None = None,
    document_id: str | None = None,
) -> Generator[None, None, None]:
    """
    Bind ids to every log entry emitted inside the block.

    Nested blocks override only the ids they pass; the outer values come
    back on exit.

    Usage:
        with logging_context(session_id=session.session_id, deal_id=deal_id):
            logger.info('session.started')
    """
    values = {'session_id': session_id, 'deal_id': deal_id, 'document_id': document_id}
    tokens = [
        (_context[key], _context[key].set(value))
        for key, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class PipelineTimer:
    """
    Wall-clock timing of one document's extraction stages.

    A stage that raises is still timed and is listed under failed_stages.

    Usage:
        timer = PipelineTimer()
        with timer.stage('parse'):
            content = parse_document(...)
        logger.info('extractor.completed', **timer.summary())
    """

    def __init__(self):
        self.started = time.perf_counter()
        self.stages: dict[str, float] = {}
        self.failed_stages: list[str] = []

    @contextmanager
    def stage(self, name: str) -> Generator[None, None, None]:
        begin = time.perf_counter()
        try:
            yield
        except BaseException:
            self.failed_stages.append(name)
            raise
        finally:
            self.stages[name] = (time.perf_counter() - begin) * 1000

    def record(self, name: str, duration_ms: float) -> None:
        self.stages[name] = duration_ms

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            'total_ms': round(self.total_ms, 2),
            'stages': {name: round(ms, 2) for name, ms in self.stages.items()},
        }
        if self.failed_stages:
            summary['failed_stages'] = list(self.failed_stages)
        return summary


# Console output until the entry point asks for JSON
configure_logging()
