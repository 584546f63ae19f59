#!/usr/bin/env python3
"""
Local smoke run of the extraction pipeline against real documents.

Documents are read from DOCUMENT_ROOT laid out as <deal_id>/<document_id>/<file>.
Every document directory of the deal is queued. Pending clarifications are
resolved with their first suggested value (or the extracted value) so the
session can run to completion unattended.

Usage:
    python scripts/run_local_extraction.py <deal_id>
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / '.env')

from deal_extraction.config import Config
from deal_extraction.logging import configure_logging
from deal_extraction.models.session import ContinueOutcome, SessionStatus
from deal_extraction.pipeline.service import ExtractionPipelineService


def list_document_ids(deal_id: str) -> list[str]:
    deal_dir = Path(Config.DOCUMENT_ROOT) / deal_id
    return sorted(p.name for p in deal_dir.iterdir() if p.is_dir())


async def resolve_pending(service: ExtractionPipelineService, session_id: str) -> int:
    """Resolve every pending clarification with its best available answer."""
    pending = await service.list_pending_clarifications(session_id)
    for record in pending:
        answer = record.suggested_values[0] if record.suggested_values else record.extracted_value
        print(f"  [{record.priority:>2}] {record.field_label}: {record.reason}")
        print(f"       -> {answer!r}")
        await service.resolve_clarification(
            session_id, record.id, answer, resolved_by='local-run', note='auto-answered'
        )
    return len(pending)


async def run(deal_id: str) -> int:
    document_ids = list_document_ids(deal_id)
    print("=" * 70)
    print(f"DEAL {deal_id}: {len(document_ids)} documents")
    print("=" * 70)

    service = await ExtractionPipelineService.from_config()
    try:
        started = await service.start_pipeline(deal_id, document_ids)
        subscription = service.subscribe_to_progress(started.session_id, replay=True)

        while True:
            try:
                event = await subscription.next(timeout=1.0)
            except StopAsyncIteration:
                break
            if event is not None:
                progress = f" {event.progress}%" if event.progress is not None else ''
                print(f"{event.type.value:<24}{progress:>5}  {event.message}")
                continue

            snapshot = service.get_session(started.session_id)
            if snapshot.status != SessionStatus.AWAITING_CLARIFICATIONS:
                continue
            print("\n--- clarifications ---")
            await resolve_pending(service, started.session_id)
            result = await service.continue_pipeline(started.session_id)
            if result.outcome not in (ContinueOutcome.RESUMED, ContinueOutcome.COMPLETED):
                print(f"Could not continue: {result.outcome.value} ({result.reason})")
                return 1

        snapshot = service.get_session(started.session_id)
        counts = snapshot.aggregate_counts
        print("\n" + "=" * 70)
        print(f"SESSION {snapshot.session_id}: {snapshot.status.value}")
        print("=" * 70)
        print(f"Documents: {counts.documents_succeeded}/{counts.documents_total} succeeded")
        print(f"Financial periods: {counts.financial_periods}")
        print(f"Census periods: {counts.census_periods}")
        print(f"Payer rates: {counts.payer_rates}")
        for warning in snapshot.warnings:
            print(f"  warning: {warning}")
        for error in snapshot.errors:
            print(f"  error: {error}")
        return 0 if snapshot.status == SessionStatus.COMPLETE else 1
    finally:
        await service.close()


def main() -> int:
    if len(sys.argv) != 2:
        print(__doc__)
        return 2

    missing = Config.validate()
    if missing:
        print(f"Missing configuration: {', '.join(missing)}")
        return 2

    configure_logging(log_level=Config.LOG_LEVEL)
    return asyncio.run(run(sys.argv[1]))


if __name__ == '__main__':
    sys.exit(main())
