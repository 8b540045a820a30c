"""
Celery Tasks — Document Pipeline

Task: process_storage_event
  Receives an S3 ObjectCreated notification (the whole event, one or more
  records) and runs it through IngestionOrchestrator.handle_event. Never
  retried by Celery: every record already ends in a recorded outcome, and
  S3 redelivery is idempotent.

Task: poll_extraction_jobs  (beat, 30 s)
  Finishes documents whose Textract job was started asynchronously
  (files >= 5 MiB).

Task: requeue_pending_documents  (beat, 60 s)
  Replays extraction for documents reset to `pending` by the retry route.

Task: purge_expired_uploads  (beat, hourly)
  Deletes pending_upload records whose grant was never used (24 h).

Each task builds its own orchestrator around SqlDocumentRecordStore.per_call()
so concurrently processed records never share a DB session, and disposes
the engine pool before the event loop closes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, TypeVar

from assessment_docs.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def build_orchestrator():
    from assessment_docs.processing.ocr import TextractExtractor
    from assessment_docs.services.ingestion import IngestionOrchestrator
    from assessment_docs.services.records import SqlDocumentRecordStore
    from assessment_docs.storage.s3 import S3ObjectStore

    return IngestionOrchestrator(
        records=SqlDocumentRecordStore.per_call(),
        storage=S3ObjectStore(),
        extractor=TextractExtractor(),
    )


def run_with_orchestrator(work: Callable[[Any], Awaitable[T]]) -> T:
    """Execute `work(orchestrator)` on a fresh event loop."""

    async def _main() -> T:
        from assessment_docs.db.session import engine

        try:
            return await work(build_orchestrator())
        finally:
            # pooled asyncpg connections are bound to this loop
            await engine.dispose()

    return asyncio.run(_main())


def summarize(outcomes: list) -> dict[str, Any]:
    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.kind] = counts.get(outcome.kind, 0) + 1
    return {
        "total":    len(outcomes),
        "counts":   counts,
        "outcomes": [asdict(o) for o in outcomes],
    }


# ---------------------------------------------------------------------------
# Storage events
# ---------------------------------------------------------------------------

@celery_app.task(
    name="assessment_docs.workers.tasks.process_storage_event",
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_storage_event(event: dict) -> dict[str, Any]:
    """Run one S3 notification (all of its records) through the orchestrator."""
    outcomes = run_with_orchestrator(lambda o: o.handle_event(event))
    return summarize(outcomes)


# ---------------------------------------------------------------------------
# Async Textract completion — beat, every 30 seconds
# ---------------------------------------------------------------------------

@celery_app.task(
    name="assessment_docs.workers.tasks.poll_extraction_jobs",
    acks_late=True,
    soft_time_limit=25,
    time_limit=30,
)
def poll_extraction_jobs() -> dict[str, Any]:
    from assessment_docs.core.config import settings

    outcomes = run_with_orchestrator(lambda o: o.poll_jobs(settings.job_poll_batch_size))
    return summarize(outcomes)


# ---------------------------------------------------------------------------
# Retry replay — beat, every 60 seconds
# ---------------------------------------------------------------------------

@celery_app.task(
    name="assessment_docs.workers.tasks.requeue_pending_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_pending_documents() -> dict[str, Any]:
    """Replay extraction for documents the retry route reset to pending."""
    from assessment_docs.core.config import settings

    outcomes = run_with_orchestrator(lambda o: o.requeue_retries(settings.job_poll_batch_size))
    return summarize(outcomes)


# ---------------------------------------------------------------------------
# Expired upload grants — beat, hourly
# ---------------------------------------------------------------------------

@celery_app.task(name="assessment_docs.workers.tasks.purge_expired_uploads")
def purge_expired_uploads() -> dict[str, int]:
    purged = run_with_orchestrator(lambda o: o.purge_expired_uploads())
    logger.info("Expired upload purge | purged=%d", purged)
    return {"purged": purged}
