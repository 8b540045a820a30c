"""
Document Ingestion Orchestrator

Triggered by S3 ObjectCreated notifications on the raw/ prefix. Each record
in a notification batch is processed concurrently and independently:

  1. URL-decode and parse <company>/<assessment>/raw/<document_id>.<ext>
       no match                     → Skipped (record store not touched)
  2. Resolve the document record by id
       missing / foreign key        → Skipped
  3. status=processing, processing_started_at=now, previous output cleared
  4. size <  5 MiB → Textract AnalyzeDocument (sync)
     size >= 5 MiB → Textract StartDocumentAnalysis, persist job id
                                    → Submitted(job_id)
  5. sync success → status=completed, text, confidence, duration
                                    → Completed
  6. sync failure → status=failed, one error string
                                    → Failed
  7. after success, best-effort write of processed/<document_id>.json;
     a failed write is logged and reported as artifact_stored=False

Async jobs are finished by poll_jobs() (Celery beat → poll_extraction_jobs),
which calls complete_job() for every job Textract reports as finished. A job
that is still unfinished, or whose status cannot be read, once
EXTRACTION_JOB_MAX_AGE_SECONDS have passed since processing started fails
the document.
Documents reset by the retry route are replayed by requeue_retries()
(Celery beat → requeue_pending_documents) through the same process_record().

Redelivery is safe: every run overwrites the whole processing field group.
No exception escapes handle_event(), poll_jobs() or requeue_retries(); one
bad record never affects its siblings.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone

from assessment_docs.core.config import settings
from assessment_docs.processing.ocr import ExtractionResult, JobStatus, TextExtractor
from assessment_docs.schemas.documents import (
    SYNC_EXTRACTION_THRESHOLD_BYTES,
    ProcessingStatus,
)
from assessment_docs.services.outcomes import (
    Completed,
    Failed,
    IngestionOutcome,
    Skipped,
    Submitted,
)
from assessment_docs.services.records import (
    DocumentRecord,
    DocumentRecordStore,
    ProcessingPatch,
)
from assessment_docs.storage.s3 import ObjectStore, parse_raw_key, processed_object_key

logger = logging.getLogger(__name__)

PROCESSING_VERSION = "1.0"


def extraction_error(message: str) -> str:
    return f"Text extraction failed: {message}"


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionOrchestrator:
    """
    Stateless service object. Adapters are injected; the record store must
    tolerate concurrent calls (the SQL store opens one session per call when
    built with SqlDocumentRecordStore.per_call()).
    """

    def __init__(
        self,
        records:   DocumentRecordStore,
        storage:   ObjectStore,
        extractor: TextExtractor,
        job_max_age_seconds: int | None = None,
    ) -> None:
        self._records     = records
        self._storage     = storage
        self._extractor   = extractor
        self._job_max_age = job_max_age_seconds or settings.extraction_job_max_age_seconds

    # ------------------------------------------------------------------
    # Storage-event entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: dict) -> list[IngestionOutcome]:
        records = (event or {}).get("Records") or []
        logger.info("Ingest batch start | records=%d", len(records))

        results = await asyncio.gather(
            *(self.process_record(r) for r in records),
            return_exceptions=True,
        )

        outcomes: list[IngestionOutcome] = []
        for record, result in zip(records, results):
            if isinstance(result, BaseException):
                key = _event_key(record)
                logger.error(
                    "Ingest record crashed | key=%s error=%s", key, result,
                    exc_info=(type(result), result, result.__traceback__),
                )
                outcomes.append(Failed(reason=f"Unexpected error: {result}"))
            else:
                outcomes.append(result)

        summary: dict[str, int] = {}
        for o in outcomes:
            summary[o.kind] = summary.get(o.kind, 0) + 1
        logger.info("Ingest batch done | total=%d %s", len(outcomes),
                    " ".join(f"{k}={v}" for k, v in sorted(summary.items())))
        return outcomes

    async def process_record(self, record: dict) -> IngestionOutcome:
        raw_key = _event_key(record)
        parsed  = parse_raw_key(raw_key)
        if parsed is None:
            logger.warning("Ingest skip | reason=unrecognized_key key=%s", raw_key)
            return Skipped(reason="Object key does not match raw upload layout", key=raw_key)

        doc = await self._records.get(parsed.document_id)
        if doc is None:
            logger.warning("Ingest skip | reason=no_record doc=%s", parsed.document_id)
            return Skipped(reason="Document record not found", key=parsed.key)

        if doc.company_id != parsed.company_id or doc.assessment_id != parsed.assessment_id:
            logger.warning(
                "Ingest skip | reason=key_mismatch doc=%s key=%s", doc.document_id, parsed.key,
            )
            return Skipped(reason="Object key does not belong to document", key=parsed.key)

        bucket = _event_bucket(record) or doc.s3_bucket
        size   = _event_size(record)
        if size is None:
            size = doc.file_size

        is_async = size >= SYNC_EXTRACTION_THRESHOLD_BYTES
        started  = _now()

        await self._records.apply(doc.document_id, ProcessingPatch(
            status=ProcessingStatus.PROCESSING.value,
            processing_started_at=started,
            processing_method="async" if is_async else "sync",
            extracted_text=None,
            extraction_confidence=None,
            processing_errors=[],
            textract_job_id=None,
            processing_completed_at=None,
            processing_time_ms=None,
            retry_at=None,
            expires_at=None,
        ))
        logger.info(
            "Ingest start | doc=%s key=%s size=%d mode=%s",
            doc.document_id, parsed.key, size, "async" if is_async else "sync",
        )

        if is_async:
            return await self._submit_job(doc, bucket, parsed.key)
        return await self._extract_sync(doc, bucket, parsed.key)

    # ------------------------------------------------------------------
    # Extraction modes
    # ------------------------------------------------------------------

    async def _extract_sync(self, doc: DocumentRecord, bucket: str, key: str) -> IngestionOutcome:
        t0 = time.monotonic()
        try:
            result = await self._extractor.analyze(bucket, key)
        except Exception as exc:
            return await self._mark_failed(doc, str(exc))

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        return await self._mark_completed(doc, result, elapsed_ms)

    async def _submit_job(self, doc: DocumentRecord, bucket: str, key: str) -> IngestionOutcome:
        try:
            job_id = await self._extractor.start_job(bucket, key)
        except Exception as exc:
            return await self._mark_failed(doc, str(exc))

        await self._records.apply(doc.document_id, ProcessingPatch(
            textract_job_id=job_id,
            processing_method="async",
        ))
        logger.info("Ingest submitted | doc=%s job=%s", doc.document_id, job_id)
        return Submitted(document_id=doc.document_id, job_id=job_id)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _mark_completed(
        self,
        doc: DocumentRecord,
        result: ExtractionResult,
        elapsed_ms: int,
    ) -> Completed:
        confidence = _clamp(result.confidence)
        finished   = _now()

        await self._records.apply(doc.document_id, ProcessingPatch(
            status=ProcessingStatus.COMPLETED.value,
            extracted_text=result.text,
            extraction_confidence=confidence,
            processing_errors=[],
            processing_completed_at=finished,
            processing_time_ms=elapsed_ms,
        ))
        logger.info(
            "Ingest completed | doc=%s chars=%d confidence=%.3f elapsed_ms=%d",
            doc.document_id, len(result.text), confidence, elapsed_ms,
        )

        stored = await self._store_artifact(doc, result.text, confidence, elapsed_ms, finished)
        return Completed(
            document_id=doc.document_id,
            confidence=confidence,
            processing_time=elapsed_ms,
            artifact_stored=stored,
        )

    async def _mark_failed(self, doc: DocumentRecord, message: str) -> Failed:
        error = extraction_error(message)
        await self._records.apply(doc.document_id, ProcessingPatch(
            status=ProcessingStatus.FAILED.value,
            extracted_text=None,
            extraction_confidence=None,
            processing_errors=[error],
            processing_completed_at=_now(),
        ))
        logger.error("Ingest failed | doc=%s error=%s", doc.document_id, message)
        return Failed(reason=error, document_id=doc.document_id)

    async def _store_artifact(
        self,
        doc: DocumentRecord,
        text: str,
        confidence: float,
        elapsed_ms: int,
        processed_at: datetime,
    ) -> bool:
        key = processed_object_key(doc.company_id, doc.assessment_id, doc.document_id)
        body = json.dumps({
            "documentId":     doc.document_id,
            "extractedText":  text,
            "confidence":     confidence,
            "processingTime": elapsed_ms,
            "processedAt":    processed_at.isoformat(),
            "metadata": {
                "originalKey":       doc.s3_key,
                "processingVersion": PROCESSING_VERSION,
            },
        }).encode("utf-8")

        try:
            await self._storage.put_object(key, body, "application/json")
        except Exception as exc:
            # Secondary artifact only; the document stays completed.
            logger.warning("Artifact write failed | doc=%s key=%s error=%s",
                           doc.document_id, key, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Async job completion
    # ------------------------------------------------------------------

    async def complete_job(self, doc: DocumentRecord, job: JobStatus) -> IngestionOutcome:
        """Apply a Textract job result to a document left in `processing`."""
        if doc.status != ProcessingStatus.PROCESSING.value or doc.textract_job_id != job.job_id:
            return Skipped(reason="Document is no longer waiting for this job", key=doc.s3_key)

        if not job.finished:
            return Submitted(document_id=doc.document_id, job_id=job.job_id)

        if job.status == "FAILED" or job.result is None:
            return await self._mark_failed(doc, job.status_message or f"job {job.job_id} {job.status}")

        elapsed_ms = job.result.processing_time_ms
        if doc.processing_started_at is not None:
            elapsed_ms = int((_now() - doc.processing_started_at).total_seconds() * 1000)
        return await self._mark_completed(doc, job.result, elapsed_ms)

    async def poll_jobs(self, limit: int) -> list[IngestionOutcome]:
        docs = await self._records.list_async_jobs(limit)
        outcomes: list[IngestionOutcome] = []
        for doc in docs:
            try:
                outcomes.append(await self._poll_job(doc))
            except Exception as exc:
                # The document stays in processing and is polled again next tick.
                logger.error("Job completion crashed | doc=%s job=%s error=%s",
                             doc.document_id, doc.textract_job_id, exc, exc_info=True)
                outcomes.append(Failed(reason=f"Unexpected error: {exc}", document_id=doc.document_id))
        return outcomes

    def _job_age_seconds(self, doc: DocumentRecord) -> float | None:
        started = doc.processing_started_at
        if started is None:
            return None
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return (_now() - started).total_seconds()

    def _job_expired(self, doc: DocumentRecord) -> bool:
        age = self._job_age_seconds(doc)
        return age is not None and age > self._job_max_age

    async def _poll_job(self, doc: DocumentRecord) -> IngestionOutcome:
        if not doc.textract_job_id:
            return await self._mark_failed(doc, "async job id missing")

        try:
            job = await self._extractor.get_job_result(doc.textract_job_id)
        except Exception as exc:
            if self._job_expired(doc):
                return await self._mark_failed(
                    doc, f"job {doc.textract_job_id} status unavailable after {self._job_max_age}s: {exc}",
                )
            logger.warning("Job poll error | doc=%s job=%s error=%s",
                           doc.document_id, doc.textract_job_id, exc)
            return Failed(reason=f"Job status unavailable: {exc}", document_id=doc.document_id)

        if not job.finished and self._job_expired(doc):
            return await self._mark_failed(
                doc, f"job {job.job_id} did not finish within {self._job_max_age}s",
            )
        return await self.complete_job(doc, job)

    # ------------------------------------------------------------------
    # Retry replay
    # ------------------------------------------------------------------

    async def requeue_retries(self, limit: int) -> list[IngestionOutcome]:
        """Replay a synthetic storage event for each document reset by the retry route."""
        docs = await self._records.list_retry_requests(limit)
        outcomes: list[IngestionOutcome] = []
        for doc in docs:
            try:
                outcomes.append(await self._replay(doc))
            except Exception as exc:
                # retry_at is kept, so the next tick replays it again.
                logger.error("Retry replay crashed | doc=%s key=%s error=%s",
                             doc.document_id, doc.s3_key, exc, exc_info=True)
                outcomes.append(Failed(reason=f"Unexpected error: {exc}", document_id=doc.document_id))
        return outcomes

    async def _replay(self, doc: DocumentRecord) -> IngestionOutcome:
        info = await self._storage.head_object(doc.s3_key)
        if info is None:
            error = extraction_error("source object not found; upload the file again")
            await self._records.apply(doc.document_id, ProcessingPatch(
                status=ProcessingStatus.FAILED.value,
                processing_errors=[error],
                retry_at=None,
            ))
            logger.warning("Retry replay failed | doc=%s key=%s missing", doc.document_id, doc.s3_key)
            return Failed(reason=error, document_id=doc.document_id)

        return await self.process_record(
            synthetic_record(doc.s3_bucket, doc.s3_key, info.size_bytes)
        )

    async def purge_expired_uploads(self) -> int:
        """Delete pending_upload records whose grant was never used."""
        purged = await self._records.purge_expired_uploads(_now())
        for doc in purged:
            logger.info("Purged expired upload | doc=%s assessment=%s", doc.document_id, doc.assessment_id)
        return len(purged)


# ---------------------------------------------------------------------------
# Event record helpers
# ---------------------------------------------------------------------------

def synthetic_record(bucket: str, key: str, size: int) -> dict:
    """An S3 ObjectCreated record shaped like the ones S3 delivers."""
    return {
        "eventSource": "aws:s3",
        "eventName":   "ObjectCreated:Put",
        "s3": {
            "bucket": {"name": bucket},
            "object": {"key": key, "size": size},
        },
    }


def _event_key(record: dict) -> str:
    try:
        return str(record["s3"]["object"]["key"])
    except (KeyError, TypeError):
        return ""


def _event_bucket(record: dict) -> str | None:
    try:
        return record["s3"]["bucket"]["name"] or None
    except (KeyError, TypeError):
        return None


def _event_size(record: dict) -> int | None:
    try:
        size = record["s3"]["object"]["size"]
    except (KeyError, TypeError):
        return None
    if isinstance(size, bool) or not isinstance(size, (int, float)):
        return None
    return int(size)
