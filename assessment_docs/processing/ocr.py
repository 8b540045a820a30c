"""
Text Extraction  —  AWS Textract
════════════════════════════════

Two entry points, chosen by the ingestion orchestrator from the object size:

  analyze(bucket, key)
    Synchronous AnalyzeDocument call against the S3 object (TABLES + FORMS).
    Used for objects below SYNC_EXTRACTION_THRESHOLD_BYTES (5 MiB).

  start_job(bucket, key) → job_id
    StartDocumentAnalysis for large objects. Returns immediately; the
    `poll_extraction_jobs` beat task later calls get_job_result(job_id) and
    hands finished results back to the orchestrator.

Both paths feed the same block parser so callers receive one
ExtractionResult shape regardless of mode:

  text        : LINE blocks joined with newlines (reading order)
  tables      : TABLE → CELL grid, row-major
  forms       : KEY_VALUE_SET key → value pairs
  confidence  : mean of every non-zero block confidence, normalized to 0–1
  page_count  : distinct Page numbers seen

The boto3 Textract client is synchronous; calls run in the default thread
executor so the event loop is never blocked.

IAM permissions required on the worker role:
  textract:AnalyzeDocument
  textract:StartDocumentAnalysis
  textract:GetDocumentAnalysis
  s3:GetObject on the documents bucket
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import partial

from botocore.exceptions import ClientError

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

FEATURE_TYPES = ["TABLES", "FORMS"]

# Upper bound for one synchronous AnalyzeDocument call
OCR_TIMEOUT_SECONDS = 120

# GetDocumentAnalysis errors that no later poll can recover from
TERMINAL_JOB_ERRORS = frozenset({
    "InvalidJobIdException",          # unknown id or past the result retention window
    "InvalidParameterException",
    "AccessDeniedException",
})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class TableData:
    rows:       list[list[str]]
    confidence: float


@dataclass
class FormField:
    key:        str
    value:      str
    confidence: float


@dataclass
class ExtractionResult:
    """
    Output of one extraction run.

    confidence         : 0.0–1.0 (Textract reports 0–100)
    processing_time_ms : wall-clock time of the Textract call(s)
    """
    text:               str
    confidence:         float
    processing_time_ms: int
    page_count:         int = 0
    tables:             list[TableData] = field(default_factory=list)
    forms:              list[FormField] = field(default_factory=list)


@dataclass
class JobStatus:
    """State of an asynchronous analysis job."""
    job_id:         str
    status:         str                  # IN_PROGRESS | SUCCEEDED | FAILED | PARTIAL_SUCCESS
    status_message: str | None = None
    result:         ExtractionResult | None = None

    @property
    def finished(self) -> bool:
        return self.status != "IN_PROGRESS"


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class TextExtractor(ABC):
    """OCR / document analysis as seen by the ingestion orchestrator."""

    @abstractmethod
    async def analyze(self, bucket: str, key: str) -> ExtractionResult:
        """Synchronous extraction. Raises on any service error."""

    @abstractmethod
    async def start_job(self, bucket: str, key: str) -> str:
        """Submit an asynchronous job and return its id."""

    @abstractmethod
    async def get_job_result(self, job_id: str) -> JobStatus:
        """Fetch job state; `result` is set once the job has succeeded."""


# ---------------------------------------------------------------------------
# Block parsing
# ---------------------------------------------------------------------------

def _child_ids(block: dict, rel_type: str = "CHILD") -> list[str]:
    for rel in block.get("Relationships") or []:
        if rel.get("Type") == rel_type:
            return list(rel.get("Ids") or [])
    return []


def _block_text(by_id: dict[str, dict], block: dict) -> str:
    """Text of a block, assembled from its child WORD blocks when needed."""
    if block.get("Text"):
        return block["Text"]
    words = (by_id.get(cid, {}).get("Text", "") for cid in _child_ids(block))
    return " ".join(w for w in words if w).strip()


def _extract_tables(by_id: dict[str, dict], table_blocks: list[dict]) -> list[TableData]:
    tables: list[TableData] = []
    for table in table_blocks:
        cells = [
            by_id[cid] for cid in _child_ids(table)
            if by_id.get(cid, {}).get("BlockType") == "CELL"
        ]
        if not cells:
            continue

        grid: dict[tuple[int, int], str] = {}
        for cell in cells:
            row, col = cell.get("RowIndex"), cell.get("ColumnIndex")
            if row is not None and col is not None:
                grid[(row, col)] = _block_text(by_id, cell)

        max_row = max((c.get("RowIndex") or 0) for c in cells)
        max_col = max((c.get("ColumnIndex") or 0) for c in cells)
        rows = [
            [grid.get((r, c), "") for c in range(1, max_col + 1)]
            for r in range(1, max_row + 1)
        ]
        tables.append(TableData(rows=rows, confidence=(table.get("Confidence") or 0.0) / 100.0))
    return tables


def _extract_forms(by_id: dict[str, dict], key_blocks: list[dict]) -> list[FormField]:
    forms: list[FormField] = []
    for key_block in key_blocks:
        value_ids = _child_ids(key_block, "VALUE")
        if not value_ids or value_ids[0] not in by_id:
            continue
        value_block = by_id[value_ids[0]]

        key_text   = _block_text(by_id, key_block)
        value_text = _block_text(by_id, value_block)
        if key_text and value_text:
            forms.append(FormField(
                key=key_text,
                value=value_text,
                confidence=min(
                    key_block.get("Confidence") or 0.0,
                    value_block.get("Confidence") or 0.0,
                ) / 100.0,
            ))
    return forms


def parse_blocks(blocks: list[dict], processing_time_ms: int) -> ExtractionResult:
    """Turn a Textract Blocks list into an ExtractionResult."""
    by_id = {b["Id"]: b for b in blocks if "Id" in b}

    lines      = [b.get("Text", "") for b in blocks if b.get("BlockType") == "LINE"]
    table_blks = [b for b in blocks if b.get("BlockType") == "TABLE"]
    key_blks   = [
        b for b in blocks
        if b.get("BlockType") == "KEY_VALUE_SET" and "KEY" in (b.get("EntityTypes") or [])
    ]

    scores = [b["Confidence"] for b in blocks if (b.get("Confidence") or 0) > 0]
    mean   = sum(scores) / len(scores) if scores else 0.0

    pages = {b.get("Page", 1) for b in blocks}

    return ExtractionResult(
        text="\n".join(lines),
        confidence=max(0.0, min(1.0, mean / 100.0)),
        processing_time_ms=processing_time_ms,
        page_count=len(pages),
        tables=_extract_tables(by_id, table_blks),
        forms=_extract_forms(by_id, key_blks),
    )


# ---------------------------------------------------------------------------
# AWS Textract
# ---------------------------------------------------------------------------

class TextractExtractor(TextExtractor):
    """
    AWS Textract AnalyzeDocument / StartDocumentAnalysis.

    Textract reads the object straight from S3, so the worker never downloads
    document bytes. An optional SNS notification channel is attached to async
    jobs when both the topic and role ARNs are configured; completion is still
    collected by polling.
    """

    def __init__(
        self,
        region: str | None = None,
        sns_topic_arn: str | None = None,
        role_arn: str | None = None,
    ) -> None:
        self._region        = region or settings.aws_region
        self._sns_topic_arn = settings.textract_sns_topic_arn if sns_topic_arn is None else sns_topic_arn
        self._role_arn      = settings.textract_role_arn if role_arn is None else role_arn
        self._client_obj    = None

    def _client(self):
        if self._client_obj is None:
            import boto3   # imported lazily; only workers need it

            self._client_obj = boto3.client("textract", region_name=self._region)
        return self._client_obj

    async def _run(self, fn, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, **kwargs))

    @staticmethod
    def _location(bucket: str, key: str) -> dict:
        return {"S3Object": {"Bucket": bucket, "Name": key}}

    # ------------------------------------------------------------------

    async def analyze(self, bucket: str, key: str) -> ExtractionResult:
        t0 = time.monotonic()
        response = await asyncio.wait_for(
            self._run(
                self._client().analyze_document,
                Document=self._location(bucket, key),
                FeatureTypes=FEATURE_TYPES,
            ),
            timeout=OCR_TIMEOUT_SECONDS,
        )

        blocks = response.get("Blocks")
        if not blocks:
            raise RuntimeError("No blocks returned from Textract analysis")

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        result = parse_blocks(blocks, elapsed_ms)
        logger.info(
            "Textract sync | key=%s pages=%d chars=%d confidence=%.3f elapsed_ms=%d",
            key, result.page_count, len(result.text), result.confidence, elapsed_ms,
        )
        return result

    async def start_job(self, bucket: str, key: str) -> str:
        kwargs: dict = {
            "DocumentLocation": self._location(bucket, key),
            "FeatureTypes":     FEATURE_TYPES,
        }
        if self._sns_topic_arn and self._role_arn:
            kwargs["NotificationChannel"] = {
                "SNSTopicArn": self._sns_topic_arn,
                "RoleArn":     self._role_arn,
            }

        response = await self._run(self._client().start_document_analysis, **kwargs)
        job_id = response.get("JobId")
        if not job_id:
            raise RuntimeError("Failed to start document analysis job")

        logger.info("Textract async job started | job=%s key=%s", job_id, key)
        return job_id

    async def get_job_result(self, job_id: str) -> JobStatus:
        t0 = time.monotonic()
        blocks: list[dict] = []
        next_token: str | None = None

        while True:
            kwargs = {"JobId": job_id}
            if next_token:
                kwargs["NextToken"] = next_token

            try:
                response = await self._run(self._client().get_document_analysis, **kwargs)
            except ClientError as exc:
                error = exc.response.get("Error", {})
                code  = error.get("Code", "")
                if code not in TERMINAL_JOB_ERRORS:
                    raise
                logger.warning("Textract job unrecoverable | job=%s code=%s", job_id, code)
                return JobStatus(job_id=job_id, status="FAILED",
                                 status_message=f"{code}: {error.get('Message') or 'job result unavailable'}")

            status = response.get("JobStatus")
            if not status:
                raise RuntimeError("Invalid job status response")

            if status == "IN_PROGRESS":
                return JobStatus(job_id=job_id, status=status,
                                 status_message=response.get("StatusMessage"))
            if status == "FAILED":
                return JobStatus(job_id=job_id, status=status,
                                 status_message=response.get("StatusMessage") or "Analysis failed")

            blocks.extend(response.get("Blocks") or [])
            next_token = response.get("NextToken")
            if not next_token:
                break   # all result pages retrieved

        if not blocks:
            return JobStatus(job_id=job_id, status="FAILED",
                             status_message="No blocks returned from completed analysis")

        result = parse_blocks(blocks, int((time.monotonic() - t0) * 1000))
        return JobStatus(job_id=job_id, status=status, result=result)
