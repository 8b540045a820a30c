"""
Document Record Store

DocumentRecord is the storage-agnostic view of one row of `documents` that
every service works with. Writes never replace a whole record: each pipeline
stage submits a typed patch naming only the fields it owns, and the SQL store
turns that into a single targeted UPDATE.

    MetadataPatch        metadata route        original_filename
    ProcessingPatch      orchestrator / retry  status, extracted_text, processing_* …
    CategorizationPatch  categorization        category, confidence, suggestions …

Fields left at UNSET are not written; fields set to None are cleared.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, AsyncIterator

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assessment_docs.models.documents import Assessment, Document

logger = logging.getLogger(__name__)


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AssessmentRef:
    assessment_id: str
    company_id:    str


@dataclass
class DocumentRecord:
    document_id:       str
    assessment_id:     str
    company_id:        str
    original_filename: str
    file_size:         int
    mime_type:         str
    uploaded_by:       str
    uploaded_at:       datetime
    s3_key:            str
    s3_bucket:         str
    encryption_status: str = "encrypted"

    status:                  str = "pending_upload"
    extracted_text:          str | None = None
    extraction_confidence:   float | None = None
    processing_errors:       list[str] = field(default_factory=list)
    textract_job_id:         str | None = None
    processing_method:       str | None = None
    processing_started_at:   datetime | None = None
    processing_completed_at: datetime | None = None
    processing_time_ms:      int | None = None
    retry_at:                datetime | None = None

    category:             str | None = None
    category_confidence:  float | None = None
    manual_override:      bool = False
    suggested_categories: list[dict] = field(default_factory=list)
    categorized_at:       datetime | None = None
    categorized_by:       str | None = None

    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------

class _Patch:
    def values(self) -> dict[str, Any]:
        """Column → value for every field that was explicitly set."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)               # type: ignore[arg-type]
            if getattr(self, f.name) is not UNSET
        }

    def apply_to(self, record: DocumentRecord) -> None:
        for name, value in self.values().items():
            setattr(record, name, value)


@dataclass
class MetadataPatch(_Patch):
    original_filename: Any = UNSET


@dataclass
class ProcessingPatch(_Patch):
    status:                  Any = UNSET
    extracted_text:          Any = UNSET
    extraction_confidence:   Any = UNSET
    processing_errors:       Any = UNSET
    textract_job_id:         Any = UNSET
    processing_method:       Any = UNSET
    processing_started_at:   Any = UNSET
    processing_completed_at: Any = UNSET
    processing_time_ms:      Any = UNSET
    retry_at:                Any = UNSET
    expires_at:              Any = UNSET


@dataclass
class CategorizationPatch(_Patch):
    """Always a full overwrite of the categorization group."""
    category:             str
    category_confidence:  float
    manual_override:      bool
    suggested_categories: list[dict]
    categorized_at:       datetime
    categorized_by:       str


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class DocumentRecordStore(ABC):
    """Persistence of document state as seen by the pipeline services."""

    @abstractmethod
    async def get_assessment(self, assessment_id: str) -> AssessmentRef | None:
        ...

    @abstractmethod
    async def create(self, record: DocumentRecord) -> None:
        ...

    @abstractmethod
    async def get(self, document_id: str) -> DocumentRecord | None:
        """Lookup by id alone; used by the storage-event path."""

    @abstractmethod
    async def get_for_assessment(self, assessment_id: str, document_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def list_for_assessment(self, assessment_id: str) -> list[DocumentRecord]:
        ...

    @abstractmethod
    async def total_size(self, assessment_id: str) -> int:
        """Sum of file_size across the assessment's documents."""

    @abstractmethod
    async def apply(self, document_id: str, patch: _Patch) -> None:
        ...

    @abstractmethod
    async def delete(self, document_id: str) -> None:
        ...

    @abstractmethod
    async def list_async_jobs(self, limit: int) -> list[DocumentRecord]:
        """Documents in `processing` that carry a Textract job id."""

    @abstractmethod
    async def list_retry_requests(self, limit: int) -> list[DocumentRecord]:
        """Documents reset to `pending` by the retry route."""

    @abstractmethod
    async def purge_expired_uploads(self, now: datetime) -> list[DocumentRecord]:
        """Delete `pending_upload` rows past expires_at and return them."""


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

def _to_record(row: Document) -> DocumentRecord:
    return DocumentRecord(
        document_id=row.document_id,
        assessment_id=row.assessment_id,
        company_id=row.company_id,
        original_filename=row.original_filename,
        file_size=row.file_size,
        mime_type=row.mime_type,
        uploaded_by=row.uploaded_by,
        uploaded_at=row.uploaded_at,
        s3_key=row.s3_key,
        s3_bucket=row.s3_bucket,
        encryption_status=row.encryption_status,
        status=row.status,
        extracted_text=row.extracted_text,
        extraction_confidence=row.extraction_confidence,
        processing_errors=list(row.processing_errors or []),
        textract_job_id=row.textract_job_id,
        processing_method=row.processing_method,
        processing_started_at=row.processing_started_at,
        processing_completed_at=row.processing_completed_at,
        processing_time_ms=row.processing_time_ms,
        retry_at=row.retry_at,
        category=row.category,
        category_confidence=row.category_confidence,
        manual_override=row.manual_override,
        suggested_categories=list(row.suggested_categories or []),
        categorized_at=row.categorized_at,
        categorized_by=row.categorized_by,
        expires_at=row.expires_at,
    )


def _record_columns(record: DocumentRecord) -> dict[str, Any]:
    return {f.name: getattr(record, f.name) for f in fields(record)}


class SqlDocumentRecordStore(DocumentRecordStore):
    """
    PostgreSQL-backed store.

    Request path: bound to the caller-owned AsyncSession from get_db(); the
    route's transaction covers every call and this class never commits.

    Worker path: SqlDocumentRecordStore.per_call() opens a short session and
    transaction for each call, so concurrently processed event records never
    share a session.
    """

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        if session is None and session_factory is None:
            raise ValueError("SqlDocumentRecordStore needs a session or a session factory")
        self._session = session
        self._factory = session_factory

    @classmethod
    def per_call(cls, session_factory: async_sessionmaker[AsyncSession] | None = None) -> "SqlDocumentRecordStore":
        if session_factory is None:
            from assessment_docs.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        return cls(session_factory=session_factory)

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        async with self._factory() as session:      # type: ignore[misc]
            async with session.begin():
                yield session

    # ------------------------------------------------------------------

    async def get_assessment(self, assessment_id: str) -> AssessmentRef | None:
        async with self._scope() as s:
            row = await s.get(Assessment, assessment_id)
        if row is None:
            return None
        return AssessmentRef(assessment_id=row.assessment_id, company_id=row.company_id)

    async def create(self, record: DocumentRecord) -> None:
        async with self._scope() as s:
            await s.execute(insert(Document).values(**_record_columns(record)))
        logger.debug("Document row created | doc=%s", record.document_id)

    async def get(self, document_id: str) -> DocumentRecord | None:
        async with self._scope() as s:
            row = await s.get(Document, document_id, populate_existing=True)
            return _to_record(row) if row is not None else None

    async def get_for_assessment(self, assessment_id: str, document_id: str) -> DocumentRecord | None:
        async with self._scope() as s:
            result = await s.execute(
                select(Document).where(
                    Document.assessment_id == assessment_id,
                    Document.document_id == document_id,
                )
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row is not None else None

    async def list_for_assessment(self, assessment_id: str) -> list[DocumentRecord]:
        async with self._scope() as s:
            result = await s.execute(
                select(Document)
                .where(Document.assessment_id == assessment_id)
                .order_by(Document.uploaded_at.desc())
            )
            return [_to_record(r) for r in result.scalars().all()]

    async def total_size(self, assessment_id: str) -> int:
        async with self._scope() as s:
            result = await s.execute(
                select(func.coalesce(func.sum(Document.file_size), 0))
                .where(Document.assessment_id == assessment_id)
            )
            return int(result.scalar_one())

    async def apply(self, document_id: str, patch: _Patch) -> None:
        values = patch.values()
        if not values:
            return
        async with self._scope() as s:
            await s.execute(
                update(Document)
                .where(Document.document_id == document_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        logger.debug("Document patched | doc=%s fields=%s", document_id, sorted(values))

    async def delete(self, document_id: str) -> None:
        async with self._scope() as s:
            await s.execute(delete(Document).where(Document.document_id == document_id))

    async def list_async_jobs(self, limit: int) -> list[DocumentRecord]:
        async with self._scope() as s:
            result = await s.execute(
                select(Document)
                .where(
                    Document.status == "processing",
                    Document.textract_job_id.is_not(None),
                    Document.processing_method == "async",
                )
                .order_by(Document.processing_started_at)
                .limit(limit)
            )
            return [_to_record(r) for r in result.scalars().all()]

    async def list_retry_requests(self, limit: int) -> list[DocumentRecord]:
        async with self._scope() as s:
            result = await s.execute(
                select(Document)
                .where(Document.status == "pending", Document.retry_at.is_not(None))
                .order_by(Document.retry_at)
                .limit(limit)
            )
            return [_to_record(r) for r in result.scalars().all()]

    async def purge_expired_uploads(self, now: datetime) -> list[DocumentRecord]:
        async with self._scope() as s:
            result = await s.execute(
                delete(Document)
                .where(
                    Document.status == "pending_upload",
                    Document.expires_at.is_not(None),
                    Document.expires_at < now,
                )
                .returning(Document)
            )
            return [_to_record(r) for r in result.scalars().all()]
