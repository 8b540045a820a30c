"""
Document Management Service

Read and maintenance operations behind the document routes:

  list_documents     filtered, newest-first, paginated listing
  get_document       full details incl. extracted text and errors
  delete_document    raw + processed objects (best-effort), then the record
  update_document    originalFilename and/or category (manual override)
  retry_processing   failed → pending; the maintenance beat replays extraction
  get_statistics     totals by status / category, size, mean processing time

Tenant isolation: every document read compares the record's company_id with
the caller's; a foreign document is reported as DOCUMENT_NOT_FOUND so its
existence never leaks. Assessment-level reads (list, statistics) report a
foreign assessment as ACCESS_DENIED, matching the upload route.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime, timezone

from assessment_docs.auth.token import TokenPayload
from assessment_docs.core.config import settings
from assessment_docs.schemas.documents import (
    PREVIEWABLE_CONTENT_TYPES,
    DocumentDetails,
    DocumentErrors,
    DocumentListItem,
    DocumentListResponse,
    DocumentSearchOptions,
    DocumentStatistics,
    DocumentUpdateRequest,
    Pagination,
    ProcessingStatus,
    SuggestedCategory,
    is_business_domain,
)
from assessment_docs.services.records import (
    CategorizationPatch,
    DocumentRecord,
    DocumentRecordStore,
    MetadataPatch,
    ProcessingPatch,
)
from assessment_docs.services.uploads import validate_filename
from assessment_docs.storage.s3 import ObjectStore, processed_object_key

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _suggestions(raw: list[dict]) -> list[SuggestedCategory]:
    out: list[SuggestedCategory] = []
    for item in raw or []:
        try:
            out.append(SuggestedCategory.model_validate(item))
        except ValueError:
            logger.warning("Dropping malformed stored suggestion: %r", item)
    return out


class DocumentService:
    """Stateless service object — one instance per request."""

    def __init__(self, records: DocumentRecordStore, storage: ObjectStore) -> None:
        self._records = records
        self._storage = storage

    # ------------------------------------------------------------------
    # Tenant guards
    # ------------------------------------------------------------------

    async def _require_assessment(self, assessment_id: str, user: TokenPayload) -> None:
        if not assessment_id or not assessment_id.strip():
            raise DocumentErrors.missing_assessment_id()
        assessment = await self._records.get_assessment(assessment_id)
        if assessment is None:
            raise DocumentErrors.assessment_not_found()
        if assessment.company_id != user.company_id:
            raise DocumentErrors.access_denied()

    async def _require_document(
        self, assessment_id: str, document_id: str, user: TokenPayload
    ) -> DocumentRecord:
        if not document_id or not document_id.strip():
            raise DocumentErrors.invalid_document_id()
        doc = await self._records.get_for_assessment(assessment_id, document_id)
        if doc is None or doc.company_id != user.company_id:
            raise DocumentErrors.document_not_found()
        return doc

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    async def _download_url(self, doc: DocumentRecord) -> str | None:
        if doc.status != ProcessingStatus.COMPLETED.value:
            return None
        try:
            grant = await self._storage.generate_presigned_get(
                doc.s3_key, settings.download_url_ttl_seconds
            )
        except Exception as exc:
            logger.warning("Download URL failed | doc=%s error=%s", doc.document_id, exc)
            return None
        return grant.url

    async def _list_item(self, doc: DocumentRecord) -> DocumentListItem:
        return DocumentListItem(
            document_id=doc.document_id,
            original_filename=doc.original_filename,
            file_size=doc.file_size,
            mime_type=doc.mime_type,
            uploaded_at=doc.uploaded_at,
            uploaded_by=doc.uploaded_by,
            status=ProcessingStatus(doc.status),
            category=doc.category,
            confidence=doc.category_confidence,
            manual_override=doc.manual_override,
            has_preview=doc.mime_type in PREVIEWABLE_CONTENT_TYPES,
            download_url=await self._download_url(doc),
        )

    async def _details(self, doc: DocumentRecord) -> DocumentDetails:
        item = await self._list_item(doc)
        return DocumentDetails(
            **item.model_dump(),
            extracted_text=doc.extracted_text,
            processing_errors=list(doc.processing_errors),
            textract_job_id=doc.textract_job_id,
            processing_time=doc.processing_time_ms,
            suggested_categories=_suggestions(doc.suggested_categories),
            s3_key=doc.s3_key,
            encryption_status=doc.encryption_status,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_documents(
        self,
        assessment_id: str,
        options: DocumentSearchOptions,
        user: TokenPayload,
    ) -> DocumentListResponse:
        await self._require_assessment(assessment_id, user)

        docs = [
            d for d in await self._records.list_for_assessment(assessment_id)
            if d.company_id == user.company_id
        ]

        if options.category:
            docs = [d for d in docs if d.category == options.category]
        if options.status:
            docs = [d for d in docs if d.status == options.status]
        if options.uploaded_by:
            docs = [d for d in docs if d.uploaded_by == options.uploaded_by]
        if options.date_from:
            start = _aware(options.date_from)
            docs = [d for d in docs if _aware(d.uploaded_at) >= start]
        if options.date_to:
            end = _aware(options.date_to)
            docs = [d for d in docs if _aware(d.uploaded_at) <= end]
        if options.search:
            needle = options.search.lower()
            docs = [
                d for d in docs
                if needle in d.original_filename.lower()
                or needle in (d.extracted_text or "").lower()
            ]

        docs.sort(key=lambda d: _aware(d.uploaded_at), reverse=True)

        start_idx = (options.page - 1) * options.limit
        page_docs = docs[start_idx:start_idx + options.limit]

        return DocumentListResponse(
            documents=[await self._list_item(d) for d in page_docs],
            pagination=Pagination(
                page=options.page,
                limit=options.limit,
                total=len(docs),
                total_pages=math.ceil(len(docs) / options.limit),
            ),
        )

    async def get_document(
        self, assessment_id: str, document_id: str, user: TokenPayload
    ) -> DocumentDetails:
        doc = await self._require_document(assessment_id, document_id, user)
        return await self._details(doc)

    async def delete_document(
        self, assessment_id: str, document_id: str, user: TokenPayload
    ) -> None:
        doc = await self._require_document(assessment_id, document_id, user)

        keys = (
            doc.s3_key,
            processed_object_key(doc.company_id, doc.assessment_id, doc.document_id),
        )
        for key in keys:
            try:
                await self._storage.delete_object(key)
            except Exception as exc:
                # Record deletion proceeds; orphaned objects are reclaimed by bucket lifecycle.
                logger.warning("S3 delete failed | doc=%s key=%s error=%s",
                               doc.document_id, key, exc)

        await self._records.delete(doc.document_id)
        logger.info("Document deleted | assessment=%s doc=%s user=%s",
                    assessment_id, document_id, user.sub)

    async def update_document(
        self,
        assessment_id: str,
        document_id: str,
        request: DocumentUpdateRequest,
        user: TokenPayload,
    ) -> DocumentDetails:
        if request.original_filename is None and request.category is None:
            raise DocumentErrors.no_valid_updates()
        if request.category is not None and not is_business_domain(request.category):
            raise DocumentErrors.invalid_domain()
        if request.original_filename is not None:
            validate_filename(request.original_filename)

        doc = await self._require_document(assessment_id, document_id, user)

        if request.original_filename is not None:
            patch = MetadataPatch(original_filename=request.original_filename)
            await self._records.apply(doc.document_id, patch)
            patch.apply_to(doc)

        if request.category is not None:
            patch = CategorizationPatch(
                category=request.category,
                category_confidence=1.0,
                manual_override=True,
                suggested_categories=list(doc.suggested_categories),
                categorized_at=datetime.now(timezone.utc),
                categorized_by=user.sub,
            )
            await self._records.apply(doc.document_id, patch)
            patch.apply_to(doc)

        logger.info(
            "Document updated | doc=%s filename=%s category=%s user=%s",
            doc.document_id, request.original_filename is not None,
            request.category or "-", user.sub,
        )
        return await self._details(doc)

    async def retry_processing(
        self, assessment_id: str, document_id: str, user: TokenPayload
    ) -> DocumentDetails:
        doc = await self._require_document(assessment_id, document_id, user)
        if doc.status != ProcessingStatus.FAILED.value:
            raise DocumentErrors.invalid_state(doc.status, ProcessingStatus.FAILED.value)

        patch = ProcessingPatch(
            status=ProcessingStatus.PENDING.value,
            processing_errors=[],
            extracted_text=None,
            retry_at=datetime.now(timezone.utc),
        )
        await self._records.apply(doc.document_id, patch)
        patch.apply_to(doc)

        logger.info("Retry requested | doc=%s user=%s", doc.document_id, user.sub)
        return await self._details(doc)

    async def get_statistics(self, assessment_id: str, user: TokenPayload) -> DocumentStatistics:
        await self._require_assessment(assessment_id, user)
        docs = [
            d for d in await self._records.list_for_assessment(assessment_id)
            if d.company_id == user.company_id
        ]

        times = [d.processing_time_ms for d in docs if d.processing_time_ms]
        return DocumentStatistics(
            total=len(docs),
            by_status=dict(Counter(d.status for d in docs)),
            by_category=dict(Counter(d.category or UNCATEGORIZED for d in docs)),
            total_size=sum(d.file_size for d in docs),
            average_processing_time=round(sum(times) / len(times)) if times else None,
        )
