"""
Assessment Document API Router
/api/v1/assessments/{assessment_id}/documents

Implements:
  - Presigned upload grants (bytes go straight to S3, never through the API)
  - AI / manual categorization of processed documents
  - Listing, details, statistics, metadata update, retry and delete
  - Multi-tenant isolation via the JWT company_id (never the request body)
  - RBAC enforcement (viewer for reads, member for writes)
  - Uniform success envelope: { success, data, meta: { timestamp, requestId } }

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → company_id + role                 │
  │ 2. RBAC gate (member or above)                          │
  │ 3. filename → content type → size → domain checks       │
  │ 4. Assessment ownership + advisory storage quota        │
  │ 5. Presigned PUT (5 min) bound to key + content type    │
  │ 6. Record created in pending_upload → returns 200       │
  └─────────────────────────────────────────────────────────┘

Processing itself starts when S3 reports the object (see workers/).
Every failure raised below is a DocumentPipelineError; main.py renders it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Body, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from assessment_docs.auth.dependencies import Categorizer, Documents, UploadIssuer
from assessment_docs.auth.rbac import DocumentReader, DocumentWriter
from assessment_docs.schemas.documents import (
    CategorizationRequest,
    CategorizationResponse,
    DocumentDetails,
    DocumentErrors,
    DocumentListResponse,
    DocumentSearchOptions,
    DocumentStatistics,
    DocumentUpdateRequest,
    ErrorEnvelope,
    ResponseMeta,
    SuccessEnvelope,
    UploadGrantRequest,
    UploadGrantResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/assessments/{assessment_id}/documents",
    tags=["Assessment Documents"],
)

_ERRORS: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorEnvelope, "description": "Invalid request"},
    401: {"model": ErrorEnvelope, "description": "Missing or invalid JWT"},
    403: {"model": ErrorEnvelope, "description": "Insufficient role or foreign assessment"},
    404: {"model": ErrorEnvelope, "description": "Assessment or document not found"},
    500: {"model": ErrorEnvelope, "description": "Internal server error"},
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "-")


def _success(request: Request, data: BaseModel | dict, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    """Wrap `data` in the success envelope (camelCase keys)."""
    request_id = _request_id(request)
    payload = data.model_dump(mode="json", by_alias=True) if isinstance(data, BaseModel) else data
    envelope = SuccessEnvelope[Any](data=payload, meta=ResponseMeta(request_id=request_id))
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True),
        headers={"X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# POST /assessments/{assessment_id}/documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    summary="Request a presigned upload URL",
    description=(
        "Validates the declared file and returns a 5-minute presigned PUT URL. "
        "Accepts PDF, DOC, DOCX, XLS, XLSX, PNG and JPEG up to 50 MB; "
        "an assessment holds at most 500 MB."
    ),
    responses={
        200: {"description": "Upload grant issued"},
        **_ERRORS,
        413: {"model": ErrorEnvelope, "description": "File or assessment quota exceeded"},
    },
)
async def request_upload(
    request:       Request,
    assessment_id: str,
    user:          DocumentWriter,
    issuer:        UploadIssuer,
    body:          Annotated[Optional[UploadGrantRequest], Body()] = None,
) -> JSONResponse:
    if body is None:
        raise DocumentErrors.invalid_request()

    grant: UploadGrantResponse = await issuer.issue(assessment_id, body, user)
    return _success(request, grant)


# ---------------------------------------------------------------------------
# POST /assessments/{assessment_id}/documents/{document_id}/categorize
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/categorize",
    summary="Categorize a processed document",
    description=(
        "Assigns one of the twelve business domains. With manualCategory the "
        "label is taken as-is (confidence 1.0); otherwise the classifier runs, "
        "falling back to filename keywords on any classifier failure."
    ),
    responses={
        200: {"description": "Document categorized"},
        **_ERRORS,
        409: {"model": ErrorEnvelope, "description": "Already categorized"},
    },
)
async def categorize_document(
    request:       Request,
    assessment_id: str,
    document_id:   str,
    user:          DocumentWriter,
    engine:        Categorizer,
    body:          Annotated[Optional[CategorizationRequest], Body()] = None,
) -> JSONResponse:
    categorization = body or CategorizationRequest()
    # the path segment names the document
    categorization.document_id = document_id

    result: CategorizationResponse = await engine.categorize(assessment_id, categorization, user)
    return _success(request, result)


# ---------------------------------------------------------------------------
# GET /assessments/{assessment_id}/documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    summary="List documents",
    responses={200: {"description": "Page of documents, newest first"}, **_ERRORS},
)
async def list_documents(
    request:       Request,
    assessment_id: str,
    user:          DocumentReader,
    service:       Documents,
    category:      Optional[str] = None,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
    uploaded_by:   Annotated[Optional[str], Query(alias="uploadedBy")] = None,
    date_from:     Annotated[Optional[datetime], Query(alias="dateFrom")] = None,
    date_to:       Annotated[Optional[datetime], Query(alias="dateTo")] = None,
    search:        Optional[str] = None,
    page:          Annotated[int, Query(ge=1)] = 1,
    limit:         Annotated[int, Query(ge=1, le=100)] = 20,
) -> JSONResponse:
    options = DocumentSearchOptions(
        category=category,
        status=status_filter,
        uploaded_by=uploaded_by,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        limit=limit,
    )
    result: DocumentListResponse = await service.list_documents(assessment_id, options, user)
    return _success(request, result)


# ---------------------------------------------------------------------------
# GET /assessments/{assessment_id}/documents/statistics
# Declared before /{document_id} so "statistics" is never read as an id.
# ---------------------------------------------------------------------------

@router.get(
    "/statistics",
    summary="Document statistics for an assessment",
    responses={200: {"description": "Counts by status and category"}, **_ERRORS},
)
async def document_statistics(
    request:       Request,
    assessment_id: str,
    user:          DocumentReader,
    service:       Documents,
) -> JSONResponse:
    stats: DocumentStatistics = await service.get_statistics(assessment_id, user)
    return _success(request, stats)


# ---------------------------------------------------------------------------
# GET / PATCH / DELETE /assessments/{assessment_id}/documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    summary="Document details",
    responses={200: {"description": "Full document record"}, **_ERRORS},
)
async def get_document(
    request:       Request,
    assessment_id: str,
    document_id:   str,
    user:          DocumentReader,
    service:       Documents,
) -> JSONResponse:
    details: DocumentDetails = await service.get_document(assessment_id, document_id, user)
    return _success(request, details)


@router.patch(
    "/{document_id}",
    summary="Update document metadata",
    description="Only originalFilename and category may change; a category set here is a manual override.",
    responses={200: {"description": "Updated document"}, **_ERRORS},
)
async def update_document(
    request:       Request,
    assessment_id: str,
    document_id:   str,
    user:          DocumentWriter,
    service:       Documents,
    body:          Annotated[Optional[DocumentUpdateRequest], Body()] = None,
) -> JSONResponse:
    if body is None:
        raise DocumentErrors.no_valid_updates()

    details = await service.update_document(assessment_id, document_id, body, user)
    return _success(request, details)


@router.delete(
    "/{document_id}",
    summary="Delete a document",
    description="Removes the stored objects (best-effort) and the document record.",
    responses={200: {"description": "Document deleted"}, **_ERRORS},
)
async def delete_document(
    request:       Request,
    assessment_id: str,
    document_id:   str,
    user:          DocumentWriter,
    service:       Documents,
) -> JSONResponse:
    await service.delete_document(assessment_id, document_id, user)
    return _success(request, {"documentId": document_id, "deleted": True})


# ---------------------------------------------------------------------------
# POST /assessments/{assessment_id}/documents/{document_id}/retry
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/retry",
    summary="Retry failed processing",
    description=(
        "Resets a failed document to pending. Extraction is replayed by the "
        "maintenance worker on its next run."
    ),
    responses={
        200: {"description": "Document queued for reprocessing"},
        **_ERRORS,
        409: {"model": ErrorEnvelope, "description": "Document is not in failed state"},
    },
)
async def retry_processing(
    request:       Request,
    assessment_id: str,
    document_id:   str,
    user:          DocumentWriter,
    service:       Documents,
) -> JSONResponse:
    details = await service.retry_processing(assessment_id, document_id, user)
    return _success(request, details)
