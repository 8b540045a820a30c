"""
Document Pipeline — Pydantic Request/Response Schemas

Covers the document endpoints under /api/v1/assessments/{assessmentId}/documents:
  - Upload grant request / response
  - Categorization request / response
  - List, detail, statistics and metadata-update bodies
  - The success / error envelopes shared by every endpoint
  - Error factories for every documented error code

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - Wire format is camelCase (alias generator); Python attributes are snake_case.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from assessment_docs.core.errors import DocumentPipelineError


# ---------------------------------------------------------------------------
# Pipeline limits
# ---------------------------------------------------------------------------

ALLOWED_CONTENT_TYPES: tuple[str, ...] = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "image/png",
    "image/jpeg",
    "image/jpg",
)

PREVIEWABLE_CONTENT_TYPES: frozenset[str] = frozenset(
    {"image/png", "image/jpeg", "image/jpg", "application/pdf"}
)

MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024               # 50 MiB per file
MAX_ASSESSMENT_STORAGE_BYTES: int = 500 * 1024 * 1024     # 500 MiB per assessment
SYNC_EXTRACTION_THRESHOLD_BYTES: int = 5 * 1024 * 1024    # below → sync Textract
PENDING_UPLOAD_RETENTION_SECONDS: int = 24 * 60 * 60      # unreferenced grants expire


# ---------------------------------------------------------------------------
# Business domains — the fixed categorization label set
# ---------------------------------------------------------------------------

class BusinessDomain(str, Enum):
    FINANCE     = "Finance & Accounting"
    HR          = "HR & People"
    SALES       = "Sales & Marketing"
    OPERATIONS  = "Operations & Production"
    TECHNOLOGY  = "Technology & IT"
    STRATEGY    = "Strategy & Planning"
    LEGAL       = "Legal & Compliance"
    CUSTOMER    = "Customer Service"
    SUPPLY      = "Supply Chain"
    QUALITY     = "Quality Management"
    RISK        = "Risk Management"
    PRODUCT     = "Product Development"


BUSINESS_DOMAINS: tuple[str, ...] = tuple(d.value for d in BusinessDomain)


def is_business_domain(value: Any) -> bool:
    return isinstance(value, str) and value in BUSINESS_DOMAINS


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending_upload → pending → processing → completed | failed
                 failed → pending (manual retry)
    """
    PENDING_UPLOAD = "pending_upload"   # grant issued, bytes not yet in S3
    PENDING        = "pending"          # waiting for (re-)extraction
    PROCESSING     = "processing"       # Textract running (sync or async job)
    COMPLETED      = "completed"        # extracted text stored
    FAILED         = "failed"           # extraction error recorded


# ---------------------------------------------------------------------------
# Base model — camelCase on the wire
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Upload grant
# ---------------------------------------------------------------------------

class UploadGrantRequest(CamelModel):
    """
    Body of POST /assessments/{assessmentId}/documents/upload.
    Fields are untyped; the issuer validates each field in a fixed
    order so every rejection maps to its own error code.
    """
    filename:     Any = None
    content_type: Any = None
    size:         Any = None
    domain:       Any = None


class UploadGrantResponse(CamelModel):
    upload_url:    str
    document_id:   str
    max_file_size: int
    allowed_types: list[str]
    expires_at:    datetime


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------

class SuggestedCategory(CamelModel):
    domain:     str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning:  str = ""


class CategorizationRequest(CamelModel):
    document_id:        Any = None
    manual_category:    str | None = None
    force_recategorize: bool = False


class CategorizationResponse(CamelModel):
    document_id:          str
    category:             str
    confidence:           float
    suggested_categories: list[SuggestedCategory]
    manual_override:      bool


# ---------------------------------------------------------------------------
# Document management
# ---------------------------------------------------------------------------

class DocumentListItem(CamelModel):
    document_id:       str
    original_filename: str
    file_size:         int
    mime_type:         str
    uploaded_at:       datetime
    uploaded_by:       str
    status:            ProcessingStatus
    category:          str | None = None
    confidence:        float | None = None
    manual_override:   bool = False
    has_preview:       bool = False
    download_url:      str | None = None


class DocumentDetails(DocumentListItem):
    extracted_text:       str | None = None
    processing_errors:    list[str] = Field(default_factory=list)
    textract_job_id:      str | None = None
    processing_time:      int | None = None
    suggested_categories: list[SuggestedCategory] = Field(default_factory=list)
    s3_key:               str
    encryption_status:    str


class Pagination(CamelModel):
    page:        int
    limit:       int
    total:       int
    total_pages: int


class DocumentListResponse(CamelModel):
    documents:  list[DocumentListItem]
    pagination: Pagination


class DocumentSearchOptions(CamelModel):
    category:    str | None = None
    status:      str | None = None
    uploaded_by: str | None = None
    date_from:   datetime | None = None
    date_to:     datetime | None = None
    search:      str | None = None
    page:        int = Field(1, ge=1)
    limit:       int = Field(20, ge=1, le=100)


class DocumentUpdateRequest(CamelModel):
    """Only these two fields may be changed after upload."""
    original_filename: str | None = None
    category:          str | None = None


class DocumentStatistics(CamelModel):
    total:                   int
    by_status:               dict[str, int]
    by_category:             dict[str, int]
    total_size:              int
    average_processing_time: int | None = None


# ---------------------------------------------------------------------------
# Response envelopes
# ---------------------------------------------------------------------------

DataT = TypeVar("DataT")


class ResponseMeta(CamelModel):
    timestamp:  datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str


class SuccessEnvelope(CamelModel, Generic[DataT]):
    success: bool = True
    data:    DataT
    meta:    ResponseMeta


class ErrorBody(CamelModel):
    code:    str = Field(..., description="Stable machine-readable code")
    message: str = Field(..., description="Human-readable summary")


class ErrorEnvelope(CamelModel):
    success: bool = False
    error:   ErrorBody
    meta:    ResponseMeta


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps services and routes thin)
# ---------------------------------------------------------------------------

class DocumentErrors:
    """Factories for every documented error case."""

    @staticmethod
    def missing_assessment_id() -> DocumentPipelineError:
        return DocumentPipelineError("MISSING_ASSESSMENT_ID", "Assessment ID is required", 400)

    @staticmethod
    def invalid_request(message: str = "Request body is required") -> DocumentPipelineError:
        return DocumentPipelineError("INVALID_REQUEST", message, 400)

    @staticmethod
    def invalid_filename(reason: str) -> DocumentPipelineError:
        return DocumentPipelineError("INVALID_FILENAME", reason, 400)

    @staticmethod
    def unsupported_file_type(content_type: Any) -> DocumentPipelineError:
        return DocumentPipelineError(
            "UNSUPPORTED_FILE_TYPE",
            f"Unsupported file type '{content_type}'. "
            f"Allowed types: {', '.join(ALLOWED_CONTENT_TYPES)}",
            400,
        )

    @staticmethod
    def invalid_file_size() -> DocumentPipelineError:
        return DocumentPipelineError("INVALID_FILE_SIZE", "Valid file size is required", 400)

    @staticmethod
    def file_too_large(size_bytes: int) -> DocumentPipelineError:
        max_mb = MAX_FILE_SIZE_BYTES // (1024 * 1024)
        return DocumentPipelineError(
            "FILE_TOO_LARGE",
            f"File size {size_bytes:,} bytes exceeds maximum limit of {max_mb}MB",
            413,
        )

    @staticmethod
    def storage_limit_exceeded(used_bytes: int, requested_bytes: int) -> DocumentPipelineError:
        max_mb = MAX_ASSESSMENT_STORAGE_BYTES // (1024 * 1024)
        return DocumentPipelineError(
            "STORAGE_LIMIT_EXCEEDED",
            f"Total storage limit of {max_mb}MB exceeded for assessment "
            f"(used {used_bytes:,} bytes, requested {requested_bytes:,} bytes)",
            413,
        )

    @staticmethod
    def assessment_not_found() -> DocumentPipelineError:
        return DocumentPipelineError("ASSESSMENT_NOT_FOUND", "Assessment not found", 404)

    @staticmethod
    def access_denied() -> DocumentPipelineError:
        return DocumentPipelineError("ACCESS_DENIED", "Access denied to assessment", 403)

    @staticmethod
    def document_not_found() -> DocumentPipelineError:
        return DocumentPipelineError("DOCUMENT_NOT_FOUND", "Document not found", 404)

    @staticmethod
    def invalid_document_id() -> DocumentPipelineError:
        return DocumentPipelineError("INVALID_DOCUMENT_ID", "Valid document ID is required", 400)

    @staticmethod
    def document_not_processed() -> DocumentPipelineError:
        return DocumentPipelineError(
            "DOCUMENT_NOT_PROCESSED",
            "Document must be processed before categorization",
            400,
        )

    @staticmethod
    def no_text_content() -> DocumentPipelineError:
        return DocumentPipelineError(
            "NO_TEXT_CONTENT",
            "Document has no extractable text for categorization",
            400,
        )

    @staticmethod
    def already_categorized() -> DocumentPipelineError:
        return DocumentPipelineError(
            "ALREADY_CATEGORIZED",
            "Document already categorized. Use forceRecategorize=true to override",
            409,
        )

    @staticmethod
    def invalid_domain() -> DocumentPipelineError:
        return DocumentPipelineError(
            "INVALID_DOMAIN",
            f"Invalid domain. Must be one of: {', '.join(BUSINESS_DOMAINS)}",
            400,
        )

    @staticmethod
    def no_valid_updates() -> DocumentPipelineError:
        return DocumentPipelineError("NO_VALID_UPDATES", "No valid update fields provided", 400)

    @staticmethod
    def invalid_state(current: str, required: str) -> DocumentPipelineError:
        return DocumentPipelineError(
            "INVALID_STATE",
            f"Document is in status '{current}'; this action requires '{required}'",
            409,
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code for framework-raised HTTPExceptions
# (auth dependencies, unknown routes). Service failures carry their own code.
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "INVALID_REQUEST",          # malformed request
    401: "UNAUTHORIZED",             # missing/invalid/expired JWT
    403: "FORBIDDEN",                # role below the route's minimum
    404: "DOCUMENT_NOT_FOUND",       # unknown route / resource
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",         # FastAPI Pydantic validation failure
    500: "INTERNAL_ERROR",           # unhandled exception
}
