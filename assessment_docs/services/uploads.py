"""
Upload Grant Issuer

Issues a short-lived presigned PUT for a single document and records the
document in `pending_upload`. The bytes never pass through the API; S3 calls
back (storage event → ingestion orchestrator) once the client's PUT lands.

Validation order (each a distinct error code, first failure wins):
  1. filename      → INVALID_FILENAME
  2. content type  → UNSUPPORTED_FILE_TYPE
  3. size          → INVALID_FILE_SIZE / FILE_TOO_LARGE
     domain        → INVALID_DOMAIN (optional field)
  4. assessment    → ASSESSMENT_NOT_FOUND / ACCESS_DENIED
  5. quota         → STORAGE_LIMIT_EXCEEDED

Security invariants enforced here:
  - company_id is ALWAYS taken from the verified JWT, never the request body.
  - The S3 key is constructed server-side from server-controlled segments.
  - The presigned URL is bound to the exact key and content type.

The quota check is read-then-decide without a lock: two concurrent grants
can each pass against the same total. Enforcement is best-effort.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import datetime, timedelta, timezone

from assessment_docs.auth.token import TokenPayload
from assessment_docs.core.config import settings
from assessment_docs.schemas.documents import (
    ALLOWED_CONTENT_TYPES,
    MAX_ASSESSMENT_STORAGE_BYTES,
    MAX_FILE_SIZE_BYTES,
    PENDING_UPLOAD_RETENTION_SECONDS,
    DocumentErrors,
    ProcessingStatus,
    UploadGrantRequest,
    UploadGrantResponse,
    is_business_domain,
)
from assessment_docs.services.records import DocumentRecord, DocumentRecordStore
from assessment_docs.storage.s3 import ObjectStore, raw_object_key

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Filename validation
# ---------------------------------------------------------------------------

MAX_FILENAME_LENGTH = 255

_UNSAFE_CHARS    = re.compile(r'[<>:"|?*/\\\x00-\x1f\x7f]')
_RESERVED_DEVICE = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\..*)?$", re.IGNORECASE)


def validate_filename(filename: object) -> str:
    """Return the filename unchanged, or raise INVALID_FILENAME."""
    if not isinstance(filename, str) or not filename.strip():
        raise DocumentErrors.invalid_filename("Valid filename is required")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise DocumentErrors.invalid_filename(
            f"Filename too long (max {MAX_FILENAME_LENGTH} characters)"
        )
    if ".." in filename or _UNSAFE_CHARS.search(filename) or _RESERVED_DEVICE.match(filename.strip()):
        raise DocumentErrors.invalid_filename("Filename contains invalid characters")
    return filename


def validate_size(size: object) -> int:
    # bool is an int subclass; JSON true must not pass as size 1
    if isinstance(size, bool) or not isinstance(size, (int, float)):
        raise DocumentErrors.invalid_file_size()
    if not math.isfinite(size) or size <= 0:
        raise DocumentErrors.invalid_file_size()
    if size > MAX_FILE_SIZE_BYTES:
        raise DocumentErrors.file_too_large(int(size))
    return int(math.ceil(size))


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------

class UploadGrantIssuer:
    """
    Stateless service object — one instance per request.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(self, records: DocumentRecordStore, storage: ObjectStore) -> None:
        self._records = records
        self._storage = storage

    async def issue(
        self,
        assessment_id: str,
        request: UploadGrantRequest,
        user: TokenPayload,
    ) -> UploadGrantResponse:
        if not assessment_id or not assessment_id.strip():
            raise DocumentErrors.missing_assessment_id()

        # ---- Step 1-3: request validation -----------------------------
        filename = validate_filename(request.filename)

        if request.content_type not in ALLOWED_CONTENT_TYPES:
            raise DocumentErrors.unsupported_file_type(request.content_type)
        content_type: str = request.content_type

        size = validate_size(request.size)

        domain = request.domain or None
        if domain is not None and not is_business_domain(domain):
            raise DocumentErrors.invalid_domain()

        # ---- Step 4: tenant ownership ---------------------------------
        assessment = await self._records.get_assessment(assessment_id)
        if assessment is None:
            raise DocumentErrors.assessment_not_found()
        if assessment.company_id != user.company_id:
            logger.warning(
                "Upload denied | assessment=%s owner=%s caller_company=%s user=%s",
                assessment_id, assessment.company_id, user.company_id, user.sub,
            )
            raise DocumentErrors.access_denied()

        # ---- Step 5: advisory quota -----------------------------------
        used = await self._records.total_size(assessment_id)
        if used + size > MAX_ASSESSMENT_STORAGE_BYTES:
            raise DocumentErrors.storage_limit_exceeded(used, size)

        # ---- Step 6: grant + record -----------------------------------
        document_id = str(uuid.uuid4())
        key = raw_object_key(user.company_id, assessment_id, document_id, filename)
        ttl = settings.upload_url_ttl_seconds

        presigned = await self._storage.generate_presigned_put(key, content_type, ttl)

        now = datetime.now(timezone.utc)
        record = DocumentRecord(
            document_id=document_id,
            assessment_id=assessment_id,
            company_id=user.company_id,
            original_filename=filename,
            file_size=size,
            mime_type=content_type,
            uploaded_by=user.sub,
            uploaded_at=now,
            s3_key=key,
            s3_bucket=self._storage.bucket,
            encryption_status="encrypted",
            status=ProcessingStatus.PENDING_UPLOAD.value,
            expires_at=now + timedelta(seconds=PENDING_UPLOAD_RETENTION_SECONDS),
        )
        if domain is not None:
            record.category             = domain
            record.category_confidence  = 1.0
            record.manual_override      = True
            record.categorized_at       = now
            record.categorized_by       = user.sub

        await self._records.create(record)

        logger.info(
            "Upload grant issued | company=%s assessment=%s doc=%s type=%s size=%d domain=%s",
            user.company_id, assessment_id, document_id, content_type, size, domain or "-",
        )

        return UploadGrantResponse(
            upload_url=presigned.url,
            document_id=document_id,
            max_file_size=MAX_FILE_SIZE_BYTES,
            allowed_types=list(ALLOWED_CONTENT_TYPES),
            expires_at=now + timedelta(seconds=ttl),
        )
