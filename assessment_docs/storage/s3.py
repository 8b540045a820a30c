"""
S3 Object Store — Tenant-Partitioned Document Blobs

Key layout (constructed server-side, never accepted from the client):

    <company_id>/<assessment_id>/raw/<document_id>.<ext>          uploaded bytes
    <company_id>/<assessment_id>/processed/<document_id>.json     extraction artifact

A tenant can never reference another tenant's prefix through the API: the
company segment comes from the verified JWT, the document id is a server
generated UUID, and the extension is reduced to [a-z0-9].

Object lifecycle:
  - Clients write raw bytes directly to S3 through a presigned PUT that is
    scoped to the exact key and content type (5 minute TTL by default).
  - The ingestion orchestrator writes the processed artifact with put_object,
    which enforces SSE-KMS when a key ARN is configured.
  - Completed documents are downloaded through a presigned GET (1 hour).
  - Deletion is a hard delete of both keys; the document record goes with it.

ObjectStore is the narrow interface the services depend on; S3ObjectStore is
the aioboto3 implementation. Tests substitute an in-memory store.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import unquote_plus

import aioboto3
from botocore.exceptions import ClientError

from assessment_docs.core.config import settings

logger = logging.getLogger(__name__)


RAW_PREFIX       = "raw"
PROCESSED_PREFIX = "processed"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    expires_in: int   # seconds
    method:     str   # GET | PUT


@dataclass(frozen=True)
class ObjectInfo:
    """Subset of HeadObject returned to callers."""
    key:          str
    size_bytes:   int
    content_type: str
    etag:         str = ""


@dataclass(frozen=True)
class RawObjectKey:
    """The identity fields encoded in a raw upload key."""
    company_id:    str
    assessment_id: str
    document_id:   str
    extension:     str
    key:           str


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

_UNSAFE_EXT_CHARS = re.compile(r"[^a-z0-9]")


def file_extension(filename: str) -> str:
    """Lower-cased extension of a client filename, reduced to [a-z0-9]."""
    if "." not in filename:
        return "unknown"
    ext = _UNSAFE_EXT_CHARS.sub("", filename.rsplit(".", 1)[-1].lower())
    return ext or "unknown"


def raw_object_key(company_id: str, assessment_id: str, document_id: str, filename: str) -> str:
    return f"{company_id}/{assessment_id}/{RAW_PREFIX}/{document_id}.{file_extension(filename)}"


def processed_object_key(company_id: str, assessment_id: str, document_id: str) -> str:
    return f"{company_id}/{assessment_id}/{PROCESSED_PREFIX}/{document_id}.json"


def parse_raw_key(key: str) -> RawObjectKey | None:
    """
    Parse `<company>/<assessment>/raw/<document_id>.<ext>`.

    S3 event notifications URL-encode object keys ('+' for spaces), so the
    key is decoded first. Returns None for anything that does not match the
    raw layout exactly; callers treat that as a no-op.
    """
    decoded = unquote_plus(key or "")
    parts = decoded.split("/")
    if len(parts) != 4 or parts[2] != RAW_PREFIX:
        return None

    company_id, assessment_id, _, filename = parts
    if not company_id or not assessment_id or "." not in filename:
        return None

    document_id, _, extension = filename.partition(".")
    if not document_id or not extension:
        return None

    return RawObjectKey(
        company_id=company_id,
        assessment_id=assessment_id,
        document_id=document_id,
        extension=extension,
        key=decoded,
    )


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ObjectStore(ABC):
    """Blob storage as seen by the document pipeline."""

    bucket: str

    @abstractmethod
    async def generate_presigned_put(
        self, key: str, content_type: str, expires_in: int
    ) -> PresignedUrl:
        """Write grant scoped to exactly `key` and `content_type`."""

    @abstractmethod
    async def generate_presigned_get(self, key: str, expires_in: int) -> PresignedUrl:
        """Read grant scoped to exactly `key`."""

    @abstractmethod
    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def head_object(self, key: str) -> ObjectInfo | None:
        """Return object metadata, or None when the key does not exist."""

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        ...


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------

class S3ObjectStore(ObjectStore):
    """
    Async S3 operations against the documents bucket.

    The aioboto3 session is created once per store; each call opens a short
    lived client context. Credentials come from the execution role in
    production and from AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY locally.
    """

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        kms_key_arn: str | None = None,
    ) -> None:
        self.bucket   = bucket or settings.s3_bucket
        self._region  = region or settings.aws_region
        self._kms_key = settings.s3_kms_key_arn if kms_key_arn is None else kms_key_arn

        session_kwargs: dict = {}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            session_kwargs = {
                "aws_access_key_id":     settings.aws_access_key_id,
                "aws_secret_access_key": settings.aws_secret_access_key,
            }
        self._session = aioboto3.Session(**session_kwargs)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    def _sse_params(self) -> dict:
        """SSE-KMS parameters; empty means the bucket default encryption applies."""
        if not self._kms_key:
            return {"ServerSideEncryption": "AES256"}
        return {
            "ServerSideEncryption": "aws:kms",
            "SSEKMSKeyId": self._kms_key,
        }

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def generate_presigned_put(
        self,
        key: str,
        content_type: str,
        expires_in: int = 300,   # 5 minutes for uploads
    ) -> PresignedUrl:
        """
        The client must send the exact Content-Type and the SSE header the
        URL was signed with; S3 rejects the PUT otherwise.
        """
        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket":      self.bucket,
                    "Key":         key,
                    "ContentType": content_type,
                    **self._sse_params(),
                },
                ExpiresIn=expires_in,
            )
        return PresignedUrl(url=url, expires_in=expires_in, method="PUT")

    async def generate_presigned_get(
        self,
        key: str,
        expires_in: int = 3600,
    ) -> PresignedUrl:
        async with self._client() as s3:
            url = await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        return PresignedUrl(url=url, expires_in=expires_in, method="GET")

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                **self._sse_params(),
            )
        logger.info("S3 put ok | key=%s size=%d", key, len(body))

    async def head_object(self, key: str) -> ObjectInfo | None:
        async with self._client() as s3:
            try:
                resp = await s3.head_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                if exc.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                    return None
                raise
        return ObjectInfo(
            key=key,
            size_bytes=int(resp.get("ContentLength", 0)),
            content_type=resp.get("ContentType", "application/octet-stream"),
            etag=resp.get("ETag", "").strip('"'),
        )

    async def delete_object(self, key: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info("S3 delete | key=%s", key)
