"""
Composed FastAPI Dependencies

Wires the request context: a transactional DB session, the record store on
top of it, the S3 object store, the classifier, and the three document
services. Route handlers import from here, never from db/session, storage
or llm directly.

Adapters that hold network clients (S3ObjectStore, OpenAIClassifier) are
built once per process and cached; the record store and services are cheap
and built per request around the request's session. Tests replace any of
these through app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from assessment_docs.db.session import get_db
from assessment_docs.llm.classifier import OpenAIClassifier, TextClassifier
from assessment_docs.services.categorization import CategorizationEngine
from assessment_docs.services.documents import DocumentService
from assessment_docs.services.records import DocumentRecordStore, SqlDocumentRecordStore
from assessment_docs.services.uploads import UploadGrantIssuer
from assessment_docs.storage.s3 import ObjectStore, S3ObjectStore


# ---------------------------------------------------------------------------
# 1. Adapters
# ---------------------------------------------------------------------------

def get_record_store(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> DocumentRecordStore:
    return SqlDocumentRecordStore(session=db)


@lru_cache(maxsize=1)
def get_object_store() -> ObjectStore:
    return S3ObjectStore()


@lru_cache(maxsize=1)
def get_classifier() -> TextClassifier:
    return OpenAIClassifier()


Records    = Annotated[DocumentRecordStore, Depends(get_record_store)]
Storage    = Annotated[ObjectStore,         Depends(get_object_store)]
Classifier = Annotated[TextClassifier,      Depends(get_classifier)]


# ---------------------------------------------------------------------------
# 2. Services
# ---------------------------------------------------------------------------

def get_upload_issuer(records: Records, storage: Storage) -> UploadGrantIssuer:
    return UploadGrantIssuer(records=records, storage=storage)


def get_categorization_engine(records: Records, classifier: Classifier) -> CategorizationEngine:
    return CategorizationEngine(records=records, classifier=classifier)


def get_document_service(records: Records, storage: Storage) -> DocumentService:
    return DocumentService(records=records, storage=storage)


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

UploadIssuer = Annotated[UploadGrantIssuer,    Depends(get_upload_issuer)]
Categorizer  = Annotated[CategorizationEngine, Depends(get_categorization_engine)]
Documents    = Annotated[DocumentService,      Depends(get_document_service)]
