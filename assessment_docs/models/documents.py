"""
SQLAlchemy ORM Models — Assessments & Documents

Using SQLAlchemy mapped classes (2.x style) for full async support.

Tenant isolation note: there is no database-level row security here. Every
query in services/records.py filters on company_id explicitly, and every
read path re-checks the caller's company against the loaded row.

Field groups on `documents` are written by exactly one pipeline stage each:
    metadata / storage  — upload grant issuer (and the metadata PATCH route)
    processing_*        — ingestion orchestrator (and the retry route)
    category*           — categorization engine (and the manual override seed)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Assessment model — owned by the assessment CRUD service; read-only here
# ---------------------------------------------------------------------------

class Assessment(Base):
    """The tenant-scoped container documents are uploaded into."""

    __tablename__ = "assessments"
    __table_args__ = (
        Index("idx_assessments_company_id", "company_id"),
    )

    assessment_id: Mapped[str] = mapped_column(Text, primary_key=True)
    company_id: Mapped[str]    = mapped_column(Text, nullable=False)
    name: Mapped[str]          = mapped_column(Text, nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Assessment id={self.assessment_id} company={self.company_id}>"


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload grant → extraction → categorization.

    State machine (status column):
        pending_upload — grant issued, bytes not yet written to S3
        pending        — waiting for (re-)extraction (set by the retry route)
        processing     — Textract running, sync call or async job
        completed      — extracted_text populated
        failed         — extraction error recorded in processing_errors

    expires_at is set only while status='pending_upload'; the maintenance
    beat task purges rows whose grant was never used.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_upload', 'pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "category_confidence IS NULL OR (category_confidence >= 0 AND category_confidence <= 1)",
            name="documents_confidence_range",
        ),
        Index("idx_documents_assessment", "company_id", "assessment_id"),
        Index("idx_documents_status",     "status"),
        Index("idx_documents_expires_at", "expires_at"),
    )

    # Identity
    document_id: Mapped[str] = mapped_column(Text, primary_key=True)
    assessment_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("assessments.assessment_id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Tenant; always equal to the owning assessment's company_id",
    )

    # Metadata
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int]         = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str]         = mapped_column(Text, nullable=False)
    uploaded_by: Mapped[str]       = mapped_column(Text, nullable=False)
    uploaded_at: Mapped[datetime]  = mapped_column(DateTime(timezone=True), nullable=False)

    # Storage reference
    s3_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="<company>/<assessment>/raw/<document_id>.<ext>",
    )
    s3_bucket: Mapped[str]         = mapped_column(Text, nullable=False)
    encryption_status: Mapped[str] = mapped_column(Text, nullable=False, default="encrypted")

    # Processing state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending_upload",
        server_default="pending_upload",
    )
    extracted_text: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='completed'",
    )
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_errors: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
    )
    textract_job_id: Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    processing_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    retry_at: Mapped[Optional[datetime]]      = mapped_column(DateTime(timezone=True), nullable=True)

    # Categorization
    category: Mapped[Optional[str]]              = mapped_column(Text, nullable=True)
    category_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    manual_override: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    suggested_categories: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="[{domain, confidence, reasoning}], at most three",
    )
    categorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    categorized_by: Mapped[Optional[str]]      = mapped_column(Text, nullable=True)

    # Lifecycle
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.document_id} company={self.company_id} "
            f"status={self.status} file={self.original_filename!r}>"
        )
