"""
Per-record outcomes of the ingestion orchestrator.

Every storage-event record resolves to exactly one of these, so callers and
tests can assert on what happened instead of reading logs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


@dataclass(frozen=True)
class Completed:
    document_id:     str
    confidence:      float
    processing_time: int            # ms
    artifact_stored: bool
    kind: Literal["completed"] = "completed"


@dataclass(frozen=True)
class Submitted:
    document_id: str
    job_id:      str
    kind: Literal["submitted"] = "submitted"


@dataclass(frozen=True)
class Failed:
    reason:      str
    document_id: str | None = None
    kind: Literal["failed"] = "failed"


@dataclass(frozen=True)
class Skipped:
    reason: str
    key:    str = ""
    kind: Literal["skipped"] = "skipped"


IngestionOutcome = Union[Completed, Submitted, Failed, Skipped]
