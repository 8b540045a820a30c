"""
Pipeline error type.

Services raise DocumentPipelineError with a stable machine-readable code;
the FastAPI exception handlers in main.py turn it into the uniform error
envelope. Build instances through the factories in
assessment_docs.schemas.documents.DocumentErrors rather than directly.
"""

from __future__ import annotations


class DocumentPipelineError(Exception):
    """A client-visible failure with an HTTP status and an error code."""

    def __init__(self, code: str, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"DocumentPipelineError(code={self.code!r}, status={self.status_code})"
