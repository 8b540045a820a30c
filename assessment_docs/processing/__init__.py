"""
Document Processing Package
════════════════════════════

Text extraction for uploaded assessment documents.

Modules
───────
  ocr.py   Textract adapter: synchronous AnalyzeDocument for small files,
           StartDocumentAnalysis / GetDocumentAnalysis jobs for large ones,
           and the block parser shared by both (text, tables, forms).

Design principles
─────────────────
  • The extractor is stateless and dependency-injected behind TextExtractor.
  • Extraction runs in the worker process, never in the API process.
"""

from assessment_docs.processing.ocr import ExtractionResult, JobStatus, TextExtractor, TextractExtractor

__all__ = [
    "ExtractionResult",
    "JobStatus",
    "TextExtractor",
    "TextractExtractor",
]
