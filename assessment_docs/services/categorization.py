"""
Categorization Engine

Labels a completed document with one of the twelve business domains.

Paths:
  manual     manualCategory supplied → that label, confidence 1.0,
             manual_override=True, no classifier call
  automatic  classifier prompt (filename + truncated text + numbered domain
             list), JSON response validated against the domain list
  fallback   any classifier failure (timeout, provider error, non-JSON,
             unknown label) → keyword match on the lower-cased filename

Preconditions (first failure wins):
  INVALID_DOCUMENT_ID → INVALID_DOMAIN → DOCUMENT_NOT_FOUND →
  DOCUMENT_NOT_PROCESSED → NO_TEXT_CONTENT → ALREADY_CATEGORIZED

The result is written back in one CategorizationPatch; a forced
re-categorization overwrites the previous label and suggestions entirely.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from assessment_docs.auth.token import TokenPayload
from assessment_docs.llm.classifier import TextClassifier
from assessment_docs.schemas.documents import (
    BUSINESS_DOMAINS,
    BusinessDomain,
    CategorizationRequest,
    CategorizationResponse,
    DocumentErrors,
    ProcessingStatus,
    SuggestedCategory,
    is_business_domain,
)
from assessment_docs.services.records import (
    CategorizationPatch,
    DocumentRecord,
    DocumentRecordStore,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Classifier call settings
# ---------------------------------------------------------------------------

MAX_PROMPT_TEXT_CHARS = 4000
TRUNCATION_MARKER     = "\n\n[... content truncated ...]\n\n"
CLASSIFIER_MAX_TOKENS = 500
CLASSIFIER_TEMPERATURE = 0.1
MAX_SUGGESTIONS       = 3
DEFAULT_AI_CONFIDENCE = 0.5

# ---------------------------------------------------------------------------
# Keyword fallback
# ---------------------------------------------------------------------------

FALLBACK_DISCOUNT   = 0.8
SUGGESTION_DISCOUNT = 0.7
DEFAULT_CONFIDENCE  = 0.3
DEFAULT_REASONING   = "Default categorization - no clear domain indicators found"

# keyword → (domain, base confidence); matched as a substring of the filename
KEYWORD_TABLE: dict[str, tuple[BusinessDomain, float]] = {
    "finance":         (BusinessDomain.FINANCE,    0.7),
    "financial":       (BusinessDomain.FINANCE,    0.7),
    "budget":          (BusinessDomain.FINANCE,    0.7),
    "accounting":      (BusinessDomain.FINANCE,    0.8),
    "invoice":         (BusinessDomain.FINANCE,    0.7),
    "hr":              (BusinessDomain.HR,         0.8),
    "human_resources": (BusinessDomain.HR,         0.8),
    "employee":        (BusinessDomain.HR,         0.8),
    "staff":           (BusinessDomain.HR,         0.5),
    "sales":           (BusinessDomain.SALES,      0.8),
    "marketing":       (BusinessDomain.SALES,      0.8),
    "customer":        (BusinessDomain.CUSTOMER,   0.6),
    "support":         (BusinessDomain.CUSTOMER,   0.6),
    "tech":            (BusinessDomain.TECHNOLOGY, 0.7),
    "technology":      (BusinessDomain.TECHNOLOGY, 0.8),
    "it":              (BusinessDomain.TECHNOLOGY, 0.7),
    "software":        (BusinessDomain.TECHNOLOGY, 0.7),
    "operations":      (BusinessDomain.OPERATIONS, 0.8),
    "production":      (BusinessDomain.OPERATIONS, 0.8),
    "strategy":        (BusinessDomain.STRATEGY,   0.8),
    "strategic":       (BusinessDomain.STRATEGY,   0.7),
    "legal":           (BusinessDomain.LEGAL,      0.8),
    "compliance":      (BusinessDomain.LEGAL,      0.8),
    "contract":        (BusinessDomain.LEGAL,      0.7),
    "quality":         (BusinessDomain.QUALITY,    0.8),
    "risk":            (BusinessDomain.RISK,       0.8),
    "product":         (BusinessDomain.PRODUCT,    0.7),
    "development":     (BusinessDomain.PRODUCT,    0.6),
    "supply":          (BusinessDomain.SUPPLY,     0.7),
    "chain":           (BusinessDomain.SUPPLY,     0.5),
    "procurement":     (BusinessDomain.SUPPLY,     0.7),
}


@dataclass
class Classification:
    category:    str
    confidence:  float
    suggestions: list[SuggestedCategory] = field(default_factory=list)
    method:      str = "ai"          # ai | fallback | manual


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def truncate_text(text: str, max_length: int = MAX_PROMPT_TEXT_CHARS) -> str:
    """Keep the head and tail halves around a truncation marker."""
    if len(text) <= max_length:
        return text
    half = max_length // 2
    return text[:half] + TRUNCATION_MARKER + text[-half:]


def build_prompt(text: str, filename: str) -> str:
    domains = "\n".join(f"{i}. {d}" for i, d in enumerate(BUSINESS_DOMAINS, start=1))
    return (
        "Analyze the following document content and categorize it into one of "
        "these operational domains:\n\n"
        f"{domains}\n\n"
        f"Document filename: {filename}\n\n"
        "Document content:\n"
        f"{truncate_text(text)}\n\n"
        "Provide categorization analysis in this exact JSON format:\n"
        "{\n"
        '  "primaryCategory": "exact domain name from list",\n'
        '  "confidence": 0.85,\n'
        '  "reasoning": "brief explanation for primary categorization",\n'
        '  "suggestions": [\n'
        "    {\n"
        '      "domain": "domain name",\n'
        '      "confidence": 0.75,\n'
        '      "reasoning": "why this domain is relevant"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Consider:\n"
        "- Document content themes and keywords\n"
        "- Filename context\n"
        "- Business process indicators\n"
        "- Organizational function references\n\n"
        "Return only valid JSON with no additional text."
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def _as_number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def parse_classifier_response(raw: str) -> Classification:
    """
    Parse the classifier's JSON. Raises ValueError on anything unusable;
    the engine turns that into the keyword fallback.
    """
    text = raw.strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Classifier returned non-JSON content: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Classifier JSON is not an object")

    primary = payload.get("primaryCategory")
    if not is_business_domain(primary):
        raise ValueError(f"Invalid primary category in classifier response: {primary!r}")

    # zero is treated as missing
    confidence = _as_number(payload.get("confidence"), DEFAULT_AI_CONFIDENCE) or DEFAULT_AI_CONFIDENCE

    suggestions: list[SuggestedCategory] = []
    raw_suggestions = payload.get("suggestions")
    if isinstance(raw_suggestions, list):
        for item in raw_suggestions[:MAX_SUGGESTIONS]:
            if not isinstance(item, dict) or not is_business_domain(item.get("domain")):
                continue
            suggestions.append(SuggestedCategory(
                domain=item["domain"],
                confidence=_clamp(_as_number(item.get("confidence"), 0.0)),
                reasoning=str(item.get("reasoning") or ""),
            ))

    return Classification(
        category=primary,
        confidence=_clamp(confidence),
        suggestions=suggestions,
        method="ai",
    )


def categorize_by_filename(filename: str) -> Classification:
    """Deterministic keyword fallback."""
    lowered = (filename or "").lower()
    matches = sorted(
        ((kw, domain, conf) for kw, (domain, conf) in KEYWORD_TABLE.items() if kw in lowered),
        key=lambda m: m[2],
        reverse=True,
    )

    if not matches:
        return Classification(
            category=BusinessDomain.OPERATIONS.value,
            confidence=DEFAULT_CONFIDENCE,
            suggestions=[SuggestedCategory(
                domain=BusinessDomain.OPERATIONS.value,
                confidence=DEFAULT_CONFIDENCE,
                reasoning=DEFAULT_REASONING,
            )],
            method="fallback",
        )

    _, best_domain, best_conf = matches[0]
    return Classification(
        category=best_domain.value,
        confidence=_clamp(best_conf * FALLBACK_DISCOUNT),
        suggestions=[
            SuggestedCategory(
                domain=domain.value,
                confidence=_clamp(conf * SUGGESTION_DISCOUNT),
                reasoning=f"Filename contains keyword: {kw}",
            )
            for kw, domain, conf in matches[:MAX_SUGGESTIONS]
        ],
        method="fallback",
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CategorizationEngine:

    def __init__(self, records: DocumentRecordStore, classifier: TextClassifier) -> None:
        self._records    = records
        self._classifier = classifier

    async def categorize(
        self,
        assessment_id: str,
        request: CategorizationRequest,
        user: TokenPayload,
    ) -> CategorizationResponse:
        document_id = request.document_id
        if not isinstance(document_id, str) or not document_id.strip():
            raise DocumentErrors.invalid_document_id()

        manual = request.manual_category or None
        if manual is not None and not is_business_domain(manual):
            raise DocumentErrors.invalid_domain()

        doc = await self._records.get_for_assessment(assessment_id, document_id)
        if doc is None or doc.company_id != user.company_id:
            raise DocumentErrors.document_not_found()

        if doc.status != ProcessingStatus.COMPLETED.value:
            raise DocumentErrors.document_not_processed()
        if not (doc.extracted_text or "").strip():
            raise DocumentErrors.no_text_content()
        if doc.category and not request.force_recategorize:
            raise DocumentErrors.already_categorized()

        if manual is not None:
            result = Classification(category=manual, confidence=1.0, method="manual")
        else:
            result = await self._classify(doc)

        await self._records.apply(doc.document_id, CategorizationPatch(
            category=result.category,
            category_confidence=_clamp(result.confidence),
            manual_override=result.method == "manual",
            suggested_categories=[s.model_dump() for s in result.suggestions],
            categorized_at=datetime.now(timezone.utc),
            categorized_by=user.sub,
        ))

        logger.info(
            "Categorized | doc=%s category=%s confidence=%.2f method=%s user=%s",
            doc.document_id, result.category, result.confidence, result.method, user.sub,
        )

        return CategorizationResponse(
            document_id=doc.document_id,
            category=result.category,
            confidence=_clamp(result.confidence),
            suggested_categories=result.suggestions,
            manual_override=result.method == "manual",
        )

    async def _classify(self, doc: DocumentRecord) -> Classification:
        prompt = build_prompt(doc.extracted_text or "", doc.original_filename)
        try:
            raw = await self._classifier.complete(
                prompt,
                max_tokens=CLASSIFIER_MAX_TOKENS,
                temperature=CLASSIFIER_TEMPERATURE,
            )
            return parse_classifier_response(raw)
        except Exception as exc:
            logger.warning(
                "Classifier failed, using filename fallback | doc=%s error=%s: %s",
                doc.document_id, type(exc).__name__, exc,
            )
            return categorize_by_filename(doc.original_filename)
