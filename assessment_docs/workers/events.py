"""
Direct S3 notification entry point.

For deployments that wire the bucket notification straight to a function
(AWS Lambda style) instead of the documents.ingest Celery queue:

    handler(event, context) → {"processed": n, "counts": {...}, "outcomes": [...]}

Runs the same orchestrator as the Celery task and never raises for a
per-record failure.
"""

from __future__ import annotations

import logging
from typing import Any

from assessment_docs.workers.tasks import run_with_orchestrator, summarize

logger = logging.getLogger(__name__)


def handler(event: dict, context: Any = None) -> dict[str, Any]:
    request_id = getattr(context, "aws_request_id", "-")
    logger.info("S3 notification received | request_id=%s records=%d",
                request_id, len((event or {}).get("Records") or []))

    outcomes = run_with_orchestrator(lambda o: o.handle_event(event))
    result = summarize(outcomes)
    result["processed"] = result.pop("total")
    return result
