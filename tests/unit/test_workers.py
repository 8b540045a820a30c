"""
Unit Tests — Celery tasks + direct S3 notification handler
══════════════════════════════════════════════════════════
The tasks are called in-process (no broker); build_orchestrator is patched
to wire the orchestrator to the in-memory adapters.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from assessment_docs.services.ingestion import IngestionOrchestrator
from assessment_docs.workers import events, tasks
from assessment_docs.workers.celery_app import BEAT_SCHEDULE, TASK_ROUTES, celery_app
from tests.fakes import ASSESSMENT_ID, COMPANY_ID, make_record, s3_event


@pytest.fixture
def wired(records, storage, extractor):
    orchestrator = IngestionOrchestrator(records=records, storage=storage, extractor=extractor)
    with patch.object(tasks, "build_orchestrator", return_value=orchestrator):
        yield orchestrator


def _key(document_id: str) -> str:
    return f"{COMPANY_ID}/{ASSESSMENT_ID}/raw/{document_id}.pdf"


@pytest.mark.unit
class TestCeleryConfiguration:

    def test_every_task_is_routed(self):
        for name in TASK_ROUTES:
            assert name in celery_app.tasks

    def test_beat_schedule(self):
        schedule = {entry["task"].rsplit(".", 1)[-1]: entry["schedule"] for entry in BEAT_SCHEDULE.values()}
        assert schedule == {
            "poll_extraction_jobs":      30,
            "requeue_pending_documents": 60,
            "purge_expired_uploads":     3600,
        }

    def test_json_only(self):
        assert celery_app.conf.accept_content == ["json"]


@pytest.mark.unit
@pytest.mark.ingestion
class TestTasks:

    def test_process_storage_event_summarizes_outcomes(self, wired, records):
        records.add_document(make_record("doc-1"))

        result = tasks.process_storage_event(s3_event(_key("doc-1"), "junk/key.txt"))

        assert result["total"] == 2
        assert result["counts"] == {"completed": 1, "skipped": 1}
        assert result["outcomes"][0]["document_id"] == "doc-1"
        assert records.stored("doc-1").status == "completed"

    def test_poll_extraction_jobs_with_nothing_in_flight(self, wired):
        assert tasks.poll_extraction_jobs() == {"total": 0, "counts": {}, "outcomes": []}

    def test_purge_expired_uploads(self, wired, records):
        records.add_document(make_record(
            "stale", expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
        ))

        assert tasks.purge_expired_uploads() == {"purged": 1}
        assert "stale" not in records.documents


@pytest.mark.unit
@pytest.mark.ingestion
class TestNotificationHandler:

    def test_handler_reports_processed_count(self, wired, records):
        records.add_document(make_record("doc-1"))
        records.add_document(make_record("doc-2"))

        result = events.handler(s3_event(_key("doc-1"), _key("doc-2")))

        assert result["processed"] == 2
        assert "total" not in result
        assert result["counts"] == {"completed": 2}

    def test_handler_tolerates_empty_event(self, wired):
        assert events.handler({}) == {"processed": 0, "counts": {}, "outcomes": []}
