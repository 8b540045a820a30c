"""
Integration Tests — /api/v1/assessments/{assessmentId}/documents
════════════════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Dependency injection chain (auth, record store, S3, classifier overridden)
  - RBAC on every route (viewer reads, member writes)
  - Success and error envelopes, camelCase keys, X-Request-ID propagation
  - Query parameter parsing for the list route
  - Route ordering (/statistics is not a document id)

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, request parsing, Pydantic schemas, exception
           handlers, UploadGrantIssuer / CategorizationEngine / DocumentService
  🔲 Mock: JWT verification  (dependency_overrides → current_user)
  🔲 Mock: PostgreSQL        (InMemoryRecordStore)
  🔲 Mock: S3 storage        (InMemoryObjectStore)
  🔲 Mock: OpenAI            (FakeClassifier)

How to run
──────────
  pytest -m integration tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import json

import pytest

from tests.fakes import ASSESSMENT_ID, COMPANY_ID, make_record

BASE = f"/api/v1/assessments/{ASSESSMENT_ID}/documents"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _upload_body(**overrides) -> dict:
    body = {"filename": "Financial Report Q1.pdf", "contentType": "application/pdf", "size": 2048}
    body.update(overrides)
    return body


def _assert_error(resp, status_code: int, code: str) -> dict:
    assert resp.status_code == status_code, resp.text
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    assert body["meta"]["requestId"]
    return body


@pytest.fixture
def completed_doc(records):
    return records.add_document(make_record(
        "doc-done", filename="budget_2024.xlsx", status="completed",
        extracted_text="Operating budget and cash flow forecast",
        mime_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        processing_time_ms=900,
    ))


@pytest.fixture
def failed_doc(records):
    return records.add_document(make_record(
        "doc-failed", status="failed", processing_errors=["Text extraction failed: timeout"],
    ))


# ─────────────────────────────────────────────────────────────────────────────
# Envelopes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestEnvelopes:

    async def test_success_envelope_shape(self, async_client):
        resp = await async_client.get(BASE, headers={"X-Request-ID": "req-abc"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert set(body) == {"success", "data", "meta"}
        assert body["meta"]["requestId"] == "req-abc"
        assert "timestamp" in body["meta"]
        assert resp.headers["X-Request-ID"] == "req-abc"

    async def test_request_id_is_generated_when_absent(self, async_client):
        resp = await async_client.get(BASE)

        assert resp.headers["X-Request-ID"]
        assert resp.json()["meta"]["requestId"] == resp.headers["X-Request-ID"]

    async def test_error_envelope_shape(self, async_client):
        resp = await async_client.get(f"{BASE}/missing-doc", headers={"X-Request-ID": "req-err"})

        body = _assert_error(resp, 404, "DOCUMENT_NOT_FOUND")
        assert body["meta"]["requestId"] == "req-err"

    async def test_query_validation_error(self, async_client):
        resp = await async_client.get(BASE, params={"limit": 500})
        _assert_error(resp, 422, "VALIDATION_ERROR")

    async def test_unexpected_error_is_opaque(self, async_client, records):
        async def boom(assessment_id):
            raise RuntimeError("connection reset by peer")
        records.get_assessment = boom

        resp = await async_client.get(BASE, headers={"X-Request-ID": "req-500"})

        body = _assert_error(resp, 500, "INTERNAL_ERROR")
        assert "connection reset" not in body["error"]["message"]
        assert "req-500" in body["error"]["message"]


# ─────────────────────────────────────────────────────────────────────────────
# Authentication + RBAC
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.auth
class TestAuthentication:

    async def test_missing_bearer_token_is_401(self, app_with_overrides, async_client):
        from assessment_docs.auth.token import get_current_user
        app_with_overrides.dependency_overrides.pop(get_current_user)

        resp = await async_client.get(BASE)

        _assert_error(resp, 401, "UNAUTHORIZED")


@pytest.mark.integration
@pytest.mark.auth
class TestViewerRole:

    @pytest.fixture
    def current_user(self, viewer_payload):
        return viewer_payload

    async def test_viewer_can_read(self, async_client, completed_doc):
        assert (await async_client.get(BASE)).status_code == 200
        assert (await async_client.get(f"{BASE}/statistics")).status_code == 200
        assert (await async_client.get(f"{BASE}/doc-done")).status_code == 200

    @pytest.mark.parametrize("method,path", [
        ("POST",   "/upload"),
        ("POST",   "/doc-done/categorize"),
        ("PATCH",  "/doc-done"),
        ("DELETE", "/doc-done"),
        ("POST",   "/doc-done/retry"),
    ])
    async def test_viewer_cannot_write(self, async_client, completed_doc, method, path):
        resp = await async_client.request(method, f"{BASE}{path}", json={})
        _assert_error(resp, 403, "FORBIDDEN")


@pytest.mark.integration
@pytest.mark.auth
class TestForeignTenant:

    @pytest.fixture
    def current_user(self, foreign_member_payload):
        return foreign_member_payload

    async def test_foreign_assessment_listing_is_denied(self, async_client):
        _assert_error(await async_client.get(BASE), 403, "ACCESS_DENIED")

    async def test_foreign_upload_is_denied(self, async_client, storage):
        resp = await async_client.post(f"{BASE}/upload", json=_upload_body())

        _assert_error(resp, 403, "ACCESS_DENIED")
        assert storage.presigned_puts == []


# ─────────────────────────────────────────────────────────────────────────────
# Upload grant
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.ingestion
class TestUploadRoute:

    async def test_upload_grant(self, async_client, records):
        resp = await async_client.post(f"{BASE}/upload", json=_upload_body(domain="Finance & Accounting"))

        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert set(data) == {"uploadUrl", "documentId", "maxFileSize", "allowedTypes", "expiresAt"}
        assert f"{COMPANY_ID}/{ASSESSMENT_ID}/raw/{data['documentId']}.pdf" in data["uploadUrl"]
        assert records.stored(data["documentId"]).status == "pending_upload"

    async def test_missing_body(self, async_client):
        _assert_error(await async_client.post(f"{BASE}/upload"), 400, "INVALID_REQUEST")

    async def test_unsupported_type(self, async_client):
        resp = await async_client.post(f"{BASE}/upload", json=_upload_body(contentType="text/html"))
        _assert_error(resp, 400, "UNSUPPORTED_FILE_TYPE")

    async def test_file_too_large(self, async_client):
        resp = await async_client.post(f"{BASE}/upload", json=_upload_body(size=51 * 1024 * 1024))
        _assert_error(resp, 413, "FILE_TOO_LARGE")

    async def test_unknown_assessment(self, async_client):
        resp = await async_client.post("/api/v1/assessments/nope/documents/upload", json=_upload_body())
        _assert_error(resp, 404, "ASSESSMENT_NOT_FOUND")


# ─────────────────────────────────────────────────────────────────────────────
# Categorization
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
@pytest.mark.categorization
class TestCategorizeRoute:

    async def test_classifier_path(self, async_client, classifier, completed_doc, records):
        classifier.response = json.dumps({
            "primaryCategory": "Finance & Accounting",
            "confidence": 0.92,
            "suggestions": [
                {"domain": "Finance & Accounting", "confidence": 0.92, "reasoning": "Budget figures"},
            ],
        })

        resp = await async_client.post(f"{BASE}/doc-done/categorize")

        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["documentId"] == "doc-done"
        assert data["category"] == "Finance & Accounting"
        assert data["confidence"] == pytest.approx(0.92)
        assert data["manualOverride"] is False
        assert data["suggestedCategories"][0]["reasoning"] == "Budget figures"
        assert records.stored("doc-done").category == "Finance & Accounting"

    async def test_manual_category(self, async_client, classifier, completed_doc):
        resp = await async_client.post(
            f"{BASE}/doc-done/categorize", json={"manualCategory": "Risk Management"},
        )

        data = resp.json()["data"]
        assert data["category"] == "Risk Management"
        assert data["confidence"] == 1.0
        assert data["manualOverride"] is True
        assert classifier.prompts == []

    async def test_path_document_id_wins_over_body(self, async_client, completed_doc):
        resp = await async_client.post(
            f"{BASE}/doc-done/categorize",
            json={"documentId": "someone-elses-doc", "manualCategory": "Legal & Compliance"},
        )
        assert resp.json()["data"]["documentId"] == "doc-done"

    async def test_already_categorized(self, async_client, records):
        records.add_document(make_record(
            "doc-cat", status="completed", extracted_text="x", category="Operations",
        ))
        resp = await async_client.post(f"{BASE}/doc-cat/categorize")
        _assert_error(resp, 409, "ALREADY_CATEGORIZED")

    async def test_unprocessed_document(self, async_client, records):
        records.add_document(make_record("doc-new", status="processing"))
        resp = await async_client.post(f"{BASE}/doc-new/categorize")
        _assert_error(resp, 400, "DOCUMENT_NOT_PROCESSED")


# ─────────────────────────────────────────────────────────────────────────────
# Document management
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestManagementRoutes:

    async def test_list_with_filters(self, async_client, completed_doc, failed_doc):
        resp = await async_client.get(BASE, params={"status": "completed", "page": 1, "limit": 10})

        data = resp.json()["data"]
        assert [d["documentId"] for d in data["documents"]] == ["doc-done"]
        assert data["pagination"] == {"page": 1, "limit": 10, "total": 1, "totalPages": 1}
        assert data["documents"][0]["downloadUrl"].endswith("X-Amz-Signature=get")

    async def test_list_search_and_dates(self, async_client, completed_doc, failed_doc):
        resp = await async_client.get(BASE, params={
            "search": "cash flow",
            "dateFrom": "2024-01-01T00:00:00Z",
            "dateTo": "2024-12-31T23:59:59Z",
        })
        assert [d["documentId"] for d in resp.json()["data"]["documents"]] == ["doc-done"]

    async def test_statistics_route_is_not_a_document_id(self, async_client, completed_doc, failed_doc):
        resp = await async_client.get(f"{BASE}/statistics")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total"] == 2
        assert data["byStatus"] == {"completed": 1, "failed": 1}
        assert data["averageProcessingTime"] == 900

    async def test_details(self, async_client, failed_doc):
        data = (await async_client.get(f"{BASE}/doc-failed")).json()["data"]

        assert data["status"] == "failed"
        assert data["processingErrors"] == ["Text extraction failed: timeout"]
        assert data["s3Key"].endswith("/raw/doc-failed.pdf")

    async def test_patch(self, async_client, completed_doc):
        resp = await async_client.patch(
            f"{BASE}/doc-done", json={"originalFilename": "FY24 budget.xlsx", "category": "Strategy & Planning"},
        )

        data = resp.json()["data"]
        assert data["originalFilename"] == "FY24 budget.xlsx"
        assert data["category"] == "Strategy & Planning"
        assert data["manualOverride"] is True

    async def test_patch_without_fields(self, async_client, completed_doc):
        _assert_error(await async_client.patch(f"{BASE}/doc-done", json={}), 400, "NO_VALID_UPDATES")
        _assert_error(await async_client.patch(f"{BASE}/doc-done"), 400, "NO_VALID_UPDATES")

    async def test_delete(self, async_client, records, storage, completed_doc):
        resp = await async_client.delete(f"{BASE}/doc-done")

        assert resp.json()["data"] == {"documentId": "doc-done", "deleted": True}
        assert "doc-done" not in records.documents
        assert len(storage.deleted) == 2

        _assert_error(await async_client.get(f"{BASE}/doc-done"), 404, "DOCUMENT_NOT_FOUND")

    async def test_retry(self, async_client, failed_doc, records):
        resp = await async_client.post(f"{BASE}/doc-failed/retry")

        assert resp.json()["data"]["status"] == "pending"
        assert records.stored("doc-failed").retry_at is not None

    async def test_retry_rejected_unless_failed(self, async_client, completed_doc):
        _assert_error(await async_client.post(f"{BASE}/doc-done/retry"), 409, "INVALID_STATE")
