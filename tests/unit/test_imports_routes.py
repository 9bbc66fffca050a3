"""
API tests for the import routes.

Run with: pytest tests/unit/test_imports_routes.py -v
"""

import threading
import time

import pytest

from tests.factories import CatalogRowFactory, csv_bytes, three_record_csv

BASE = "/api/imports"


def upload(client, content: bytes, filename: str = "products.csv", content_type: str = "text/csv"):
    return client.post(f"{BASE}/upload", files={"file": (filename, content, content_type)})


@pytest.fixture
def preview_session_id(test_client):
    """Three-record session in preview_ready."""
    session_id = upload(test_client, three_record_csv()).json()["session_id"]
    response = test_client.post(f"{BASE}/{session_id}/preview")
    assert response.status_code == 200
    return session_id


# ===================
# UPLOAD AND MAPPING
# ===================

class TestUploadRoutes:
    """POST /upload and session listing."""

    def test_upload(self, test_client):
        response = upload(test_client, csv_bytes(CatalogRowFactory.create_batch(3)))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "mapping_ready"
        assert body["source_meta"]["row_count"] == 3
        assert [m["target_field"] for m in body["mappings"]] == ["name", "sku", "price", "stock"]
        assert body["unmapped_required"] == []

    def test_unreadable_upload_returns_failed_session(self, test_client):
        response = upload(test_client, b"\x00\x01\x02garbage", filename="upload.bin",
                          content_type="application/octet-stream")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "failed"
        assert body["failure_code"] == "FILE_UNREADABLE"

    def test_list_sessions(self, test_client):
        upload(test_client, csv_bytes(CatalogRowFactory.create_batch(1)))

        response = test_client.get(BASE)

        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_template_download(self, test_client):
        response = test_client.get(f"{BASE}/template", params={"format": "xlsx"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/vnd.openxmlformats")
        assert 'filename="products-template.xlsx"' in response.headers["content-disposition"]

    def test_template_defaults_to_csv(self, test_client):
        response = test_client.get(f"{BASE}/template")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.startswith("name,sku,")

    def test_template_then_upload(self, test_client):
        template = test_client.get(f"{BASE}/template", params={"format": "json"})

        response = upload(test_client, template.content, filename="products-template.json",
                          content_type="application/json")

        assert response.status_code == 201
        assert response.json()["unmapped_required"] == []

    def test_unknown_template_format(self, test_client):
        response = test_client.get(f"{BASE}/template", params={"format": "pdf"})

        assert response.status_code == 422

    def test_unknown_session(self, test_client):
        response = test_client.get(f"{BASE}/missing/status")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "IMPORT_SESSION_NOT_FOUND"


class TestMappingRoutes:
    """GET/PUT /{id}/mappings."""

    def test_override(self, test_client):
        session_id = upload(test_client, csv_bytes([{"sku": "T-1", "mystery": "Tile"}])).json()["session_id"]

        response = test_client.put(f"{BASE}/{session_id}/mappings", json={
            "mappings": [{"source_column": "mystery", "target_field": "name"}]
        })

        assert response.status_code == 200
        body = response.json()
        assert body["unmapped_required"] == []
        assert {m["source_column"]: m["method"] for m in body["mappings"]}["mystery"] == "manual"

    def test_duplicate_target(self, test_client):
        session_id = upload(test_client, csv_bytes([{"sku": "T-1", "a": "x", "b": "y"}])).json()["session_id"]

        response = test_client.put(f"{BASE}/{session_id}/mappings", json={
            "mappings": [
                {"source_column": "a", "target_field": "name"},
                {"source_column": "b", "target_field": "name"},
            ]
        })

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_TARGET_MAPPING"

    def test_preview_requires_required_fields(self, test_client):
        session_id = upload(test_client, csv_bytes([{"sku": "T-1"}])).json()["session_id"]

        response = test_client.post(f"{BASE}/{session_id}/preview")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "UNMAPPED_REQUIRED_FIELDS"


# ===================
# PREVIEW AND RECOVERY
# ===================

class TestRecoveryRoutes:
    """Preview, fixes, skip and summaries."""

    def test_preview_page(self, test_client, preview_session_id):
        response = test_client.get(f"{BASE}/{preview_session_id}/preview", params={"only_issues": True})

        body = response.json()
        assert body["status"] == "preview_ready"
        assert body["issue_counts"]["errors"] == 2
        assert [r["record_index"] for r in body["records"]] == [0, 1]

    def test_fix(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/fixes", json={
            "record_index": 1, "field": "price", "new_value": "12.99"
        })

        assert response.status_code == 200
        assert response.json()["issue_counts"]["errors"] == 1

    def test_fix_unmapped_field(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/fixes", json={
            "record_index": 1, "field": "brand", "new_value": "Acme"
        })

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "FIELD_NOT_MAPPED"

    def test_bulk_fix(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/fixes/bulk", json={
            "actions": [
                {"record_index": 1, "field": "price", "new_value": "12.99"},
                {"record_index": 0, "origin": "skip"},
            ]
        })

        assert response.json()["status"] == "awaiting_approval"

    def test_auto_fix_without_fix(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/auto-fix", json={
            "record_index": 0, "field": "name"
        })

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "NO_AUTO_FIX"

    def test_auto_fix_all_default_threshold(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/auto-fix/all")

        assert response.status_code == 200
        assert len(response.json()["results"]) == 1

    def test_summary(self, test_client, preview_session_id):
        response = test_client.get(f"{BASE}/{preview_session_id}/auto-fix/summary", params={"threshold": 0.5})

        assert response.json()["auto_fixable"] == 1
        assert response.json()["manual_required"] == 1

    def test_errors_export(self, test_client, preview_session_id):
        response = test_client.get(f"{BASE}/{preview_session_id}/errors/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("row,field,raw_value")


class TestBusySession:
    """A session held by a long recovery call does not stall other requests."""

    def test_other_sessions_answer_while_lock_held(self, test_client, session_service):
        busy = session_service.upload(csv_bytes(CatalogRowFactory.create_batch(1)), "a.csv")
        idle = session_service.upload(csv_bytes(CatalogRowFactory.create_batch(1)), "b.csv")
        results = {}

        def status(key, session_id):
            results[key] = client.get(f"{BASE}/{session_id}/status").status_code

        with test_client as client:
            busy.lock.acquire()
            try:
                waiting = threading.Thread(target=status, args=("busy", busy.id))
                waiting.start()
                time.sleep(0.1)

                other = threading.Thread(target=status, args=("idle", idle.id))
                other.start()
                other.join(timeout=2)

                assert results.get("idle") == 200
                assert "busy" not in results
            finally:
                busy.lock.release()
            waiting.join(timeout=2)

        assert results["busy"] == 200


# ===================
# EXECUTION
# ===================

class TestExecutionRoutes:
    """Execute, status and cancel."""

    def test_full_flow(self, test_client, preview_session_id, catalog_store):
        sid = preview_session_id
        test_client.post(f"{BASE}/{sid}/auto-fix", json={"record_index": 1, "field": "price"})
        test_client.post(f"{BASE}/{sid}/records/0/skip")

        response = test_client.post(f"{BASE}/{sid}/execute")
        assert response.status_code == 202
        assert response.json()["status"] == "importing"

        status = test_client.get(f"{BASE}/{sid}/status").json()
        assert status["status"] == "completed"
        assert status["progress"] == {
            "total": 3, "validated": 3, "processed": 3, "succeeded": 2, "failed": 0, "skipped": 1
        }
        assert len(catalog_store.records) == 2

    def test_execute_before_approval(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/execute")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

    def test_cancel(self, test_client, preview_session_id):
        response = test_client.post(f"{BASE}/{preview_session_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = test_client.post(f"{BASE}/{preview_session_id}/cancel")
        assert again.status_code == 409


# ===================
# PUSH CHANNEL
# ===================

class TestProgressChannel:
    """WS /{id}/ws."""

    def test_unknown_session(self, test_client):
        with test_client.websocket_connect(f"{BASE}/missing/ws") as ws:
            message = ws.receive_json()

        assert message["error"]["code"] == "IMPORT_SESSION_NOT_FOUND"

    def test_terminal_session_gets_snapshot(self, test_client, preview_session_id):
        test_client.post(f"{BASE}/{preview_session_id}/cancel")

        with test_client.websocket_connect(f"{BASE}/{preview_session_id}/ws") as ws:
            message = ws.receive_json()

        assert message["status"] == "cancelled"
        assert message["session_id"] == preview_session_id

    def test_streams_until_terminal(self, test_client, preview_session_id):
        with test_client.websocket_connect(f"{BASE}/{preview_session_id}/ws") as ws:
            snapshot = ws.receive_json()
            test_client.post(f"{BASE}/{preview_session_id}/cancel")
            update = ws.receive_json()

        assert snapshot["status"] == "preview_ready"
        assert update["status"] == "cancelled"


class TestHealth:
    """GET /health."""

    def test_healthy_store(self, test_client, mock_db):
        mock_db.set_table_data("products", [{"id": "p1"}])

        body = test_client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["catalog_store"]["catalog_count"] == 1

    def test_degraded_store(self, test_client, mock_db):
        mock_db.error = OSError("connection refused")

        body = test_client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["catalog_store"]["status"] == "unhealthy"
