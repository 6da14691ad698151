from __future__ import annotations

from fastapi.testclient import TestClient


class _FakeAsyncResult:
    id = "task-1"


class _FakeTask:
    def __init__(self) -> None:
        self.enqueued: list[str] = []

    def delay(self, document_id: str) -> _FakeAsyncResult:
        self.enqueued.append(document_id)
        return _FakeAsyncResult()


def test_upload_trip_and_review_endpoints(monkeypatch, screenshot_bytes) -> None:
    from farecheck.main import create_app
    from farecheck.modules.uploads import api as uploads_api

    fake_task = _FakeTask()
    monkeypatch.setattr(uploads_api, "process_document_task", fake_task)
    body = screenshot_bytes("api-offer")

    app = create_app()
    with TestClient(app) as client:
        assert client.get("/healthz").json() == {"status": "ok"}

        resp = client.post(
            "/api/uploads",
            files={"upload": ("offer.png", body, "image/png")},
            data={"trip_ref": "uber-77"},
        )
        assert resp.status_code == 201
        payload = resp.json()
        assert payload["accepted"] is True
        document_id = payload["document"]["id"]
        assert payload["document"]["status"] == "PENDING"
        assert fake_task.enqueued == [document_id]
        assert resp.headers["x-request-id"]

        dup = client.post(
            "/api/uploads",
            files={"upload": ("offer-copy.png", body, "image/png")},
        )
        assert dup.status_code == 409
        assert dup.json()["reason"] == "exact-duplicate"
        assert dup.json()["matched_document_id"] == document_id

        empty = client.post("/api/uploads", files={"upload": ("empty.png", b"", "image/png")})
        assert empty.status_code == 422
        assert empty.json()["retryable"] is True

        got = client.get(f"/api/uploads/{document_id}")
        assert got.status_code == 200
        assert got.json()["trip_ref"] == "uber-77"

        retry = client.post(f"/api/uploads/{document_id}/retry")
        assert retry.status_code == 200
        assert fake_task.enqueued == [document_id, document_id]

        stats = client.get("/api/uploads/duplicates/stats").json()
        assert stats["duplicates_blocked"] == 2
        assert stats["admitted_documents"] == 1

        missing = client.get("/api/trips/00000000-0000-0000-0000-000000000000")
        assert missing.status_code == 404

        assert client.get("/api/review/tasks").json() == []

        analysis = client.post(
            "/api/analysis",
            json={
                "kind": "SINGLE_WINDOW",
                "range_start": "2025-06-01T00:00:00Z",
                "range_end": "2025-06-08T00:00:00Z",
            },
        )
        assert analysis.status_code == 200
        assert analysis.json()["status"] == "COMPLETED"
        assert analysis.json()["cache_hit"] is False

        sessions = client.get("/api/analysis/sessions").json()
        assert [s["id"] for s in sessions] == [analysis.json()["id"]]
