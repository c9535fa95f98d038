"""
Tests for the FastAPI endpoints.

The job queue is wired but never started, so enqueued runs stay queued.
"""

import pytest
from fastapi.testclient import TestClient

from regintel.api.server import create_app
from regintel.pipeline.models import ReviewQueueEntry
from regintel.worker import build_job_queue

from fakes import build_test_context, make_item


@pytest.fixture
def context(tmp_path):
    return build_test_context(tmp_path)


@pytest.fixture
def jobs(context):
    return build_job_queue(context)


@pytest.fixture
def client(context, jobs):
    return TestClient(create_app(context, jobs))


def queue_entry(context, payload, entry_id="q1"):
    context.repository.insert_review_entry(
        ReviewQueueEntry(id=entry_id, entity_type="RegulationItem", payload=payload, reason="review")
    )


class TestRuns:
    """Tests for run creation and status."""

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_start_scan_enqueues_job(self, client, context, jobs):
        response = client.post("/api/scan", json={"jurisdiction": "DE", "days": 14, "max_results": 3})

        assert response.status_code == 200
        body = response.json()
        run = context.repository.get_run(body["run_id"])
        assert run.status == "queued"
        assert run.run_type == "scan"
        assert run.days_window == 14
        assert run.job_id == body["job_id"]

        job = jobs.get(body["job_id"])
        assert job.job_type == "scan"
        assert job.payload == {"run_id": run.id, "jurisdiction": "DE", "days": 14, "max_results": 3}

    def test_scan_defaults(self, client, jobs):
        body = client.post("/api/scan", json={}).json()
        assert jobs.get(body["job_id"]).payload["jurisdiction"] == "EU"
        assert jobs.get(body["job_id"]).payload["days"] == 30

    def test_unknown_jurisdiction_rejected(self, client):
        response = client.post("/api/scan", json={"jurisdiction": "ATLANTIS"})
        assert response.status_code == 400

    def test_days_out_of_range(self, client):
        assert client.post("/api/scan", json={"days": 0}).status_code == 422

    def test_start_merge(self, client, jobs):
        body = client.post("/api/merge", json={"jurisdiction": "EU"}).json()
        assert jobs.get(body["job_id"]).job_type == "merge"

    def test_run_detail_includes_logs_and_job(self, client, context):
        run_id = client.post("/api/scan", json={}).json()["run_id"]
        context.repository.add_run_log(run_id, "search", "Collecting candidates")

        data = client.get(f"/api/runs/{run_id}").json()

        assert data["id"] == run_id
        assert [entry["message"] for entry in data["logs"]] == ["Collecting candidates"]
        assert data["job"]["status"] == "queued"

    def test_list_runs(self, client):
        client.post("/api/scan", json={})
        client.post("/api/merge", json={})
        assert len(client.get("/api/runs").json()) == 2

    def test_unknown_run(self, client):
        assert client.get("/api/runs/missing").status_code == 404
        assert client.post("/api/runs/missing/cancel").status_code == 404

    def test_cancel_run(self, client, jobs):
        body = client.post("/api/scan", json={}).json()

        assert client.post(f"/api/runs/{body['run_id']}/cancel").json() == {"cancelled": True}
        assert jobs.get(body["job_id"]).cancel_event.is_set()


class TestItemsAndReview:
    """Tests for item listing and review actions."""

    def test_items_filtered_by_jurisdiction(self, client, context):
        context.repository.upsert_regulation_item(make_item(id="a"))
        context.repository.upsert_regulation_item(make_item(id="b", jurisdiction="FR"))

        assert len(client.get("/api/items").json()) == 2
        assert [i["id"] for i in client.get("/api/items", params={"jurisdiction": "FR"}).json()] == ["b"]

    def test_review_queue_defaults_to_pending(self, client, context):
        queue_entry(context, make_item(), "q1")
        queue_entry(context, make_item(id="item-2"), "q2")
        context.repository.update_review_entry("q2", status="rejected")

        assert [e["id"] for e in client.get("/api/review-queue").json()] == ["q1"]
        assert [e["id"] for e in client.get("/api/review-queue", params={"status": "rejected"}).json()] == ["q2"]

    def test_approve(self, client, context):
        queue_entry(context, make_item(trust_tier="TIER_B_OFFICIAL_SIGNAL"))

        response = client.post("/api/review-queue/q1/approve", json={"reviewer": "analyst"})

        assert response.json() == {"status": "approved"}
        assert context.repository.get_regulation_item("item-1") is not None
        assert context.repository.get_review_entry("q1").reviewer == "analyst"

    def test_approve_invalid_payload(self, client, context):
        queue_entry(context, make_item(confidence=0.1))

        response = client.post("/api/review-queue/q1/approve")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "Confidence below threshold (0.7)"
        assert context.repository.get_review_entry("q1").status == "pending"

    def test_reject(self, client, context):
        queue_entry(context, make_item())
        assert client.post("/api/review-queue/q1/reject").json() == {"status": "rejected"}

    def test_unknown_review_entry(self, client):
        assert client.post("/api/review-queue/nope/approve").status_code == 404
        assert client.post("/api/review-queue/nope/reject").status_code == 404


class TestReadEndpoints:
    """Tests for lineage, files, policy and ontology."""

    def test_lineage(self, client, context):
        context.repository.upsert_regulation_item(make_item(source_document_id=None))
        graph = client.get("/api/lineage").json()
        assert {n["type"] for n in graph["nodes"]} == {"RegulationItem", "Evidence"}
        assert [e["relation"] for e in graph["edges"]] == ["supported_by"]

    def test_file_download(self, client, context):
        stored = context.object_store.put("https://unece.org/files/R155e.pdf", b"%PDF-1.7", "pdf")

        response = client.get(f"/api/files/{stored.id}")

        assert response.status_code == 200
        assert response.content == b"%PDF-1.7"
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == f'inline; filename="{stored.id}"'

    def test_file_without_extension(self, client, context):
        stored = context.object_store.put("https://unece.org/files/blob", b"raw")
        response = client.get(f"/api/files/{stored.id}")
        assert response.headers["content-type"] == "application/octet-stream"

    def test_missing_or_invalid_file(self, client):
        assert client.get("/api/files/deadbeef.pdf").status_code == 404
        assert client.get("/api/files/....pdf").status_code == 404

    def test_policy_evaluate(self, client):
        data = client.get("/api/policy/evaluate", params={"url": "https://eur-lex.europa.eu/eli/reg/2019/2144/oj/"}).json()
        assert data["tier"] == "TIER_A_BINDING"
        assert data["route"] == "main"
        assert data["canonical_url"] == "https://eur-lex.europa.eu/eli/reg/2019/2144/oj"

    def test_policy_evaluate_requires_url(self, client):
        assert client.get("/api/policy/evaluate").status_code == 422

    def test_ontology(self, client):
        data = client.get("/api/ontology").json()
        assert "CYBER_SECURITY" in data["topics"]
        assert data["trust_tiers"][0] == "TIER_A_BINDING"
