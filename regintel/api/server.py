"""
FastAPI server for the regulatory ingestion pipeline.

This provides REST API endpoints for:
- Starting scan and merge runs and following their progress
- Reviewing queued items (approve / reject)
- Reading the lineage graph and stored source files
- Evaluating a URL against the current trust policy

Usage:
    python -m regintel.worker --port 8000
    uvicorn --factory regintel.api.server:create_app --port 8000
"""

import logging
import mimetypes
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from regintel.ontology.terms import JURISDICTIONS
from regintel.pipeline.context import PipelineContext
from regintel.pipeline.lineage import build_lineage_graph
from regintel.pipeline.models import RunRecord, new_id
from regintel.pipeline.queue import JobQueue
from regintel.pipeline.review import ReviewNotFound, ReviewValidationError, approve, reject
from regintel.storage.object_store import InvalidObjectId, ObjectNotFound

logger = logging.getLogger(__name__)

FILE_MIME_TYPES = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


# Pydantic models
class ScanRequest(BaseModel):
    jurisdiction: str = Field(default="EU", description="Jurisdiction code stamped on items")
    days: int = Field(default=30, ge=1, le=3650, description="Only keep documents from the last N days")
    max_results: Optional[int] = Field(default=None, ge=1, le=200, description="Documents to extract")


class MergeRequest(BaseModel):
    jurisdiction: str = Field(default="EU")


class ReviewAction(BaseModel):
    reviewer: Optional[str] = None


class RunStarted(BaseModel):
    run_id: str
    job_id: str


def _check_jurisdiction(value: str) -> None:
    if value not in JURISDICTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown jurisdiction: {value}")


def create_app(context: Optional[PipelineContext] = None, jobs: Optional[JobQueue] = None) -> FastAPI:
    """
    Build the API around a pipeline context and job queue.

    Without arguments the context is built from settings and a job queue is started
    in-process, which is what ``uvicorn --factory`` uses.
    """
    if context is None:
        from regintel.config.settings import load_settings
        from regintel.pipeline.context import build_context

        context = build_context(load_settings())
    if jobs is None:
        from regintel.worker import build_job_queue

        jobs = build_job_queue(context)
        jobs.start()

    repo = context.repository

    app = FastAPI(
        title="Regulatory Intelligence API",
        description="Governance-gated regulatory ingestion pipeline",
        version="0.1.0",
    )

    # CORS for the review frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def start_run(run_type: str, jurisdiction: str, days: int, payload: dict) -> RunStarted:
        run = repo.create_run(
            RunRecord(id=new_id(), run_type=run_type, jurisdiction=jurisdiction, days_window=days)
        )
        job_id = jobs.enqueue(run_type, {"run_id": run.id, "jurisdiction": jurisdiction, **payload})
        repo.update_run(run.id, job_id=job_id)
        return RunStarted(run_id=run.id, job_id=job_id)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/scan", response_model=RunStarted)
    async def start_scan(request: ScanRequest):
        _check_jurisdiction(request.jurisdiction)
        return start_run(
            "scan",
            request.jurisdiction,
            request.days,
            {"days": request.days, "max_results": request.max_results},
        )

    @app.post("/api/merge", response_model=RunStarted)
    async def start_merge(request: MergeRequest):
        _check_jurisdiction(request.jurisdiction)
        return start_run("merge", request.jurisdiction, 0, {})

    @app.get("/api/runs")
    async def list_runs(limit: int = Query(default=50, ge=1, le=500)):
        return [run.to_dict() for run in repo.list_runs()[:limit]]

    @app.get("/api/runs/{run_id}")
    async def get_run(run_id: str):
        run = repo.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        data = run.to_dict()
        data["logs"] = [entry.to_dict() for entry in repo.get_run_logs(run_id)]
        job = jobs.get(run.job_id) if run.job_id else None
        data["job"] = job.to_dict() if job else None
        return data

    @app.post("/api/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        run = repo.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return {"cancelled": bool(run.job_id and jobs.cancel(run.job_id))}

    @app.get("/api/items")
    async def list_items(jurisdiction: Optional[str] = None):
        return repo.list_regulation_items(jurisdiction)

    @app.get("/api/review-queue")
    async def review_queue(status: Optional[str] = "pending"):
        return [entry.to_dict() for entry in repo.list_review_queue(status)]

    @app.post("/api/review-queue/{entry_id}/approve")
    async def approve_entry(entry_id: str, action: Optional[ReviewAction] = None):
        try:
            return approve(context, entry_id, reviewer=action.reviewer if action else None)
        except ReviewNotFound:
            raise HTTPException(status_code=404, detail="Review item not found")
        except ReviewValidationError as e:
            raise HTTPException(status_code=400, detail={"error": e.reason, "errors": e.errors})

    @app.post("/api/review-queue/{entry_id}/reject")
    async def reject_entry(entry_id: str, action: Optional[ReviewAction] = None):
        try:
            return reject(context, entry_id, reviewer=action.reviewer if action else None)
        except ReviewNotFound:
            raise HTTPException(status_code=404, detail="Review item not found")

    @app.get("/api/lineage")
    async def lineage():
        return build_lineage_graph(repo)

    @app.get("/api/files/{object_id}")
    async def get_file(object_id: str):
        try:
            data = context.object_store.get(object_id)
            stored = context.object_store.stat(object_id)
        except (ObjectNotFound, InvalidObjectId):
            raise HTTPException(status_code=404, detail="File not found")
        ext = (stored.ext or "").lower()
        media_type = FILE_MIME_TYPES.get(ext) or mimetypes.guess_type(stored.filename)[0]
        return Response(
            content=data,
            media_type=media_type or "application/octet-stream",
            headers={"Content-Disposition": f'inline; filename="{stored.filename}"'},
        )

    @app.get("/api/policy/evaluate")
    async def evaluate_policy(url: str = Query(..., min_length=1)):
        return context.policy_store.evaluate(url).to_dict()

    @app.get("/api/ontology")
    async def ontology() -> dict:
        from regintel.ontology import terms

        return {
            "jurisdictions": terms.JURISDICTIONS,
            "source_types": terms.SOURCE_TYPES,
            "statuses": terms.ITEM_STATUSES,
            "topics": terms.TOPICS,
            "impacted_areas": terms.IMPACTED_AREAS,
            "priorities": terms.PRIORITIES,
            "trust_tiers": terms.TRUST_TIERS,
            "monitoring_stages": terms.MONITORING_STAGES,
        }

    return app
