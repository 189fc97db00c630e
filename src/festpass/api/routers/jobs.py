"""Queue inspection and retention endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from festpass import jobs
from festpass.api.auth import require_operator, require_viewer
from festpass.defaults import JOB_RETENTION, QUERY_LIMIT_SMALL

router = APIRouter(tags=["jobs"])


@router.get("/jobs")
def list_jobs(
    state: str | None = None,
    registration_id: str | None = None,
    limit: int = QUERY_LIMIT_SMALL,
    principal: dict = Depends(require_viewer),
):
    found = jobs.list_jobs(state=state, job_key=registration_id, limit=limit)
    return [j.to_dict() for j in found]


@router.post("/jobs/prune")
def prune_jobs(
    keep: int = JOB_RETENTION,
    principal: dict = Depends(require_operator),
):
    return {"removed": jobs.prune_finished(keep), "keep": keep}
