"""
Sync job endpoints.

Flow:
1. POST /sync (or /reprocess) -> creates a pending job, returns its id at once
2. The ingestion runs as a background task after the response is sent
3. GET /sync/{job_id} -> poll until status is completed or failed
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.api.deps import get_current_user_id, get_sync_service
from app.exceptions import ActiveSyncJobError, SyncJobNotFoundError
from app.services.email_sync import EmailSyncService

router = APIRouter(tags=["Sync Jobs"])


# ============ Request / Response Schemas ============

class StartSyncRequest(BaseModel):
    """Optional filters for a sync run."""
    query: Optional[str] = Field(
        None,
        max_length=512,
        description="Gmail search query",
        examples=["subject:(statement OR receipt) newer_than:30d"]
    )
    cursor: Optional[str] = Field(None, max_length=512, description="Provider page token to resume from")
    max_results: Optional[int] = Field(None, ge=1, le=5000, description="Max emails to fetch")


class StartJobResponse(BaseModel):
    job_id: str
    message: str


class SyncJobResponse(BaseModel):
    """Full sync job representation for pollers."""
    id: str
    user_id: str
    status: str
    kind: str
    category: str
    query: Optional[str]
    cursor: Optional[str]
    total_emails: Optional[int]
    processed_emails: int
    new_emails: int
    transactions: int
    statements: int
    failed_emails: int
    error_message: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _conflict(error: ActiveSyncJobError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": "A sync job is already in progress for this user",
            "job_id": error.job.id,
            "status": error.job.status,
        }
    )


# ============ SYNC ============

@router.post("/sync", status_code=202, response_model=StartJobResponse)
def start_sync(
    background_tasks: BackgroundTasks,
    body: Optional[StartSyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service: EmailSyncService = Depends(get_sync_service)
):
    """
    Start an async email sync job.

    Returns immediately with a job ID; poll `GET /sync/{job_id}` for progress.
    Without a query, an incremental query is built from the last completed sync.

    **Returns:**
    - 202: Job created
    - 409: The user already has a pending/running job (its id is returned)
    """
    body = body or StartSyncRequest()

    try:
        job = service.start_sync(user_id, query=body.query, cursor=body.cursor)
    except ActiveSyncJobError as e:
        return _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(service.run_sync_job, job.id, body.max_results)

    return StartJobResponse(
        job_id=job.id,
        message=f"Sync job started. Poll /api/v1/sync/{job.id} for status."
    )


@router.get("/sync/{job_id}", response_model=SyncJobResponse)
def get_sync_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EmailSyncService = Depends(get_sync_service)
):
    """
    Get sync job status and progress.

    **Returns:**
    - 200: Job status
    - 404: Job not found (or owned by another user)
    """
    try:
        return service.get_job(user_id, job_id)
    except SyncJobNotFoundError:
        raise HTTPException(status_code=404, detail="Sync job not found")


@router.get("/sync", response_model=list[SyncJobResponse])
def list_sync_jobs(
    limit: int = Query(10, ge=1, le=100, description="Max jobs to return"),
    category: Optional[str] = Query(None, description="Filter by category tag"),
    user_id: str = Depends(get_current_user_id),
    service: EmailSyncService = Depends(get_sync_service)
):
    """List the caller's recent sync jobs, newest first."""
    return service.list_jobs(user_id, limit=limit, category=category)


# ============ REPROCESS ============

@router.post("/reprocess", status_code=202, response_model=StartJobResponse)
def start_reprocess(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    service: EmailSyncService = Depends(get_sync_service)
):
    """
    Re-parse all stored emails without contacting Gmail.

    Same job lifecycle and polling endpoint as `/sync`.
    """
    try:
        job = service.start_reprocess(user_id)
    except ActiveSyncJobError as e:
        return _conflict(e)

    background_tasks.add_task(service.run_reprocess_job, job.id)

    return StartJobResponse(
        job_id=job.id,
        message=f"Reprocess job started. Poll /api/v1/sync/{job.id} for status."
    )
