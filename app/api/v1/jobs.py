"""
Job endpoints: create, execute, and scheduler views
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.base import get_db, get_sessionmaker
from app.schemas.job import CreateJobRequest, CreateJobResponse, ExecutionOutcome, StatusResponse
from app.services.job_pipeline import JobPipeline
from app.services.job_service import JobService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_job_service() -> JobService:
    """Dependency to get job service instance"""
    return JobService()


def get_pipeline(session_factory: async_sessionmaker = Depends(get_sessionmaker)) -> JobPipeline:
    """Dependency to get a pipeline bound to the app's session factory"""
    return JobPipeline(session_factory=session_factory)


@router.post("", response_model=CreateJobResponse)
async def create_job(
    data: CreateJobRequest,
    job_service: JobService = Depends(get_job_service),
    db: AsyncSession = Depends(get_db),
):
    """Create a speaking evaluation job"""
    try:
        return await job_service.create_job(data, db)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{job_id}/execute", response_model=ExecutionOutcome)
async def execute_job(
    job_id: str,
    background_tasks: BackgroundTasks,
    background: bool = Query(False, description="Run after responding"),
    x_provider_api_key: Optional[str] = Header(None, description="Caller-supplied provider key, tried first"),
    pipeline: JobPipeline = Depends(get_pipeline),
):
    """
    Trigger a job attempt.

    Safe to call repeatedly; concurrent calls for the same job are skipped.
    """
    if background:
        background_tasks.add_task(pipeline.execute, job_id, x_provider_api_key)
        logger.info(f"Scheduled job {job_id} in background")
        return ExecutionOutcome(job_id=job_id, success=True, status="accepted")

    try:
        return await pipeline.execute(job_id, x_provider_api_key)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/stale", response_model=List[StatusResponse])
async def list_stale_jobs(
    older_than_seconds: Optional[int] = Query(None, ge=1, description="Heartbeat age threshold"),
    job_service: JobService = Depends(get_job_service),
    db: AsyncSession = Depends(get_db),
):
    """Processing jobs whose heartbeat has gone quiet"""
    return await job_service.list_stale_jobs(db, older_than_seconds)


@router.get("/retryable", response_model=List[StatusResponse])
async def list_retryable_jobs(
    limit: int = Query(50, ge=1, le=500),
    job_service: JobService = Depends(get_job_service),
    db: AsyncSession = Depends(get_db),
):
    """Pending jobs ready for their next attempt"""
    return await job_service.list_retryable_jobs(db, limit)
