"""
Job service for creating and inspecting speaking evaluation jobs
"""

import logging
from datetime import timedelta
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.models.job import SpeakingEvaluationJob
from app.db.types import utcnow
from app.schemas.job import (
    CreateJobRequest,
    CreateJobResponse,
    JobStage,
    JobStatus,
    StatusResponse,
)

logger = logging.getLogger(__name__)


class JobService:
    """Service for job records outside of pipeline execution"""

    async def create_job(self, request: CreateJobRequest, db: AsyncSession) -> CreateJobResponse:
        """
        Create a new job.

        Jobs start at `pending_upload`, or at `pending_eval` when the caller
        already holds provider references for every segment.

        Args:
            request: Job input
            db: Database session

        Returns:
            CreateJobResponse with job_id and starting stage
        """
        if not request.file_paths:
            raise ValueError("file_paths must not be empty")

        refs = None
        stage = JobStage.PENDING_UPLOAD
        if request.provider_file_refs:
            missing = set(request.file_paths) - set(request.provider_file_refs)
            if missing:
                raise ValueError(f"Missing provider references for: {', '.join(sorted(missing))}")
            refs = {key: ref.model_dump() for key, ref in request.provider_file_refs.items()}
            stage = JobStage.PENDING_EVAL

        now = utcnow()
        job = SpeakingEvaluationJob(
            id=str(uuid4()),
            user_id=request.user_id,
            test_id=request.test_id,
            file_paths=request.file_paths,
            durations=request.durations,
            topic=request.topic,
            difficulty=request.difficulty,
            fluency_flag=request.fluency_flag,
            provider_file_refs=refs,
            status=JobStatus.PENDING.value,
            stage=stage.value,
            retry_count=0,
            max_retries=request.max_retries or settings.DEFAULT_MAX_RETRIES,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        await db.commit()

        logger.info(f"Created job {job.id} for user {job.user_id} at stage {stage.value}")
        return CreateJobResponse(job_id=job.id, stage=stage.value)

    async def get_job_status(self, job_id: str, db: AsyncSession) -> StatusResponse:
        """
        Get job status.

        Raises:
            ValueError: If the job does not exist
        """
        result = await db.execute(select(SpeakingEvaluationJob).where(SpeakingEvaluationJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job:
            raise ValueError(f"Job {job_id} not found")
        return self._to_status(job)

    async def list_stale_jobs(
        self,
        db: AsyncSession,
        older_than_seconds: Optional[int] = None,
    ) -> List[StatusResponse]:
        """Processing jobs whose heartbeat is older than the threshold (or missing)"""
        threshold = older_than_seconds if older_than_seconds is not None else settings.STALE_HEARTBEAT_SECONDS
        cutoff = utcnow() - timedelta(seconds=threshold)
        result = await db.execute(
            select(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.status == JobStatus.PROCESSING.value,
                (SpeakingEvaluationJob.heartbeat_at.is_(None)) | (SpeakingEvaluationJob.heartbeat_at < cutoff),
            )
            .order_by(SpeakingEvaluationJob.heartbeat_at.asc())
        )
        jobs = result.scalars().all()
        if jobs:
            logger.warning(f"Found {len(jobs)} stale jobs (no heartbeat for {threshold}s)")
        return [self._to_status(job) for job in jobs]

    async def list_retryable_jobs(self, db: AsyncSession, limit: int = 50) -> List[StatusResponse]:
        """
        Pending jobs a scheduler may trigger now.

        Jobs that already failed an attempt are held back for
        JOB_RETRY_DELAY_SECONDS after their last update.
        """
        cutoff = utcnow() - timedelta(seconds=settings.JOB_RETRY_DELAY_SECONDS)
        result = await db.execute(
            select(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.status == JobStatus.PENDING.value,
                (SpeakingEvaluationJob.retry_count == 0) | (SpeakingEvaluationJob.updated_at < cutoff),
            )
            .order_by(SpeakingEvaluationJob.created_at.asc())
            .limit(limit)
        )
        return [self._to_status(job) for job in result.scalars().all()]

    @staticmethod
    def _to_status(job: SpeakingEvaluationJob) -> StatusResponse:
        return StatusResponse(
            job_id=job.id,
            status=job.status,
            stage=job.stage,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            result_id=job.result_id,
            error=job.last_error,
            heartbeat_at=job.heartbeat_at,
        )
