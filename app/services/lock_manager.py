"""
Lease-based lock on the job row

The job record carries the lock itself (token + expiry). Every change to the
lease is a single conditional UPDATE whose affected row count decides the
outcome, so separate processes can race safely without a lock service.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import update, select, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import LockDenied
from app.db.base import get_session_factory
from app.db.models.job import SpeakingEvaluationJob
from app.db.types import utcnow
from app.schemas.job import JobStatus, JobStage

logger = logging.getLogger(__name__)


def _values(items: Iterable) -> list:
    return [getattr(item, "value", item) for item in items]


class LockManager:
    """Claim, renew and release job leases"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    async def try_claim(
        self,
        job_id: str,
        token: str,
        lease_seconds: float,
        claimable_statuses: Iterable[JobStatus],
        claimable_stages: Iterable[JobStage],
        stage: JobStage,
    ) -> SpeakingEvaluationJob:
        """
        Atomically claim a job.

        Succeeds only if the job is in a claimable status/stage and is either
        unlocked or its lease has expired.

        Args:
            job_id: Job identifier
            token: Fresh lock token for this claimant
            lease_seconds: Lease duration
            claimable_statuses: Statuses the claim may start from
            claimable_stages: Stages the claim may start from
            stage: Stage written on success

        Returns:
            The claimed job as stored after the claim

        Raises:
            LockDenied: If another holder is active or the job is not claimable
        """
        now = utcnow()
        stmt = (
            update(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.id == job_id,
                SpeakingEvaluationJob.status.in_(_values(claimable_statuses)),
                SpeakingEvaluationJob.stage.in_(_values(claimable_stages)),
                or_(
                    SpeakingEvaluationJob.lock_token.is_(None),
                    SpeakingEvaluationJob.lock_expires_at.is_(None),
                    SpeakingEvaluationJob.lock_expires_at < now,
                ),
            )
            .values(
                status=JobStatus.PROCESSING.value,
                stage=JobStage(stage).value,
                lock_token=token,
                lock_expires_at=now + timedelta(seconds=lease_seconds),
                heartbeat_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

            if result.rowcount != 1:
                logger.info(f"Job {job_id} not claimable (stage {JobStage(stage).value})")
                raise LockDenied(job_id)

            claimed = await session.execute(
                select(SpeakingEvaluationJob).where(SpeakingEvaluationJob.id == job_id)
            )
            job = claimed.scalar_one()

        logger.info(f"Claimed job {job_id} for stage {job.stage} (lease {lease_seconds}s)")
        return job

    async def renew(self, job_id: str, token: str, lease_seconds: float) -> bool:
        """Extend the lease and liveness timestamp if `token` still holds the job"""
        now = utcnow()
        stmt = (
            update(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.id == job_id,
                SpeakingEvaluationJob.lock_token == token,
            )
            .values(
                heartbeat_at=now,
                lock_expires_at=now + timedelta(seconds=lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def release(
        self,
        job_id: str,
        token: str,
        status: JobStatus,
        stage: JobStage,
        **fields,
    ) -> bool:
        """
        Release the lease and move the job to `status`/`stage`.

        Args:
            job_id: Job identifier
            token: Token the caller claimed with
            status: Status to write
            stage: Stage to write
            **fields: Extra columns to write (last_error, retry_count, ...)

        Returns:
            False if the token no longer matches (ownership lost)
        """
        now = utcnow()
        stmt = (
            update(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.id == job_id,
                SpeakingEvaluationJob.lock_token == token,
            )
            .values(
                status=JobStatus(status).value,
                stage=JobStage(stage).value,
                lock_token=None,
                lock_expires_at=None,
                updated_at=now,
                **fields,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        released = result.rowcount == 1
        if not released:
            logger.warning(f"Release of job {job_id} rejected: lock token no longer matches")
        return released
