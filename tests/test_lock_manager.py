"""
Lease claim / renew / release against a real database
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.exceptions import LockDenied
from app.db.models.job import SpeakingEvaluationJob
from app.db.types import utcnow
from app.schemas.job import JobStage, JobStatus, UPLOAD_STAGE, EVALUATION_STAGE
from app.services.lock_manager import LockManager


async def _load(session_factory, job_id):
    async with session_factory() as session:
        result = await session.execute(select(SpeakingEvaluationJob).where(SpeakingEvaluationJob.id == job_id))
        return result.scalar_one()


async def _claim(manager, job_id, token, lease=300, stage=UPLOAD_STAGE):
    return await manager.try_claim(
        job_id, token, lease, stage.claimable_statuses, stage.claimable_stages, stage.active_stage
    )


class TestTryClaim:
    """Claim semantics"""

    async def test_claim_sets_lease_fields(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)

        before = utcnow()
        claimed = await _claim(manager, job.id, "token-a", lease=300)

        assert claimed.status == JobStatus.PROCESSING.value
        assert claimed.stage == JobStage.UPLOADING.value
        assert claimed.lock_token == "token-a"
        assert claimed.heartbeat_at >= before - timedelta(seconds=1)
        assert claimed.lock_expires_at >= before + timedelta(seconds=299)

    async def test_concurrent_claims_have_one_winner(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)

        results = await asyncio.gather(
            *[_claim(manager, job.id, f"token-{i}") for i in range(5)],
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, SpeakingEvaluationJob)]
        denied = [r for r in results if isinstance(r, LockDenied)]
        assert len(winners) == 1
        assert len(denied) == 4

        stored = await _load(session_factory, job.id)
        assert stored.lock_token == winners[0].lock_token

    async def test_live_lease_denies_second_claim(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)
        await _claim(manager, job.id, "token-a")

        with pytest.raises(LockDenied):
            await _claim(manager, job.id, "token-b")

    async def test_expired_lease_allows_takeover(self, session_factory, add_job):
        job = await add_job(
            status="processing",
            stage="uploading",
            lock_token="crashed-holder",
            lock_expires_at=utcnow() - timedelta(seconds=5),
            heartbeat_at=utcnow() - timedelta(minutes=10),
        )
        manager = LockManager(session_factory)

        claimed = await _claim(manager, job.id, "token-new")

        assert claimed.lock_token == "token-new"
        assert claimed.lock_expires_at > utcnow()

    async def test_wrong_stage_is_not_claimable(self, session_factory, add_job):
        job = await add_job(status="pending", stage="pending_upload")
        manager = LockManager(session_factory)

        with pytest.raises(LockDenied):
            await _claim(manager, job.id, "token-a", stage=EVALUATION_STAGE)

    async def test_completed_job_is_not_claimable(self, session_factory, add_job):
        job = await add_job(status="completed", stage="completed", result_id="r-1")
        manager = LockManager(session_factory)

        with pytest.raises(LockDenied):
            await _claim(manager, job.id, "token-a", stage=EVALUATION_STAGE)


class TestRenewAndRelease:
    """Token-conditional updates"""

    async def test_renew_extends_lease(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)
        await _claim(manager, job.id, "token-a", lease=10)

        assert await manager.renew(job.id, "token-a", 600) is True

        stored = await _load(session_factory, job.id)
        assert stored.lock_expires_at >= utcnow() + timedelta(seconds=590)

    async def test_renew_with_stale_token_fails(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)
        await _claim(manager, job.id, "token-a")

        assert await manager.renew(job.id, "token-b", 600) is False

    async def test_release_clears_lock_and_sets_state(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)
        await _claim(manager, job.id, "token-a")

        released = await manager.release(
            job.id, "token-a", JobStatus.PENDING, JobStage.PENDING_EVAL, last_error="note"
        )

        assert released is True
        stored = await _load(session_factory, job.id)
        assert stored.status == "pending"
        assert stored.stage == "pending_eval"
        assert stored.lock_token is None
        assert stored.lock_expires_at is None
        assert stored.last_error == "note"

    async def test_release_with_stale_token_changes_nothing(self, session_factory, add_job):
        job = await add_job()
        manager = LockManager(session_factory)
        await _claim(manager, job.id, "token-a")

        released = await manager.release(job.id, "token-b", JobStatus.FAILED, JobStage.FAILED)

        assert released is False
        stored = await _load(session_factory, job.id)
        assert stored.status == "processing"
        assert stored.lock_token == "token-a"
