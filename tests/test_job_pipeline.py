"""
Job pipeline end to end against SQLite with fake provider and storage
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, update

from app.core.exceptions import ProviderRejected, QuotaExhaustedPermanent, QuotaExhaustedTransient
from app.db.models.api_key import ApiKey
from app.db.models.job import SpeakingEvaluationJob
from app.db.models.result import EvaluationResult
from app.db.types import utcnow
from app.services.backoff import BackoffPolicy
from app.services.evaluation_executor import EvaluationExecutor
from app.services.job_pipeline import JobPipeline
from app.services.key_pool import KeyPool
from app.services.result_persister import ResultPersister

from conftest import FakeProvider

pytestmark = pytest.mark.integration


def _pipeline(session_factory, provider, storage):
    key_pool = KeyPool(session_factory, provider="gemini")
    executor = EvaluationExecutor(
        key_pool=key_pool,
        provider=provider,
        backoff=BackoffPolicy(rand=lambda a, b: 0.0),
        models=["model-fast", "model-fallback"],
        capability="flash_2_5",
        max_attempts=2,
        sleep=AsyncMock(),
    )
    return JobPipeline(
        session_factory=session_factory,
        provider=provider,
        storage=storage,
        key_pool=key_pool,
        executor=executor,
        persister=ResultPersister(session_factory, storage),
    )


async def _job(session_factory, job_id):
    async with session_factory() as session:
        return (await session.execute(
            select(SpeakingEvaluationJob).where(SpeakingEvaluationJob.id == job_id)
        )).scalar_one()


async def _result_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(EvaluationResult))).scalar_one()


class TestExecute:

    async def test_full_run_uploads_evaluates_and_persists(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        job = await add_job()
        provider = FakeProvider()
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.success is True
        assert outcome.status == "completed"
        assert outcome.result_id

        stored = await _job(session_factory, job.id)
        assert stored.status == "completed"
        assert stored.stage == "completed"
        assert stored.result_id == outcome.result_id
        assert stored.lock_token is None
        assert stored.completed_at is not None
        assert set(stored.provider_file_refs) == {"part1-q11", "part1-q12", "part2-q21"}
        assert stored.provider_file_refs["part1-q11"]["mime_type"] == "audio/mpeg"

        assert len(provider.upload_calls) == 3
        assert provider.generate_calls == [("pool-secret", "model-fast")]

        async with session_factory() as session:
            result = (await session.execute(
                select(EvaluationResult).where(EvaluationResult.id == outcome.result_id)
            )).scalar_one()
        assert result.job_id == job.id
        assert result.band_score == 6.5
        assert result.score == 65
        assert result.total_questions == 3
        assert result.time_spent_seconds == 140
        assert result.answers["audio_urls"]["part1-q11"].startswith("https://cdn.test/")
        assert result.answers["transcripts_by_part"] == {"1": "I live in Leeds."}
        assert result.model_used == "model-fast"

    async def test_completed_job_is_not_re_evaluated(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        job = await add_job()
        provider = FakeProvider()
        pipeline = _pipeline(session_factory, provider, fake_storage)
        first = await pipeline.execute(job.id)

        second = await pipeline.execute(job.id)

        assert second.success is True
        assert second.skipped is True
        assert second.result_id == first.result_id
        assert len(provider.generate_calls) == 1
        assert await _result_count(session_factory) == 1

    async def test_existing_references_skip_upload(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        refs = {
            key: {"file_id": f"files/{key}", "mime_type": "audio/webm", "index": i}
            for i, key in enumerate(["part1-q11", "part1-q12", "part2-q21"])
        }
        job = await add_job(stage="pending_eval", provider_file_refs=refs)
        provider = FakeProvider()
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id, user_api_key="user-secret")

        assert outcome.status == "completed"
        assert provider.upload_calls == []
        assert fake_storage.fetched == []
        assert provider.generate_calls == [("user-secret", "model-fast")]

    async def test_all_keys_quota_returns_job_to_pending(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("key-a")
        await add_key("key-b", created_offset=1)
        job = await add_job()
        provider = FakeProvider(default=QuotaExhaustedPermanent("Quota exhausted: limit: 0"))
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.success is False
        assert outcome.status == "pending"
        assert "limit: 0" in outcome.error

        stored = await _job(session_factory, job.id)
        assert stored.status == "pending"
        assert stored.stage == "pending_eval"
        assert stored.retry_count == 1
        assert stored.lock_token is None
        assert "limit: 0" in stored.last_error

        async with session_factory() as session:
            flags = (await session.execute(select(ApiKey.flash_2_5_quota_exhausted))).scalars().all()
        assert flags == [True, True]
        assert await _result_count(session_factory) == 0

    async def test_last_retry_fails_the_job(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("key-a")
        job = await add_job(retry_count=2, max_retries=3)
        provider = FakeProvider(default=QuotaExhaustedPermanent("Quota exhausted: limit: 0"))
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.success is False
        assert outcome.status == "failed"
        stored = await _job(session_factory, job.id)
        assert stored.status == "failed"
        assert stored.stage == "failed"
        assert stored.retry_count == 3
        assert stored.last_error.startswith("Failed after 3 attempts")

        again = await pipeline.execute(job.id)
        assert again.skipped is True
        assert again.status == "failed"

    async def test_no_keys_at_all_counts_as_a_failed_attempt(self, session_factory, add_job, add_practice_test, fake_storage):
        await add_practice_test()
        job = await add_job()
        pipeline = _pipeline(session_factory, FakeProvider(), fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.status == "pending"
        stored = await _job(session_factory, job.id)
        assert stored.stage == "pending_upload"
        assert stored.last_error == "No API keys available"

    async def test_upload_moves_past_exhausted_key(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        key_a = await add_key("key-a")
        await add_key("key-b", created_offset=1)
        job = await add_job()
        provider = FakeProvider(upload_script={"key-a": [QuotaExhaustedPermanent("Quota exhausted: limit: 0")]})
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.success is True
        assert outcome.status == "completed"
        assert [call[0] for call in provider.upload_calls] == ["key-a", "key-b", "key-b", "key-b"]
        assert provider.generate_calls == [("key-b", "model-fast")]

        stored = await _job(session_factory, job.id)
        assert stored.retry_count == 0
        assert set(stored.provider_file_refs) == {"part1-q11", "part1-q12", "part2-q21"}

        async with session_factory() as session:
            flagged = (await session.execute(
                select(ApiKey.flash_2_5_quota_exhausted).where(ApiKey.id == key_a.id)
            )).scalar_one()
        assert flagged is True

    async def test_rejected_user_key_falls_back_to_pool_for_upload(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        job = await add_job()
        provider = FakeProvider(upload_script={"user-secret": [ProviderRejected("API key not valid", 400)]})
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id, user_api_key="user-secret")

        assert outcome.status == "completed"
        assert [call[0] for call in provider.upload_calls] == ["user-secret"] + ["pool-secret"] * 3
        async with session_factory() as session:
            active = (await session.execute(select(ApiKey.is_active))).scalars().all()
        assert active == [True]

    async def test_rate_limited_upload_retries_same_key(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("key-a")
        job = await add_job()
        provider = FakeProvider(upload_script={"key-a": [QuotaExhaustedTransient("429", 429)]})
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.status == "completed"
        assert [call[0] for call in provider.upload_calls] == ["key-a"] * 4
        pipeline.executor.sleep.assert_awaited_once()

    async def test_upload_failing_on_every_key_returns_job_to_pending(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("key-a")
        await add_key("key-b", created_offset=1)
        job = await add_job()
        quota = QuotaExhaustedPermanent("Quota exhausted: limit: 0")
        provider = FakeProvider(upload_script={"key-a": [quota], "key-b": [quota]})
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.status == "pending"
        assert [call[0] for call in provider.upload_calls] == ["key-a", "key-b"]
        assert provider.generate_calls == []
        stored = await _job(session_factory, job.id)
        assert stored.stage == "pending_upload"
        assert stored.retry_count == 1
        assert "limit: 0" in stored.last_error

    async def test_live_lease_is_skipped(self, session_factory, add_job, fake_storage):
        job = await add_job(
            status="processing",
            stage="evaluating",
            lock_token="other-worker",
            lock_expires_at=utcnow() + timedelta(minutes=5),
        )
        provider = FakeProvider()
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.skipped is True
        assert outcome.success is False
        assert provider.generate_calls == []
        assert (await _job(session_factory, job.id)).lock_token == "other-worker"

    async def test_lost_ownership_discards_result(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        refs = {"part1-q11": {"file_id": "files/a", "mime_type": "audio/webm", "index": 0}}
        job = await add_job(stage="pending_eval", file_paths={"part1-q11": "a.webm"}, provider_file_refs=refs)

        async def takeover():
            async with session_factory() as session:
                await session.execute(
                    update(SpeakingEvaluationJob)
                    .where(SpeakingEvaluationJob.id == job.id)
                    .values(lock_token="new-holder")
                )
                await session.commit()

        provider = FakeProvider(on_generate=takeover)
        pipeline = _pipeline(session_factory, provider, fake_storage)

        outcome = await pipeline.execute(job.id)

        assert outcome.skipped is True
        assert outcome.result_id is None
        assert await _result_count(session_factory) == 0
        stored = await _job(session_factory, job.id)
        assert stored.lock_token == "new-holder"
        assert stored.status == "processing"

    async def test_missing_references_send_job_back_to_upload(self, session_factory, add_job, add_key, add_practice_test, fake_storage):
        await add_practice_test()
        await add_key("pool-secret")
        job = await add_job(stage="pending_eval", provider_file_refs=None)
        provider = FakeProvider()
        pipeline = _pipeline(session_factory, provider, fake_storage)

        first = await pipeline.execute(job.id)

        assert first.success is False
        assert first.status == "pending"
        assert (await _job(session_factory, job.id)).stage == "pending_upload"
        assert provider.generate_calls == []

        second = await pipeline.execute(job.id)

        assert second.status == "completed"
        assert len(provider.upload_calls) == 3

    async def test_unknown_job(self, session_factory, fake_storage):
        pipeline = _pipeline(session_factory, FakeProvider(), fake_storage)

        with pytest.raises(ValueError):
            await pipeline.execute("missing-job")
