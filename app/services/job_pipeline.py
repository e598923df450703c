"""
Speaking Evaluation Job Pipeline
Two stages, each under its own lease:

1. Upload: storage audio → provider artifacts (references saved on the job)
2. Evaluate: artifacts + prompt → executor → persisted result

Stage progress lives on the job row, so a crashed attempt resumes at the
stage it died in and never repeats a finished one.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.core.exceptions import (
    AllResourcesExhausted,
    JobRetriesExhausted,
    LockDenied,
    LostOwnership,
    ProviderError,
    StageIncomplete,
)
from app.db.base import get_session_factory
from app.db.models.job import SpeakingEvaluationJob
from app.db.types import utcnow
from app.schemas.api_key import KeyCandidate
from app.schemas.job import (
    ArtifactRef,
    EVALUATION_STAGE,
    ExecutionOutcome,
    JobStage,
    JobStatus,
    StageSpec,
    UPLOAD_STAGE,
)
from app.services.content_service import ContentService
from app.services.evaluation_executor import EvaluationExecutor
from app.services.heartbeat import HeartbeatRenewer
from app.services.key_pool import KeyPool
from app.services.lock_manager import LockManager
from app.services.prompt_builder import build_prompt, order_segments
from app.services.provider_service import ProviderClient
from app.services.result_persister import ResultPersister
from app.services.storage_service import StorageService

logger = logging.getLogger(__name__)

StageWork = Callable[[SpeakingEvaluationJob, str, Optional[str]], Awaitable[Optional[ExecutionOutcome]]]


class JobPipeline:
    """
    Runs a job from whatever stage it is in to completion or failure.

    `execute` is safe to call repeatedly and concurrently for the same job:
    only the caller that wins the claim does any work, the rest are skipped.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        provider: Optional[ProviderClient] = None,
        storage: Optional[StorageService] = None,
        lock_manager: Optional[LockManager] = None,
        key_pool: Optional[KeyPool] = None,
        content: Optional[ContentService] = None,
        executor: Optional[EvaluationExecutor] = None,
        persister: Optional[ResultPersister] = None,
    ):
        """
        Initialize pipeline.

        Args:
            session_factory: Async session factory (defaults to the app engine)
            provider: AI provider client
            storage: Audio storage reader
            lock_manager, key_pool, content, executor, persister: Collaborators,
                built from the above when not given
        """
        self.session_factory = session_factory or get_session_factory()
        self.provider = provider or ProviderClient()
        self.storage = storage or StorageService()
        self.lock_manager = lock_manager or LockManager(self.session_factory)
        self.key_pool = key_pool or KeyPool(self.session_factory)
        self.content = content or ContentService(self.session_factory)
        self.executor = executor or EvaluationExecutor(self.key_pool, self.provider)
        self.persister = persister or ResultPersister(self.session_factory, self.storage)

        self.stage_leases = {
            UPLOAD_STAGE.name: (settings.UPLOAD_LOCK_DURATION_SECONDS, settings.UPLOAD_HEARTBEAT_INTERVAL_SECONDS),
            EVALUATION_STAGE.name: (settings.EVAL_LOCK_DURATION_SECONDS, settings.EVAL_HEARTBEAT_INTERVAL_SECONDS),
        }

    async def execute(self, job_id: str, user_api_key: Optional[str] = None) -> ExecutionOutcome:
        """
        Advance a job as far as it can go in this attempt.

        Args:
            job_id: Job identifier
            user_api_key: Caller-supplied provider credential, tried before the pool

        Returns:
            ExecutionOutcome: completed with result, failed with diagnostic, or skipped

        Raises:
            ValueError: If the job does not exist
        """
        job = await self._get_job(job_id)
        if not job:
            raise ValueError(f"Job {job_id} not found")

        if job.stage == JobStage.COMPLETED.value:
            logger.info(f"Job {job_id} already completed, returning result {job.result_id}")
            return ExecutionOutcome(
                job_id=job_id, success=True, status=job.status, result_id=job.result_id, skipped=True
            )
        if job.status == JobStatus.FAILED.value:
            return ExecutionOutcome(
                job_id=job_id, success=False, status=job.status, error=job.last_error, skipped=True
            )

        if job.stage in UPLOAD_STAGE.claimable_stages:
            outcome = await self._run_stage(UPLOAD_STAGE, job_id, user_api_key, self._upload)
            if outcome is not None:
                return outcome

        return await self._run_stage(EVALUATION_STAGE, job_id, user_api_key, self._evaluate)

    async def _run_stage(
        self,
        stage: StageSpec,
        job_id: str,
        user_api_key: Optional[str],
        work: StageWork,
    ) -> Optional[ExecutionOutcome]:
        """Claim, heartbeat, run `work`, and map failures onto the job-level retry rule"""
        lease_seconds, interval_seconds = self.stage_leases[stage.name]
        token = str(uuid4())

        try:
            job = await self.lock_manager.try_claim(
                job_id,
                token,
                lease_seconds,
                stage.claimable_statuses,
                stage.claimable_stages,
                stage.active_stage,
            )
        except LockDenied as e:
            logger.info(f"Skipping {stage.name} for job {job_id}: {e.message}")
            return await self._skipped(job_id, e.message)

        heartbeat = HeartbeatRenewer(self.lock_manager, job_id, token, lease_seconds, interval_seconds)
        try:
            async with heartbeat:
                return await work(job, token, user_api_key)
        except LostOwnership as e:
            logger.warning(e.message)
            return await self._skipped(job_id, e.message)
        except StageIncomplete as e:
            logger.warning(f"Job {job_id} cannot run {stage.name}: {e.message}; resuming at {e.resume_stage}")
            released = await self.lock_manager.release(
                job_id, token, JobStatus.PENDING, JobStage(e.resume_stage), last_error=e.message
            )
            if not released:
                return await self._skipped(job_id, e.message)
            return ExecutionOutcome(job_id=job_id, success=False, status=JobStatus.PENDING.value, error=e.message)
        except Exception as e:
            logger.error(f"Stage {stage.name} failed for job {job_id}: {e}", exc_info=True)
            return await self._handle_failure(job, token, stage, e)

    async def _upload(
        self,
        job: SpeakingEvaluationJob,
        token: str,
        user_api_key: Optional[str],
    ) -> Optional[ExecutionOutcome]:
        """Upload every segment that has no provider reference yet, then hand over to evaluation"""
        file_paths = job.file_paths or {}
        if not file_paths:
            raise ValueError("Job has no audio files")

        refs = dict(job.provider_file_refs or {})
        missing = [key for key in sorted(file_paths) if key not in refs]

        if missing:
            queue = await self.key_pool.build_queue(user_api_key, self.executor.capability)
            if not queue:
                raise AllResourcesExhausted("No API keys available")

            logger.info(f"Uploading {len(missing)} of {len(file_paths)} segments for job {job.id}")
            await self._upload_missing(job.id, token, file_paths, refs, queue)

        released = await self.lock_manager.release(
            job.id, token, JobStatus.PENDING, JobStage.PENDING_EVAL, provider_file_refs=refs, last_error=None
        )
        if not released:
            raise LostOwnership(job.id)

        logger.info(f"Upload stage finished for job {job.id} ({len(refs)} artifacts)")
        return None

    async def _upload_missing(
        self,
        job_id: str,
        token: str,
        file_paths: Dict[str, str],
        refs: Dict[str, Any],
        queue: List[KeyCandidate],
    ) -> None:
        """
        Upload the segments missing from `refs`, rotating through `queue`.

        A provider failure marks the key the same way evaluation does and
        moves to the next one; references already saved are kept. Storage
        errors propagate to the job-level retry.
        """
        candidates = iter(queue)
        candidate = next(candidates)
        last_error: Optional[str] = None

        for index, key in enumerate(sorted(file_paths)):
            if key in refs:
                continue
            path = file_paths[key]
            name = path.rsplit("/", 1)[-1]
            data, mime_type = await self.storage.fetch_audio(path)

            while True:
                try:
                    ref = await self.executor.with_backoff(
                        candidate,
                        f"upload of {key}",
                        lambda: self.provider.upload_artifact(candidate.key_value, name, data, mime_type, index),
                    )
                    break
                except ProviderError as e:
                    last_error = e.message
                    logger.warning(f"Upload of {key} failed on key {candidate.label()} ({e.error_type.value}): {e.message}")
                    await self.executor.penalize(candidate, e)
                    candidate = next(candidates, None)
                    if candidate is None:
                        raise AllResourcesExhausted(last_error)
                    logger.info(f"Retrying upload of {key} with key {candidate.label()}")

            refs[key] = ref.model_dump()
            if not await self._save_refs(job_id, token, refs):
                raise LostOwnership(job_id)

    async def _evaluate(
        self,
        job: SpeakingEvaluationJob,
        token: str,
        user_api_key: Optional[str],
    ) -> ExecutionOutcome:
        """Build the prompt from the stored artifacts, run the executor, persist the result"""
        refs = job.provider_file_refs or {}
        if not refs:
            raise StageIncomplete("No uploaded audio references", JobStage.PENDING_UPLOAD.value)

        test = await self.content.get_test(job.test_id, job.user_id)
        payload = test.payload or {}
        segments = order_segments(payload, refs.keys())
        if not segments:
            raise ValueError("No audio segments match the test questions")

        artifacts = [ArtifactRef(**refs[segment.segment_key]) for segment in segments]
        prompt = build_prompt(
            payload,
            job.topic or test.topic,
            job.difficulty or test.difficulty,
            bool(job.fluency_flag),
            segments,
        )

        queue = await self.key_pool.build_queue(user_api_key, self.executor.capability)
        outcome = await self.executor.evaluate(queue, artifacts, prompt)
        result_id = await self.persister.persist(job, token, outcome, segments)

        logger.info(f"Job {job.id} completed with result {result_id}")
        return ExecutionOutcome(
            job_id=job.id, success=True, status=JobStatus.COMPLETED.value, result_id=result_id
        )

    async def _handle_failure(
        self,
        job: SpeakingEvaluationJob,
        token: str,
        stage: StageSpec,
        error: Exception,
    ) -> ExecutionOutcome:
        """Job-level retry: back to the stage's pending state, or terminal failure once the budget is spent"""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        retry_count = (job.retry_count or 0) + 1

        if retry_count >= job.max_retries:
            exhausted = JobRetriesExhausted(f"Failed after {retry_count} attempts: {message}")
            status, next_stage, error_text = JobStatus.FAILED, JobStage.FAILED, exhausted.message
        else:
            status, next_stage, error_text = JobStatus.PENDING, stage.retry_stage, message

        released = await self.lock_manager.release(
            job.id, token, status, next_stage, retry_count=retry_count, last_error=error_text
        )
        if not released:
            return await self._skipped(job.id, f"Lost ownership of job {job.id}")

        if status == JobStatus.FAILED:
            logger.error(f"Job {job.id} permanently failed: {error_text}")
        else:
            logger.info(f"Job {job.id} returned to {next_stage.value} (retry {retry_count}/{job.max_retries})")

        return ExecutionOutcome(job_id=job.id, success=False, status=status.value, error=error_text)

    async def _save_refs(self, job_id: str, token: str, refs: dict) -> bool:
        stmt = (
            update(SpeakingEvaluationJob)
            .where(SpeakingEvaluationJob.id == job_id, SpeakingEvaluationJob.lock_token == token)
            .values(provider_file_refs=refs, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def _get_job(self, job_id: str) -> Optional[SpeakingEvaluationJob]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SpeakingEvaluationJob).where(SpeakingEvaluationJob.id == job_id)
            )
            return result.scalar_one_or_none()

    async def _skipped(self, job_id: str, reason: str) -> ExecutionOutcome:
        job = await self._get_job(job_id)
        return ExecutionOutcome(
            job_id=job_id,
            success=False,
            status=job.status if job else JobStatus.PENDING.value,
            result_id=job.result_id if job else None,
            error=reason,
            skipped=True,
        )
