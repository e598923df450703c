"""
Result Persister
Writes the evaluation result and completes the job in one transaction
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import LostOwnership
from app.db.base import get_session_factory
from app.db.models.job import SpeakingEvaluationJob
from app.db.models.result import EvaluationResult
from app.db.types import utcnow
from app.schemas.job import JobStatus, JobStage
from app.services.evaluation_executor import EvaluationOutcome
from app.services.prompt_builder import Segment
from app.services.storage_service import StorageService
from app.utils.band import overall_band

logger = logging.getLogger(__name__)

DEFAULT_TIME_SPENT_SECONDS = 60


class ResultPersister:
    """Persists results only while the caller still owns the job"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        storage: Optional[StorageService] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.storage = storage or StorageService()

    def _answers(self, job: SpeakingEvaluationJob, result: Dict[str, Any]) -> Dict[str, Any]:
        file_paths = job.file_paths or {}
        audio_urls = {}
        for key, path in file_paths.items():
            url = self.storage.public_url(path)
            if url:
                audio_urls[key] = url
        return {
            "audio_urls": audio_urls,
            "transcripts_by_part": result.get("transcripts_by_part") or {},
            "transcripts_by_question": result.get("transcripts_by_question") or {},
            "file_paths": file_paths,
        }

    @staticmethod
    def _time_spent(job: SpeakingEvaluationJob) -> int:
        durations = job.durations or {}
        total = sum(float(v) for v in durations.values() if isinstance(v, (int, float)))
        return int(round(total)) or DEFAULT_TIME_SPENT_SECONDS

    async def persist(
        self,
        job: SpeakingEvaluationJob,
        token: str,
        outcome: EvaluationOutcome,
        segments: List[Segment],
    ) -> str:
        """
        Insert the result and move the job to completed.

        Args:
            job: Job as claimed
            token: Lock token the caller claimed with
            outcome: Successful evaluation
            segments: Ordered segments the evaluation covered

        Returns:
            The new result id

        Raises:
            LostOwnership: If the token no longer matches; nothing is written
        """
        band = overall_band(outcome.result)
        now = utcnow()
        result_id = str(uuid4())

        record = EvaluationResult(
            id=result_id,
            job_id=job.id,
            user_id=job.user_id,
            test_id=job.test_id,
            module="speaking",
            band_score=band,
            score=int(round(band * 10)),
            total_questions=len(segments),
            time_spent_seconds=self._time_spent(job),
            question_results=outcome.result,
            answers=self._answers(job, outcome.result),
            model_used=outcome.model,
            completed_at=now,
        )

        stmt = (
            update(SpeakingEvaluationJob)
            .where(
                SpeakingEvaluationJob.id == job.id,
                SpeakingEvaluationJob.lock_token == token,
            )
            .values(
                status=JobStatus.COMPLETED.value,
                stage=JobStage.COMPLETED.value,
                result_id=result_id,
                completed_at=now,
                updated_at=now,
                last_error=None,
                lock_token=None,
                lock_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            session.add(record)
            await session.flush()
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                logger.warning(f"Discarding result for job {job.id}: lock token no longer matches")
                raise LostOwnership(job.id)
            await session.commit()

        logger.info(f"Saved result {result_id} for job {job.id} (band {band}, model {outcome.model})")
        return result_id
