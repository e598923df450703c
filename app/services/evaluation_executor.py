"""
Evaluation Executor
Walks the key queue and model priority list until one provider call returns
a parseable evaluation.

    SelectKey -> SelectModel -> Invoke -> Success | ClassifyError
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import (
    AllResourcesExhausted,
    ParseFailure,
    ProviderError,
    ProviderRejected,
    QuotaExhaustedPermanent,
    QuotaExhaustedTransient,
)
from app.schemas.api_key import Capability, FailureSeverity, KeyCandidate
from app.schemas.job import ArtifactRef
from app.services.backoff import BackoffPolicy
from app.services.key_pool import KeyPool
from app.services.provider_service import ProviderClient, classify_provider_error
from app.utils.json_extract import parse_model_json

logger = logging.getLogger(__name__)


@dataclass
class EvaluationOutcome:
    """Successful evaluation and where it came from"""
    result: Dict[str, Any]
    model: str
    key_id: Optional[str] = None
    is_user_key: bool = False


class EvaluationExecutor:
    """
    Runs one evaluation attempt against a materialized key queue.

    Error handling per key/model:
    - Permanent quota: flag the key for the capability, move to the next key
    - Rate limit: back off and retry the same key+model, then the next model
    - Rejected credential: deactivate the key, move to the next key
    - Parse or unknown failure: next model, no backoff
    """

    def __init__(
        self,
        key_pool: KeyPool,
        provider: ProviderClient,
        backoff: Optional[BackoffPolicy] = None,
        models: Optional[List[str]] = None,
        capability: Optional[Capability] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.key_pool = key_pool
        self.provider = provider
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.models = list(models or settings.EVAL_MODELS)
        self.capability = Capability(capability or settings.EVAL_CAPABILITY)
        self.max_attempts = max(1, max_attempts or settings.RATE_LIMIT_MAX_ATTEMPTS)
        self.sleep = sleep

    async def evaluate(
        self,
        queue: List[KeyCandidate],
        artifacts: List[ArtifactRef],
        prompt: str,
    ) -> EvaluationOutcome:
        """
        Try every key (in queue order) with every model (in priority order).

        Args:
            queue: Credentials for this attempt, already ordered
            artifacts: Uploaded audio references in prompt order
            prompt: Evaluation prompt

        Returns:
            EvaluationOutcome for the first parseable response

        Raises:
            AllResourcesExhausted: If the queue is empty or drained without success
        """
        if not queue:
            raise AllResourcesExhausted("No API keys available")

        last_error: Optional[str] = None

        for key_index, candidate in enumerate(queue):
            logger.info(f"Trying key {key_index + 1}/{len(queue)} {candidate.label()}")
            key_marked = False

            for model in self.models:
                try:
                    result = await self.with_backoff(
                        candidate, model, lambda: self._invoke(candidate, model, artifacts, prompt)
                    )
                except (QuotaExhaustedPermanent, ProviderRejected) as e:
                    last_error = e.message
                    logger.warning(f"Key {candidate.label()} failed on {model} ({e.error_type.value}), skipping remaining models")
                    await self.penalize(candidate, e)
                    key_marked = True
                    break
                except ProviderError as e:
                    last_error = e.message
                    logger.warning(f"Model {model} failed on key {candidate.label()} ({e.error_type.value}): {e.message}")
                    continue

                logger.info(f"Evaluation succeeded with {model} on key {candidate.label()}")
                if candidate.key_id:
                    await self.key_pool.mark_success(candidate.key_id)
                return EvaluationOutcome(
                    result=result,
                    model=model,
                    key_id=candidate.key_id,
                    is_user_key=candidate.is_user_provided,
                )

            if candidate.key_id and not key_marked:
                await self.key_pool.mark_failure(candidate.key_id, FailureSeverity.SOFT)

        logger.error(f"All {len(queue)} keys and {len(self.models)} models exhausted: {last_error}")
        raise AllResourcesExhausted(last_error or "All API keys exhausted")

    async def with_backoff(
        self,
        candidate: KeyCandidate,
        label: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Run `call`, retrying rate limits with backoff.

        Sleeps only before a retry; after `max_attempts` rate limits the last
        QuotaExhaustedTransient propagates. Other errors propagate at once.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except QuotaExhaustedTransient as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.warning(f"Rate limited on {label} {candidate.label()}, giving up after {attempt} attempts")
                    raise
                delay = self.backoff.delay(attempt - 1, e.retry_after)
                logger.warning(
                    f"Rate limited on {label} {candidate.label()} "
                    f"(attempt {attempt}/{self.max_attempts}), waiting {delay:.1f}s"
                )
                await self.sleep(delay)

    async def penalize(self, candidate: KeyCandidate, error: ProviderError) -> None:
        """Record a failed call against a pool key; user keys are never marked"""
        if not candidate.key_id:
            return
        if isinstance(error, QuotaExhaustedPermanent):
            await self.key_pool.mark_failure(candidate.key_id, FailureSeverity.QUOTA, self.capability)
        elif isinstance(error, ProviderRejected):
            await self.key_pool.mark_failure(candidate.key_id, FailureSeverity.FATAL)
        else:
            await self.key_pool.mark_failure(candidate.key_id, FailureSeverity.SOFT)

    async def _invoke(
        self,
        candidate: KeyCandidate,
        model: str,
        artifacts: List[ArtifactRef],
        prompt: str,
    ) -> Dict[str, Any]:
        try:
            text = await self.provider.generate(candidate.key_value, model, artifacts, prompt)
        except ProviderError:
            raise
        except Exception as e:
            raise classify_provider_error(e) from e

        result = parse_model_json(text or "")
        if result is None:
            raise ParseFailure(f"Failed to parse JSON response from {model}")
        return result
