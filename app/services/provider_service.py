"""
AI provider client
Uploads audio artifacts and requests structured evaluations through an
OpenAI-compatible API, classifying failures into the pipeline's error types.
"""

import logging
from typing import List, Optional

import httpx
from openai import AsyncOpenAI
from openai import APIStatusError, AuthenticationError, PermissionDeniedError, RateLimitError

from app.core.config import settings
from app.core.exceptions import (
    ProviderError,
    ProviderRejected,
    QuotaExhaustedPermanent,
    QuotaExhaustedTransient,
)
from app.schemas.job import ArtifactRef
from app.services.backoff import extract_retry_after

logger = logging.getLogger(__name__)

PERMANENT_QUOTA_MARKERS = ("check your plan", "billing", "limit: 0", "insufficient_quota")
RATE_LIMIT_MARKERS = ("rate limit", "resource_exhausted", "resource exhausted", "quota", "too many requests")
REJECTED_MARKERS = ("api key not valid", "api_key_invalid", "invalid api key", "permission denied", "unauthorized")


def is_permanent_quota_message(message: str) -> bool:
    """Zero daily allowance or billing block: retrying today will not help"""
    msg = message.lower()
    if any(marker in msg for marker in PERMANENT_QUOTA_MARKERS):
        return True
    return "per day" in msg and "retry" not in msg


def classify_provider_error(error: Exception) -> ProviderError:
    """
    Map a provider exception onto the pipeline's error taxonomy.

    Args:
        error: Exception raised by the SDK or transport

    Returns:
        QuotaExhaustedPermanent, QuotaExhaustedTransient, ProviderRejected or
        a plain ProviderError for everything else
    """
    if isinstance(error, ProviderError):
        return error

    message = str(error)
    msg = message.lower()
    status_code = getattr(error, "status_code", None)

    rate_limited = (
        isinstance(error, RateLimitError)
        or status_code == 429
        or any(marker in msg for marker in RATE_LIMIT_MARKERS)
    )
    if rate_limited or (status_code in (402, 403) and is_permanent_quota_message(message)):
        if is_permanent_quota_message(message):
            return QuotaExhaustedPermanent(f"Quota exhausted: {message}", status_code)
        return QuotaExhaustedTransient(
            f"Rate limit exceeded: {message}",
            status_code,
            retry_after=extract_retry_after(error),
        )

    if (
        isinstance(error, (AuthenticationError, PermissionDeniedError))
        or status_code in (401, 403)
        or any(marker in msg for marker in REJECTED_MARKERS)
    ):
        return ProviderRejected(f"Credential rejected: {message}", status_code)

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, ConnectionError)):
        return ProviderError(f"Network error: {message}", status_code)

    if isinstance(error, APIStatusError):
        return ProviderError(f"Provider error ({status_code}): {message}", status_code)

    return ProviderError(f"Unknown error: {message}", status_code)


class ProviderClient:
    """
    Thin async client for the evaluation provider.

    Features:
    - One SDK client per credential, so key rotation is a plain argument
    - SDK-level retries disabled; retry policy belongs to the executor
    - Every failure surfaces as a classified ProviderError
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.AI_BASE_URL
        self.timeout = timeout or settings.AI_REQUEST_TIMEOUT
        self.temperature = settings.EVAL_TEMPERATURE if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.EVAL_MAX_OUTPUT_TOKENS

    def _client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    async def upload_artifact(self, api_key: str, name: str, data: bytes, mime_type: str, index: int = 0) -> ArtifactRef:
        """
        Upload one audio segment and return its provider reference.

        Raises:
            ProviderError: Classified upload failure
        """
        client = self._client(api_key)
        try:
            uploaded = await client.files.create(file=(name, data, mime_type), purpose="user_data")
        except Exception as e:
            raise classify_provider_error(e) from e
        finally:
            await client.close()

        logger.info(f"Uploaded artifact {name} ({len(data)} bytes) as {uploaded.id}")
        return ArtifactRef(file_id=uploaded.id, mime_type=mime_type, index=index)

    async def generate(self, api_key: str, model: str, artifacts: List[ArtifactRef], prompt: str) -> str:
        """
        Request an evaluation.

        Args:
            api_key: Credential to call with
            model: Model identifier
            artifacts: Uploaded audio, in the order the prompt refers to them
            prompt: Evaluation instructions

        Returns:
            Raw response text (may be empty)

        Raises:
            ProviderError: Classified provider failure
        """
        content = [{"type": "file", "file": {"file_id": ref.file_id}} for ref in artifacts]
        content.append({"type": "text", "text": prompt})

        client = self._client(api_key)
        try:
            completion = await client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": content}],
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
            )
        except Exception as e:
            raise classify_provider_error(e) from e
        finally:
            await client.close()

        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""
