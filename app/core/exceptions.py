"""
Error taxonomy for the evaluation pipeline
"""

from enum import Enum
from typing import Optional


class ProviderErrorType(str, Enum):
    """Classification of AI provider failures"""
    QUOTA_PERMANENT = "quota_permanent"
    RATE_LIMIT = "rate_limit"
    REJECTED = "rejected"
    PARSE = "parse"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for evaluation pipeline errors"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class LockDenied(PipelineError):
    """Another holder owns the job, or the job is not in a claimable state.

    Not a failure: the trigger reports it as skipped.
    """
    def __init__(self, job_id: str, reason: str = "Job already claimed or in wrong state"):
        self.job_id = job_id
        super().__init__(reason)


class LostOwnership(PipelineError):
    """The lease expired and another claimant took the job over."""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Lost ownership of job {job_id}; discarding work")


class ProviderError(PipelineError):
    """Error returned by the AI provider, classified by type"""
    error_type = ProviderErrorType.UNKNOWN

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class QuotaExhaustedPermanent(ProviderError):
    """Daily allowance is zero or billing blocks the key"""
    error_type = ProviderErrorType.QUOTA_PERMANENT


class QuotaExhaustedTransient(ProviderError):
    """Rate limited; the same key may succeed after a pause"""
    error_type = ProviderErrorType.RATE_LIMIT

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status_code)


class ProviderRejected(ProviderError):
    """Credential refused (auth/permission)"""
    error_type = ProviderErrorType.REJECTED


class ParseFailure(ProviderError):
    """Provider answered but no structured result could be extracted"""
    error_type = ProviderErrorType.PARSE


class AllResourcesExhausted(PipelineError):
    """Every key/model combination was tried without success"""


class StageIncomplete(PipelineError):
    """A stage was entered before its prerequisite stage finished"""
    def __init__(self, message: str, resume_stage: str):
        self.resume_stage = resume_stage
        super().__init__(message)


class JobRetriesExhausted(PipelineError):
    """Job reached max_retries and is now terminally failed"""
