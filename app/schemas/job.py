"""
Job-related enums, transition table and Pydantic schemas
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, FrozenSet, Tuple
from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Coarse lifecycle of a job"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    """Fine-grained progress, used to resume after a crash"""
    PENDING_UPLOAD = "pending_upload"
    UPLOADING = "uploading"
    PENDING_EVAL = "pending_eval"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


# (status, stage) -> reachable (status, stage) pairs
JOB_TRANSITIONS: Dict[Tuple[JobStatus, JobStage], FrozenSet[Tuple[JobStatus, JobStage]]] = {
    (JobStatus.PENDING, JobStage.PENDING_UPLOAD): frozenset({
        (JobStatus.PROCESSING, JobStage.UPLOADING),
    }),
    (JobStatus.PROCESSING, JobStage.UPLOADING): frozenset({
        (JobStatus.PROCESSING, JobStage.UPLOADING),  # takeover after lease expiry
        (JobStatus.PENDING, JobStage.PENDING_EVAL),
        (JobStatus.PENDING, JobStage.PENDING_UPLOAD),
        (JobStatus.FAILED, JobStage.FAILED),
    }),
    (JobStatus.PENDING, JobStage.PENDING_EVAL): frozenset({
        (JobStatus.PROCESSING, JobStage.EVALUATING),
    }),
    (JobStatus.PROCESSING, JobStage.EVALUATING): frozenset({
        (JobStatus.PROCESSING, JobStage.EVALUATING),  # takeover after lease expiry
        (JobStatus.COMPLETED, JobStage.COMPLETED),
        (JobStatus.PENDING, JobStage.PENDING_EVAL),
        (JobStatus.PENDING, JobStage.PENDING_UPLOAD),
        (JobStatus.FAILED, JobStage.FAILED),
    }),
    (JobStatus.COMPLETED, JobStage.COMPLETED): frozenset(),
    (JobStatus.FAILED, JobStage.FAILED): frozenset(),
}


def can_transition(status: str, stage: str, new_status: str, new_stage: str) -> bool:
    """Check a (status, stage) move against the transition table"""
    try:
        current = (JobStatus(status), JobStage(stage))
        target = (JobStatus(new_status), JobStage(new_stage))
    except ValueError:
        return False
    return target in JOB_TRANSITIONS.get(current, frozenset())


class StageSpec(BaseModel):
    """Claim rules for one pipeline stage"""
    name: str
    claimable_statuses: Tuple[JobStatus, ...]
    claimable_stages: Tuple[JobStage, ...]
    active_stage: JobStage
    retry_stage: JobStage


UPLOAD_STAGE = StageSpec(
    name="upload",
    claimable_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
    claimable_stages=(JobStage.PENDING_UPLOAD, JobStage.UPLOADING),
    active_stage=JobStage.UPLOADING,
    retry_stage=JobStage.PENDING_UPLOAD,
)

EVALUATION_STAGE = StageSpec(
    name="evaluate",
    claimable_statuses=(JobStatus.PENDING, JobStatus.PROCESSING),
    claimable_stages=(JobStage.PENDING_EVAL, JobStage.EVALUATING),
    active_stage=JobStage.EVALUATING,
    retry_stage=JobStage.PENDING_EVAL,
)


class ArtifactRef(BaseModel):
    """Provider-side reference to an uploaded audio segment"""
    file_id: str = Field(..., description="Provider file identifier")
    mime_type: str = Field(default="audio/webm", description="MIME type of the uploaded audio")
    index: int = Field(default=0, description="Upload order of the segment")


class CreateJobRequest(BaseModel):
    """Request model for creating a speaking evaluation job"""
    user_id: str = Field(..., description="Owner of the submission")
    test_id: str = Field(..., description="Practice test identifier")
    file_paths: Dict[str, str] = Field(..., description="Segment key (e.g. 'part1-q<id>') -> storage path")
    durations: Optional[Dict[str, float]] = Field(None, description="Segment key -> recorded seconds")
    topic: Optional[str] = None
    difficulty: Optional[str] = None
    fluency_flag: bool = False
    provider_file_refs: Optional[Dict[str, ArtifactRef]] = Field(
        None, description="Already uploaded artifacts; skips the upload stage"
    )
    max_retries: Optional[int] = Field(None, ge=1, description="Job-level retry budget")


class CreateJobResponse(BaseModel):
    """Response model for job creation"""
    status: str = Field(default="success")
    job_id: str
    stage: str


class StatusResponse(BaseModel):
    """Job status response"""
    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Current job status")
    stage: str = Field(..., description="Current pipeline stage")
    retry_count: int = 0
    max_retries: int = 0
    result_id: Optional[str] = Field(None, description="Result identifier once completed")
    error: Optional[str] = Field(None, description="Most recent failure diagnostic")
    heartbeat_at: Optional[datetime] = None


class ExecutionOutcome(BaseModel):
    """What a trigger caller sees: accepted/skipped, completed, or failed"""
    job_id: str
    success: bool
    status: str
    result_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
