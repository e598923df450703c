"""
Speaking evaluation job database model
Durable record of pipeline state, lease and retry budget
"""

from sqlalchemy import Column, String, Text, Integer, Boolean, Index
from app.db.base import Base
from app.db.types import JSONType, UTCDateTime, utcnow
from app.schemas.job import JobStatus, JobStage


class SpeakingEvaluationJob(Base):
    """
    Model for a speaking evaluation job.

    The lease lives on the row itself: `lock_token` identifies the current
    claimant and `lock_expires_at` bounds its claim. Only conditional
    UPDATEs (see LockManager) may change them.
    """
    __tablename__ = "speaking_evaluation_jobs"

    # Primary key
    id = Column(String(36), primary_key=True)  # UUID

    # Input references (read-only for the pipeline)
    user_id = Column(String(36), nullable=False, index=True)
    test_id = Column(String(36), nullable=False)
    file_paths = Column(JSONType, nullable=False, default=dict)  # segment key -> storage path
    durations = Column(JSONType, nullable=True)  # segment key -> seconds
    topic = Column(String(255), nullable=True)
    difficulty = Column(String(50), nullable=True)
    fluency_flag = Column(Boolean, nullable=False, default=False)

    # Written by the upload stage: segment key -> {file_id, mime_type, index}
    provider_file_refs = Column(JSONType, nullable=True)

    # Lifecycle
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    stage = Column(String(20), nullable=False, default=JobStage.PENDING_UPLOAD.value)

    # Lease
    lock_token = Column(String(36), nullable=True)
    lock_expires_at = Column(UTCDateTime, nullable=True)
    heartbeat_at = Column(UTCDateTime, nullable=True)

    # Retry budget
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)

    # Result
    result_id = Column(String(36), nullable=True)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)

    # Indexes
    __table_args__ = (
        Index('idx_speaking_jobs_status_stage', 'status', 'stage'),
        Index('idx_speaking_jobs_heartbeat_at', 'heartbeat_at'),
        Index('idx_speaking_jobs_created_at', 'created_at'),
    )

    def __repr__(self):
        return f"<SpeakingEvaluationJob(id='{self.id}', status='{self.status}', stage='{self.stage}')>"
