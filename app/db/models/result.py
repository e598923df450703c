"""
Evaluation result database model
Immutable once written; referenced by SpeakingEvaluationJob.result_id
"""

from sqlalchemy import Column, String, Integer, Float, Index
from app.db.base import Base
from app.db.types import JSONType, UTCDateTime, utcnow


class EvaluationResult(Base):
    """Model for a persisted speaking evaluation."""
    __tablename__ = "evaluation_results"

    id = Column(String(36), primary_key=True)  # UUID
    job_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    test_id = Column(String(36), nullable=False)
    module = Column(String(20), nullable=False, default="speaking")

    band_score = Column(Float, nullable=False)
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    time_spent_seconds = Column(Integer, nullable=False)

    question_results = Column(JSONType, nullable=False)  # structured evaluation from the provider
    answers = Column(JSONType, nullable=False)  # audio urls, transcripts, file paths
    model_used = Column(String(100), nullable=True)

    completed_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_evaluation_results_user_test', 'user_id', 'test_id'),
    )

    def __repr__(self):
        return f"<EvaluationResult(id='{self.id}', job_id='{self.job_id}', band={self.band_score})>"
