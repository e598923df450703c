"""
API key pool database model
Shared, rotating set of provider credentials with per-capability quota state
"""

from sqlalchemy import Column, String, Text, Integer, Boolean, Date, Index
from app.db.base import Base
from app.db.types import UTCDateTime, utcnow
from app.schemas.api_key import Capability


class ApiKey(Base):
    """
    Model for a pooled provider credential.

    Each capability carries an exhaustion flag plus the UTC date it was set;
    a flag dated before today no longer excludes the key.
    """
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True)  # UUID
    provider = Column(String(50), nullable=False, index=True)
    key_value = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    error_count = Column(Integer, nullable=False, default=0)

    flash_2_5_quota_exhausted = Column(Boolean, nullable=False, default=False)
    flash_2_5_quota_exhausted_date = Column(Date, nullable=True)
    pro_quota_exhausted = Column(Boolean, nullable=False, default=False)
    pro_quota_exhausted_date = Column(Date, nullable=True)
    tts_quota_exhausted = Column(Boolean, nullable=False, default=False)
    tts_quota_exhausted_date = Column(Date, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_api_keys_provider_active', 'provider', 'is_active'),
        Index('idx_api_keys_error_count', 'error_count'),
    )

    @classmethod
    def quota_columns(cls, capability):
        """(flag column, date column) for a capability"""
        capability = Capability(capability)
        return (
            getattr(cls, f"{capability.value}_quota_exhausted"),
            getattr(cls, f"{capability.value}_quota_exhausted_date"),
        )

    def __repr__(self):
        return f"<ApiKey(id='{self.id}', provider='{self.provider}', active={self.is_active}, errors={self.error_count})>"
