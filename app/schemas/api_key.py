"""
API key pool schemas
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class Capability(str, Enum):
    """Provider access tier with its own quota state"""
    FLASH_2_5 = "flash_2_5"
    PRO = "pro"
    TTS = "tts"


class FailureSeverity(str, Enum):
    """How hard a key is penalized after a failure"""
    SOFT = "soft"    # error_count + 1
    QUOTA = "quota"  # exhausted for the capability until tomorrow
    FATAL = "fatal"  # deactivated


class KeyCandidate(BaseModel):
    """One credential in a per-attempt key queue"""
    key_value: str
    key_id: Optional[str] = None
    is_user_provided: bool = False

    def label(self) -> str:
        return "(user)" if self.is_user_provided else f"(pool: {self.key_id})"


class ApiKeyCreate(BaseModel):
    """Provision a pool key (admin action)"""
    key_value: str = Field(..., min_length=8, description="Provider secret")
    provider: Optional[str] = Field(None, description="Provider name (defaults to AI_PROVIDER)")


class ApiKeyResponse(BaseModel):
    """Pool key as exposed to admins (secret masked)"""
    id: str
    provider: str
    masked_key: str
    is_active: bool
    error_count: int
    flash_2_5_quota_exhausted_date: Optional[str] = None
    pro_quota_exhausted_date: Optional[str] = None
    tts_quota_exhausted_date: Optional[str] = None
    created_at: Optional[datetime] = None


class QuotaResetResponse(BaseModel):
    status: str = "success"
    flags_reset: int
