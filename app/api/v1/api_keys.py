"""
API key pool administration
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.base import get_sessionmaker
from app.db.models.api_key import ApiKey
from app.schemas.api_key import ApiKeyCreate, ApiKeyResponse, QuotaResetResponse
from app.services.key_pool import KeyPool

router = APIRouter()


def get_key_pool(session_factory: async_sessionmaker = Depends(get_sessionmaker)) -> KeyPool:
    """Dependency to get the key pool"""
    return KeyPool(session_factory=session_factory)


def mask_key(value: str) -> str:
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def _to_response(key: ApiKey) -> ApiKeyResponse:
    def _date(value):
        return value.isoformat() if value else None

    return ApiKeyResponse(
        id=key.id,
        provider=key.provider,
        masked_key=mask_key(key.key_value),
        is_active=key.is_active,
        error_count=key.error_count,
        flash_2_5_quota_exhausted_date=_date(key.flash_2_5_quota_exhausted_date),
        pro_quota_exhausted_date=_date(key.pro_quota_exhausted_date),
        tts_quota_exhausted_date=_date(key.tts_quota_exhausted_date),
        created_at=key.created_at,
    )


@router.post("", response_model=ApiKeyResponse)
async def provision_key(data: ApiKeyCreate, key_pool: KeyPool = Depends(get_key_pool)):
    """Add a provider key to the pool"""
    key = await key_pool.provision_key(data.key_value, data.provider)
    return _to_response(key)


@router.get("", response_model=List[ApiKeyResponse])
async def list_keys(key_pool: KeyPool = Depends(get_key_pool)):
    """List pool keys with their health (secrets masked)"""
    return [_to_response(key) for key in await key_pool.list_keys()]


@router.post("/reset-quotas", response_model=QuotaResetResponse)
async def reset_quotas(key_pool: KeyPool = Depends(get_key_pool)):
    """Clear quota flags left over from previous days (daily scheduler hook)"""
    return QuotaResetResponse(flags_reset=await key_pool.reset_expired_quotas())
