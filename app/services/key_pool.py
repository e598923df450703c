"""
API key pool
Builds per-attempt credential queues and records key health.

All health mutations are single UPDATE statements (atomic increment or flag
set) because concurrent job attempts may penalize or heal the same key.
"""

import logging
from datetime import date
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.db.base import get_session_factory
from app.db.models.api_key import ApiKey
from app.db.types import utcnow
from app.schemas.api_key import Capability, FailureSeverity, KeyCandidate

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return utcnow().date()


class KeyPool:
    """Resource pool of provider credentials"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, provider: Optional[str] = None):
        self.session_factory = session_factory or get_session_factory()
        self.provider = provider or settings.AI_PROVIDER

    async def build_queue(self, user_api_key: Optional[str], capability: Capability) -> List[KeyCandidate]:
        """
        Build the ordered credential queue for one attempt.

        Args:
            user_api_key: Caller-supplied credential, always tried first
            capability: Capability whose quota state filters the pool

        Returns:
            User key (if any) followed by active, non-exhausted pool keys,
            healthiest (lowest error_count) first
        """
        queue: List[KeyCandidate] = []
        if user_api_key:
            queue.append(KeyCandidate(key_value=user_api_key, is_user_provided=True))

        flag_col, date_col = ApiKey.quota_columns(capability)
        today = utc_today()
        stmt = (
            select(ApiKey)
            .where(
                ApiKey.provider == self.provider,
                ApiKey.is_active.is_(True),
                or_(
                    flag_col.is_(False),
                    flag_col.is_(None),
                    date_col.is_(None),
                    date_col < today,
                ),
            )
            .order_by(ApiKey.error_count.asc(), ApiKey.created_at.asc())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            keys = result.scalars().all()

        for key in keys:
            queue.append(KeyCandidate(key_value=key.key_value, key_id=key.id))

        logger.info(f"Key queue for {Capability(capability).value}: {len(queue)} keys ({len(keys)} from pool)")
        return queue

    async def mark_failure(self, key_id: str, severity: FailureSeverity, capability: Optional[Capability] = None) -> None:
        """
        Penalize a pool key.

        soft: error_count + 1; quota: exhausted for `capability` today; fatal: deactivated.
        """
        severity = FailureSeverity(severity)
        now = utcnow()

        if severity == FailureSeverity.SOFT:
            values = {"error_count": ApiKey.error_count + 1}
        elif severity == FailureSeverity.QUOTA:
            if capability is None:
                raise ValueError("capability is required for quota failures")
            cap = Capability(capability).value
            values = {
                f"{cap}_quota_exhausted": True,
                f"{cap}_quota_exhausted_date": now.date(),
            }
        else:
            values = {"is_active": False}

        stmt = (
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        logger.warning(f"Marked key {key_id} failure: {severity.value}" + (f" ({Capability(capability).value})" if capability else ""))

    async def mark_success(self, key_id: str) -> None:
        """Reset error_count so the key sorts back to the front"""
        stmt = (
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(error_count=0, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def reset_expired_quotas(self) -> int:
        """Clear quota flags set before today; returns the number of flags cleared"""
        today = utc_today()
        cleared = 0
        async with self.session_factory() as session:
            # Per capability, so a flag set today survives while a stale one on the same key is cleared
            for cap in Capability:
                _, date_col = ApiKey.quota_columns(cap)
                stmt = (
                    update(ApiKey)
                    .where(and_(date_col.is_not(None), date_col < today))
                    .values(**{
                        f"{cap.value}_quota_exhausted": False,
                        f"{cap.value}_quota_exhausted_date": None,
                        "updated_at": utcnow(),
                    })
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                cleared += result.rowcount
            await session.commit()

        logger.info(f"Reset {cleared} API key quota flags")
        return cleared

    async def provision_key(self, key_value: str, provider: Optional[str] = None) -> ApiKey:
        """Add a key to the pool (admin action)"""
        key = ApiKey(
            id=str(uuid4()),
            provider=provider or self.provider,
            key_value=key_value,
            is_active=True,
            error_count=0,
        )
        async with self.session_factory() as session:
            session.add(key)
            await session.commit()
        logger.info(f"Provisioned API key {key.id} for {key.provider}")
        return key

    async def list_keys(self) -> List[ApiKey]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ApiKey).order_by(ApiKey.provider, ApiKey.error_count.asc())
            )
            return list(result.scalars().all())
