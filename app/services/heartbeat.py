"""
Heartbeat renewer
Keeps a claimed job's lease alive while a stage is in flight
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from app.services.lock_manager import LockManager

logger = logging.getLogger(__name__)


class HeartbeatRenewer:
    """
    Background task that renews a lease on a fixed interval.

    Usage:
        async with HeartbeatRenewer(lock_manager, job_id, token, 480, 160) as heartbeat:
            ...long running work...
        if heartbeat.lost:
            ...another claimant owns the job now...
    """

    def __init__(
        self,
        lock_manager: LockManager,
        job_id: str,
        token: str,
        lease_seconds: float,
        interval_seconds: float,
    ):
        if interval_seconds <= 0 or interval_seconds >= lease_seconds:
            raise ValueError("Heartbeat interval must be positive and shorter than the lease")
        self.lock_manager = lock_manager
        self.job_id = job_id
        self.token = token
        self.lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self.ticks = 0
        self.lost = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                renewed = await self.lock_manager.renew(self.job_id, self.token, self.lease_seconds)
            except SQLAlchemyError as e:
                logger.error(f"Heartbeat for job {self.job_id} failed: {e}")
                continue

            if not renewed:
                self.lost = True
                logger.warning(f"Heartbeat for job {self.job_id} rejected: lease was taken over, stopping")
                return

            self.ticks += 1
            logger.debug(f"Heartbeat updated for job {self.job_id} (tick {self.ticks})")

    async def __aenter__(self) -> "HeartbeatRenewer":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
