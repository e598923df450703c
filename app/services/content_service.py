"""
Practice test content lookup
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.db.base import get_session_factory
from app.db.models.practice_test import PracticeTest

logger = logging.getLogger(__name__)


class ContentService:
    """Reads the test a job refers to"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    async def get_test(self, test_id: str, user_id: str) -> PracticeTest:
        """
        Load a practice test owned by `user_id`.

        Raises:
            ValueError: If the test does not exist for this user
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(PracticeTest).where(PracticeTest.id == test_id, PracticeTest.user_id == user_id)
            )
            test = result.scalar_one_or_none()

        if not test:
            raise ValueError(f"Test {test_id} not found")
        return test
