"""
Pytest configuration for the speaking evaluation tests
Temp-file SQLite database per test, plus fake provider/storage doubles
"""
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Get the project root directory
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from app.db.base import create_tables  # noqa: E402
from app.db.models.api_key import ApiKey  # noqa: E402
from app.db.models.job import SpeakingEvaluationJob  # noqa: E402
from app.db.models.practice_test import PracticeTest  # noqa: E402
from app.db.types import utcnow  # noqa: E402
from app.schemas.job import ArtifactRef  # noqa: E402

USER_ID = "user-1"
TEST_ID = "test-1"

SPEAKING_PAYLOAD = {
    "speakingParts": [
        {
            "part_number": 1,
            "questions": [
                {"id": "11", "question_number": 1, "question_text": "Where do you live?"},
                {"id": "12", "question_number": 2, "question_text": "Do you work or study?"},
            ],
        },
        {
            "part_number": 2,
            "questions": [
                {"id": "21", "question_number": 1, "question_text": "Describe a place you visited."},
            ],
        },
    ]
}

FILE_PATHS = {
    "part2-q21": "speaking/user-1/test-1/part2-q21.webm",
    "part1-q12": "speaking/user-1/test-1/part1-q12.webm",
    "part1-q11": "speaking/user-1/test-1/part1-q11.mp3",
}

DURATIONS = {"part1-q11": 20.0, "part1-q12": 25.0, "part2-q21": 95.0}

EVALUATION_JSON = (
    '{"overall_band": 6.5, "criteria": {'
    '"fluency_coherence": {"band": 6.5}, "lexical_resource": {"band": 6.5}, '
    '"grammatical_range": {"band": 6.0}, "pronunciation": {"band": 7.0}}, '
    '"transcripts_by_part": {"1": "I live in Leeds."}, '
    '"transcripts_by_question": {"1": [{"segment_key": "part1-q11", "transcript": "I live in Leeds."}]}, '
    '"modelAnswers": []}'
)


class FakeProvider:
    """
    Stand-in for ProviderClient.

    `script` maps (api_key, model) to a list of outcomes consumed in order;
    each outcome is a response string or an exception to raise. Unscripted
    calls return `default`. `upload_script` maps an api_key to upload
    exceptions raised in order before uploads with that key succeed.
    """

    def __init__(
        self,
        script: Optional[Dict[tuple, List[Any]]] = None,
        default: Any = EVALUATION_JSON,
        on_generate=None,
        upload_script: Optional[Dict[str, List[Exception]]] = None,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.upload_script = {k: list(v) for k, v in (upload_script or {}).items()}
        self.default = default
        self.on_generate = on_generate
        self.generate_calls: List[tuple] = []
        self.upload_calls: List[tuple] = []

    async def upload_artifact(self, api_key, name, data, mime_type, index=0):
        self.upload_calls.append((api_key, name, mime_type, index))
        errors = self.upload_script.get(api_key)
        if errors:
            raise errors.pop(0)
        return ArtifactRef(file_id=f"files/{name}", mime_type=mime_type, index=index)

    async def generate(self, api_key, model, artifacts, prompt):
        self.generate_calls.append((api_key, model))
        if self.on_generate:
            await self.on_generate()
        queue = self.script.get((api_key, model))
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeStorage:
    """Stand-in for StorageService"""

    def __init__(self):
        self.fetched: List[str] = []

    def public_url(self, path):
        return f"https://cdn.test/{path}"

    async def fetch_audio(self, path):
        self.fetched.append(path)
        mime = "audio/mpeg" if path.endswith(".mp3") else "audio/webm"
        return b"\x1aE\xdf\xa3audio", mime


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file with all tables"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def add_job(session_factory):
    """Insert a job row; keyword arguments override the defaults"""
    async def _add_job(**overrides) -> SpeakingEvaluationJob:
        now = utcnow()
        values = dict(
            id=str(uuid4()),
            user_id=USER_ID,
            test_id=TEST_ID,
            file_paths=dict(FILE_PATHS),
            durations=dict(DURATIONS),
            topic="Hometown",
            difficulty="Medium",
            fluency_flag=False,
            status="pending",
            stage="pending_upload",
            retry_count=0,
            max_retries=3,
            created_at=now,
            updated_at=now,
        )
        values.update(overrides)
        job = SpeakingEvaluationJob(**values)
        async with session_factory() as session:
            session.add(job)
            await session.commit()
        return job
    return _add_job


@pytest.fixture
def add_key(session_factory):
    """Insert a pool key; `created_offset` orders keys with equal error_count"""
    async def _add_key(key_value: str, error_count: int = 0, created_offset: int = 0, **overrides) -> ApiKey:
        values = dict(
            id=str(uuid4()),
            provider="gemini",
            key_value=key_value,
            is_active=True,
            error_count=error_count,
            created_at=utcnow() + timedelta(seconds=created_offset),
        )
        values.update(overrides)
        key = ApiKey(**values)
        async with session_factory() as session:
            session.add(key)
            await session.commit()
        return key
    return _add_key


@pytest.fixture
def add_practice_test(session_factory):
    async def _add_practice_test(payload=None, **overrides) -> PracticeTest:
        values = dict(
            id=TEST_ID,
            user_id=USER_ID,
            module="speaking",
            topic="Hometown",
            difficulty="Medium",
            payload=payload if payload is not None else SPEAKING_PAYLOAD,
        )
        values.update(overrides)
        test = PracticeTest(**values)
        async with session_factory() as session:
            session.add(test)
            await session.commit()
        return test
    return _add_practice_test


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def make_provider():
    return FakeProvider
