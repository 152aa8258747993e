import asyncio

import pytest

from blog_pipeline.config import PipelineSettings
from blog_pipeline.executor.repository import SQLiteRepository
from blog_pipeline.executor.schemas import BlogTask


@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        database_path=str(tmp_path / "pipeline.db"),
        retry_base_delay=0,
        model="scripted-model",
    )


@pytest.fixture
def repository(settings):
    repo = SQLiteRepository(settings.database_path)
    asyncio.run(repo.open())
    return repo


@pytest.fixture
def make_task(repository):
    """Create and persist a task; returns its id."""
    def _make(topic: str = "Python asyncio in practice", **fields) -> str:
        fields.setdefault("reference_content", "asyncio docs excerpt")
        task = BlogTask(topic=topic, **fields)
        asyncio.run(repository.create_task(task))
        return task.task_id

    return _make

