"""Blog Pipeline API.

Serves blog tasks and runs them through the research -> draft -> review
pipeline:
- Task creation and listing
- Background runs and streamed (NDJSON) runs
- Progress polling, workflow state, cancellation, and the invocation audit trail
- Step-by-step stages, manual publish, artifact edits, export and deletion
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from blog_pipeline.api.routes import tasks
from blog_pipeline.config import PipelineSettings
from blog_pipeline.executor.repository import SQLiteRepository
from blog_pipeline.executor.task_service import TaskService
from blog_pipeline.executor.workflow_runner import WorkflowRunner
from blog_pipeline.llm.backends import ModelBackend
from blog_pipeline.llm.factory import get_backend
from blog_pipeline.llm.pool import BackendPool
from blog_pipeline.sources import ReferenceLoader
from blog_pipeline.sources.file_content import FileContentReader
from blog_pipeline.sources.web_content import WebContentFetcher

# Configure logging
logging.basicConfig(
    level=os.environ.get("BLOG_PIPELINE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Optional[PipelineSettings] = None,
    backend_factory: Callable[[str], ModelBackend] = get_backend,
) -> FastAPI:
    """Build the API with its repository, backend pool and runner."""
    settings = settings or PipelineSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        repository = SQLiteRepository(settings.database_path)
        await repository.open()

        pool = BackendPool(settings.model, factory=backend_factory)
        await pool.open()

        loader = ReferenceLoader(
            fetcher=WebContentFetcher(
                timeout=settings.fetch_timeout_seconds,
                max_bytes=settings.max_fetch_bytes,
            ),
            reader=FileContentReader(max_bytes=settings.max_file_bytes),
        )
        runner = WorkflowRunner(repository, pool, settings, content_loader=loader)

        recovered = await runner.recover_orphaned_tasks()
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted tasks as failed")

        app.state.settings = settings
        app.state.repository = repository
        app.state.runner = runner
        app.state.task_service = TaskService(repository, runner)
        logger.info(
            f"Blog Pipeline API ready (model={settings.model}, "
            f"threshold={settings.publish_threshold}, max_rewrites={settings.max_rewrite_count})"
        )
        yield
        # Shutdown
        logger.info("Shutting down Blog Pipeline API")
        await runner.shutdown()
        await pool.close()
        await repository.close()

    app = FastAPI(
        title="Blog Pipeline API",
        description="""
## Multi-stage blog generation

Each task runs research -> draft -> review. Drafts scoring below the publish
threshold are rewritten with the review's feedback, up to a bounded number
of times.

### Key Endpoints

- `POST /v1/tasks` - Create a task
- `POST /v1/tasks/{task_id}/run` - Start a run in the background
- `GET /v1/tasks/{task_id}/events` - Run and stream events (NDJSON)
- `GET /v1/tasks/{task_id}/progress` - Poll progress
- `POST /v1/tasks/{task_id}/stages/{stage}` - Run one stage by hand
- `GET /v1/tasks/{task_id}/export` - Download the draft as markdown
""",
        version=VERSION,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Blog Pipeline API",
            "version": VERSION,
            "docs": "/docs",
            "endpoints": {
                "tasks": "/v1/tasks",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "model": settings.model}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "blog_pipeline.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )
