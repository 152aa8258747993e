"""Manual handling of tasks outside a run.

Handles:
- Editor changes to the stored research summary, draft and review
- Task deletion (with its artifacts and audit trail)
- Markdown export of the current draft

A task that gave up at the quality gate stays failed; an editor can still
fix its draft and review by hand and export the result. Nothing here may
touch a task while it runs: every operation holds the task through
`WorkflowRunner.exclusive()`.
"""

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from blog_pipeline.executor.errors import MissingArtifactError, TaskNotFound
from blog_pipeline.executor.repository import Repository
from blog_pipeline.executor.schemas import (
    DraftArtifact,
    DraftEdit,
    MarkdownExport,
    ResearchArtifact,
    ResearchEdit,
    ReviewArtifact,
    ReviewEdit,
    StageKind,
    _now,
)
from blog_pipeline.executor.stage_runner import count_words, recommendation_for
from blog_pipeline.executor.workflow_runner import WorkflowRunner

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_UNSAFE_FILENAME_RE = re.compile(r"[^\w\-]+")


def export_filename(title: str, when: Optional[datetime] = None) -> str:
    """`<title>_<YYYYmmdd_HHMMSS>.md` with anything unsafe in the title replaced."""
    stem = _UNSAFE_FILENAME_RE.sub("_", title).strip("_") or "untitled"
    stamp = (when or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{stem}_{stamp}.md"


class TaskService:
    """Edits, deletion and export for stored tasks."""

    def __init__(self, repository: Repository, runner: WorkflowRunner):
        self.repository = repository
        self.runner = runner

    # --- Edits ---

    async def update_research(self, task_id: str, edit: ResearchEdit) -> ResearchArtifact:
        """Replace the research summary; key points and details are kept."""
        return await self._edit(
            task_id, StageKind.RESEARCH, ResearchArtifact,
            lambda research: research.model_copy(update={"summary": edit.summary}),
        )

    async def update_draft(self, task_id: str, edit: DraftEdit) -> DraftArtifact:
        """Replace the draft's title and body; the word count is recomputed."""
        return await self._edit(
            task_id, StageKind.DRAFT, DraftArtifact,
            lambda draft: DraftArtifact(
                title=edit.title,
                content=edit.content,
                word_count=count_words(edit.content),
                generated_at=_now(),
            ),
        )

    async def update_review(self, task_id: str, edit: ReviewEdit) -> ReviewArtifact:
        """Override review scores and verdict.

        The overall score is the sum of the (possibly edited) dimensions. A
        recommendation that is not given follows the new score when any score
        changed, and is kept otherwise.
        """
        def apply(review: ReviewArtifact) -> ReviewArtifact:
            data = review.model_dump()
            changes = edit.model_dump(exclude_none=True)
            data.update(changes)
            data["overall_score"] = (
                data["accuracy_score"] + data["logic_score"]
                + data["originality_score"] + data["formatting_score"]
            )
            if edit.recommendation is None and set(changes) - {"summary"}:
                data["recommendation"] = recommendation_for(data["overall_score"])
            return ReviewArtifact.model_validate(data)

        return await self._edit(task_id, StageKind.REVIEW, ReviewArtifact, apply)

    async def _edit(
        self,
        task_id: str,
        kind: StageKind,
        model: Type[M],
        apply: Callable[[M], M],
    ) -> M:
        """Load, change and save one artifact while holding the task.

        Raises:
            TaskNotFound: Unknown task_id
            WorkflowAlreadyRunning: The task is executing
            MissingArtifactError: The task has no artifact of this kind yet
        """
        with self.runner.exclusive(task_id):
            await self._require_task(task_id)
            current = await self.repository.get_artifact(task_id, kind, model)
            if current is None:
                raise MissingArtifactError(task_id, kind.value)
            updated = apply(current)
            await self.repository.save_artifact(task_id, kind, updated)
        logger.info(f"[task={task_id}] {kind.value} edited by hand")
        return updated

    # --- Delete ---

    async def delete_task(self, task_id: str) -> None:
        """Delete a task that is not running, with its artifacts and audit trail.

        Raises:
            TaskNotFound: Unknown task_id
            WorkflowAlreadyRunning: The task is executing
        """
        with self.runner.exclusive(task_id):
            if not await self.repository.delete_task(task_id):
                raise TaskNotFound(f"Task {task_id} not found")
        self.runner.progress_cache.delete(task_id)
        self.runner.artifact_store.clear_task(task_id)

    # --- Export ---

    async def export_markdown(
        self,
        task_id: str,
        export_dir: Optional[Union[str, Path]] = None,
    ) -> MarkdownExport:
        """Export the current draft as markdown, optionally writing it to a file.

        Raises:
            TaskNotFound: Unknown task_id
            MissingArtifactError: The task has no draft yet
        """
        await self._require_task(task_id)
        draft = await self.repository.get_artifact(task_id, StageKind.DRAFT, DraftArtifact)
        if draft is None:
            raise MissingArtifactError(task_id, StageKind.DRAFT.value)

        export = MarkdownExport(
            task_id=task_id,
            filename=export_filename(draft.title),
            content=draft.content,
        )
        if export_dir is not None:
            path = Path(export_dir) / export.filename
            await asyncio.to_thread(_write_text, path, draft.content)
            export.path = str(path)
            logger.info(f"[task={task_id}] Exported markdown to {path}")
        return export

    async def _require_task(self, task_id: str) -> None:
        if await self.repository.get_task(task_id) is None:
            raise TaskNotFound(f"Task {task_id} not found")


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
