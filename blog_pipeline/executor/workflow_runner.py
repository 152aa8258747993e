"""Top-level workflow execution: research, draft, review, and the rewrite loop.

The workflow runner is the entry point for executing a blog task. It:

1. Validates the task and guards against a second concurrent run
2. Discovers optional tool capabilities (hard timeout, never fatal)
3. Loads reference material (inline text, URLs, files)
4. Walks the PipelineGraph: RESEARCH -> DRAFT -> REVIEW, then PUBLISH,
   REWRITE (back to REVIEW) or FAILURE depending on the quality gate
5. At every stage: persists status, invokes the stage under the retry
   policy, saves the artifact to the repository, then writes it into the
   artifact store and updates the progress cache
6. Emits PipelineEvents in order, ending with exactly one WorkflowFinished

With auto_publish off, a passing review stops the run in review_completed
until `publish_task()` is called. `execute_stage()` runs one stage on its own
(research, draft, review or rewrite) for step-by-step, human-in-the-loop
handling; its upstream artifacts are loaded from the repository.

Each run executes as one asyncio task (the producer). `run()` consumes its
events through a queue; `start_workflow()` discards them. Cancelling the
producer (`request_cancellation()`) interrupts the in-flight backend call or
retry sleep; the run ends Failed with "Cancelled". A run's shared state is
cleared once it ends, however it ends; the repository keeps the artifacts.
"""

import asyncio
import functools
import logging
import threading
import time
from contextlib import contextmanager
from typing import AsyncIterator, Callable, Iterable, Iterator, Optional

from blog_pipeline.config import PipelineSettings
from blog_pipeline.executor.artifact_store import (
    BLOG_STATE_SCOPE,
    DRAFT_KEY,
    RESEARCH_KEY,
    REVIEW_KEY,
    REWRITE_COUNT_KEY,
    TASK_INFO_KEY,
    ArtifactStore,
)
from blog_pipeline.executor.errors import (
    InvalidTransitionError,
    MissingArtifactError,
    RepositoryFailure,
    RetryBudgetExhausted,
    StageFailed as StageFailedError,
    TaskNotFound,
    TransientStageFailure,
    WorkflowAlreadyRunning,
)
from blog_pipeline.executor.events import (
    OutputChunk,
    PipelineEvent,
    StageCompleted,
    StageFailed,
    StageStarted,
    WorkflowFinished,
)
from blog_pipeline.executor.graph import TASK_TRANSITIONS, TERMINAL_STAGES, PipelineGraph
from blog_pipeline.executor.interceptors import build_interceptor_chain
from blog_pipeline.executor.progress_cache import ProgressCache
from blog_pipeline.executor.repository import Repository
from blog_pipeline.executor.retry import RetryPolicy
from blog_pipeline.executor.schemas import (
    BlogTask,
    DraftArtifact,
    ProgressSnapshot,
    ResearchArtifact,
    ReviewArtifact,
    RunStatus,
    StageKind,
    StageResult,
    TaskStatus,
    WorkflowState,
    _now,
)
from blog_pipeline.executor.stage_runner import (
    DraftInput,
    DraftStage,
    ResearchInput,
    ResearchStage,
    ReviewInput,
    ReviewStage,
)
from blog_pipeline.llm.capabilities import HttpToolProvider, ToolProvider, ToolSpec, discover_capabilities
from blog_pipeline.llm.pool import BackendPool
from blog_pipeline.sources import ReferenceLoader

logger = logging.getLogger(__name__)

Emit = Callable[[Optional[PipelineEvent]], None]

# Characters of stage output kept in the progress snapshot
PREVIEW_CHARS = 500

# How much of the last review goes into the failure diagnostic
DIAGNOSTIC_MAX_ISSUES = 5
DIAGNOSTIC_MAX_SUGGESTIONS = 3

CANCELLED_MESSAGE = "Cancelled"

# Stages that can run on their own, with the status each one enters
STANDALONE_STAGES: dict[StageKind, TaskStatus] = {
    StageKind.RESEARCH: TaskStatus.RESEARCHING,
    StageKind.DRAFT: TaskStatus.WRITING,
    StageKind.REVIEW: TaskStatus.REVIEWING,
    StageKind.REWRITE: TaskStatus.REWRITING,
}


def build_failure_diagnostic(
    review: Optional[ReviewArtifact],
    rewrite_count: int,
    max_rewrite_count: int,
    publish_threshold: int,
) -> str:
    """Explain why a task gave up, from its last review."""
    lines = [
        f"Quality gate not met after {rewrite_count} rewrites "
        f"(max {max_rewrite_count}, threshold {publish_threshold})."
    ]
    if review is None:
        lines.append("No review available.")
        return "\n".join(lines)

    lines.append(f"Last score: {review.overall_score}/100")
    issues = sorted(review.issues, key=lambda i: i.severity, reverse=True)[:DIAGNOSTIC_MAX_ISSUES]
    if issues:
        lines.append("Top issues:")
        lines.extend(f"- [{i.category}] {i.description}" for i in issues)
    suggestions = review.suggestions[:DIAGNOSTIC_MAX_SUGGESTIONS]
    if suggestions:
        lines.append("Suggestions:")
        lines.extend(f"- {s}" for s in suggestions)
    return "\n".join(lines)


class _Run:
    """Mutable state of one in-flight run."""

    def __init__(self, task: BlogTask, emit: Emit, auto_publish: bool = True):
        self.task = task
        self.emit = emit
        self.auto_publish = auto_publish
        self.step = 0
        self.stage = StageKind.RESEARCH
        self.research: Optional[ResearchStage] = None
        self.draft: Optional[DraftStage] = None
        self.review: Optional[ReviewStage] = None

    @property
    def task_id(self) -> str:
        return self.task.task_id


class WorkflowRunner:
    """Drives blog tasks through the pipeline graph."""

    def __init__(
        self,
        repository: Repository,
        backend_pool: BackendPool,
        settings: Optional[PipelineSettings] = None,
        artifact_store: Optional[ArtifactStore] = None,
        progress_cache: Optional[ProgressCache] = None,
        capability_providers: Iterable[ToolProvider] = (),
        content_loader: Optional[ReferenceLoader] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or PipelineSettings()
        self.repository = repository
        self.backend_pool = backend_pool
        self.artifact_store = artifact_store or ArtifactStore()
        self.progress_cache = progress_cache or ProgressCache(self.settings.progress_ttl_seconds)
        self.capability_providers: list[ToolProvider] = list(capability_providers) + [
            HttpToolProvider(url, timeout=self.settings.capability_timeout_seconds)
            for url in self.settings.tool_endpoints
        ]
        self.content_loader = content_loader
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
        )
        self.graph = PipelineGraph(
            publish_threshold=self.settings.publish_threshold,
            max_rewrite_count=self.settings.max_rewrite_count,
        )
        self.interceptors = build_interceptor_chain(self.settings.interceptors)

        # Guard against double-execution of the same task
        self._active: dict[str, Optional[asyncio.Task]] = {}
        self._active_lock = threading.Lock()

    # --- Public API ---

    async def run(self, task_id: str, auto_publish: Optional[bool] = None) -> AsyncIterator[PipelineEvent]:
        """Execute a task, yielding its events until the run ends.

        Args:
            task_id: Task to run; it must be in the created state
            auto_publish: Publish when the review passes (default: settings.auto_publish).
                When False, a passing run ends in review_completed.

        Raises (before the first event):
            TaskNotFound: Unknown task_id
            WorkflowAlreadyRunning: The task is already executing
            InvalidTransitionError: The task is not in the created state
        """
        queue: asyncio.Queue = asyncio.Queue()
        await self._launch(task_id, queue.put_nowait, auto_publish)
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event

    async def start_workflow(self, task_id: str, auto_publish: Optional[bool] = None) -> None:
        """Start a run in the background and return once it is scheduled."""
        await self._launch(task_id, lambda event: None, auto_publish)

    def request_cancellation(self, task_id: str) -> bool:
        """Cancel a task's in-flight run. Returns False if nothing was running."""
        with self._active_lock:
            producer = self._active.get(task_id)
        if producer is None or producer.done():
            return False
        logger.info(f"[task={task_id}] Cancellation requested")
        producer.cancel()
        return True

    def is_running(self, task_id: str) -> bool:
        with self._active_lock:
            return task_id in self._active

    async def wait(self, task_id: str) -> None:
        """Wait for a task's in-flight run (if any) to finish."""
        with self._active_lock:
            producer = self._active.get(task_id)
        if producer is not None:
            await asyncio.gather(producer, return_exceptions=True)

    @contextmanager
    def exclusive(self, task_id: str) -> Iterator[None]:
        """Hold a task against runs and other exclusive work until the block exits.

        Raises:
            WorkflowAlreadyRunning: The task is running or held elsewhere
        """
        self._claim(task_id)
        try:
            yield
        finally:
            self._release(task_id)

    async def shutdown(self) -> None:
        """Cancel every in-flight run and wait for them to wind down."""
        with self._active_lock:
            producers = [p for p in self._active.values() if p is not None]
        for producer in producers:
            producer.cancel()
        if producers:
            await asyncio.gather(*producers, return_exceptions=True)
            logger.info(f"Cancelled {len(producers)} in-flight runs at shutdown")

    def get_progress(self, task_id: str) -> Optional[ProgressSnapshot]:
        """Latest snapshot, or None if the task never ran or its entry expired."""
        return self.progress_cache.get(task_id)

    async def get_workflow_state(self, task_id: str) -> WorkflowState:
        task = await self._require_task(task_id)
        kinds = set(await self.repository.list_artifact_kinds(task_id))
        return WorkflowState(
            task_id=task_id,
            status=task.status,
            stage=task.current_stage,
            has_research=StageKind.RESEARCH in kinds,
            has_draft=StageKind.DRAFT in kinds,
            has_review=StageKind.REVIEW in kinds,
            is_published=task.status == TaskStatus.PUBLISHED,
            rewrite_count=task.rewrite_count,
        )

    async def recover_orphaned_tasks(self) -> list[str]:
        """Fail tasks a previous process left mid-run. Call once at startup."""
        with self._active_lock:
            if self._active:
                raise RuntimeError("recover_orphaned_tasks() must run before any workflow starts")
        return await self.repository.recover_orphaned_tasks()

    # --- Step-by-step handling ---

    async def execute_stage(self, task_id: str, stage: StageKind) -> StageResult:
        """Run one stage on its own and wait for it.

        The task must be in the status that stage follows (created for
        research, research_completed for draft, writing_completed for review,
        review_completed for rewrite). A stage that fails moves the task to
        failed and comes back as an unsuccessful result.

        Raises:
            ValueError: `stage` is publish or failure
            TaskNotFound: Unknown task_id
            WorkflowAlreadyRunning: The task is already executing
            InvalidTransitionError: The task is not ready for this stage
            RetryBudgetExhausted: A rewrite was requested with no rewrites left
        """
        if stage not in STANDALONE_STAGES:
            raise ValueError(f"Stage {stage.value} cannot run on its own")

        self._claim(task_id)
        try:
            task = await self._require_task(task_id)
            entered = STANDALONE_STAGES[stage]
            if entered not in TASK_TRANSITIONS[task.status]:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; cannot run {stage.value} now"
                )
            if stage == StageKind.REWRITE and task.rewrite_count >= self.settings.max_rewrite_count:
                review = await self.repository.get_artifact(task_id, StageKind.REVIEW, ReviewArtifact)
                raise RetryBudgetExhausted(self._diagnostic(review, task.rewrite_count), task.rewrite_count)
        except BaseException:
            self._release(task_id)
            raise

        run = _Run(task, lambda event: None)
        producer = await self._start(run, self._execute_stage(run, stage))
        outcome = (await asyncio.gather(producer, return_exceptions=True))[0]
        if isinstance(outcome, asyncio.CancelledError):
            return StageResult(
                task_id=task_id, stage=stage, success=False,
                status=TaskStatus.FAILED, message=CANCELLED_MESSAGE, error=CANCELLED_MESSAGE,
            )
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def publish_task(self, task_id: str) -> BlogTask:
        """Publish a reviewed task by hand, whatever its score.

        Raises:
            TaskNotFound: Unknown task_id
            WorkflowAlreadyRunning: The task is executing
            InvalidTransitionError: The task is not in review_completed
            MissingArtifactError: The task has no draft
        """
        with self.exclusive(task_id):
            task = await self._require_task(task_id)
            if TaskStatus.PUBLISHED not in TASK_TRANSITIONS[task.status]:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; only reviewed tasks can be published"
                )
            draft = await self.repository.get_artifact(task_id, StageKind.DRAFT, DraftArtifact)
            if draft is None:
                raise MissingArtifactError(task_id, StageKind.DRAFT.value)

            task = await self.repository.mark_published(task_id)
            message = f"Published '{draft.title}' by request ({draft.word_count} words)"
            logger.info(f"[task={task_id}] {message}")
            self._update_progress(
                task_id,
                step_name=StageKind.PUBLISH.value,
                status=RunStatus.COMPLETED,
                message=message,
            )
            return task

    # --- Run lifecycle ---

    async def _require_task(self, task_id: str) -> BlogTask:
        task = await self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    def _claim(self, task_id: str) -> None:
        """Reserve a task before its status is checked; _start or _release follows."""
        with self._active_lock:
            if task_id in self._active:
                logger.warning(f"DUPLICATE EXECUTION BLOCKED: task {task_id} is already running")
                raise WorkflowAlreadyRunning(f"Task {task_id} is already running")
            self._active[task_id] = None

    def _release(self, task_id: str) -> None:
        with self._active_lock:
            if task_id in self._active and self._active[task_id] is None:
                del self._active[task_id]

    async def _launch(self, task_id: str, emit: Emit, auto_publish: Optional[bool]) -> asyncio.Task:
        self._claim(task_id)
        try:
            task = await self._require_task(task_id)
            if task.status != TaskStatus.CREATED:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; only created tasks can run"
                )
        except BaseException:
            self._release(task_id)
            raise

        if auto_publish is None:
            auto_publish = self.settings.auto_publish
        run = _Run(task, emit, auto_publish)
        producer = await self._start(run, self._execute(run))
        logger.info(f"[task={task_id}] Run started: {task.topic[:80]}")
        return producer

    async def _start(self, run: _Run, work) -> asyncio.Task:
        """Turn a claimed task's work into its producer task."""
        task_id = run.task_id
        producer = asyncio.create_task(work, name=f"blog-run-{task_id}")
        with self._active_lock:
            self._active[task_id] = producer
        producer.add_done_callback(functools.partial(self._on_run_done, task_id))
        # Let the producer start so an immediate cancel still ends Failed.
        await asyncio.sleep(0)
        return producer

    def _on_run_done(self, task_id: str, producer: asyncio.Task) -> None:
        with self._active_lock:
            if self._active.get(task_id) is producer:
                del self._active[task_id]
        if not producer.cancelled() and producer.exception() is not None:
            logger.error(f"[task={task_id}] Run crashed: {producer.exception()!r}")

    async def _execute(self, run: _Run) -> None:
        task_id = run.task_id
        try:
            self.progress_cache.set(task_id, ProgressSnapshot(
                task_id=task_id,
                step_name="starting",
                message="Preparing tools and reference material",
            ))
            await self.repository.update_task_status(task_id, TaskStatus.RESEARCHING, self.graph.entry.value)

            async with self.backend_pool.lease(task_id, self.settings.model) as backend:
                tools = await self._discover_tools(task_id)
                self._build_executors(run, backend, tools)

                await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, TASK_INFO_KEY, run.task)
                await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, REWRITE_COUNT_KEY, 0)

                stage: Optional[StageKind] = self.graph.entry
                while stage is not None and stage not in TERMINAL_STAGES:
                    run.stage = stage
                    run.step += 1
                    stage = await self._run_step(run, stage)

                if stage == StageKind.PUBLISH and not run.auto_publish:
                    self._hold_for_publish(run)
                    return

                run.stage = stage
                run.step += 1
                if stage == StageKind.PUBLISH:
                    await self._publish(run)
                else:
                    self._give_up(run)

        except asyncio.CancelledError:
            logger.warning(f"[task={task_id}] Run cancelled during {run.stage.value}")
            await self._fail(run, CANCELLED_MESSAGE, "CancelledError")
            raise
        except RetryBudgetExhausted as e:
            logger.warning(f"[task={task_id}] Escalating to failure: {e.diagnostic.splitlines()[0]}")
            await self._fail(run, e.diagnostic, type(e).__name__)
        except Exception as e:
            logger.error(f"[task={task_id}] {run.stage.value} failed: {type(e).__name__}: {e}")
            await self._fail(run, f"{type(e).__name__}: {e}", type(e).__name__)
        finally:
            self.artifact_store.clear_task(task_id)
            run.emit(None)

    async def _execute_stage(self, run: _Run, stage: StageKind) -> StageResult:
        task_id = run.task_id
        run.stage = stage
        run.step = 1
        try:
            self._update_progress(
                task_id,
                current_step=0,
                step_name=stage.value,
                status=RunStatus.RUNNING,
                message=f"Preparing {stage.value}",
                error_message=None,
            )
            async with self.backend_pool.lease(task_id, self.settings.model) as backend:
                tools = await self._discover_tools(task_id)
                self._build_executors(run, backend, tools)
                await self._load_shared_state(run)

                score = None
                if stage == StageKind.REVIEW:
                    review = await self._review(run)
                    score = review.overall_score
                    passed = score >= self.settings.publish_threshold
                    message = (
                        f"Review scored {score}/100: "
                        + ("ready to publish" if passed else "revision recommended")
                    )
                else:
                    await self._run_step(run, stage)
                    message = f"{stage.value.capitalize()} completed"

            self._update_progress(task_id, status=RunStatus.COMPLETED, message=message)
            task = await self._require_task(task_id)
            logger.info(f"[task={task_id}] Standalone {stage.value}: {message}")
            return StageResult(
                task_id=task_id, stage=stage, success=True,
                status=task.status, message=message, score=score,
            )

        except asyncio.CancelledError:
            logger.warning(f"[task={task_id}] Standalone {stage.value} cancelled")
            await self._fail(run, CANCELLED_MESSAGE, "CancelledError")
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"[task={task_id}] Standalone {stage.value} failed: {error}")
            await self._fail(run, error, type(e).__name__)
            return StageResult(
                task_id=task_id, stage=stage, success=False,
                status=TaskStatus.FAILED, message=f"{stage.value} failed", error=error,
            )
        finally:
            self.artifact_store.clear_task(task_id)

    async def _load_shared_state(self, run: _Run) -> None:
        """Seed the artifact store from the repository for a standalone stage."""
        task_id = run.task_id
        await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, TASK_INFO_KEY, run.task)
        await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, REWRITE_COUNT_KEY, run.task.rewrite_count)
        for kind, key, model in (
            (StageKind.RESEARCH, RESEARCH_KEY, ResearchArtifact),
            (StageKind.DRAFT, DRAFT_KEY, DraftArtifact),
            (StageKind.REVIEW, REVIEW_KEY, ReviewArtifact),
        ):
            artifact = await self.repository.get_artifact(task_id, kind, model)
            if artifact is not None:
                await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, key, artifact)

    async def _run_step(self, run: _Run, stage: StageKind) -> Optional[StageKind]:
        if stage == StageKind.RESEARCH:
            await self._research(run)
            return self.graph.next_stage(stage)
        if stage == StageKind.DRAFT:
            await self._draft(run)
            return self.graph.next_stage(stage)
        if stage == StageKind.REWRITE:
            await self._rewrite(run)
            return self.graph.next_stage(stage)
        if stage == StageKind.REVIEW:
            review = await self._review(run)
            rewrite_count = self._rewrite_count(run.task_id)
            next_stage = self.graph.next_stage(
                stage, score=review.overall_score, rewrite_count=rewrite_count,
            )
            logger.info(
                f"[task={run.task_id}] Quality gate: score {review.overall_score} "
                f"(threshold {self.settings.publish_threshold}), rewrites {rewrite_count}"
                f"/{self.settings.max_rewrite_count} -> {next_stage.value}"
            )
            return next_stage
        raise ValueError(f"Stage {stage} is not executable")

    # --- Setup ---

    async def _discover_tools(self, task_id: str) -> list[ToolSpec]:
        if not self.capability_providers:
            return []
        tools = await discover_capabilities(
            self.capability_providers, timeout=self.settings.capability_timeout_seconds,
        )
        logger.info(f"[task={task_id}] {len(tools)} tools available")
        return tools

    def _build_executors(self, run: _Run, backend, tools: list[ToolSpec]) -> None:
        common = dict(
            interceptors=self.interceptors,
            recorder=self.repository.record_invocation,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        run.research = ResearchStage(backend, tools=tools, **common)
        run.draft = DraftStage(backend, tools=tools, **common)
        run.review = ReviewStage(backend, **common)

    # --- Stages ---

    async def _invoke(self, run: _Run, stage: StageKind, executor, stage_input):
        """Invoke a stage under the retry policy, streaming chunks as events."""
        run.emit(StageStarted(task_id=run.task_id, stage=stage, step=run.step))
        self._update_progress(
            run.task_id,
            current_step=run.step,
            step_name=stage.value,
            status=RunStatus.RUNNING,
            message=f"{stage.value} in progress",
        )

        def on_chunk(text: str) -> None:
            run.emit(OutputChunk(task_id=run.task_id, stage=stage, text=text))

        t0 = time.monotonic()
        try:
            artifact = await self.retry_policy.run(
                lambda attempt: executor.invoke(stage_input, run.task_id, attempt=attempt, on_chunk=on_chunk),
                label=f"{stage.value} task={run.task_id}",
            )
        except TransientStageFailure as e:
            raise StageFailedError(
                stage.value, f"gave up after {self.retry_policy.max_attempts} attempts: {e}",
            ) from e
        return artifact, int((time.monotonic() - t0) * 1000)

    async def _save(self, task_id: str, kind: StageKind, key: str, artifact) -> None:
        """Persist first; only a durably saved artifact enters shared state."""
        await self.repository.save_artifact(task_id, kind, artifact)
        await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, key, artifact)

    async def _research(self, run: _Run) -> None:
        task_id = run.task_id
        await self.repository.update_task_status(task_id, TaskStatus.RESEARCHING, StageKind.RESEARCH.value)

        if self.content_loader is not None:
            reference = await self.content_loader.load(run.task)
        else:
            reference = run.task.reference_content

        research, duration_ms = await self._invoke(
            run, StageKind.RESEARCH, run.research,
            ResearchInput(topic=run.task.topic, reference_content=reference),
        )
        await self._save(task_id, StageKind.RESEARCH, RESEARCH_KEY, research)
        await self.repository.update_task_status(task_id, TaskStatus.RESEARCH_COMPLETED, StageKind.RESEARCH.value)

        summary = f"{len(research.key_points)} key points, {len(research.technical_details)} technical details"
        self._update_progress(
            task_id,
            message=f"Research completed: {summary}",
            current_output=research.to_markdown()[:PREVIEW_CHARS],
            research=research,
        )
        run.emit(StageCompleted(
            task_id=task_id, stage=StageKind.RESEARCH, step=run.step,
            duration_ms=duration_ms, summary=summary,
        ))

    async def _draft(self, run: _Run) -> None:
        task_id = run.task_id
        research = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, RESEARCH_KEY, ResearchArtifact)
        await self.repository.update_task_status(task_id, TaskStatus.WRITING, StageKind.DRAFT.value)

        draft, duration_ms = await self._invoke(
            run, StageKind.DRAFT, run.draft,
            DraftInput(
                topic=run.task.topic,
                research_summary=research.to_markdown(),
                requirements=run.task.requirements,
            ),
        )
        await self._save(task_id, StageKind.DRAFT, DRAFT_KEY, draft)
        await self.repository.update_task_status(task_id, TaskStatus.WRITING_COMPLETED, StageKind.DRAFT.value)
        self._draft_completed(run, StageKind.DRAFT, draft, duration_ms)

    async def _rewrite(self, run: _Run) -> None:
        task_id = run.task_id
        count = self._rewrite_count(task_id)
        if count >= self.settings.max_rewrite_count:
            review = self.artifact_store.get(task_id, BLOG_STATE_SCOPE, REVIEW_KEY, ReviewArtifact)
            raise RetryBudgetExhausted(self._diagnostic(review, count), count)

        research = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, RESEARCH_KEY, ResearchArtifact)
        previous = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, DRAFT_KEY, DraftArtifact)
        review = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, REVIEW_KEY, ReviewArtifact)

        count += 1
        await self.repository.update_rewrite_count(task_id, count)
        await self.artifact_store.put(task_id, BLOG_STATE_SCOPE, REWRITE_COUNT_KEY, count)
        await self.repository.update_task_status(task_id, TaskStatus.REWRITING, StageKind.REWRITE.value)
        logger.info(
            f"[task={task_id}] Rewrite {count}/{self.settings.max_rewrite_count} "
            f"(last score {review.overall_score})"
        )

        draft, duration_ms = await self._invoke(
            run, StageKind.REWRITE, run.draft,
            DraftInput(
                topic=run.task.topic,
                research_summary=research.to_markdown(),
                requirements=run.task.requirements,
                feedback=review,
                previous_draft=previous,
            ),
        )
        await self._save(task_id, StageKind.DRAFT, DRAFT_KEY, draft)
        await self.repository.update_task_status(task_id, TaskStatus.WRITING_COMPLETED, StageKind.REWRITE.value)
        self._draft_completed(run, StageKind.REWRITE, draft, duration_ms)

    def _draft_completed(self, run: _Run, stage: StageKind, draft: DraftArtifact, duration_ms: int) -> None:
        summary = f"'{draft.title}' ({draft.word_count} words)"
        self._update_progress(
            run.task_id,
            message=f"{stage.value.capitalize()} completed: {summary}",
            current_output=draft.content[:PREVIEW_CHARS],
            draft=draft,
        )
        run.emit(StageCompleted(
            task_id=run.task_id, stage=stage, step=run.step,
            duration_ms=duration_ms, summary=summary,
        ))

    async def _review(self, run: _Run) -> ReviewArtifact:
        task_id = run.task_id
        draft = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, DRAFT_KEY, DraftArtifact)
        await self.repository.update_task_status(task_id, TaskStatus.REVIEWING, StageKind.REVIEW.value)

        review, duration_ms = await self._invoke(
            run, StageKind.REVIEW, run.review,
            ReviewInput(title=draft.title, content=draft.content),
        )
        await self._save(task_id, StageKind.REVIEW, REVIEW_KEY, review)
        await self.repository.update_task_status(task_id, TaskStatus.REVIEW_COMPLETED, StageKind.REVIEW.value)

        summary = f"Score {review.overall_score}/100, recommendation {review.recommendation.value}"
        self._update_progress(
            task_id,
            message=f"Review completed: {summary}",
            current_output=review.summary[:PREVIEW_CHARS],
            review=review,
        )
        run.emit(StageCompleted(
            task_id=task_id, stage=StageKind.REVIEW, step=run.step,
            duration_ms=duration_ms, summary=summary, score=review.overall_score,
        ))
        return review

    async def _publish(self, run: _Run) -> None:
        task_id = run.task_id
        draft = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, DRAFT_KEY, DraftArtifact)
        review = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, REVIEW_KEY, ReviewArtifact)
        rewrite_count = self._rewrite_count(task_id)

        run.emit(StageStarted(task_id=task_id, stage=StageKind.PUBLISH, step=run.step))
        await self.repository.mark_published(task_id)

        message = (
            f"Published '{draft.title}' ({draft.word_count} words, "
            f"score {review.overall_score}/100, {rewrite_count} rewrites)"
        )
        logger.info(f"[task={task_id}] {message}")
        self._update_progress(
            task_id,
            current_step=run.step,
            step_name=StageKind.PUBLISH.value,
            status=RunStatus.COMPLETED,
            message=message,
        )
        run.emit(StageCompleted(
            task_id=task_id, stage=StageKind.PUBLISH, step=run.step,
            summary=message, score=review.overall_score,
        ))
        run.emit(WorkflowFinished(
            task_id=task_id, status=TaskStatus.PUBLISHED, message=message, rewrite_count=rewrite_count,
        ))

    def _hold_for_publish(self, run: _Run) -> None:
        """End a passing run without publishing; publish_task() finishes it."""
        task_id = run.task_id
        review = self.artifact_store.require(task_id, BLOG_STATE_SCOPE, REVIEW_KEY, ReviewArtifact)
        rewrite_count = self._rewrite_count(task_id)
        message = f"Review passed with score {review.overall_score}/100; awaiting manual publish"
        logger.info(f"[task={task_id}] {message}")
        self._update_progress(task_id, status=RunStatus.COMPLETED, message=message)
        run.emit(WorkflowFinished(
            task_id=task_id, status=TaskStatus.REVIEW_COMPLETED, message=message, rewrite_count=rewrite_count,
        ))

    def _give_up(self, run: _Run) -> None:
        count = self._rewrite_count(run.task_id)
        review = self.artifact_store.get(run.task_id, BLOG_STATE_SCOPE, REVIEW_KEY, ReviewArtifact)
        raise RetryBudgetExhausted(self._diagnostic(review, count), count)

    async def _fail(self, run: _Run, message: str, error_type: str) -> None:
        """Move the task to failed and emit the terminal events."""
        task_id = run.task_id
        try:
            await self.repository.update_task_status(
                task_id, TaskStatus.FAILED, run.stage.value, error=message,
            )
        except (RepositoryFailure, InvalidTransitionError) as e:
            logger.error(f"[task={task_id}] Could not persist failure: {e}")

        self._update_progress(
            task_id,
            current_step=run.step,
            step_name=run.stage.value,
            status=RunStatus.FAILED,
            message=message.splitlines()[0] if message else "Failed",
            error_message=message,
        )
        run.emit(StageFailed(task_id=task_id, stage=run.stage, error=message, error_type=error_type))
        run.emit(WorkflowFinished(
            task_id=task_id,
            status=TaskStatus.FAILED,
            message=message,
            rewrite_count=self._rewrite_count(task_id),
        ))

    # --- Helpers ---

    def _rewrite_count(self, task_id: str) -> int:
        return self.artifact_store.get(task_id, BLOG_STATE_SCOPE, REWRITE_COUNT_KEY) or 0

    def _diagnostic(self, review: Optional[ReviewArtifact], count: int) -> str:
        return build_failure_diagnostic(
            review, count, self.settings.max_rewrite_count, self.settings.publish_threshold,
        )

    def _update_progress(self, task_id: str, **changes) -> None:
        snapshot = self.progress_cache.get(task_id) or ProgressSnapshot(task_id=task_id)
        changes["updated_at"] = _now()
        self.progress_cache.set(task_id, snapshot.model_copy(update=changes))
