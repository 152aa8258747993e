"""Error taxonomy for the pipeline.

Only TransientStageFailure is retried by the retry policy. Everything else
either propagates to the workflow runner (which moves the task to failed) or,
for CapabilityUnavailable, is downgraded to a warning by the caller.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransientStageFailure(PipelineError):
    """Network, timeout, rate-limit or 5xx failure from a backend."""


class BackendRequestError(PipelineError):
    """A backend rejected the request (auth, bad request, context too long)."""


class MalformedOutputError(PipelineError):
    """A stage response did not parse into the expected structure."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class StageFailed(PipelineError):
    """A stage ended unrecoverably."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class RetryBudgetExhausted(PipelineError):
    """The rewrite loop reached its bound. Always terminal."""

    def __init__(self, diagnostic: str, rewrite_count: int):
        super().__init__(diagnostic)
        self.diagnostic = diagnostic
        self.rewrite_count = rewrite_count


class RepositoryFailure(PipelineError):
    """Persistence failed; the affected artifact must not be used downstream."""


class CapabilityUnavailable(PipelineError):
    """An optional tool provider timed out or failed during discovery."""

    def __init__(self, provider: str, reason: Optional[str] = None):
        super().__init__(f"Capability '{provider}' unavailable: {reason or 'unknown'}")
        self.provider = provider


class MissingArtifactError(PipelineError):
    """A stage's upstream artifact is absent from the artifact store."""

    def __init__(self, task_id: str, key: str):
        super().__init__(f"Artifact '{key}' not available for task {task_id}")
        self.task_id = task_id
        self.key = key


class InvalidTransitionError(PipelineError):
    """A task status change outside the allowed transition table."""


class WorkflowAlreadyRunning(PipelineError):
    """A second run was requested for a task that is already executing."""


class TaskNotFound(PipelineError):
    """The repository has no task with the given id."""
