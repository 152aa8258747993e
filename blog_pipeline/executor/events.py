"""Pipeline events emitted by the workflow runner.

Each event is a tagged pydantic model; `kind` is the discriminator. Consumers
switch on `kind` (or isinstance) instead of catching exceptions that cross the
stream boundary. `to_dict()` gives the flat JSON payload for NDJSON/SSE.
"""

import time
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from blog_pipeline.executor.schemas import StageKind, TaskStatus


class _EventBase(BaseModel):
    task_id: str
    ts: float = Field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class StageStarted(_EventBase):
    kind: Literal["stage_started"] = "stage_started"
    stage: StageKind
    step: int


class OutputChunk(_EventBase):
    kind: Literal["output_chunk"] = "output_chunk"
    stage: StageKind
    text: str


class StageCompleted(_EventBase):
    kind: Literal["stage_completed"] = "stage_completed"
    stage: StageKind
    step: int
    duration_ms: int = 0
    summary: str = ""
    score: Optional[int] = None


class StageFailed(_EventBase):
    kind: Literal["stage_failed"] = "stage_failed"
    stage: StageKind
    error: str
    error_type: str = ""


class WorkflowFinished(_EventBase):
    kind: Literal["workflow_finished"] = "workflow_finished"
    status: TaskStatus
    message: str = ""
    rewrite_count: int = 0


PipelineEvent = Union[StageStarted, OutputChunk, StageCompleted, StageFailed, WorkflowFinished]
