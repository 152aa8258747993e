"""Executor-side schemas for tasks, stage artifacts, progress, and audit records.

Everything here serializes to a flat JSON structure (no back-references), so
events and snapshots can cross a process or network boundary unchanged.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    CREATED = "created"
    RESEARCHING = "researching"
    RESEARCH_COMPLETED = "research_completed"
    WRITING = "writing"
    WRITING_COMPLETED = "writing_completed"
    REVIEWING = "reviewing"
    REVIEW_COMPLETED = "review_completed"
    REWRITING = "rewriting"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.PUBLISHED, TaskStatus.FAILED)


class StageKind(str, Enum):
    """Closed set of pipeline stages."""
    RESEARCH = "research"
    DRAFT = "draft"
    REVIEW = "review"
    REWRITE = "rewrite"
    PUBLISH = "publish"
    FAILURE = "failure"


class RunStatus(str, Enum):
    """Run status as seen by polling clients."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Recommendation(str, Enum):
    PASS = "pass"
    REVISE = "revise"
    REJECT = "reject"


def _now() -> str:
    return datetime.utcnow().isoformat()


# --- Task ---


class WritingRequirements(BaseModel):
    """Length, style and audience targets for the draft."""

    target_word_count: int = Field(default=1500, ge=100)
    style: str = "clear and professional"
    target_audience: str = "intermediate developers"


class CreateTaskRequest(BaseModel):
    """Request to create a blog task."""

    topic: str = Field(min_length=1)
    reference_content: str = ""
    reference_urls: list[str] = Field(default_factory=list)
    reference_files: list[str] = Field(default_factory=list)
    requirements: WritingRequirements = Field(default_factory=WritingRequirements)


class BlogTask(BaseModel):
    """A blog generation task as persisted by the repository."""

    task_id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    topic: str
    reference_content: str = ""
    reference_urls: list[str] = Field(default_factory=list)
    reference_files: list[str] = Field(default_factory=list)
    requirements: WritingRequirements = Field(default_factory=WritingRequirements)
    status: TaskStatus = TaskStatus.CREATED
    current_stage: str = ""
    rewrite_count: int = 0
    error: Optional[str] = None
    created_at: str = Field(default_factory=_now)
    updated_at: str = Field(default_factory=_now)


# --- Artifacts ---


class KeyPoint(BaseModel):
    content: str
    importance: int = Field(default=3, ge=1, le=5)


class TechnicalDetail(BaseModel):
    title: str
    description: str = ""


class CodeExample(BaseModel):
    language: str = ""
    code: str
    description: str = ""


class ResearchArtifact(BaseModel):
    """Structured research notes produced by the research stage."""

    summary: str
    key_points: list[KeyPoint] = Field(default_factory=list)
    technical_details: list[TechnicalDetail] = Field(default_factory=list)
    code_examples: list[CodeExample] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)

    @field_validator("key_points")
    @classmethod
    def _order_by_importance(cls, points: list[KeyPoint]) -> list[KeyPoint]:
        return sorted(points, key=lambda p: p.importance, reverse=True)

    def to_markdown(self) -> str:
        """Render the notes as the markdown summary handed to the writer."""
        lines = ["## Topic Analysis", self.summary, "", "## Key Points"]
        for point in self.key_points:
            lines.append(f"{'*' * point.importance} {point.content}")
        lines.append("")
        if self.technical_details:
            lines.append("## Technical Details")
            for detail in self.technical_details:
                lines.extend([f"### {detail.title}", detail.description, ""])
        if self.code_examples:
            lines.append("## Code Examples")
            for example in self.code_examples:
                lines.extend([f"```{example.language}", example.code, "```", example.description, ""])
        if self.references:
            lines.append("## References")
            lines.extend(f"- {ref}" for ref in self.references)
        return "\n".join(lines).strip()


class DraftArtifact(BaseModel):
    """A complete draft (or rewrite) of the post."""

    title: str
    content: str
    word_count: int = 0
    generated_at: str = Field(default_factory=_now)


class ReviewIssue(BaseModel):
    category: str = "general"
    description: str
    severity: int = Field(default=2, ge=1, le=3)


# Maximum points per review dimension; together they make up 100.
DIMENSION_MAXIMA = {
    "accuracy_score": 40,
    "logic_score": 30,
    "originality_score": 20,
    "formatting_score": 10,
}


class ReviewArtifact(BaseModel):
    """Quality review of a draft. Dimension scores sum to overall_score."""

    overall_score: int = Field(ge=0, le=100)
    accuracy_score: int = Field(ge=0, le=40)
    logic_score: int = Field(ge=0, le=30)
    originality_score: int = Field(ge=0, le=20)
    formatting_score: int = Field(ge=0, le=10)
    issues: list[ReviewIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    recommendation: Recommendation = Recommendation.REVISE
    summary: str = ""

    @model_validator(mode="after")
    def _check_dimension_sum(self) -> "ReviewArtifact":
        total = (
            self.accuracy_score + self.logic_score
            + self.originality_score + self.formatting_score
        )
        if total != self.overall_score:
            raise ValueError(
                f"dimension scores sum to {total}, overall_score is {self.overall_score}"
            )
        return self


# --- Audit trail ---


class StageInvocationRecord(BaseModel):
    """One call to a stage capability. Append-only."""

    record_id: str = Field(default_factory=lambda: f"inv-{uuid.uuid4().hex[:12]}")
    task_id: str
    stage: StageKind
    attempt: int = 1
    input_text: str = ""
    output_text: str = ""
    success: bool = False
    error_message: Optional[str] = None
    cost_units: int = 0
    started_at: str
    finished_at: str
    duration_ms: int = 0


# --- Progress / state ---


class ProgressSnapshot(BaseModel):
    """Progress snapshot for polling clients."""

    task_id: str
    current_step: int = 0
    step_name: str = ""
    status: RunStatus = RunStatus.RUNNING
    message: str = ""
    current_output: Optional[str] = Field(
        default=None,
        description="Preview of the latest stage output (first 500 chars)",
    )
    research: Optional[ResearchArtifact] = None
    draft: Optional[DraftArtifact] = None
    review: Optional[ReviewArtifact] = None
    error_message: Optional[str] = None
    updated_at: str = Field(default_factory=_now)


class WorkflowState(BaseModel):
    """Persisted view of where a task stands."""

    task_id: str
    status: TaskStatus
    stage: str = ""
    has_research: bool = False
    has_draft: bool = False
    has_review: bool = False
    is_published: bool = False
    rewrite_count: int = 0


# --- Manual handling ---


class StageResult(BaseModel):
    """Outcome of running a single stage on request."""

    task_id: str
    stage: StageKind
    success: bool
    status: TaskStatus
    message: str = ""
    score: Optional[int] = None
    error: Optional[str] = None


class ResearchEdit(BaseModel):
    """Replacement research summary written by an editor."""

    summary: str = Field(min_length=1)


class DraftEdit(BaseModel):
    """Replacement title and body for the current draft."""

    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class ReviewEdit(BaseModel):
    """Editor overrides for the current review.

    Unset fields keep their reviewed values. The overall score is always
    recomputed from the four dimensions.
    """

    accuracy_score: Optional[int] = Field(default=None, ge=0, le=40)
    logic_score: Optional[int] = Field(default=None, ge=0, le=30)
    originality_score: Optional[int] = Field(default=None, ge=0, le=20)
    formatting_score: Optional[int] = Field(default=None, ge=0, le=10)
    recommendation: Optional[Recommendation] = None
    summary: Optional[str] = None


class MarkdownExport(BaseModel):
    task_id: str
    filename: str
    content: str
    path: Optional[str] = None
