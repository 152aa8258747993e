"""Static pipeline graph and task status transitions.

The graph is fixed:

    RESEARCH -> DRAFT -> REVIEW --(score >= threshold)----------------> PUBLISH
                           ^   \\--(score < threshold, count < max)---> REWRITE
                           |    \\-(score < threshold, count >= max)--> FAILURE
                           +------------------------------------------ REWRITE

PUBLISH and FAILURE are terminal. The only decision point is after REVIEW, and
`route_after_review()` covers every (score, count) pair by construction.
"""

import logging
from typing import Optional

from blog_pipeline.executor.errors import InvalidTransitionError
from blog_pipeline.executor.schemas import StageKind, TaskStatus

logger = logging.getLogger(__name__)

PUBLISH_THRESHOLD = 80
MAX_REWRITE_COUNT = 3

# Unconditional edges. REVIEW is routed by route_after_review().
EDGES: dict[StageKind, StageKind] = {
    StageKind.RESEARCH: StageKind.DRAFT,
    StageKind.DRAFT: StageKind.REVIEW,
    StageKind.REWRITE: StageKind.REVIEW,
}

TERMINAL_STAGES = frozenset({StageKind.PUBLISH, StageKind.FAILURE})


def route_after_review(
    score: int,
    rewrite_count: int,
    publish_threshold: int = PUBLISH_THRESHOLD,
    max_rewrite_count: int = MAX_REWRITE_COUNT,
) -> StageKind:
    """Quality gate: choose the stage that follows a review.

    Args:
        score: The review's overall score (0-100)
        rewrite_count: Rewrites already performed for this task
        publish_threshold: Minimum score to publish
        max_rewrite_count: Maximum rewrites before giving up

    Returns:
        PUBLISH, REWRITE or FAILURE
    """
    if score >= publish_threshold:
        return StageKind.PUBLISH
    if rewrite_count < max_rewrite_count:
        return StageKind.REWRITE
    return StageKind.FAILURE


class PipelineGraph:
    """The research/draft/review graph with its quality gate."""

    entry = StageKind.RESEARCH

    def __init__(
        self,
        publish_threshold: int = PUBLISH_THRESHOLD,
        max_rewrite_count: int = MAX_REWRITE_COUNT,
    ):
        self.publish_threshold = publish_threshold
        self.max_rewrite_count = max_rewrite_count

    def next_stage(
        self,
        current: StageKind,
        *,
        score: Optional[int] = None,
        rewrite_count: int = 0,
    ) -> Optional[StageKind]:
        """Return the stage after `current`, or None once a terminal stage is reached.

        Raises:
            ValueError: If `current` is REVIEW and no score is given
        """
        if current in TERMINAL_STAGES:
            return None
        if current == StageKind.REVIEW:
            if score is None:
                raise ValueError("Routing after review requires a score")
            return route_after_review(
                score, rewrite_count, self.publish_threshold, self.max_rewrite_count,
            )
        if current in EDGES:
            return EDGES[current]
        raise ValueError(f"Unknown stage: {current}")


# --- Task status transitions ---

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.CREATED: frozenset({TaskStatus.RESEARCHING}),
    TaskStatus.RESEARCHING: frozenset({TaskStatus.RESEARCH_COMPLETED}),
    TaskStatus.RESEARCH_COMPLETED: frozenset({TaskStatus.WRITING}),
    TaskStatus.WRITING: frozenset({TaskStatus.WRITING_COMPLETED}),
    TaskStatus.WRITING_COMPLETED: frozenset({TaskStatus.REVIEWING}),
    TaskStatus.REVIEWING: frozenset({TaskStatus.REVIEW_COMPLETED}),
    TaskStatus.REVIEW_COMPLETED: frozenset({TaskStatus.PUBLISHED, TaskStatus.REWRITING}),
    TaskStatus.REWRITING: frozenset({TaskStatus.WRITING_COMPLETED}),
    TaskStatus.PUBLISHED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    """Any non-terminal status may fail; re-asserting the same status is a no-op."""
    if old == new:
        return True
    if new == TaskStatus.FAILED:
        return not old.is_terminal
    return new in TASK_TRANSITIONS[old]


def check_transition(old: TaskStatus, new: TaskStatus) -> None:
    if not can_transition(old, new):
        raise InvalidTransitionError(f"Invalid task transition {old.value} -> {new.value}")
