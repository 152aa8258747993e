"""Stage executors: one streamed LLM call per invocation, parsed into an artifact.

This is the atomic unit of execution. Every research, draft, rewrite and
review call flows through `StageExecutor.invoke()`, which:
- passes the prompt through the interceptor chain
- streams the response from the backend, forwarding each chunk to `on_chunk`
- passes the full response through the interceptor chain
- parses it into the stage's artifact
- records a StageInvocationRecord whether the call succeeded or failed

Retry is not handled here. The workflow runner wraps `invoke()` in a
RetryPolicy and passes the attempt number through for the audit record.

Parse policy per stage:
- research: malformed JSON raises MalformedOutputError (the run fails)
- draft/rewrite: an empty or heading-only body raises MalformedOutputError
- review: malformed JSON falls back to a conservative 50-point "revise" review
"""

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from blog_pipeline.executor.errors import MalformedOutputError, RepositoryFailure
from blog_pipeline.executor.interceptors import InterceptorChain
from blog_pipeline.executor.schemas import (
    DIMENSION_MAXIMA,
    DraftArtifact,
    Recommendation,
    ResearchArtifact,
    ReviewArtifact,
    ReviewIssue,
    StageInvocationRecord,
    StageKind,
    WritingRequirements,
    _now,
)
from blog_pipeline.llm.backends import ModelBackend
from blog_pipeline.llm.capabilities import ToolSpec, render_tool_section
from blog_pipeline.llm.client import extract_json_object

logger = logging.getLogger(__name__)

Recorder = Callable[[StageInvocationRecord], Awaitable[None]]
ChunkCallback = Callable[[str], None]

# Rough token estimate used for cost accounting
COST_UNITS_PER_CHAR = 0.4

UNTITLED = "Untitled Post"


def estimate_cost_units(input_text: str, output_text: str) -> int:
    return int((len(input_text) + len(output_text)) * COST_UNITS_PER_CHAR)


# --- Stage inputs ---


class ResearchInput(BaseModel):
    topic: str
    reference_content: str = ""


class DraftInput(BaseModel):
    """Input to the writer. With `feedback` set, this is a rewrite."""

    topic: str
    research_summary: str
    requirements: WritingRequirements = WritingRequirements()
    feedback: Optional[ReviewArtifact] = None
    previous_draft: Optional[DraftArtifact] = None


class ReviewInput(BaseModel):
    title: str
    content: str


# --- Base executor ---


class StageExecutor:
    """Base class for the stage capabilities.

    Subclasses set `kind`, `system_prompt` and implement `build_message()` and
    `parse()`.
    """

    kind: StageKind
    system_prompt: str = ""
    temperature: Optional[float] = None

    def __init__(
        self,
        backend: ModelBackend,
        *,
        interceptors: Optional[InterceptorChain] = None,
        recorder: Optional[Recorder] = None,
        tools: Optional[list[ToolSpec]] = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ):
        self.backend = backend
        self.interceptors = interceptors or InterceptorChain()
        self.recorder = recorder
        self.tools = tools or []
        self.max_tokens = max_tokens
        if self.temperature is None:
            self.temperature = temperature

    def stage_for(self, stage_input: Any) -> StageKind:
        return self.kind

    def build_message(self, stage_input: Any) -> str:
        raise NotImplementedError

    def parse(self, text: str) -> BaseModel:
        raise NotImplementedError

    def full_system_prompt(self) -> str:
        tool_section = render_tool_section(self.tools)
        if not tool_section:
            return self.system_prompt
        return f"{self.system_prompt}\n\n{tool_section}"

    async def invoke(
        self,
        stage_input: Any,
        task_id: str,
        *,
        attempt: int = 1,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> BaseModel:
        """Run one call for this stage and return the parsed artifact.

        Args:
            stage_input: The stage's input model
            task_id: Owning task (for logging and the audit record)
            attempt: 1-indexed attempt number from the retry policy
            on_chunk: Called with each streamed text chunk

        Returns:
            The stage artifact

        Raises:
            TransientStageFailure: Backend network/timeout/429/5xx (retryable)
            MalformedOutputError: Output did not parse (research, draft)
        """
        stage = self.stage_for(stage_input)
        label = f"{stage.value} task={task_id}"
        user_message = self.build_message(stage_input)

        started_at = _now()
        t0 = time.monotonic()
        output_text = ""
        success = False
        error_message: Optional[str] = None

        try:
            filtered_in = self.interceptors.apply_input(user_message, label)
            if filtered_in.blocked:
                output_text = filtered_in.text
            else:
                chunks: list[str] = []
                async for chunk in self.backend.stream(
                    self.full_system_prompt(),
                    filtered_in.text,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    label=label,
                ):
                    chunks.append(chunk)
                    if on_chunk is not None:
                        on_chunk(chunk)
                output_text = self.interceptors.apply_output("".join(chunks), label).text

            artifact = self.parse(output_text)
            success = True
            return artifact
        except asyncio.CancelledError:
            error_message = "Cancelled"
            raise
        except Exception as e:
            error_message = f"{type(e).__name__}: {e}"
            logger.error(f"[{label}] Attempt {attempt} failed: {error_message}")
            raise
        finally:
            duration_ms = int((time.monotonic() - t0) * 1000)
            record = StageInvocationRecord(
                task_id=task_id,
                stage=stage,
                attempt=attempt,
                input_text=user_message,
                output_text=output_text,
                success=success,
                error_message=error_message,
                cost_units=estimate_cost_units(user_message, output_text),
                started_at=started_at,
                finished_at=_now(),
                duration_ms=duration_ms,
            )
            if success:
                logger.info(
                    f"[{label}] Completed in {duration_ms}ms "
                    f"({len(output_text):,} chars, ~{record.cost_units} units)"
                )
            await self._record(record, label)

    async def _record(self, record: StageInvocationRecord, label: str) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder(record)
        except RepositoryFailure as e:
            # Audit record save failures do not fail the stage.
            logger.error(f"[{label}] Failed to save invocation record: {e}")


# --- Research ---


class ResearchStage(StageExecutor):
    kind = StageKind.RESEARCH
    system_prompt = """You are a technical research specialist.

Read the topic and reference material and extract the key information
(technical concepts, code examples, best practices, use cases).

Respond with a single JSON object and nothing else:
{
  "summary": "what the topic is, its background, where it applies, who it is for",
  "key_points": [{"content": "...", "importance": 1-5}],
  "technical_details": [{"title": "...", "description": "..."}],
  "code_examples": [{"language": "...", "code": "...", "description": "..."}],
  "references": ["..."]
}

Only use information that is present in the material. If the material is
insufficient, say what is missing in the summary."""

    def build_message(self, stage_input: ResearchInput) -> str:
        reference = stage_input.reference_content.strip() or "(no reference material provided)"
        return (
            f"**Topic:** {stage_input.topic}\n\n"
            f"**Reference material:**\n{reference}\n\n"
            "Organize the material as instructed and output the JSON object."
        )

    def parse(self, text: str) -> ResearchArtifact:
        try:
            data = extract_json_object(text)
            data.setdefault("summary", data.pop("topic_analysis", ""))
            data["key_points"] = [
                {"content": p} if isinstance(p, str) else p
                for p in data.get("key_points") or []
            ]
            return ResearchArtifact.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise MalformedOutputError(f"Research output is not valid JSON: {e}", raw_output=text) from e


# --- Draft / rewrite ---


_CJK_RE = re.compile(r"[一-龥]")
_LATIN_RE = re.compile(r"[A-Za-z]")
_MARKUP_RE = re.compile(r"```|[#*\->|]")


def count_words(content: str) -> int:
    """English words plus CJK characters, ignoring markdown markup."""
    if not content or not content.strip():
        return 0
    clean = _MARKUP_RE.sub("", content)
    cjk_chars = len(_CJK_RE.findall(clean))
    english_words = sum(1 for word in clean.split() if _LATIN_RE.search(word))
    return cjk_chars + english_words


def extract_title(markdown: str) -> str:
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or UNTITLED
    return UNTITLED


def _body_without_title(markdown: str) -> str:
    lines = [line for line in markdown.splitlines() if not line.strip().startswith("# ")]
    return "\n".join(lines).strip()


class DraftStage(StageExecutor):
    kind = StageKind.DRAFT
    system_prompt = """You are a senior technical blogger who turns technical material
into clear, approachable articles.

Structure the article exactly as follows:

# Title
> Introduction: one paragraph on why the article is worth reading

## 1. Background
## 2. Core Concepts
## 3. In Practice (code examples in fenced blocks with a language tag)
## 4. Best Practices
## 5. Summary

Avoid filler. Explain each technical term the first time it appears. Use lists
and tables where they help readability. Output markdown only."""

    def stage_for(self, stage_input: DraftInput) -> StageKind:
        return StageKind.REWRITE if stage_input.feedback is not None else StageKind.DRAFT

    def build_message(self, stage_input: DraftInput) -> str:
        req = stage_input.requirements
        parts = [
            f"**Topic:** {stage_input.topic}",
            f"**Research summary:**\n{stage_input.research_summary}",
            (
                "**Writing requirements:**\n"
                f"- Target length: {req.target_word_count} words\n"
                f"- Style: {req.style}\n"
                f"- Audience: {req.target_audience}"
            ),
        ]
        review = stage_input.feedback
        if review is not None:
            parts.append(format_feedback(review))
            if stage_input.previous_draft is not None:
                parts.append(f"**Previous draft:**\n{stage_input.previous_draft.content}")
            parts.append("Rewrite the article, focusing on the problems listed above.")
        else:
            parts.append("Write the article from the material above, following the required structure.")
        return "\n\n".join(parts)

    def parse(self, text: str) -> DraftArtifact:
        if not _body_without_title(text):
            raise MalformedOutputError("Draft has no body", raw_output=text)
        return DraftArtifact(
            title=extract_title(text),
            content=text,
            word_count=count_words(text),
        )


def format_feedback(review: ReviewArtifact) -> str:
    """Render a review as the improvement brief handed to the rewrite."""
    lines = [
        "**Previous scores:**",
        f"- Overall: {review.overall_score}/100",
        f"- Accuracy: {review.accuracy_score}/40",
        f"- Logic: {review.logic_score}/30",
        f"- Originality: {review.originality_score}/20",
        f"- Formatting: {review.formatting_score}/10",
        "",
        "**Problems to fix:**",
    ]
    lines.extend(
        f"- [{issue.category}] {issue.description} (severity {issue.severity})"
        for issue in review.issues
    )
    if review.suggestions:
        lines.extend(["", "**Suggestions:**"])
        lines.extend(f"{i}. {s}" for i, s in enumerate(review.suggestions, 1))
    return "\n".join(lines)


# --- Review ---


def fallback_review() -> ReviewArtifact:
    """Conservative review used when the reviewer's output cannot be parsed."""
    return ReviewArtifact(
        overall_score=50,
        accuracy_score=20,
        logic_score=15,
        originality_score=10,
        formatting_score=5,
        issues=[ReviewIssue(
            category="accuracy",
            description="Reviewer response was unparseable; quality could not be assessed",
            severity=2,
        )],
        suggestions=["Check the article quality manually"],
        recommendation=Recommendation.REVISE,
        summary="Review output could not be parsed",
    )


def recommendation_for(score: int) -> Recommendation:
    if score >= 80:
        return Recommendation.PASS
    if score >= 70:
        return Recommendation.REVISE
    return Recommendation.REJECT


def _dimension(data: dict, name: str) -> tuple[int, list]:
    """Read a dimension score from either flat or nested review JSON."""
    flat = data.get(f"{name}_score")
    nested = data.get(name)
    issues: list = []
    if isinstance(nested, dict):
        score = nested.get("score", flat)
        issues = nested.get("issues") or []
    else:
        score = flat if flat is not None else nested
    if score is None:
        raise ValueError(f"missing {name} score")
    maximum = DIMENSION_MAXIMA[f"{name}_score"]
    return max(0, min(int(score), maximum)), [
        {"category": name, "description": i} if isinstance(i, str) else {"category": name, **i}
        for i in issues
    ]


def _recommendation(value: Any, score: int) -> Recommendation:
    try:
        return Recommendation(str(value).strip().lower())
    except ValueError:
        return recommendation_for(score)


class ReviewStage(StageExecutor):
    kind = StageKind.REVIEW
    temperature = 0.3
    system_prompt = """You are a strict technical content reviewer.

Score the article on four dimensions:
1. accuracy (0-40): correct concepts, runnable code, no outdated information
2. logic (0-30): clear structure, sound argument, smooth transitions
3. originality (0-20): real insight and practical value, not a pile of quotes
4. formatting (0-10): clean markdown, tagged code blocks, consistent terms

overall_score must equal the sum of the four dimension scores.
recommendation: "pass" if overall >= 80, "revise" if 70-79, "reject" below 70.

Respond with a single JSON object and nothing else:
{
  "overall_score": 85,
  "accuracy_score": 36, "logic_score": 26, "originality_score": 15, "formatting_score": 8,
  "issues": [{"category": "accuracy", "description": "...", "severity": 1-3}],
  "suggestions": ["..."],
  "recommendation": "pass",
  "summary": "overall assessment"
}"""

    def build_message(self, stage_input: ReviewInput) -> str:
        return (
            "Review the following article.\n\n"
            f"**Title:** {stage_input.title}\n\n"
            f"**Content:**\n{stage_input.content}\n\n"
            "Output the JSON review only."
        )

    def parse(self, text: str) -> ReviewArtifact:
        try:
            return self._parse_review(text)
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning(f"[review] Unparseable review output ({e}); using fallback review")
            return fallback_review()

    def _parse_review(self, text: str) -> ReviewArtifact:
        data = extract_json_object(text)

        scores: dict[str, int] = {}
        issues: list = []
        for name in ("accuracy", "logic", "originality", "formatting"):
            score, dim_issues = _dimension(data, name)
            scores[f"{name}_score"] = score
            issues.extend(dim_issues)
        issues.extend(
            {"description": i} if isinstance(i, str) else i
            for i in data.get("issues") or []
        )

        overall = sum(scores.values())
        stated = data.get("overall_score")
        if stated is not None and stated != overall:
            logger.info(f"[review] Stated overall {stated} != dimension sum {overall}; using the sum")

        return ReviewArtifact(
            overall_score=overall,
            **scores,
            issues=[ReviewIssue.model_validate(i) for i in issues],
            suggestions=[str(s) for s in data.get("suggestions") or []],
            recommendation=_recommendation(data.get("recommendation"), overall),
            summary=str(data.get("summary") or ""),
        )
