import asyncio
import json

import pytest

from blog_pipeline.executor.errors import MalformedOutputError, RepositoryFailure, TransientStageFailure
from blog_pipeline.executor.interceptors import InterceptorChain, PIIFilter
from blog_pipeline.executor.schemas import Recommendation, ReviewArtifact, StageKind
from blog_pipeline.executor.stage_runner import (
    UNTITLED,
    DraftInput,
    DraftStage,
    ResearchInput,
    ResearchStage,
    ReviewInput,
    ReviewStage,
    count_words,
    estimate_cost_units,
    extract_title,
    recommendation_for,
)

from fakes import RESEARCH_JSON, ScriptedBackend, draft_markdown, review_json


def _review_stage() -> ReviewStage:
    return ReviewStage(ScriptedBackend({}))


# --- Research ---


def test_research_parse_orders_key_points_and_accepts_strings():
    research = ResearchStage(ScriptedBackend({})).parse(RESEARCH_JSON)

    assert [p.importance for p in research.key_points] == [5, 3, 3]
    assert research.key_points[0].content == "The event loop schedules ready tasks"
    assert research.code_examples[0].language == "python"


def test_research_parse_accepts_topic_analysis_and_prose():
    text = 'Here you go:\n{"topic_analysis": "Overview", "key_points": []}\nHope it helps.'
    research = ResearchStage(ScriptedBackend({})).parse(text)
    assert research.summary == "Overview"


def test_research_parse_rejects_non_json():
    with pytest.raises(MalformedOutputError) as exc_info:
        ResearchStage(ScriptedBackend({})).parse("no structure here")
    assert exc_info.value.raw_output == "no structure here"


def test_research_message_without_reference():
    message = ResearchStage(ScriptedBackend({})).build_message(ResearchInput(topic="asyncio"))
    assert "(no reference material provided)" in message


# --- Draft ---


def test_count_words_mixed_content():
    assert count_words("# Title\n\nHello world") == 3
    assert count_words("异步编程 makes IO fast") == 4 + 3
    assert count_words("") == 0
    assert count_words("123 456") == 0


def test_extract_title():
    assert extract_title("intro\n# Real Title\nbody") == "Real Title"
    assert extract_title("## Only a section\nbody") == UNTITLED


def test_draft_parse_builds_artifact():
    draft = DraftStage(ScriptedBackend({})).parse(draft_markdown("Event Loops"))
    assert draft.title == "Event Loops"
    assert draft.word_count > 0


@pytest.mark.parametrize("text", ["", "   ", "# Just a title\n"])
def test_draft_parse_rejects_empty_body(text):
    with pytest.raises(MalformedOutputError):
        DraftStage(ScriptedBackend({})).parse(text)


def test_draft_stage_kind_follows_feedback():
    stage = DraftStage(ScriptedBackend({}))
    plain = DraftInput(topic="t", research_summary="s")
    rewrite = plain.model_copy(update={"feedback": _review_stage().parse(review_json(60))})

    assert stage.stage_for(plain) == StageKind.DRAFT
    assert stage.stage_for(rewrite) == StageKind.REWRITE
    assert "Previous scores" in stage.build_message(rewrite)
    assert "Previous scores" not in stage.build_message(plain)


# --- Review ---


def test_review_parse_flat_scores():
    review = _review_stage().parse(review_json(72))
    assert review.overall_score == 72
    assert review.recommendation == Recommendation.REVISE
    assert review.issues[0].description == "issue at score 72"


def test_review_parse_nested_dimensions():
    text = json.dumps({
        "accuracy": {"score": 35, "issues": ["Outdated API"]},
        "logic": {"score": 25, "issues": []},
        "originality": {"score": 15},
        "formatting": {"score": 8, "issues": [{"description": "Untagged code block", "severity": 1}]},
        "recommendation": "pass",
    })

    review = _review_stage().parse(text)

    assert review.overall_score == 83
    assert {(i.category, i.description) for i in review.issues} == {
        ("accuracy", "Outdated API"),
        ("formatting", "Untagged code block"),
    }


def test_review_overall_is_the_dimension_sum():
    data = json.loads(review_json(60))
    data["overall_score"] = 95
    review = _review_stage().parse(json.dumps(data))
    assert review.overall_score == 60


def test_review_clamps_dimensions_to_their_maximum():
    data = json.loads(review_json(60))
    data["accuracy_score"] = 55
    review = _review_stage().parse(json.dumps(data))
    assert review.accuracy_score == 40


def test_review_unparseable_falls_back():
    review = _review_stage().parse("Looks great to me")
    assert review.overall_score == 50
    assert review.recommendation == Recommendation.REVISE
    assert "unparseable" in review.issues[0].description


def test_review_missing_recommendation_uses_score():
    data = json.loads(review_json(65))
    review = _review_stage().parse(json.dumps(data))
    assert review.recommendation == Recommendation.REJECT


def test_recommendation_bands():
    assert recommendation_for(80) == Recommendation.PASS
    assert recommendation_for(79) == Recommendation.REVISE
    assert recommendation_for(70) == Recommendation.REVISE
    assert recommendation_for(69) == Recommendation.REJECT


def test_review_artifact_rejects_inconsistent_sum():
    with pytest.raises(ValueError):
        ReviewArtifact(
            overall_score=90, accuracy_score=10, logic_score=10,
            originality_score=10, formatting_score=10,
        )


def test_review_stage_uses_low_temperature():
    assert _review_stage().temperature == 0.3
    assert ResearchStage(ScriptedBackend({}), temperature=0.9).temperature == 0.9


# --- invoke() ---


def test_invoke_streams_chunks_and_records():
    backend = ScriptedBackend({"research": [RESEARCH_JSON]}, chunk_size=16)
    records = []
    chunks = []

    async def recorder(record):
        records.append(record)

    stage = ResearchStage(backend, recorder=recorder)
    research = asyncio.run(stage.invoke(
        ResearchInput(topic="asyncio"), "task-1", attempt=2, on_chunk=chunks.append,
    ))

    assert research.summary.startswith("asyncio runs")
    assert "".join(chunks) == RESEARCH_JSON
    assert len(chunks) > 1
    [record] = records
    assert record.success is True
    assert record.attempt == 2
    assert record.stage == StageKind.RESEARCH
    assert record.output_text == RESEARCH_JSON
    assert record.cost_units == estimate_cost_units(record.input_text, RESEARCH_JSON)


def test_invoke_records_failures_and_reraises():
    backend = ScriptedBackend({"review": [TransientStageFailure("HTTP 429")]})
    records = []

    async def recorder(record):
        records.append(record)

    stage = ReviewStage(backend, recorder=recorder)
    with pytest.raises(TransientStageFailure):
        asyncio.run(stage.invoke(ReviewInput(title="t", content="c"), "task-1"))

    assert records[0].success is False
    assert records[0].error_message == "TransientStageFailure: HTTP 429"


def test_invoke_survives_recorder_failure():
    backend = ScriptedBackend({"draft": [draft_markdown()]})

    async def recorder(record):
        raise RepositoryFailure("disk full")

    stage = DraftStage(backend, recorder=recorder)
    draft = asyncio.run(stage.invoke(DraftInput(topic="t", research_summary="s"), "task-1"))
    assert draft.title == "Understanding asyncio"


def test_invoke_applies_output_interceptors():
    markdown = draft_markdown() + "\nQuestions go to bob@example.org.\n"
    backend = ScriptedBackend({"draft": [markdown]})
    stage = DraftStage(backend, interceptors=InterceptorChain([PIIFilter()]))

    draft = asyncio.run(stage.invoke(DraftInput(topic="t", research_summary="s"), "task-1"))

    assert "bob@example.org" not in draft.content
    assert "[EMAIL]" in draft.content
