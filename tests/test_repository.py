import asyncio

import pytest

from blog_pipeline.executor.errors import InvalidTransitionError, RepositoryFailure, TaskNotFound
from blog_pipeline.executor.repository import INTERRUPTED_MESSAGE
from blog_pipeline.executor.schemas import (
    BlogTask,
    DraftArtifact,
    StageInvocationRecord,
    StageKind,
    TaskStatus,
    WritingRequirements,
)


def test_task_round_trip(repository):
    task = BlogTask(
        topic="Structured concurrency",
        reference_urls=["https://example.com/a"],
        reference_files=["notes.md"],
        requirements=WritingRequirements(target_word_count=800, style="casual"),
    )

    async def scenario():
        await repository.create_task(task)
        return await repository.get_task(task.task_id)

    loaded = asyncio.run(scenario())

    assert loaded == task


def test_get_unknown_task(repository):
    assert asyncio.run(repository.get_task("task-nope")) is None


def test_duplicate_task_id_is_a_repository_failure(repository):
    task = BlogTask(topic="t")

    async def scenario():
        await repository.create_task(task)
        await repository.create_task(task)

    with pytest.raises(RepositoryFailure):
        asyncio.run(scenario())


def test_list_tasks_filters_by_status(repository, make_task):
    first = make_task("first")
    second = make_task("second")

    async def scenario():
        await repository.update_task_status(first, TaskStatus.RESEARCHING, "research")
        everything = await repository.list_tasks()
        researching = await repository.list_tasks(status=TaskStatus.RESEARCHING)
        return everything, researching

    everything, researching = asyncio.run(scenario())

    assert {t.task_id for t in everything} == {first, second}
    assert [t.task_id for t in researching] == [first]


def test_status_updates_follow_transition_table(repository, make_task):
    task_id = make_task()

    async def scenario():
        task = await repository.update_task_status(task_id, TaskStatus.RESEARCHING, "research")
        assert task.current_stage == "research"
        with pytest.raises(InvalidTransitionError):
            await repository.update_task_status(task_id, TaskStatus.PUBLISHED)
        failed = await repository.update_task_status(task_id, TaskStatus.FAILED, "research", error="boom")
        with pytest.raises(InvalidTransitionError):
            await repository.update_task_status(task_id, TaskStatus.RESEARCHING)
        return failed

    failed = asyncio.run(scenario())

    assert failed.status == TaskStatus.FAILED
    assert failed.error == "boom"


def test_update_unknown_task(repository):
    with pytest.raises(TaskNotFound):
        asyncio.run(repository.update_task_status("task-nope", TaskStatus.RESEARCHING))


def test_artifact_upsert_keeps_latest(repository, make_task):
    task_id = make_task()

    async def scenario():
        await repository.save_artifact(task_id, StageKind.DRAFT, DraftArtifact(title="v1", content="# v1\nx"))
        await repository.save_artifact(task_id, StageKind.DRAFT, DraftArtifact(title="v2", content="# v2\ny"))
        kinds = await repository.list_artifact_kinds(task_id)
        latest = await repository.get_artifact(task_id, StageKind.DRAFT, DraftArtifact)
        missing = await repository.get_artifact(task_id, StageKind.REVIEW, DraftArtifact)
        return kinds, latest, missing

    kinds, latest, missing = asyncio.run(scenario())

    assert kinds == [StageKind.DRAFT]
    assert latest.title == "v2"
    assert missing is None


def test_invocations_are_append_only_and_ordered(repository, make_task):
    task_id = make_task()
    records = [
        StageInvocationRecord(
            task_id=task_id, stage=stage, attempt=attempt, success=success,
            started_at="2026-01-01T00:00:00", finished_at="2026-01-01T00:00:01",
        )
        for stage, attempt, success in [
            (StageKind.RESEARCH, 1, False),
            (StageKind.RESEARCH, 2, True),
            (StageKind.DRAFT, 1, True),
        ]
    ]

    async def scenario():
        for record in records:
            await repository.record_invocation(record)
        return await repository.list_invocations(task_id)

    stored = asyncio.run(scenario())

    assert stored == records


def test_recover_orphaned_tasks(repository, make_task):
    created = make_task()
    writing = make_task()
    published = make_task()

    async def scenario():
        for status in (TaskStatus.RESEARCHING, TaskStatus.RESEARCH_COMPLETED, TaskStatus.WRITING):
            await repository.update_task_status(writing, status)
        for status in (
            TaskStatus.RESEARCHING, TaskStatus.RESEARCH_COMPLETED, TaskStatus.WRITING,
            TaskStatus.WRITING_COMPLETED, TaskStatus.REVIEWING, TaskStatus.REVIEW_COMPLETED,
        ):
            await repository.update_task_status(published, status)
        await repository.mark_published(published)

        recovered = await repository.recover_orphaned_tasks()
        again = await repository.recover_orphaned_tasks()
        tasks = {tid: await repository.get_task(tid) for tid in (created, writing, published)}
        return recovered, again, tasks

    recovered, again, tasks = asyncio.run(scenario())

    assert recovered == [writing]
    assert again == []
    assert tasks[writing].status == TaskStatus.FAILED
    assert tasks[writing].error == INTERRUPTED_MESSAGE
    assert tasks[created].status == TaskStatus.CREATED
    assert tasks[published].status == TaskStatus.PUBLISHED


def test_delete_task_removes_artifacts_and_audit_trail(repository, make_task):
    doomed = make_task()
    kept = make_task()

    async def scenario():
        for task_id in (doomed, kept):
            await repository.save_artifact(task_id, StageKind.DRAFT, DraftArtifact(title="T", content="# T\nx"))
            await repository.record_invocation(StageInvocationRecord(
                task_id=task_id, stage=StageKind.DRAFT,
                started_at="2026-01-01T00:00:00", finished_at="2026-01-01T00:00:01",
            ))
        deleted = await repository.delete_task(doomed)
        deleted_again = await repository.delete_task(doomed)
        return (
            deleted,
            deleted_again,
            await repository.get_task(doomed),
            await repository.list_artifact_kinds(doomed),
            await repository.list_invocations(doomed),
            await repository.list_artifact_kinds(kept),
            await repository.list_invocations(kept),
        )

    deleted, deleted_again, task, kinds, records, kept_kinds, kept_records = asyncio.run(scenario())

    assert deleted is True
    assert deleted_again is False
    assert task is None
    assert kinds == []
    assert records == []
    assert kept_kinds == [StageKind.DRAFT]
    assert len(kept_records) == 1
