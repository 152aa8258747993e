"""Persistence for tasks, stage artifacts and the invocation audit trail.

`Repository` is the interface the workflow runner depends on; `SQLiteRepository`
is the bundled implementation.

Uses raw SQL via sqlite3. No ORM. Each call opens its own connection
(check_same_thread=False, WAL journal) and the blocking work runs in a worker
thread via asyncio.to_thread, so the event loop never blocks on disk I/O.

Artifacts are upserted (INSERT ... ON CONFLICT DO UPDATE): saving the same
(task, kind) twice leaves one row holding the latest content. Invocation
records are append-only.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Protocol, Type, TypeVar, Union

from pydantic import BaseModel

from blog_pipeline.executor.errors import RepositoryFailure, TaskNotFound
from blog_pipeline.executor.graph import check_transition
from blog_pipeline.executor.schemas import (
    BlogTask,
    StageInvocationRecord,
    StageKind,
    TaskStatus,
    WritingRequirements,
    _now,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

INTERRUPTED_MESSAGE = "Interrupted: the process running this task stopped"


class Repository(Protocol):
    """Operations the workflow runner needs from persistent storage."""

    async def create_task(self, task: BlogTask) -> BlogTask: ...

    async def get_task(self, task_id: str) -> Optional[BlogTask]: ...

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 50) -> list[BlogTask]: ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        stage: str = "",
        error: Optional[str] = None,
    ) -> BlogTask: ...

    async def update_rewrite_count(self, task_id: str, count: int) -> None: ...

    async def save_artifact(self, task_id: str, kind: StageKind, artifact: BaseModel) -> None: ...

    async def get_artifact(self, task_id: str, kind: StageKind, model: Type[M]) -> Optional[M]: ...

    async def list_artifact_kinds(self, task_id: str) -> list[StageKind]: ...

    async def mark_published(self, task_id: str) -> BlogTask: ...

    async def delete_task(self, task_id: str) -> bool: ...

    async def record_invocation(self, record: StageInvocationRecord) -> None: ...

    async def list_invocations(self, task_id: str) -> list[StageInvocationRecord]: ...

    async def recover_orphaned_tasks(self) -> list[str]: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS blog_tasks (
    task_id TEXT PRIMARY KEY,
    topic TEXT NOT NULL,
    reference_content TEXT DEFAULT '',
    reference_urls TEXT DEFAULT '[]',
    reference_files TEXT DEFAULT '[]',
    requirements TEXT DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'created',
    current_stage TEXT DEFAULT '',
    rewrite_count INTEGER DEFAULT 0,
    error TEXT,
    published_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS blog_artifacts (
    task_id TEXT NOT NULL REFERENCES blog_tasks(task_id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (task_id, kind)
);

CREATE TABLE IF NOT EXISTS stage_invocations (
    record_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 1,
    input_text TEXT DEFAULT '',
    output_text TEXT DEFAULT '',
    success INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    cost_units INTEGER DEFAULT 0,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    duration_ms INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_blog_tasks_status ON blog_tasks(status);
CREATE INDEX IF NOT EXISTS idx_stage_invocations_task ON stage_invocations(task_id);
"""

_TASK_COLUMNS = (
    "task_id, topic, reference_content, reference_urls, reference_files, requirements, "
    "status, current_stage, rewrite_count, error, created_at, updated_at"
)


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def _row_to_task(row: sqlite3.Row) -> BlogTask:
    return BlogTask(
        task_id=row["task_id"],
        topic=row["topic"],
        reference_content=row["reference_content"] or "",
        reference_urls=json.loads(row["reference_urls"] or "[]"),
        reference_files=json.loads(row["reference_files"] or "[]"),
        requirements=WritingRequirements.model_validate_json(row["requirements"] or "{}"),
        status=TaskStatus(row["status"]),
        current_stage=row["current_stage"] or "",
        rewrite_count=row["rewrite_count"] or 0,
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_record(row: sqlite3.Row) -> StageInvocationRecord:
    data = dict(row)
    data["success"] = bool(data["success"])
    return StageInvocationRecord.model_validate(data)


class SQLiteRepository:
    """Repository backed by a single SQLite file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._initialized = False

    # --- Connection handling ---

    @contextmanager
    def _connect(self):
        """Open a connection; sqlite3 errors surface as RepositoryFailure."""
        try:
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
        except sqlite3.Error as e:
            raise RepositoryFailure(f"Cannot open database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryFailure(f"Database error: {e}") from e
        finally:
            conn.close()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    def _init_sync(self) -> None:
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        self._initialized = True
        logger.info(f"Blog pipeline database initialized: SQLite ({self.path})")

    async def open(self) -> None:
        """Create tables if they don't exist."""
        if not self._initialized:
            await self._run(self._init_sync)

    async def close(self) -> None:
        # Connections are per call; nothing is held open.
        self._initialized = False

    # --- Tasks ---

    def _create_task_sync(self, task: BlogTask) -> BlogTask:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO blog_tasks ({_TASK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task.task_id, task.topic, task.reference_content,
                    _json_dumps(task.reference_urls), _json_dumps(task.reference_files),
                    task.requirements.model_dump_json(),
                    task.status.value, task.current_stage, task.rewrite_count,
                    task.error, task.created_at, task.updated_at,
                ),
            )
        logger.info(f"Created task {task.task_id}: {task.topic[:80]}")
        return task

    async def create_task(self, task: BlogTask) -> BlogTask:
        return await self._run(self._create_task_sync, task)

    def _get_task_sync(self, task_id: str) -> Optional[BlogTask]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM blog_tasks WHERE task_id = ?", (task_id,),
            ).fetchone()
        return _row_to_task(row) if row else None

    async def get_task(self, task_id: str) -> Optional[BlogTask]:
        return await self._run(self._get_task_sync, task_id)

    def _list_tasks_sync(self, status: Optional[TaskStatus], limit: int) -> list[BlogTask]:
        sql = f"SELECT {_TASK_COLUMNS} FROM blog_tasks"
        params: tuple = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (status.value,)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(sql, params + (limit,)).fetchall()
        return [_row_to_task(r) for r in rows]

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 50) -> list[BlogTask]:
        return await self._run(self._list_tasks_sync, status, limit)

    def _update_status_sync(
        self,
        task_id: str,
        status: TaskStatus,
        stage: str,
        error: Optional[str],
        published: bool = False,
    ) -> BlogTask:
        now = _now()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM blog_tasks WHERE task_id = ?", (task_id,),
            ).fetchone()
            if row is None:
                raise TaskNotFound(f"Task {task_id} not found")
            check_transition(TaskStatus(row["status"]), status)
            conn.execute(
                """UPDATE blog_tasks
                   SET status = ?, current_stage = ?, error = ?, updated_at = ?,
                       published_at = CASE WHEN ? THEN ? ELSE published_at END
                   WHERE task_id = ?""",
                (status.value, stage, error, now, published, now, task_id),
            )
        logger.info(f"[task={task_id}] status -> {status.value}" + (f" ({stage})" if stage else ""))
        return self._get_task_sync(task_id)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        stage: str = "",
        error: Optional[str] = None,
    ) -> BlogTask:
        """Persist a status change.

        Raises:
            TaskNotFound: Unknown task_id
            InvalidTransitionError: The change is not in TASK_TRANSITIONS
            RepositoryFailure: Database error
        """
        return await self._run(self._update_status_sync, task_id, status, stage, error)

    async def mark_published(self, task_id: str) -> BlogTask:
        return await self._run(
            self._update_status_sync, task_id, TaskStatus.PUBLISHED, StageKind.PUBLISH.value, None, True,
        )

    def _update_rewrite_count_sync(self, task_id: str, count: int) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE blog_tasks SET rewrite_count = ?, updated_at = ? WHERE task_id = ?",
                (count, _now(), task_id),
            )
            if cursor.rowcount == 0:
                raise TaskNotFound(f"Task {task_id} not found")

    async def update_rewrite_count(self, task_id: str, count: int) -> None:
        await self._run(self._update_rewrite_count_sync, task_id, count)

    def _delete_task_sync(self, task_id: str) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM stage_invocations WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM blog_artifacts WHERE task_id = ?", (task_id,))
            cursor = conn.execute("DELETE FROM blog_tasks WHERE task_id = ?", (task_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted task {task_id} with its artifacts and invocation records")
        return deleted

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task, its artifacts and its audit trail. False if it did not exist."""
        return await self._run(self._delete_task_sync, task_id)

    def _recover_orphans_sync(self) -> list[str]:
        live = [s.value for s in TaskStatus if not s.is_terminal and s != TaskStatus.CREATED]
        placeholders = ", ".join("?" for _ in live)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT task_id FROM blog_tasks WHERE status IN ({placeholders})", tuple(live),
            ).fetchall()
            task_ids = [r["task_id"] for r in rows]
            if task_ids:
                conn.execute(
                    f"""UPDATE blog_tasks SET status = ?, error = ?, updated_at = ?
                        WHERE status IN ({placeholders})""",
                    (TaskStatus.FAILED.value, INTERRUPTED_MESSAGE, _now(), *live),
                )
        if task_ids:
            logger.warning(f"Recovered {len(task_ids)} orphaned tasks: {task_ids}")
        return task_ids

    async def recover_orphaned_tasks(self) -> list[str]:
        """Mark tasks left mid-run by a dead process as failed.

        Tasks still in `created` never started and are left alone.
        """
        return await self._run(self._recover_orphans_sync)

    # --- Artifacts ---

    def _save_artifact_sync(self, task_id: str, kind: StageKind, payload: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO blog_artifacts (task_id, kind, payload, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(task_id, kind) DO UPDATE SET
                       payload = excluded.payload,
                       updated_at = excluded.updated_at""",
                (task_id, kind.value, payload, _now()),
            )

    async def save_artifact(self, task_id: str, kind: StageKind, artifact: BaseModel) -> None:
        await self._run(self._save_artifact_sync, task_id, kind, artifact.model_dump_json())
        logger.debug(f"[task={task_id}] Saved {kind.value} artifact")

    def _get_artifact_sync(self, task_id: str, kind: StageKind) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM blog_artifacts WHERE task_id = ? AND kind = ?",
                (task_id, kind.value),
            ).fetchone()
        return row["payload"] if row else None

    async def get_artifact(self, task_id: str, kind: StageKind, model: Type[M]) -> Optional[M]:
        payload = await self._run(self._get_artifact_sync, task_id, kind)
        if payload is None:
            return None
        return model.model_validate_json(payload)

    def _list_artifact_kinds_sync(self, task_id: str) -> list[StageKind]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT kind FROM blog_artifacts WHERE task_id = ? ORDER BY kind", (task_id,),
            ).fetchall()
        return [StageKind(r["kind"]) for r in rows]

    async def list_artifact_kinds(self, task_id: str) -> list[StageKind]:
        """Kinds of artifact saved for a task (one row per kind)."""
        return await self._run(self._list_artifact_kinds_sync, task_id)

    # --- Invocation audit trail ---

    def _record_invocation_sync(self, record: StageInvocationRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO stage_invocations
                   (record_id, task_id, stage, attempt, input_text, output_text, success,
                    error_message, cost_units, started_at, finished_at, duration_ms)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.record_id, record.task_id, record.stage.value, record.attempt,
                    record.input_text, record.output_text, int(record.success),
                    record.error_message, record.cost_units,
                    record.started_at, record.finished_at, record.duration_ms,
                ),
            )

    async def record_invocation(self, record: StageInvocationRecord) -> None:
        await self._run(self._record_invocation_sync, record)

    def _list_invocations_sync(self, task_id: str) -> list[StageInvocationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT record_id, task_id, stage, attempt, input_text, output_text, success,
                          error_message, cost_units, started_at, finished_at, duration_ms
                   FROM stage_invocations WHERE task_id = ?
                   ORDER BY rowid""",
                (task_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    async def list_invocations(self, task_id: str) -> list[StageInvocationRecord]:
        return await self._run(self._list_invocations_sync, task_id)
