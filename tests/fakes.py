"""Scripted stand-ins for the model backend and canned stage outputs."""

import asyncio
import json
from typing import Optional

from blog_pipeline.executor.workflow_runner import WorkflowRunner
from blog_pipeline.llm.pool import BackendPool


RESEARCH_JSON = json.dumps({
    "summary": "asyncio runs coroutines on a single-threaded event loop.",
    "key_points": [
        {"content": "Coroutines yield control at await points", "importance": 3},
        {"content": "The event loop schedules ready tasks", "importance": 5},
        "Tasks wrap coroutines for concurrent execution",
    ],
    "technical_details": [
        {"title": "Event loop", "description": "Selects ready callbacks and runs them."},
    ],
    "code_examples": [
        {"language": "python", "code": "asyncio.run(main())", "description": "Entry point"},
    ],
    "references": ["https://docs.python.org/3/library/asyncio.html"],
})


def draft_markdown(title: str = "Understanding asyncio") -> str:
    return (
        f"# {title}\n\n"
        "> Why the event loop matters for every Python service.\n\n"
        "## 1. Background\n\n"
        "Python services spend most of their time waiting on the network.\n\n"
        "## 2. Core Concepts\n\n"
        "A coroutine is a function that can pause at an await point.\n\n"
        "```python\nasyncio.run(main())\n```\n\n"
        "## 5. Summary\n\n"
        "Use asyncio when the work is dominated by waiting.\n"
    )


def review_json(score: int, issue: Optional[str] = None, suggestion: Optional[str] = None) -> str:
    """Review JSON whose dimension scores add up to `score`.

    The split keeps every dimension within its maximum for the scores used in
    these tests (50-85).
    """
    accuracy = int(score * 0.4)
    logic = int(score * 0.3)
    originality = int(score * 0.2)
    formatting = score - accuracy - logic - originality
    return json.dumps({
        "overall_score": score,
        "accuracy_score": accuracy,
        "logic_score": logic,
        "originality_score": originality,
        "formatting_score": formatting,
        "issues": [{
            "category": "logic",
            "description": issue or f"issue at score {score}",
            "severity": 2,
        }],
        "suggestions": [suggestion or f"suggestion at score {score}"],
        "summary": f"Scored {score}",
    })


class BackendCall:
    def __init__(self, stage: str, system_prompt: str, user_message: str, temperature: float):
        self.stage = stage
        self.system_prompt = system_prompt
        self.user_message = user_message
        self.temperature = temperature


class ScriptedBackend:
    """ModelBackend that replays scripted replies per stage.

    The stage is the first word of the call label ("research task=...").
    Each stage's replies are consumed in order and the last one repeats.
    A reply that is an exception instance is raised instead of streamed.
    Rewrite calls fall back to the "draft" script when no "rewrite" script
    is given. Stages listed in `hold` wait on an asyncio.Event that tests
    never set, so the call stays in flight until cancelled.
    """

    def __init__(self, script: dict, hold: tuple = (), chunk_size: int = 40):
        self.script = {stage: list(replies) for stage, replies in script.items()}
        self.hold = set(hold)
        self.chunk_size = chunk_size
        self.calls: list[BackendCall] = []
        self.closed = False

    @property
    def model_id(self) -> str:
        return "scripted-model"

    def _next_reply(self, stage: str):
        replies = self.script.get(stage)
        if replies is None and stage == "rewrite":
            replies = self.script.get("draft")
        if not replies:
            raise AssertionError(f"No scripted reply for stage '{stage}'")
        return replies.pop(0) if len(replies) > 1 else replies[0]

    async def stream(self, system_prompt, user_message, *, max_tokens, temperature=0.7, label=""):
        stage = label.split()[0]
        self.calls.append(BackendCall(stage, system_prompt, user_message, temperature))

        if stage in self.hold:
            await asyncio.Event().wait()

        reply = self._next_reply(stage)
        if isinstance(reply, BaseException):
            raise reply
        for i in range(0, len(reply), self.chunk_size):
            yield reply[i:i + self.chunk_size]

    def stages_called(self) -> list[str]:
        return [c.stage for c in self.calls]

    async def aclose(self) -> None:
        self.closed = True


class PerTaskBackend:
    """Routes each call to the ScriptedBackend of the task named in its label."""

    def __init__(self, backends: dict):
        self.backends = backends

    @property
    def model_id(self) -> str:
        return "scripted-model"

    def stream(self, system_prompt, user_message, *, max_tokens, temperature=0.7, label=""):
        task_id = label.split("task=", 1)[1]
        return self.backends[task_id].stream(
            system_prompt, user_message, max_tokens=max_tokens, temperature=temperature, label=label,
        )

    async def aclose(self) -> None:
        for backend in self.backends.values():
            await backend.aclose()


def happy_script(*scores: int) -> dict:
    return {
        "research": [RESEARCH_JSON],
        "draft": [draft_markdown()],
        "review": [review_json(s) for s in scores or (85,)],
    }


async def wait_for_call(backend: ScriptedBackend, stage: str, timeout: float = 5.0) -> None:
    """Wait until the backend has received a call for `stage`."""
    async def _poll():
        while stage not in backend.stages_called():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def open_runner(repository, backend, settings, **kwargs) -> WorkflowRunner:
    """Runner wired to a scripted backend. Call inside the test's event loop."""
    pool = BackendPool(settings.model, factory=lambda model_id: backend)
    await pool.open()
    return WorkflowRunner(repository, pool, settings, **kwargs)


async def collect(runner: WorkflowRunner, task_id: str) -> list:
    return [event async for event in runner.run(task_id)]
