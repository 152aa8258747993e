"""Execution engine for the blog pipeline.

Takes a BlogTask and drives it through research, draft and review, rewriting
until the draft passes the quality gate or the rewrite budget runs out.

Architecture (bottom-up):
- schemas / errors / events: data model, error taxonomy, run events
- artifact_store: per-task shared state between stages
- progress_cache: TTL cache of progress snapshots for polling
- retry: bounded exponential backoff on transient failures
- interceptors: PII, guardrail and logging filters around each call
- stage_runner: one streamed LLM call per stage, parsed into an artifact
- graph: static stage graph, quality gate, task status transitions
- repository: SQLite persistence for tasks, artifacts and invocations
- workflow_runner: top-level traversal, cancellation, event stream
"""
