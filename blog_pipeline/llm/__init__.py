"""Shared LLM utilities.

Streaming model backends (Anthropic, OpenAI-compatible), a pool that owns
them for the life of the process, tool capability discovery, and JSON
extraction helpers used by the stage executors.
"""

from blog_pipeline.llm.client import extract_json_object, outermost_braces
from blog_pipeline.llm.backends import (
    ModelBackend,
    AnthropicBackend,
    OpenAICompatibleBackend,
)
from blog_pipeline.llm.factory import get_backend
from blog_pipeline.llm.pool import BackendPool

__all__ = [
    "extract_json_object",
    "outermost_braces",
    "ModelBackend",
    "AnthropicBackend",
    "OpenAICompatibleBackend",
    "get_backend",
    "BackendPool",
]
