"""Model backend factory.

Resolves model IDs to the appropriate backend implementation.
"""

import logging
from typing import Union

from blog_pipeline.llm.backends import AnthropicBackend, OpenAICompatibleBackend

logger = logging.getLogger(__name__)

OPENAI_PREFIXES = ("openai/", "gpt-", "o1", "o3", "o4")


def get_backend(model_id: str) -> Union[AnthropicBackend, OpenAICompatibleBackend]:
    """Get the appropriate backend for a model ID.

    Args:
        model_id: Full model identifier (e.g. 'claude-sonnet-4-6',
                  'gpt-4o', 'openai/deepseek-chat')

    Returns:
        Backend instance for the model

    Raises:
        ValueError: If model_id is not recognized
    """
    if model_id.startswith("claude-"):
        return AnthropicBackend(model_id=model_id)
    elif model_id.startswith(OPENAI_PREFIXES):
        return OpenAICompatibleBackend(model_id=model_id)
    else:
        raise ValueError(
            f"Unknown model: '{model_id}'. "
            f"Expected a model ID starting with 'claude-', 'gpt-', or 'openai/'."
        )
