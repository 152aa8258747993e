"""Helpers for turning raw LLM text into structured data.

Models often wrap JSON in ```json fences or surround it with prose
("Here is the review: {...} Let me know..."). extract_json_object() strips
fences first and then falls back to the outermost brace pair.
"""

import json
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _strip_fences(text: str) -> str:
    content = text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    return content.strip()


def outermost_braces(text: str) -> Optional[str]:
    """Return the substring from the first '{' to the last '}', if any."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start:end + 1]


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Parse a JSON object out of an LLM response.

    Args:
        raw_text: Raw text from the model

    Returns:
        Parsed dict

    Raises:
        ValueError: If no JSON object can be recovered (json.JSONDecodeError
            is a ValueError subclass)
    """
    if not raw_text or not raw_text.strip():
        raise ValueError("Empty response")

    content = _strip_fences(raw_text)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        candidate = outermost_braces(content)
        if candidate is None:
            raise ValueError("No JSON object found in response")
        parsed = json.loads(candidate)

    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
