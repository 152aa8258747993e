"""Runtime settings for the blog pipeline.

Settings come from three layers, later ones winning:
1. Field defaults below
2. A YAML file named by BLOG_PIPELINE_CONFIG (optional)
3. BLOG_PIPELINE_<FIELD> environment variables (e.g. BLOG_PIPELINE_PUBLISH_THRESHOLD=85)

List fields (interceptors, tool_endpoints) take comma-separated values in the
environment.
"""

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "BLOG_PIPELINE_"
CONFIG_FILE_ENV = "BLOG_PIPELINE_CONFIG"

KNOWN_INTERCEPTORS = ("pii", "guardrail", "logging")

_LIST_FIELDS = ("interceptors", "tool_endpoints")


class PipelineSettings(BaseModel):
    """Tunable behavior of the pipeline."""

    # Quality gate
    publish_threshold: int = Field(default=80, ge=0, le=100)
    max_rewrite_count: int = Field(default=3, ge=0)

    # Retry
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)

    # Progress cache
    progress_ttl_seconds: float = Field(default=3600, gt=0)

    # Tool capabilities
    capability_timeout_seconds: float = Field(default=15.0, gt=0)
    tool_endpoints: list[str] = Field(default_factory=list)

    # Model
    model: str = "claude-sonnet-4-6"
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.7, ge=0, le=2)

    # Content interceptors, applied in order
    interceptors: list[str] = Field(default_factory=list)

    # Publishing; when off, a passing review waits for a manual publish
    auto_publish: bool = True

    # Storage
    database_path: str = "blog_pipeline.db"

    # Reference material
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    max_fetch_bytes: int = Field(default=2 * 1024 * 1024, gt=0)
    max_file_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    @field_validator("interceptors")
    @classmethod
    def _known_interceptors(cls, names: list[str]) -> list[str]:
        unknown = [n for n in names if n not in KNOWN_INTERCEPTORS]
        if unknown:
            raise ValueError(f"Unknown interceptors {unknown}; available: {list(KNOWN_INTERCEPTORS)}")
        return names

    @classmethod
    def from_yaml(cls, path: Path) -> "PipelineSettings":
        return cls(**_load_yaml(path))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineSettings":
        """Build settings from the YAML file (if any) overlaid with env vars."""
        env = os.environ if environ is None else environ

        data: dict = {}
        config_file = env.get(CONFIG_FILE_ENV)
        if config_file:
            data.update(_load_yaml(Path(config_file)))

        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name in _LIST_FIELDS:
                data[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                data[name] = raw

        return cls(**data)


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Settings file not found: {path}")
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    logger.info(f"Loaded settings from {path}")
    return data
