"""Runtime settings for the CV optimizer, read from the environment."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field


class Settings(BaseModel):
    """Environment-driven configuration.

    ``OPENAI_API_KEY`` is not modelled here; ``langchain-openai`` reads it
    directly when the first chat model is created.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_name: str = "gpt-4o-mini"
    optimizer_model_name: str = "gpt-4o"
    generation_timeout: float = Field(default=60.0, gt=0)
    position_skip_threshold: int = Field(default=2, ge=1, le=5)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            model_name=os.getenv("LLM_MODEL_NAME", "gpt-4o-mini"),
            optimizer_model_name=os.getenv("LLM_OPTIMIZER_MODEL_NAME", "gpt-4o"),
            generation_timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
            position_skip_threshold=int(os.getenv("POSITION_SKIP_THRESHOLD", "2")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, built once from the environment."""

    return Settings.from_env()
