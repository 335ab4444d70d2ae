"""Turn configuration."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

DEFAULT_TRUNCATION_NOTICE = (
    "[Stopped: the tool-call limit for this turn was reached before a "
    "final answer was produced.]"
)


class TurnConfig(BaseModel):
    """Knobs for one orchestrated turn.

    Example:
        config = TurnConfig(max_iterations=4, tool_timeout=10.0)
    """

    model_config = {"frozen": True}

    max_iterations: int = Field(default=10, ge=0)
    max_parallel_tools: int = Field(default=5, ge=1)
    tool_timeout: float | None = Field(default=30.0, gt=0)
    tool_retries: int = Field(default=0, ge=0)
    truncation_notice: str = DEFAULT_TRUNCATION_NOTICE
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_env(cls, prefix: str = "PALAVER_", **overrides) -> TurnConfig:
        """Read ``PALAVER_MAX_ITERATIONS``, ``PALAVER_MAX_PARALLEL_TOOLS``,
        ``PALAVER_TOOL_TIMEOUT``, ``PALAVER_TOOL_RETRIES`` and
        ``PALAVER_SYSTEM_PROMPT``; explicit *overrides* win."""
        values: dict = {}
        for field_name in (
            "max_iterations", "max_parallel_tools", "tool_timeout", "tool_retries",
            "system_prompt", "temperature", "max_tokens",
        ):
            raw = os.getenv(f"{prefix}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update(overrides)
        return cls.model_validate(values)
