"""Configuration for training-camp runtimes."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


class LLMRole(str, Enum):
    """Roles for LLM model routing."""
    ACTING = "acting"          # Agent executing attempts
    EVOLVING = "evolving"      # Prompt mutation and planning
    REFLECTING = "reflecting"  # Reward analysis and credit assignment


class RoleModelConfig(BaseModel):
    """Configuration for a single LLM role."""
    model: str = "claude-sonnet-4-20250514"
    api_key: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096


class TrainingCampConfig(BaseModel):
    """Top-level configuration for a training-camp runtime."""
    db_path: Path | None = Field(default=None, description="SQLite file; None resolves under the project root")
    state_dir_name: str = Field(default=".training-camp", description="Directory under the project root holding the database")
    db_file_name: str = Field(default="lineage.db")
    root_markers: list[str] = Field(default_factory=lambda: [".git"], description="Entries that mark the project root")
    manage_gitignore: bool = Field(default=True, description="Keep database files out of version control")
    create_spans: bool = Field(default=True, description="Persist a span for every tool call")
    max_tool_rounds: int = Field(default=5, ge=0, description="Tool-call rounds per attempt")
    insight_context_window: int = Field(default=10, ge=1, description="Contexts kept per learning insight")
    insight_full_confidence_samples: int = Field(default=5, ge=1)
    trajectory_min_spans: int = Field(default=3, ge=1)
    role_models: dict[LLMRole, RoleModelConfig] = Field(default_factory=lambda: {
        LLMRole.ACTING: RoleModelConfig(),
        LLMRole.EVOLVING: RoleModelConfig(),
        LLMRole.REFLECTING: RoleModelConfig(),
    })

    model_config = {"populate_by_name": True}
