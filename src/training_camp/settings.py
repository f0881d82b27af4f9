"""Runtime configuration via environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

from training_camp.config import LLMRole, RoleModelConfig, TrainingCampConfig


class Settings(BaseSettings):
    # Storage
    db_path: Path | None = None
    state_dir_name: str = ".training-camp"
    db_file_name: str = "lineage.db"
    manage_gitignore: bool = True
    create_spans: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Execution
    max_tool_rounds: int = 5

    # LLM
    llm_api_key: str | None = None
    llm_acting_model: str = "claude-sonnet-4-20250514"
    llm_evolving_model: str = "claude-sonnet-4-20250514"
    llm_reflecting_model: str = "claude-sonnet-4-20250514"

    model_config = {
        "env_prefix": "TRAINING_CAMP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def to_config(self) -> TrainingCampConfig:
        return TrainingCampConfig(
            db_path=self.db_path,
            state_dir_name=self.state_dir_name,
            db_file_name=self.db_file_name,
            manage_gitignore=self.manage_gitignore,
            create_spans=self.create_spans,
            max_tool_rounds=self.max_tool_rounds,
            role_models={
                LLMRole.ACTING: RoleModelConfig(model=self.llm_acting_model, api_key=self.llm_api_key),
                LLMRole.EVOLVING: RoleModelConfig(model=self.llm_evolving_model, api_key=self.llm_api_key),
                LLMRole.REFLECTING: RoleModelConfig(model=self.llm_reflecting_model, api_key=self.llm_api_key),
            },
        )
