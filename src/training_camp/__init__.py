"""Training Camp - tool dispatch, execution lineage and feedback-driven agent evolution."""

__all__ = ["EvolutionEngine", "ToolExecutor", "ToolRegistry", "TrainingCampConfig", "build_runtime"]
__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy imports so importing the package does not load litellm or aiosqlite."""
    if name == "TrainingCampConfig":
        from training_camp.config import TrainingCampConfig

        return TrainingCampConfig
    if name == "ToolRegistry":
        from training_camp.tools.registry import ToolRegistry

        return ToolRegistry
    if name == "ToolExecutor":
        from training_camp.tools.executor import ToolExecutor

        return ToolExecutor
    if name == "EvolutionEngine":
        from training_camp.evolution.engine import EvolutionEngine

        return EvolutionEngine
    if name == "build_runtime":
        from training_camp.runtime import build_runtime

        return build_runtime
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
