"""Composition root: wires storage, tools, generation and evolution together.

Provides one entry point for embedding applications. One registry, one
store and one generator are built here and passed by handle to everything
that needs them.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from training_camp.config import TrainingCampConfig
from training_camp.evolution.engine import EvolutionEngine
from training_camp.execution.runner import AttemptRunner
from training_camp.export import TrainingExporter
from training_camp.insights.aggregator import LearningInsightAggregator
from training_camp.lineage.store.base import LineageStore
from training_camp.lineage.store.sqlite import SQLiteLineageStore
from training_camp.llm.generator import TextGenerator
from training_camp.llm.router import LLMRouter
from training_camp.log import configure_logging
from training_camp.persistence.db import DatabaseManager
from training_camp.persistence.paths import resolve_db_path
from training_camp.settings import Settings
from training_camp.tools.builtin import register_builtin_tools
from training_camp.tools.executor import ToolExecutor
from training_camp.tools.registry import ToolRegistry

logger = structlog.get_logger()


@dataclass
class Runtime:
    config: TrainingCampConfig
    db: DatabaseManager
    store: LineageStore
    registry: ToolRegistry
    executor: ToolExecutor
    generator: TextGenerator
    insights: LearningInsightAggregator
    engine: EvolutionEngine
    runner: AttemptRunner
    exporter: TrainingExporter

    async def close(self) -> None:
        await self.db.close()


async def build_runtime(
    config: TrainingCampConfig | None = None,
    generator: TextGenerator | None = None,
) -> Runtime:
    """Open the database and build every service over it.

    ``generator`` defaults to an :class:`LLMRouter` over ``config``.
    """
    config = config or TrainingCampConfig()
    db = DatabaseManager(resolve_db_path(config), manage_gitignore=config.manage_gitignore)
    await db.initialize()

    if generator is None:
        generator = LLMRouter(config)

    store = SQLiteLineageStore(db)
    registry = ToolRegistry()
    register_builtin_tools(registry, generator)
    executor = ToolExecutor(registry, store)
    insights = LearningInsightAggregator(
        store,
        context_window=config.insight_context_window,
        full_confidence_samples=config.insight_full_confidence_samples,
    )
    engine = EvolutionEngine(store, generator, config, insights)
    runner = AttemptRunner(store, executor, generator, config)

    logger.info(
        "runtime_ready",
        db_path=str(db.path),
        tools=registry.names(),
        generation_configured=generator.is_configured(),
    )
    return Runtime(
        config=config,
        db=db,
        store=store,
        registry=registry,
        executor=executor,
        generator=generator,
        insights=insights,
        engine=engine,
        runner=runner,
        exporter=TrainingExporter(store),
    )


async def runtime_from_settings(settings: Settings | None = None) -> Runtime:
    """Configure logging from ``TRAINING_CAMP_*`` settings and build the runtime."""
    settings = settings or Settings()
    configure_logging(settings.log_level, settings.log_format)
    return await build_runtime(settings.to_config())
