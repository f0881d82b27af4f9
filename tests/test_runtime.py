"""Tests for configuration, persistence paths and runtime wiring."""

from pathlib import Path

import aiosqlite
import pytest
import structlog

from _helpers import StubGenerator

from training_camp.config import LLMRole, TrainingCampConfig
from training_camp.log import configure_logging
from training_camp.persistence.db import DatabaseManager
from training_camp.persistence.migrations import SCHEMA_VERSION
from training_camp.persistence.paths import ignore_database_files, project_root, resolve_db_path
from training_camp.runtime import build_runtime
from training_camp.settings import Settings


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRAINING_CAMP_MAX_TOOL_ROUNDS", "2")
    monkeypatch.setenv("TRAINING_CAMP_CREATE_SPANS", "false")
    monkeypatch.setenv("TRAINING_CAMP_LLM_EVOLVING_MODEL", "gpt-4o")
    monkeypatch.setenv("TRAINING_CAMP_LLM_API_KEY", "sk-test")

    config = Settings().to_config()

    assert config.max_tool_rounds == 2
    assert config.create_spans is False
    assert config.role_models[LLMRole.EVOLVING].model == "gpt-4o"
    assert config.role_models[LLMRole.ACTING].api_key == "sk-test"


def test_config_defaults():
    config = TrainingCampConfig()
    assert config.db_path is None
    assert config.max_tool_rounds == 5
    assert set(config.role_models) == set(LLMRole)


def test_configure_logging_console():
    configure_logging("DEBUG", "console")
    structlog.get_logger("test").debug("logging_configured")
    structlog.reset_defaults()


def test_project_root_walks_up_to_marker(tmp_path: Path):
    (tmp_path / ".git").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert project_root([".git"], nested) == tmp_path.resolve()
    assert project_root(["no-such-marker.cfg"], nested) == nested.resolve()


def test_resolve_db_path_follows_config(tmp_path: Path):
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    config = TrainingCampConfig(
        state_dir_name=".camp", db_file_name="runs.db", root_markers=["pyproject.toml"]
    )
    assert resolve_db_path(config, tmp_path / "src") == tmp_path.resolve() / ".camp" / "runs.db"

    explicit = TrainingCampConfig(db_path=tmp_path / "elsewhere.db")
    assert resolve_db_path(explicit, tmp_path) == tmp_path / "elsewhere.db"


def test_ignore_database_files_is_additive(tmp_path: Path):
    (tmp_path / ".gitignore").write_text("keep-me\nruns.db\n", encoding="utf-8")
    assert ignore_database_files(tmp_path / "runs.db") == ["runs.db-wal", "runs.db-shm"]
    assert ignore_database_files(tmp_path / "runs.db") == []
    assert (tmp_path / ".gitignore").read_text(encoding="utf-8").splitlines() == [
        "keep-me", "runs.db", "runs.db-wal", "runs.db-shm",
    ]


@pytest.mark.asyncio
async def test_database_can_leave_gitignore_alone(tmp_path: Path):
    db = DatabaseManager(tmp_path / "plain.db", manage_gitignore=False)
    await db.initialize()
    await db.close()
    assert not (tmp_path / ".gitignore").exists()


@pytest.mark.asyncio
async def test_database_initializes_schema(db: DatabaseManager):
    rows = await db.execute("SELECT MAX(version) AS v FROM schema_version")
    assert rows[0]["v"] == SCHEMA_VERSION
    assert (db.path.parent / ".gitignore").exists()


@pytest.mark.asyncio
async def test_version_one_database_backfills_max_version(tmp_path: Path):
    path = tmp_path / "old.db"
    async with aiosqlite.connect(path) as conn:
        await conn.executescript(
            """
            CREATE TABLE schema_version (version INTEGER PRIMARY KEY, applied_at TEXT);
            INSERT INTO schema_version (version) VALUES (1);
            CREATE TABLE sessions (
                id TEXT PRIMARY KEY, name TEXT NOT NULL, need TEXT NOT NULL,
                constraints TEXT, input_prompt TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL
            );
            CREATE TABLE lineages (
                id TEXT PRIMARY KEY, session_id TEXT NOT NULL, label TEXT NOT NULL, strategy_tag TEXT,
                is_locked INTEGER NOT NULL DEFAULT 0, directive_sticky TEXT, directive_oneshot TEXT,
                created_at TEXT NOT NULL
            );
            CREATE TABLE agents (id TEXT PRIMARY KEY, lineage_id TEXT NOT NULL, version INTEGER NOT NULL);
            INSERT INTO lineages (id, session_id, label, created_at) VALUES ('l1', 's1', 'A', '2026-01-01');
            INSERT INTO agents VALUES ('a1', 'l1', 1), ('a3', 'l1', 3);
            """
        )
        await conn.commit()

    db = DatabaseManager(path)
    await db.initialize()
    try:
        rows = await db.execute("SELECT max_version FROM lineages WHERE id = 'l1'")
        assert rows[0]["max_version"] == 3
        versions = await db.execute("SELECT MAX(version) AS v FROM schema_version")
        assert versions[0]["v"] == SCHEMA_VERSION
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_build_runtime_wires_services(tmp_path: Path):
    runtime = await build_runtime(
        TrainingCampConfig(db_path=tmp_path / "camp.db"),
        generator=StubGenerator(["First draft."]),
    )
    try:
        assert runtime.registry.names() == ["calculate", "format_markdown", "summarize"]
        assert runtime.db.path == tmp_path / "camp.db"

        from _helpers import seed_lineage

        _, lineage, agent = await seed_lineage(runtime.store)
        run = await runtime.runner.run(lineage.id, agent, "Summarize this paper")
        assert run.succeeded

        result = await runtime.engine.evolve_lineage(lineage.id, run.rollout.id, 7)
        assert (await runtime.store.get_latest_agent(lineage.id)).id == result.agent.id
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_runtime_from_settings(tmp_path: Path):
    from training_camp.runtime import runtime_from_settings

    settings = Settings(db_path=tmp_path / "settings.db", log_format="console", llm_api_key="sk-test")
    runtime = await runtime_from_settings(settings)
    try:
        assert runtime.db.path == tmp_path / "settings.db"
        assert runtime.generator.is_configured()
    finally:
        await runtime.close()
        structlog.reset_defaults()
