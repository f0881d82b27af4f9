"""Schema migrations for the training-camp SQLite database."""

from __future__ import annotations

import structlog

log = structlog.get_logger(__name__)

SCHEMA_VERSION = 2

_DDL_STATEMENTS = [
    # Schema version tracking
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version     INTEGER PRIMARY KEY,
        applied_at  TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    # Sessions
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id              TEXT PRIMARY KEY,
        name            TEXT NOT NULL,
        need            TEXT NOT NULL,
        constraints     TEXT,
        input_prompt    TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    # Lineages: parallel agent tracks, one per label per session
    """
    CREATE TABLE IF NOT EXISTS lineages (
        id                  TEXT PRIMARY KEY,
        session_id          TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        label               TEXT NOT NULL,
        strategy_tag        TEXT,
        is_locked           INTEGER NOT NULL DEFAULT 0,
        directive_sticky    TEXT,
        directive_oneshot   TEXT,
        max_version         INTEGER NOT NULL DEFAULT 0,
        created_at          TEXT NOT NULL,
        UNIQUE(session_id, label)
    )
    """,
    # Agent definition versions
    """
    CREATE TABLE IF NOT EXISTS agents (
        id              TEXT PRIMARY KEY,
        lineage_id      TEXT NOT NULL REFERENCES lineages(id) ON DELETE CASCADE,
        version         INTEGER NOT NULL,
        name            TEXT NOT NULL,
        description     TEXT NOT NULL DEFAULT '',
        system_prompt   TEXT NOT NULL,
        tools           TEXT NOT NULL DEFAULT '[]',
        flow            TEXT NOT NULL DEFAULT '[]',
        memory          TEXT NOT NULL DEFAULT '{}',
        parameters      TEXT NOT NULL DEFAULT '{}',
        constraints     TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL,
        UNIQUE(lineage_id, version)
    )
    """,
    # Rollouts: one evaluation cycle per lineage
    """
    CREATE TABLE IF NOT EXISTS rollouts (
        id                  TEXT PRIMARY KEY,
        lineage_id          TEXT NOT NULL REFERENCES lineages(id) ON DELETE CASCADE,
        cycle               INTEGER NOT NULL,
        status              TEXT NOT NULL DEFAULT 'pending',
        final_attempt_id    TEXT,
        created_at          TEXT NOT NULL,
        completed_at        TEXT
    )
    """,
    # Attempts: agent identity is snapshotted as id/version plus content hashes
    """
    CREATE TABLE IF NOT EXISTS attempts (
        id                  TEXT PRIMARY KEY,
        rollout_id          TEXT NOT NULL REFERENCES rollouts(id) ON DELETE CASCADE,
        attempt_number      INTEGER NOT NULL DEFAULT 1,
        status              TEXT NOT NULL DEFAULT 'running',
        agent_id            TEXT NOT NULL,
        agent_version       INTEGER NOT NULL,
        system_prompt_hash  TEXT NOT NULL,
        tools_hash          TEXT NOT NULL,
        flow_hash           TEXT NOT NULL,
        input               TEXT NOT NULL DEFAULT '',
        model_id            TEXT NOT NULL DEFAULT '',
        parameters          TEXT NOT NULL DEFAULT '{}',
        output              TEXT,
        error               TEXT,
        duration_ms         REAL NOT NULL DEFAULT 0,
        total_tokens        INTEGER,
        prompt_tokens       INTEGER,
        completion_tokens   INTEGER,
        estimated_cost      REAL,
        created_at          TEXT NOT NULL
    )
    """,
    # Execution spans
    """
    CREATE TABLE IF NOT EXISTS spans (
        id                  TEXT PRIMARY KEY,
        attempt_id          TEXT NOT NULL REFERENCES attempts(id) ON DELETE CASCADE,
        parent_span_id      TEXT,
        sequence            INTEGER NOT NULL,
        type                TEXT NOT NULL,
        input               TEXT NOT NULL DEFAULT '',
        output              TEXT NOT NULL DEFAULT '',
        model_id            TEXT,
        prompt_tokens       INTEGER,
        completion_tokens   INTEGER,
        tool_name           TEXT,
        tool_args           TEXT,
        tool_result         TEXT,
        tool_error          TEXT,
        duration_ms         REAL NOT NULL DEFAULT 0,
        estimated_cost      REAL,
        created_at          TEXT NOT NULL,
        UNIQUE(attempt_id, sequence)
    )
    """,
    # User evaluations
    """
    CREATE TABLE IF NOT EXISTS evaluations (
        id          TEXT PRIMARY KEY,
        rollout_id  TEXT NOT NULL REFERENCES rollouts(id) ON DELETE CASCADE,
        attempt_id  TEXT,
        score       INTEGER NOT NULL CHECK (score BETWEEN 1 AND 10),
        comment     TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    # Evolution records; outcome columns are written once
    """
    CREATE TABLE IF NOT EXISTS evolution_records (
        id                      TEXT PRIMARY KEY,
        lineage_id              TEXT NOT NULL REFERENCES lineages(id) ON DELETE CASCADE,
        from_version            INTEGER NOT NULL,
        to_version              INTEGER NOT NULL,
        rollout_id              TEXT NOT NULL,
        attempt_id              TEXT,
        trigger_score           INTEGER NOT NULL,
        trigger_comment         TEXT,
        directive_sticky        TEXT,
        directive_oneshot       TEXT,
        score_analysis          TEXT NOT NULL,
        credit_assignment       TEXT NOT NULL DEFAULT '[]',
        plan                    TEXT NOT NULL,
        changes                 TEXT NOT NULL DEFAULT '[]',
        next_score              INTEGER,
        score_delta             INTEGER,
        hypothesis_validated    INTEGER,
        created_at              TEXT NOT NULL
    )
    """,
    # Learning insights
    """
    CREATE TABLE IF NOT EXISTS learning_insights (
        id                  TEXT PRIMARY KEY,
        session_id          TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        pattern             TEXT NOT NULL,
        pattern_type        TEXT NOT NULL,
        contexts            TEXT NOT NULL DEFAULT '[]',
        success_count       INTEGER NOT NULL DEFAULT 0,
        failure_count       INTEGER NOT NULL DEFAULT 0,
        avg_score_impact    REAL NOT NULL DEFAULT 0.0,
        confidence          REAL NOT NULL DEFAULT 0.0,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL,
        UNIQUE(session_id, pattern)
    )
    """,
    # Append-only audit trail, never reconciled against primary tables
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id          TEXT PRIMARY KEY,
        event_type  TEXT NOT NULL,
        entity_type TEXT,
        entity_id   TEXT,
        data        TEXT,
        created_at  TEXT NOT NULL
    )
    """,
    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_lineages_session      ON lineages(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_agents_lineage        ON agents(lineage_id, version)",
    "CREATE INDEX IF NOT EXISTS idx_rollouts_lineage      ON rollouts(lineage_id, cycle)",
    "CREATE INDEX IF NOT EXISTS idx_attempts_rollout      ON attempts(rollout_id)",
    "CREATE INDEX IF NOT EXISTS idx_spans_attempt         ON spans(attempt_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_rollout   ON evaluations(rollout_id)",
    "CREATE INDEX IF NOT EXISTS idx_evolution_lineage     ON evolution_records(lineage_id)",
    "CREATE INDEX IF NOT EXISTS idx_insights_session      ON learning_insights(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_entity          ON audit_log(entity_type, entity_id)",
]

# Upgrades keyed by the version they bring a database to
_UPGRADES: dict[int, list[str]] = {
    2: [
        "ALTER TABLE lineages ADD COLUMN max_version INTEGER NOT NULL DEFAULT 0",
        """
        UPDATE lineages SET max_version = COALESCE(
            (SELECT MAX(version) FROM agents WHERE agents.lineage_id = lineages.id), 0
        )
        """,
    ],
}


async def run_migrations(db: object) -> None:  # db: DatabaseManager (avoid circular import)
    """Create tables and indexes, then record the schema version."""
    from training_camp.persistence.db import DatabaseManager

    assert isinstance(db, DatabaseManager)

    for statement in _DDL_STATEMENTS:
        await db.execute_write(statement.strip())

    rows = await db.execute("SELECT MAX(version) AS v FROM schema_version")
    current_version = rows[0]["v"] if rows and rows[0]["v"] is not None else 0

    if current_version < SCHEMA_VERSION:
        # fresh databases already have the latest tables from the DDL above
        if current_version > 0:
            for version in range(current_version + 1, SCHEMA_VERSION + 1):
                for statement in _UPGRADES.get(version, []):
                    await db.execute_write(statement.strip())
        await db.execute_write(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        log.info("migration_applied", version=SCHEMA_VERSION)
    else:
        log.debug("schema_already_current", version=SCHEMA_VERSION)
