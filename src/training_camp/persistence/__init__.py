"""Persistence layer for training-camp: SQLite-backed durable storage."""

from __future__ import annotations

from training_camp.persistence.db import DatabaseManager
from training_camp.persistence.migrations import run_migrations
from training_camp.persistence.paths import ignore_database_files, project_root, resolve_db_path

__all__ = [
    "DatabaseManager",
    "ignore_database_files",
    "project_root",
    "resolve_db_path",
    "run_migrations",
]
