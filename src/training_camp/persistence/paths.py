"""Where a training-camp database lives on disk.

An explicit ``db_path`` is used as given. Otherwise the database goes in a
state directory under the project root, the nearest ancestor of the working
directory holding one of the configured root markers.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import structlog

from training_camp.config import TrainingCampConfig

log = structlog.get_logger(__name__)


def project_root(markers: Sequence[str], start: Path | None = None) -> Path:
    """Nearest ancestor of ``start`` (inclusive) containing any of ``markers``.

    Falls back to ``start`` itself, so a checkout without markers still gets
    a state directory beside the caller.
    """
    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if any((candidate / marker).exists() for marker in markers):
            return candidate
    log.debug("project_root_not_found", start=str(start), markers=list(markers))
    return start


def resolve_db_path(config: TrainingCampConfig, start: Path | None = None) -> Path:
    if config.db_path is not None:
        return Path(config.db_path)
    root = project_root(config.root_markers, start)
    return root / config.state_dir_name / config.db_file_name


def ignore_database_files(db_path: Path) -> list[str]:
    """Add the database file and its WAL side files to the sibling ``.gitignore``.

    Existing lines are kept; returns the entries that were appended.
    """
    name = db_path.name
    wanted = [name, f"{name}-wal", f"{name}-shm"]
    gitignore = db_path.parent / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []

    missing = [entry for entry in wanted if entry not in lines]
    if missing:
        gitignore.write_text("\n".join(lines + missing) + "\n", encoding="utf-8")
        log.info("gitignore_updated", path=str(gitignore), added=missing)
    return missing
