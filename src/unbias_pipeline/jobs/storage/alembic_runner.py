"""Programmatic Alembic upgrades for the job store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

# src/unbias_pipeline/jobs/storage -> checkout root holding alembic.ini
PROJECT_ROOT = Path(__file__).resolve().parents[4]


def job_store_alembic_config(db_path: Path) -> Config:
    """Alembic config pointed at the ``alembic/`` scripts and ``db_path``."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create the store's directory if needed and migrate it to the latest revision."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Migrating job store %s to head", db_path)
    command.upgrade(job_store_alembic_config(db_path), "head")
