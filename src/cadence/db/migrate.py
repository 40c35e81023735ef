"""Programmatic Alembic migration runner.

Works both in development and when installed as a package.
"""

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

from cadence.config import Settings

logger = logging.getLogger(__name__)

INITIAL_REVISION = "0001_initial"


def get_alembic_config(database_url: str | None = None) -> Config:
    migrations_dir = str(Path(__file__).parent / "migrations")
    cfg = Config()
    cfg.set_main_option("script_location", migrations_dir)
    cfg.set_main_option("sqlalchemy.url", database_url or Settings().database_url)
    return cfg


def upgrade(revision: str = "head", database_url: str | None = None) -> None:
    cfg = get_alembic_config(database_url)
    try:
        command.upgrade(cfg, revision)
    except Exception as e:
        if "already exists" in str(e):
            # Tables were created by create_all at app startup before Alembic
            # tracked this database. Stamp the initial revision and retry.
            logger.warning(
                "Tables already exist without alembic_version tracking. "
                "Stamping initial revision %s and retrying.",
                INITIAL_REVISION,
            )
            command.stamp(cfg, INITIAL_REVISION)
            command.upgrade(cfg, revision)
        else:
            raise


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    upgrade()
