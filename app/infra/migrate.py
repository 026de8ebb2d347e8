from __future__ import annotations

import logging
import os

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL
from app.infra.log_config import configure_logging

logger = logging.getLogger(__name__)

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")


def build_alembic_config(database_url: str | None = None) -> Config:
    config = Config(ALEMBIC_CONFIG)
    config.set_main_option("sqlalchemy.url", database_url or DATABASE_URL)
    config.attributes["configure_logger"] = False
    config.attributes["database_url_override"] = database_url is not None
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    configure_logging()
    logger.info("upgrading database schema to head")
    command.upgrade(build_alembic_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
