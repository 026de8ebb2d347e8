from __future__ import annotations

import logging
import os
from collections.abc import Generator

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://mfg:mfg@db:5432/mfg_observations",
)
DB_AUTO_CREATE = os.getenv("DB_AUTO_CREATE", "false").lower() in {"1", "true", "yes"}

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def get_engine() -> Engine:
    return engine


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session


def init_db() -> None:
    from app.domain import models  # noqa: F401

    if DB_AUTO_CREATE:
        logger.info("creating database schema")
        SQLModel.metadata.create_all(get_engine())


def dispose_engine() -> None:
    get_engine().dispose()


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.warning("database readiness check failed", exc_info=True)
        return False
