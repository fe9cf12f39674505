from __future__ import annotations

import logging
import os

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine

logger = logging.getLogger("itam.db")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://itam:itam@db:5432/itam_platform",
)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def get_engine() -> Engine:
    return engine


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.exception("database readiness check failed")
        return False
