from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url

from .config import Settings, get_settings


logger = logging.getLogger(__name__)


def get_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    url = make_url(settings.database_url)

    # Log connection parameters without the password.
    logger.info(
        "[DB] Create engine driver=%s host=%s port=%s db=%s user=%s",
        url.drivername,
        url.host,
        url.port,
        url.database,
        url.username,
    )

    engine = create_engine(url, pool_pre_ping=True, pool_recycle=300, future=True)

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Connection test OK")
    except Exception:
        logger.exception("[DB] Connection test FAILED")

    return engine


def ping(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("[DB] Ping failed")
        return False
