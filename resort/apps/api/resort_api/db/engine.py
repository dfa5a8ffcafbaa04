"""Database engine builder (SSOT).

- Default: NullPool (client-side pooling disabled; Supabase pooler does it)
- ENV: RESORT_DB_POOL=nullpool|queuepool (default: nullpool)
- ENV: RESORT_DB_APPLICATION_NAME tags Postgres connections
- SQLite URLs (tests, local tooling) skip Postgres-only connect args
"""

import logging
import os
import re
from typing import Any

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: str | None = None) -> Engine:
    """Build the SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If no URL is available or RESORT_DB_POOL is invalid.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args: dict[str, Any] = {}
    if _is_sqlite(url):
        connect_args["check_same_thread"] = False
    else:
        app_name = os.getenv("RESORT_DB_APPLICATION_NAME", "resort-payments-api")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("RESORT_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        pool_size = int(os.getenv("RESORT_DB_POOL_SIZE", "5"))
        max_overflow = int(os.getenv("RESORT_DB_MAX_OVERFLOW", "10"))
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=pool_size,
            max_overflow=max_overflow,
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid RESORT_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build SQLAlchemy sessionmaker (autocommit=False, autoflush=False)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
