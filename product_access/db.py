"""
SQLAlchemy engine and session wiring.

Timeouts are applied at the connection level so a slow database surfaces as
an error instead of a hung gate check: pool checkout is bounded by
``pool_timeout`` and, on PostgreSQL, each statement by ``statement_timeout``.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from product_access.config import Settings, get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_db_engine(settings: Optional[Settings] = None, *, url: Optional[str] = None, **kwargs) -> Engine:
    settings = settings or get_settings()
    database_url = url or settings.database_url
    timeout_ms = int(settings.admin_timeout_seconds * 1000)

    engine_kwargs = dict(kwargs)
    if database_url.startswith("postgresql"):
        engine_kwargs.setdefault("pool_timeout", settings.admin_timeout_seconds)
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault(
            "connect_args",
            {
                "connect_timeout": max(1, int(settings.gate_timeout_seconds)),
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
    elif database_url.startswith("sqlite"):
        engine_kwargs.setdefault(
            "connect_args",
            {"check_same_thread": False, "timeout": settings.admin_timeout_seconds},
        )

    logger.info("Creating entitlement database engine", extra={"dialect": database_url.split(":", 1)[0]})
    return create_engine(database_url, **engine_kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create tables when they do not exist (local development and tests)."""
    from product_access.store import tables  # noqa: F401  registers models on Base

    Base.metadata.create_all(engine)
