"""Database engine and session factory."""

from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from sdr_agent.models import Base

logger = logging.getLogger(__name__)


def create_db_engine(url: str) -> Engine:
    """Create an engine with pre-ping so idle connections are recycled."""
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # The worker runs the processor in a thread pool.
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_recycle"] = 300
    engine = create_engine(url, **kwargs)
    logger.info("Database engine created (%s)", engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables.  Existing tables are left untouched."""
    Base.metadata.create_all(engine)
