import os
from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

DB_URL = os.getenv("DB_URL", "sqlite:///./data/alerts.db")


def make_engine(url: str = DB_URL) -> Engine:
    """Engine usable from the worker threads the engine runs store calls on."""
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every thread sees its own empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, future=True, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None):
    """Create all tables (no-op for existing ones)."""
    bind = bind or engine
    if bind.url.get_backend_name() == "sqlite" and bind.url.database not in (None, "", ":memory:"):
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind)
    logger.info(f"Database ready: {bind.url.render_as_string(hide_password=True)}")
