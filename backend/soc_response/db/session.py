# backend/soc_response/db/session.py

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from soc_response.core.config import settings


def build_engine(url: str | None = None) -> Engine:
    """
    Create the SQLAlchemy engine for `url` (defaults to settings.DATABASE_URL).

    In-memory sqlite (used by tests) needs a single shared connection,
    otherwise every session would see its own empty database.
    """
    url = url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )
