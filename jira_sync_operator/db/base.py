"""Database configuration for the SQL-backed resource store."""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


DEFAULT_DATABASE_URL = "sqlite:///./jira_sync_operator.db"


# async drivers a URL may name, and the sync driver the ORM engine uses instead
_SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "postgresql+aiopg": "postgresql+psycopg",
    "postgresql+psycopg_async": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def _sync_driver(url: URL) -> URL:
    replacement = _SYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=replacement) if replacement else url


def get_database_url(raw_url: Optional[str] = None) -> str:
    """Normalize a resource store URL to one SQLAlchemy can open synchronously."""
    url = make_url(raw_url or DEFAULT_DATABASE_URL)
    # str(url) masks the password
    return _sync_driver(url).render_as_string(hide_password=False)


def create_db_engine(raw_url: Optional[str] = None) -> Engine:
    """Engine for the resource store. SQLite shares one connection across threads."""
    database_url = get_database_url(raw_url)

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def get_session_factory(engine: Engine) -> sessionmaker:
    """Sessions keep loaded rows usable after commit; the store converts them to models afterwards."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_database(engine: Engine) -> None:
    """Create the sync tables if they do not exist yet."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
