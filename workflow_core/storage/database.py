"""Database connection and session management."""

from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine; in-memory SQLite engines share one connection across threads."""
    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create all database tables."""
    # Importing registers the models on Base.metadata.
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=engine)
