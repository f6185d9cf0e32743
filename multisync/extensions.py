"""
SQLAlchemy setup shared by the persisted-state models
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_session_factory(database_url: str):
    """Create the engine, ensure tables exist and return a session factory.

    In-memory SQLite is shared across threads through a single static
    connection; sync tasks persist cursors from their own threads.
    """
    if database_url.startswith('sqlite') and ':memory:' in database_url:
        engine = create_engine(
            database_url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    elif database_url.startswith('sqlite'):
        engine = create_engine(database_url, connect_args={'check_same_thread': False})
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    # Import models so they register with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
