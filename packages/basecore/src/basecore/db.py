"""
Database access for basecore.

The engine and session factory are built on first use from DATABASE_URL,
so importing this module never opens a connection.
"""

import functools

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from basecore.settings import get_settings


@functools.lru_cache()
def get_engine() -> Engine:
    """Shared engine for the configured database (pings stale connections)."""
    return create_engine(get_settings().DATABASE_URL, pool_pre_ping=True)


@functools.lru_cache()
def get_sessionmaker() -> sessionmaker[Session]:
    """
    Shared session factory.

    Rows stay readable after commit, so callers can use what they loaded
    once a short `with factory() as db:` block has finished.
    """
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
