from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from miorah.config import get_settings


@lru_cache(maxsize=4)
def _engine_for(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions hop between the threadpool and the event loop thread.
        connect_args["check_same_thread"] = False
    # psycopg3 driver uses `postgresql+psycopg://...`
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def get_engine() -> Engine:
    return _engine_for(get_settings().database_url)


def get_sessionmaker() -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    db = get_sessionmaker()()
    try:
        yield db
    finally:
        db.close()
