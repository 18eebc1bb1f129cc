from typing import Any, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_sqlite_memory(url: str) -> bool:
    return _is_sqlite(url) and (url.endswith(":memory:") or url.endswith("://"))


def build_engine(url: str, *, poolclass: Optional[type] = None) -> Engine:
    """Engine for the ledger store at ``url``.

    In-memory SQLite shares one connection so every session sees the same
    database. File-backed SQLite gets WAL and enforced foreign keys.
    """
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False}
    if _is_sqlite_memory(url):
        kwargs["poolclass"] = StaticPool
    elif poolclass is not None:
        kwargs["poolclass"] = poolclass

    eng = create_engine(url, **kwargs)
    if _is_sqlite(url) and not _is_sqlite_memory(url):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(get_settings().database_url)
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass
