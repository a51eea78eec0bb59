import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session
from sqlalchemy.types import TypeDecorator


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on", "t")


def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        return default


DB_URL = _env_or("AGENDA_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/agenda.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None
EXPANSION_HORIZON_DAYS = _env_int("AGENDA_EXPANSION_HORIZON_DAYS", 90)
MAX_PAGE_SIZE = _env_int("AGENDA_MAX_PAGE_SIZE", 100)
# furthest day ahead that reads may expand configs to, and widest search span
MAX_LOOKAHEAD_DAYS = _env_int("AGENDA_MAX_LOOKAHEAD_DAYS", 366)


def _table_args(*args) -> tuple:
    return (*args, {"schema": DB_SCHEMA}) if DB_SCHEMA else (*args, {})


def fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


class UTCDateTime(TypeDecorator):
    """
    Timestamps go in and come out as aware UTC datetimes.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns, so values are
    stored naive in UTC and re-tagged on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


def make_engine(url: str = DB_URL, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    eng = create_engine(url, future=True, **kwargs)
    if url.startswith("sqlite"):
        event.listen(eng, "connect", _sqlite_foreign_keys)
    return eng


def _sqlite_foreign_keys(dbapi_connection, connection_record):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()


engine = make_engine()


def get_session() -> Session:
    with Session(engine) as s:
        yield s


def ping_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def atomic(s: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
