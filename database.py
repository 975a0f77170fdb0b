from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


def build_engine(database_url: Optional[str] = None, **kwargs: Any) -> Engine:
    url = database_url or get_settings().database_url
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}))
    if _is_sqlite(url):
        connect_args.setdefault("check_same_thread", False)
    eng = create_engine(url, connect_args=connect_args, **kwargs)
    if _is_sqlite(url):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def make_sessionmaker(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine()
SessionLocal = make_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit everything written inside the block as one transaction.

    On any error the session is rolled back and the error re-raised, so a
    partially written group of rows is never committed.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
