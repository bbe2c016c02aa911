import threading
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def build_engine(database_url: str, **engine_kwargs: Any) -> Engine:
    """Create an engine; SQLite connections are shared across threads with WAL and FK checks on."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, **engine_kwargs)

    connect_args = dict(engine_kwargs.pop("connect_args", {}))
    connect_args["check_same_thread"] = False
    eng = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    event.listen(eng, "connect", _on_sqlite_connect)
    return eng


def _on_sqlite_connect(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

# Single writer: bulk read-compute-write sequences hold this for their duration.
write_lock = threading.Lock()


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs: committed on success, rolled back on error."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine = engine) -> None:
    """Create any missing tables."""
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
