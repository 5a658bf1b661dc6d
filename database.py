from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import StorageFailure


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.db_timeout_secs
    else:
        engine_kwargs["pool_timeout"] = settings.db_timeout_secs
    from sqlalchemy import create_engine

    eng = create_engine(
        settings.database_url, connect_args=connect_args, **engine_kwargs
    )
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def storage_errors(session: Session, operation: str) -> Iterator[None]:
    """Roll back and re-raise driver/ORM errors as ``StorageFailure``."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageFailure(f"{operation} failed: {exc}") from exc
