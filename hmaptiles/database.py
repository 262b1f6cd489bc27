"""
Actual database business logic.
"""

import functools
import random
import time
from typing import Callable

import structlog
from sqlalchemy import Engine, event
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from .errors import StorageContentionError
from .settings import settings

SessionFactory = Callable[[], Session]


def make_engine(database_url: str) -> Engine:
    """
    Create an engine. SQLite databases are switched to WAL mode so that
    tile reads can continue while an import is writing.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)

    engine = create_engine(
        database_url, connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return engine


def make_session_factory(engine: Engine) -> SessionFactory:
    return functools.partial(Session, engine, expire_on_commit=False)


engine = make_engine(settings.database_url)


def create_database_and_tables(bind: Engine | None = None):
    from . import orm  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Session:
    return Session(engine, expire_on_commit=False)


def is_contention(error: OperationalError) -> bool:
    message = str(error.orig).lower()
    return "locked" in message or "busy" in message


def retry_on_contention(
    func=None, *, attempts: int | None = None, base_delay: float | None = None
):
    """
    Retry a write that failed because the store was locked.

    The wrapped function must open (and close) its own session, so that any
    half-flushed state is thrown away before the next attempt. Delays double
    after every attempt and carry up to 50ms of jitter. Once the attempts are
    used up a ``StorageContentionError`` is raised.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            max_attempts = attempts or settings.write_retry_attempts
            delay = base_delay if base_delay is not None else settings.write_retry_base_delay_seconds
            log = structlog.get_logger().bind(operation=func.__qualname__)

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    if not is_contention(e):
                        raise

                    if attempt == max_attempts:
                        log.error("database.contention.exhausted", attempts=attempt)
                        raise StorageContentionError(
                            f"{func.__qualname__} failed after {attempt} attempts: {e.orig}"
                        ) from e

                    log.debug("database.contention.retry", attempt=attempt, delay=delay)
                    time.sleep(delay + random.uniform(0, 0.05))
                    delay *= 2

        return wrapper

    if func is not None:
        return decorator(func)

    return decorator
