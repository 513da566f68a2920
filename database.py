import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import String, create_engine, event, func
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class StoreError(RuntimeError):
    """Record store failure (I/O, connection, constraint, no ledger open)."""


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(f"store_error: action={action} error={exc}")
        raise StoreError(f"{action} failed: {exc}") from exc


FOLD_FUNCTION = "fold"


def fold_text(value: Optional[str]) -> Optional[str]:
    """Case folding shared by Python lookups and the SQL `fold()` function."""
    if value is None:
        return None
    return value.casefold()


def fold(expr):
    return func.fold(expr, type_=String)


@event.listens_for(Engine, "connect")
def _register_fold(dbapi_conn, _record):
    # SQLite lower() only folds ASCII; fold() must exist on every SQLite
    # connection since the category name index is built on it
    if isinstance(dbapi_conn, sqlite3.Connection):
        dbapi_conn.create_function(FOLD_FUNCTION, 1, fold_text, deterministic=True)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # let SQLAlchemy emit BEGIN itself so reads share one snapshot
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_sqlite(conn):
    conn.exec_driver_sql("BEGIN")


def create_ledger_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    eng = create_engine(database_url, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_sqlite)
    return eng


def _sqlite_file(database_url: str) -> Optional[Path]:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class LedgerHandle:
    """The currently active ledger database.

    Sessions are handed out under the shared side of the lock and held until
    the session closes; opening, creating or closing a ledger takes the
    exclusive side, so no query ever runs against an engine that is being
    disposed.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None
        self.url: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self, database_url: str, *, create_if_missing: bool = False) -> None:
        path = _sqlite_file(database_url)
        if path is not None and not path.exists() and not create_if_missing:
            raise StoreError(f"Ledger file not found: {path}")
        self._install(database_url, path)

    def create(self, database_url: str) -> None:
        path = _sqlite_file(database_url)
        if path is not None and path.exists():
            raise StoreError(f"Ledger file already exists: {path}")
        self._install(database_url, path)

    def _install(self, database_url: str, path: Optional[Path]) -> None:
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_ledger_engine(database_url)
        with store_errors("ledger_open"):
            Base.metadata.create_all(engine)
        with self._lock.write():
            previous = self._engine
            self._engine = engine
            self._sessionmaker = sessionmaker(
                bind=engine, autoflush=False, expire_on_commit=False
            )
            self.url = database_url
            if previous is not None:
                previous.dispose()
        logger.info(f"ledger_open: url={database_url}")

    def close(self) -> None:
        with self._lock.write():
            if self._engine is None:
                return
            self._engine.dispose()
            logger.info(f"ledger_close: url={self.url}")
            self._engine = None
            self._sessionmaker = None
            self.url = None

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._lock.read():
            if self._sessionmaker is None:
                raise StoreError("No ledger is open")
            session: Session = self._sessionmaker()
            try:
                yield session
            finally:
                session.close()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with self.session() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise


ledger = LedgerHandle()
