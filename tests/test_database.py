import threading
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import models  # noqa: F401
from database import LedgerHandle, ReadWriteLock, StoreError, store_errors
from models import Account


def sqlite_url(path) -> str:
    return f"sqlite:///{path}"


def test_session_without_open_ledger_fails() -> None:
    handle = LedgerHandle()
    with pytest.raises(StoreError):
        with handle.session():
            pass


def test_open_missing_file_fails_unless_created(tmp_path) -> None:
    handle = LedgerHandle()
    url = sqlite_url(tmp_path / "missing.db")

    with pytest.raises(StoreError):
        handle.open(url)
    assert not handle.is_open

    handle.open(url, create_if_missing=True)
    assert handle.is_open
    assert (tmp_path / "missing.db").exists()
    handle.close()


def test_create_refuses_existing_file(tmp_path) -> None:
    handle = LedgerHandle()
    url = sqlite_url(tmp_path / "ledger.db")
    handle.create(url)
    handle.close()

    with pytest.raises(StoreError):
        handle.create(url)


def test_data_survives_close_and_reopen(tmp_path) -> None:
    handle = LedgerHandle()
    url = sqlite_url(tmp_path / "nested" / "ledger.db")
    handle.create(url)
    with handle.session_scope() as session:
        session.add(Account(name="Checking"))

    handle.close()
    assert not handle.is_open
    with pytest.raises(StoreError):
        with handle.session():
            pass

    handle.open(url)
    with handle.session() as session:
        names = session.scalars(select(Account.name)).all()
    assert names == ["Checking"]
    handle.close()


def test_switching_ledgers(tmp_path) -> None:
    handle = LedgerHandle()
    first = sqlite_url(tmp_path / "first.db")
    second = sqlite_url(tmp_path / "second.db")
    handle.create(first)
    with handle.session_scope() as session:
        session.add(Account(name="First"))

    handle.create(second)
    assert handle.url == second
    with handle.session() as session:
        assert session.scalars(select(Account.name)).all() == []
    handle.close()


def test_session_scope_rolls_back_on_error(tmp_path) -> None:
    handle = LedgerHandle()
    handle.create(sqlite_url(tmp_path / "ledger.db"))

    with pytest.raises(RuntimeError):
        with handle.session_scope() as session:
            session.add(Account(name="Ghost"))
            session.flush()
            raise RuntimeError("abort")

    with handle.session() as session:
        assert session.scalars(select(Account)).all() == []
    handle.close()


def test_store_errors_wraps_sqlalchemy_errors() -> None:
    with pytest.raises(StoreError) as excinfo:
        with store_errors("search"):
            raise SQLAlchemyError("disk I/O error")
    assert "search failed" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, SQLAlchemyError)


def test_writer_waits_for_readers() -> None:
    lock = ReadWriteLock()
    acquired = threading.Event()

    def writer():
        with lock.write():
            acquired.set()

    lock.acquire_read()
    thread = threading.Thread(target=writer)
    thread.start()
    time.sleep(0.05)
    assert not acquired.is_set()

    lock.release_read()
    thread.join(timeout=2)
    assert acquired.is_set()


def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    with lock.read():
        done = threading.Event()

        def reader():
            with lock.read():
                done.set()

        thread = threading.Thread(target=reader)
        thread.start()
        thread.join(timeout=2)
        assert done.is_set()
