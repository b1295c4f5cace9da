from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, MutableMapping

import streamlit as st

from cutly.errors import IntegrityViolation, StoreError
from cutly.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

SESSION_CONN_KEY = "cutly_conn"


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def session_conn(state: MutableMapping[str, Any], db_path: Path) -> sqlite3.Connection:
    """
    Connection held in a session state mapping as (db_path, connection).

    When the data directory changes, the previous connection is closed
    before the new one is opened.
    """
    current = state.get(SESSION_CONN_KEY)
    if current is not None:
        path, conn = current
        if path == db_path:
            return conn
        logger.info("Closing database %s", path)
        conn.close()

    logger.info("Opening database %s", db_path)
    conn = _connect(db_path)
    state[SESSION_CONN_KEY] = (db_path, conn)
    return conn


def get_conn(db_path: Path) -> sqlite3.Connection:
    # One connection per browser session: reruns of a session never overlap,
    # so a transaction is never shared between two sessions.
    return session_conn(st.session_state, db_path)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _wrap(exc: Exception) -> StoreError:
    # OverflowError: a Python int too large to bind as an SQLite INTEGER.
    if isinstance(exc, sqlite3.IntegrityError):
        return IntegrityViolation(str(exc))
    return StoreError(str(exc))


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    try:
        cur = conn.execute(sql, tuple(params))
        rows = cur.fetchall()
    except (sqlite3.Error, OverflowError) as e:
        raise _wrap(e) from e
    cur.close()
    return rows


def run(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    """Execute one statement without committing; returns the affected row count."""
    try:
        cur = conn.execute(sql, tuple(params))
    except (sqlite3.Error, OverflowError) as e:
        raise _wrap(e) from e
    n = cur.rowcount
    cur.close()
    return int(n)


def run_many(conn: sqlite3.Connection, sql: str, seq: Iterable[Iterable[Any]]) -> int:
    try:
        cur = conn.executemany(sql, [tuple(p) for p in seq])
    except (sqlite3.Error, OverflowError) as e:
        raise _wrap(e) from e
    n = cur.rowcount
    cur.close()
    return int(n)


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    try:
        n = run(conn, sql, params)
    except StoreError:
        conn.rollback()
        raise
    conn.commit()
    return n


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    BEGIN IMMEDIATE ... COMMIT around the block, ROLLBACK on any exception.

    IMMEDIATE takes the write lock up front, so two writers never both read a
    quantity and then race to write it.
    """
    try:
        conn.execute("BEGIN IMMEDIATE;")
    except sqlite3.Error as e:
        raise _wrap(e) from e

    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        try:
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise _wrap(e) from e
