"""
sqlgate test fixtures

Canned SQLite databases on disk (tmp_path) and in-process fake sources
whose queries can be held open with a threading.Event.

Run with: pytest tests/ -v
"""
import sqlite3
import threading

import pytest

from sqlgate.core import MemoryRows
from sqlgate.errors import ExecutionError


# =============================================================================
# CANNED DATA
# =============================================================================

INIT_SQL = """
CREATE TABLE users (
  name TEXT UNIQUE NOT NULL,
  title TEXT,
  location TEXT
);

INSERT INTO users VALUES ('alice', 'ceo', 'amsterdam');
INSERT INTO users VALUES ('carole', 'cto', 'california');
INSERT INTO users VALUES ('dave', 'head of people', 'california');
INSERT INTO users VALUES ('eve', 'head of product', 'california');
INSERT INTO users VALUES ('mallory', 'eng', 'arizona');
INSERT INTO users VALUES ('amelie', 'mascot', NULL);

-- Values that exercise UI decoration.
CREATE TABLE misc (x);
INSERT INTO misc VALUES ('cus_Fak3Cu6t0m3rId');
INSERT INTO misc VALUES ('in_1f4k31nv0Ic3Num83r');
INSERT INTO misc VALUES ('sub_fAk34sH3l1anDMn0tgNatKT');
INSERT INTO misc VALUES ('{"json":true}');
INSERT INTO misc VALUES ('CREATE TABLE misc (x);');
INSERT INTO misc VALUES ('https://example.com?q=1&r=2');
INSERT INTO misc VALUES ('<b>bold</b>');
"""

FRUIT_SQL = """
CREATE TABLE t (id INTEGER, value TEXT);
INSERT INTO t VALUES (1, 'apple');
INSERT INTO t VALUES (2, 'pear');
"""


def _make_db(path, script):
    db = sqlite3.connect(str(path))
    db.executescript(script)
    db.commit()
    db.close()
    return str(path)


@pytest.fixture
def users_db(tmp_path):
    """Path to a SQLite file with the users and misc tables."""
    return _make_db(tmp_path / "users.db", INIT_SQL)


@pytest.fixture
def fruit_db(tmp_path):
    """Path to a SQLite file with t(id, value) = (1, apple), (2, pear)."""
    return _make_db(tmp_path / "fruit.db", FRUIT_SQL)


# =============================================================================
# FAKE SOURCES
# =============================================================================

class GatedDB:
    """A Queryable answering one row naming itself.

    With a gate, every query signals `entered` and then blocks until the
    gate is set, so a test can hold a query open while it swaps.
    """

    def __init__(self, name, gate=None, fail_close=False):
        self.name = name
        self.gate = gate
        self.fail_close = fail_close
        self.entered = threading.Event()
        self.closed = False
        self.queries = []

    def query(self, sql, params=(), ctx=None):
        if self.closed:
            raise ExecutionError(f"{self.name} is closed")
        self.queries.append(sql)
        self.entered.set()
        if self.gate is not None:
            assert self.gate.wait(5), "gate never opened"
        return MemoryRows(["db"], [(self.name,)])

    def close(self):
        self.closed = True
        if self.fail_close:
            raise RuntimeError(f"closing {self.name} failed")

    def __repr__(self):
        return f"GatedDB({self.name!r})"


@pytest.fixture
def gated():
    """Factory for GatedDB instances."""
    return GatedDB


def run_in_thread(fn, *args):
    """Start fn(*args) in a thread; returns (thread, result dict)."""
    out = {}

    def target():
        try:
            out["value"] = fn(*args)
        except Exception as e:
            out["error"] = e

    t = threading.Thread(target=target, daemon=True)
    t.start()
    return t, out


@pytest.fixture
def background():
    return run_in_thread
