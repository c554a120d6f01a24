"""Shared fixtures: throwaway SQLite databases and a write counter."""

import pytest
from sqlalchemy import event

from nodesync.db.database import Database


def _make_db(path) -> Database:
    db = Database(f"sqlite:///{path}")
    db.create_all()
    return db


@pytest.fixture
def database(tmp_path):
    db = _make_db(tmp_path / "nodesync.db")
    yield db
    db.dispose()


@pytest.fixture
def leader_db(tmp_path):
    db = _make_db(tmp_path / "leader.db")
    yield db
    db.dispose()


@pytest.fixture
def follower_db(tmp_path):
    db = _make_db(tmp_path / "follower.db")
    yield db
    db.dispose()


class WriteCounter:
    """Counts INSERT/UPDATE/DELETE statements sent to an engine."""

    def __init__(self, engine):
        self.statements: list[str] = []
        event.listen(engine, "before_cursor_execute", self._on_execute)

    def _on_execute(self, conn, cursor, statement, parameters, context, executemany):
        verb = statement.lstrip().split(" ", 1)[0].upper()
        if verb in ("INSERT", "UPDATE", "DELETE"):
            self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)


@pytest.fixture
def write_counter():
    return WriteCounter
