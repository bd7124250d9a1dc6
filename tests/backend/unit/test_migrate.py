import sys
from types import SimpleNamespace

import pytest

from rpgencounter.backend import migrate
from rpgencounter.backend.errors import PersistenceError


class _FakeCursor:
    def __init__(self) -> None:
        self.statements: list[str] = []

    def execute(self, sql: str) -> None:
        self.statements.append(sql)

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self) -> None:
        self.cursor_instance = _FakeCursor()
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def _fake_psycopg(monkeypatch) -> tuple[list[str], _FakeConnection]:
    urls: list[str] = []
    connection = _FakeConnection()

    def connect(url: str) -> _FakeConnection:
        urls.append(url)
        return connection

    monkeypatch.setitem(sys.modules, "psycopg", SimpleNamespace(connect=connect))
    return urls, connection


def test_main_applies_encounter_schema(monkeypatch) -> None:
    monkeypatch.setenv("RPGENCOUNTER_DATABASE_URL", "postgresql://local/encounters")
    urls, connection = _fake_psycopg(monkeypatch)

    migrate.main()

    assert urls == ["postgresql://local/encounters"]
    assert connection.committed is True
    (statement,) = connection.cursor_instance.statements
    assert "CREATE TABLE IF NOT EXISTS encounter_sessions" in statement
    assert "CREATE TABLE IF NOT EXISTS encounter_archive" in statement


def test_main_requires_database_url(monkeypatch) -> None:
    monkeypatch.delenv("RPGENCOUNTER_DATABASE_URL", raising=False)
    urls, _ = _fake_psycopg(monkeypatch)

    with pytest.raises(PersistenceError, match="RPGENCOUNTER_DATABASE_URL"):
        migrate.main()
    assert urls == []


def test_apply_schema_reports_connection_failure(monkeypatch) -> None:
    def connect(url: str):
        raise OSError("connection refused")

    monkeypatch.setitem(sys.modules, "psycopg", SimpleNamespace(connect=connect))

    with pytest.raises(PersistenceError, match="connection refused"):
        migrate.apply_schema("postgresql://local/encounters")
