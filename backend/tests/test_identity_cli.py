"""
Operator CLI: `map` and `sync-profiles`.
"""

from __future__ import annotations

from pathlib import Path
import types

import pytest
from click.testing import CliRunner

from identity_access.mapping import map_external_id


def _cli():
    from backend.tools import identity_map  # type: ignore

    return identity_map.cli


def test_map_prints_csv_for_arguments():
    result = CliRunner().invoke(_cli(), ["map", "user_a", "user_b"])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert lines[0] == "external_id,mapped_id"
    assert lines[1] == f"user_a,{map_external_id('user_a')}"
    assert lines[2] == f"user_b,{map_external_id('user_b')}"


def test_map_reads_csv_input(tmp_path: Path):
    src = tmp_path / "accounts.csv"
    src.write_text("external_id,email\nuser_c,c@example.com\n,skipped@example.com\n", encoding="utf-8")

    result = CliRunner().invoke(_cli(), ["map", "--csv", str(src)])

    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines()[1:] == [f"user_c,{map_external_id('user_c')}"]


def test_map_requires_input():
    result = CliRunner().invoke(_cli(), ["map"])
    assert result.exit_code != 0
    assert "Provide external ids" in result.output


def test_map_rejects_csv_without_external_id_column(tmp_path: Path):
    src = tmp_path / "bad.csv"
    src.write_text("id,email\n1,a@example.com\n", encoding="utf-8")

    result = CliRunner().invoke(_cli(), ["map", "--csv", str(src)])

    assert result.exit_code != 0
    assert "external_id column" in result.output


def test_map_blank_argument_fails_hard():
    result = CliRunner().invoke(_cli(), ["map", "user_ok", "   "])
    assert result.exit_code != 0
    assert "empty_external_id" in result.output


class _Cursor:
    def __init__(self, db: dict):
        self._db = db
        self._row = None

    def execute(self, sql, params):
        if sql.lower().startswith("insert"):
            pid, full_name, avatar, email, role, provider = params
            row = (pid, full_name, avatar, email, role, provider, None)
            self._db[pid] = row
            self._row = row
        else:
            self._row = self._db.get(params[0])

    def fetchone(self):
        return self._row

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _Conn:
    def __init__(self, db: dict):
        self._db = db

    def cursor(self):
        return _Cursor(self._db)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_profiles(monkeypatch: pytest.MonkeyPatch) -> dict:
    db: dict = {}
    import identity_access.stores_db as stores_db

    monkeypatch.setattr(stores_db, "psycopg", types.SimpleNamespace(connect=lambda dsn, autocommit=False: _Conn(db)))
    return db


def test_sync_profiles_creates_missing_rows_idempotently(tmp_path: Path, fake_profiles: dict):
    src = tmp_path / "accounts.csv"
    src.write_text(
        "external_id,full_name,email\n"
        "user_ops,,admin@interview.ai\n"
        "user_stu,Sam Student,sam@example.com\n",
        encoding="utf-8",
    )
    args = ["sync-profiles", "--db-dsn", "postgresql://fake/db", "--csv", str(src)]

    first = CliRunner().invoke(_cli(), args)
    assert first.exit_code == 0, first.output
    assert "Synced profiles=2, created=2, failed=0" in first.output

    ops = fake_profiles[map_external_id("user_ops")]
    assert ops[1] == "admin" and ops[4] == "admin" and ops[5] == "clerk"
    stu = fake_profiles[map_external_id("user_stu")]
    assert stu[1] == "Sam Student" and stu[4] == "student"

    second = CliRunner().invoke(_cli(), args)
    assert second.exit_code == 0, second.output
    assert "created=0" in second.output


def test_sync_profiles_with_empty_csv_is_a_noop(tmp_path: Path, fake_profiles: dict):
    src = tmp_path / "empty.csv"
    src.write_text("external_id\n", encoding="utf-8")

    result = CliRunner().invoke(_cli(), ["sync-profiles", "--db-dsn", "postgresql://fake/db", "--csv", str(src)])

    assert result.exit_code == 0
    assert "nothing to do" in result.output
    assert fake_profiles == {}
