import sqlite3

import pytest

from models import Author, Book, Setting, memory_db
from ormlite import (
    CancelledError,
    ConstraintViolation,
    ErrorCode,
    ExecutionError,
    Executor,
    ForeignKeyViolation,
    NotFoundError,
    NotNullViolation,
    OrmError,
    UniqueViolation,
    insert,
    is_fk_error,
    is_not_found,
    is_not_null_error,
    is_unique_violation,
    upsert,
    wrap_driver_error,
)
from ormlite.query import Statement


def test_error_classes_have_correct_codes() -> None:
    assert ConstraintViolation("x").code == ErrorCode.CONSTRAINT
    assert UniqueViolation("x").code == ErrorCode.UNIQUE
    assert ForeignKeyViolation("x").code == ErrorCode.FOREIGN_KEY
    assert NotNullViolation("x").code == ErrorCode.NOT_NULL
    assert NotFoundError().code == ErrorCode.NOT_FOUND
    assert CancelledError().code == ErrorCode.CANCELLED
    assert issubclass(ConstraintViolation, ExecutionError)
    assert issubclass(ExecutionError, OrmError)


def test_wrap_driver_error_keeps_statement_context() -> None:
    err = wrap_driver_error(sqlite3.OperationalError("no such table: missing"), "SELECT * FROM missing", [1])
    assert type(err) is ExecutionError
    assert str(err) == "no such table: missing"
    assert err.sql == "SELECT * FROM missing"
    assert err.params == [1]
    assert isinstance(err.driver_error, sqlite3.OperationalError)
    assert "SELECT * FROM missing" in repr(err)


def test_wrap_driver_error_classifies_by_message() -> None:
    assert type(wrap_driver_error(sqlite3.IntegrityError("UNIQUE constraint failed: t.name"))) is UniqueViolation
    assert type(wrap_driver_error(sqlite3.IntegrityError("FOREIGN KEY constraint failed"))) is ForeignKeyViolation
    assert type(wrap_driver_error(sqlite3.IntegrityError("NOT NULL constraint failed: t.x"))) is NotNullViolation
    assert type(wrap_driver_error(sqlite3.IntegrityError("CHECK constraint failed: x"))) is ConstraintViolation
    assert type(wrap_driver_error(sqlite3.OperationalError("interrupted"))) is CancelledError


def test_wrap_driver_error_returns_typed_errors_unchanged() -> None:
    original = NotFoundError()
    assert wrap_driver_error(original) is original


def test_unique_violation_from_insert() -> None:
    conn = memory_db()
    insert(conn, Setting(name="theme", value="light"))
    with pytest.raises(UniqueViolation) as exc_info:
        insert(conn, Setting(name="theme", value="dark"))
    err = exc_info.value
    assert is_unique_violation(err)
    assert not is_fk_error(err)
    assert err.sql.startswith("INSERT INTO setting")
    assert err.params == ["theme", "dark"]


def test_not_null_violation() -> None:
    conn = memory_db()
    with pytest.raises(NotNullViolation) as exc_info:
        upsert(conn, Author(name=None))  # type: ignore[arg-type]
    assert is_not_null_error(exc_info.value)


def test_foreign_key_violation() -> None:
    conn = memory_db()
    conn.execute("PRAGMA foreign_keys = ON")
    with pytest.raises(ForeignKeyViolation) as exc_info:
        upsert(conn, Book(title="dangling", author=Author(id=99, name="ghost")))
    assert is_fk_error(exc_info.value)


def test_is_not_found() -> None:
    assert is_not_found(NotFoundError())
    assert not is_not_found(ExecutionError("x"))


def test_wrap_driver_error_prefers_extended_error_name() -> None:
    err = sqlite3.IntegrityError("constraint failed")
    err.sqlite_errorname = "SQLITE_CONSTRAINT_FOREIGNKEY"  # type: ignore[attr-defined]
    assert type(wrap_driver_error(err)) is ForeignKeyViolation
    err.sqlite_errorname = "SQLITE_CONSTRAINT_CHECK"  # type: ignore[attr-defined]
    assert type(wrap_driver_error(err)) is ConstraintViolation


class RaisingConnection:
    def execute(self, sql: str, args: list) -> None:
        raise sqlite3.IntegrityError("NOT NULL constraint failed: simple.name")


def test_executor_wraps_errors_from_any_connection() -> None:
    with pytest.raises(NotNullViolation) as exc_info:
        Executor(RaisingConnection()).exec(Statement("INSERT INTO simple(name) VALUES(?)", [None]))
    assert exc_info.value.params == [None]
    assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)
