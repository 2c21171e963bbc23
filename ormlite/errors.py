"""Typed errors raised by the ormlite engine."""

from __future__ import annotations

import re
import sqlite3
from typing import Any, Dict, Optional, Sequence, Type

# Driver messages look like: "UNIQUE constraint failed: base_model.field"
_CONSTRAINT_MESSAGE_REGEX = re.compile(r"^(UNIQUE|FOREIGN KEY|NOT NULL) constraint failed", re.IGNORECASE)
_INTERRUPTED_REGEX = re.compile(r"\binterrupted\b", re.IGNORECASE)


class ErrorCode:
    """Error codes attached to every ormlite exception."""
    UNKNOWN = "UNKNOWN"
    CONFIG = "CONFIG"
    RELATION_TYPE = "RELATION_TYPE"
    EXECUTION = "EXECUTION"
    CONSTRAINT = "CONSTRAINT"
    UNIQUE = "UNIQUE"
    FOREIGN_KEY = "FOREIGN_KEY"
    NOT_NULL = "NOT_NULL"
    NOT_FOUND = "NOT_FOUND"
    CANCELLED = "CANCELLED"
    INVALID_ARG = "INVALID_ARG"
    CLOSED = "CLOSED"


class OrmError(Exception):
    """Base exception class for all ormlite errors."""

    def __init__(self, message: str, code: str = ErrorCode.UNKNOWN):
        super().__init__(message)
        self.code = code


class ConfigError(OrmError):
    """Raised when a record type's tags or relation settings are incomplete."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFIG)


class RelationTypeError(OrmError, TypeError):
    """Raised when a relation field's value does not match its declared kind."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.RELATION_TYPE)


class InvalidArgError(OrmError, ValueError):
    """Raised when an invalid argument is provided."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_ARG)


class NotFoundError(OrmError):
    """Raised when an update or delete affected zero rows."""

    def __init__(self, message: str = "no rows affected"):
        super().__init__(message, ErrorCode.NOT_FOUND)


class CancelledError(OrmError):
    """Raised when a call is cancelled or its deadline expires."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message, ErrorCode.CANCELLED)


class ClosedError(OrmError):
    """Raised when operating on a closed database."""

    def __init__(self, message: str = "database is closed"):
        super().__init__(message, ErrorCode.CLOSED)


class ExecutionError(OrmError):
    """Wraps a driver failure together with the statement that caused it."""

    def __init__(
        self,
        message: str,
        sql: str = "",
        args: Optional[Sequence[Any]] = None,
        driver_error: Optional[BaseException] = None,
        code: str = ErrorCode.EXECUTION,
    ):
        super().__init__(message, code)
        self.sql = sql
        self.params = list(args or [])
        self.driver_error = driver_error

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, sql={self.sql!r}, params={self.params!r})"


class ConstraintViolation(ExecutionError):
    """A statement was rejected by a table constraint."""

    CODE = ErrorCode.CONSTRAINT

    def __init__(
        self,
        message: str,
        sql: str = "",
        args: Optional[Sequence[Any]] = None,
        driver_error: Optional[BaseException] = None,
    ):
        super().__init__(message, sql, args, driver_error, self.CODE)


class UniqueViolation(ConstraintViolation):
    CODE = ErrorCode.UNIQUE


class ForeignKeyViolation(ConstraintViolation):
    CODE = ErrorCode.FOREIGN_KEY


class NotNullViolation(ConstraintViolation):
    CODE = ErrorCode.NOT_NULL


# Extended sqlite result names to their exception classes
_CONSTRAINT_CLASS_MAP: Dict[str, Type[ConstraintViolation]] = {
    "SQLITE_CONSTRAINT_UNIQUE": UniqueViolation,
    "SQLITE_CONSTRAINT_PRIMARYKEY": UniqueViolation,
    "SQLITE_CONSTRAINT_FOREIGNKEY": ForeignKeyViolation,
    "SQLITE_CONSTRAINT_NOTNULL": NotNullViolation,
}

_CONSTRAINT_MESSAGE_MAP: Dict[str, Type[ConstraintViolation]] = {
    "UNIQUE": UniqueViolation,
    "FOREIGN KEY": ForeignKeyViolation,
    "NOT NULL": NotNullViolation,
}


def _classify_constraint(err: BaseException) -> Optional[Type[ConstraintViolation]]:
    name = getattr(err, "sqlite_errorname", None)
    if isinstance(name, str):
        if name in _CONSTRAINT_CLASS_MAP:
            return _CONSTRAINT_CLASS_MAP[name]
        if name.startswith("SQLITE_CONSTRAINT"):
            return ConstraintViolation
    # Older interpreters do not expose the extended code
    match = _CONSTRAINT_MESSAGE_REGEX.match(str(err))
    if match:
        return _CONSTRAINT_MESSAGE_MAP[match.group(1).upper()]
    if isinstance(err, sqlite3.IntegrityError):
        return ConstraintViolation
    return None


def wrap_driver_error(err: BaseException, sql: str = "", args: Optional[Sequence[Any]] = None) -> OrmError:
    """Classify a driver error and return a typed exception.

    Args:
        err: The exception raised by the database driver.
        sql: Statement text that was being executed.
        args: Positional parameters bound to the statement.

    Returns:
        A ConstraintViolation subclass for constraint failures, CancelledError
        for interrupted statements, and ExecutionError otherwise. Errors that
        are already typed are returned unchanged.
    """
    if isinstance(err, OrmError):
        return err
    message = str(err)
    if isinstance(err, sqlite3.OperationalError) and _INTERRUPTED_REGEX.search(message):
        return CancelledError(f"statement interrupted: {sql}")
    constraint_class = _classify_constraint(err)
    if constraint_class is not None:
        return constraint_class(message, sql, args, err)
    return ExecutionError(message, sql, args, err)


def is_unique_violation(err: BaseException) -> bool:
    return isinstance(err, UniqueViolation)


def is_fk_error(err: BaseException) -> bool:
    return isinstance(err, ForeignKeyViolation)


def is_not_null_error(err: BaseException) -> bool:
    return isinstance(err, NotNullViolation)


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, NotFoundError)
