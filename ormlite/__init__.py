"""Relation-aware record mapping for the sqlite3 embedded database."""

import logging

from .context import Context, background
from .db import Database, open_database
from .errors import (
    CancelledError,
    ClosedError,
    ConfigError,
    ConstraintViolation,
    ErrorCode,
    ExecutionError,
    ForeignKeyViolation,
    InvalidArgError,
    NotFoundError,
    NotNullViolation,
    OrmError,
    RelationTypeError,
    UniqueViolation,
    is_fk_error,
    is_not_found,
    is_not_null_error,
    is_unique_violation,
    wrap_driver_error,
)
from .executor import ExecResult, Executor
from .loader import count, query, query_one
from .model import FieldKind, Model, RelationKind, column, describe, describe_type
from .query import (
    AND,
    OR,
    BitwiseAnd,
    BitwiseAndStrict,
    Greater,
    GreaterOrEqual,
    Less,
    LessOrEqual,
    NotEqual,
    OrderBy,
    QueryOptions,
    StrictString,
    default_options,
    with_limit,
    with_offset,
    with_order,
    with_where,
)
from .sync import delete, insert, update, update_deep, upsert

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Database",
    "open_database",
    "Context",
    "background",
    "Executor",
    "ExecResult",
    # Records
    "Model",
    "column",
    "describe",
    "describe_type",
    "FieldKind",
    "RelationKind",
    # Reads
    "query",
    "query_one",
    "count",
    "QueryOptions",
    "OrderBy",
    "AND",
    "OR",
    "Greater",
    "GreaterOrEqual",
    "Less",
    "LessOrEqual",
    "NotEqual",
    "BitwiseAnd",
    "BitwiseAndStrict",
    "StrictString",
    "default_options",
    "with_where",
    "with_limit",
    "with_offset",
    "with_order",
    # Writes
    "upsert",
    "insert",
    "update",
    "update_deep",
    "delete",
    # Error types
    "ErrorCode",
    "OrmError",
    "ConfigError",
    "RelationTypeError",
    "ExecutionError",
    "ConstraintViolation",
    "UniqueViolation",
    "ForeignKeyViolation",
    "NotNullViolation",
    "NotFoundError",
    "CancelledError",
    "InvalidArgError",
    "ClosedError",
    "wrap_driver_error",
    "is_unique_violation",
    "is_fk_error",
    "is_not_null_error",
    "is_not_found",
]
