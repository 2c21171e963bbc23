"""Connection-bound facade over the loader and synchronizer."""

from __future__ import annotations

import dataclasses
import logging
import re
import sqlite3
from typing import Any, List, Optional, Type, TypeVar, Union

from . import loader, sync
from .context import Context
from .errors import ClosedError, InvalidArgError, wrap_driver_error
from .query import DEFAULT_RELATION_DEPTH, DEFAULT_TIMEOUT, QueryOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRAGMA_SENTINEL = object()
_PRAGMA_NAME_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class Database:
    """Record-level access to one ``sqlite3`` connection.

    ``relation_depth`` and ``timeout`` seed the options of every call that is
    not given explicit options.
    """

    def __init__(
        self,
        path_or_connection: Union[str, sqlite3.Connection],
        *,
        relation_depth: int = DEFAULT_RELATION_DEPTH,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        **connect_options: Any,
    ) -> None:
        if isinstance(path_or_connection, sqlite3.Connection):
            if connect_options:
                raise TypeError("connect options are not allowed when wrapping an existing connection")
            self._conn = path_or_connection
            self._owned = False
        elif isinstance(path_or_connection, str):
            # Each statement commits on its own unless the caller opens a transaction
            connect_options.setdefault("isolation_level", None)
            self._conn = sqlite3.connect(path_or_connection, **connect_options)
            self._owned = True
        else:
            raise TypeError("Database requires a file path or sqlite3.Connection")
        if not isinstance(relation_depth, int) or relation_depth < 0:
            raise InvalidArgError("relation_depth must be a non-negative integer")
        self.relation_depth = relation_depth
        self.timeout = timeout
        self._closed = False

    @classmethod
    def open(
        cls,
        path: str,
        *,
        relation_depth: int = DEFAULT_RELATION_DEPTH,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        **connect_options: Any,
    ) -> Database:
        return cls(path, relation_depth=relation_depth, timeout=timeout, **connect_options)

    def raw(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        """Close the connection if this instance opened it.

        Calling close() more than once is a no-op.
        """
        if self._closed:
            return
        if self._owned:
            self._conn.close()
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _assert_open(self) -> None:
        if self._closed:
            raise ClosedError("database is closed")

    def __enter__(self) -> Database:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def options(self, **overrides: Any) -> QueryOptions:
        """QueryOptions seeded with this database's defaults."""
        options = QueryOptions(relation_depth=self.relation_depth, timeout=self.timeout)
        if overrides:
            options = dataclasses.replace(options, **overrides)
        return options.validate()

    def _context(self, ctx: Optional[Context]) -> Context:
        return ctx if ctx is not None else Context(self.timeout)

    def query(self, model: Type[T], options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> List[T]:
        self._assert_open()
        return loader.query(self._conn, model, options or self.options(), ctx)

    def query_one(self, record: T, options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> T:
        self._assert_open()
        return loader.query_one(self._conn, record, options or self.options(), ctx)

    def count(self, model: type, options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> int:
        self._assert_open()
        return loader.count(self._conn, model, options or self.options(), ctx)

    def upsert(self, record: T, ctx: Optional[Context] = None) -> T:
        self._assert_open()
        return sync.upsert(self._conn, record, self._context(ctx))

    def insert(self, record: T, ctx: Optional[Context] = None) -> T:
        self._assert_open()
        return sync.insert(self._conn, record, self._context(ctx))

    def update(self, record: T, ctx: Optional[Context] = None) -> T:
        self._assert_open()
        return sync.update(self._conn, record, self._context(ctx))

    def update_deep(self, record: T, ctx: Optional[Context] = None) -> T:
        self._assert_open()
        return sync.update_deep(self._conn, record, self._context(ctx))

    def delete(self, record: Any, ctx: Optional[Context] = None) -> None:
        self._assert_open()
        sync.delete(self._conn, record, self._context(ctx))

    def pragma(self, name: str, value: Any = _PRAGMA_SENTINEL) -> Any:
        """Read a pragma, or set it when ``value`` is given."""
        self._assert_open()
        if not _PRAGMA_NAME_REGEX.match(name or ""):
            raise InvalidArgError(f"invalid pragma name {name!r}")
        if value is _PRAGMA_SENTINEL:
            sql = f"PRAGMA {name}"
        else:
            if isinstance(value, bool):
                value = int(value)
            if not isinstance(value, (int, float, str)):
                raise InvalidArgError(f"pragma {name} value must be a number or text, got {value!r}")
            literal = repr(value) if isinstance(value, str) else str(value)
            sql = f"PRAGMA {name} = {literal}"
        logger.debug("ormlite: %s", sql)
        try:
            row = self._conn.execute(sql).fetchone()
        except sqlite3.Error as err:
            raise wrap_driver_error(err, sql) from err
        return row[0] if row else None


def open_database(path: str, **options: Any) -> Database:
    """Convenience helper mirroring Database.open."""
    return Database.open(path, **options)
