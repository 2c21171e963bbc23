"""Runs built statements against the embedded engine connection."""

from __future__ import annotations

import logging
from typing import Any, Callable, List, NamedTuple, Optional, Tuple, TypeVar

from .context import Context, background
from .errors import CancelledError, wrap_driver_error
from .query import Statement

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Virtual machine instructions between two cancellation checks
_PROGRESS_INTERVAL = 1000


class ExecResult(NamedTuple):
    rowcount: int
    lastrowid: int


class Executor:
    """Row-cursor collaborator bound to one call's context.

    The connection only needs ``execute(sql, args)`` returning a cursor with
    ``fetchall()``, ``rowcount`` and ``lastrowid``; ``sqlite3.Connection``
    qualifies. When the connection supports ``set_progress_handler`` an
    in-flight statement is interrupted as soon as the context is done.
    """

    def __init__(self, connection: Any, ctx: Optional[Context] = None):
        self._conn = connection
        self.ctx = ctx if ctx is not None else background()

    @property
    def connection(self) -> Any:
        return self._conn

    def fetch(self, stmt: Statement) -> List[Tuple[Any, ...]]:
        return self._run(stmt, lambda cursor: [tuple(row) for row in cursor.fetchall()])

    def exec(self, stmt: Statement, track_insert: bool = False) -> ExecResult:
        """Execute a write statement.

        With ``track_insert`` the reported last-inserted id is 0 unless the
        statement inserted a new row, which is how an upsert that resolved to
        an update is told apart from a real insert.
        """
        before = self._last_insert_rowid() if track_insert else None
        rowcount, lastrowid = self._run(stmt, lambda cursor: (cursor.rowcount, cursor.lastrowid))
        if track_insert and self._last_insert_rowid() == before:
            lastrowid = 0
        return ExecResult(rowcount if rowcount is not None else -1, lastrowid or 0)

    def _last_insert_rowid(self) -> int:
        row = self._run(Statement("SELECT last_insert_rowid()", []), lambda cursor: cursor.fetchone(), log=False)
        return int(row[0]) if row else 0

    def _run(self, stmt: Statement, consume: Callable[[Any], R], log: bool = True) -> R:
        self.ctx.check()
        if log:
            logger.debug("ormlite: %s %r", stmt.sql, stmt.args)
        handler_set = self._install_progress_handler()
        try:
            return consume(self._conn.execute(stmt.sql, stmt.args))
        except Exception as err:
            wrapped = wrap_driver_error(err, stmt.sql, stmt.args)
            if isinstance(wrapped, CancelledError) and self.ctx.expired:
                wrapped = CancelledError(f"deadline exceeded: {stmt.sql}")
            raise wrapped from err
        finally:
            if handler_set:
                self._conn.set_progress_handler(None, 0)

    def _install_progress_handler(self) -> bool:
        set_handler = getattr(self._conn, "set_progress_handler", None)
        if set_handler is None:
            return False
        ctx = self.ctx
        set_handler(lambda: 1 if ctx.done else 0, _PROGRESS_INTERVAL)
        return True


def executor_for(connection: Any, ctx: Optional[Context] = None, timeout: Optional[float] = None) -> Executor:
    """Return an executor for ``connection``.

    An existing executor is reused as is. Otherwise ``ctx`` is used, or a new
    context with ``timeout`` as its deadline.
    """
    if isinstance(connection, Executor):
        return connection
    if ctx is None:
        ctx = Context(timeout)
    return Executor(connection, ctx)
