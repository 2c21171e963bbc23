"""Read path: select records and load their relations to a bounded depth."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Type, TypeVar

from .context import Context
from .errors import NotFoundError, OrmError
from .executor import Executor, executor_for
from .model import (
    FieldDescriptor,
    ModelDescriptor,
    RelationKind,
    describe,
    is_zero,
    new_record,
    pk_is_null,
    pk_keys,
)
from .query import AND, QueryOptions, Statement, build_count, build_junction_select, build_select, exact

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (table, identity, remaining depth) of records whose relations are being loaded
_VisitKey = Tuple[str, Tuple[Any, ...], int]


class RelationLoader:
    """Loads selected rows into records and resolves their relation fields.

    Recursion stops when the remaining relation depth reaches 0; that is what
    ends traversal of self-referencing data. The remaining depth drops on every
    hop, so a (table, identity, depth) key can only be met again if that
    counting is broken. The active-key set catches that case and
    raises instead of recursing.
    """

    def __init__(self, executor: Executor):
        self.executor = executor
        self._active: Set[_VisitKey] = set()

    def select(self, model: Type[T], options: QueryOptions) -> List[T]:
        stmt = build_select(model, options)
        rows = self.executor.fetch(stmt)
        records: List[T] = []
        for row in rows:
            record, foreign_keys = self._scan(model, stmt, row)
            self.load_relations(describe(record), options, foreign_keys)
            records.append(record)
        return records

    def fill(self, record: T, options: QueryOptions) -> T:
        """Scan the first row matching ``options`` into ``record`` in place.

        Without a ``where`` the record's own primary key selects the row.
        """
        descriptor = describe(record)
        foreign_keys: Dict[str, Any] = {}
        if not options.where and descriptor.primary_fields() and not pk_is_null(descriptor):
            where = {f.column: exact(f.value) for f in descriptor.primary_fields()}
            options = dataclasses.replace(options, where=where, divider=AND)
        if descriptor.schema.column_fields:
            stmt = build_select(descriptor, options)
            rows = self.executor.fetch(stmt)
            if not rows:
                raise NotFoundError(f"no {descriptor.table} row matches {options.where!r}")
            foreign_keys = self._assign(record, stmt, rows[0])
        self.load_relations(descriptor, options, foreign_keys)
        return record

    def _scan(self, model: Type[T], stmt: Statement, row: Tuple[Any, ...]) -> Tuple[T, Dict[str, Any]]:
        record = new_record(model)
        return record, self._assign(record, stmt, row)

    @staticmethod
    def _assign(record: Any, stmt: Statement, row: Tuple[Any, ...]) -> Dict[str, Any]:
        foreign_keys: Dict[str, Any] = {}
        for spec, value in zip(stmt.fields, row):
            if spec.relation_kind() is RelationKind.HAS_ONE:
                foreign_keys[spec.name] = value
                setattr(record, spec.name, None)
            else:
                setattr(record, spec.name, value)
        return foreign_keys

    def load_relations(
        self, descriptor: ModelDescriptor, options: QueryOptions, foreign_keys: Optional[Dict[str, Any]] = None
    ) -> None:
        depth = options.relation_depth
        if depth <= 0:
            return
        key: _VisitKey = (descriptor.table, pk_keys(descriptor.record), depth)
        if key in self._active:
            raise OrmError(f"relation cycle on {descriptor.table} {key[1]!r} at depth {depth}")
        self._active.add(key)
        try:
            for field in descriptor.relation_fields():
                kind = field.spec.relation_kind()
                logger.debug(
                    "ormlite: loading %s %s.%s (depth %d)", kind.value, descriptor.table, field.name, depth
                )
                if kind is RelationKind.HAS_ONE:
                    self._load_has_one(field, options, (foreign_keys or {}).get(field.name))
                elif kind is RelationKind.HAS_MANY:
                    self._load_has_many(descriptor, field, options)
                elif kind is RelationKind.MANY_TO_MANY:
                    self._load_many_to_many(descriptor, field, options)
        finally:
            self._active.discard(key)

    def _load_has_one(self, field: FieldDescriptor, options: QueryOptions, foreign_key: Any) -> None:
        if is_zero(foreign_key):
            field.value = None
            return
        relation = field.relation
        child = options.child({relation.target_pk_columns[0]: exact(foreign_key)})
        found = self.select(relation.target, child)
        field.value = found[0] if found else None

    def _load_has_many(self, descriptor: ModelDescriptor, field: FieldDescriptor, options: QueryOptions) -> None:
        keys = pk_keys(descriptor.record)
        if not keys or all(is_zero(k) for k in keys):
            field.value = []
            return
        relation = field.relation
        value: Any = exact(keys[0]) if len(keys) == 1 else list(keys)
        field.value = self.select(relation.target, options.child({relation.column: value}))

    def _load_many_to_many(self, descriptor: ModelDescriptor, field: FieldDescriptor, options: QueryOptions) -> None:
        relation = field.relation
        rows = self.executor.fetch(build_junction_select(relation, pk_keys(descriptor.record)))
        if not rows:
            field.value = []
            return
        columns = relation.target_pk_columns
        if len(columns) == 1:
            where = {columns[0]: [row[0] for row in rows]}
        else:
            where = {",".join(columns): [tuple(row) for row in rows]}
        field.value = self.select(relation.target, options.child(where))


def _resolve_options(options: Optional[QueryOptions]) -> QueryOptions:
    return (options or QueryOptions()).validate()


def query(connection: Any, model: Type[T], options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> List[T]:
    """Select every row of ``model``'s table matching ``options``.

    Relations of each record are loaded ``options.relation_depth`` hops deep.

    Args:
        connection: A ``sqlite3.Connection`` or an :class:`Executor`.
        model: Record type to load.
        options: Filtering, paging and relation depth. Defaults to ``QueryOptions()``.
        ctx: Deadline token; defaults to one built from ``options.timeout``.
    """
    resolved = _resolve_options(options)
    executor = executor_for(connection, ctx, resolved.timeout)
    return RelationLoader(executor).select(model, resolved)


def query_one(connection: Any, record: T, options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> T:
    """Fill ``record`` from the first row matching ``options`` and load its relations.

    Raises:
        NotFoundError: when no row matches.
    """
    resolved = _resolve_options(options)
    executor = executor_for(connection, ctx, resolved.timeout)
    return RelationLoader(executor).fill(record, resolved)


def count(connection: Any, model: type, options: Optional[QueryOptions] = None, ctx: Optional[Context] = None) -> int:
    resolved = _resolve_options(options)
    executor = executor_for(connection, ctx, resolved.timeout)
    rows = executor.fetch(build_count(model, resolved))
    return int(rows[0][0]) if rows else 0
