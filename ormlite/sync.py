"""Write path: upsert records and reconcile their relations."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Set, Tuple, TypeVar

from .context import Context
from .errors import ExecutionError, InvalidArgError, NotFoundError, RelationTypeError
from .executor import Executor, executor_for
from .model import (
    FieldDescriptor,
    ModelDescriptor,
    RelationKind,
    describe,
    is_record,
    pk_is_null,
    pk_keys,
)
from .query import (
    DEFAULT_TIMEOUT,
    Statement,
    build_delete,
    build_identity_lookup,
    build_junction_delete,
    build_junction_insert,
    build_junction_select,
    build_update,
    build_upsert,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Inserter:
    """Writes one record and reconciles its relations.

    Relations are reconciled for the top-level record only (``depth`` 0).
    Collection elements written on its behalf get their new has-one targets
    inserted but their own collections are left alone. A new has-one target
    is written by a fresh Inserter and so is reconciled in full.
    """

    def __init__(self, executor: Executor, update_conflict: bool = True, pending: Optional[Set[int]] = None):
        self.executor = executor
        self.update_conflict = update_conflict
        self.depth = 0
        # id() of records whose insert has started but not finished
        self.pending: Set[int] = pending if pending is not None else set()

    def insert(self, record: Any) -> None:
        if id(record) in self.pending:
            raise InvalidArgError(
                f"cyclic unsaved has_one chain through {type(record).__name__}; save one of its records first"
            )
        self.pending.add(id(record))
        try:
            self._insert(record)
        finally:
            self.pending.discard(id(record))

    def _insert(self, record: Any) -> None:
        descriptor = describe(record)
        for field in descriptor.relation_fields():
            if field.spec.relation_kind() is RelationKind.HAS_ONE:
                Inserter(self.executor, self.update_conflict, self.pending).sync_has_one(field)

        stmt = build_upsert(descriptor, self.update_conflict)
        if stmt is not None:
            result = self.executor.exec(stmt, track_insert=True)
            if pk_is_null(descriptor):
                primaries = descriptor.primary_fields()
                if result.lastrowid and len(primaries) == 1:
                    primaries[0].value = result.lastrowid
                elif primaries:
                    self._resolve_identity(descriptor)

        self.sync_relations(descriptor)

    def _resolve_identity(self, descriptor: ModelDescriptor) -> None:
        rows = self.executor.fetch(build_identity_lookup(descriptor))
        if not rows:
            return
        for field, value in zip(descriptor.primary_fields(), rows[0]):
            field.value = value

    def sync_relations(self, descriptor: ModelDescriptor) -> None:
        if self.depth > 0:
            return
        self.depth += 1
        for field in descriptor.relation_fields():
            kind = field.spec.relation_kind()
            if kind is RelationKind.MANY_TO_MANY:
                if not field.relation.view:
                    self.sync_many_to_many(descriptor, field)
            elif kind is RelationKind.HAS_ONE:
                self.sync_has_one(field)
            elif kind is RelationKind.HAS_MANY:
                self.sync_has_many(descriptor, field)

    def sync_has_one(self, field: FieldDescriptor) -> None:
        related = field.value
        if related is None:
            return
        if not is_record(related):
            raise RelationTypeError(f"has_one field {field.name!r} must hold a record, got {type(related).__name__}")
        if not pk_is_null(describe(related)):
            return
        self.insert(related)

    def sync_has_many(self, descriptor: ModelDescriptor, field: FieldDescriptor) -> None:
        items = _relation_items(field)
        backref = field.relation.backref_field
        for item in items:
            setattr(item, backref, descriptor.record)
            if not pk_is_null(describe(item)):
                # The rest of a partially loaded collection is assumed persisted too
                logger.debug(
                    "ormlite: %s.%s stops at persisted %s %r",
                    descriptor.table,
                    field.name,
                    field.relation.target.__name__,
                    pk_keys(item),
                )
                break
            self.insert(item)

    def sync_many_to_many(self, descriptor: ModelDescriptor, field: FieldDescriptor) -> None:
        relation = field.relation
        owner_keys = pk_keys(descriptor.record)
        if pk_is_null(descriptor):
            raise InvalidArgError(f"cannot link {relation.table}: {descriptor.table} primary key is not set")

        desired: List[Tuple[Any, ...]] = []
        for item in _relation_items(field):
            if pk_is_null(describe(item)):
                self.insert(item)
            keys = pk_keys(item)
            if keys not in desired:
                desired.append(keys)

        stored = [tuple(row) for row in self.executor.fetch(build_junction_select(relation, owner_keys))]
        stored_set: Set[Tuple[Any, ...]] = set(stored)
        desired_set = set(desired)

        for keys in desired:
            if keys in stored_set:
                continue
            self._exec_link(build_junction_insert(relation, owner_keys, keys), "insert")
            logger.debug("ormlite: linked %s %r -> %r", relation.table, owner_keys, keys)
        for keys in stored:
            if keys in desired_set:
                continue
            self._exec_link(build_junction_delete(relation, owner_keys, keys), "delete")
            logger.debug("ormlite: unlinked %s %r -> %r", relation.table, owner_keys, keys)

    def _exec_link(self, stmt: Statement, action: str) -> None:
        result = self.executor.exec(stmt)
        if result.rowcount == 0:
            raise ExecutionError(f"junction {action} did not affect any row", stmt.sql, stmt.args)


def _relation_items(field: FieldDescriptor) -> Sequence[Any]:
    value = field.value
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise RelationTypeError(
            f"{field.relation.kind.value} field {field.name!r} must hold a list of records, got {type(value).__name__}"
        )
    for item in value:
        if not isinstance(item, field.relation.target):
            raise RelationTypeError(
                f"{field.name!r} holds {type(item).__name__}, expected {field.relation.target.__name__}"
            )
    return value


def upsert(connection: Any, record: T, ctx: Optional[Context] = None, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> T:
    """Insert ``record`` or update the row it conflicts with, then reconcile its relations.

    The record's primary key is filled in from the written row.
    """
    Inserter(executor_for(connection, ctx, timeout), update_conflict=True).insert(record)
    return record


def insert(connection: Any, record: T, ctx: Optional[Context] = None, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> T:
    """Like :func:`upsert`, but a conflicting row raises instead of being updated."""
    Inserter(executor_for(connection, ctx, timeout), update_conflict=False).insert(record)
    return record


def _update(executor: Executor, record: Any, deep: bool) -> None:
    descriptor = describe(record)
    result = executor.exec(build_update(descriptor))
    if result.rowcount == 0:
        raise NotFoundError(f"update of {descriptor.table} {pk_keys(record)!r} affected no rows")
    if deep:
        Inserter(executor).sync_relations(descriptor)


def update(connection: Any, record: T, ctx: Optional[Context] = None, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> T:
    """Update the row identified by ``record``'s primary key.

    Raises:
        NotFoundError: when no row has that key.
    """
    _update(executor_for(connection, ctx, timeout), record, deep=False)
    return record


def update_deep(connection: Any, record: T, ctx: Optional[Context] = None, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> T:
    """Same as :func:`update`, and also reconcile the record's relations."""
    _update(executor_for(connection, ctx, timeout), record, deep=True)
    return record


def delete(connection: Any, record: Any, ctx: Optional[Context] = None, *, timeout: Optional[float] = DEFAULT_TIMEOUT) -> None:
    """Delete the row identified by ``record``'s primary key.

    Raises:
        ConfigError: when the record type has no primary field.
        InvalidArgError: when a primary field is unset.
        NotFoundError: when no row has that key.
    """
    descriptor = describe(record)
    stmt = build_delete(descriptor)
    result = executor_for(connection, ctx, timeout).exec(stmt)
    if result.rowcount == 0:
        raise NotFoundError(f"delete of {descriptor.table} {pk_keys(record)!r} affected no rows")
