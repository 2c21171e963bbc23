"""Parameterized SQL builder for ormlite record types."""

from __future__ import annotations

import dataclasses
import re
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from typing_extensions import Literal, TypedDict

from .errors import ConfigError, InvalidArgError
from .model import (
    FieldKind,
    FieldSpec,
    ModelDescriptor,
    ModelSchema,
    RelationInfo,
    RelationKind,
    describe_type,
    is_zero,
    pk_is_null,
    pk_keys,
)

# Glue between multiple predicates after WHERE
AND = " AND "
OR = " OR "

DEFAULT_RELATION_DEPTH = 1
DEFAULT_TIMEOUT = 5.0

_DIVIDERS = {"and": AND, "or": OR}
_ORDER_DIRECTIONS = ("asc", "desc")
_IDENTIFIER_REGEX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

Where = Dict[str, Any]


class Statement(NamedTuple):
    sql: str
    args: List[Any]
    fields: Tuple[FieldSpec, ...] = ()


class StrictString:
    """Text value compared with ``=`` instead of the default ``LIKE`` match."""

    __slots__ = ("value",)

    def __init__(self, value: str):
        if not isinstance(value, str):
            raise InvalidArgError(f"StrictString requires text, got {type(value).__name__}")
        self.value = value

    def __repr__(self) -> str:
        return f"StrictString({self.value!r})"


class Operator:
    """Numeric value wrapped with a comparison operator."""

    __slots__ = ("value",)
    SQL = "="

    def __init__(self, value: Any):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidArgError(f"{type(self).__name__} requires a number, got {value!r}")
        self.value = value

    def render(self, column: str) -> Tuple[str, List[Any]]:
        return f"{column} {self.SQL} ?", [self.value]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value!r})"


class Greater(Operator):
    SQL = ">"


class GreaterOrEqual(Operator):
    SQL = ">="


class Less(Operator):
    SQL = "<"


class LessOrEqual(Operator):
    SQL = "<="


class NotEqual(Operator):
    SQL = "!="


class BitwiseAnd(Operator):
    """Matches rows where ``column & value`` has any bit set."""

    def __init__(self, value: int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgError(f"{type(self).__name__} requires an integer mask, got {value!r}")
        self.value = value

    def render(self, column: str) -> Tuple[str, List[Any]]:
        return f"({column} & ?) != 0", [self.value]


class BitwiseAndStrict(BitwiseAnd):
    """Matches rows where every bit of ``value`` is set in ``column``."""

    def render(self, column: str) -> Tuple[str, List[Any]]:
        return f"({column} & ?) = ?", [self.value, self.value]


@dataclasses.dataclass
class OrderBy:
    field: str
    order: str = "asc"


class OrderByPayload(TypedDict):
    field: str
    order: str


class OptionsPayload(TypedDict, total=False):
    where: Dict[str, Any]
    divider: Literal["and", "or"]
    limit: int
    offset: int
    order_by: OrderByPayload
    relation_depth: int
    columns: List[str]


@dataclasses.dataclass
class QueryOptions:
    """Options for a single read call.

    ``relation_depth`` bounds how many relation hops are loaded; 0 disables
    relation loading. ``timeout`` is the deadline, in seconds, of a call that
    is not given an explicit context.
    """

    where: Where = dataclasses.field(default_factory=dict)
    divider: Optional[str] = None
    limit: int = 0
    offset: int = 0
    order_by: Optional[OrderBy] = None
    relation_depth: int = DEFAULT_RELATION_DEPTH
    columns: Optional[List[str]] = None
    related_to: List[Any] = dataclasses.field(default_factory=list)
    timeout: Optional[float] = DEFAULT_TIMEOUT

    def validate(self) -> QueryOptions:
        if self.relation_depth < 0:
            raise InvalidArgError("relation_depth must be >= 0")
        if self.limit < 0 or self.offset < 0:
            raise InvalidArgError("limit and offset must be >= 0")
        if self.divider is not None:
            _normalize_divider(self.divider)
        if self.order_by is not None:
            _validate_order(self.order_by)
        return self

    def child(self, where: Where) -> QueryOptions:
        """Options for the next relation hop: one level shallower, no paging."""
        return QueryOptions(
            where=where,
            divider=AND,
            relation_depth=max(self.relation_depth - 1, 0),
            timeout=self.timeout,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> QueryOptions:
        if not isinstance(payload, Mapping):
            raise InvalidArgError("options payload must be a mapping")
        order = payload.get("order_by")
        order_by = None
        if order is not None:
            if not isinstance(order, Mapping) or "field" not in order:
                raise InvalidArgError("order_by must be a mapping with a 'field' key")
            order_by = OrderBy(field=order["field"], order=order.get("order") or "asc")
        divider = payload.get("divider")
        options = cls(
            where=dict(payload.get("where") or {}),
            divider=_normalize_divider(divider) if divider else None,
            limit=int(payload.get("limit") or 0),
            offset=int(payload.get("offset") or 0),
            order_by=order_by,
            relation_depth=int(payload.get("relation_depth", DEFAULT_RELATION_DEPTH)),
            columns=list(payload["columns"]) if payload.get("columns") is not None else None,
        )
        return options.validate()

    def to_dict(self) -> OptionsPayload:
        payload: OptionsPayload = {
            "where": dict(self.where),
            "limit": self.limit,
            "offset": self.offset,
            "relation_depth": self.relation_depth,
        }
        if self.divider is not None:
            payload["divider"] = "or" if _normalize_divider(self.divider) == OR else "and"
        if self.order_by is not None:
            payload["order_by"] = {"field": self.order_by.field, "order": self.order_by.order}
        if self.columns is not None:
            payload["columns"] = list(self.columns)
        return payload


def default_options() -> QueryOptions:
    return QueryOptions(relation_depth=DEFAULT_RELATION_DEPTH, divider=AND)


def with_where(options: QueryOptions, where: Where) -> QueryOptions:
    return dataclasses.replace(options, where=dict(where))


def with_limit(options: QueryOptions, limit: int) -> QueryOptions:
    return dataclasses.replace(options, limit=limit)


def with_offset(options: QueryOptions, offset: int) -> QueryOptions:
    """Set the offset; ignored unless the options already carry a limit."""
    if options.limit == 0:
        return options
    return dataclasses.replace(options, offset=offset)


def with_order(options: QueryOptions, by: OrderBy) -> QueryOptions:
    return dataclasses.replace(options, order_by=by)


def _normalize_divider(divider: str) -> str:
    if not isinstance(divider, str):
        raise InvalidArgError(f"divider must be 'and' or 'or', got {divider!r}")
    normalized = _DIVIDERS.get(divider.strip().lower())
    if normalized is None:
        raise InvalidArgError(f"divider must be 'and' or 'or', got {divider!r}")
    return normalized


def _validate_order(order_by: OrderBy) -> None:
    if not _IDENTIFIER_REGEX.match(order_by.field or ""):
        raise InvalidArgError(f"invalid order_by field {order_by.field!r}")
    if (order_by.order or "").lower() not in _ORDER_DIRECTIONS:
        raise InvalidArgError(f"order must be 'asc' or 'desc', got {order_by.order!r}")


def _where_columns(key: str) -> List[str]:
    columns = [part.strip() for part in key.split(",")]
    for column_name in columns:
        if not _IDENTIFIER_REGEX.match(column_name):
            raise InvalidArgError(f"invalid where key {key!r}")
    return columns


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _flatten_rows(values: Iterable[Any], width: int, key: str) -> List[Any]:
    flat: List[Any] = []
    for item in values:
        if _is_collection(item):
            if len(item) != width:
                raise InvalidArgError(f"row value for {key!r} must have {width} elements")
            flat.extend(item)
        else:
            flat.append(item)
    if len(flat) % width != 0:
        raise InvalidArgError(f"values for {key!r} must come in groups of {width}")
    return flat


def render_predicate(key: str, value: Any, limit: int = 0) -> Tuple[str, List[Any]]:
    """Render one ``where`` entry as SQL text and its parameters."""
    columns = _where_columns(key)
    if len(columns) == 1:
        key = columns[0]
    if _is_collection(value):
        items = list(value)
        if len(columns) > 1:
            flat = _flatten_rows(items, len(columns), key)
            if not flat:
                return "1 = 0", []
            row = f"({','.join(columns)}) = ({_placeholders(len(columns))})"
            count = len(flat) // len(columns)
            if count == 1:
                return row, flat
            return "(" + OR.join([row] * count) + ")", flat
        if limit > 0:
            items = items[:limit]
        if not items:
            return "1 = 0", []
        return f"{key} IN ({_placeholders(len(items))})", items
    if isinstance(value, StrictString):
        return f"{key} = ?", [value.value]
    if isinstance(value, str):
        return f"{key} LIKE ?", [f"%{value}%"]
    if isinstance(value, Operator):
        return value.render(key)
    if value is None:
        return f"{key} IS NULL", []
    return f"{key} = ?", [value]


def exact(value: Any) -> Any:
    """Wrap text so that it is matched with ``=`` rather than ``LIKE``."""
    if isinstance(value, str):
        return StrictString(value)
    return value


def _related_to_predicate(schema: ModelSchema, related: Any) -> Tuple[str, List[Any]]:
    related_type = type(related)
    for spec in schema.relation_fields:
        relation = spec.relation
        if relation.kind is not RelationKind.MANY_TO_MANY or not issubclass(related_type, relation.target):
            continue
        pk_columns = [f.column for f in schema.primary_fields]
        inner_where = [f"{c} = ?" for c in relation.target_junction_columns]
        args = list(pk_keys(related))
        if relation.condition_column:
            inner_where.append(f"{relation.condition_column} = ?")
            args.append(relation.condition_value)
        subquery = "SELECT {} FROM {} WHERE {}".format(
            ",".join(relation.junction_columns), relation.table, AND.join(inner_where)
        )
        target = pk_columns[0] if len(pk_columns) == 1 else f"({','.join(pk_columns)})"
        return f"{target} IN ({subquery})", args
    raise ConfigError(f"{schema.model.__name__} has no many_to_many relation to {related_type.__name__}")


def build_where(schema: ModelSchema, options: Optional[QueryOptions]) -> Tuple[str, List[Any]]:
    """Render the WHERE clause (with leading space) for ``options``."""
    if options is None:
        return "", []
    predicates: List[str] = []
    args: List[Any] = []
    for key, value in (options.where or {}).items():
        sql, params = render_predicate(key, value, options.limit)
        predicates.append(sql)
        args.extend(params)
    if len(predicates) > 1 and not options.divider:
        raise ConfigError("multiple where predicates require a divider (AND or OR)")

    clauses: List[str] = []
    if predicates:
        joined = _normalize_divider(options.divider or "and").join(predicates)
        clauses.append(f"({joined})" if len(predicates) > 1 and options.related_to else joined)
    for related in options.related_to or []:
        sql, params = _related_to_predicate(schema, related)
        clauses.append(sql)
        args.extend(params)
    if not clauses:
        return "", []
    return " WHERE " + AND.join(clauses), args


def _schema_of(model: Union[type, ModelDescriptor]) -> ModelSchema:
    if isinstance(model, ModelDescriptor):
        return model.schema
    return describe_type(model)


def _projected_fields(schema: ModelSchema, columns: Optional[Sequence[str]]) -> Tuple[FieldSpec, ...]:
    fields = schema.column_fields
    if columns is None:
        return fields
    allowed = set(columns)
    return tuple(f for f in fields if f.is_primary or f.column in allowed or f.name in allowed)


def build_select(model: Union[type, ModelDescriptor], options: Optional[QueryOptions] = None) -> Statement:
    schema = _schema_of(model)
    if options is not None:
        options.validate()
    fields = _projected_fields(schema, options.columns if options else None)
    if not fields:
        raise ConfigError(f"{schema.model.__name__} has no columns to select")
    where, args = build_where(schema, options)
    sql = f"SELECT {','.join(f.column for f in fields)} FROM {schema.table}{where}"
    if options is not None:
        if options.order_by is not None:
            sql += f" ORDER BY {options.order_by.field} {options.order_by.order.upper()}"
        if options.limit:
            sql += f" LIMIT {int(options.limit)}"
            if options.offset:
                sql += f" OFFSET {int(options.offset)}"
        elif options.offset:
            sql += f" LIMIT -1 OFFSET {int(options.offset)}"
    return Statement(sql, args, fields)


def build_count(model: Union[type, ModelDescriptor], options: Optional[QueryOptions] = None) -> Statement:
    schema = _schema_of(model)
    if options is not None:
        options.validate()
    where, args = build_where(schema, options)
    return Statement(f"SELECT count(*) FROM {schema.table}{where}", args)


def _writable_columns(descriptor: ModelDescriptor) -> Tuple[List[str], List[Any]]:
    columns: List[str] = []
    args: List[Any] = []
    for f in descriptor.column_fields():
        if f.kind is FieldKind.PRIMARY and is_zero(f.value):
            continue
        columns.append(f.column)
        args.append(f.column_value())
    return columns, args


def conflict_target(descriptor: ModelDescriptor) -> List[str]:
    """Columns an upsert resolves conflicts on.

    The primary columns when the primary key is set, otherwise the unique
    columns, otherwise none.
    """
    primaries = descriptor.primary_fields()
    if primaries and not pk_is_null(descriptor):
        return [f.column for f in primaries]
    return [f.column for f in descriptor.column_fields() if f.unique and f.kind is not FieldKind.PRIMARY]


def build_upsert(descriptor: ModelDescriptor, update_conflict: bool = True) -> Optional[Statement]:
    """Build the insert (or insert-or-update) statement for a record.

    Returns None when the record has nothing to write.
    """
    columns, args = _writable_columns(descriptor)
    if not columns:
        if descriptor.primary_fields():
            return Statement(f"INSERT INTO {descriptor.table} DEFAULT VALUES", [])
        return None
    sql = "INSERT INTO {}({}) VALUES({})".format(descriptor.table, ",".join(columns), _placeholders(len(columns)))
    target = conflict_target(descriptor) if update_conflict else []
    if target:
        updates = [f"{c} = excluded.{c}" for c in columns if c not in target]
        if updates:
            sql += " ON CONFLICT({}) DO UPDATE SET {}".format(",".join(target), ",".join(updates))
        else:
            sql += " ON CONFLICT({}) DO NOTHING".format(",".join(target))
    return Statement(sql, args)


def build_identity_lookup(descriptor: ModelDescriptor) -> Statement:
    """Select the primary key of the row matching the record's current values.

    The most recent matching row wins when several rows carry the same values.
    """
    primaries = descriptor.primary_fields()
    if not primaries:
        raise ConfigError(f"{descriptor.model.__name__} has no primary field")
    where: List[str] = []
    args: List[Any] = []
    for column_name, value in zip(*_writable_columns(descriptor)):
        if value is None:
            where.append(f"{column_name} IS NULL")
        else:
            where.append(f"{column_name} = ?")
            args.append(value)
    pk_columns = [f.column for f in primaries]
    sql = f"SELECT {','.join(pk_columns)} FROM {descriptor.table}"
    if where:
        sql += " WHERE " + AND.join(where)
    order = ",".join(f"{c} DESC" for c in pk_columns)
    return Statement(f"{sql} ORDER BY {order} LIMIT 1", args)


def _primary_where(descriptor: ModelDescriptor, action: str) -> Tuple[List[str], List[Any]]:
    primaries = descriptor.primary_fields()
    if not primaries:
        raise ConfigError(f"{action} failed: {descriptor.model.__name__} does not have a primary key")
    where: List[str] = []
    args: List[Any] = []
    for f in primaries:
        if is_zero(f.value):
            raise InvalidArgError(f"{action} failed: primary field {f.name!r} has zero value")
        where.append(f"{f.column} = ?")
        args.append(f.value)
    return where, args


def build_update(descriptor: ModelDescriptor) -> Statement:
    where, ids = _primary_where(descriptor, "update")
    assignments: List[str] = []
    args: List[Any] = []
    for f in descriptor.column_fields():
        if f.kind is FieldKind.PRIMARY:
            continue
        assignments.append(f"{f.column} = ?")
        args.append(f.column_value())
    if not assignments:
        first = descriptor.primary_fields()[0].column
        assignments.append(f"{first} = {first}")
    sql = "UPDATE {} SET {} WHERE {}".format(descriptor.table, ",".join(assignments), AND.join(where))
    return Statement(sql, args + ids)


def build_delete(descriptor: ModelDescriptor) -> Statement:
    where, args = _primary_where(descriptor, "delete")
    return Statement(f"DELETE FROM {descriptor.table} WHERE {AND.join(where)}", args)


def _owner_scope(relation: RelationInfo, owner_keys: Sequence[Any]) -> Tuple[List[str], List[Any]]:
    if len(owner_keys) != len(relation.junction_columns):
        raise InvalidArgError(
            f"junction {relation.table} expects {len(relation.junction_columns)} owner key(s), got {len(owner_keys)}"
        )
    where = [f"{c} = ?" for c in relation.junction_columns]
    args = list(owner_keys)
    if relation.condition_column:
        where.append(f"{relation.condition_column} = ?")
        args.append(relation.condition_value)
    return where, args


def build_junction_select(relation: RelationInfo, owner_keys: Sequence[Any]) -> Statement:
    """Select the target identities linked to an owner in a junction table."""
    where, args = _owner_scope(relation, owner_keys)
    sql = "SELECT {} FROM {} WHERE {}".format(
        ",".join(relation.target_junction_columns), relation.table, AND.join(where)
    )
    return Statement(sql, args)


def build_junction_insert(
    relation: RelationInfo, owner_keys: Sequence[Any], target_keys: Sequence[Any]
) -> Statement:
    columns = list(relation.target_junction_columns)
    args = list(target_keys)
    if relation.condition_column:
        columns.append(relation.condition_column)
        args.append(relation.condition_value)
    columns.extend(relation.junction_columns)
    args.extend(owner_keys)
    sql = "INSERT INTO {}({}) VALUES({})".format(relation.table, ",".join(columns), _placeholders(len(columns)))
    return Statement(sql, args)


def build_junction_delete(
    relation: RelationInfo, owner_keys: Sequence[Any], target_keys: Sequence[Any]
) -> Statement:
    where = [f"{c} = ?" for c in relation.target_junction_columns]
    args = list(target_keys)
    scope, scope_args = _owner_scope(relation, owner_keys)
    sql = "DELETE FROM {} WHERE {}".format(relation.table, AND.join(where + scope))
    return Statement(sql, args + scope_args)
