"""Record type introspection: tags and annotations to column and relation metadata."""

from __future__ import annotations

import dataclasses
import enum
import functools
import re
import typing
from collections.abc import Sequence as AbcSequence
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from typing_extensions import Protocol, runtime_checkable

from .errors import ConfigError, RelationTypeError
from .tags import TAG_NAME, TagSettings, parse_tag, split_condition

_FIRST_CAP_REGEX = re.compile(r"(.)([A-Z][a-z]+)")
_ALL_CAP_REGEX = re.compile(r"([a-z0-9])([A-Z])")
_LEGACY_CONDITION_REGEX = re.compile(r"^([^()]*)\((.*)\)$")


@runtime_checkable
class Model(Protocol):
    """Capability every record type must provide: the table it maps to."""

    @classmethod
    def table(cls) -> str:
        ...


class FieldKind(enum.Enum):
    REGULAR = "regular"
    PRIMARY = "primary"
    OMITTED = "omitted"
    RELATION = "relation"


class RelationKind(enum.Enum):
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"


@dataclasses.dataclass(frozen=True)
class RelationInfo:
    """Relation settings of a single field.

    ``column`` is the foreign key column on the owner table for has-one and the
    back-reference column on the target table for has-many. The junction
    attributes are only set for many-to-many.
    """

    kind: RelationKind
    target: type
    column: str = ""
    backref_field: str = ""
    table: str = ""
    junction_columns: Tuple[str, ...] = ()
    target_junction_columns: Tuple[str, ...] = ()
    target_pk_columns: Tuple[str, ...] = ()
    condition_column: str = ""
    condition_value: Any = None
    view: bool = False


@dataclasses.dataclass(frozen=True)
class FieldSpec:
    name: str
    column: str
    kind: FieldKind
    unique: bool = False
    ref: str = ""
    relation: Optional[RelationInfo] = None

    @property
    def is_primary(self) -> bool:
        return self.kind is FieldKind.PRIMARY

    @property
    def is_column(self) -> bool:
        """True when the field is stored in a column of its own table."""
        if self.kind in (FieldKind.REGULAR, FieldKind.PRIMARY):
            return True
        return self.relation is not None and self.relation.kind is RelationKind.HAS_ONE

    def relation_kind(self) -> Optional[RelationKind]:
        return self.relation.kind if self.relation is not None else None


@dataclasses.dataclass(frozen=True)
class ModelSchema:
    """Type-level description of a record type, parsed once per type."""

    model: type
    table: str
    fields: Tuple[FieldSpec, ...]

    @property
    def primary_fields(self) -> Tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.is_primary)

    @property
    def relation_fields(self) -> Tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.kind is FieldKind.RELATION)

    @property
    def column_fields(self) -> Tuple[FieldSpec, ...]:
        return tuple(f for f in self.fields if f.is_column)

    def field(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)


class FieldDescriptor:
    """A field spec bound to one record instance.

    Reads and writes go straight to the record's attribute, so assignments made
    while loading relations are visible on the caller's instance.
    """

    __slots__ = ("spec", "record")

    def __init__(self, spec: FieldSpec, record: Any):
        self.spec = spec
        self.record = record

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def column(self) -> str:
        return self.spec.column

    @property
    def kind(self) -> FieldKind:
        return self.spec.kind

    @property
    def unique(self) -> bool:
        return self.spec.unique

    @property
    def relation(self) -> Optional[RelationInfo]:
        return self.spec.relation

    @property
    def value(self) -> Any:
        return getattr(self.record, self.spec.name)

    @value.setter
    def value(self, new_value: Any) -> None:
        setattr(self.record, self.spec.name, new_value)

    def column_value(self) -> Any:
        """Value written to this field's column.

        For has-one fields this is the identity of the referenced record.
        """
        if self.spec.relation_kind() is RelationKind.HAS_ONE:
            related = self.value
            if related is None:
                return None
            keys = pk_keys(related)
            return keys[0] if keys else None
        return self.value

    def __repr__(self) -> str:
        return f"FieldDescriptor({self.spec.name!r}, kind={self.spec.kind.value}, column={self.spec.column!r})"


class ModelDescriptor:
    """A record instance together with its type's schema."""

    __slots__ = ("schema", "record", "fields")

    def __init__(self, schema: ModelSchema, record: Any):
        self.schema = schema
        self.record = record
        self.fields: List[FieldDescriptor] = [FieldDescriptor(spec, record) for spec in schema.fields]

    @property
    def table(self) -> str:
        return self.schema.table

    @property
    def model(self) -> type:
        return self.schema.model

    def primary_fields(self) -> List[FieldDescriptor]:
        return [f for f in self.fields if f.spec.is_primary]

    def relation_fields(self) -> List[FieldDescriptor]:
        return [f for f in self.fields if f.kind is FieldKind.RELATION]

    def column_fields(self) -> List[FieldDescriptor]:
        return [f for f in self.fields if f.spec.is_column]

    def pk_values(self) -> List[Any]:
        return [f.value for f in self.primary_fields()]


def to_snake_case(name: str) -> str:
    partial = _FIRST_CAP_REGEX.sub(r"\1_\2", name)
    return _ALL_CAP_REGEX.sub(r"\1_\2", partial).lower()


def column(tag: str = "", **kwargs: Any) -> Any:
    """Declare a dataclass field carrying an ``ormlite`` tag.

    Keyword arguments are forwarded to ``dataclasses.field``. Relation fields
    default to ``None`` (has-one) or an empty list (has-many, many-to-many)
    when no default is given.
    """
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[TAG_NAME] = tag
    if "default" not in kwargs and "default_factory" not in kwargs:
        settings = parse_tag(tag)
        if settings.has("has_many") or settings.has("many_to_many"):
            kwargs["default_factory"] = list
        elif settings.has("has_one"):
            kwargs["default"] = None
    return dataclasses.field(metadata=metadata, **kwargs)


def is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, bool):
        return value is False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (str, bytes)):
        return len(value) == 0
    return False


def is_record(value: Any) -> bool:
    return (
        value is not None
        and not isinstance(value, type)
        and dataclasses.is_dataclass(value)
        and isinstance(value, Model)
    )


def _unwrap_optional(annotation: Any) -> Any:
    if typing.get_origin(annotation) is Union:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_collection_annotation(annotation: Any) -> bool:
    origin = typing.get_origin(annotation)
    if origin is None:
        return False
    return isinstance(origin, type) and issubclass(origin, AbcSequence) and not issubclass(origin, (str, bytes))


def _record_type(annotation: Any, owner: type, name: str) -> type:
    if not isinstance(annotation, type) or not dataclasses.is_dataclass(annotation):
        raise ConfigError(f"{owner.__name__}.{name}: relation target {annotation!r} is not a record type")
    if not callable(getattr(annotation, "table", None)):
        raise ConfigError(f"{owner.__name__}.{name}: relation target {annotation.__name__} has no table()")
    return annotation


def _relation_target(kind: RelationKind, annotation: Any, owner: type, name: str) -> type:
    inner = _unwrap_optional(annotation)
    if kind is RelationKind.HAS_ONE:
        if _is_collection_annotation(inner):
            raise RelationTypeError(f"{owner.__name__}.{name}: has_one relation must hold a single record")
        return _record_type(inner, owner, name)
    if not _is_collection_annotation(inner):
        raise RelationTypeError(
            f"{owner.__name__}.{name}: {kind.value} relation must be a list of records, got {inner!r}"
        )
    args = typing.get_args(inner)
    if len(args) != 1:
        raise RelationTypeError(f"{owner.__name__}.{name}: {kind.value} relation needs one element type")
    return _record_type(_unwrap_optional(args[0]), owner, name)


def _parse_condition(settings: TagSettings, table_setting: str, owner: type, name: str) -> Tuple[str, str, Any]:
    table = table_setting
    condition = settings.lookup("condition")
    legacy = _LEGACY_CONDITION_REGEX.match(table_setting)
    if legacy:
        table = legacy.group(1).strip()
        condition = condition or legacy.group(2).strip()
    if not condition:
        return table, "", None
    cond_column, raw_value = split_condition(condition)
    if not cond_column or not raw_value:
        raise ConfigError(f"{owner.__name__}.{name}: junction condition {condition!r} needs field=value")
    if len(raw_value) >= 2 and raw_value[0] == raw_value[-1] == '"':
        return table, cond_column, raw_value[1:-1]
    try:
        return table, cond_column, int(raw_value)
    except ValueError:
        raise ConfigError(
            f"{owner.__name__}.{name}: junction condition value {raw_value!r} must be an integer or a quoted string"
        ) from None


def _parse_field(owner: type, fld: dataclasses.Field, hints: Dict[str, Any]) -> Optional[FieldSpec]:
    if fld.name.startswith("_"):
        return None
    settings = parse_tag(fld.metadata.get(TAG_NAME, ""))
    col = settings.lookup("col")
    column_name = col if col and col != "col" else to_snake_case(fld.name)
    if settings.omitted:
        return FieldSpec(fld.name, column_name, FieldKind.OMITTED)

    ref = settings.lookup("ref")
    ref = "" if ref == "ref" else ref
    unique = settings.has("unique")
    annotation = hints.get(fld.name, fld.type)

    if settings.has("many_to_many"):
        target = _relation_target(RelationKind.MANY_TO_MANY, annotation, owner, fld.name)
        table_setting = settings.lookup("table")
        if not table_setting or table_setting == "table":
            raise ConfigError(f"{owner.__name__}.{fld.name}: many_to_many relation requires table=<junction>")
        table, cond_column, cond_value = _parse_condition(settings, table_setting, owner, fld.name)
        field_setting = settings.lookup("field")
        junction = (field_setting,) if field_setting and field_setting != "field" else ()
        relation = RelationInfo(
            kind=RelationKind.MANY_TO_MANY,
            target=target,
            table=table,
            junction_columns=junction,
            condition_column=cond_column,
            condition_value=cond_value,
            view=settings.has("view"),
        )
        return FieldSpec(fld.name, column_name, FieldKind.RELATION, unique, ref, relation)
    if settings.has("has_many"):
        target = _relation_target(RelationKind.HAS_MANY, annotation, owner, fld.name)
        relation = RelationInfo(kind=RelationKind.HAS_MANY, target=target)
        return FieldSpec(fld.name, column_name, FieldKind.RELATION, unique, ref, relation)
    if settings.has("has_one"):
        target = _relation_target(RelationKind.HAS_ONE, annotation, owner, fld.name)
        relation = RelationInfo(kind=RelationKind.HAS_ONE, target=target, column=column_name)
        return FieldSpec(fld.name, column_name, FieldKind.RELATION, unique, ref, relation)
    if settings.has("primary"):
        return FieldSpec(fld.name, column_name, FieldKind.PRIMARY, unique, ref)
    return FieldSpec(fld.name, column_name, FieldKind.REGULAR, unique, ref)


@functools.lru_cache(maxsize=None)
def _parse_type(model: type) -> ModelSchema:
    if not isinstance(model, type) or not dataclasses.is_dataclass(model):
        raise ConfigError(f"expected a dataclass record type, got {model!r}")
    table_fn = getattr(model, "table", None)
    if not callable(table_fn):
        raise ConfigError(f"{model.__name__} does not provide table()")
    try:
        hints = typing.get_type_hints(model)
    except NameError as err:
        raise ConfigError(f"{model.__name__}: cannot resolve field annotations: {err}") from err
    specs: List[FieldSpec] = []
    for fld in dataclasses.fields(model):
        spec = _parse_field(model, fld, hints)
        if spec is not None:
            specs.append(spec)
    return ModelSchema(model=model, table=table_fn(), fields=tuple(specs))


def _resolve_has_one(owner: ModelSchema, spec: FieldSpec, relation: RelationInfo) -> RelationInfo:
    target = _parse_type(relation.target)
    primaries = target.primary_fields
    if len(primaries) != 1:
        raise ConfigError(
            f"{owner.model.__name__}.{spec.name}: has_one target {relation.target.__name__} "
            f"must have exactly one primary field, found {len(primaries)}"
        )
    return dataclasses.replace(relation, target_pk_columns=(primaries[0].column,))


def _resolve_has_many(owner: ModelSchema, spec: FieldSpec, relation: RelationInfo) -> RelationInfo:
    target = _parse_type(relation.target)
    for candidate in target.fields:
        if candidate.relation_kind() is not RelationKind.HAS_ONE:
            continue
        if issubclass(owner.model, candidate.relation.target):
            return dataclasses.replace(
                relation,
                column=candidate.column,
                backref_field=candidate.name,
                target_pk_columns=tuple(f.column for f in target.primary_fields),
            )
    raise ConfigError(
        f"{owner.model.__name__}.{spec.name}: has_many target {relation.target.__name__} "
        f"has no field referencing {owner.model.__name__}"
    )


def _resolve_many_to_many(owner: ModelSchema, spec: FieldSpec, relation: RelationInfo) -> RelationInfo:
    name = f"{owner.model.__name__}.{spec.name}"
    target = _parse_type(relation.target)
    target_primaries = target.primary_fields
    if not target_primaries:
        raise ConfigError(f"{name}: many_to_many target {relation.target.__name__} has no primary field")
    missing = [f.name for f in target_primaries if not f.ref]
    if missing:
        raise ConfigError(
            f"{name}: primary field(s) {missing} of {relation.target.__name__} need ref=<junction column>"
        )

    owner_primaries = owner.primary_fields
    if not owner_primaries:
        raise ConfigError(f"{name}: owner {owner.model.__name__} has no primary field to scope {relation.table}")
    if relation.junction_columns:
        if len(relation.junction_columns) != len(owner_primaries):
            raise ConfigError(f"{name}: field= names one junction column but the owner key is composite")
        junction = relation.junction_columns
    else:
        if any(not f.ref for f in owner_primaries):
            raise ConfigError(f"{name}: set field=<junction column> or ref= on the owner's primary field(s)")
        junction = tuple(f.ref for f in owner_primaries)

    return dataclasses.replace(
        relation,
        junction_columns=junction,
        target_junction_columns=tuple(f.ref for f in target_primaries),
        target_pk_columns=tuple(f.column for f in target_primaries),
    )


@functools.lru_cache(maxsize=None)
def describe_type(model: type) -> ModelSchema:
    """Parse and validate a record type.

    Relation targets are inspected one hop deep only, so self-referential and
    mutually-referential record types resolve without recursion.

    Raises:
        ConfigError: when tags or relation settings are incomplete.
        RelationTypeError: when a relation field's annotation does not match its kind.
    """
    schema = _parse_type(model)
    resolved: List[FieldSpec] = []
    for spec in schema.fields:
        relation = spec.relation
        if relation is None:
            resolved.append(spec)
            continue
        if relation.kind is RelationKind.HAS_ONE:
            relation = _resolve_has_one(schema, spec, relation)
        elif relation.kind is RelationKind.HAS_MANY:
            relation = _resolve_has_many(schema, spec, relation)
        elif relation.kind is RelationKind.MANY_TO_MANY:
            relation = _resolve_many_to_many(schema, spec, relation)
        else:
            raise ConfigError(f"unsupported relation kind {relation.kind!r}")
        resolved.append(dataclasses.replace(spec, relation=relation))
    return dataclasses.replace(schema, fields=tuple(resolved))


def describe(record: Any) -> ModelDescriptor:
    """Bind the schema of ``record``'s type to the instance."""
    if record is None or isinstance(record, type):
        raise RelationTypeError(f"expected a record instance, got {record!r}")
    return ModelDescriptor(describe_type(type(record)), record)


def pk_keys(record: Any) -> Tuple[Any, ...]:
    """Identity of a record as a tuple of primary values.

    A primary field that holds another record contributes that record's keys.
    """
    keys: List[Any] = []
    for spec in describe_type(type(record)).primary_fields:
        value = getattr(record, spec.name)
        if is_record(value):
            keys.extend(pk_keys(value))
        else:
            keys.append(value)
    return tuple(keys)


def pk_is_null(descriptor: ModelDescriptor) -> bool:
    return all(is_zero(value) for value in descriptor.pk_values())


def new_record(model: Type[Any]) -> Any:
    """Create an empty instance with every field at its declared default."""
    record = model.__new__(model)
    for fld in dataclasses.fields(model):
        if fld.default is not dataclasses.MISSING:
            value = fld.default
        elif fld.default_factory is not dataclasses.MISSING:  # type: ignore[misc]
            value = fld.default_factory()  # type: ignore[misc]
        else:
            value = None
        object.__setattr__(record, fld.name, value)
    return record
