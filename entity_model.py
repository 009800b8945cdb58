"""Declarative entity model and extraction of table/column descriptors."""

from __future__ import annotations

import dataclasses
import enum
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc


class ModelError(ValueError):
    """The declared model is malformed. Not recoverable at runtime."""


class Placement(enum.Enum):
    TENANT = "tenant"
    DEFAULT = "default"


class ColumnType(enum.Enum):
    STRING = "string"
    INT32 = "int32"
    INT64 = "int64"
    DOUBLE = "double"
    BOOL = "bool"
    DATETIME = "datetime"
    BYTES = "bytes"


TYPE_ALIASES: dict[str, ColumnType] = {
    "string": ColumnType.STRING,
    "str": ColumnType.STRING,
    "int": ColumnType.INT32,
    "int32": ColumnType.INT32,
    "integer": ColumnType.INT32,
    "int64": ColumnType.INT64,
    "long": ColumnType.INT64,
    "bigint": ColumnType.INT64,
    "double": ColumnType.DOUBLE,
    "float": ColumnType.DOUBLE,
    "bool": ColumnType.BOOL,
    "boolean": ColumnType.BOOL,
    "datetime": ColumnType.DATETIME,
    "bytes": ColumnType.BYTES,
}

REFERENCE_TYPES = {ColumnType.STRING, ColumnType.BYTES}
INTEGER_TYPES = {ColumnType.INT32, ColumnType.INT64}
IDENTITY_COLUMN_NAME = "ID"


@dataclasses.dataclass(frozen=True)
class IndexSpec:
    unique: bool = False


@dataclasses.dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    col_type: ColumnType
    nullable: bool
    length: int | None = None
    required: bool = False
    identity: bool = False
    index: IndexSpec | None = None
    foreign_key: bool = False

    @property
    def is_key(self) -> bool:
        return self.identity or self.foreign_key


@dataclasses.dataclass(frozen=True)
class ForeignKeyRef:
    column: str
    table: str


@dataclasses.dataclass(frozen=True)
class EntityDescriptor:
    name: str
    table: str
    schema: str | None
    columns: tuple[ColumnDescriptor, ...]
    foreign_keys: tuple[ForeignKeyRef, ...] = ()

    def column(self, name: str) -> ColumnDescriptor | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def dependencies(self) -> list[str]:
        """Foreign tables this entity must be created after (self references excluded)."""
        deps: list[str] = []
        for fk in self.foreign_keys:
            if fk.table != self.table and fk.table not in deps:
                deps.append(fk.table)
        return deps


# Declarations. These are what a model author writes; descriptors are derived
# from them by extract_model.


@dataclasses.dataclass
class Field:
    name: str
    type: str
    column: str | None = None
    nullable: bool = False
    max_length: int | None = None
    required: bool = False
    key: bool | None = None
    index: IndexSpec | None = None
    references: str | None = None
    not_mapped: bool = False
    read_only: bool = False

    @property
    def column_name(self) -> str:
        return self.column or self.name


@dataclasses.dataclass
class Entity:
    name: str
    table: str | None
    fields: list[Field]
    schema: str | None = None


@dataclasses.dataclass
class Model:
    name: str
    entities: list[Entity]

    def find(self, entity_name: str) -> Entity | None:
        for ent in self.entities:
            if ent.name == entity_name:
                return ent
        return None


def field(name: str, type: str, **kwargs: Any) -> Field:
    index = kwargs.pop("index", None)
    if index is True:
        index = IndexSpec()
    elif isinstance(index, dict):
        index = IndexSpec(unique=bool(index.get("unique", False)))
    elif index is False:
        index = None
    return Field(name=name, type=type, index=index, **kwargs)


def entity(name: str, table: str | None, *fields: Field, schema: str | None = None) -> Entity:
    return Entity(name=name, table=table, fields=list(fields), schema=schema)


def resolve_type(f: Field, entity_name: str) -> ColumnType:
    col_type = TYPE_ALIASES.get(str(f.type).strip().lower())
    if col_type is None:
        raise ModelError(f"Unknown type {f.type!r} for {entity_name}.{f.name}")
    return col_type


def is_identity(f: Field, col_type: ColumnType) -> bool:
    if f.key is not None:
        return f.key
    return f.column_name == IDENTITY_COLUMN_NAME and col_type in INTEGER_TYPES


def is_nullable(f: Field, col_type: ColumnType, identity: bool) -> bool:
    if identity:
        return False
    if col_type in REFERENCE_TYPES:
        return not f.required
    return f.nullable and not f.required


def table_name(ent: Entity) -> str:
    if not ent.table or not ent.table.strip():
        raise ModelError(f"Missing table name on entity {ent.name}")
    return ent.table


def mapped_fields(ent: Entity) -> list[Field]:
    return [f for f in ent.fields if not f.not_mapped and not f.read_only]


def build_column(f: Field, entity_name: str) -> ColumnDescriptor:
    col_type = resolve_type(f, entity_name)
    identity = is_identity(f, col_type)
    if identity and col_type not in INTEGER_TYPES:
        raise ModelError(f"Key {entity_name}.{f.name} must be int32 or int64, not {col_type.value}")
    length = f.max_length if col_type == ColumnType.STRING and f.max_length and f.max_length > 0 else None
    return ColumnDescriptor(
        name=f.column_name,
        col_type=col_type,
        nullable=is_nullable(f, col_type, identity),
        length=length,
        required=f.required,
        identity=identity,
        index=f.index,
        foreign_key=f.references is not None,
    )


def build_descriptor(model: Model, ent: Entity) -> EntityDescriptor:
    table = table_name(ent)
    columns: list[ColumnDescriptor] = []
    foreign_keys: list[ForeignKeyRef] = []
    seen: set[str] = set()

    for f in mapped_fields(ent):
        col = build_column(f, ent.name)
        if col.name in seen:
            raise ModelError(f"Duplicate column {col.name} on entity {ent.name}")
        seen.add(col.name)
        columns.append(col)

        if f.references is None:
            continue
        target = model.find(f.references)
        if target is None:
            raise ModelError(f"{ent.name}.{f.name} references unknown entity {f.references}")
        foreign_keys.append(ForeignKeyRef(column=col.name, table=table_name(target)))

    return EntityDescriptor(
        name=ent.name,
        table=table,
        schema=ent.schema or None,
        columns=tuple(columns),
        foreign_keys=tuple(foreign_keys),
    )


def extract_model(model: Model, placement: Placement) -> list[EntityDescriptor]:
    """Return descriptors for the entities of ``model`` living in ``placement``.

    Entities without a schema are replicated into every tenant schema; entities
    that name a schema live once in the default (shared) schema.
    """
    out: list[EntityDescriptor] = []
    for ent in model.entities:
        shared = bool(ent.schema)
        if (placement == Placement.DEFAULT) != shared:
            continue
        out.append(build_descriptor(model, ent))
    return out


def parse_field(raw: dict, entity_name: str) -> Field:
    if "name" not in raw or "type" not in raw:
        raise ModelError(f"Field on {entity_name} needs name and type: {raw}")
    options = {k: v for k, v in raw.items() if k not in ("name", "type")}
    unknown = set(options) - {f.name for f in dataclasses.fields(Field)}
    if unknown:
        raise ModelError(f"Unknown field options on {entity_name}.{raw['name']}: {sorted(unknown)}")
    return field(str(raw["name"]), str(raw["type"]), **options)


def parse_model(data: dict, name: str = "model") -> Model:
    entities: list[Entity] = []
    for raw in data.get("entities", []) or []:
        ent_name = str(raw.get("name") or raw.get("table") or "")
        if not ent_name:
            raise ModelError(f"Entity declaration without a name: {raw}")
        fields = [parse_field(f, ent_name) for f in raw.get("fields", []) or []]
        entities.append(Entity(name=ent_name, table=raw.get("table"), fields=fields, schema=raw.get("schema")))
    return Model(name=str(data.get("name", name)), entities=entities)


def load_model(path: Path) -> Model:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return parse_model(data, name=path.stem)


@dataclasses.dataclass
class MigrationConfig:
    model: Model
    vendor: str = "postgres"
    default_schema: str | None = None
    reference_schema: str | None = None
    strict: bool = False
    diff_each_schema: bool = False


def load_config(path: Path) -> MigrationConfig:
    """Read a model file along with the migration settings stored beside it."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return MigrationConfig(
        model=parse_model(data, name=path.stem),
        vendor=str(data.get("vendor", "postgres")),
        default_schema=data.get("default_schema"),
        reference_schema=data.get("reference_schema"),
        strict=bool(data.get("strict", False)),
        diff_each_schema=bool(data.get("diff_each_schema", False)),
    )
