"""Vendor-specific DDL fragments and statement builders.

Every statement produced here refers to its schema through the ``{0}``
placeholder so that one script can be replayed against many schemas.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod

from entity_model import ColumnDescriptor, ColumnType, EntityDescriptor

SCHEMA_PLACEHOLDER = "{0}"


class VendorKind(str, enum.Enum):
    SQLSERVER = "sqlserver"
    POSTGRES = "postgres"


# Catalog data_type names (lower case) to semantic types, for both vendors.
NATIVE_TYPES: dict[str, ColumnType] = {
    "text": ColumnType.STRING,
    "nvarchar": ColumnType.STRING,
    "varchar": ColumnType.STRING,
    "character varying": ColumnType.STRING,
    "datetime": ColumnType.DATETIME,
    "timestamp": ColumnType.DATETIME,
    "timestamp without time zone": ColumnType.DATETIME,
    "int": ColumnType.INT32,
    "integer": ColumnType.INT32,
    "bigint": ColumnType.INT64,
    "float": ColumnType.DOUBLE,
    "double precision": ColumnType.DOUBLE,
    "bit": ColumnType.BOOL,
    "boolean": ColumnType.BOOL,
    "bytea": ColumnType.BYTES,
}


def native_type(data_type: str | None) -> ColumnType | None:
    if not data_type:
        return None
    return NATIVE_TYPES.get(data_type.strip().lower())


class Dialect(ABC):
    kind: VendorKind
    default_schema: str
    open_quote = '"'
    close_quote = '"'

    def quote(self, identifier: str) -> str:
        escaped = identifier.replace(self.close_quote, self.close_quote * 2)
        return f"{self.open_quote}{escaped}{self.close_quote}"

    def table_ref(self, table: str) -> str:
        return f"{self.quote(SCHEMA_PLACEHOLDER)}.{self.quote(table)}"

    def index_name(self, table: str, column: str) -> str:
        return f"IX_{SCHEMA_PLACEHOLDER}_{table}_{column}"

    def native_type(self, data_type: str | None) -> ColumnType | None:
        return native_type(data_type)

    # Type mapping

    @abstractmethod
    def string_type(self, length: int | None) -> str:
        ...

    @abstractmethod
    def identity_type(self, column: ColumnDescriptor) -> str | None:
        ...

    @abstractmethod
    def scalar_types(self) -> dict[ColumnType, str]:
        ...

    def column_type(self, column: ColumnDescriptor) -> str | None:
        if column.col_type == ColumnType.STRING:
            return self.string_type(column.length)
        if column.identity:
            return self.identity_type(column)
        return self.scalar_types().get(column.col_type)

    # Defaults

    @abstractmethod
    def utc_now(self) -> str:
        ...

    def zero_value(self, column: ColumnDescriptor) -> str:
        if column.col_type in (ColumnType.INT32, ColumnType.INT64, ColumnType.DOUBLE):
            return "0"
        if column.col_type == ColumnType.DATETIME:
            return self.utc_now()
        return "''"

    def has_default(self, column: ColumnDescriptor) -> bool:
        """Identity, foreign-key and nullable columns never carry a default."""
        if column.is_key or column.nullable:
            return False
        return self.column_type(column) is not None

    def column_default(self, table: str, column: ColumnDescriptor) -> str | None:
        if not self.has_default(column):
            return None
        return f"DEFAULT({self.zero_value(column)})"

    def column_definition(self, table: str, column: ColumnDescriptor) -> str | None:
        col_type = self.column_type(column)
        if col_type is None:
            return None
        parts = [self.quote(column.name), col_type, "NULL" if column.nullable else "NOT NULL"]
        default = self.column_default(table, column)
        if default:
            parts.append(default)
        return " ".join(parts)

    # Statements

    @abstractmethod
    def create_schema(self) -> str:
        ...

    @abstractmethod
    def create_table(self, entity: EntityDescriptor, columns: list[ColumnDescriptor]) -> list[str]:
        ...

    @abstractmethod
    def drop_table(self, table: str) -> str:
        ...

    @abstractmethod
    def add_column(self, table: str, column: ColumnDescriptor) -> list[str]:
        ...

    @abstractmethod
    def drop_column(self, table: str, name: str, drop_default: bool = False, indexed: bool = False) -> list[str]:
        ...

    @abstractmethod
    def change_column_type(self, table: str, column: ColumnDescriptor, nullable: bool) -> str:
        ...

    @abstractmethod
    def set_not_null(self, table: str, column: ColumnDescriptor) -> list[str]:
        ...

    @abstractmethod
    def drop_not_null(self, table: str, column: ColumnDescriptor, drop_default: bool) -> list[str]:
        ...

    def backfill(self, table: str, column: ColumnDescriptor) -> str:
        name = self.quote(column.name)
        return f"UPDATE {self.table_ref(table)} SET {name} = {self.zero_value(column)} WHERE {name} IS NULL;"

    def create_index(self, table: str, column: ColumnDescriptor) -> str | None:
        if column.index is None:
            return None
        unique = "UNIQUE " if column.index.unique else ""
        return (
            f"CREATE {unique}INDEX {self.quote(self.index_name(table, column.name))} "
            f"ON {self.table_ref(table)} ({self.quote(column.name)});"
        )

    @abstractmethod
    def drop_index(self, table: str, column_name: str) -> str:
        ...


class SqlServerDialect(Dialect):
    kind = VendorKind.SQLSERVER
    default_schema = "dbo"
    open_quote = "["
    close_quote = "]"

    SCALAR_TYPES = {
        ColumnType.INT32: "INTEGER",
        ColumnType.INT64: "BIGINT",
        ColumnType.DOUBLE: "FLOAT",
        ColumnType.BOOL: "BIT",
        ColumnType.DATETIME: "DATETIME",
    }

    def scalar_types(self) -> dict[ColumnType, str]:
        return self.SCALAR_TYPES

    def string_type(self, length: int | None) -> str:
        return f"NVARCHAR({length})" if length else "NVARCHAR(MAX)"

    def identity_type(self, column: ColumnDescriptor) -> str | None:
        base = self.SCALAR_TYPES.get(column.col_type)
        if base is None:
            return None
        return f"{base} PRIMARY KEY IDENTITY(10000,1)"

    def utc_now(self) -> str:
        return "GETUTCDATE()"

    def zero_value(self, column: ColumnDescriptor) -> str:
        if column.col_type == ColumnType.BOOL:
            return "0"
        return super().zero_value(column)

    def constraint_name(self, table: str, column: str) -> str:
        return f"DF_{SCHEMA_PLACEHOLDER}_{table}_{column}"

    def column_default(self, table: str, column: ColumnDescriptor) -> str | None:
        if not self.has_default(column):
            return None
        name = self.quote(self.constraint_name(table, column.name))
        return f"CONSTRAINT {name} DEFAULT({self.zero_value(column)})"

    def create_schema(self) -> str:
        return (
            f"IF NOT EXISTS ( SELECT * FROM sys.schemas WHERE name = '{SCHEMA_PLACEHOLDER}' ) "
            f"EXEC( 'CREATE SCHEMA [{SCHEMA_PLACEHOLDER}]' );"
        )

    def create_table(self, entity: EntityDescriptor, columns: list[ColumnDescriptor]) -> list[str]:
        definitions = [self.column_definition(entity.table, c) for c in columns]
        indexes = [self.create_index(entity.table, c) for c in columns]
        lines = [
            f"IF NOT EXISTS (SELECT * FROM sysobjects WHERE id = object_id(N'{self.table_ref(entity.table)}'))",
            "BEGIN",
            f"  CREATE TABLE {self.table_ref(entity.table)}",
            "  (",
            "    " + ",\n    ".join(d for d in definitions if d),
            "  );",
        ]
        lines.extend(f"  {idx}" for idx in indexes if idx)
        lines.append("END;")
        return ["\n".join(lines)]

    def drop_table(self, table: str) -> str:
        return f"DROP TABLE {self.table_ref(table)};"

    def add_column(self, table: str, column: ColumnDescriptor) -> list[str]:
        definition = self.column_definition(table, column)
        if definition is None:
            return []
        out = [f"ALTER TABLE {self.table_ref(table)} ADD {definition};"]
        index = self.create_index(table, column)
        if index:
            out.append(index)
        return out

    def drop_constraint(self, table: str, column: str) -> str:
        name = self.quote(self.constraint_name(table, column))
        return f"ALTER TABLE {self.table_ref(table)} DROP CONSTRAINT {name};"

    def drop_column(self, table: str, name: str, drop_default: bool = False, indexed: bool = False) -> list[str]:
        # DROP COLUMN fails while an index or default constraint depends on the column.
        out: list[str] = []
        if indexed:
            out.append(self.drop_index(table, name))
        if drop_default:
            out.append(self.drop_constraint(table, name))
        out.append(f"ALTER TABLE {self.table_ref(table)} DROP COLUMN {self.quote(name)};")
        return out

    def alter_column(self, table: str, column: ColumnDescriptor, nullable: bool) -> str:
        null = "NULL" if nullable else "NOT NULL"
        return (
            f"ALTER TABLE {self.table_ref(table)} ALTER COLUMN {self.quote(column.name)} "
            f"{self.column_type(column)} {null};"
        )

    def change_column_type(self, table: str, column: ColumnDescriptor, nullable: bool) -> str:
        # ALTER COLUMN resets nullability unless it is restated.
        return self.alter_column(table, column, nullable)

    def set_not_null(self, table: str, column: ColumnDescriptor) -> list[str]:
        out: list[str] = []
        default = self.column_default(table, column)
        if default:
            out.append(self.backfill(table, column))
            out.append(f"ALTER TABLE {self.table_ref(table)} ADD {default} FOR {self.quote(column.name)};")
        out.append(self.alter_column(table, column, nullable=False))
        return out

    def drop_not_null(self, table: str, column: ColumnDescriptor, drop_default: bool) -> list[str]:
        out = [self.alter_column(table, column, nullable=True)]
        if drop_default:
            out.append(self.drop_constraint(table, column.name))
        return out

    def drop_index(self, table: str, column_name: str) -> str:
        return f"DROP INDEX {self.quote(self.index_name(table, column_name))} ON {self.table_ref(table)};"


class PostgresDialect(Dialect):
    kind = VendorKind.POSTGRES
    default_schema = "public"

    SCALAR_TYPES = {
        ColumnType.INT32: "INTEGER",
        ColumnType.INT64: "BIGINT",
        ColumnType.DOUBLE: "DOUBLE PRECISION",
        ColumnType.BOOL: "BOOLEAN",
        ColumnType.DATETIME: "TIMESTAMP",
        ColumnType.BYTES: "BYTEA",
    }

    def scalar_types(self) -> dict[ColumnType, str]:
        return self.SCALAR_TYPES

    def string_type(self, length: int | None) -> str:
        return f"CHARACTER VARYING({length})" if length else "TEXT"

    def identity_type(self, column: ColumnDescriptor) -> str | None:
        if column.col_type not in (ColumnType.INT32, ColumnType.INT64):
            return None
        return "BIGSERIAL PRIMARY KEY"

    def utc_now(self) -> str:
        return "(now() at time zone 'utc')"

    def zero_value(self, column: ColumnDescriptor) -> str:
        if column.col_type == ColumnType.BOOL:
            return "FALSE"
        if column.col_type == ColumnType.BYTES:
            return "''::bytea"
        return super().zero_value(column)

    def create_schema(self) -> str:
        return f"CREATE SCHEMA IF NOT EXISTS {self.quote(SCHEMA_PLACEHOLDER)};"

    def restart_identity(self, table: str, column: ColumnDescriptor) -> str:
        # Keys start at 10000, matching IDENTITY(10000,1) on SQL Server.
        target = self.table_ref(table).replace("'", "''")
        return f"SELECT setval(pg_get_serial_sequence('{target}', '{column.name}'), 9999, true);"

    def create_table(self, entity: EntityDescriptor, columns: list[ColumnDescriptor]) -> list[str]:
        definitions = [self.column_definition(entity.table, c) for c in columns]
        out = [
            "\n".join(
                [
                    f"CREATE TABLE IF NOT EXISTS {self.table_ref(entity.table)}",
                    "(",
                    "  " + ",\n  ".join(d for d in definitions if d),
                    ");",
                ]
            )
        ]
        for col in columns:
            index = self.create_index(entity.table, col)
            if index:
                out.append(index)
        for col in columns:
            if col.identity and self.column_type(col) is not None:
                out.append(self.restart_identity(entity.table, col))
        return out

    def create_index(self, table: str, column: ColumnDescriptor) -> str | None:
        statement = super().create_index(table, column)
        if statement is None:
            return None
        return statement.replace("INDEX ", "INDEX IF NOT EXISTS ", 1)

    def drop_table(self, table: str) -> str:
        return f"DROP TABLE IF EXISTS {self.table_ref(table)} CASCADE;"

    def alter(self, table: str, column: str, action: str) -> str:
        return f"ALTER TABLE {self.table_ref(table)} ALTER COLUMN {self.quote(column)} {action};"

    def add_column(self, table: str, column: ColumnDescriptor) -> list[str]:
        definition = self.column_definition(table, column)
        if definition is None:
            return []
        out = [f"ALTER TABLE {self.table_ref(table)} ADD COLUMN {definition};"]
        index = self.create_index(table, column)
        if index:
            out.append(index)
        return out

    def drop_column(self, table: str, name: str, drop_default: bool = False, indexed: bool = False) -> list[str]:
        # CASCADE takes the index along; the default goes with the column.
        return [f"ALTER TABLE {self.table_ref(table)} DROP COLUMN IF EXISTS {self.quote(name)} CASCADE;"]

    def change_column_type(self, table: str, column: ColumnDescriptor, nullable: bool) -> str:
        return self.alter(table, column.name, f"TYPE {self.column_type(column)}")

    def set_not_null(self, table: str, column: ColumnDescriptor) -> list[str]:
        out: list[str] = []
        default = self.column_default(table, column)
        if default:
            out.append(self.backfill(table, column))
            out.append(self.alter(table, column.name, f"SET {default}"))
        out.append(self.alter(table, column.name, "SET NOT NULL"))
        return out

    def drop_not_null(self, table: str, column: ColumnDescriptor, drop_default: bool) -> list[str]:
        out = [self.alter(table, column.name, "DROP NOT NULL")]
        if drop_default:
            out.append(self.alter(table, column.name, "DROP DEFAULT"))
        return out

    def drop_index(self, table: str, column_name: str) -> str:
        return f"DROP INDEX IF EXISTS {self.quote(SCHEMA_PLACEHOLDER)}.{self.quote(self.index_name(table, column_name))};"


DIALECTS: dict[VendorKind, type[Dialect]] = {
    VendorKind.SQLSERVER: SqlServerDialect,
    VendorKind.POSTGRES: PostgresDialect,
}


def get_dialect(kind: VendorKind | str) -> Dialect:
    try:
        return DIALECTS[VendorKind(kind)]()
    except ValueError as exc:
        raise ValueError(f"Unsupported vendor: {kind}") from exc
