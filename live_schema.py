"""Read schemas, tables and columns from a live catalog (or a dumped snapshot)."""

from __future__ import annotations

import contextlib
import dataclasses
import logging
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from dialects import VendorKind, native_type
from entity_model import ColumnType

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ColumnInfo:
    name: str
    data_type: str
    default: str | None = None
    nullable: bool = True
    length: int = -1
    index: str | None = None

    @property
    def col_type(self) -> ColumnType | None:
        return native_type(self.data_type)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ColumnInfo":
        length = row.get("character_maximum_length")
        nullable = row.get("is_nullable")
        if isinstance(nullable, str):
            nullable = nullable.strip().upper() == "YES"
        return cls(
            name=str(row["column_name"]),
            data_type=str(row.get("data_type") or ""),
            default=None if row.get("column_default") is None else str(row["column_default"]),
            nullable=bool(nullable),
            length=-1 if length is None else int(length),
            index=row.get("index_name") or None,
        )


def query_rows(conn: Any, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
    """Run ``sql`` on a DB-API connection and return rows keyed by column name."""
    with contextlib.closing(conn.cursor()) as cur:
        if params:
            cur.execute(sql, params)
        else:
            cur.execute(sql)
        names = [d[0].lower() for d in cur.description or []]
        return [dict(zip(names, row)) for row in cur.fetchall()]


class SchemaReader:
    """Catalog queries for one vendor, bound to an open connection."""

    kind: VendorKind
    param = "%s"
    schema_query = ""
    table_query = ""
    column_query = ""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def format(self, sql: str) -> str:
        return sql.replace(":p", self.param)

    def list_schemas(self) -> list[str]:
        rows = query_rows(self.conn, self.format(self.schema_query))
        return [str(row["name"]) for row in rows]

    def list_tables(self, schema: str) -> list[str]:
        rows = query_rows(self.conn, self.format(self.table_query), (schema,))
        return [str(row["name"]) for row in rows]

    def list_columns(self, schema: str, table: str) -> list[ColumnInfo]:
        rows = query_rows(self.conn, self.format(self.column_query), (schema, table))
        columns = [ColumnInfo.from_row(row) for row in rows]
        logger.debug("Read %d columns for %s.%s", len(columns), schema, table)
        return columns


class PostgresSchemaReader(SchemaReader):
    kind = VendorKind.POSTGRES
    param = "%s"
    schema_query = (
        "SELECT schema_name AS name FROM information_schema.schemata "
        "WHERE schema_name NOT IN ( 'pg_toast', 'pg_catalog', 'public', 'information_schema' ) "
        "AND schema_name NOT LIKE 'pg_temp_%' "
        "AND schema_name NOT LIKE 'pg_toast_temp_%' "
        "ORDER BY schema_name"
    )
    table_query = (
        "SELECT table_name AS name FROM information_schema.tables "
        "WHERE table_schema = :p AND table_type = 'BASE TABLE' "
        "ORDER BY table_name"
    )
    column_query = (
        "SELECT c.column_name, c.data_type, c.column_default, c.is_nullable, c.character_maximum_length, "
        "( SELECT i.indexname FROM pg_indexes i WHERE i.schemaname = c.table_schema "
        "AND i.indexname = 'IX_' || c.table_schema || '_' || c.table_name || '_' || c.column_name "
        "LIMIT 1 ) AS index_name "
        "FROM information_schema.columns c "
        "WHERE c.table_schema = :p AND c.table_name = :p "
        "ORDER BY c.ordinal_position"
    )


class SqlServerSchemaReader(SchemaReader):
    kind = VendorKind.SQLSERVER
    param = "?"
    schema_query = (
        "SELECT s.name AS name FROM sys.all_objects o "
        "LEFT JOIN sys.schemas s ON s.schema_id = o.schema_id "
        "WHERE o.type = 'u' AND s.name != 'dbo' "
        "GROUP BY s.name ORDER BY s.name"
    )
    table_query = (
        "SELECT table_name AS name FROM information_schema.tables "
        "WHERE table_schema = :p AND table_type = 'BASE TABLE' "
        "ORDER BY table_name"
    )
    column_query = (
        "SELECT c.column_name, c.data_type, c.column_default, c.is_nullable, c.character_maximum_length, "
        "( SELECT TOP 1 i.name FROM sys.indexes i "
        "WHERE i.object_id = OBJECT_ID(QUOTENAME(c.table_schema) + '.' + QUOTENAME(c.table_name)) "
        "AND i.name = 'IX_' + c.table_schema + '_' + c.table_name + '_' + c.column_name ) AS index_name "
        "FROM information_schema.columns c "
        "WHERE c.table_schema = :p AND c.table_name = :p "
        "ORDER BY c.ordinal_position"
    )


READERS: dict[VendorKind, type[SchemaReader]] = {
    VendorKind.POSTGRES: PostgresSchemaReader,
    VendorKind.SQLSERVER: SqlServerSchemaReader,
}


def reader_for(kind: VendorKind | str, conn: Any) -> SchemaReader:
    return READERS[VendorKind(kind)](conn)


class SnapshotSchemaReader:
    """Serves the reader contract from a snapshot written by dump_schemas.py.

    Snapshot layout::

        schemas:
          Tenant10000:
            Locations:
              - {name: ID, data_type: bigint, nullable: false, ...}
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self.schemas: dict[str, dict[str, list[dict]]] = data.get("schemas") or {}

    @classmethod
    def load(cls, path: Path) -> "SnapshotSchemaReader":
        return cls(yaml.safe_load(path.read_text(encoding="utf-8")) or {})

    def list_schemas(self) -> list[str]:
        return sorted(self.schemas)

    def list_tables(self, schema: str) -> list[str]:
        return sorted(self.schemas.get(schema) or {})

    def list_columns(self, schema: str, table: str) -> list[ColumnInfo]:
        raw = (self.schemas.get(schema) or {}).get(table) or []
        return [ColumnInfo(**col) for col in raw]
