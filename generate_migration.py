#!/usr/bin/env python3
"""Generate a migration script + summary markdown from a declared model and a schema snapshot."""

from __future__ import annotations

import argparse
import dataclasses
import difflib
import logging
import sys
from collections import Counter
from pathlib import Path
from typing import Iterable, Protocol

from dialects import SCHEMA_PLACEHOLDER, Dialect, get_dialect
from entity_model import (
    ColumnDescriptor,
    ColumnType,
    EntityDescriptor,
    ModelError,
    Placement,
    extract_model,
    load_config,
)
from live_schema import ColumnInfo, SnapshotSchemaReader

logger = logging.getLogger(__name__)


class CyclicDependencyError(ModelError):
    def __init__(self, tables: list[str]) -> None:
        super().__init__(f"Cyclic foreign key dependency between new tables: {', '.join(tables)}")
        self.tables = tables


class UnsupportedTypeError(ModelError):
    pass


class TableReader(Protocol):
    def list_tables(self, schema: str) -> list[str]: ...

    def list_columns(self, schema: str, table: str) -> list[ColumnInfo]: ...


@dataclasses.dataclass
class Statement:
    kind: str
    table: str
    sql: str
    column: str | None = None


@dataclasses.dataclass
class MigrationScript:
    statements: list[Statement] = dataclasses.field(default_factory=list)
    warnings: list[str] = dataclasses.field(default_factory=list)

    def add(self, kind: str, table: str, sql: Iterable[str] | str, column: str | None = None) -> None:
        if isinstance(sql, str):
            sql = [sql]
        for text in sql:
            if text:
                self.statements.append(Statement(kind=kind, table=table, sql=text, column=column))

    def extend(self, other: "MigrationScript") -> None:
        self.statements.extend(other.statements)
        self.warnings.extend(other.warnings)

    def is_empty(self) -> bool:
        return not self.statements

    def kinds(self) -> Counter:
        return Counter(s.kind for s in self.statements)

    def for_schema(self, schema: str) -> list[str]:
        return [s.sql.replace(SCHEMA_PLACEHOLDER, schema) for s in self.statements]

    def render(self, schema: str | None = None) -> str:
        if schema is None:
            return "\n".join(s.sql for s in self.statements)
        return "\n".join(self.for_schema(schema))


def partition_entities(
    entities: list[EntityDescriptor], live_tables: list[str]
) -> tuple[list[EntityDescriptor], list[EntityDescriptor]]:
    existing = set(live_tables)
    new = [e for e in entities if e.table not in existing]
    old = [e for e in entities if e.table in existing]
    return new, old


def creation_order(new_entities: list[EntityDescriptor], live_tables: list[str]) -> list[EntityDescriptor]:
    """Order new entities so every table follows the tables it references.

    The queue is scanned front to back and the first entity whose foreign
    tables all exist is emitted, which keeps declaration order wherever the
    dependencies allow. Self references are ignored, as are references to
    tables outside this entity set (e.g. a shared table in the default schema).
    A full pass without progress means the remaining tables form a cycle.
    """
    pending_tables = {e.table for e in new_entities}
    created: set[str] = set(live_tables)
    queue = list(new_entities)
    ordered: list[EntityDescriptor] = []

    while queue:
        for idx, ent in enumerate(queue):
            deps = [t for t in ent.dependencies() if t in pending_tables]
            if all(t in created for t in deps):
                ordered.append(ent)
                created.add(ent.table)
                del queue[idx]
                break
        else:
            raise CyclicDependencyError([e.table for e in queue])

    return ordered


def mappable_columns(
    dialect: Dialect, entity: EntityDescriptor, columns: Iterable[ColumnDescriptor], strict: bool, script: MigrationScript
) -> list[ColumnDescriptor]:
    out: list[ColumnDescriptor] = []
    for col in columns:
        if dialect.column_type(col) is not None:
            out.append(col)
            continue
        message = f"{dialect.kind.value} has no type for {entity.table}.{col.name} ({col.col_type.value})"
        if strict:
            raise UnsupportedTypeError(message)
        logger.warning("Omitting column: %s", message)
        script.warnings.append(message)
    return out


def length_changed(live: ColumnInfo, column: ColumnDescriptor) -> bool:
    if column.col_type != ColumnType.STRING or live.col_type != ColumnType.STRING:
        return False
    if column.length:
        return live.length != column.length
    # No declared length means unbounded (MAX/TEXT), reported as -1.
    return live.length > 0


def diff_table(
    dialect: Dialect,
    entity: EntityDescriptor,
    live_columns: list[ColumnInfo],
    create: bool,
    update: bool,
    delete: bool,
    strict: bool,
) -> MigrationScript:
    script = MigrationScript()
    table = entity.table
    live_by_name = {c.name: c for c in live_columns}

    if delete:
        for live in live_columns:
            if entity.column(live.name) is None:
                drop = dialect.drop_column(table, live.name, bool(live.default), bool(live.index))
                script.add("DROP COLUMN", table, drop, live.name)

    for col in entity.columns:
        live = live_by_name.get(col.name)

        if live is None:
            if create and mappable_columns(dialect, entity, [col], strict, script):
                script.add("ADD COLUMN", table, dialect.add_column(table, col), col.name)
            continue

        if not update:
            continue

        if not mappable_columns(dialect, entity, [col], strict, script):
            continue

        if length_changed(live, col):
            script.add("ALTER COLUMN TYPE", table, dialect.change_column_type(table, col, live.nullable), col.name)

        if not col.identity:
            if live.nullable and not col.nullable:
                script.add("SET NOT NULL", table, dialect.set_not_null(table, col), col.name)
            elif not live.nullable and col.nullable:
                drop_default = bool(live.default)
                script.add("DROP NOT NULL", table, dialect.drop_not_null(table, col, drop_default), col.name)

        if col.index is not None and not live.index:
            script.add("CREATE INDEX", table, dialect.create_index(table, col), col.name)
        elif col.index is None and live.index:
            script.add("DROP INDEX", table, dialect.drop_index(table, col.name), col.name)

    return script


def generate_script(
    dialect: Dialect,
    reader: TableReader,
    schema: str,
    entities: list[EntityDescriptor],
    create: bool = True,
    update: bool = True,
    delete: bool = False,
    strict: bool = False,
    live_tables: list[str] | None = None,
) -> MigrationScript:
    """Diff ``entities`` against ``schema`` and return the DDL that reconciles them.

    ``live_tables`` overrides the table listing (an empty list plans a fresh
    schema without touching the catalog). Statements use the ``{0}`` schema
    placeholder.
    """
    if live_tables is None:
        live_tables = reader.list_tables(schema)
    new_entities, existing_entities = partition_entities(entities, live_tables)
    script = MigrationScript()

    if delete:
        declared = {e.table for e in entities}
        for table in live_tables:
            if table not in declared:
                script.add("DROP TABLE", table, dialect.drop_table(table))

    if create:
        for ent in creation_order(new_entities, live_tables):
            columns = mappable_columns(dialect, ent, ent.columns, strict, script)
            script.add("CREATE TABLE", ent.table, dialect.create_table(ent, columns))

    for ent in existing_entities:
        live_columns = reader.list_columns(schema, ent.table)
        script.extend(diff_table(dialect, ent, live_columns, create, update, delete, strict))

    logger.info(
        "Planned %d statements for schema %s (%d new tables, %d existing)",
        len(script.statements),
        schema,
        len(new_entities),
        len(existing_entities),
    )
    return script


def generate_markdown(script: MigrationScript, schema: str, vendor: str) -> str:
    counts = script.kinds()
    lines: list[str] = []
    lines.append(f"# Migration plan: `{schema}`")
    lines.append("")
    lines.append(
        f"Generated for `{vendor}`. Statements use the `{SCHEMA_PLACEHOLDER}` schema placeholder and can be "
        "replayed against any schema with the same starting structure."
    )
    lines.append("")
    lines.append(f"- **{len(script.statements)} total statements**")
    lines.append("")

    lines.append("## Statements by kind")
    lines.append("")
    lines.append("| Kind | Count |")
    lines.append("|------|-------|")
    for kind, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
        lines.append(f"| `{kind}` | {count} |")
    lines.append("")

    created = [s.table for s in script.statements if s.kind == "CREATE TABLE"]
    if created:
        lines.append("## Table creation order")
        lines.append("")
        for idx, table in enumerate(dict.fromkeys(created), 1):
            lines.append(f"{idx}. `{table}`")
        lines.append("")

    changed: dict[str, list[str]] = {}
    for s in script.statements:
        if s.column:
            changed.setdefault(s.table, [])
            entry = f"`{s.column}` ({s.kind.lower()})"
            if entry not in changed[s.table]:
                changed[s.table].append(entry)
    if changed:
        lines.append("## Column changes")
        lines.append("")
        for table in sorted(changed):
            lines.append(f"- `{table}`: " + ", ".join(changed[table]))
        lines.append("")

    if script.warnings:
        lines.append("## Warnings")
        lines.append("")
        for warning in script.warnings:
            lines.append(f"- {warning}")
        lines.append("")

    if script.is_empty():
        lines.append("Schema already matches the model. Nothing to apply.")
        lines.append("")
    return "\n".join(lines)


def generate_outputs(
    model_path: Path,
    snapshot_path: Path | None,
    schema: str,
    placement: Placement,
    create: bool,
    update: bool,
    delete: bool,
    vendor: str | None = None,
) -> tuple[str, str, MigrationScript]:
    config = load_config(model_path)
    dialect = get_dialect(vendor or config.vendor)
    entities = extract_model(config.model, placement)

    reader = SnapshotSchemaReader.load(snapshot_path) if snapshot_path else SnapshotSchemaReader({})
    script = generate_script(dialect, reader, schema, entities, create, update, delete, strict=config.strict)

    sql_output = script.render()
    if sql_output:
        sql_output += "\n"
    md_output = generate_markdown(script, schema, dialect.kind.value)
    return sql_output, md_output, script


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def check_equal(path: Path, generated: str) -> bool:
    if not path.exists():
        print(f"[check] missing file: {path}", file=sys.stderr)
        return False

    existing = path.read_text(encoding="utf-8")
    if existing == generated:
        return True

    print(f"[check] drift detected: {path}", file=sys.stderr)
    diff = difflib.unified_diff(
        existing.splitlines(),
        generated.splitlines(),
        fromfile=str(path),
        tofile=f"generated:{path}",
        lineterm="",
    )
    for idx, line in enumerate(diff):
        if idx > 200:
            print("... (diff truncated)", file=sys.stderr)
            break
        print(line, file=sys.stderr)
    return False


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate migration SQL and markdown from a model + schema snapshot")
    parser.add_argument("--model", default="model.yaml", help="Declarative YAML model")
    parser.add_argument("--snapshot", default=None, help="Schema snapshot from dump_schemas.py (omit for an empty schema)")
    parser.add_argument("--schema", required=True, help="Schema in the snapshot to diff against")
    parser.add_argument("--vendor", choices=["postgres", "sqlserver"], help="Override the vendor in the model file")
    parser.add_argument("--shared", action="store_true", help="Use the default-schema entities instead of tenant entities")
    parser.add_argument("--no-create", dest="create", action="store_false", help="Do not create tables or columns")
    parser.add_argument("--no-update", dest="update", action="store_false", help="Do not alter existing columns")
    parser.add_argument("--delete", action="store_true", help="Drop tables and columns missing from the model")
    parser.add_argument("--out-sql", default="migration.sql", help="Output SQL file")
    parser.add_argument("--out-md", default="migration.md", help="Output markdown file")
    parser.add_argument("--check", action="store_true", help="Verify outputs are up-to-date without writing")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    out_sql = Path(args.out_sql)
    out_md = Path(args.out_md)

    sql_output, md_output, _ = generate_outputs(
        Path(args.model),
        Path(args.snapshot) if args.snapshot else None,
        args.schema,
        Placement.DEFAULT if args.shared else Placement.TENANT,
        args.create,
        args.update,
        args.delete,
        vendor=args.vendor,
    )

    if args.check:
        sql_ok = check_equal(out_sql, sql_output)
        md_ok = check_equal(out_md, md_output)
        return 0 if sql_ok and md_ok else 1

    write_text(out_sql, sql_output)
    write_text(out_md, md_output)
    print(f"Generated {out_sql}")
    print(f"Generated {out_md}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
