#!/usr/bin/env python3
"""Dump the live structure of tenant schemas to a YAML snapshot.

Reads schemas, tables and columns through the same catalog queries the
migrator uses, so a snapshot can be diffed offline by generate_migration.py.

Usage:
    python dump_schemas.py [--dsn DSN] [--schema NAME ...] [--out schemas.yaml]
"""

from __future__ import annotations

import argparse
import contextlib
import sys
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from db import connect, get_settings
from dialects import get_dialect
from live_schema import reader_for


def dump_schema(reader: Any, schema: str) -> dict[str, list[dict]]:
    tables: dict[str, list[dict]] = {}
    for table in reader.list_tables(schema):
        tables[table] = [col.to_dict() for col in reader.list_columns(schema, table)]
    return tables


def build_snapshot(reader: Any, schemas: list[str], progress: bool = False) -> dict[str, Any]:
    snapshot: dict[str, Any] = {"schemas": {}}
    for i, schema in enumerate(schemas, 1):
        tables = dump_schema(reader, schema)
        snapshot["schemas"][schema] = tables
        if progress:
            print(f"  [{i}/{len(schemas)}] {schema}: {len(tables)} tables", flush=True)
    return snapshot


def render_snapshot(snapshot: dict[str, Any]) -> str:
    return yaml.safe_dump(snapshot, sort_keys=True, default_flow_style=False)


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Dump tenant schemas to a YAML snapshot")
    parser.add_argument("--dsn", default=settings.DATABASE_URL, help="Database URL (default: $TENANT_DATABASE_URL)")
    parser.add_argument("--vendor", default=settings.VENDOR or "postgres", choices=["postgres", "sqlserver"])
    parser.add_argument("--schema", action="append", default=[], help="Schema to dump (repeatable; default: all)")
    parser.add_argument("--out", default="schemas.yaml", help="Output snapshot file")
    args = parser.parse_args(argv)

    dialect = get_dialect(args.vendor)
    try:
        conn = connect(args.dsn, dialect.kind)
    except Exception as e:
        print(f"Error connecting to database: {e}", file=sys.stderr)
        return 1

    with contextlib.closing(conn):
        reader = reader_for(dialect.kind, conn)
        schemas = args.schema or [dialect.default_schema, *reader.list_schemas()]
        snapshot = build_snapshot(reader, schemas, progress=True)

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(render_snapshot(snapshot), encoding="utf-8")

    total = sum(len(t) for t in snapshot["schemas"].values())
    print(f"\nTotal: {total} tables in {len(schemas)} schemas written to {out_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
