#!/usr/bin/env python3
"""Create and update tenant schemas so they match the declared model.

Usage:
    python tenants.py --model model.yaml create-tenant Tenant10000
    python tenants.py --model model.yaml update-shared [--delete]
    python tenants.py --model model.yaml update-tenants [--no-create] [--no-update] [--delete]
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import re
from pathlib import Path
from typing import Any, Callable

from db import connect, get_settings
from dialects import SCHEMA_PLACEHOLDER, Dialect, VendorKind, get_dialect
from entity_model import MigrationConfig, Model, ModelError, Placement, extract_model, load_config
from generate_migration import MigrationScript, generate_script
from live_schema import SchemaReader, reader_for

logger = logging.getLogger(__name__)

# Schema names are substituted into quoted identifiers and string literals
SCHEMA_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_schema_name(schema: str | None) -> str:
    if not schema:
        raise ValueError("Schema name is empty")
    if not SCHEMA_NAME_PATTERN.match(schema):
        raise ValueError(f"Invalid schema name: {schema!r}")
    return schema


class TenantMigrator:
    """Runs generated migration scripts against tenant and shared schemas.

    Each public operation opens its own connection through ``connect``,
    closes it on every exit path and reports success as a boolean. Database
    failures are logged and reported as ``False``; model errors are raised.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        model: Model,
        vendor: VendorKind | str = VendorKind.POSTGRES,
        default_schema: str | None = None,
        reference_schema: str | None = None,
        strict: bool = False,
        diff_each_schema: bool = False,
    ) -> None:
        self.connect = connect
        self.model = model
        self.dialect: Dialect = get_dialect(vendor)
        self.default_schema = validate_schema_name(default_schema or self.dialect.default_schema)
        self.reference_schema = reference_schema
        self.strict = strict
        self.diff_each_schema = diff_each_schema

    @classmethod
    def from_config(cls, connect: Callable[[], Any], config: MigrationConfig) -> "TenantMigrator":
        return cls(
            connect,
            config.model,
            vendor=config.vendor,
            default_schema=config.default_schema,
            reference_schema=config.reference_schema,
            strict=config.strict,
            diff_each_schema=config.diff_each_schema,
        )

    def reader(self, conn: Any) -> SchemaReader:
        return reader_for(self.dialect.kind, conn)

    def execute(self, conn: Any, statements: list[str]) -> None:
        with contextlib.closing(conn.cursor()) as cur:
            for sql in statements:
                logger.debug("Executing: %s", sql)
                cur.execute(sql)
                conn.commit()

    def run(self, operation: str, work: Callable[[Any], None]) -> bool:
        try:
            with contextlib.closing(self.connect()) as conn:
                work(conn)
        except ModelError:
            raise
        except Exception:
            logger.exception("%s failed", operation)
            return False
        logger.info("%s completed", operation)
        return True

    def create_schema_statement(self, schema: str) -> str:
        return self.dialect.create_schema().replace(SCHEMA_PLACEHOLDER, schema)

    def plan(
        self,
        reader: SchemaReader,
        schema: str,
        placement: Placement,
        create: bool,
        update: bool,
        delete: bool,
        live_tables: list[str] | None = None,
    ) -> MigrationScript:
        entities = extract_model(self.model, placement)
        return generate_script(
            self.dialect, reader, schema, entities, create, update, delete, strict=self.strict, live_tables=live_tables
        )

    def create_tenant(self, schema: str) -> bool:
        """Create ``schema`` and every tenant table in it."""
        schema = validate_schema_name(schema)

        def work(conn: Any) -> None:
            script = self.plan(self.reader(conn), schema, Placement.TENANT, True, False, False, live_tables=[])
            self.execute(conn, [self.create_schema_statement(schema), *script.for_schema(schema)])

        return self.run(f"create_tenant({schema})", work)

    def update_shared_tables(self, create: bool = True, update: bool = True, delete: bool = False) -> bool:
        """Reconcile the default schema with the entities that declare a schema."""
        schema = self.default_schema

        def work(conn: Any) -> None:
            script = self.plan(self.reader(conn), schema, Placement.DEFAULT, create, update, delete)
            self.execute(conn, [self.create_schema_statement(schema), *script.for_schema(schema)])

        return self.run(f"update_shared_tables({schema})", work)

    update_public_tables = update_shared_tables

    def create_shared_tables(self) -> bool:
        return self.update_shared_tables(True, False, False)

    def update_tenants(self, create: bool = True, update: bool = True, delete: bool = False) -> bool:
        """Apply the model to every tenant schema.

        By default the diff is computed once against the reference schema and
        replayed on each tenant, which assumes all tenants share one structure.
        With ``diff_each_schema`` every schema is diffed on its own.
        """

        def work(conn: Any) -> None:
            reader = self.reader(conn)
            schemas = [s for s in reader.list_schemas() if s != self.default_schema]
            if not schemas:
                logger.info("No tenant schemas found")
                return

            for schema in schemas:
                validate_schema_name(schema)

            if self.diff_each_schema:
                for schema in schemas:
                    script = self.plan(reader, schema, Placement.TENANT, create, update, delete)
                    self.execute(conn, script.for_schema(schema))
                return

            reference = self.reference_schema or schemas[0]
            script = self.plan(reader, reference, Placement.TENANT, create, update, delete)
            if script.is_empty():
                logger.info("Tenant schemas already match the model")
                return
            for schema in schemas:
                logger.info("Applying %d statements to %s", len(script.statements), schema)
                self.execute(conn, script.for_schema(schema))

        return self.run("update_tenants", work)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Create and update tenant schemas from a declarative model")
    parser.add_argument("--model", default="model.yaml", help="Declarative YAML model")
    parser.add_argument("--dsn", default=settings.DATABASE_URL, help="Database URL (default: $TENANT_DATABASE_URL)")
    parser.add_argument(
        "--vendor",
        default=settings.VENDOR,
        choices=["postgres", "sqlserver"],
        help="Override the vendor in the model file (default: $TENANT_VENDOR)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-tenant", help="Create a tenant schema and its tables")
    create.add_argument("schema")

    for name, help_text in [
        ("update-shared", "Update the tables in the default schema"),
        ("update-tenants", "Update the tables in every tenant schema"),
    ]:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--no-create", dest="create", action="store_false")
        cmd.add_argument("--no-update", dest="update", action="store_false")
        cmd.add_argument("--delete", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = load_config(Path(args.model))
    if args.vendor:
        config.vendor = args.vendor
    migrator = TenantMigrator.from_config(lambda: connect(args.dsn, config.vendor), config)

    if args.command == "create-tenant":
        ok = migrator.create_tenant(args.schema)
    elif args.command == "update-shared":
        ok = migrator.update_shared_tables(args.create, args.update, args.delete)
    else:
        ok = migrator.update_tenants(args.create, args.update, args.delete)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
