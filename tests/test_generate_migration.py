import dataclasses
import io
import tempfile
import unittest
from contextlib import redirect_stderr
from pathlib import Path

from dialects import Dialect, PostgresDialect, SqlServerDialect
from entity_model import Model, Placement, entity, extract_model, field, load_model
from fakes import FakeConnection, catalog_for
from generate_migration import (
    CyclicDependencyError,
    MigrationScript,
    UnsupportedTypeError,
    check_equal,
    creation_order,
    generate_markdown,
    generate_outputs,
    generate_script,
    write_text,
)
from live_schema import ColumnInfo, reader_for


REPO_ROOT = Path(__file__).resolve().parents[1]
MODEL_PATH = REPO_ROOT / "model.yaml"
SCHEMA = "Tenant1"


def tenant_entities():
    return extract_model(load_model(MODEL_PATH), Placement.TENANT)


def matching_catalog(dialect: Dialect) -> dict[str, list[ColumnInfo]]:
    return catalog_for(dialect, SCHEMA, tenant_entities())


def change_column(catalog: dict, table: str, name: str, **changes) -> dict:
    catalog[table] = [dataclasses.replace(c, **changes) if c.name == name else c for c in catalog[table]]
    return catalog


def plan(dialect: Dialect, catalog: dict, entities=None, **kwargs) -> MigrationScript:
    conn = FakeConnection({SCHEMA: catalog})
    reader = reader_for(dialect.kind, conn)
    return generate_script(dialect, reader, SCHEMA, tenant_entities() if entities is None else entities, **kwargs)


def created_tables(script: MigrationScript) -> list[str]:
    return list(dict.fromkeys(s.table for s in script.statements if s.kind == "CREATE TABLE"))


def column_sql(script: MigrationScript, name: str) -> list[str]:
    return [s.sql for s in script.statements if s.column == name]


class TestCreationOrder(unittest.TestCase):
    def test_referenced_tables_are_created_first(self) -> None:
        entities = list(reversed(tenant_entities()))
        script = plan(PostgresDialect(), {}, entities=entities)
        self.assertEqual(created_tables(script), ["Students", "Courses", "Locations", "Employees"])

    def test_self_reference_does_not_block_creation(self) -> None:
        model = Model("m", [entity("Employee", "Employees", field("ID", "int32"),
                                   field("ManagerID", "int32", nullable=True, references="Employee"))])
        ordered = creation_order(extract_model(model, Placement.TENANT), [])
        self.assertEqual([e.table for e in ordered], ["Employees"])

    def test_cycle_between_new_tables_is_an_error(self) -> None:
        model = Model("m", [
            entity("A", "As", field("ID", "int32"), field("BID", "int32", nullable=True, references="B")),
            entity("B", "Bs", field("ID", "int32"), field("AID", "int32", nullable=True, references="A")),
        ])
        with self.assertRaises(CyclicDependencyError) as ctx:
            creation_order(extract_model(model, Placement.TENANT), [])
        self.assertEqual(ctx.exception.tables, ["As", "Bs"])

    def test_cycle_through_existing_table_is_fine(self) -> None:
        model = Model("m", [
            entity("A", "As", field("ID", "int32"), field("BID", "int32", nullable=True, references="B")),
            entity("B", "Bs", field("ID", "int32"), field("AID", "int32", nullable=True, references="A")),
        ])
        ordered = creation_order(extract_model(model, Placement.TENANT)[:1], ["Bs"])
        self.assertEqual([e.table for e in ordered], ["As"])

    def test_declaration_order_is_kept_without_dependencies(self) -> None:
        script = plan(PostgresDialect(), {})
        self.assertEqual(created_tables(script), ["Locations", "Employees", "Courses", "Students"])


class TestDiffTable(unittest.TestCase):
    def test_matching_schema_produces_nothing(self) -> None:
        for dialect in (PostgresDialect(), SqlServerDialect()):
            with self.subTest(vendor=dialect.kind.value):
                script = plan(dialect, matching_catalog(dialect), create=True, update=True, delete=True)
                self.assertTrue(script.is_empty(), script.render())

    def test_rerun_after_create_is_empty(self) -> None:
        dialect = PostgresDialect()
        first = plan(dialect, {})
        self.assertEqual(len(created_tables(first)), 4)
        second = plan(dialect, matching_catalog(dialect))
        self.assertTrue(second.is_empty())

    def test_backfill_before_not_null(self) -> None:
        dialect = PostgresDialect()
        catalog = change_column(matching_catalog(dialect), "Students", "gpa", nullable=True, default=None)
        script = plan(dialect, catalog)
        self.assertEqual(
            column_sql(script, "gpa"),
            [
                'UPDATE "{0}"."Students" SET "gpa" = 0 WHERE "gpa" IS NULL;',
                'ALTER TABLE "{0}"."Students" ALTER COLUMN "gpa" SET DEFAULT(0);',
                'ALTER TABLE "{0}"."Students" ALTER COLUMN "gpa" SET NOT NULL;',
            ],
        )
        self.assertEqual(len(script.statements), 3)

    def test_sqlserver_backfill_adds_named_default(self) -> None:
        dialect = SqlServerDialect()
        catalog = change_column(matching_catalog(dialect), "Students", "gpa", nullable=True, default=None)
        statements = column_sql(plan(dialect, catalog), "gpa")
        self.assertEqual(statements[0], "UPDATE [{0}].[Students] SET [gpa] = 0 WHERE [gpa] IS NULL;")
        self.assertIn("CONSTRAINT [DF_{0}_Students_gpa] DEFAULT(0) FOR [gpa]", statements[1])
        self.assertEqual(statements[2], "ALTER TABLE [{0}].[Students] ALTER COLUMN [gpa] INTEGER NOT NULL;")

    def test_length_change_retypes_once(self) -> None:
        dialect = PostgresDialect()
        catalog = change_column(matching_catalog(dialect), "Locations", "ShortString", length=5)
        script = plan(dialect, catalog)
        self.assertEqual([s.kind for s in script.statements], ["ALTER COLUMN TYPE"])
        self.assertEqual(
            script.statements[0].sql,
            'ALTER TABLE "{0}"."Locations" ALTER COLUMN "ShortString" TYPE CHARACTER VARYING(50);',
        )

    def test_bounded_to_unbounded(self) -> None:
        dialect = SqlServerDialect()
        catalog = change_column(matching_catalog(dialect), "Locations", "LongString", length=50)
        self.assertEqual(
            column_sql(plan(dialect, catalog), "LongString"),
            ["ALTER TABLE [{0}].[Locations] ALTER COLUMN [LongString] NVARCHAR(MAX) NULL;"],
        )

    def test_relaxing_not_null_drops_default(self) -> None:
        dialect = PostgresDialect()
        catalog = change_column(matching_catalog(dialect), "Locations", "DeletedDate", nullable=False, default="now()")
        self.assertEqual(
            column_sql(plan(dialect, catalog), "DeletedDate"),
            [
                'ALTER TABLE "{0}"."Locations" ALTER COLUMN "DeletedDate" DROP NOT NULL;',
                'ALTER TABLE "{0}"."Locations" ALTER COLUMN "DeletedDate" DROP DEFAULT;',
            ],
        )

    def test_identity_nullability_is_left_alone(self) -> None:
        dialect = PostgresDialect()
        catalog = change_column(matching_catalog(dialect), "Courses", "ID", nullable=True)
        self.assertTrue(plan(dialect, catalog).is_empty())

    def test_index_added_and_dropped(self) -> None:
        dialect = PostgresDialect()
        catalog = matching_catalog(dialect)
        change_column(catalog, "Employees", "IndexMe", index=None)
        change_column(catalog, "Employees", "IndexNo", index="IX_Tenant1_Employees_IndexNo")
        script = plan(dialect, catalog)
        self.assertEqual(
            column_sql(script, "IndexMe"),
            ['CREATE INDEX IF NOT EXISTS "IX_{0}_Employees_IndexMe" ON "{0}"."Employees" ("IndexMe");'],
        )
        self.assertEqual(column_sql(script, "IndexNo"), ['DROP INDEX IF EXISTS "{0}"."IX_{0}_Employees_IndexNo";'])

    def test_missing_column_added_only_when_creating(self) -> None:
        dialect = PostgresDialect()
        catalog = matching_catalog(dialect)
        catalog["Locations"] = [c for c in catalog["Locations"] if c.name != "UpdatedDate"]
        self.assertEqual(
            column_sql(plan(dialect, catalog), "UpdatedDate"),
            [
                'ALTER TABLE "{0}"."Locations" ADD COLUMN "UpdatedDate" TIMESTAMP NOT NULL '
                "DEFAULT((now() at time zone 'utc'));"
            ],
        )
        self.assertTrue(plan(dialect, catalog, create=False).is_empty())

    def test_update_disabled_skips_alterations(self) -> None:
        dialect = PostgresDialect()
        catalog = change_column(matching_catalog(dialect), "Students", "gpa", nullable=True, default=None)
        self.assertTrue(plan(dialect, catalog, update=False).is_empty())

    def test_extra_tables_and_columns_dropped_only_on_delete(self) -> None:
        dialect = PostgresDialect()
        catalog = matching_catalog(dialect)
        catalog["Legacy"] = [ColumnInfo("ID", "bigint", nullable=False)]
        catalog["Locations"].append(ColumnInfo("Obsolete", "integer"))

        self.assertTrue(plan(dialect, catalog).is_empty())

        script = plan(dialect, catalog, delete=True)
        self.assertEqual(
            [s.sql for s in script.statements],
            [
                'DROP TABLE IF EXISTS "{0}"."Legacy" CASCADE;',
                'ALTER TABLE "{0}"."Locations" DROP COLUMN IF EXISTS "Obsolete" CASCADE;',
            ],
        )


def without_column(entities, table: str, name: str):
    return [
        dataclasses.replace(e, columns=tuple(c for c in e.columns if c.name != name)) if e.table == table else e
        for e in entities
    ]


class TestSqlServerDiff(unittest.TestCase):
    def test_relaxing_not_null_drops_named_default(self) -> None:
        dialect = SqlServerDialect()
        catalog = change_column(
            matching_catalog(dialect), "Locations", "DeletedDate", nullable=False, default="(getutcdate())"
        )
        script = plan(dialect, catalog)
        self.assertEqual(
            [s.sql for s in script.statements],
            [
                "ALTER TABLE [{0}].[Locations] ALTER COLUMN [DeletedDate] DATETIME NULL;",
                "ALTER TABLE [{0}].[Locations] DROP CONSTRAINT [DF_{0}_Locations_DeletedDate];",
            ],
        )

    def test_dropped_columns_lose_default_and_index_first(self) -> None:
        dialect = SqlServerDialect()
        catalog = matching_catalog(dialect)
        entities = without_column(without_column(tenant_entities(), "Students", "gpa"), "Employees", "IndexMe")

        script = plan(dialect, catalog, entities=entities, delete=True)

        self.assertEqual(
            column_sql(script, "IndexMe"),
            [
                "DROP INDEX [IX_{0}_Employees_IndexMe] ON [{0}].[Employees];",
                "ALTER TABLE [{0}].[Employees] DROP COLUMN [IndexMe];",
            ],
        )
        self.assertEqual(
            column_sql(script, "gpa"),
            [
                "ALTER TABLE [{0}].[Students] DROP CONSTRAINT [DF_{0}_Students_gpa];",
                "ALTER TABLE [{0}].[Students] DROP COLUMN [gpa];",
            ],
        )
        self.assertEqual(len(script.statements), 4)

        after = catalog_for(dialect, SCHEMA, entities)
        self.assertTrue(plan(dialect, after, entities=entities, delete=True).is_empty())

    def test_unmappable_live_column_is_not_altered(self) -> None:
        dialect = SqlServerDialect()
        catalog = matching_catalog(dialect)
        catalog["Students"].append(ColumnInfo("Photo", "varbinary", nullable=False))

        with self.assertLogs("generate_migration", level="WARNING"):
            script = plan(dialect, catalog)
        self.assertTrue(script.is_empty(), script.render())
        self.assertEqual(len(script.warnings), 1)
        self.assertIn("Students.Photo", script.warnings[0])

        with self.assertRaisesRegex(UnsupportedTypeError, "Students.Photo"):
            plan(dialect, catalog, strict=True)


class TestUnsupportedTypes(unittest.TestCase):
    def test_lenient_mode_omits_column_with_warning(self) -> None:
        with self.assertLogs("generate_migration", level="WARNING"):
            script = plan(SqlServerDialect(), {})
        students = [s.sql for s in script.statements if s.table == "Students"][0]
        self.assertNotIn("[Photo]", students)
        self.assertIn("[gpa] INTEGER NOT NULL", students)
        self.assertEqual(len(script.warnings), 1)
        self.assertIn("Students.Photo", script.warnings[0])

    def test_strict_mode_raises(self) -> None:
        with self.assertRaisesRegex(UnsupportedTypeError, "Students.Photo"):
            plan(SqlServerDialect(), {}, strict=True)

    def test_postgres_maps_bytes(self) -> None:
        script = plan(PostgresDialect(), {}, strict=True)
        self.assertIn('"Photo" BYTEA NULL', script.render())
        self.assertEqual(script.warnings, [])


class TestMigrationScript(unittest.TestCase):
    def test_schema_placeholder_substitution(self) -> None:
        script = plan(PostgresDialect(), {})
        statements = script.for_schema("Tenant10000")
        self.assertTrue(all("{0}" not in s for s in statements))
        self.assertTrue(statements[0].startswith('CREATE TABLE IF NOT EXISTS "Tenant10000"."Locations"'))
        self.assertIn('"IX_Tenant10000_Locations_Name"', script.render("Tenant10000"))

    def test_add_skips_empty_fragments(self) -> None:
        script = MigrationScript()
        script.add("CREATE INDEX", "Locations", [None, "", "CREATE INDEX x;"])
        self.assertEqual([s.sql for s in script.statements], ["CREATE INDEX x;"])
        self.assertEqual(script.kinds(), {"CREATE INDEX": 1})


class TestOutputs(unittest.TestCase):
    def test_generate_outputs_for_empty_schema(self) -> None:
        sql, md, script = generate_outputs(MODEL_PATH, None, SCHEMA, Placement.TENANT, True, True, False)
        self.assertTrue(sql.endswith("\n"))
        self.assertIn('CREATE TABLE IF NOT EXISTS "{0}"."Employees"', sql)
        self.assertIn("# Migration plan: `Tenant1`", md)
        self.assertIn("1. `Locations`", md)
        self.assertIn("4. `Students`", md)
        self.assertIn("| `CREATE TABLE` |", md)
        self.assertEqual(script.warnings, [])

    def test_generate_outputs_against_snapshot(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            snapshot = Path(tmp) / "schemas.yaml"
            snapshot.write_text(
                "schemas:\n"
                "  Tenant1:\n"
                "    Tenants:\n"
                "      - {name: ID, data_type: bigint, nullable: false}\n"
                "      - {name: Name, data_type: character varying, nullable: false, length: 100,\n"
                "         index: IX_public_Tenants_Name}\n",
                encoding="utf-8",
            )
            sql, md, script = generate_outputs(
                MODEL_PATH, snapshot, SCHEMA, Placement.DEFAULT, True, True, False, vendor="sqlserver"
            )
        self.assertEqual(script.kinds()["ALTER COLUMN TYPE"], 1)
        self.assertIn("ALTER TABLE [{0}].[Tenants] ALTER COLUMN [Name] NVARCHAR(250) NOT NULL;", sql)
        self.assertIn("ADD [SubDomain] NVARCHAR(50) NULL;", sql)
        self.assertIn("- `Tenants`: `Name` (alter column type)", md)

    def test_markdown_for_empty_script(self) -> None:
        md = generate_markdown(MigrationScript(), SCHEMA, "postgres")
        self.assertIn("**0 total statements**", md)
        self.assertIn("Nothing to apply.", md)

    def test_check_equal_detects_drift(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "nested" / "migration.sql"
            write_text(out, "SELECT 1;\n")
            self.assertTrue(check_equal(out, "SELECT 1;\n"))
            with redirect_stderr(io.StringIO()) as err:
                self.assertFalse(check_equal(out, "SELECT 2;\n"))
                self.assertFalse(check_equal(Path(tmp) / "missing.sql", ""))
        self.assertIn("drift detected", err.getvalue())
        self.assertIn("missing file", err.getvalue())


if __name__ == "__main__":
    unittest.main()
