import subprocess
import unittest
from unittest.mock import MagicMock, patch

from conftest import FakeDatabase, make_column, make_table
from core.errors import StorageError
from core.schema_ir import EnumTypeDescriptor
from core.schema_provisioner import (AdHocCreate, DeclarativeApply, ProvisionStatus,
                                     SchemaProvisioner, StructuralClone)

HOME_PAGE = make_table("home_page", make_column("id", "integer", nullable=False,
                                                default="nextval('home_page_id_seq'::regclass)"),
                       ("hero", "text"), ("sections", "jsonb"))
NEWS = make_table("news", make_column("id", "integer", nullable=False), ("status", "news_status"))
NEWS_STATUS = EnumTypeDescriptor("news_status", ("draft", "published"))


def strategy(name, result):
    mock = MagicMock()
    mock.name = name
    if isinstance(result, Exception):
        mock.apply.side_effect = result
    else:
        mock.apply.return_value = result
    return mock


class TestSchemaProvisioner(unittest.TestCase):

    def setUp(self):
        self.target = FakeDatabase()

    def test_existing_table_is_ready_without_strategies(self):
        self.target.tables["home_page"] = HOME_PAGE
        first = strategy("first", True)
        self.assertIs(SchemaProvisioner(self.target, [first]).ensure("home_page"), ProvisionStatus.READY)
        first.apply.assert_not_called()

    def test_first_success_short_circuits(self):
        first, second, third = strategy("first", False), strategy("second", True), strategy("third", True)
        provisioner = SchemaProvisioner(self.target, [first, second, third])

        self.assertIs(provisioner.ensure("home_page"), ProvisionStatus.READY)

        first.apply.assert_called_once_with("home_page")
        second.apply.assert_called_once_with("home_page")
        third.apply.assert_not_called()
        self.assertEqual(provisioner.provisioned, ["home_page"])

    def test_strategy_error_falls_through_to_next(self):
        failing, working = strategy("failing", StorageError("boom")), strategy("working", True)
        self.assertIs(SchemaProvisioner(self.target, [failing, working]).ensure("news"),
                      ProvisionStatus.READY)
        working.apply.assert_called_once_with("news")

    def test_all_strategies_fail(self):
        provisioner = SchemaProvisioner(self.target, [strategy("a", False), strategy("b", StorageError("x"))])
        self.assertIs(provisioner.ensure("news"), ProvisionStatus.FAILED)
        self.assertEqual(provisioner.provisioned, [])

    def test_strategies_are_retried_per_table(self):
        first = strategy("first", True)
        provisioner = SchemaProvisioner(self.target, [first])
        provisioner.ensure("news")
        provisioner.ensure("home_page")
        self.assertEqual(first.apply.call_count, 2)


class TestDeclarativeApply(unittest.TestCase):

    def setUp(self):
        self.target = FakeDatabase()

    def test_no_command_configured(self):
        with patch('core.schema_provisioner.subprocess.run') as run:
            self.assertFalse(DeclarativeApply(self.target, None, "postgresql://t").apply("news"))
        run.assert_not_called()

    def test_runs_command_against_destination(self):
        def create_tables(*args, **kwargs):
            self.target.tables["news"] = NEWS
            return subprocess.CompletedProcess(args[0], 0, stdout="Applied 3 migrations\n", stderr="")

        with patch('core.schema_provisioner.subprocess.run', side_effect=create_tables) as run:
            created = DeclarativeApply(self.target, "alembic upgrade head", "postgresql://u:p@dst/app").apply("news")

        self.assertTrue(created)
        args, kwargs = run.call_args
        self.assertEqual(args[0], ["alembic", "upgrade", "head"])
        self.assertEqual(kwargs['env']['DATABASE_URL'], "postgresql://u:p@dst/app")

    def test_command_success_without_table(self):
        completed = subprocess.CompletedProcess(["x"], 0, stdout="", stderr="")
        with patch('core.schema_provisioner.subprocess.run', return_value=completed):
            self.assertFalse(DeclarativeApply(self.target, "x", "postgresql://t").apply("news"))

    def test_nonzero_exit(self):
        completed = subprocess.CompletedProcess(["x"], 1, stdout="", stderr="relation already exists\n")
        with patch('core.schema_provisioner.subprocess.run', return_value=completed):
            with self.assertLogs('core.schema_provisioner', level='WARNING'):
                self.assertFalse(DeclarativeApply(self.target, "x", "postgresql://t").apply("news"))

    def test_missing_executable(self):
        with patch('core.schema_provisioner.subprocess.run', side_effect=FileNotFoundError("alembic")):
            self.assertFalse(DeclarativeApply(self.target, "alembic upgrade head", "postgresql://t").apply("news"))


class TestStructuralClone(unittest.TestCase):

    def setUp(self):
        self.source = FakeDatabase(tables=[HOME_PAGE, NEWS], enum_types=[NEWS_STATUS], readonly=True)
        self.target = FakeDatabase()

    def test_clones_enum_types_and_all_tables(self):
        self.assertTrue(StructuralClone(self.source, self.target).apply("news"))

        self.assertEqual(sorted(self.target.tables), ["home_page", "news"])
        self.assertIn("news_status", self.target.enum_types)
        self.assertEqual(self.target.mutations[0], ('create_enum_type', 'news_status'))
        self.assertEqual(self.source.mutations, [])

    def test_existing_enum_types_are_not_recreated(self):
        self.target.enum_types["news_status"] = NEWS_STATUS
        StructuralClone(self.source, self.target).apply("news")
        self.assertNotIn(('create_enum_type', 'news_status'), self.target.mutations)

    def test_one_table_failure_does_not_stop_the_rest(self):
        self.target.failures[('create_table', 'home_page')] = StorageError("unsupported default")
        with self.assertLogs('core.schema_provisioner', level='WARNING'):
            self.assertTrue(StructuralClone(self.source, self.target).apply("news"))
        self.assertNotIn("home_page", self.target.tables)


class TestAdHocCreate(unittest.TestCase):

    def test_creates_only_the_missing_table(self):
        source = FakeDatabase(tables=[HOME_PAGE, NEWS], readonly=True)
        target = FakeDatabase()
        self.assertTrue(AdHocCreate(source, target).apply("home_page"))
        self.assertEqual(list(target.tables), ["home_page"])
        self.assertEqual(target.tables["home_page"].column_names, ("id", "hero", "sections"))

    def test_unknown_source_table(self):
        self.assertFalse(AdHocCreate(FakeDatabase(readonly=True), FakeDatabase()).apply("ghost"))


class TestVolatileDefaults(unittest.TestCase):

    def test_sequence_defaults_are_not_portable(self):
        self.assertTrue(HOME_PAGE.column("id").has_volatile_default)
        self.assertIsNone(HOME_PAGE.column("id").portable_default)

    def test_literal_defaults_are_kept(self):
        column = make_column("status", "text", default="'draft'::text")
        self.assertEqual(column.portable_default, "'draft'::text")


if __name__ == '__main__':
    unittest.main()
