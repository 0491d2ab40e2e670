#!/usr/bin/env python3
"""
Environment Migrator Test Configuration - shared fakes and fixtures

In-memory stand-ins for the two collaborators of a migration run:
- FakeDatabase: catalog + rows of one PostgreSQL schema; a read-only instance
  refuses every mutating call exactly like the real source adapter
- FakeMediaHost: one media account serving downloads and accepting uploads
"""

import json
import os
import sys
from pathlib import Path
from typing import Dict, List

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.errors import AssetTransferError, ReadOnlyViolation, StorageError
from core.schema_ir import ColumnDescriptor, EnumTypeDescriptor, SchemaIR, TableDescriptor
from extensions.plugins.cloudinary_adapter import CloudinaryAdapter, MediaAccount

SOURCE_CLOUD = "src-cloud"
TARGET_CLOUD = "dst-cloud"


def source_url(name: str, version: int = 1700000000, resource_type: str = "image") -> str:
    return f"https://res.cloudinary.com/{SOURCE_CLOUD}/{resource_type}/upload/v{version}/{name}"


def make_column(name: str, data_type: str = "text", nullable: bool = True, default=None,
                udt_name: str = None) -> ColumnDescriptor:
    return ColumnDescriptor(name=name, data_type=data_type, nullable=nullable, default=default,
                            udt_name=udt_name if udt_name is not None else data_type)


def make_table(name: str, *columns, primary_key=("id",)) -> TableDescriptor:
    """Build a descriptor from ColumnDescriptors or (name, type) tuples."""
    cols = tuple(c if isinstance(c, ColumnDescriptor) else make_column(*c) for c in columns)
    return TableDescriptor(name=name, columns=cols, primary_key=tuple(primary_key))


class FakeDatabase:
    """In-memory database speaking the PostgreSQLAdapter surface"""

    MUTATING = ('create_enum_type', 'create_table', 'add_column', 'truncate', 'insert_row')

    def __init__(self, tables=None, rows=None, enum_types=None, readonly=False):
        self.tables: Dict[str, TableDescriptor] = {t.name: t for t in (tables or [])}
        self.rows: Dict[str, List[dict]] = {name: [dict(r) for r in table_rows]
                                            for name, table_rows in (rows or {}).items()}
        self.enum_types: Dict[str, EnumTypeDescriptor] = {e.name: e for e in (enum_types or [])}
        self.readonly = readonly
        self.connected = False
        self.closed = False
        self.mutations = []
        # (operation, table or None) -> exception to raise
        self.failures = {}

    def _check(self, operation, table=None):
        if operation in self.MUTATING:
            if self.readonly:
                raise ReadOnlyViolation(f"Refusing to {operation} {table} on read-only database")
            self.mutations.append((operation, table))
        error = self.failures.get((operation, table))
        if error is not None:
            raise error

    def connect(self):
        self._check('connect')
        self.connected = True

    def close(self):
        self.connected = False
        self.closed = True

    def list_tables(self):
        return sorted(self.tables)

    def table_exists(self, table_name):
        return table_name in self.tables

    def describe_table(self, table_name):
        self._check('describe_table', table_name)
        return self.tables.get(table_name)

    def describe_schema(self):
        self._check('describe_schema')
        return SchemaIR(tables=dict(self.tables), enum_types=dict(self.enum_types))

    def list_enum_types(self):
        return list(self.enum_types)

    def create_enum_type(self, enum_type):
        self._check('create_enum_type', enum_type.name)
        self.enum_types[enum_type.name] = enum_type

    def create_table(self, table):
        self._check('create_table', table.name)
        self.tables.setdefault(table.name, table)
        self.rows.setdefault(table.name, [])

    def add_column(self, table_name, column):
        self._check('add_column', table_name)
        if not column.nullable and column.default is None and self.rows.get(table_name):
            raise StorageError(f"column \"{column.name}\" of relation \"{table_name}\" contains null values")
        table = self.tables[table_name]
        self.tables[table_name] = TableDescriptor(table.name, table.columns + (column,), table.primary_key)

    def truncate(self, table_name):
        self._check('truncate', table_name)
        self.rows[table_name] = []

    def fetch_rows(self, table_name, order_by=()):
        self._check('fetch_rows', table_name)
        rows = [dict(r) for r in self.rows.get(table_name, [])]
        if order_by:
            rows.sort(key=lambda r: tuple(r.get(c) for c in order_by))
        return rows

    def insert_row(self, table_name, columns, values):
        self._check('insert_row', table_name)
        self.rows.setdefault(table_name, []).append(dict(zip(columns, values)))

    def snapshot(self) -> str:
        """Content fingerprint of catalog and rows"""
        return json.dumps({
            'tables': {name: [(c.name, c.data_type, c.nullable, c.default) for c in t.columns]
                       for name, t in self.tables.items()},
            'rows': self.rows,
            'enums': {name: list(e.labels) for name, e in self.enum_types.items()},
        }, sort_keys=True, default=str)


class FakeMediaHost:
    """One media account: downloads succeed unless listed in ``failing_urls``"""

    url_pattern = CloudinaryAdapter.url_pattern

    def __init__(self, cloud_name, failing_urls=()):
        self.account = MediaAccount(cloud_name=cloud_name, api_key="key", api_secret="secret")
        self.failing_urls = set(failing_urls)
        self.downloads = []
        self.uploads = []
        self.closed = False

    def download(self, url, destination: Path) -> int:
        self.downloads.append(url)
        if url in self.failing_urls:
            raise AssetTransferError(f"Download failed for {url}: 404", url=url)
        Path(destination).write_bytes(b"asset-bytes")
        return len(b"asset-bytes")

    def upload(self, path: Path, public_id, folder=None, resource_type="image") -> str:
        self.uploads.append((public_id, folder, resource_type))
        return (f"https://res.cloudinary.com/{self.account.cloud_name}/{resource_type}"
                f"/upload/v1/{folder}/{public_id}.jpg")

    def close(self):
        self.closed = True


@pytest.fixture
def source_host():
    return FakeMediaHost(SOURCE_CLOUD)


@pytest.fixture
def target_host():
    return FakeMediaHost(TARGET_CLOUD)


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return path
