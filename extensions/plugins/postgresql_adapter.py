#!/usr/bin/env python3
"""
PostgreSQL Adapter - catalog introspection, DDL and row I/O

This module provides the relational collaborator used by the migration:
- One long-lived connection per adapter, opened once and closed once
- Read-only mode (SERIALIZABLE READ ONLY session) for the source database,
  backed by a guard that refuses every mutating helper
- Catalog introspection: tables, columns (type / nullability / default),
  primary keys, enum types
- DDL: CREATE TYPE, CREATE TABLE IF NOT EXISTS, ALTER TABLE ADD COLUMN,
  TRUNCATE ... CASCADE
- Row I/O: ordered SELECT *, single-row INSERT

Usage:
    source = create_adapter_from_url(source_url, readonly=True)
    source.connect()
    tables = source.list_tables()
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import psycopg2
import psycopg2.extensions
import psycopg2.extras
from psycopg2 import sql

from core.errors import ConnectivityError, ReadOnlyViolation, StorageError, sanitize_error
from core.schema_ir import ColumnDescriptor, EnumTypeDescriptor, SchemaIR, TableDescriptor

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection states"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionConfig:
    """PostgreSQL connection configuration"""
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str = "postgres"
    password: str = ""
    schema: str = "public"
    sslmode: Optional[str] = None
    connect_timeout: int = 10
    application_name: str = "env-migrator"

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to psycopg2 connection parameters"""
        params = {
            'host': self.host,
            'port': self.port,
            'dbname': self.database,
            'user': self.user,
            'password': self.password,
            'connect_timeout': self.connect_timeout,
            'application_name': self.application_name,
        }
        if self.sslmode:
            params['sslmode'] = self.sslmode
        return params

    def describe(self) -> str:
        """host:port/database, without credentials"""
        return f"{self.host}:{self.port}/{self.database}"


# One pass over the catalog: every column of every ordinary table in a schema.
_COLUMNS_QUERY = """
    SELECT c.relname AS table_name,
           a.attname AS name,
           pg_catalog.format_type(a.atttypid, a.atttypmod) AS data_type,
           t.typname AS udt_name,
           NOT a.attnotnull AS nullable,
           pg_catalog.pg_get_expr(d.adbin, d.adrelid) AS column_default
    FROM pg_catalog.pg_attribute a
    JOIN pg_catalog.pg_class c ON c.oid = a.attrelid
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_catalog.pg_type t ON t.oid = a.atttypid
    LEFT JOIN pg_catalog.pg_attrdef d ON (a.attrelid, a.attnum) = (d.adrelid, d.adnum)
    WHERE n.nspname = %s
      AND c.relkind IN ('r', 'p')
      AND a.attnum > 0
      AND NOT a.attisdropped
      {table_filter}
    ORDER BY c.relname, a.attnum
"""

_PRIMARY_KEYS_QUERY = """
    SELECT c.relname AS table_name, a.attname AS column_name
    FROM pg_catalog.pg_constraint con
    JOIN pg_catalog.pg_class c ON c.oid = con.conrelid
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_catalog.pg_attribute a
      ON a.attrelid = con.conrelid AND a.attnum = ANY(con.conkey) AND NOT a.attisdropped
    WHERE con.contype = 'p'
      AND n.nspname = %s
      {table_filter}
    ORDER BY c.relname, array_position(con.conkey, a.attnum)
"""

_ENUMS_QUERY = """
    SELECT t.typname AS type_name, e.enumlabel AS label
    FROM pg_catalog.pg_type t
    JOIN pg_catalog.pg_enum e ON e.enumtypid = t.oid
    JOIN pg_catalog.pg_namespace n ON n.oid = t.typnamespace
    WHERE n.nspname = %s
    ORDER BY t.typname, e.enumsortorder
"""


class PostgreSQLAdapter:
    """
    PostgreSQL adapter holding a single connection for the whole run.

    ``readonly=True`` opens the session as SERIALIZABLE READ ONLY (a
    consistent snapshot of every table) and makes every mutating helper raise
    ``ReadOnlyViolation`` before anything is sent to the server.
    """

    def __init__(self, config: Optional[ConnectionConfig] = None, readonly: bool = False, **kwargs):
        self.config = config or ConnectionConfig(**kwargs)
        self.readonly = readonly
        self.connection = None
        self.state = ConnectionState.DISCONNECTED
        self.stats = {
            'queries_executed': 0,
            'failed_queries': 0,
            'total_execution_time': 0.0,
        }

    @property
    def schema(self) -> str:
        return self.config.schema

    # ===== Connection lifecycle =====

    def connect(self):
        """Open the connection; raises ConnectivityError on failure"""
        logger.info(f"Connecting to {self.config.describe()}...")
        try:
            self.connection = psycopg2.connect(**self.config.to_connection_params())
            if self.readonly:
                self.connection.set_session(
                    isolation_level=psycopg2.extensions.ISOLATION_LEVEL_SERIALIZABLE,
                    readonly=True,
                )
            else:
                self.connection.autocommit = True
        except psycopg2.Error as e:
            self.state = ConnectionState.ERROR
            raise ConnectivityError(
                f"Failed to connect to {self.config.describe()}: {sanitize_error(e)}"
            ) from e

        self.state = ConnectionState.CONNECTED
        mode = "SERIALIZABLE READ ONLY" if self.readonly else "read-write, autocommit"
        logger.info(f"Connected to {self.config.describe()} ({mode})")

    def close(self):
        """Close the connection; safe to call more than once"""
        if self.connection is None:
            return
        try:
            if self.readonly and not self.connection.closed:
                # end the snapshot transaction; nothing to commit on a read-only session
                self.connection.rollback()
            self.connection.close()
            logger.info(f"Closed connection to {self.config.describe()}")
        except psycopg2.Error as e:
            logger.error(f"Error closing connection to {self.config.describe()}: {sanitize_error(e)}")
        finally:
            self.connection = None
            self.state = ConnectionState.DISCONNECTED

    def _ensure_writable(self, operation: str):
        if self.readonly:
            raise ReadOnlyViolation(
                f"Refusing to {operation} on read-only database {self.config.describe()}"
            )

    # ===== Query execution =====

    def execute_query(self, query, params: Optional[Sequence] = None,
                      fetch: bool = True) -> Dict[str, Any]:
        """
        Execute a statement and return a result dictionary with keys
        ``success``, ``data`` (list of dict rows), ``rows_affected``, ``error``.
        """
        start_time = time.time()
        result = {
            'success': False,
            'data': [],
            'rows_affected': 0,
            'error': None,
        }

        if self.connection is None:
            result['error'] = "Not connected"
            return result

        try:
            with self.connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(query, params)
                if fetch and cursor.description:
                    result['data'] = cursor.fetchall()
                result['rows_affected'] = cursor.rowcount if cursor.rowcount > 0 else 0
            result['success'] = True
            self.stats['queries_executed'] += 1
        except psycopg2.Error as e:
            result['error'] = sanitize_error(e).strip()
            self.stats['failed_queries'] += 1
            if not self.connection.autocommit:
                # leave the session usable after an aborted transaction
                try:
                    self.connection.rollback()
                except psycopg2.Error:
                    pass

        self.stats['total_execution_time'] += time.time() - start_time
        return result

    def _execute_or_raise(self, query, params: Optional[Sequence] = None,
                          fetch: bool = True, action: str = "execute statement") -> List[Dict[str, Any]]:
        result = self.execute_query(query, params, fetch=fetch)
        if not result['success']:
            raise StorageError(f"Failed to {action}: {result['error']}")
        return result['data']

    # ===== Catalog introspection =====

    def list_tables(self) -> List[str]:
        """Ordinary tables of the configured schema, sorted by name"""
        rows = self._execute_or_raise(
            "SELECT tablename FROM pg_catalog.pg_tables WHERE schemaname = %s ORDER BY tablename",
            (self.schema,), action="list tables")
        return [row['tablename'] for row in rows]

    def table_exists(self, table_name: str) -> bool:
        rows = self._execute_or_raise(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = %s AND table_name = %s",
            (self.schema, table_name), action=f"check table {table_name}")
        return len(rows) > 0

    def describe_table(self, table_name: str) -> Optional[TableDescriptor]:
        """Columns and primary key of one table, or None if it does not exist"""
        tables = self._describe_tables(table_name)
        return tables.get(table_name)

    def describe_schema(self) -> SchemaIR:
        """Every table and enum type of the schema, captured in one pass"""
        schema = SchemaIR(tables=self._describe_tables())
        for row in self._execute_or_raise(_ENUMS_QUERY, (self.schema,), action="list enum types"):
            existing = schema.enum_types.get(row['type_name'])
            labels = (existing.labels if existing else ()) + (row['label'],)
            schema.enum_types[row['type_name']] = EnumTypeDescriptor(row['type_name'], labels)
        return schema

    def list_enum_types(self) -> List[str]:
        rows = self._execute_or_raise(
            "SELECT t.typname FROM pg_catalog.pg_type t "
            "JOIN pg_catalog.pg_namespace n ON n.oid = t.typnamespace "
            "WHERE n.nspname = %s AND t.typtype = 'e'",
            (self.schema,), action="list enum types")
        return [row['typname'] for row in rows]

    def _describe_tables(self, table_name: Optional[str] = None) -> Dict[str, TableDescriptor]:
        params: Tuple = (self.schema,)
        table_filter = ""
        if table_name is not None:
            table_filter = "AND c.relname = %s"
            params = (self.schema, table_name)

        columns: Dict[str, List[ColumnDescriptor]] = {}
        for row in self._execute_or_raise(_COLUMNS_QUERY.format(table_filter=table_filter), params,
                                          action="introspect columns"):
            columns.setdefault(row['table_name'], []).append(ColumnDescriptor(
                name=row['name'],
                data_type=row['data_type'],
                nullable=bool(row['nullable']),
                default=row['column_default'],
                udt_name=(row['udt_name'] or "").lower(),
            ))

        primary_keys: Dict[str, List[str]] = {}
        for row in self._execute_or_raise(_PRIMARY_KEYS_QUERY.format(table_filter=table_filter), params,
                                          action="introspect primary keys"):
            primary_keys.setdefault(row['table_name'], []).append(row['column_name'])

        return {
            name: TableDescriptor(name=name, columns=tuple(cols),
                                  primary_key=tuple(primary_keys.get(name, ())))
            for name, cols in columns.items()
        }

    # ===== DDL (destination only) =====

    def create_enum_type(self, enum_type: EnumTypeDescriptor):
        self._ensure_writable(f"create type {enum_type.name}")
        labels = sql.SQL(", ").join(sql.Literal(label) for label in enum_type.labels)
        statement = sql.SQL("CREATE TYPE {}.{} AS ENUM ({})").format(
            sql.Identifier(self.schema), sql.Identifier(enum_type.name), labels)
        self._execute_or_raise(statement, fetch=False, action=f"create type {enum_type.name}")
        logger.info(f"  Created enum type {enum_type.name}")

    def create_table(self, table: TableDescriptor):
        """CREATE TABLE IF NOT EXISTS from a descriptor, without volatile defaults"""
        self._ensure_writable(f"create table {table.name}")
        self._execute_or_raise(build_create_table_sql(table, self.schema), fetch=False,
                               action=f"create table {table.name}")

    def add_column(self, table_name: str, column: ColumnDescriptor):
        self._ensure_writable(f"alter table {table_name}")
        statement = sql.SQL("ALTER TABLE {} ADD COLUMN {}").format(
            sql.Identifier(self.schema, table_name), column_definition_sql(column))
        self._execute_or_raise(statement, fetch=False,
                               action=f"add column {table_name}.{column.name}")

    def truncate(self, table_name: str):
        self._ensure_writable(f"truncate {table_name}")
        statement = sql.SQL("TRUNCATE TABLE {} CASCADE").format(sql.Identifier(self.schema, table_name))
        self._execute_or_raise(statement, fetch=False, action=f"truncate {table_name}")

    # ===== Row I/O =====

    def fetch_rows(self, table_name: str, order_by: Sequence[str] = ()) -> List[Dict[str, Any]]:
        """SELECT * from a table (read-only), optionally ordered"""
        statement = sql.SQL("SELECT * FROM {}").format(sql.Identifier(self.schema, table_name))
        if order_by:
            statement = sql.SQL("{} ORDER BY {}").format(
                statement, sql.SQL(", ").join(sql.Identifier(c) for c in order_by))
        return [dict(row) for row in
                self._execute_or_raise(statement, action=f"read rows from {table_name}")]

    def insert_row(self, table_name: str, columns: Sequence[str], values: Sequence[Any]):
        self._ensure_writable(f"insert into {table_name}")
        statement = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(self.schema, table_name),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        self._execute_or_raise(statement, list(values), fetch=False,
                               action=f"insert into {table_name}")


def column_definition_sql(column: ColumnDescriptor) -> sql.Composed:
    """``"name" type [NOT NULL] [DEFAULT expr]`` with volatile defaults dropped"""
    parts = [sql.Identifier(column.name), sql.SQL(column.data_type)]
    if not column.nullable:
        parts.append(sql.SQL("NOT NULL"))
    if column.portable_default is not None:
        parts.append(sql.SQL("DEFAULT " + column.portable_default))
    return sql.SQL(" ").join(parts)


def build_create_table_sql(table: TableDescriptor, schema: str = "public") -> sql.Composed:
    definitions = [column_definition_sql(col) for col in table.columns]
    if table.primary_key:
        definitions.append(sql.SQL("CONSTRAINT {} PRIMARY KEY ({})").format(
            sql.Identifier(f"{table.name}_pkey"),
            sql.SQL(", ").join(sql.Identifier(c) for c in table.primary_key),
        ))
    return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
        sql.Identifier(schema, table.name), sql.SQL(", ").join(definitions))


def create_adapter_from_url(database_url: str, readonly: bool = False, **kwargs) -> PostgreSQLAdapter:
    """Create adapter from database URL"""
    parsed = urlparse(database_url)
    if not parsed.scheme.startswith('postgres'):
        raise ConnectivityError(f"Unsupported database URL scheme: {parsed.scheme or '(none)'}")

    query = dict(part.split('=', 1) for part in parsed.query.split('&') if '=' in part)
    config = ConnectionConfig(
        host=parsed.hostname or 'localhost',
        port=parsed.port or 5432,
        database=parsed.path.lstrip('/') or 'postgres',
        user=unquote(parsed.username) if parsed.username else 'postgres',
        password=unquote(parsed.password) if parsed.password else '',
        schema=query.get('schema', 'public'),
        sslmode=query.get('sslmode'),
        **kwargs
    )
    return PostgreSQLAdapter(config, readonly=readonly)
