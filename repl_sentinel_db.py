#!/usr/bin/env python3
"""
Repl-Sentinel Database Layer
============================

Connection handling and schema metadata for a single MySQL server:

- DatabaseManager: one lazily opened pymysql connection per server
- TableCatalog / TableMeta: columns, chunking keys and row estimates
- quote_identifier / qualified_name: the only place identifiers are
  turned into SQL text
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
import pymysql
import pymysql.cursors

from repl_sentinel_config import ServerConfig


# Boundary strategies
PRIMARY = 'PRIMARY'
LIMIT = 'LIMIT'

SYSTEM_SCHEMAS = ('information_schema', 'mysql', 'performance_schema', 'sys')


class SentinelError(Exception):
    """Fatal operational error (connection, lock, indexing)."""
    pass


def quote_identifier(name: str) -> str:
    """Backtick-quote an identifier taken from information_schema.

    Embedded backticks are doubled, and '%' is doubled because every
    statement goes through the driver's pyformat substitution.
    """
    escaped = str(name).replace('`', '``').replace('%', '%%')
    return f"`{escaped}`"


def qualified_name(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


class DatabaseManager:
    """Executes statements against one MySQL server."""

    def __init__(self, config: ServerConfig, logger: Optional[logging.Logger] = None,
                 query_logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.query_logger = query_logger
        self._connection = None
        self._lock = threading.RLock()

    @property
    def label(self) -> str:
        return self.config.label

    def get_connection(self):
        """Return the open connection, connecting on first use."""
        with self._lock:
            if self._connection is None:
                try:
                    self._connection = pymysql.connect(
                        host=self.config.host,
                        port=self.config.port,
                        user=self.config.username,
                        password=self.config.password,
                        charset='utf8mb4',
                        autocommit=True,
                        cursorclass=pymysql.cursors.DictCursor,
                        init_command=f"SET SESSION wait_timeout={int(self.config.wait_timeout)}",
                        **self.config.options
                    )
                    self.logger.debug(f"Connected to {self.label}")
                except pymysql.MySQLError as e:
                    self.logger.error(f"Failed to create database connection to {self.label}: {e}")
                    raise SentinelError(f"Unable to connect to {self.label}: {e}")
            return self._connection

    def _log_query(self, query: str, params: Dict[str, Any]):
        if self.query_logger is not None:
            self.query_logger.info(f"[{self.label}] {query.strip()} -- {params}")

    def _run(self, query: str, params: Optional[Dict], fetch: bool):
        params = params or {}
        with self._lock:
            connection = self.get_connection()
            self._log_query(query, params)
            try:
                with connection.cursor() as cursor:
                    cursor.execute(query, params)
                    if fetch:
                        columns = [d[0] for d in cursor.description or []]
                        return list(cursor.fetchall()), columns
                    return cursor.rowcount
            except pymysql.MySQLError as e:
                self.logger.debug(f"Statement failed on {self.label}: {e}")
                raise

    def fetch_all(self, query: str, params: Optional[Dict] = None) -> List[Dict[str, Any]]:
        """Execute a query and return all rows as dictionaries."""
        rows, _ = self._run(query, params, fetch=True)
        return rows

    def fetch_one(self, query: str, params: Optional[Dict] = None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    def fetch_value(self, query: str, params: Optional[Dict] = None, column: Optional[str] = None):
        """Return a single value from the first row (None when empty)."""
        row = self.fetch_one(query, params)
        if not row:
            return None
        if column is None:
            return next(iter(row.values()))
        return row.get(column)

    def execute_query(self, query: str, params: Optional[Dict] = None) -> pd.DataFrame:
        """Execute a query and return results as DataFrame."""
        rows, columns = self._run(query, params, fetch=True)
        return pd.DataFrame(rows, columns=columns)

    def execute_non_query(self, query: str, params: Optional[Dict] = None) -> int:
        """Execute a statement and return the number of affected rows."""
        return self._run(query, params, fetch=False)

    def keep_alive(self):
        """Cheap round trip that keeps an idle connection from timing out."""
        self.fetch_value("SELECT 1")

    def render(self, query: str, params: Optional[Dict] = None) -> str:
        """Return the statement text exactly as it would be sent."""
        with self._lock:
            connection = self.get_connection()
            with connection.cursor() as cursor:
                return cursor.mogrify(query, params or {})

    def close_all_connections(self):
        """Close the server connection."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                except pymysql.MySQLError as e:
                    self.logger.warning(f"Error closing connection to {self.label}: {e}")
                self._connection = None


@dataclass
class TableMeta:
    """Schema metadata for one table."""
    schema: str
    name: str
    engine: Optional[str] = None
    row_count: int = 0
    columns: List[str] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)
    key_type: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def quoted_name(self) -> str:
        return qualified_name(self.schema, self.name)

    @property
    def strategy(self) -> str:
        return PRIMARY if len(self.keys) == 1 else LIMIT


class TableCatalog:
    """Reads table metadata from information_schema."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def get_tables(self, schema: str) -> List[TableMeta]:
        """Return metadata for every base table in a schema."""
        query = """
        SELECT TABLE_SCHEMA, TABLE_NAME, ENGINE, TABLE_ROWS
        FROM information_schema.TABLES
        WHERE TABLE_SCHEMA = %(schema)s AND TABLE_TYPE = 'BASE TABLE'
        ORDER BY TABLE_NAME
        """
        rows = self.db.fetch_all(query, {'schema': schema})
        return [self._build(row) for row in rows]

    def get_table(self, schema: str, table: str) -> Optional[TableMeta]:
        query = """
        SELECT TABLE_SCHEMA, TABLE_NAME, ENGINE, TABLE_ROWS
        FROM information_schema.TABLES
        WHERE TABLE_SCHEMA = %(schema)s AND TABLE_NAME = %(table)s
        """
        row = self.db.fetch_one(query, {'schema': schema, 'table': table})
        return self._build(row) if row else None

    def _build(self, row: Dict[str, Any]) -> TableMeta:
        schema = row['TABLE_SCHEMA']
        name = row['TABLE_NAME']
        column_rows = self.get_columns(schema, name)
        keys = self.chunking_keys(column_rows)
        return TableMeta(
            schema=schema,
            name=name,
            engine=row.get('ENGINE'),
            row_count=int(row.get('TABLE_ROWS') or 0),
            columns=[c['COLUMN_NAME'] for c in column_rows],
            keys=keys,
            key_type=self.key_type(column_rows, keys)
        )

    def get_columns(self, schema: str, table: str) -> List[Dict[str, Any]]:
        query = """
        SELECT COLUMN_NAME, COLUMN_KEY, EXTRA, DATA_TYPE
        FROM information_schema.COLUMNS
        WHERE TABLE_SCHEMA = %(schema)s AND TABLE_NAME = %(table)s
        ORDER BY ORDINAL_POSITION
        """
        return self.db.fetch_all(query, {'schema': schema, 'table': table})

    def get_primary_keys(self, schema: str, table: str) -> List[str]:
        return self.chunking_keys(self.get_columns(schema, table))

    @staticmethod
    def chunking_keys(column_rows: List[Dict[str, Any]]) -> List[str]:
        """A single auto_increment column wins; otherwise all PRI columns."""
        auto_increment = [
            c['COLUMN_NAME'] for c in column_rows
            if 'auto_increment' in (c.get('EXTRA') or '').lower()
        ]
        if len(auto_increment) == 1:
            return auto_increment
        return [c['COLUMN_NAME'] for c in column_rows if c.get('COLUMN_KEY') == 'PRI']

    @staticmethod
    def key_type(column_rows: List[Dict[str, Any]], keys: List[str]) -> Optional[str]:
        """Lower-cased DATA_TYPE of a single chunking key."""
        if len(keys) != 1:
            return None
        for c in column_rows:
            if c['COLUMN_NAME'] == keys[0] and c.get('DATA_TYPE'):
                return str(c['DATA_TYPE']).lower()
        return None

    def guess_replicated_dbs(self, exclude: Optional[List[str]] = None) -> List[str]:
        """Databases to check: Binlog_Do_DB when set, else all user schemas."""
        exclude = set(SYSTEM_SCHEMAS) | set(exclude or [])

        status = self.db.fetch_one("SHOW MASTER STATUS")
        binlog_do_db = (status or {}).get('Binlog_Do_DB') or ''
        databases = [name.strip() for name in binlog_do_db.split(',') if name.strip()]
        if databases:
            return [name for name in databases if name not in exclude]

        rows = self.db.fetch_all(
            "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA ORDER BY SCHEMA_NAME"
        )
        return [row['SCHEMA_NAME'] for row in rows if row['SCHEMA_NAME'] not in exclude]
