#!/usr/bin/env python3
"""
Repl-Sentinel Chunk Hasher
==========================

Computes an order-independent checksum of one chunk on one server and records
it in that server's checksum store.

Each row is hashed as CRC32(CONCAT(QUOTE(c1), QUOTE(c2), ...)); the row
hashes are summed and the CRC32 of the sum is the chunk checksum. Summing
makes the result independent of the order rows are read in.

The per-table statements are kept in a StatementCache, which the
reconciler shares.
"""

import hashlib
import logging
import re
import time
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import pymysql

from repl_sentinel_config import GeneralConfig
from repl_sentinel_db import (
    LIMIT, PRIMARY, DatabaseManager, TableCatalog, TableMeta, quote_identifier
)
from repl_sentinel_store import ChecksumStore, ChunkRecord, bound_for_key

_INTEGER = re.compile(r'^-?[0-9]+$')


@dataclass
class HashResult:
    """Checksum of one chunk on one server."""
    chunk_time: float
    crc: str
    cnt: int


def aggregate_crc(row_crcs: Iterable[int]) -> str:
    """Python equivalent of HEX(CRC32(SUM(row_crc))) with '0' for no rows."""
    values = list(row_crcs)
    if not values:
        return '0'
    return '%X' % zlib.crc32(str(sum(values)).encode())


def table_key(db: str, tbl: str, strategy: str) -> str:
    return hashlib.md5(f"{db}{tbl}".encode('utf-8')).hexdigest() + strategy


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and bool(_INTEGER.match(value))


def bind_params(chunk: ChunkRecord, key_type: Optional[str] = None) -> Dict[str, Any]:
    """Bind values for a chunk's statements.

    With a known key type the bounds are bound the way the server compares
    that type. Otherwise they are bound as integers when both are integers
    and as strings when not. Offset windows become LIMIT offset, count.
    """
    lower, upper = chunk.lower_boundary, chunk.upper_boundary
    if chunk.chunk_index == LIMIT:
        return {'lower': int(lower), 'count': int(upper) - int(lower) + 1}
    if key_type is not None:
        return {'lower': bound_for_key(lower, key_type), 'upper': bound_for_key(upper, key_type)}
    if _is_integer(lower) and _is_integer(upper):
        return {'lower': int(lower), 'upper': int(upper)}
    return {'lower': str(lower), 'upper': str(upper)}


def row_crc_expression(columns: List[str]) -> str:
    quoted = ','.join(f"QUOTE(t.{quote_identifier(c)})" for c in columns)
    return f"CRC32(CONCAT({quoted}))"


def build_statements(meta: TableMeta, strategy: str, record_skip: int = 0) -> Dict[str, str]:
    """Build the SQL used for one table under the given strategy."""
    if not meta.columns:
        raise ValueError(f"No columns found for {meta.full_name}")

    table = meta.quoted_name
    row_crc = row_crc_expression(meta.columns)
    aggregate = "SELECT COALESCE(HEX(CRC32(SUM(row_crc))), '0') AS crc, COUNT(*) AS cnt FROM"
    statements = {}

    if strategy == LIMIT:
        if meta.keys:
            keys = ','.join(quote_identifier(k) for k in meta.keys)
            join_expr = ' AND '.join(
                f"q.{quote_identifier(k)} = t.{quote_identifier(k)}" for k in meta.keys
            )
            statements['checksum'] = (
                f"{aggregate} (SELECT {row_crc} AS row_crc FROM "
                f"(SELECT {keys} FROM {table} ORDER BY {keys} LIMIT %(lower)s, %(count)s) q "
                f"JOIN {table} t ON {join_expr}) x"
            )
        else:
            statements['checksum'] = (
                f"{aggregate} (SELECT {row_crc} AS row_crc FROM {table} t "
                f"LIMIT %(lower)s, %(count)s) x"
            )
        return statements

    if len(meta.keys) != 1:
        raise ValueError(f"{meta.full_name} needs exactly one key column for keyed chunks")

    key = quote_identifier(meta.keys[0])
    where = f"t.{key} >= %(lower)s AND t.{key} <= %(upper)s"
    if record_skip > 0:
        where += f" AND (t.{key} MOD {int(record_skip)}) = 0"

    columns = [quote_identifier(c) for c in meta.columns]
    placeholders = ', '.join(f"%(c{i})s" for i in range(len(columns)))
    updates = ', '.join(f"{c} = VALUES({c})" for c in columns)

    statements['checksum'] = f"{aggregate} (SELECT {row_crc} AS row_crc FROM {table} t WHERE {where}) x"
    statements['row_hash'] = (
        f"SELECT t.{key} AS pk, HEX({row_crc}) AS row_crc FROM {table} t WHERE {where}"
    )
    statements['select_row'] = f"SELECT {', '.join(columns)} FROM {table} WHERE {key} = %(key)s"
    statements['delete_row'] = f"DELETE FROM {table} WHERE {key} = %(key)s"
    statements['upsert_row'] = (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON DUPLICATE KEY UPDATE {updates}"
    )
    return statements


@dataclass
class PreparedTable:
    """Statements for the table currently being processed."""
    table_key: str
    meta: TableMeta
    statements: Dict[str, str] = field(default_factory=dict)


class StatementCache:
    """Holds the statements of one table, rebuilt when the table changes."""

    def __init__(self, catalog: TableCatalog, record_skip: int = 0,
                 logger: Optional[logging.Logger] = None):
        self.catalog = catalog
        self.record_skip = record_skip
        self.logger = logger or logging.getLogger(__name__)
        self.current: Optional[PreparedTable] = None

    def get(self, chunk: ChunkRecord) -> Optional[PreparedTable]:
        key = table_key(chunk.db, chunk.tbl, chunk.chunk_index)
        if self.current is not None and self.current.table_key == key:
            return self.current

        self.current = None
        try:
            meta = self.catalog.get_table(chunk.db, chunk.tbl)
        except pymysql.MySQLError as e:
            self.logger.error(f"Unable to read metadata of {chunk.full_name}: {e}")
            return None
        if meta is None:
            self.logger.warning(f"Table {chunk.full_name} not found on {self.catalog.db.label}")
            return None

        try:
            statements = build_statements(meta, chunk.chunk_index, self.record_skip)
        except ValueError as e:
            self.logger.error(str(e))
            return None

        self.logger.debug(f"Prepared statements for {chunk.full_name} ({chunk.chunk_index})")
        self.current = PreparedTable(table_key=key, meta=meta, statements=statements)
        return self.current


class ChunkHasher:
    """Hashes chunks on one server."""

    def __init__(self, db_manager: DatabaseManager, store: ChecksumStore, general: GeneralConfig,
                 cache: Optional[StatementCache] = None, logger: Optional[logging.Logger] = None):
        self.db = db_manager
        self.store = store
        self.general = general
        self.logger = logger or logging.getLogger(__name__)
        self.cache = cache or StatementCache(TableCatalog(db_manager), general.record_skip, self.logger)

    def hash_chunk(self, chunk: ChunkRecord) -> Optional[HashResult]:
        """Checksum one chunk; None when it could not be computed."""
        prepared = self.cache.get(chunk)
        if prepared is None:
            return None

        query = prepared.statements['checksum']
        params = bind_params(chunk, prepared.meta.key_type)
        start = time.time()
        try:
            row = self.db.fetch_one(query, params)
        except pymysql.MySQLError as e:
            self.logger.error(
                f"Checksum failed for {chunk.full_name} chunk {chunk.chunk} on {self.db.label} "
                f"-- {query} -- params: {params} -- {e}"
            )
            return None

        elapsed = time.time() - start
        if not row:
            return HashResult(chunk_time=elapsed, crc='0', cnt=0)
        return HashResult(chunk_time=elapsed, crc=str(row['crc'] or '0'), cnt=int(row['cnt'] or 0))

    def process(self, chunk: ChunkRecord) -> Optional[HashResult]:
        """Hash a chunk and store the result."""
        if self.general.is_ignored(chunk.db, chunk.tbl):
            self.logger.debug(f"Ignoring table: {chunk.full_name}")
            return None

        result = self.hash_chunk(chunk)
        if result is None:
            return None

        try:
            self.store.save_hash(chunk, result.chunk_time, result.crc, result.cnt)
        except pymysql.MySQLError as e:
            self.logger.error(f"Unable to store checksum of {chunk.full_name} chunk {chunk.chunk}: {e}")
            return None

        self.logger.debug(
            f"{self.db.label} {chunk.full_name} chunk {chunk.chunk}: "
            f"crc={result.crc} cnt={result.cnt} ({result.chunk_time:0.4f}s)"
        )
        return result
