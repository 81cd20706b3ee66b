#!/usr/bin/env python3
"""
Repl-Sentinel Boundary Indexer
==============================

Splits every table into chunks and records the chunk boundaries in the
checksum store of the master. Each boundary is written as soon as it is
known, so an interrupted run picks up from the last stored chunk.

Two strategies:

- PRIMARY: walk a single sortable key in steps of page_size rows
- LIMIT: fixed row-offset windows for tables without a single key
"""

import logging
import math
import time
from typing import Any, Dict, List, Optional

import pymysql

from repl_sentinel_config import GeneralConfig
from repl_sentinel_db import (
    LIMIT, PRIMARY, DatabaseManager, SentinelError, TableCatalog, TableMeta,
    quote_identifier
)
from repl_sentinel_logging import log_notice, log_profile
from repl_sentinel_store import ChecksumStore, ChunkRecord, bound_for_key


class IndexingError(SentinelError):
    """Boundary computation failed for a table."""
    pass


def page_size(row_count: int, min_block_size: int, max_block_size: int) -> int:
    """Aim for ten chunks per table, clamped to [min_block_size, max_block_size]."""
    return int(max(min_block_size, min(math.ceil(max(row_count, 0) / 10), max_block_size)))


class BoundaryIndexer:
    """Computes and persists chunk boundaries on the master."""

    def __init__(self, db_manager: DatabaseManager, store: ChecksumStore,
                 general: GeneralConfig, logger: Optional[logging.Logger] = None):
        self.db = db_manager
        self.store = store
        self.general = general
        self.catalog = TableCatalog(db_manager)
        self.logger = logger or logging.getLogger(__name__)

    def page_size(self, row_count: int) -> int:
        return page_size(row_count, self.general.min_block_size, self.general.max_block_size)

    def index_server(self, databases: List[str]) -> Dict[str, int]:
        """Index every table of the given databases; returns chunks per table."""
        summary = {}
        for schema in databases:
            log_notice(self.logger, f"Getting tables for: {schema}")
            tables = self.catalog.get_tables(schema)
            log_notice(self.logger, f"Found {len(tables)} table(s) in {schema}")

            for meta in tables:
                if self.general.is_ignored(meta.schema, meta.name):
                    log_notice(self.logger, f"Ignoring table: {meta.full_name}")
                    continue
                try:
                    existing = self.store.load_table_boundaries(meta.schema, meta.name)
                    chunks = self.index_table(meta, existing)
                    summary[meta.full_name] = len(chunks)
                except (IndexingError, pymysql.MySQLError) as e:
                    self.logger.error(f"Indexing aborted for {meta.full_name}: {e}")
        return summary

    def index_table(self, meta: TableMeta, existing: List[ChunkRecord]) -> List[ChunkRecord]:
        """Extend the stored boundaries of a table so they cover all rows."""
        strategy = meta.strategy
        size = self.page_size(meta.row_count)
        log_notice(self.logger, f"Indexing {meta.full_name} (strategy: {strategy}, chunk_size: {size})")

        if existing and any(chunk.chunk_index != strategy for chunk in existing):
            self.logger.warning(
                f"Stored boundaries of {meta.full_name} were built with another strategy, re-indexing"
            )
            self.store.delete_table(meta.schema, meta.name)
            existing = []

        start = time.time()
        if strategy == PRIMARY:
            chunks = self._bounds_keyed(meta, size, list(existing))
        else:
            chunks = self._bounds_offset(meta, size, list(existing))
        log_profile(self.logger, f"Index of {meta.full_name} completed in: {time.time() - start:0.4f} seconds")
        return chunks

    def _persist(self, meta: TableMeta, chunk_no: int, strategy: str, lower, upper) -> ChunkRecord:
        chunk = ChunkRecord(
            db=meta.schema,
            tbl=meta.name,
            chunk=chunk_no,
            chunk_index=strategy,
            lower_boundary=lower,
            upper_boundary=upper
        )
        self.store.save_boundary(chunk)
        self.logger.debug(f"{meta.full_name} chunk {chunk_no}: [{lower}, {upper}]")
        return chunk

    def _fetch(self, query: str, params: Dict[str, Any], meta: TableMeta) -> Optional[Dict[str, Any]]:
        try:
            return self.db.fetch_one(query, params)
        except pymysql.MySQLError as e:
            self.logger.error(
                f"Unable to get bounds for {meta.full_name} -- {query.strip()} -- params: {params} -- {e}"
            )
            raise IndexingError(f"Fatal error occurred getting bounds of {meta.full_name}: {e}")

    def _bounds_keyed(self, meta: TableMeta, size: int, chunks: List[ChunkRecord]) -> List[ChunkRecord]:
        key = quote_identifier(meta.keys[0])
        limits = self._fetch(
            f"SELECT MIN({key}) AS start_pk, MAX({key}) AS end_pk FROM {meta.quoted_name}",
            {}, meta
        ) or {}
        start_pk = limits.get('start_pk')
        end_pk = limits.get('end_pk')

        if start_pk is None:
            log_notice(self.logger, f"{meta.full_name} is empty, nothing to index")
            return chunks

        # The last stored chunk may have been cut short; compute it again
        last = chunks.pop() if chunks else None
        if last is not None:
            lower = bound_for_key(last.lower_boundary, meta.key_type)
            chunk_no = last.chunk
        else:
            lower = start_pk
            chunk_no = 0

        # Key order is decided by the server only
        query = f"""
        SELECT MAX(x) AS upper FROM (
            SELECT {key} AS x FROM {meta.quoted_name}
            WHERE {key} >= %(start)s ORDER BY {key} LIMIT 0, %(stop)s
        ) t
        """
        # A window of one key never moves past its lower bound
        stop = max(size, 2)
        produced = 0
        while True:
            self.logger.debug(f"Scanning {meta.full_name} from {lower} of {end_pk}")
            row = self._fetch(query, {'start': lower, 'stop': stop}, meta) or {}
            upper = row.get('upper')
            if upper is None or (produced and upper == lower):
                break

            chunks.append(self._persist(meta, chunk_no, PRIMARY, lower, upper))
            chunk_no += 1
            produced += 1
            if upper == end_pk:
                break
            lower = upper

        if last is not None and produced == 0:
            # No rows left from the last stored chunk on; keep it as is
            chunks.append(last)
        return chunks

    def _bounds_offset(self, meta: TableMeta, size: int, chunks: List[ChunkRecord]) -> List[ChunkRecord]:
        row_count = int(meta.row_count)
        if chunks:
            # The last window may have grown; compute it again
            chunks.pop()
        offset = int(chunks[-1].upper_boundary) + 1 if chunks else 0
        chunk_no = chunks[-1].chunk + 1 if chunks else 0

        while offset < row_count:
            window = min(size, row_count - offset)
            chunks.append(self._persist(meta, chunk_no, LIMIT, offset, offset + window - 1))
            self.logger.debug(f"{meta.full_name}: {offset / row_count * 100.0:.2f}% done")
            chunk_no += 1
            offset += window

        # Windows past the current row count are no longer valid
        self.store.delete_chunks_after(meta.schema, meta.name, chunks[-1].chunk if chunks else -1)
        return chunks
