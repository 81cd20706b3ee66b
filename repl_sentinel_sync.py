#!/usr/bin/env python3
"""
Repl-Sentinel Reconciler
========================

Row-level repair of divergent chunks. For a chunk keyed on a single column,
the per-row hashes are read from master and replica, diffed, and the replica
is fixed with targeted upserts and deletes. Master always wins.

Offset-window (LIMIT) chunks and tables with composite keys are skipped.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import pymysql

from repl_sentinel_config import GeneralConfig
from repl_sentinel_db import DatabaseManager, TableCatalog
from repl_sentinel_hasher import ChunkHasher, PreparedTable, StatementCache, aggregate_crc, bind_params
from repl_sentinel_logging import log_notice, log_profile
from repl_sentinel_store import ChecksumStore, ChunkRecord

INSERT = 'INSERT'
DELETE = 'DELETE'


def compute_diff(master: Dict[Any, str], slave: Dict[Any, str]) -> List[Tuple[str, Any]]:
    """Actions that turn the replica's {key: row_hash} into the master's.

    Keys only on the replica are deleted. Keys missing from the replica or
    with a different hash are upserted.
    """
    if not slave:
        return [(INSERT, key) for key in master]
    if not master:
        return [(DELETE, key) for key in slave]

    master_df = pd.DataFrame(list(master.items()), columns=['pk', 'row_hash'])
    slave_df = pd.DataFrame(list(slave.items()), columns=['pk', 'row_hash'])
    merged = master_df.merge(
        slave_df, on='pk', how='outer', suffixes=('_master', '_slave'), indicator=True
    )

    deletes = merged.loc[merged['_merge'] == 'right_only', 'pk'].tolist()
    changed = (merged['_merge'] == 'both') & (merged['row_hash_master'] != merged['row_hash_slave'])
    inserts = merged.loc[(merged['_merge'] == 'left_only') | changed, 'pk'].tolist()

    return [(DELETE, key) for key in deletes] + [(INSERT, key) for key in inserts]


class Reconciler:
    """Repairs divergent keyed chunks on one replica."""

    def __init__(self, master_db: DatabaseManager, slave_db: DatabaseManager,
                 slave_store: ChecksumStore, general: GeneralConfig, dry_run: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.master_db = master_db
        self.slave_db = slave_db
        self.store = slave_store
        self.general = general
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)

        # Statements come from the master's schema and are shared with the
        # replica hasher that refreshes the chunk afterwards
        self.cache = StatementCache(TableCatalog(master_db), general.record_skip, self.logger)
        self.hasher = ChunkHasher(slave_db, slave_store, general, cache=self.cache, logger=self.logger)

    def sync_all(self) -> Dict[str, int]:
        """Reconcile every divergent chunk recorded in the replica store."""
        totals = {'chunks': 0, 'inserted': 0, 'deleted': 0, 'failed': 0, 'skipped': 0}
        try:
            divergent = self.store.load_divergent()
        except pymysql.MySQLError as e:
            log_notice(self.logger, "******** Error while retrieving Results ********")
            self.logger.error(f"Unable to load divergent chunks from {self.slave_db.label}: {e}")
            return totals

        if not divergent:
            log_notice(self.logger, "******** OK: All Records Synched ********")
            return totals

        log_notice(self.logger, "******** Running: Unsynched Records Found ********")
        for chunk in divergent:
            stats = self.sync_chunk(chunk)
            if stats is None:
                totals['skipped'] += 1
                continue
            totals['chunks'] += 1
            for name in ('inserted', 'deleted', 'failed'):
                totals[name] += stats[name]
        return totals

    def sync_chunk(self, chunk: ChunkRecord) -> Optional[Dict[str, int]]:
        """Reconcile one chunk; None when the chunk is not reconcilable."""
        if self.general.is_ignored(chunk.db, chunk.tbl):
            return None
        if not chunk.is_keyed:
            log_notice(self.logger, f"Skipping {chunk.full_name} chunk {chunk.chunk}: offset chunks cannot be synchronized")
            return None

        prepared = self.cache.get(chunk)
        if prepared is None:
            return None

        log_notice(self.logger, f"Synchronizing {chunk.full_name} chunk #{chunk.chunk} on {self.slave_db.label}")
        master_map = self._row_hashes(self.master_db, prepared, chunk)
        slave_map = self._row_hashes(self.slave_db, prepared, chunk)
        if master_map is None or slave_map is None:
            return None

        stats = {'inserted': 0, 'deleted': 0, 'failed': 0}
        for action, key in compute_diff(master_map, slave_map):
            verb = 'Upserting' if action == INSERT else 'Deleting'
            log_notice(self.logger, f"{verb} record {key} of {chunk.full_name}")
            if action == INSERT:
                applied = self._copy_row(prepared, key)
                stats['inserted' if applied else 'failed'] += 1
            else:
                applied = self._delete_row(prepared, key)
                stats['deleted' if applied else 'failed'] += 1
            self._keep_master_alive()

        if not self.dry_run:
            self._verify(chunk, master_map)
        return stats

    def _row_hashes(self, db: DatabaseManager, prepared: PreparedTable,
                    chunk: ChunkRecord) -> Optional[Dict[Any, str]]:
        query = prepared.statements['row_hash']
        params = bind_params(chunk, prepared.meta.key_type)
        start = time.time()
        try:
            rows = db.fetch_all(query, params)
        except pymysql.MySQLError as e:
            self.logger.error(
                f"Unable to read row hashes of {chunk.full_name} chunk {chunk.chunk} on {db.label} "
                f"-- {query} -- params: {params} -- {e}"
            )
            return None
        log_profile(self.logger, f"List retrieved from {db.label} in: {time.time() - start:0.4f} seconds")
        return {row['pk']: row['row_crc'] for row in rows}

    def _write(self, query: str, params: Dict[str, Any]) -> bool:
        if self.dry_run:
            log_notice(self.logger, f"DRYRUN [{self.slave_db.label}] {self.slave_db.render(query, params)}")
            return True
        try:
            self.slave_db.execute_non_query(query, params)
            return True
        except pymysql.MySQLError as e:
            self.logger.error(f"Error executing on {self.slave_db.label} -- {query} -- params: {params} -- {e}")
            return False

    def _copy_row(self, prepared: PreparedTable, key: Any) -> bool:
        try:
            row = self.master_db.fetch_one(prepared.statements['select_row'], {'key': key})
        except pymysql.MySQLError as e:
            self.logger.error(f"Unable to read {prepared.meta.full_name} row {key} from master: {e}")
            return False
        if row is None:
            # Deleted on master since the hashes were read
            self.logger.debug(f"Row {key} of {prepared.meta.full_name} no longer exists on master")
            return False

        params = {f"c{i}": row[column] for i, column in enumerate(prepared.meta.columns)}
        return self._write(prepared.statements['upsert_row'], params)

    def _delete_row(self, prepared: PreparedTable, key: Any) -> bool:
        return self._write(prepared.statements['delete_row'], {'key': key})

    def _keep_master_alive(self):
        try:
            self.master_db.keep_alive()
        except pymysql.MySQLError as e:
            self.logger.warning(f"Keep-alive query failed on {self.master_db.label}: {e}")

    def _verify(self, chunk: ChunkRecord, master_map: Dict[Any, str]) -> bool:
        """Re-hash the replica chunk and compare with the master's rows."""
        result = self.hasher.process(chunk)
        if result is None:
            return False

        expected_crc = aggregate_crc(int(h, 16) for h in master_map.values())
        if result.crc == expected_crc and result.cnt == len(master_map):
            log_notice(self.logger, f"{chunk.full_name} chunk #{chunk.chunk} converged (crc={result.crc})")
            return True

        self.logger.warning(
            f"{chunk.full_name} chunk #{chunk.chunk} still differs after sync "
            f"(replica crc={result.crc} cnt={result.cnt}, master crc={expected_crc} cnt={len(master_map)})"
        )
        return False
