#!/usr/bin/env python3
"""
Repl-Sentinel: MySQL Replication Consistency Checker
====================================================

Checks that a MySQL master and its replicas hold identical data, chunk by
chunk, without locking tables.

Phases:
- index:  split every table into chunks on the master and copy the
          boundaries to each replica's checksum store
- hash:   checksum every chunk on every server, then copy the master's
          checksums into each replica's store
- report: list chunks whose replica checksum differs from the master's
- sync:   repair divergent keyed chunks row by row (master wins)

Every phase stores its progress as it goes, so an interrupted run can
simply be started again.

Usage:
    repl-sentinel -c config.yaml [--index] [--hash] [--report] [--sync]
"""

import argparse
import logging
import os
import sys
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import pymysql
from tqdm import tqdm

from repl_sentinel_config import ConfigError, SentinelConfig, load_config
from repl_sentinel_db import DatabaseManager, SentinelError, TableCatalog
from repl_sentinel_hasher import ChunkHasher
from repl_sentinel_indexer import BoundaryIndexer
from repl_sentinel_logging import log_notice, log_profile, setup_logging, setup_query_log
from repl_sentinel_reporter import DivergenceReporter
from repl_sentinel_store import ChecksumStore, ChunkRecord
from repl_sentinel_sync import Reconciler

DEFAULT_LOCK_FILE = os.path.join(tempfile.gettempdir(), 'repl_sentinel.pid')


class ProcessLock:
    """PID file that keeps two instances from running at once."""

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger(__name__)
        self._owned = False

    @staticmethod
    def _is_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _create(self):
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, 'w') as f:
            f.write(str(os.getpid()))

    def _read_pid(self) -> Optional[int]:
        try:
            with open(self.path, 'r') as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def acquire(self):
        try:
            self._create()
        except FileExistsError:
            pid = self._read_pid()
            if pid and pid != os.getpid() and self._is_running(pid):
                raise SentinelError(f"Another instance is already running (pid {pid}, lock {self.path})")

            self.logger.warning(f"Removing stale lock file {self.path}")
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            try:
                self._create()
            except FileExistsError:
                raise SentinelError(f"Another instance took the lock {self.path} while it was being replaced")
        self._owned = True

    def release(self):
        if self._owned and os.path.exists(self.path):
            os.remove(self.path)
        self._owned = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False


class ReplicationChecker:
    """Runs the index, hash, report and sync phases across all servers."""

    def __init__(self, config: SentinelConfig, dry_run: bool = False,
                 query_logger: Optional[logging.Logger] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.general = config.general
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)

        self.master_db = DatabaseManager(config.master, query_logger=query_logger)
        self.slave_dbs = [DatabaseManager(server, query_logger=query_logger) for server in config.slaves]
        self.master_store = self._store(self.master_db)
        self.slave_stores = [self._store(db) for db in self.slave_dbs]

    def _store(self, db: DatabaseManager) -> ChecksumStore:
        return ChecksumStore(db, self.general.database, self.general.table)

    @property
    def all_dbs(self) -> List[DatabaseManager]:
        return [self.master_db] + self.slave_dbs

    def databases(self) -> List[str]:
        """Databases to check: configured list, else the replicated ones."""
        if self.general.databases:
            return list(self.general.databases)
        return TableCatalog(self.master_db).guess_replicated_dbs(exclude=[self.general.database])

    # Index phase

    def prepare_stores(self):
        for store in [self.master_store] + self.slave_stores:
            if not store.ensure():
                store.reset(self.general.force_reset, self.general.incremental_check)

    def run_index(self) -> Dict[str, int]:
        log_notice(self.logger, "Starting index phase")
        self.prepare_stores()

        databases = self.databases()
        log_notice(self.logger, f"Replicated Databases: {','.join(databases)}")
        indexer = BoundaryIndexer(self.master_db, self.master_store, self.general)
        summary = indexer.index_server(databases)

        self.transfer_boundaries()
        return summary

    def transfer_boundaries(self):
        """Copy the master's chunk boundaries into every replica store."""
        chunks = self.master_store.load_all()
        last_chunk = {}
        for chunk in chunks:
            last_chunk[(chunk.db, chunk.tbl)] = chunk.chunk

        for db, store in zip(self.slave_dbs, self.slave_stores):
            log_notice(self.logger, f"Transferring {len(chunks)} boundaries to {db.label}")
            for chunk in chunks:
                store.copy_boundary(chunk)
            for (schema, table), last in last_chunk.items():
                store.delete_chunks_after(schema, table, last)

    # Hash phase

    def select_chunks(self, boundary: Optional[Dict[str, Any]] = None) -> List[ChunkRecord]:
        if boundary:
            chunk = self.master_store.load_chunk(boundary['db'], boundary['tbl'], boundary['chunk'])
            if chunk is None:
                self.logger.error(f"Boundary not found: {boundary}")
                return []
            return [chunk]
        if self.general.incremental_check:
            return self.master_store.load_incremental(
                self.general.expire_days, self.general.incremental_batchsize
            )
        return self.master_store.load_all()

    def run_hash(self, boundary: Optional[Dict[str, Any]] = None) -> int:
        """Hash the selected chunks on every server; returns chunks hashed on all."""
        chunks = self.select_chunks(boundary)
        mode = ' (Incremental mode)' if self.general.incremental_check and not boundary else ''
        log_notice(self.logger, f"Hashing {len(chunks)} chunk(s) on {len(self.all_dbs)} server(s){mode}")

        hashers = [
            ChunkHasher(db, self._store_for(db), self.general)
            for db in self.all_dbs
        ]

        complete = 0
        workers = min(self.general.max_threads, len(hashers))
        executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        try:
            for chunk in tqdm(chunks, desc="Hashing", unit="chunk", disable=not chunks):
                if executor is not None:
                    futures = [executor.submit(hasher.process, chunk) for hasher in hashers]
                    results = [future.result() for future in as_completed(futures)]
                else:
                    results = [hasher.process(chunk) for hasher in hashers]
                if all(result is not None for result in results):
                    complete += 1
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        self.transfer_results()
        return complete

    def _store_for(self, db: DatabaseManager) -> ChecksumStore:
        if db is self.master_db:
            return self.master_store
        return self.slave_stores[self.slave_dbs.index(db)]

    def transfer_results(self):
        """Copy master checksums/counts into each replica's master_* fields."""
        chunks = [chunk for chunk in self.master_store.load_all() if chunk.this_crc]
        for db, store in zip(self.slave_dbs, self.slave_stores):
            log_notice(self.logger, f"Transferring {len(chunks)} master checksum(s) to {db.label}")
            for chunk in chunks:
                store.set_master_values(chunk)

    # Report and sync phases

    def run_report(self) -> int:
        total = 0
        for db, store in zip(self.slave_dbs, self.slave_stores):
            reporter = DivergenceReporter(store, self.general, db.label)
            divergent = reporter.report()
            total += len(divergent or [])
        return total

    def run_sync(self) -> Dict[str, int]:
        totals = {'chunks': 0, 'inserted': 0, 'deleted': 0, 'failed': 0, 'skipped': 0}
        for db, store in zip(self.slave_dbs, self.slave_stores):
            reconciler = Reconciler(self.master_db, db, store, self.general, dry_run=self.dry_run)
            stats = reconciler.sync_all()
            log_notice(self.logger, f"Sync of {db.label}: {stats}")
            for name, value in stats.items():
                totals[name] += value
        return totals

    def run(self, index: bool = False, hash_chunks: bool = False, report: bool = False,
            sync: bool = False, boundary: Optional[Dict[str, Any]] = None):
        start = time.time()
        if index:
            self.run_index()
        if hash_chunks or boundary:
            self.run_hash(boundary)
        if report:
            self.run_report()
        if sync:
            self.run_sync()
        log_profile(self.logger, f"Verification complete in: {time.time() - start:0.4f} seconds")

    def close(self):
        for db in self.all_dbs:
            db.close_all_connections()


def parse_boundary_arg(value: str) -> Dict[str, Any]:
    """Parse --boundary "db=..&tbl=..&chunk=.."."""
    fields = dict(parse_qsl(value))
    missing = [name for name in ('db', 'tbl', 'chunk') if not fields.get(name)]
    if missing:
        raise argparse.ArgumentTypeError(f"boundary is missing: {', '.join(missing)}")
    try:
        chunk = int(fields['chunk'])
    except ValueError:
        raise argparse.ArgumentTypeError("boundary chunk must be an integer")
    return {'db': fields['db'], 'tbl': fields['tbl'], 'chunk': chunk}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Repl-Sentinel: MySQL replication consistency checker",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('-c', '--config', required=True, help='Configuration file (YAML)')
    parser.add_argument('-d', '--debug', action='store_true', help='Debug logging to the console')
    parser.add_argument('-i', '--index', action='store_true', help='Compute chunk boundaries')
    parser.add_argument('-k', '--hash', action='store_true', help='Checksum chunks on all servers')
    parser.add_argument('-r', '--report', action='store_true', help='Report divergent chunks')
    parser.add_argument('-s', '--sync', action='store_true', help='Repair divergent chunks')
    parser.add_argument('--boundary', type=parse_boundary_arg,
                        help='Hash a single chunk: "db=..&tbl=..&chunk=.."')
    parser.add_argument('--print', dest='print_results', action='store_true', help='Print the report')
    parser.add_argument('--dryrun', action='store_true', help='Log sync statements instead of running them')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for Repl-Sentinel."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 1

    general = config.general
    if args.print_results:
        general.print_results = True

    setup_logging(general.log_file, 'DEBUG' if args.debug else general.log_level, console=args.debug)
    query_logger = setup_query_log(general.query_log)
    logger = logging.getLogger(__name__)

    phases = dict(index=args.index, hash_chunks=args.hash, report=args.report, sync=args.sync)
    if not any(phases.values()) and not args.boundary:
        phases = dict(index=True, hash_chunks=True, report=True, sync=False)

    try:
        with ProcessLock(general.lock_file or DEFAULT_LOCK_FILE):
            checker = ReplicationChecker(config, dry_run=args.dryrun, query_logger=query_logger)
            try:
                checker.run(boundary=args.boundary, **phases)
            finally:
                checker.close()
    except (SentinelError, pymysql.MySQLError) as e:
        logger.error(f"Repl-Sentinel failed: {e}")
        print(f"❌ Repl-Sentinel failed: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.warning("Repl-Sentinel interrupted by user")
        print("\n⚠️  Repl-Sentinel interrupted by user", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
