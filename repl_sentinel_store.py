#!/usr/bin/env python3
"""
Repl-Sentinel Checksum Store
============================

Access to the per-server checksum table: one row per (db, tbl, chunk) holding
the chunk boundaries, this server's checksum/count and the master's
checksum/count copied in by the transfer step.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from repl_sentinel_db import PRIMARY, DatabaseManager, qualified_name, quote_identifier


_INTEGER = re.compile(r'^-?[0-9]+$')

_FIELDS = """db, tbl, chunk, chunk_time, chunk_index, lower_boundary, upper_boundary,
        this_crc, this_cnt, master_crc, master_cnt, ts"""


def parse_boundary(value: Any) -> Any:
    """Turn a stored TEXT boundary back into an int when it is one.

    Only canonical integers are converted, so string keys such as '007'
    keep their exact value.
    """
    if value is None or isinstance(value, int):
        return value
    text = str(value)
    if _INTEGER.match(text) and str(int(text)) == text:
        return int(text)
    return text


INTEGER_TYPES = ('tinyint', 'smallint', 'mediumint', 'int', 'integer', 'bigint')
DECIMAL_TYPES = ('decimal', 'numeric')


def bound_for_key(value: Any, key_type: Optional[str]) -> Any:
    """Bind value for a boundary, typed so the server compares it like the key.

    Text keys are always bound as strings, so '10' and '5' keep their
    collation order. With no known key type the value is passed as is.
    """
    if value is None or key_type is None:
        return value
    if key_type in INTEGER_TYPES:
        return int(value) if _INTEGER.match(str(value)) else str(value)
    if key_type in DECIMAL_TYPES:
        return Decimal(str(value))
    if isinstance(value, (Decimal, datetime, date)):
        return value
    return str(value)


@dataclass
class ChunkRecord:
    """One row of the checksum store."""
    db: str
    tbl: str
    chunk: int
    chunk_index: str
    lower_boundary: Any
    upper_boundary: Any
    this_crc: str = ''
    this_cnt: int = 0
    master_crc: Optional[str] = None
    master_cnt: Optional[int] = None
    chunk_time: Optional[float] = None
    ts: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.db}.{self.tbl}"

    @property
    def is_keyed(self) -> bool:
        return self.chunk_index == PRIMARY

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ChunkRecord':
        return cls(
            db=row['db'],
            tbl=row['tbl'],
            chunk=int(row['chunk']),
            chunk_index=row['chunk_index'],
            lower_boundary=parse_boundary(row['lower_boundary']),
            upper_boundary=parse_boundary(row['upper_boundary']),
            this_crc=row.get('this_crc') or '',
            this_cnt=int(row.get('this_cnt') or 0),
            master_crc=row.get('master_crc'),
            master_cnt=row.get('master_cnt'),
            chunk_time=row.get('chunk_time'),
            ts=row.get('ts')
        )


class ChecksumStore:
    """Reads and writes the checksum table on one server."""

    def __init__(self, db_manager: DatabaseManager, database: str = 'percona',
                 table: str = 'checksums', logger: Optional[logging.Logger] = None):
        self.db = db_manager
        self.database = database
        self.table = table
        self.name = qualified_name(database, table)
        self.logger = logger or logging.getLogger(__name__)

    def _key(self, chunk: ChunkRecord) -> Dict[str, Any]:
        return {'db': chunk.db, 'tbl': chunk.tbl, 'chunk': chunk.chunk}

    def exists(self) -> bool:
        query = """
        SELECT COUNT(*) AS cnt FROM information_schema.TABLES
        WHERE TABLE_SCHEMA = %(database)s AND TABLE_NAME = %(table)s
        """
        count = self.db.fetch_value(query, {'database': self.database, 'table': self.table}, 'cnt')
        return bool(count)

    def create(self):
        """Drop and recreate the checksum table."""
        self.logger.info(f"Creating checksum table {self.database}.{self.table} on {self.db.label}")
        self.db.execute_non_query(f"CREATE DATABASE IF NOT EXISTS {quote_identifier(self.database)}")
        self.db.execute_non_query(f"DROP TABLE IF EXISTS {self.name}")
        self.db.execute_non_query(f"""
        CREATE TABLE {self.name} (
            db CHAR(64) NOT NULL,
            tbl CHAR(64) NOT NULL,
            chunk INT NOT NULL,
            chunk_time FLOAT NULL,
            chunk_index VARCHAR(200) NULL,
            lower_boundary TEXT NULL,
            upper_boundary TEXT NULL,
            this_crc CHAR(40) NOT NULL,
            this_cnt INT NOT NULL,
            master_crc CHAR(40) NULL,
            master_cnt INT NULL,
            ts TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP,
            PRIMARY KEY (db, tbl, chunk),
            KEY ts_db_tbl (ts, db, tbl)
        ) ENGINE=InnoDB
        """)

    def ensure(self) -> bool:
        """Create the checksum table if missing; True when it was created."""
        if self.exists():
            return False
        self.logger.info(f"Checksum table doesn't exist on {self.db.label}, creating it")
        self.create()
        return True

    def reset(self, force_reset: bool, incremental: bool):
        """Clear previous results before a new run."""
        if force_reset:
            self.create()
        elif not incremental:
            # ts = ts keeps the hash timestamps used by incremental checks
            self.db.execute_non_query(
                f"UPDATE {self.name} SET master_crc = NULL, master_cnt = NULL, ts = ts"
            )

    def load_table_boundaries(self, db: str, tbl: str) -> List[ChunkRecord]:
        query = f"""
        SELECT {_FIELDS} FROM {self.name}
        WHERE db = %(db)s AND tbl = %(tbl)s
        ORDER BY chunk
        """
        return [ChunkRecord.from_row(r) for r in self.db.fetch_all(query, {'db': db, 'tbl': tbl})]

    def save_boundary(self, chunk: ChunkRecord) -> int:
        """Persist a freshly indexed chunk as an unhashed placeholder."""
        query = f"""
        REPLACE INTO {self.name}
            (db, tbl, chunk, chunk_index, lower_boundary, upper_boundary,
             this_crc, this_cnt, master_crc, master_cnt)
        VALUES (%(db)s, %(tbl)s, %(chunk)s, %(chunk_index)s, %(lower)s, %(upper)s,
                '', 0, NULL, NULL)
        """
        params = self._key(chunk)
        params.update({
            'chunk_index': chunk.chunk_index,
            'lower': str(chunk.lower_boundary),
            'upper': str(chunk.upper_boundary)
        })
        return self.db.execute_non_query(query, params)

    def delete_table(self, db: str, tbl: str) -> int:
        return self.db.execute_non_query(
            f"DELETE FROM {self.name} WHERE db = %(db)s AND tbl = %(tbl)s",
            {'db': db, 'tbl': tbl}
        )

    def delete_chunks_after(self, db: str, tbl: str, last_chunk: int) -> int:
        """Drop chunks numbered beyond the last one the master knows about."""
        return self.db.execute_non_query(
            f"DELETE FROM {self.name} WHERE db = %(db)s AND tbl = %(tbl)s AND chunk > %(chunk)s",
            {'db': db, 'tbl': tbl, 'chunk': last_chunk}
        )

    def load_all(self) -> List[ChunkRecord]:
        query = f"SELECT {_FIELDS} FROM {self.name} ORDER BY db, tbl, chunk"
        return [ChunkRecord.from_row(r) for r in self.db.fetch_all(query)]

    def load_incremental(self, expire_days: int, batch_size: int) -> List[ChunkRecord]:
        """A random sample of stale or never hashed chunks, in table order."""
        query = f"""
        SELECT {_FIELDS} FROM {self.name}
        WHERE ts < DATE_SUB(NOW(), INTERVAL %(days)s DAY) OR this_crc = ''
        ORDER BY RAND()
        LIMIT %(batch)s
        """
        rows = self.db.fetch_all(query, {'days': int(expire_days), 'batch': int(batch_size)})
        chunks = [ChunkRecord.from_row(r) for r in rows]
        return sorted(chunks, key=lambda c: (c.db, c.tbl, c.chunk))

    def load_chunk(self, db: str, tbl: str, chunk: int) -> Optional[ChunkRecord]:
        query = f"""
        SELECT {_FIELDS} FROM {self.name}
        WHERE db = %(db)s AND tbl = %(tbl)s AND chunk = %(chunk)s
        """
        row = self.db.fetch_one(query, {'db': db, 'tbl': tbl, 'chunk': int(chunk)})
        return ChunkRecord.from_row(row) if row else None

    def save_hash(self, chunk: ChunkRecord, chunk_time: float, crc: str, cnt: int) -> int:
        """Record this server's checksum for a chunk. Safe to repeat."""
        query = f"""
        UPDATE {self.name}
        SET chunk_time = %(chunk_time)s, this_crc = %(crc)s, this_cnt = %(cnt)s, ts = NOW()
        WHERE db = %(db)s AND tbl = %(tbl)s AND chunk = %(chunk)s
        """
        params = self._key(chunk)
        params.update({'chunk_time': chunk_time, 'crc': crc, 'cnt': cnt})
        return self.db.execute_non_query(query, params)

    def load_divergent(self) -> List[ChunkRecord]:
        query = f"""
        SELECT {_FIELDS} FROM {self.name}
        WHERE master_crc IS NOT NULL AND master_crc <> ''
          AND (this_crc <> master_crc OR this_cnt <> master_cnt)
        ORDER BY db, tbl, chunk
        """
        return [ChunkRecord.from_row(r) for r in self.db.fetch_all(query)]

    def copy_boundary(self, chunk: ChunkRecord) -> int:
        """Upsert a master boundary row into this (replica) store.

        The local checksum is kept when the boundaries are unchanged and
        cleared otherwise. this_crc/this_cnt are assigned first because
        MySQL evaluates the assignments left to right.
        """
        query = f"""
        INSERT INTO {self.name}
            (db, tbl, chunk, chunk_index, lower_boundary, upper_boundary,
             this_crc, this_cnt, master_crc, master_cnt)
        VALUES (%(db)s, %(tbl)s, %(chunk)s, %(chunk_index)s, %(lower)s, %(upper)s,
                '', 0, NULL, NULL)
        ON DUPLICATE KEY UPDATE
            this_crc = IF(chunk_index <=> VALUES(chunk_index)
                          AND lower_boundary <=> VALUES(lower_boundary)
                          AND upper_boundary <=> VALUES(upper_boundary), this_crc, ''),
            this_cnt = IF(this_crc = '', 0, this_cnt),
            chunk_index = VALUES(chunk_index),
            lower_boundary = VALUES(lower_boundary),
            upper_boundary = VALUES(upper_boundary)
        """
        params = self._key(chunk)
        params.update({
            'chunk_index': chunk.chunk_index,
            'lower': str(chunk.lower_boundary),
            'upper': str(chunk.upper_boundary)
        })
        return self.db.execute_non_query(query, params)

    def set_master_values(self, chunk: ChunkRecord) -> int:
        """Copy the master's checksum/count into this store."""
        query = f"""
        UPDATE {self.name}
        SET master_crc = %(crc)s, master_cnt = %(cnt)s, ts = ts
        WHERE db = %(db)s AND tbl = %(tbl)s AND chunk = %(chunk)s
        """
        params = self._key(chunk)
        params.update({'crc': chunk.this_crc, 'cnt': chunk.this_cnt})
        return self.db.execute_non_query(query, params)
