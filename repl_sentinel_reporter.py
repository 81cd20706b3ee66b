#!/usr/bin/env python3
"""
Repl-Sentinel Divergence Reporter
=================================

Lists the chunks whose checksum or row count on a replica differs from the
master's, renders them as a fixed-width text table and sends the result by
email and/or prints it.
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Tuple

import pymysql

from repl_sentinel_config import GeneralConfig
from repl_sentinel_logging import log_notice
from repl_sentinel_store import ChecksumStore, ChunkRecord

OK_BANNER = "******** OK: All Records Synched ********"
ERROR_BANNER = "******** Error: Unsynched Records Found ********"
FAILED_BANNER = "******** Error while retrieving Results ********"


def draw_text_table(rows: List[Dict[str, Any]]) -> str:
    """Render rows as a +---+ bordered text table."""
    if not rows:
        return ''

    columns = list(rows[0].keys())
    widths = {}
    for column in columns:
        widths[column] = max(len(str(row.get(column, ''))) + 3 for row in rows)

    bar = '+' + '+'.join('-' * (widths[c] + 2) for c in columns) + '+'
    header = '|' + '|'.join(f" {str(c)[:widths[c]].ljust(widths[c])} " for c in columns) + '|'

    lines = [bar, header, bar]
    for row in rows:
        lines.append('|' + '|'.join(f" {str(row.get(c, '')).ljust(widths[c])} " for c in columns) + '|')
    lines.append(bar)
    return '\n'.join(lines) + '\n'


def _report_row(chunk: ChunkRecord) -> Dict[str, Any]:
    index = chunk.chunk_index if chunk.is_keyed else f"{chunk.chunk_index} (low confidence)"
    return {
        'db': chunk.db,
        'tbl': chunk.tbl,
        'chunk': chunk.chunk,
        'chunk_index': index,
        'lower_boundary': chunk.lower_boundary,
        'upper_boundary': chunk.upper_boundary,
        'this_crc': chunk.this_crc,
        'this_cnt': chunk.this_cnt,
        'master_crc': chunk.master_crc,
        'master_cnt': chunk.master_cnt,
    }


class DivergenceReporter:
    """Reports divergent chunks found in one replica's checksum store."""

    def __init__(self, store: ChecksumStore, general: GeneralConfig, server_label: str,
                 log_file: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.store = store
        self.general = general
        self.server_label = server_label
        self.log_file = log_file or general.log_file
        self.logger = logger or logging.getLogger(__name__)

    def find_divergent(self) -> List[ChunkRecord]:
        """Chunks whose checksum or count differs from the master's."""
        return self.store.load_divergent()

    def render(self, divergent: Optional[List[ChunkRecord]]) -> Tuple[str, str]:
        """Build the subject and body; None means the lookup failed."""
        subject = f"Replication Check Results from {self.server_label}"
        body = f"Replication Check Results from {self.server_label}. \nFor more info, see log at: {self.log_file}\n\n"

        if divergent is None:
            body += FAILED_BANNER + "\n\n"
        elif not divergent:
            body += OK_BANNER + "\n\n"
        else:
            body += ERROR_BANNER + "\n\n"
            body += draw_text_table([_report_row(chunk) for chunk in divergent])
            low_confidence = sum(1 for chunk in divergent if not chunk.is_keyed)
            if low_confidence:
                body += (f"\n{low_confidence} chunk(s) use offset windows and may differ "
                         f"because of concurrent writes.\n")
        return subject, body

    def deliver(self, subject: str, body: str) -> bool:
        """Print and/or email the report as configured."""
        if self.general.print_results:
            print(body)

        if not self.general.email_report:
            return False

        message = EmailMessage()
        message['Subject'] = subject
        message['From'] = self.general.email_from or f"repl-sentinel@{self.general.smtp_host}"
        message['To'] = ', '.join(self.general.email_report)
        message.set_content(body)

        try:
            with smtplib.SMTP(self.general.smtp_host) as smtp:
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"Failed to send report email for {self.server_label}: {e}")
            return False

        log_notice(self.logger, f"Report for {self.server_label} sent to {', '.join(self.general.email_report)}")
        return True

    def report(self) -> Optional[List[ChunkRecord]]:
        """Find, render and deliver; returns the divergent chunks."""
        try:
            divergent = self.find_divergent()
        except pymysql.MySQLError as e:
            self.logger.error(f"Unable to read results from {self.server_label}: {e}")
            divergent = None

        subject, body = self.render(divergent)
        if divergent:
            self.logger.warning(f"{len(divergent)} divergent chunk(s) on {self.server_label}")
            for chunk in divergent:
                if not chunk.is_keyed:
                    self.logger.warning(
                        f"{chunk.full_name} chunk {chunk.chunk} is an offset window, result is low confidence"
                    )
        elif divergent is not None:
            log_notice(self.logger, f"All records synched on {self.server_label}")

        self.deliver(subject, body)
        return divergent
