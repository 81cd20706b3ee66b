#!/usr/bin/env python3
"""
Repl-Sentinel Utility Scripts
=============================

Helpers around the main checker:
- Configuration validation
- Table discovery: how each table would be chunked, plus a starter config

Usage:
    repl-sentinel-utils validate config.yaml
    repl-sentinel-utils discover --host db1 --user root --password x --schema shop
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pymysql
import yaml

from repl_sentinel_config import (
    DEFAULT_MAX_BLOCK_SIZE, DEFAULT_MIN_BLOCK_SIZE, ConfigError, ServerConfig, load_config
)
from repl_sentinel_db import PRIMARY, DatabaseManager, SentinelError, TableCatalog
from repl_sentinel_indexer import page_size


class ConfigValidator:
    """Validates Repl-Sentinel configurations."""

    def __init__(self):
        self.validation_errors = []
        self.validation_warnings = []

    def validate_configuration(self, config_path: str) -> Tuple[bool, List[str], List[str]]:
        """Validate a configuration file."""
        self.validation_errors = []
        self.validation_warnings = []

        try:
            config = load_config(config_path)
        except ConfigError as e:
            self.validation_errors.append(str(e))
            return False, self.validation_errors, self.validation_warnings

        self._check_sections(config_path)

        general = config.general
        if general.record_skip > 0:
            self.validation_warnings.append(
                f"general.record_skip={general.record_skip}: only one row in {general.record_skip} is verified"
            )
        if general.email_report and not general.email_from:
            self.validation_warnings.append("general.email_from is not set, a default sender will be used")
        if general.max_threads > len(config.servers):
            self.validation_warnings.append(
                f"general.max_threads ({general.max_threads}) exceeds the number of servers ({len(config.servers)})"
            )
        if general.query_log:
            self.validation_warnings.append("general.query_log is set; every statement will be written to disk")

        labels = [server.label for server in config.servers]
        if len(set(labels)) != len(labels):
            self.validation_errors.append("The same server is listed more than once")

        is_valid = len(self.validation_errors) == 0
        return is_valid, self.validation_errors, self.validation_warnings

    def _check_sections(self, config_path: str):
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
        for section in raw:
            if section not in ('general', 'master', 'slaves'):
                self.validation_warnings.append(f"Unknown section ignored: {section}")


class TableDiscovery:
    """Shows how the tables of a schema would be chunked."""

    def __init__(self, server: ServerConfig, min_block_size: int = DEFAULT_MIN_BLOCK_SIZE,
                 max_block_size: int = DEFAULT_MAX_BLOCK_SIZE):
        self.server = server
        self.db_manager = DatabaseManager(server)
        self.catalog = TableCatalog(self.db_manager)
        self.min_block_size = min_block_size
        self.max_block_size = max_block_size

    def analyze_schema(self, schema: str) -> List[Dict[str, Any]]:
        results = []
        for meta in self.catalog.get_tables(schema):
            size = page_size(meta.row_count, self.min_block_size, self.max_block_size)
            notes = []
            if meta.strategy != PRIMARY:
                notes.append('offset chunks, not synchronizable')
                if not meta.keys:
                    notes.append('no primary key')
            if meta.engine and meta.engine.upper() != 'INNODB':
                notes.append(f"engine {meta.engine}")

            results.append({
                'table': meta.full_name,
                'rows': meta.row_count,
                'keys': meta.keys,
                'strategy': meta.strategy,
                'page_size': size,
                'chunks': max(1, -(-meta.row_count // size)) if meta.row_count else 0,
                'notes': notes
            })
        return results

    def generate_configuration(self, schemas: List[str], analysis: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Starter configuration; keyless tables are listed as ignored."""
        ignore = [item['table'] for item in analysis if not item['keys']]
        return {
            'general': {
                'min_block_size': self.min_block_size,
                'max_block_size': self.max_block_size,
                'databases': list(schemas),
                'ignore_tables': ignore,
                'database': 'percona',
                'table': 'checksums',
            },
            'master': {
                'DSN': {
                    'host': self.server.host,
                    'port': self.server.port,
                    'username': self.server.username,
                    'password': '',
                }
            },
            'slaves': [
                {'DSN': {'host': 'replica-host', 'port': 3306, 'username': self.server.username, 'password': ''}}
            ]
        }

    def close(self):
        self.db_manager.close_all_connections()


def cmd_discover(args):
    """Discover tables and optionally write a starter configuration."""
    print("🔍 Discovering database tables...")

    server = ServerConfig(host=args.host, port=args.port, username=args.user, password=args.password)
    discovery = TableDiscovery(server, args.min_block_size, args.max_block_size)

    try:
        analysis = []
        for schema in args.schema:
            analysis.extend(discovery.analyze_schema(schema))

        print(f"📊 Tables discovered: {len(analysis)}")
        for item in analysis:
            notes = f" ({', '.join(item['notes'])})" if item['notes'] else ""
            print(f"  • {item['table']}: rows≈{item['rows']:,}, strategy={item['strategy']}, "
                  f"page_size={item['page_size']}, chunks≈{item['chunks']}{notes}")

        if args.output:
            config = discovery.generate_configuration(args.schema, analysis)
            with open(args.output, 'w') as f:
                f.write("# Repl-Sentinel Configuration\n")
                f.write(f"# Generated on: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")
                yaml.dump(config, f, default_flow_style=False, indent=2, sort_keys=False)
            print(f"✅ Configuration generated: {args.output}")

    except (SentinelError, pymysql.MySQLError) as e:
        print(f"❌ Discovery failed: {e}")
        sys.exit(1)
    finally:
        discovery.close()


def cmd_validate(args):
    """Validate configuration file."""
    print(f"🔍 Validating configuration: {args.config}")

    validator = ConfigValidator()
    is_valid, errors, warnings = validator.validate_configuration(args.config)

    if errors:
        print("\n❌ Validation Errors:")
        for error in errors:
            print(f"  • {error}")

    if warnings:
        print("\n⚠️  Validation Warnings:")
        for warning in warnings:
            print(f"  • {warning}")

    if is_valid:
        print("\n✅ Configuration is valid!")
    else:
        print(f"\n❌ Configuration has {len(errors)} errors")
        sys.exit(1)


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Repl-Sentinel Utility Scripts",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    discover_parser = subparsers.add_parser('discover', help='Show how tables would be chunked')
    discover_parser.add_argument('--host', required=True, help='Database host')
    discover_parser.add_argument('--port', type=int, default=3306, help='Database port')
    discover_parser.add_argument('--user', required=True, help='Database username')
    discover_parser.add_argument('--password', default='', help='Database password')
    discover_parser.add_argument('--schema', required=True, nargs='+', help='Schemas to analyze')
    discover_parser.add_argument('--min-block-size', type=int, default=DEFAULT_MIN_BLOCK_SIZE)
    discover_parser.add_argument('--max-block-size', type=int, default=DEFAULT_MAX_BLOCK_SIZE)
    discover_parser.add_argument('--output', help='Write a starter configuration file')

    validate_parser = subparsers.add_parser('validate', help='Validate configuration file')
    validate_parser.add_argument('config', help='Configuration file to validate')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    if args.command == 'discover':
        cmd_discover(args)
    elif args.command == 'validate':
        cmd_validate(args)


if __name__ == "__main__":
    main()
