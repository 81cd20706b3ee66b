#!/usr/bin/env python3
"""
Repl-Sentinel Configuration
===========================

Typed configuration for the replication checker. A YAML file is parsed once
and turned into dataclasses; every check that can fail happens here, before
any server is contacted.

Server DSNs can be given either as a mapping or as a query string::

    master:
      DSN: "host=127.0.0.1&port=3306&username=root&password=secret"
"""

import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import yaml


DEFAULT_MIN_BLOCK_SIZE = 1000
DEFAULT_MAX_BLOCK_SIZE = 1000000


class ConfigError(ValueError):
    """Raised when the configuration cannot be used."""
    pass


@dataclass
class ServerConfig:
    """Connection settings for one MySQL server."""
    host: str
    port: int = 3306
    username: str = 'root'
    password: str = ''
    options: Dict[str, Any] = field(default_factory=dict)
    wait_timeout: int = 15

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_dsn(cls, dsn: Any, section: str) -> 'ServerConfig':
        """Build a ServerConfig from a DSN string or mapping."""
        if isinstance(dsn, str):
            values = dict(parse_qsl(dsn, keep_blank_values=True))
        elif isinstance(dsn, dict):
            values = dict(dsn)
        else:
            raise ConfigError(f"{section}.DSN must be a string or a mapping")

        host = values.pop('host', None)
        if not host:
            raise ConfigError(f"{section}.DSN is missing 'host'")

        # Unknown keys go to the driver as extra connect arguments
        options = dict(values.pop('options', None) or {})
        known = {}
        for name in ('port', 'username', 'password', 'wait_timeout'):
            if name in values:
                known[name] = values.pop(name)
        options.update(values)

        try:
            port = int(known.get('port', 3306))
            wait_timeout = int(known.get('wait_timeout', 15))
        except (TypeError, ValueError):
            raise ConfigError(f"{section}.DSN port and wait_timeout must be integers")

        return cls(
            host=str(host),
            port=port,
            username=str(known.get('username', 'root')),
            password=str(known.get('password', '') or ''),
            options=options,
            wait_timeout=wait_timeout
        )


@dataclass
class GeneralConfig:
    """General settings shared by every phase."""
    min_block_size: int = DEFAULT_MIN_BLOCK_SIZE
    max_block_size: int = DEFAULT_MAX_BLOCK_SIZE
    record_skip: int = 0
    ignore_tables: List[str] = field(default_factory=list)
    databases: List[str] = field(default_factory=list)
    force_reset: bool = False
    incremental_check: bool = False
    incremental_batchsize: int = 100
    expire_days: int = 1
    database: str = 'percona'
    table: str = 'checksums'
    email_report: List[str] = field(default_factory=list)
    email_from: Optional[str] = None
    smtp_host: str = 'localhost'
    print_results: bool = False
    max_threads: int = 1
    log_file: str = os.path.join(tempfile.gettempdir(), 'repl_sentinel.log')
    log_level: str = 'INFO'
    query_log: Optional[str] = None
    lock_file: Optional[str] = None

    def is_ignored(self, db: str, tbl: str) -> bool:
        return f"{db}.{tbl}" in self.ignore_tables


@dataclass
class SentinelConfig:
    """Complete configuration: general settings plus the server topology."""
    general: GeneralConfig
    master: ServerConfig
    slaves: List[ServerConfig]

    @property
    def servers(self) -> List[ServerConfig]:
        return [self.master] + list(self.slaves)


# Integer options and the smallest value each accepts
_INT_MINIMUMS = {
    'min_block_size': 2,
    'max_block_size': 2,
    'record_skip': 0,
    'incremental_batchsize': 1,
    'expire_days': 0,
    'max_threads': 1,
}

_BOOL_FIELDS = ('force_reset', 'incremental_check', 'print_results')


def _as_list(value: Any) -> List[str]:
    if value is None or value == '':
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    return [str(item) for item in value]


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ('1', 'true', 'yes', 'on'):
        return True
    if isinstance(value, str) and value.strip().lower() in ('0', 'false', 'no', 'off', ''):
        return False
    raise ConfigError(f"general.{name} must be a boolean")


def _parse_general(section: Dict[str, Any]) -> GeneralConfig:
    known = set(GeneralConfig.__dataclass_fields__)
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"Unknown general option(s): {', '.join(sorted(unknown))}")

    values = {k: v for k, v in section.items() if v is not None}

    # Empty block sizes fall back to the defaults
    if not values.get('min_block_size'):
        values['min_block_size'] = DEFAULT_MIN_BLOCK_SIZE
    if not values.get('max_block_size'):
        values['max_block_size'] = DEFAULT_MAX_BLOCK_SIZE

    for name, minimum in _INT_MINIMUMS.items():
        if name not in values:
            continue
        try:
            values[name] = int(values[name])
        except (TypeError, ValueError):
            raise ConfigError(f"general.{name} must be an integer")
        if values[name] < minimum:
            raise ConfigError(f"general.{name} must be >= {minimum}")

    for name in _BOOL_FIELDS:
        if name in values:
            values[name] = _as_bool(name, values[name])

    for name in ('ignore_tables', 'databases', 'email_report'):
        if name in values:
            values[name] = _as_list(values[name])

    general = GeneralConfig(**values)

    if general.force_reset and general.incremental_check:
        raise ConfigError("force_reset and incremental_check cannot be enabled together")
    if general.min_block_size > general.max_block_size:
        raise ConfigError("general.min_block_size cannot be greater than general.max_block_size")

    return general


def _server_from_section(section: Any, name: str) -> ServerConfig:
    if not isinstance(section, dict) or 'DSN' not in section:
        raise ConfigError(f"{name} section requires a DSN")
    return ServerConfig.from_dsn(section['DSN'], name)


def parse_config(data: Dict[str, Any]) -> SentinelConfig:
    """Validate a raw configuration mapping and build a SentinelConfig."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    if not data.get('master'):
        raise ConfigError("Missing required configuration section: master")
    if not data.get('slaves'):
        raise ConfigError("Missing required configuration section: slaves")

    general = _parse_general(data.get('general') or {})
    master = _server_from_section(data['master'], 'master')

    slave_sections = data['slaves']
    if isinstance(slave_sections, dict):
        slave_sections = [slave_sections]
    slaves = [
        _server_from_section(section, f"slaves[{i}]")
        for i, section in enumerate(slave_sections)
    ]

    return SentinelConfig(general=general, master=master, slaves=slaves)


def load_config(config_path: str) -> SentinelConfig:
    """Load configuration from a YAML file."""
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config file {config_path}: {e}")

    return parse_config(data or {})
