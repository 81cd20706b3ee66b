#!/usr/bin/env python3
"""
Logging setup for Repl-Sentinel.

Adds two levels on top of the standard ones: NOTICE for progress messages
and PROFILING for timings.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

NOTICE = 25
PROFILING = 15

QUERY_LOGGER_NAME = 'repl_sentinel.queries'

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

logging.addLevelName(NOTICE, 'NOTICE')
logging.addLevelName(PROFILING, 'PROFILING')


def log_notice(logger: logging.Logger, message: str):
    logger.log(NOTICE, message)


def log_profile(logger: logging.Logger, message: str):
    logger.log(PROFILING, message)


def setup_logging(log_file: str, level: str = 'INFO', console: bool = False):
    """Configure the root logger: always a file, optionally stdout."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers = [logging.FileHandler(log_path)]
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )


def setup_query_log(query_log: Optional[str]) -> Optional[logging.Logger]:
    """Return a logger writing statement texts to its own file (truncated)."""
    if not query_log:
        return None

    logger = logging.getLogger(QUERY_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(query_log, mode='w')
    handler.setFormatter(logging.Formatter('%(asctime)s %(message)s'))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger
