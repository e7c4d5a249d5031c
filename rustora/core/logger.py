"""
Rustora - Logging Module

Every dialog is its own process and several can share one terminal, so
console lines carry the dialog name. A log file, when given, records
everything at debug level, including child process output.

Copyright (c) 2025 Christopher Dorrell. Licensed under GPL-3.0.
"""

import logging
import os
import sys
from typing import Optional

FILE_FORMAT = '%(asctime)s %(process)d [%(name)s] %(levelname)s: %(message)s'
FILE_DATEFMT = '%Y-%m-%d %H:%M:%S'


class RustoraFormatter(logging.Formatter):
    """Console formatter: optional dialog tag, component prefix, level word."""

    LEVEL_WORDS = {
        logging.WARNING: "Warning: ",
        logging.ERROR: "Error: ",
        logging.CRITICAL: "CRITICAL: ",
    }

    def __init__(self, dialog: Optional[str] = None):
        super().__init__()
        self.prefix = f"({dialog}) " if dialog else ""

    def format(self, record):
        word = self.LEVEL_WORDS.get(record.levelno, "")
        line = f"{self.prefix}[{record.name}] {word}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def debug_requested() -> bool:
    return os.environ.get('RUSTORA_DEBUG') == '1'


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    dialog: Optional[str] = None
) -> logging.Logger:
    """
    Configure the 'rustora' logger. Safe to call again; old handlers go.

    Args:
        verbose: Console at DEBUG instead of INFO (also RUSTORA_DEBUG=1)
        log_file: Append everything at DEBUG to this file as well
        dialog: Dialog subcommand shown in front of console lines

    Returns:
        The configured logger
    """
    console_level = logging.DEBUG if verbose or debug_requested() else logging.INFO

    root = logging.getLogger('rustora')
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(RustoraFormatter(dialog))
    root.addHandler(console)
    root.setLevel(console_level)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
        except OSError as e:
            root.warning("Could not open log file %s: %s", log_file, e)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
            root.addHandler(file_handler)
            root.setLevel(logging.DEBUG)

    return root


def get_logger(name: str = 'rustora') -> logging.Logger:
    """Logger for a component, always under the 'rustora' namespace."""
    if not name.startswith('rustora'):
        name = f'rustora.{name}'
    return logging.getLogger(name)


def is_debug_enabled() -> bool:
    """True when some handler wants debug records (verbose console or a log file)."""
    return get_logger().isEnabledFor(logging.DEBUG)
