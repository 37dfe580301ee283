"""
Centralized logging configuration for fleet-remediate.

Sets up the root logger once per process: a console handler on stderr (stdout
carries the CLI's JSON results) and an optional rotating file handler.
Either plain text or JSON lines carrying the run correlation context.

Example:
    >>> from fleet_remediate.logging_config import setup_logging
    >>> setup_logging(level='DEBUG', log_file='fleet_remediate.log')
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

from .logging_context import JSONFormatter

_LOGGING_CONFIGURED = False

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SHORT_FORMAT = '%(name)s - %(levelname)s - %(message)s'


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[Union[str, Path]] = None,
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Configure logging for fleet-remediate.

    This should be called once at application startup; later calls only
    adjust the level.

    Args:
        level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Optional path to log file. Enables file logging with rotation.
        log_format: Custom log format string (ignored with ``json_format``)
        include_timestamp: Whether to include timestamps in text log lines
        json_format: Emit one JSON object per line with correlation ids
        max_bytes: Maximum size of log file before rotation (default 10MB)
        backup_count: Number of backup log files to keep (default 5)
    """
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger()
    if _LOGGING_CONFIGURED:
        root_logger.setLevel(getattr(logging, level.upper()))
        return

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        if log_format is None:
            log_format = DEFAULT_FORMAT if include_timestamp else SHORT_FORMAT
        formatter = logging.Formatter(log_format)

    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        root_logger.debug(f"Logging to file: {log_path}")

    _LOGGING_CONFIGURED = True
    root_logger.debug(f"Logging configured at {level} level")


def reset_logging_config() -> None:
    """
    Reset logging configuration.

    This is primarily useful for testing.
    """
    global _LOGGING_CONFIGURED

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        handler.close()
    root_logger.handlers.clear()
    _LOGGING_CONFIGURED = False


def configure_cli_logging(
    verbose: bool = False,
    quiet: bool = False,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Configure logging for CLI usage.

    ``verbose`` and ``quiet`` win over the configured ``level``.
    """
    if quiet:
        level = 'WARNING'
    elif verbose:
        level = 'DEBUG'
    elif not level:
        level = 'INFO'

    setup_logging(
        level=level,
        log_file=log_file,
        include_timestamp=verbose or bool(log_file),
        json_format=json_format,
    )
