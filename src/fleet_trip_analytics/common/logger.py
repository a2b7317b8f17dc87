# fleet_trip_analytics/common/logger.py
"""
Logging configuration for the fleet_trip_analytics package.

All modules log through `logging.getLogger(__name__)`, so configuring the
package logger once here gives every component the same format and handlers.
Per-chunk backfill progress is logged at INFO and per-sample detail at DEBUG.

Data-quality warnings raised by the segmenter and consolidator go to the
`fleet_trip_analytics.data_quality` child logger at WARNING. Besides the
regular handlers, they can be routed to a dedicated audit file
(`LoggingConfig.data_quality_file_path`) so feed problems can be reviewed
without wading through the full run log.
"""

import logging
import sys
from pathlib import Path

from fleet_trip_analytics.config import LoggingConfig
from fleet_trip_analytics.models.quality import DATA_QUALITY_LOGGER_NAME

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: str = 'fleet_trip_analytics'

LOG_FORMAT: str = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'
LOG_DATE_FORMAT: str = '%Y-%m-%d %H:%M:%S'

# Data-quality lines are already prefixed with the issue and vehicle.
DATA_QUALITY_LOG_FORMAT: str = '%(asctime)s - %(message)s'


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Configure the package-level logger.

    Idempotent: existing handlers are removed before new ones are attached, so
    repeated calls (tests, notebooks) never produce duplicate lines.

    Args:
        logging_level: Console level used when no config object is provided.
            Defaults to logging.INFO.
        config: Optional validated logging configuration. When given, the
            console uses config.console_level, a file handler is attached if
            config.file_path is set, and `logging_level` is ignored. A
            data-quality audit file is attached when
            config.data_quality_file_path is set.

    Returns:
        The 'fleet_trip_analytics' logger. Module loggers inherit from it.

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> setup_logger(config=load_config().logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.handlers.clear()

    log_format: logging.Formatter = logging.Formatter(
        fmt=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )

    # --- Console handler: config wins over the argument ---
    if logging_level is None:
        logging_level = logging.INFO
    if config:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_format)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    # --- File handler: config only ---
    file_level: int | None = None

    if config is not None and config.file_path is not None:
        file_level = config.get_file_level_int()

    if config is not None and config.file_path is not None and file_level is not None:
        log_file_path: Path = config.file_path
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler: logging.FileHandler = logging.FileHandler(
            filename=str(log_file_path),
            mode='a',
            encoding='utf-8',
        )
        file_handler.setFormatter(log_format)
        file_handler.setLevel(file_level)
        package_logger.addHandler(file_handler)

        if console_level <= logging.INFO:
            print(f'Logging to file: {log_file_path}', file=sys.stderr)

    # Logger level must admit the most verbose handler.
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    _setup_data_quality_logger(config)

    return package_logger


def _setup_data_quality_logger(config: LoggingConfig | None) -> None:
    """
    Attach the data-quality audit file, if configured.

    The audit file captures warnings even when the console runs at ERROR, so
    the data-quality logger gets its own WARNING level while the file is on.
    Records still propagate to the package handlers.
    """
    quality_logger: logging.Logger = logging.getLogger(DATA_QUALITY_LOGGER_NAME)
    for handler in quality_logger.handlers:
        handler.close()
    quality_logger.handlers.clear()
    quality_logger.setLevel(logging.NOTSET)

    if config is None or config.data_quality_file_path is None:
        return

    audit_path: Path = config.data_quality_file_path
    audit_path.parent.mkdir(parents=True, exist_ok=True)

    audit_handler: logging.FileHandler = logging.FileHandler(
        filename=str(audit_path),
        mode='a',
        encoding='utf-8',
    )
    audit_handler.setFormatter(
        logging.Formatter(fmt=DATA_QUALITY_LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    )
    audit_handler.setLevel(logging.WARNING)
    quality_logger.addHandler(audit_handler)
    quality_logger.setLevel(logging.WARNING)
