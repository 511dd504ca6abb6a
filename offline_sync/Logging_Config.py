# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGURU_TO_STD_LEVEL = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def sink_to_standard_logging(message):
    """Loguru sink that re-emits each message through the standard logging logger of its module."""
    record = message.record
    std_level = _LOGURU_TO_STD_LEVEL.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=tuple(record["exception"]))
    else:
        std_logger.log(std_level, record["message"])


def get_log_file_path(config: Dict[str, Any]) -> Optional[Path]:
    """The log file lives next to the database. None for in-memory databases."""
    db_path = config.get("database", {}).get("path")
    filename = config.get("logging", {}).get("log_filename", "offline_sync.log")
    if not db_path or db_path == ":memory:" or not filename:
        return None
    return Path(db_path).expanduser().parent / filename


def configure_logging(config: Dict[str, Any], log_file: Optional[Path] = None) -> logging.Logger:
    """
    Sets up logging for the application.

    Loguru (used by the sync and service modules) is routed into the standard
    logging system, which the DB layer uses directly. The root logger gets a
    stderr handler at `[general] log_level` and a rotating file handler at
    `[logging] file_log_level`. Calling it again replaces the handlers it added.
    """
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    # --- Loguru -> standard logging ---
    try:
        loguru_logger.remove()
        loguru_logger.add(sink_to_standard_logging, level="TRACE", format="{message}")
    except ValueError as e:
        logging.error(f"Loguru: Error during Loguru reconfiguration: {e}", exc_info=True)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if getattr(handler, "_offline_sync_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    log_level_str = str(config.get("general", {}).get("log_level", "INFO")).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler._offline_sync_handler = True
    root_logger.addHandler(console_handler)
    lowest_level = log_level

    # --- File Logging ---
    log_file = log_file or get_log_file_path(config)
    if log_file is not None:
        logging_section = config.get("logging", {})
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_log_level_str = str(logging_section.get("file_log_level", "DEBUG")).upper()
            file_log_level = getattr(logging, file_log_level_str, logging.DEBUG)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=int(logging_section.get("log_max_bytes", 10 * 1024 * 1024)),
                backupCount=int(logging_section.get("log_backup_count", 5)),
                encoding="utf-8",
            )
            file_handler.setLevel(file_log_level)
            file_handler.setFormatter(formatter)
            file_handler._offline_sync_handler = True
            root_logger.addHandler(file_handler)
            lowest_level = min(lowest_level, file_log_level)
        except (OSError, ValueError) as e:
            logging.warning(f"Could not set up file logging at {log_file}: {e}")

    root_logger.setLevel(lowest_level)
    logging.getLogger(__name__).info(f"Logging configured (console: {logging.getLevelName(log_level)}, "
                                     f"file: {log_file or 'disabled'}).")
    return root_logger

#
# End of Logging_Config.py
########################################################################################################################
