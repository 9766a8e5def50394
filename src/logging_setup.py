"""
Logging setup - console output plus an optional dated log file (new file each start).
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# chatty at INFO; raised to WARNING unless logging.quiet_loggers overrides the list
DEFAULT_QUIET_LOGGERS = ("stellar_sdk", "aiohttp", "urllib3", "sqlalchemy.engine")


class StampedFileHandler(TimedRotatingFileHandler):
    """
    Log file named after the process start time, rolled over at midnight.
    Produces: x402-stellar-facilitator.2026-02-09_14-30-25.log
    """

    def __init__(self, log_dir: str, base_name: str, encoding: str = "utf-8"):
        stem = base_name[:-4] if base_name.endswith(".log") else base_name
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        super().__init__(
            filename=os.path.join(log_dir, f"{stem}.{stamp}.log"),
            when="midnight",
            interval=1,
            backupCount=0,
            encoding=encoding,
        )


def _file_handler(logging_config: dict, formatter: logging.Formatter):
    log_dir = logging_config.get("dir")
    filename = logging_config.get("filename")
    if not log_dir or not filename:
        return None
    try:
        os.makedirs(log_dir, exist_ok=True)
        handler = StampedFileHandler(log_dir=log_dir, base_name=filename)
    except OSError as e:
        logging.error(f"Cannot open log file in {log_dir}: {e}")
        return None
    handler.setFormatter(formatter)
    return handler


def setup_logging(logging_config=None):
    """
    Configure the root logger. Safe to call repeatedly; handlers are replaced.

    Args:
        logging_config: `logging` section of the config file (level, dir,
            filename, quiet_loggers). None configures console output only.
    """
    logging_config = logging_config or {}
    level_name = str(logging_config.get("level", "INFO")).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    for name in logging_config.get("quiet_loggers", DEFAULT_QUIET_LOGGERS):
        logging.getLogger(name).setLevel(logging.WARNING)

    file_handler = _file_handler(logging_config, formatter)
    if file_handler is not None:
        root.addHandler(file_handler)
        logging.info(f"Writing logs to {file_handler.baseFilename} at {level_name}")
