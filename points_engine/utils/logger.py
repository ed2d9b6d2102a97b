import logging
import sys
from datetime import datetime
from pathlib import Path

from points_engine.config import Config

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _resolve_level() -> int:
    if Config.LOG_LEVEL:
        level = logging.getLevelName(Config.LOG_LEVEL.upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if Config.DEBUG else logging.INFO


def setup_logger(name: str) -> logging.Logger:
    """
    Logger with console output and, when LOG_DIR is set, a dated log file.

    The file always records DEBUG so replays can be audited afterwards.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    log_level = _resolve_level()
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if Config.LOG_DIR:
        log_dir = Path(Config.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(
            log_dir / f'points_engine_{datetime.now().strftime("%Y%m%d")}.log',
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def describe_event(event) -> str:
    """One-line location of a chain event for log messages."""
    return (f"{event.contract}.{event.event_name} "
            f"(block {event.block_number}, tx {event.tx_hash}, log {event.log_index})")
