"""
Logging system with colored output and rotation.

Console output is colorized through colorlog; a rotating file handler shared
by every ``recitation_cache`` logger keeps a full debug trail of cache
activity on disk, including records from the connectivity polling thread.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

import colorlog

PACKAGE = "recitation_cache"
LOG_FILE_NAME = "recitation_cache.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Global logger registry
_loggers = {}

# File handler shared by all package loggers once configured
_package_file_handler: Optional[RotatingFileHandler] = None


def _resolve_level(level: Union[int, str]) -> int:
    """Accept numeric levels and level names such as "DEBUG"."""
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        return resolved
    return level


def _in_package(name: str) -> bool:
    return name == PACKAGE or name.startswith(PACKAGE + ".")


def _build_file_handler(log_file: Path) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8',
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        fmt='%(asctime)s [%(threadName)s] %(name)s %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    return handler


def get_logger(
    name: str,
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Get or create a configured logger instance.

    Package loggers created after configure_package_logging() also write
    to the shared package log file.

    Args:
        name: Logger name (typically __name__)
        level: Logging level, numeric or by name
        log_dir: Optional directory for a per-logger log file

    Returns:
        Configured Logger instance
    """
    if name in _loggers:
        return _loggers[name]

    level = _resolve_level(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    # Prevent duplicate handlers
    if logger.handlers:
        _loggers[name] = logger
        return logger

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(colorlog.ColoredFormatter(
        fmt='%(log_color)s%(levelname)-8s%(reset)s %(blue)s%(name)s%(reset)s: %(message)s',
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    ))
    logger.addHandler(console_handler)

    if log_dir:
        logger.addHandler(_build_file_handler(Path(log_dir) / f"{name.replace('.', '_')}.log"))
    elif _package_file_handler is not None and _in_package(name):
        logger.addHandler(_package_file_handler)

    _loggers[name] = logger
    return logger


def configure_package_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Apply a level, and optionally a shared log file, to every package logger.

    Module loggers are created at import time with defaults; this re-targets
    them once settings are known. Calling it again with another directory
    moves the file output there.

    Args:
        level: Logging level, numeric or by name
        log_dir: Optional directory for ``recitation_cache.log``

    Returns:
        The package root logger
    """
    global _package_file_handler

    level = _resolve_level(level)
    root = get_logger(PACKAGE, level=level)

    if log_dir is not None:
        log_file = Path(log_dir) / LOG_FILE_NAME
        current = _package_file_handler
        if current is None or Path(current.baseFilename) != log_file.resolve():
            _package_file_handler = _build_file_handler(log_file)
            for logger in _loggers.values():
                if current is not None:
                    logger.removeHandler(current)
            if current is not None:
                current.close()

    for name, logger in _loggers.items():
        if not _in_package(name):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            if not isinstance(handler, RotatingFileHandler):
                handler.setLevel(level)
        if _package_file_handler is not None and _package_file_handler not in logger.handlers:
            logger.addHandler(_package_file_handler)

    return root
