"""
Logging for zkcompose.

Every subsystem logs under the ``zkcompose`` namespace (``zkcompose.prover.remote``,
``zkcompose.submission``, ...). The namespace gets one colored stderr handler
the first time any logger is requested; `setup_logging` changes the level
and can append a plain-text copy to a file.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

NAMESPACE = "zkcompose"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

_console: Optional[logging.Handler] = None


def _namespace_logger() -> logging.Logger:
    """The ``zkcompose`` logger, with its console handler attached once."""
    global _console

    root = logging.getLogger(NAMESPACE)
    if _console is None:
        _console = colorlog.StreamHandler(sys.stderr)
        _console.setFormatter(colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s: %(message)s",
            datefmt=DATE_FORMAT,
            log_colors=LEVEL_COLORS,
        ))
        root.addHandler(_console)
        root.setLevel(logging.INFO)
    return root


def _as_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level {level!r}")
    return value


def _has_file_handler(root: logging.Logger, path: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path
        for handler in root.handlers
    )


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the zkcompose namespace. Safe to call more than once.

    Args:
        level: Level number or name ("debug", "INFO", ...), applied to the
            namespace and all of its handlers
        log_file: Also append uncolored records here

    Raises:
        ValueError: for an unknown level name
    """
    root = _namespace_logger()
    level = _as_level(level)

    if log_file is not None:
        path = Path(log_file).expanduser().resolve()
        if not _has_file_handler(root, path):
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                datefmt=DATE_FORMAT,
            ))
            root.addHandler(file_handler)

    root.setLevel(level)
    for handler in root.handlers:
        handler.setLevel(level)
    return root


def get_logger(name: str) -> logging.Logger:
    """Logger for one subsystem, e.g. ``get_logger("prover.remote")``."""
    _namespace_logger()
    return logging.getLogger(f"{NAMESPACE}.{name}")
