# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""Logging configuration for the estimator

Library modules log through ``logging.getLogger(__name__)`` below the
``pyrtk`` package logger and never attach handlers themselves; applications
do that once with ``setup_logger`` or ``configure_logging``. Matrices are
written at the extra TRACE level, below DEBUG.
"""

import logging
import sys
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional, TextIO

import numpy as np

PACKAGE_LOGGER = "pyrtk"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogLevel(Enum):
    """Estimator log levels"""
    TRACE = 5
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


logging.addLevelName(LogLevel.TRACE.value, "TRACE")


def _trace(self, message, *args, **kwargs):
    if self.isEnabledFor(LogLevel.TRACE.value):
        self._log(LogLevel.TRACE.value, message, args, **kwargs)


logging.Logger.trace = _trace


def level_value(level) -> int:
    """Numeric value of a level given by name, ``LogLevel`` or number

    Raises
    ------
    ValueError
        For an unknown level name
    """
    if isinstance(level, LogLevel):
        return level.value
    if isinstance(level, int):
        return level
    try:
        return LogLevel[level.upper()].value
    except KeyError:
        raise ValueError(f"Unknown log level: {level}") from None


class ConsoleFormatter(logging.Formatter):
    """Console formatter; the level name is coloured when ``color`` is set"""

    COLORS = {
        'TRACE': '\033[36m',
        'DEBUG': '\033[34m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, color: bool = True):
        super().__init__(_FORMAT, datefmt='%H:%M:%S')
        self.color = color

    def format(self, record):
        if not self.color:
            return super().format(record)
        # the record is shared with the other handlers
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{self.COLORS.get(record.levelname, '')}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logger(name: str = PACKAGE_LOGGER,
                 level="INFO",
                 log_file: Optional[str] = None,
                 console: bool = True,
                 stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Attach console and file handlers to a logger

    Existing handlers of the logger are closed and replaced. Handlers carry
    no level of their own, so module loggers set below ``name`` with a more
    verbose level still reach them.

    Parameters:
    -----------
    name : str
        Logger name, the package logger by default
    level : str, int or LogLevel
        Level of the logger (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_file : Optional[str]
        Log file path (if None, no file logging)
    console : bool
        Enable console output
    stream : Optional[TextIO]
        Console stream, ``sys.stdout`` by default; colours are used only
        when it is a terminal

    Returns:
    --------
    logging.Logger
        Configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level_value(level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        stream = stream if stream is not None else sys.stdout
        handler = logging.StreamHandler(stream)
        isatty = getattr(stream, "isatty", None)
        handler.setFormatter(ConsoleFormatter(color=bool(isatty and isatty())))
        logger.addHandler(handler)

    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

    return logger


def get_logger(module: str) -> logging.Logger:
    """Logger of a package module, e.g. ``get_logger('filters.rtk')``"""
    if module == PACKAGE_LOGGER or module.startswith(PACKAGE_LOGGER + "."):
        return logging.getLogger(module)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{module}")


def log_matrix(logger: logging.Logger, name: str, M: np.ndarray,
               precision: int = 6, level: int = LogLevel.TRACE.value):
    """Write a matrix to the logger, one row per line.

    Nothing is formatted unless the logger is enabled for ``level``.
    """
    if not logger.isEnabledFor(level):
        return
    M = np.atleast_2d(M)
    rows = [" ".join(f"{v:{precision + 8}.{precision}f}" for v in row) for row in M]
    logger.log(level, "%s [%d x %d]\n%s", name, M.shape[0], M.shape[1], "\n".join(rows))


class LogContext:
    """Temporarily change the level of a logger

    Examples
    --------
    >>> with LogContext(logging.getLogger('pyrtk.filters.rtk'), 'TRACE'):
    ...     estimator.kalman_update(rover, base)
    """

    def __init__(self, logger: logging.Logger, level):
        self.logger = logger
        self.level = level_value(level)
        self.previous = None

    def __enter__(self):
        self.previous = self.logger.level
        self.logger.setLevel(self.level)
        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.setLevel(self.previous)


@dataclass
class LoggingOptions:
    """Handlers of the package logger and per-module levels

    ``module_levels`` maps logger names (``'pyrtk.filters'``,
    ``'pyrtk.gnss.raim'``) to level names; a level applies to the whole
    subtree below its logger.
    """
    default_level: str = "INFO"
    log_file: Optional[str] = None
    console: bool = True
    module_levels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "LoggingOptions":
        """Build options from a dictionary; unknown keys and levels raise
        ``ValueError``"""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown logging option(s): {sorted(unknown)}")
        options = cls(**config)
        for level in [options.default_level, *options.module_levels.values()]:
            level_value(level)
        return options

    def level_for(self, module: str) -> str:
        """Configured level of a module: the closest configured parent, else
        the default level"""
        name = module
        while name:
            if name in self.module_levels:
                return self.module_levels[name]
            name = name.rpartition(".")[0]
        return self.default_level

    def apply(self) -> logging.Logger:
        logger = setup_logger(PACKAGE_LOGGER, self.default_level, self.log_file, self.console)
        for module, level in self.module_levels.items():
            logging.getLogger(module).setLevel(level_value(level))
        return logger


def configure_logging(config: dict[str, Any]) -> logging.Logger:
    """Configure package logging from a dictionary

    Example config:
    {
        'default_level': 'INFO',
        'log_file': 'estimator.log',
        'console': True,
        'module_levels': {
            'pyrtk.filters.rtk': 'DEBUG',
            'pyrtk.gnss.raim': 'TRACE',
        }
    }
    """
    return LoggingOptions.from_dict(config).apply()
