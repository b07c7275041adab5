"""Logging setup for MonthFinance.

All modules log through the root logger with module-level ``logging`` calls.
:func:`setup_logging` attaches a stdout handler and a :class:`TankHandler`, and
routes Qt's own messages into the same loggers. The tank is the best-effort
error list hosts show after sync passes; it is bounded, so a long-running engine
keeps only the most recent records.
"""
import collections
import logging
import os
import sys
from typing import Deque, List, Optional, Tuple

from PySide6.QtCore import QtMsgType, qInstallMessageHandler

from ..signals import signals

#: Environment variable overriding the default log level, e.g. ``INFO``
LOG_LEVEL_ENV_KEY = 'MONTHFINANCE_LOG_LEVEL'

LOG_LEVEL = logging.DEBUG
LOG_FORMAT = '[%(asctime)s] <%(module)s> %(levelname)s:  %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

TANK_CAPACITY = 5000

VALID_LEVELS = (
    logging.DEBUG,
    logging.INFO,
    logging.WARNING,
    logging.ERROR,
    logging.CRITICAL,
)

QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}

tank_handler: Optional['TankHandler'] = None


def set_logging_level(level: int) -> None:
    """
    Sets the logging level for the root logger.

    Args:
        level (int): One of the standard logging levels.

    Raises:
        ValueError: If the level is not a standard logging level.
    """
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValueError('Logging level must be an integer.')
    if level not in VALID_LEVELS:
        raise ValueError('Invalid logging level. Use one of the standard logging levels, e.g., logging.DEBUG.')

    logging.getLogger().setLevel(level)


def level_from_env(default: int = LOG_LEVEL) -> int:
    """Return the level named in ``MONTHFINANCE_LOG_LEVEL``, or ``default``."""
    name = os.environ.get(LOG_LEVEL_ENV_KEY, '').strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    if level not in VALID_LEVELS:
        return default
    return level


def qt_message_handler(mode, context, message):
    """Forward a Qt message to the ``Qt`` logger at the matching level."""
    logging.getLogger('Qt').log(QT_LEVELS.get(mode, logging.WARNING), message.strip())


def setup_logging(
        log_level: Optional[int] = None,
        enable_stream_handler: bool = True,
        enable_qt_handler: bool = True
) -> None:
    """
    Configures the root logger for the engine.

    Existing root handlers are replaced, so calling this again resets the tank.

    Args:
        log_level: Level of the root logger. Read from the environment when None.
        enable_stream_handler: Also write records to stdout.
        enable_qt_handler: Route Qt messages into logging.
    """
    global tank_handler

    level = log_level if log_level is not None else level_from_env()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    set_logging_level(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    if enable_stream_handler:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    tank_handler = TankHandler()
    tank_handler.setFormatter(formatter)
    root_logger.addHandler(tank_handler)

    if enable_qt_handler:
        qInstallMessageHandler(qt_message_handler)


class TankHandler(logging.Handler):
    """
    Keeps the most recent formatted records in memory.

    An ERROR or worse record emits :attr:`Signals.showLogs` so hosts can surface it.

    Args:
        capacity (int): Number of records kept; the oldest are dropped first.
    """

    def __init__(self, capacity: int = TANK_CAPACITY):
        super().__init__()
        self.tank: Deque[Tuple[int, str]] = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            self.tank.append((record.levelno, self.format(record)))
        except Exception:
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            signals.showLogs.emit()

    def get_logs(self, level: int = logging.NOTSET) -> List[str]:
        """
        Returns stored messages at or above ``level``, oldest first.
        """
        return [msg for lvl, msg in self.tank if lvl >= level]

    def clear_logs(self) -> None:
        self.tank.clear()
