"""
MonthFinance: local-first synchronization engine for a monthly expense tracker.

Expenses stay usable while offline and converge with a shared remote store once
connectivity returns. This package provides:

- :mod:`MonthFinance.core` – Record model, merge policy, record store, outbox, remote gateways and the reconciler.
- :mod:`MonthFinance.settings` – Settings management with schema validation.
- :mod:`MonthFinance.status` – Status codes and exceptions.
- :mod:`MonthFinance.log` – Logging setup with an in-memory log tank.

Use :class:`MonthFinance.core.engine.Engine` to build an engine instance.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('MonthFinance requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'MonthFinance: offline-first expense records with outbox replay and last-writer-wins merge.'

from .log import log

log.setup_logging()
