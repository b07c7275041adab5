"""Application-wide Qt signals for MonthFinance.

Hosts connect to these to learn about configuration changes, record changes,
outbox size and sync outcomes without holding references to engine internals.
Emitting :attr:`Signals.connectivityRegained` asks every running reconciler to
tick early.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, data and sync events."""
    configSectionChanged = QtCore.Signal(str)

    recordsChanged = QtCore.Signal(str)  # month key
    outboxChanged = QtCore.Signal(int)  # queue size

    connectivityRegained = QtCore.Signal()
    syncStatusChanged = QtCore.Signal(dict)

    showLogs = QtCore.Signal()
    error = QtCore.Signal(str)

    def __init__(self):
        super().__init__()


signals = Signals()
