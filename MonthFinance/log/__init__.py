"""
Logging subsystem for the sync engine.

Modules:

- :mod:`MonthFinance.log.log` – Log handlers integrating Python logging with Qt messages and an in-memory tank.
"""
