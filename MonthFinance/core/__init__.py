"""
Core package for MonthFinance providing the sync engine.

This package includes:

- :mod:`MonthFinance.core.model` – Expense, outbox operation and receipt candidate records.
- :mod:`MonthFinance.core.merge` – Last-writer-wins conflict resolution.
- :mod:`MonthFinance.core.database` – Local SQLite persistence of the engine state.
- :mod:`MonthFinance.core.store` – Month-partitioned record store with write-through persistence.
- :mod:`MonthFinance.core.outbox` – Durable queue of unsent local mutations and retry backoff.
- :mod:`MonthFinance.core.gateway` – In-memory and Google Sheets remote stores.
- :mod:`MonthFinance.core.sync` – The reconciler and its pull cursor.
- :mod:`MonthFinance.core.engine` – The engine instance and user actions.
"""
