"""In-memory authoritative snapshot of expense records, partitioned by month.

Every mutation is written through to the persistence adapter before the call
returns. If the write fails the in-memory change is rolled back and
:class:`status.PersistenceException` propagates to the caller.
"""
import copy
import logging
import threading
from typing import Any, Dict, List, Optional

import pandas as pd
from PySide6 import QtCore

from .database import DatabaseAPI, Key
from .model import Expense, MonthData
from ..status import status

SNAPSHOT_VERSION = 1

EXPENSE_DATA_COLUMNS: List[str] = ['category', 'total', 'transactions']
TRANSACTION_DATA_COLUMNS: List[str] = [
    'id', 'month_key', 'date', 'vendor', 'amount', 'currency', 'category', 'source', 'notes',
    'created_at', 'updated_at',
]


class RecordStore(QtCore.QObject):
    """Month-partitioned record store with write-through persistence.

    Records are looked up by id within their partition. Tombstones
    (``deleted=True``) are kept and hidden from :meth:`list_active`.

    Args:
        db: The persistence adapter.
        lock: Lock shared with the other engine components.
    """
    recordsChanged = QtCore.Signal(str)  # Emits the affected month key

    def __init__(
            self,
            db: DatabaseAPI,
            lock: Optional[threading.RLock] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)
        self._db = db
        self._lock = lock or threading.RLock()
        self._months: Dict[str, List[Expense]] = {}
        self._index: Dict[str, str] = {}  # expense id -> month key

        self.load()

    def load(self) -> None:
        """Replace the in-memory snapshot with the persisted one.

        Unknown snapshot versions and malformed payloads yield an empty store.
        """
        with self._lock:
            data = self._db.load(Key.State)
            self._months = {}
            self._index = {}

            if data is None:
                logging.debug('No persisted record snapshot found. Starting empty.')
                return
            if not isinstance(data, dict) or data.get('version') != SNAPSHOT_VERSION:
                logging.warning('Ignoring persisted record snapshot with unexpected format.')
                return
            months = data.get('months')
            if not isinstance(months, dict):
                logging.warning('Ignoring persisted record snapshot without months.')
                return

            for month_key, rows in months.items():
                expenses = []
                for row in rows:
                    try:
                        expense = Expense.from_dict(row)
                    except status.RecordInvalidException:
                        continue
                    expenses.append(expense)
                    self._index[expense.id] = month_key
                self._months[month_key] = expenses
            logging.info(f'Loaded {len(self._index)} record(s) across {len(self._months)} month(s).')

    def snapshot(self) -> Dict[str, Any]:
        """Return the serialisable snapshot of all records, tombstones included."""
        with self._lock:
            return {
                'version': SNAPSHOT_VERSION,
                'months': {
                    month_key: [e.to_dict() for e in expenses]
                    for month_key, expenses in self._months.items()
                },
            }

    def _commit(self, previous_months: Dict[str, List[Expense]], previous_index: Dict[str, str]) -> None:
        try:
            self._db.save(Key.State, self.snapshot())
        except status.PersistenceException:
            self._months = previous_months
            self._index = previous_index
            raise

    def _checkpoint(self):
        return {k: list(v) for k, v in self._months.items()}, dict(self._index)

    def upsert(self, expense: Expense) -> None:
        """Insert or replace the expense with a matching id inside its partition.

        A record that moved to another month is removed from its previous
        partition so ids stay unique across the store.

        Raises:
            status.PersistenceException: If the write-through fails.
        """
        expense = copy.deepcopy(expense)
        with self._lock:
            previous = self._checkpoint()
            old_month = self._index.get(expense.id)
            if old_month is not None and old_month != expense.month_key:
                self._months[old_month] = [e for e in self._months[old_month] if e.id != expense.id]

            month = self._months.setdefault(expense.month_key, [])
            idx = next((i for i, e in enumerate(month) if e.id == expense.id), None)
            if idx is not None:
                month[idx] = expense
            else:
                month.insert(0, expense)
            self._index[expense.id] = expense.month_key

            self._commit(*previous)

        logging.debug(f'Upserted expense "{expense.id}" in {expense.month_key} (deleted={expense.deleted}).')
        if old_month is not None and old_month != expense.month_key:
            self.recordsChanged.emit(old_month)
        self.recordsChanged.emit(expense.month_key)

    def delete(self, month_key: str, expense_id: str) -> bool:
        """Hard-remove a record from the snapshot.

        Only for purely local records that were never synced. Synced records are
        deleted by upserting a tombstone instead.

        Returns:
            bool: True if a record was removed.

        Raises:
            status.PersistenceException: If the write-through fails.
        """
        with self._lock:
            month = self._months.get(month_key, [])
            if not any(e.id == expense_id for e in month):
                logging.debug(f'Delete called for unknown expense "{expense_id}" in {month_key}.')
                return False

            previous = self._checkpoint()
            self._months[month_key] = [e for e in month if e.id != expense_id]
            self._index.pop(expense_id, None)
            self._commit(*previous)

        logging.debug(f'Removed expense "{expense_id}" from {month_key}.')
        self.recordsChanged.emit(month_key)
        return True

    def get(self, month_key: str, expense_id: str) -> Optional[Expense]:
        with self._lock:
            for e in self._months.get(month_key, []):
                if e.id == expense_id:
                    return copy.deepcopy(e)
        return None

    def find(self, expense_id: str) -> Optional[Expense]:
        """Look up a record by id in any partition."""
        with self._lock:
            month_key = self._index.get(expense_id)
            if month_key is None:
                return None
            return self.get(month_key, expense_id)

    def list_active(self, month_key: str) -> List[Expense]:
        """Return the visible records of a month, newest first. Tombstones are hidden."""
        with self._lock:
            return [copy.deepcopy(e) for e in self._months.get(month_key, []) if not e.deleted]

    def list_all(self, month_key: str) -> List[Expense]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._months.get(month_key, [])]

    def months(self) -> List[str]:
        with self._lock:
            return sorted(self._months)

    def month(self, month_key: str) -> MonthData:
        return MonthData(month_key=month_key, expenses=self.list_active(month_key))

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, expense_id: str) -> bool:
        with self._lock:
            return expense_id in self._index

    def dataframe(self, month_key: Optional[str] = None) -> pd.DataFrame:
        """Return active records as a DataFrame.

        Args:
            month_key: Restrict to a single month. All months when None.

        Returns:
            pandas.DataFrame: One row per active expense, amounts as floats.
        """
        with self._lock:
            keys = [month_key] if month_key else sorted(self._months)
            rows = [
                {
                    'id': e.id,
                    'month_key': e.month_key,
                    'date': e.date,
                    'vendor': e.vendor,
                    'amount': float(e.amount),
                    'currency': e.currency,
                    'category': e.category.value,
                    'source': e.source.value,
                    'notes': e.notes,
                    'created_at': e.created_at,
                    'updated_at': e.updated_at,
                }
                for k in keys
                for e in self._months.get(k, [])
                if not e.deleted
            ]
        return pd.DataFrame(rows, columns=TRANSACTION_DATA_COLUMNS)

    def summary(self, month_key: str) -> pd.DataFrame:
        """Return per-category totals of a month's active records, largest first."""
        df = self.dataframe(month_key)
        if df.empty:
            return pd.DataFrame(columns=EXPENSE_DATA_COLUMNS)

        summary = (
            df.groupby('category')
            .agg(total=('amount', 'sum'), transactions=('id', 'count'))
            .reset_index()
            .sort_values('total', ascending=False, kind='stable')
            .reset_index(drop=True)
        )
        return summary[EXPENSE_DATA_COLUMNS]

    def total(self, month_key: str) -> float:
        df = self.dataframe(month_key)
        return float(df['amount'].sum()) if not df.empty else 0.0
