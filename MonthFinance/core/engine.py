"""The sync engine instance and the user actions that feed it.

An :class:`Engine` owns the record store, the outbox, the sync cursor and the
reconciler. It is constructed with an explicit persistence adapter and remote
gateway, so several independent engines can live in one process (tests do this).

Every user action follows the same path: build the new record, upsert it into
the store (written through to disk) and append the matching operation to the
outbox. Nothing is sent to the remote store directly; the reconciler delivers
the outbox on its next tick.

Example:

    .. code-block:: python

        engine = Engine.from_settings()
        engine.add_expense(vendor='Figma', amount='15.00', category='TOOLS')
        engine.start()

"""
import logging
import threading
from typing import Any, Dict, List, Optional

import pandas as pd
from PySide6 import QtCore

from .database import DatabaseAPI
from .gateway import MemoryGateway, RemoteGateway, SheetsGateway, get_service, load_credentials
from .model import (
    Category, Expense, OutboxOp, ReceiptCandidate, Source, CandidateStatus, Provenance,
    month_key_from_date, new_id, now_str, today_iso, is_newer
)
from .outbox import BackoffStrategy, Outbox, make_backoff
from .store import RecordStore
from .sync import Reconciler, SyncCursor, SyncResult
from ..settings import lib
from ..signals import signals
from ..status import status


def create_gateway(config: Optional[Dict[str, Any]] = None) -> RemoteGateway:
    """Build the remote gateway named in the ``remote`` settings section.

    Args:
        config: The ``remote`` section. Read from the current settings when None.

    Returns:
        RemoteGateway: The configured gateway.

    Raises:
        status.CredsNotFoundException: If the Sheets backend has no credentials file.
        status.CredsInvalidException: If the credentials cannot be loaded.
        status.GatewayNotConfiguredException: If the backend is unknown or incomplete.
    """
    config = config if config is not None else lib.settings.get_section('remote')
    backend = config.get('backend', 'memory')

    if backend == 'memory':
        logging.debug('Using the in-memory remote gateway.')
        return MemoryGateway()

    if backend == 'sheets':
        credentials = load_credentials(lib.settings.credentials_path)
        service = get_service(credentials)
        logging.debug(f'Using the Sheets remote gateway ({config.get("spreadsheet_id")}).')
        return SheetsGateway(service, config.get('spreadsheet_id', ''), config.get('worksheet', ''))

    raise status.GatewayNotConfiguredException(f'Unknown remote backend "{backend}".')


class Engine(QtCore.QObject):
    """Local-first expense store synchronised with a remote gateway.

    Args:
        db: The persistence adapter.
        gateway: The remote store.
        lock: Lock shared by the store, the outbox and the cursor. Created when None.
        page_size: Rows pulled per tick. Read from the ``sync`` settings when None.
        interval_ms: Tick interval. Read from the ``sync`` settings when None.
        backoff: Retry timing of failed outbox operations. Read from the ``sync`` settings when None.
    """

    def __init__(
            self,
            db: DatabaseAPI,
            gateway: RemoteGateway,
            lock: Optional[threading.RLock] = None,
            page_size: Optional[int] = None,
            interval_ms: Optional[int] = None,
            backoff: Optional[BackoffStrategy] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)

        config = lib.settings.get_section('sync')

        self._lock = lock or threading.RLock()
        self.db = db
        self.gateway = gateway

        self.store = RecordStore(db, lock=self._lock, parent=self)
        self.outbox = Outbox(db, lock=self._lock, backoff=backoff or make_backoff(config), parent=self)
        self.cursor = SyncCursor(db, lock=self._lock)
        self.reconciler = Reconciler(
            self.store,
            self.outbox,
            self.cursor,
            gateway,
            page_size=page_size or config['page_size'],
            interval_ms=interval_ms or config['interval_ms'],
            parent=self,
        )

        self._connect_signals()

    @classmethod
    def from_settings(cls, parent: Optional[QtCore.QObject] = None) -> 'Engine':
        """Create an engine using the configured database and remote backend."""
        return cls(DatabaseAPI(), create_gateway(), parent=parent)

    def _connect_signals(self) -> None:
        self.store.recordsChanged.connect(signals.recordsChanged)
        self.outbox.queueChanged.connect(signals.outboxChanged)
        signals.configSectionChanged.connect(self.on_config_changed)

    @QtCore.Slot(str)
    def on_config_changed(self, section: str) -> None:
        if section != 'sync':
            return
        config = lib.settings.get_section('sync')
        self.outbox.backoff = make_backoff(config)
        self.reconciler.page_size = config['page_size']
        self.reconciler.interval_ms = config['interval_ms']
        if self.reconciler.is_running():
            self.reconciler.start()
        logging.debug('Applied updated sync settings.')

    def _defaults(self) -> Dict[str, Any]:
        return lib.settings.get_section('defaults')

    def _commit(self, expense: Expense, *ops: OutboxOp) -> Expense:
        """Upsert ``expense`` locally and queue ``ops`` for the remote store.

        ``ops`` defaults to a single upsert of ``expense``. If the outbox cannot
        be saved the store is put back the way it was, so a local change never
        exists without the operations that deliver it.

        Raises:
            status.PersistenceException: If the store or the outbox cannot be saved.
        """
        expense.validate()
        ops = ops or (OutboxOp.upsert(expense),)
        with self._lock:
            previous = self.store.find(expense.id)
            self.store.upsert(expense)
            try:
                self.outbox.enqueue(*ops)
            except status.PersistenceException:
                logging.error(f'Could not queue "{expense.id}", reverting the local change.')
                self._revert(expense, previous)
                raise
        return expense

    def _revert(self, expense: Expense, previous: Optional[Expense]) -> None:
        if previous is None:
            self.store.delete(expense.month_key, expense.id)
        else:
            self.store.upsert(previous)

    def add_expense(
            self,
            vendor: str,
            amount: Any,
            category: Optional[str] = None,
            date: Optional[str] = None,
            month_key: Optional[str] = None,
            currency: Optional[str] = None,
            source: Source = Source.Manual,
            notes: Optional[str] = None,
            receipt: Optional[Provenance] = None,
    ) -> Expense:
        """Create a new expense.

        Args:
            vendor: Who was paid.
            amount: Amount as a number or decimal string.
            category: Expense category. Defaults to the configured category.
            date: ISO date. Defaults to today.
            month_key: Partition key. Derived from ``date`` when None.
            currency: Defaults to the configured currency.
            source: Where the expense was authored.
            notes: Optional free text.
            receipt: Optional email provenance.

        Returns:
            Expense: The stored record.

        Raises:
            status.PersistenceException: If the change cannot be saved locally.
        """
        defaults = self._defaults()
        date = date or today_iso()
        now = now_str()
        expense = Expense(
            id=new_id(),
            month_key=month_key or month_key_from_date(date),
            date=date,
            vendor=vendor,
            amount=amount,
            currency=currency or defaults['currency'],
            category=category or defaults['category'],
            source=source,
            notes=notes,
            receipt=receipt,
            created_at=now,
            updated_at=now,
        )
        logging.info(f'Adding expense "{expense.id}" ({expense.vendor}, {expense.amount}) to {expense.month_key}.')
        return self._commit(expense)

    def update_expense(self, expense: Expense, **changes: Any) -> Expense:
        """Save an edited expense with a fresh ``updated_at``.

        Args:
            expense: The edited record.
            **changes: Optional field changes applied on top of ``expense``.

        Returns:
            Expense: The stored record.
        """
        if 'date' in changes and 'month_key' not in changes:
            changes['month_key'] = month_key_from_date(changes['date'])

        with self._lock:
            updated = expense.touched(**changes)
            local = self.store.find(expense.id)
            # The stored copy may carry a later stamp than the edited one
            if local is not None and not is_newer(updated.updated_at, local.updated_at):
                updated.updated_at = local.touched().updated_at

            logging.info(f'Updating expense "{updated.id}" in {updated.month_key}.')
            return self._commit(updated)

    def remove_expense(self, month_key: str, expense_id: str) -> bool:
        """Delete an expense.

        A stored record becomes a tombstone so the deletion outranks older remote
        copies; both a delete and the tombstone upsert are queued. An id the store
        does not hold is removed locally only.

        Returns:
            bool: True if a record was removed.
        """
        with self._lock:
            local = self.store.get(month_key, expense_id)
            if local is None:
                return self.store.delete(month_key, expense_id)

            tombstone = local.touched(deleted=True)
            self._commit(tombstone, OutboxOp.delete(month_key, expense_id), OutboxOp.upsert(tombstone))

        logging.info(f'Removed expense "{expense_id}" from {month_key}.')
        return True

    def upsert_monthly_quick(self, month_key: str, category: str, amount: Any) -> Expense:
        """Set the rolling per-category total of a month.

        Each month keeps at most one such record per category, named after the
        category itself. It is created on first use and updated afterwards.
        """
        category = Category(category)
        with self._lock:
            existing = next(
                (e for e in self.store.list_active(month_key)
                 if e.category == category and e.vendor == category.value),
                None
            )
            if existing is not None:
                return self.update_expense(existing, amount=amount)

            today = today_iso()
            date = today if month_key_from_date(today) == month_key else f'{month_key}-01'
            return self.add_expense(
                vendor=category.value,
                amount=amount,
                category=category,
                date=date,
                month_key=month_key,
            )

    def import_receipt(self, candidate: ReceiptCandidate, category: str = Category.Subscriptions) -> Expense:
        """Turn a receipt candidate into an email-sourced expense.

        A candidate whose message was already imported into the month returns the
        existing record.
        """
        with self._lock:
            for e in self.store.list_active(candidate.month_key):
                if (e.receipt and e.receipt.provider == candidate.provider
                        and e.receipt.message_id == candidate.message_id):
                    logging.debug(f'Receipt "{candidate.message_id}" was already imported as "{e.id}".')
                    candidate.status = CandidateStatus.Imported
                    return e

            expense = candidate.to_expense(Category(category))
            logging.info(f'Importing receipt "{candidate.message_id}" from {candidate.provider} as "{expense.id}".')
            self._commit(expense)
            candidate.status = CandidateStatus.Imported
            return expense

    def month_expenses(self, month_key: str) -> List[Expense]:
        """Return the visible expenses of a month, newest first."""
        return self.store.list_active(month_key)

    def month_summary(self, month_key: str) -> pd.DataFrame:
        return self.store.summary(month_key)

    def tick(self) -> Optional[SyncResult]:
        return self.reconciler.tick()

    def start(self, interval_ms: Optional[int] = None) -> None:
        self.reconciler.start(interval_ms)

    def stop(self) -> None:
        self.reconciler.stop()

    def status(self) -> Dict[str, Any]:
        """Return a snapshot of the sync state for status displays."""
        last = self.reconciler.last_result
        return {
            'queued': len(self.outbox),
            'cursor': self.cursor.value,
            'running': self.reconciler.is_running(),
            'in_flight': self.reconciler.in_flight,
            'last_result': last.to_dict() if last else None,
        }
