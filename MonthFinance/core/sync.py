"""Reconciliation loop: flush the outbox, pull remote changes, merge them.

:meth:`Reconciler.tick` runs three independent phases:

1. Drain the outbox through the gateway.
2. Pull remote rows changed after the persisted cursor, one bounded page at a time.
3. Merge each pulled row into the record store and advance the cursor.

A failure in one phase is logged and recorded in the :class:`SyncResult`; it
does not stop the other phases and never escapes ``tick()``. Ticks never overlap:
a tick requested while one is running is dropped.
"""
import dataclasses
import logging
import threading
from typing import Any, Dict, List, Optional

from PySide6 import QtCore

from .database import DatabaseAPI, Key
from .gateway import RemoteGateway
from .merge import MergeDecision, apply_incoming
from .model import EPOCH, Expense, now_str, parse_timestamp
from .outbox import Outbox
from .store import RecordStore
from ..signals import signals
from ..status import status

DEFAULT_INTERVAL_MS: int = 8000
DEFAULT_PAGE_SIZE: int = 2000


class SyncCursor:
    """Persisted ``updated_at`` watermark of the newest pulled remote record.

    The value never decreases.

    Args:
        db: The persistence adapter.
        lock: Lock shared with the other engine components.
    """

    def __init__(self, db: DatabaseAPI, lock: Optional[threading.RLock] = None) -> None:
        self._db = db
        self._lock = lock or threading.RLock()
        self._value: str = EPOCH
        self.load()

    def load(self) -> None:
        with self._lock:
            value = self._db.load(Key.Cursor)
            try:
                parse_timestamp(value)
            except (TypeError, ValueError):
                if value is not None:
                    logging.warning(f'Ignoring invalid persisted cursor {value!r}.')
                value = EPOCH
            self._value = value

    @property
    def value(self) -> str:
        with self._lock:
            return self._value

    def advance(self, candidate: Optional[str]) -> bool:
        """Move the cursor to ``candidate`` if it is later than the current value.

        Returns:
            bool: True if the cursor moved and was persisted.

        Raises:
            status.PersistenceException: If the new value cannot be saved.
        """
        if not candidate:
            return False
        with self._lock:
            if parse_timestamp(candidate) <= parse_timestamp(self._value):
                return False
            self._db.save(Key.Cursor, candidate)
            self._value = candidate
        logging.debug(f'Sync cursor advanced to {candidate}.')
        return True

    def reset(self) -> None:
        """Rewind to the epoch so the next pull re-fetches all remote history."""
        with self._lock:
            self._db.save(Key.Cursor, EPOCH)
            self._value = EPOCH
        logging.info('Sync cursor reset.')


@dataclasses.dataclass
class SyncResult:
    """Aggregate outcome of one tick, for status displays."""
    started_at: str = ''
    finished_at: str = ''
    flushed: int = 0
    remaining: int = 0
    skipped: int = 0
    pulled: int = 0
    applied: int = 0
    ignored: int = 0
    rejected: int = 0
    cursor: str = EPOCH
    errors: List[str] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data['ok'] = self.ok
        return data


class Reconciler(QtCore.QObject):
    """Drives outbox flushing and remote pulls on a timer and on connectivity events.

    Args:
        store: Record store to merge pulled records into.
        outbox: Outbox to drain.
        cursor: Pull watermark.
        gateway: Remote store.
        page_size: Maximum number of rows pulled per tick.
        interval_ms: Timer interval used by :meth:`start`.
    """
    tickStarted = QtCore.Signal()
    tickFinished = QtCore.Signal(object)  # Emits SyncResult

    def __init__(
            self,
            store: RecordStore,
            outbox: Outbox,
            cursor: SyncCursor,
            gateway: RemoteGateway,
            page_size: int = DEFAULT_PAGE_SIZE,
            interval_ms: int = DEFAULT_INTERVAL_MS,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)
        if page_size < 1:
            raise ValueError('page_size must be at least 1.')

        self.store = store
        self.outbox = outbox
        self.cursor = cursor
        self.gateway = gateway
        self.page_size = page_size
        self.interval_ms = interval_ms

        self._tick_lock = threading.Lock()
        self._last_result: Optional[SyncResult] = None

        self._timer = QtCore.QTimer(self)
        self._timer.setSingleShot(False)

        self._connect_signals()

    def _connect_signals(self) -> None:
        self._timer.timeout.connect(self.tick)
        signals.connectivityRegained.connect(self.on_connectivity_regained)

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def in_flight(self) -> bool:
        return self._tick_lock.locked()

    def is_running(self) -> bool:
        return self._timer.isActive()

    def start(self, interval_ms: Optional[int] = None) -> None:
        """Run a tick now and then every ``interval_ms`` milliseconds."""
        if interval_ms is not None:
            self.interval_ms = interval_ms
        logging.info(f'Starting reconciler (interval: {self.interval_ms} ms).')
        self._timer.start(self.interval_ms)
        self.tick()

    def stop(self) -> None:
        if self._timer.isActive():
            logging.info('Stopping reconciler.')
        self._timer.stop()

    @QtCore.Slot()
    def on_connectivity_regained(self) -> None:
        logging.debug('Connectivity regained, requesting an early tick.')
        self.tick()

    @QtCore.Slot()
    def tick(self) -> Optional[SyncResult]:
        """Flush the outbox, then pull and merge remote changes.

        Returns:
            Optional[SyncResult]: The outcome, or None if a tick was already running.
        """
        if not self._tick_lock.acquire(blocking=False):
            logging.debug('Tick requested while another tick is in flight. Skipping.')
            return None

        try:
            self.tickStarted.emit()
            result = SyncResult(started_at=now_str())

            self._flush(result)
            self._pull(result)

            result.cursor = self.cursor.value
            result.finished_at = now_str()
            self._last_result = result
        finally:
            self._tick_lock.release()

        logging.info(
            f'Tick finished: flushed={result.flushed} remaining={result.remaining} '
            f'pulled={result.pulled} applied={result.applied} ignored={result.ignored} '
            f'rejected={result.rejected} errors={len(result.errors)}'
        )
        self.tickFinished.emit(result)
        signals.syncStatusChanged.emit(result.to_dict())
        return result

    def _flush(self, result: SyncResult) -> None:
        try:
            drained = self.outbox.drain(self.gateway.send)
            result.flushed = drained.flushed
            result.remaining = drained.remaining
            result.skipped = drained.skipped
            result.errors.extend(drained.errors)
        except Exception as ex:
            logging.exception('Outbox flush failed.')
            result.remaining = len(self.outbox)
            result.errors.append(f'flush: {ex}')

    def _pull(self, result: SyncResult) -> None:
        try:
            rows = self.gateway.pull_since(self.cursor.value, self.page_size)
        except Exception as ex:
            logging.warning(f'Pull failed: {ex}')
            result.errors.append(f'pull: {ex}')
            return

        result.pulled = len(rows)
        if not rows:
            return
        logging.debug(f'Pulled {len(rows)} remote row(s) after {self.cursor.value}.')

        # Highest updated_at processed so far; a row that fails to persist
        # stops the pass so it is pulled again on the next tick.
        newest: Optional[str] = None
        for row in rows:
            stamp = row.get('updated_at') if isinstance(row, dict) else None
            try:
                incoming = Expense.from_dict(row)
                decision = apply_incoming(self.store, incoming)
            except status.RecordInvalidException as ex:
                result.rejected += 1
                result.errors.append(f'merge: {ex}')
            except Exception as ex:
                logging.exception('Merging pulled records failed.')
                result.errors.append(f'merge: {ex}')
                break
            else:
                if decision == MergeDecision.Apply:
                    result.applied += 1
                else:
                    result.ignored += 1

            newest = self._later(newest, stamp)

        try:
            self.cursor.advance(newest)
        except Exception as ex:
            logging.exception('Advancing the sync cursor failed.')
            result.errors.append(f'cursor: {ex}')

    @staticmethod
    def _later(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
        try:
            parsed = parse_timestamp(candidate)
        except (TypeError, ValueError):
            return current
        if current is None or parsed > parse_timestamp(current):
            return candidate
        return current
