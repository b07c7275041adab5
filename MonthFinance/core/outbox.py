"""Durable, ordered log of local mutations waiting to be sent to the remote store.

Operations are appended by :meth:`Outbox.enqueue` and removed only after the
remote store acknowledged them in :meth:`Outbox.drain`. A failed operation stays
in the log, in its original relative order, and is retried on the next drain.
There is no retry cap; a :class:`BackoffStrategy` decides only *when* an
operation is tried again.

``send`` callables must be idempotent per record id: an operation acknowledged
by the remote store may be sent again if the process stops before the log is
saved.
"""
import dataclasses
import datetime
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from PySide6 import QtCore

from .database import DatabaseAPI, Key
from .model import Expense, OutboxOp, now_str, parse_timestamp
from ..status import status


class BackoffStrategy:
    """Decides whether a previously failed operation is due for another attempt."""

    def delay(self, attempts: int) -> float:
        """Return the wait in seconds after ``attempts`` failed attempts."""
        return 0.0

    def is_due(self, op: OutboxOp, now: Optional[datetime.datetime] = None) -> bool:
        if not op.attempts or not op.last_attempt_at:
            return True
        delay = self.delay(op.attempts)
        if delay <= 0:
            return True
        now = now or parse_timestamp(now_str())
        return now >= parse_timestamp(op.last_attempt_at) + datetime.timedelta(seconds=delay)


class NoBackoff(BackoffStrategy):
    """Retry every remaining operation on every drain."""
    pass


class ExponentialBackoff(BackoffStrategy):
    """Double the wait after each failure, up to ``maximum`` seconds.

    Args:
        base: Wait after the first failure, in seconds.
        maximum: Upper bound of the wait, in seconds.
    """

    def __init__(self, base: float = 2.0, maximum: float = 300.0) -> None:
        if base < 0 or maximum < 0:
            raise ValueError('Backoff delays must not be negative.')
        self.base = base
        self.maximum = maximum

    def delay(self, attempts: int) -> float:
        if attempts <= 0:
            return 0.0
        return min(self.maximum, self.base * (2 ** (attempts - 1)))


def make_backoff(config: Dict[str, Any]) -> BackoffStrategy:
    """Build the backoff strategy named in the ``sync`` settings section."""
    name = config.get('backoff', 'none')
    if name == 'exponential':
        return ExponentialBackoff(
            base=float(config.get('backoff_base_s', 2.0)),
            maximum=float(config.get('backoff_max_s', 300.0)),
        )
    if name != 'none':
        logging.warning(f'Unknown backoff strategy "{name}". Retrying without backoff.')
    return NoBackoff()


@dataclasses.dataclass
class DrainResult:
    """Outcome of one :meth:`Outbox.drain` pass."""
    flushed: int = 0
    remaining: int = 0
    skipped: int = 0
    errors: List[str] = dataclasses.field(default_factory=list)


class Outbox(QtCore.QObject):
    """Persistent queue of pending :class:`OutboxOp` entries.

    Args:
        db: The persistence adapter.
        lock: Lock shared with the other engine components.
        backoff: Retry timing for failed operations. Defaults to :class:`NoBackoff`.
    """
    queueChanged = QtCore.Signal(int)  # Emits current queue size

    def __init__(
            self,
            db: DatabaseAPI,
            lock: Optional[threading.RLock] = None,
            backoff: Optional[BackoffStrategy] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)
        self._db = db
        self._lock = lock or threading.RLock()
        self.backoff: BackoffStrategy = backoff or NoBackoff()
        self._ops: List[OutboxOp] = []

        self.load()

    def load(self) -> None:
        """Replace the in-memory queue with the persisted log, skipping unreadable entries."""
        with self._lock:
            data = self._db.load(Key.Outbox) or []
            ops: List[OutboxOp] = []
            for item in data:
                try:
                    ops.append(OutboxOp.from_dict(item))
                except (KeyError, ValueError, TypeError, status.RecordInvalidException) as ex:
                    logging.warning(f'Dropping unreadable outbox entry: {ex}')
            self._ops = ops
        logging.debug(f'Loaded {len(ops)} pending outbox operation(s).')

    def _save(self) -> None:
        self._db.save(Key.Outbox, [op.to_dict() for op in self._ops])

    def enqueue(self, *ops: OutboxOp) -> None:
        """Append operations to the durable log in a single save.

        Raises:
            status.PersistenceException: If the log cannot be saved. None of the operations are queued.
        """
        if not ops:
            return
        with self._lock:
            self._ops.extend(ops)
            try:
                self._save()
            except status.PersistenceException:
                del self._ops[-len(ops):]
                raise
            size = len(self._ops)

        for op in ops:
            logging.debug(f'Enqueued {op.kind} for "{op.record_id}" (queue size: {size}).')
        self.queueChanged.emit(size)

    def enqueue_upsert(self, expense: Expense) -> OutboxOp:
        op = OutboxOp.upsert(expense)
        self.enqueue(op)
        return op

    def enqueue_delete(self, month_key: str, expense_id: str) -> OutboxOp:
        op = OutboxOp.delete(month_key, expense_id)
        self.enqueue(op)
        return op

    def ops(self) -> List[OutboxOp]:
        """Return a copy of the pending operations, oldest first."""
        with self._lock:
            return list(self._ops)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)

    def clear(self) -> None:
        """Discard all pending operations."""
        with self._lock:
            if not self._ops:
                logging.debug('Clear called, but outbox was already empty.')
                return
            logging.debug(f'Clearing {len(self._ops)} operation(s) from outbox.')
            self._ops = []
            self._save()
        self.queueChanged.emit(0)

    def drain(self, send: Callable[[OutboxOp], Any]) -> DrainResult:
        """Try to send every queued operation once.

        Works on the list of operations present when the call starts. Operations
        enqueued while draining are kept for the next pass. Each ``send`` is
        independent: an exception or a falsy return value marks only that
        operation as failed, and it stays queued in its original position.

        Args:
            send: Callable transmitting one operation; truthy on success.

        Returns:
            DrainResult: Counts of flushed, remaining and skipped operations.

        Raises:
            status.PersistenceException: If the updated log cannot be saved.
        """
        result = DrainResult()
        pending = self.ops()
        if not pending:
            return result

        logging.debug(f'Draining {len(pending)} outbox operation(s).')
        sent_ids = set()
        failed: Dict[str, OutboxOp] = {}
        now = parse_timestamp(now_str())

        for op in pending:
            if not self.backoff.is_due(op, now):
                result.skipped += 1
                continue

            error = None
            try:
                ok = send(op)
                if not ok:
                    error = 'remote store rejected the operation'
            except Exception as ex:
                error = str(ex) or type(ex).__name__

            if error is None:
                sent_ids.add(op.op_id)
                result.flushed += 1
                continue

            logging.warning(f'Failed to send {op.kind} for "{op.record_id}" (attempt {op.attempts + 1}): {error}')
            failed[op.op_id] = dataclasses.replace(
                op,
                attempts=op.attempts + 1,
                last_attempt_at=now_str(),
                last_error=error,
            )
            result.errors.append(f'{op.kind} {op.record_id}: {error}')

        with self._lock:
            self._ops = [
                failed.get(op.op_id, op)
                for op in self._ops
                if op.op_id not in sent_ids
            ]
            result.remaining = len(self._ops)
            self._save()

        logging.info(
            f'Outbox drained: {result.flushed} flushed, {result.remaining} remaining, {result.skipped} skipped.'
        )
        self.queueChanged.emit(result.remaining)
        return result
