"""
Tests for the durable outbox in MonthFinance.core.outbox.

Run:
    python -m unittest tests.test_outbox
"""
import datetime
from typing import List
from unittest.mock import patch

from MonthFinance.core.database import Key
from MonthFinance.core.model import OpKind, OutboxOp, parse_timestamp
from MonthFinance.core.outbox import (
    ExponentialBackoff,
    NoBackoff,
    Outbox,
    make_backoff,
)
from MonthFinance.status import status
from tests.base import BaseTestCase, make_expense


class OutboxTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.outbox = Outbox(self.db)

    def _fill(self, *ids: str) -> List[OutboxOp]:
        return [self.outbox.enqueue_upsert(make_expense(i)) for i in ids]

    def test_enqueue_persists(self):
        self._fill('A')
        self.outbox.enqueue_delete('2025-03', 'A')

        restarted = Outbox(self.db)
        self.assertEqual([op.kind for op in restarted.ops()], [OpKind.Upsert, OpKind.Delete])
        self.assertEqual(restarted.ops()[0].payload, make_expense('A'))

    def test_enqueue_failure_is_not_queued(self):
        with patch.object(self.db, 'save', side_effect=status.PersistenceException('disk full')):
            with self.assertRaises(status.PersistenceException):
                self._fill('A')
        self.assertEqual(len(self.outbox), 0)

    def test_enqueue_many_is_all_or_nothing(self):
        self._fill('A')
        ops = [OutboxOp.delete('2025-03', 'B'), OutboxOp.upsert(make_expense('B'))]
        with patch.object(self.db, 'save', side_effect=status.PersistenceException('disk full')):
            with self.assertRaises(status.PersistenceException):
                self.outbox.enqueue(*ops)
        self.assertEqual([op.record_id for op in self.outbox.ops()], ['A'])

        self.outbox.enqueue(*ops)
        restarted = Outbox(self.db)
        self.assertEqual([op.kind for op in restarted.ops()], [OpKind.Upsert, OpKind.Delete, OpKind.Upsert])

    def test_drain_removes_acknowledged_ops(self):
        self._fill('A', 'B')
        sent = []
        result = self.outbox.drain(lambda op: sent.append(op.record_id) or True)

        self.assertEqual(sent, ['A', 'B'])
        self.assertEqual((result.flushed, result.remaining), (2, 0))
        self.assertEqual(len(Outbox(self.db)), 0)

    def test_failed_ops_keep_their_order(self):
        self._fill('A', 'B', 'C', 'D')

        def send(op):
            if op.record_id == 'B':
                raise ConnectionError('network down')
            return op.record_id != 'D'

        result = self.outbox.drain(send)

        self.assertEqual(result.flushed, 2)
        self.assertEqual(result.remaining, 2)
        self.assertEqual(len(result.errors), 2)
        remaining = self.outbox.ops()
        self.assertEqual([op.record_id for op in remaining], ['B', 'D'])
        self.assertEqual([op.attempts for op in remaining], [1, 1])
        self.assertEqual(remaining[0].last_error, 'network down')

    def test_ops_enqueued_during_drain_wait_for_next_pass(self):
        self._fill('A', 'B')

        def send(op):
            if op.record_id == 'A':
                self.outbox.enqueue_upsert(make_expense('LATE'))
            return op.record_id != 'B'

        result = self.outbox.drain(send)

        self.assertEqual(result.flushed, 1)
        self.assertEqual([op.record_id for op in self.outbox.ops()], ['B', 'LATE'])

    def test_repeated_drains_converge(self):
        self._fill('A', 'B', 'C')
        online = {'A'}

        def send(op):
            return op.record_id in online

        self.outbox.drain(send)
        self.assertEqual(len(self.outbox), 2)

        online.update({'B', 'C'})
        self.outbox.drain(send)
        self.assertEqual(len(self.outbox), 0)
        self.assertEqual(self.db.load(Key.Outbox), [])

    def test_no_retry_cap(self):
        self._fill('A')
        for _ in range(25):
            self.outbox.drain(lambda op: False)
        self.assertEqual(self.outbox.ops()[0].attempts, 25)

    def test_queue_changed_signal(self):
        sizes = []
        self.outbox.queueChanged.connect(sizes.append)
        self._fill('A', 'B')
        self.outbox.drain(lambda op: True)
        self.assertEqual(sizes, [1, 2, 0])

    def test_unreadable_entries_are_dropped_on_load(self):
        good = OutboxOp.upsert(make_expense('A')).to_dict()
        self.db.save(Key.Outbox, [{'kind': 'teleport'}, good])
        self.assertEqual([op.record_id for op in Outbox(self.db).ops()], ['A'])

    def test_clear(self):
        self._fill('A')
        self.outbox.clear()
        self.assertEqual(len(Outbox(self.db)), 0)


class BackoffTests(BaseTestCase):
    def test_exponential_delays(self):
        backoff = ExponentialBackoff(base=2.0, maximum=10.0)
        self.assertEqual([backoff.delay(n) for n in range(6)], [0.0, 2.0, 4.0, 8.0, 10.0, 10.0])

    def test_is_due(self):
        backoff = ExponentialBackoff(base=60.0)
        op = OutboxOp.upsert(make_expense())
        self.assertTrue(backoff.is_due(op), 'Fresh ops are always due')

        op.attempts = 1
        op.last_attempt_at = '2025-03-14T12:00:00+00:00'
        at = parse_timestamp(op.last_attempt_at)
        self.assertFalse(backoff.is_due(op, at + datetime.timedelta(seconds=30)))
        self.assertTrue(backoff.is_due(op, at + datetime.timedelta(seconds=60)))
        self.assertTrue(NoBackoff().is_due(op, at))

    def test_drain_skips_ops_that_are_not_due(self):
        outbox = Outbox(self.db, backoff=ExponentialBackoff(base=3600.0))
        outbox.enqueue_upsert(make_expense('A'))
        outbox.drain(lambda op: False)

        sent = []
        result = outbox.drain(lambda op: sent.append(op) or True)

        self.assertEqual(sent, [])
        self.assertEqual((result.skipped, result.remaining), (1, 1))
        self.assertEqual(outbox.ops()[0].attempts, 1)

    def test_make_backoff(self):
        self.assertIsInstance(make_backoff({'backoff': 'none'}), NoBackoff)
        self.assertIsInstance(make_backoff({'backoff': 'bogus'}), NoBackoff)

        backoff = make_backoff({'backoff': 'exponential', 'backoff_base_s': 1, 'backoff_max_s': 5})
        self.assertIsInstance(backoff, ExponentialBackoff)
        self.assertEqual(backoff.delay(10), 5.0)

        with self.assertRaises(ValueError):
            ExponentialBackoff(base=-1)
