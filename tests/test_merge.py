"""
Tests for the last-writer-wins merge in MonthFinance.core.merge.

Run:
    python -m unittest tests.test_merge
"""
import itertools

from MonthFinance.core.merge import MergeDecision, apply_incoming, merge
from MonthFinance.core.store import RecordStore
from MonthFinance.status import status
from tests.base import BaseTestCase, make_expense


class MergeTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = RecordStore(self.db)

    def test_no_local_copy_applies(self):
        self.assertEqual(merge(None, make_expense()), MergeDecision.Apply)

    def test_last_writer_wins_grid(self):
        for local_t, incoming_t in itertools.product((-1, 0, 1), repeat=2):
            with self.subTest(local=local_t, incoming=incoming_t):
                local = make_expense(updated=local_t, created=-5, vendor='local')
                incoming = make_expense(updated=incoming_t, created=-5, vendor='remote')
                expected = MergeDecision.Apply if incoming_t > local_t else MergeDecision.Ignore
                self.assertEqual(merge(local, incoming), expected)

    def test_apply_incoming_is_idempotent(self):
        incoming = make_expense(vendor='remote')

        self.assertEqual(apply_incoming(self.store, incoming), MergeDecision.Apply)
        snapshot = self.store.snapshot()
        self.assertEqual(apply_incoming(self.store, incoming), MergeDecision.Ignore)

        self.assertEqual(self.store.snapshot(), snapshot)
        self.assertEqual(len(self.store), 1)

    def test_older_incoming_is_ignored(self):
        self.store.upsert(make_expense(updated=10, vendor='local'))
        decision = apply_incoming(self.store, make_expense(updated=5, vendor='remote'))

        self.assertEqual(decision, MergeDecision.Ignore)
        self.assertEqual(self.store.find('E1').vendor, 'local')

    def test_tombstone_is_applied_as_upsert(self):
        self.store.upsert(make_expense(updated=0))
        apply_incoming(self.store, make_expense(updated=1, deleted=True))

        self.assertIn('E1', self.store)
        self.assertTrue(self.store.find('E1').deleted)
        self.assertEqual(self.store.list_active('2025-03'), [])

    def test_stale_copy_does_not_resurrect_tombstone(self):
        self.store.upsert(make_expense(updated=5, deleted=True))
        decision = apply_incoming(self.store, make_expense(updated=1, vendor='stale'))

        self.assertEqual(decision, MergeDecision.Ignore)
        self.assertTrue(self.store.find('E1').deleted)

    def test_newer_incoming_moves_partition(self):
        self.store.upsert(make_expense(updated=0))
        apply_incoming(self.store, make_expense(updated=1, month_key='2025-04', date='2025-04-01'))

        self.assertEqual(self.store.list_all('2025-03'), [])
        self.assertEqual(self.store.find('E1').month_key, '2025-04')

    def test_malformed_incoming_is_rejected(self):
        with self.assertRaises(status.RecordInvalidException):
            apply_incoming(self.store, make_expense(updated=0, created=10))
        self.assertEqual(len(self.store), 0)

    def test_malformed_local_copy_is_replaced(self):
        self.store.upsert(make_expense(updated_at='garbage'))
        decision = apply_incoming(self.store, make_expense(updated=0, vendor='remote'))

        self.assertEqual(decision, MergeDecision.Apply)
        self.assertEqual(self.store.find('E1').vendor, 'remote')
