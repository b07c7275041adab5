"""
Tests for MonthFinance.core.gateway.

The Sheets gateway runs against a small in-process stand-in for the
``spreadsheets().values()`` resource, so no network access is needed.

Run:
    python -m unittest tests.test_gateway
"""
import json
import pathlib
import re
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock, Mock, patch

from googleapiclient.errors import HttpError

from MonthFinance.core import gateway
from MonthFinance.core.gateway import REMOTE_COLUMNS, MemoryGateway, SheetsGateway
from MonthFinance.core.model import (
    EPOCH,
    Expense,
    OutboxOp,
    Provenance,
    ReceiptProvider,
    Source,
    is_newer,
)
from MonthFinance.core.outbox import Outbox
from MonthFinance.status import status
from tests.base import BaseTestCase, make_expense, make_row, ts


class FakeRequest:
    def __init__(self, sheet: 'FakeSheet', run: Callable[[], Dict[str, Any]]) -> None:
        self.sheet = sheet
        self.run = run

    def execute(self) -> Dict[str, Any]:
        if self.sheet.error is not None:
            raise self.sheet.error
        return self.run()


class FakeSheet:
    """Minimal stand-in for the Sheets ``values()`` resource of one worksheet."""

    def __init__(self, values: Optional[List[List[Any]]] = None) -> None:
        self.values: List[List[Any]] = values or []
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    @staticmethod
    def _row_number(range_: str) -> int:
        return int(re.search(r'!A(\d+)', range_).group(1))

    def get(self, spreadsheetId: str, range: str) -> FakeRequest:
        self.calls.append('get')
        return FakeRequest(self, lambda: {'values': [list(r) for r in self.values]} if self.values else {})

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]) -> FakeRequest:
        self.calls.append('update')

        def run():
            row_number = self._row_number(range)
            while len(self.values) < row_number:
                self.values.append([])
            self.values[row_number - 1] = [str(v) for v in body['values'][0]]
            return {}

        return FakeRequest(self, run)

    def append(self, spreadsheetId: str, range: str, valueInputOption: str, insertDataOption: str,
               body: Dict[str, Any]) -> FakeRequest:
        self.calls.append('append')

        def run():
            self.values.append([str(v) for v in body['values'][0]])
            return {}

        return FakeRequest(self, run)


def make_service(sheet: FakeSheet) -> MagicMock:
    service = MagicMock()
    service.spreadsheets.return_value.values.return_value = sheet
    return service


class MemoryGatewayTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.gateway = MemoryGateway()

    def test_upsert_and_delete(self):
        self.assertTrue(self.gateway.send(OutboxOp.upsert(make_expense('A'))))
        self.assertTrue(self.gateway.send(OutboxOp.delete('2025-03', 'A')))

        row = self.gateway.rows['A']
        self.assertTrue(row['deleted'])
        self.assertTrue(is_newer(row['updated_at'], ts(0)))
        self.assertEqual(len(self.gateway.sent), 2)

    def test_offline_and_rejected(self):
        self.gateway.online = False
        with self.assertRaises(status.GatewayUnavailableException):
            self.gateway.send(OutboxOp.upsert(make_expense('A')))
        with self.assertRaises(status.GatewayUnavailableException):
            self.gateway.pull_since(EPOCH, 10)

        self.gateway.online = True
        self.gateway.rejected_ids.add('A')
        self.assertFalse(self.gateway.send(OutboxOp.upsert(make_expense('A'))))
        self.assertEqual(self.gateway.rows, {})

    def test_pull_since_is_strict_ordered_and_capped(self):
        for i, offset in enumerate((3, 1, 2, 0)):
            self.gateway.put(make_row(f'R{i}', offset))
        self.gateway.put(make_row('BAD', 0, updated_at='not a time'))

        rows = self.gateway.pull_since(ts(0), 2)
        self.assertEqual([r['id'] for r in rows], ['R1', 'R2'])

        rows = self.gateway.pull_since(ts(2), 10)
        self.assertEqual([r['id'] for r in rows], ['R0'])

    def test_pulled_rows_are_copies(self):
        self.gateway.put(make_row('A', 1))
        self.gateway.pull_since(EPOCH, 10)[0]['vendor'] = 'mutated'
        self.assertEqual(self.gateway.rows['A']['vendor'], 'Figma')


class SheetsGatewayTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.sheet = FakeSheet()
        self.gateway = SheetsGateway(make_service(self.sheet), 'spreadsheet-id', 'expenses')

    def test_requires_configuration(self):
        with self.assertRaises(status.GatewayNotConfiguredException):
            SheetsGateway(MagicMock(), '', 'expenses')
        with self.assertRaises(status.GatewayNotConfiguredException):
            SheetsGateway(MagicMock(), 'spreadsheet-id', '')

    def test_upsert_writes_header_then_appends(self):
        self.gateway.upsert(make_expense('A'))

        self.assertEqual(self.sheet.values[0], REMOTE_COLUMNS)
        self.assertEqual(len(self.sheet.values), 2)
        self.assertEqual(self.sheet.values[1][0], 'A')
        self.assertEqual(self.sheet.values[1][REMOTE_COLUMNS.index('deleted')], 'FALSE')

    def test_upsert_updates_existing_row(self):
        self.gateway.upsert(make_expense('A'))
        self.gateway.upsert(make_expense('B'))
        self.gateway.upsert(make_expense('A', updated=5, vendor='Sketch'))

        self.assertEqual(len(self.sheet.values), 3)
        self.assertEqual(self.sheet.values[1][REMOTE_COLUMNS.index('vendor')], 'Sketch')

    def test_delete_marks_tombstone(self):
        self.gateway.upsert(make_expense('A'))
        self.gateway.send(OutboxOp.delete('2025-03', 'A'))

        row = self.gateway.pull_since(EPOCH, 10)[0]
        self.assertTrue(row['deleted'])
        self.assertTrue(is_newer(row['updated_at'], ts(0)))

        self.gateway.delete('2025-03', 'unknown')
        self.assertEqual(len(self.sheet.values), 2)

    def test_pulled_rows_are_valid_records(self):
        receipt = Provenance(ReceiptProvider.Gmail, 'msg-1', 'Invoice', 'a@b.c', ts(0))
        original = make_expense('A', updated=1, receipt=receipt, source=Source.Email, notes='Invoice')
        self.gateway.upsert(original)
        self.gateway.upsert(make_expense('B', updated=2))

        rows = self.gateway.pull_since(ts(0), 10)
        self.assertEqual([r['id'] for r in rows], ['A', 'B'])
        self.assertEqual(Expense.from_dict(rows[0]), original)

        self.assertEqual(self.gateway.pull_since(ts(2), 10), [])

    def test_short_rows_are_padded(self):
        self.sheet.values = [list(REMOTE_COLUMNS), ['A', '2025-03']]
        rows = self.gateway.pull_since(EPOCH, 10)
        self.assertEqual(rows, [], 'A row without updated_at is never newer than the cursor')

    def test_header_mismatch(self):
        self.sheet.values = [['Date', 'Amount']]
        with self.assertRaises(status.GatewayNotConfiguredException):
            self.gateway.upsert(make_expense('A'))

    def test_http_errors_become_unavailable(self):
        self.sheet.error = HttpError(Mock(status=503, reason='Service Unavailable'), b'')
        with self.assertRaises(status.GatewayUnavailableException):
            self.gateway.pull_since(EPOCH, 10)

        self.sheet.error = TimeoutError('timed out')
        with self.assertRaises(status.GatewayUnavailableException):
            self.gateway.upsert(make_expense('A'))

    def test_outbox_keeps_ops_while_sheet_is_down(self):
        outbox = Outbox(self.db)
        outbox.enqueue_upsert(make_expense('A'))

        self.sheet.error = OSError('network unreachable')
        result = outbox.drain(self.gateway.send)
        self.assertEqual((result.flushed, result.remaining), (0, 1))

        self.sheet.error = None
        result = outbox.drain(self.gateway.send)
        self.assertEqual((result.flushed, result.remaining), (1, 0))
        self.assertEqual(self.sheet.values[1][0], 'A')


class ServiceTests(BaseTestCase):
    def test_load_credentials_missing(self):
        with self.assertRaises(status.CredsNotFoundException):
            gateway.load_credentials(self.tmp_dir + '/missing.json')

    def test_load_credentials_invalid(self):
        path = pathlib.Path(self.tmp_dir) / 'service_account.json'
        path.write_text(json.dumps({'type': 'service_account'}), encoding='utf-8')
        with self.assertRaises(status.CredsInvalidException):
            gateway.load_credentials(path)

        path.write_text('{not json', encoding='utf-8')
        with self.assertRaises(status.CredsInvalidException):
            gateway.load_credentials(path)

    def test_service_is_cached(self):
        service = MagicMock()
        with patch.object(gateway, 'build', return_value=service) as build:
            self.assertIs(gateway.get_service('creds'), service)
            self.assertIs(gateway.get_service('creds'), service)
            build.assert_called_once_with('sheets', 'v4', credentials='creds', cache_discovery=False)

        gateway.clear_service()
        service.close.assert_called_once()

    def test_service_build_failure(self):
        with patch.object(gateway, 'build', side_effect=RuntimeError('discovery failed')):
            with self.assertRaises(status.GatewayUnavailableException):
                gateway.get_service('creds')
