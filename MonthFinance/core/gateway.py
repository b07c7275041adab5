"""Remote gateways: the shared store that local expenses converge with.

A gateway accepts outbox operations (:meth:`RemoteGateway.send`) and returns
remote rows changed after a cursor (:meth:`RemoteGateway.pull_since`). Both
must be idempotent per record id. Unreachable remotes report failure by raising
:class:`status.GatewayUnavailableException` or by returning False from ``send``.

Two implementations are provided:

- :class:`MemoryGateway` – an in-process table with an online switch, for offline use and tests.
- :class:`SheetsGateway` – a Google Sheets worksheet holding one row per expense id.
"""
import copy
import json
import logging
import pathlib
import socket
import ssl
from typing import Any, Dict, List, Optional, Set

import google.auth.exceptions
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .model import Expense, OpKind, OutboxOp, now_str, parse_timestamp
from ..status import status

DEFAULT_SCOPES = ['https://www.googleapis.com/auth/spreadsheets', ]

#: Column order of the remote worksheet
REMOTE_COLUMNS: List[str] = [
    'id', 'month_key', 'date', 'vendor', 'amount', 'currency', 'category', 'source',
    'deleted', 'notes', 'receipt', 'created_at', 'updated_at',
]

# Cached Sheets API client to avoid repeated discovery/auth costs
_cached_service: Any = None


def _after(row: Dict[str, Any], cursor: str) -> bool:
    try:
        return parse_timestamp(row.get('updated_at')) > parse_timestamp(cursor)
    except (TypeError, ValueError):
        logging.warning(f'Remote row {row.get("id")!r} has no valid updated_at and is skipped.')
        return False


def _page(rows: List[Dict[str, Any]], cursor: str, limit: int) -> List[Dict[str, Any]]:
    """Keep rows changed strictly after ``cursor``, oldest first, at most ``limit`` of them."""
    changed = [r for r in rows if _after(r, cursor)]
    changed.sort(key=lambda r: parse_timestamp(r['updated_at']))
    return changed[:limit]


class RemoteGateway:
    """Interface of the remote store consumed by the reconciler."""

    def send(self, op: OutboxOp) -> bool:
        """Transmit one outbox operation.

        Returns:
            bool: True once the remote store acknowledged the operation.

        Raises:
            status.GatewayUnavailableException: If the remote store cannot be reached.
        """
        if op.kind == OpKind.Upsert:
            self.upsert(op.payload)
        elif op.kind == OpKind.Delete:
            self.delete(op.payload['month_key'], op.payload['expense_id'])
        else:
            raise ValueError(f'Unknown operation kind "{op.kind}"')
        return True

    def upsert(self, expense: Expense) -> None:
        raise NotImplementedError

    def delete(self, month_key: str, expense_id: str) -> None:
        raise NotImplementedError

    def pull_since(self, cursor: str, limit: int) -> List[Dict[str, Any]]:
        """Return remote rows with ``updated_at`` strictly after ``cursor``.

        Rows are ordered by ascending ``updated_at`` and capped at ``limit``.
        They are returned in wire form; callers validate them when merging.
        """
        raise NotImplementedError


class MemoryGateway(RemoteGateway):
    """In-process remote table keyed by expense id.

    Attributes:
        online: When False every call raises :class:`status.GatewayUnavailableException`.
        rejected_ids: Record ids whose operations are always refused.
    """

    def __init__(self) -> None:
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.online: bool = True
        self.rejected_ids: Set[str] = set()
        self.sent: List[OutboxOp] = []

    def _check_online(self) -> None:
        if not self.online:
            raise status.GatewayUnavailableException('Remote store is offline.')

    def send(self, op: OutboxOp) -> bool:
        self._check_online()
        if op.record_id in self.rejected_ids:
            logging.debug(f'Remote store refused {op.kind} for "{op.record_id}".')
            return False
        super().send(op)
        self.sent.append(op)
        return True

    def upsert(self, expense: Expense) -> None:
        self.rows[expense.id] = expense.to_dict()

    def delete(self, month_key: str, expense_id: str) -> None:
        row = self.rows.get(expense_id)
        if row is None:
            return
        row['deleted'] = True
        row['updated_at'] = now_str()

    def put(self, row: Dict[str, Any]) -> None:
        """Write a row directly, as another client would."""
        self.rows[str(row.get('id'))] = copy.deepcopy(row)

    def pull_since(self, cursor: str, limit: int) -> List[Dict[str, Any]]:
        self._check_online()
        return copy.deepcopy(_page(list(self.rows.values()), cursor, limit))


def clear_service() -> None:
    """
    Clears the cached Sheets API client.
    """
    global _cached_service

    try:
        if _cached_service:
            _cached_service.close()
    except Exception as ex:
        logging.debug(f'Failed closing cached Sheets service client: {ex}')

    _cached_service = None


def load_credentials(path: pathlib.Path) -> service_account.Credentials:
    """Load service account credentials for the Sheets API.

    Raises:
        status.CredsNotFoundException: If the file does not exist.
        status.CredsInvalidException: If the file cannot be parsed.
    """
    path = pathlib.Path(path)
    if not path.exists():
        raise status.CredsNotFoundException(f'{path} does not exist.')
    try:
        return service_account.Credentials.from_service_account_file(str(path), scopes=DEFAULT_SCOPES)
    except (ValueError, json.JSONDecodeError, google.auth.exceptions.GoogleAuthError) as ex:
        raise status.CredsInvalidException(f'{path}: {ex}') from ex


def get_service(credentials: Any) -> Any:
    """
    Builds (or returns cached) Google Sheets service client.

    Returns:
        The Sheets API Resource, reusing a single client per process.
    """
    global _cached_service
    if _cached_service is not None:
        return _cached_service
    try:
        service: Any = build('sheets', 'v4', credentials=credentials, cache_discovery=False)
        logging.debug('Google Sheets service client created successfully.')
        _cached_service = service
        return service
    except Exception as ex:
        raise status.GatewayUnavailableException(f'Could not build the Sheets client: {ex}') from ex


def _to_cell(column: str, value: Any) -> Any:
    if value is None:
        return ''
    if column == 'receipt':
        return json.dumps(value, ensure_ascii=False)
    if column == 'deleted':
        return 'TRUE' if value else 'FALSE'
    return value


def _from_cell(column: str, value: Any) -> Any:
    if value in ('', None):
        return None
    if column == 'receipt':
        try:
            return json.loads(value)
        except (TypeError, json.JSONDecodeError):
            logging.debug(f'Ignoring unreadable receipt cell: {value!r}')
            return None
    if column == 'deleted':
        return str(value).strip().upper() in ('TRUE', '1', 'YES')
    return value


class SheetsGateway(RemoteGateway):
    """Remote store kept in a Google Sheets worksheet.

    The first row holds :data:`REMOTE_COLUMNS`; each following row is one
    expense, located by its ``id`` cell. Upserts overwrite the row with the same
    id or append a new one. Deletes mark the row as a tombstone.

    Args:
        service: Authorized Sheets API resource.
        spreadsheet_id: Target spreadsheet.
        worksheet: Target worksheet title.
    """

    def __init__(self, service: Any, spreadsheet_id: str, worksheet: str) -> None:
        if not spreadsheet_id:
            raise status.GatewayNotConfiguredException('No spreadsheet id configured.')
        if not worksheet:
            raise status.GatewayNotConfiguredException('No worksheet configured.')
        self.service = service
        self.spreadsheet_id = spreadsheet_id
        self.worksheet = worksheet

    @property
    def _last_column(self) -> str:
        return chr(ord('A') + len(REMOTE_COLUMNS) - 1)

    def _execute(self, request: Any, what: str) -> Dict[str, Any]:
        """Run a Sheets API request, converting transport errors to gateway errors."""
        try:
            return request.execute() or {}
        except HttpError as ex:
            code = getattr(ex.resp, 'status', 'Unknown')
            raise status.GatewayUnavailableException(f'{what} failed (HTTP {code}): {ex}') from ex
        except socket.timeout as ex:
            raise status.GatewayUnavailableException(f'Timeout during {what}: {ex}') from ex
        except ssl.SSLError as ex:
            raise status.GatewayUnavailableException(f'SSL error during {what}: {ex}') from ex
        except (OSError, google.auth.exceptions.TransportError) as ex:
            raise status.GatewayUnavailableException(f'{what} failed: {ex}') from ex

    def _values(self) -> List[List[Any]]:
        result = self._execute(
            self.service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A1:{self._last_column}',
            ),
            'reading the worksheet',
        )
        return result.get('values', [])

    def _ensure_header(self, values: List[List[Any]]) -> None:
        if values:
            header = [str(h).strip() for h in values[0]]
            if header[:len(REMOTE_COLUMNS)] != REMOTE_COLUMNS:
                raise status.GatewayNotConfiguredException(
                    f'Worksheet "{self.worksheet}" header {header} does not match {REMOTE_COLUMNS}.'
                )
            return
        logging.info(f'Writing header row to empty worksheet "{self.worksheet}".')
        self._execute(
            self.service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A1',
                valueInputOption='RAW',
                body={'values': [REMOTE_COLUMNS]},
            ),
            'writing the header row',
        )

    def _rows(self, values: List[List[Any]]) -> List[Dict[str, Any]]:
        rows = []
        for raw in values[1:]:
            padded = list(raw) + [''] * (len(REMOTE_COLUMNS) - len(raw))
            rows.append({col: _from_cell(col, padded[i]) for i, col in enumerate(REMOTE_COLUMNS)})
        return rows

    def _find_row_number(self, values: List[List[Any]], expense_id: str) -> Optional[int]:
        """Return the 1-based sheet row holding ``expense_id``."""
        for idx, raw in enumerate(values[1:], start=2):
            if raw and str(raw[0]) == expense_id:
                return idx
        return None

    def _write_row(self, row_number: int, row: Dict[str, Any]) -> None:
        self._execute(
            self.service.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A{row_number}:{self._last_column}{row_number}',
                valueInputOption='RAW',
                body={'values': [[_to_cell(col, row.get(col)) for col in REMOTE_COLUMNS]]},
            ),
            f'updating row {row_number}',
        )

    def upsert(self, expense: Expense) -> None:
        values = self._values()
        self._ensure_header(values)
        row = expense.to_dict()
        row_number = self._find_row_number(values, expense.id)
        if row_number is not None:
            self._write_row(row_number, row)
            logging.debug(f'Updated remote row {row_number} for "{expense.id}".')
            return

        self._execute(
            self.service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=f'{self.worksheet}!A1',
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': [[_to_cell(col, row.get(col)) for col in REMOTE_COLUMNS]]},
            ),
            f'appending "{expense.id}"',
        )
        logging.debug(f'Appended remote row for "{expense.id}".')

    def delete(self, month_key: str, expense_id: str) -> None:
        values = self._values()
        row_number = self._find_row_number(values, expense_id)
        if row_number is None:
            logging.debug(f'Remote delete for unknown "{expense_id}" ignored.')
            return
        row = self._rows([values[0], values[row_number - 1]])[0]
        row['deleted'] = True
        row['updated_at'] = now_str()
        self._write_row(row_number, row)

    def pull_since(self, cursor: str, limit: int) -> List[Dict[str, Any]]:
        values = self._values()
        if not values:
            return []
        return _page(self._rows(values), cursor, limit)
