"""Record model for expenses, outbox operations and receipt candidates.

Timestamps are stored as ISO-8601 strings (the wire format of the remote store)
and compared as parsed, timezone-aware instants. Amounts are kept as
:class:`decimal.Decimal` and serialised as strings.
"""
import copy
import dataclasses
import datetime
import decimal
import enum
import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from ..status import status

EPOCH: str = '1970-01-01T00:00:00+00:00'
DEFAULT_CURRENCY: str = 'USD'
MONTH_KEY_FORMAT: str = '%Y-%m'
DATE_FORMAT: str = '%Y-%m-%d'

#: Expense fields that must hold a non-blank value
REQUIRED_FIELDS = ('id', 'month_key', 'date', 'vendor', 'created_at', 'updated_at')


class Category(enum.StrEnum):
    """Expense categories."""
    Subscriptions = 'SUBSCRIPTIONS'
    Ads = 'ADS'
    Salaries = 'SALARIES'
    Tools = 'TOOLS'
    Travel = 'TRAVEL'
    Office = 'OFFICE'
    Other = 'OTHER'


class Source(enum.StrEnum):
    """Where an expense was authored."""
    Manual = 'MANUAL'
    Email = 'EMAIL'


class ReceiptProvider(enum.StrEnum):
    Gmail = 'GMAIL'
    Zoho = 'ZOHO'


class CandidateStatus(enum.StrEnum):
    New = 'new'
    Imported = 'imported'
    Ignored = 'ignored'


class OpKind(enum.StrEnum):
    """Kinds of outbox operations."""
    Upsert = 'upsert_expense'
    Delete = 'delete_expense'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def today_iso() -> str:
    """Return today's local date as ``YYYY-MM-DD``."""
    return datetime.date.today().strftime(DATE_FORMAT)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> datetime.datetime:
    """Parse an ISO 8601 timestamp into a timezone-aware datetime.

    Naive values are treated as UTC.

    Args:
        value: An ISO string or a datetime.

    Returns:
        datetime.datetime: The parsed, timezone-aware timestamp.

    Raises:
        ValueError: If the value is empty or cannot be parsed.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        if not value:
            raise ValueError('Timestamp is empty.')
        dt = datetime.datetime.fromisoformat(str(value).strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def is_newer(a: str, b: str) -> bool:
    """Return True if timestamp ``a`` is strictly later than timestamp ``b``."""
    return parse_timestamp(a) > parse_timestamp(b)


def month_key_from_date(value: Union[str, datetime.date, None] = None) -> str:
    """Return the ``YYYY-MM`` partition key for a date.

    Args:
        value: A date, datetime or ISO date string. Defaults to today.

    Returns:
        str: The month key.
    """
    if value is None:
        value = datetime.date.today()
    if isinstance(value, str):
        value = datetime.date.fromisoformat(value[:10])
    return value.strftime(MONTH_KEY_FORMAT)


def to_decimal(value: Any) -> decimal.Decimal:
    if isinstance(value, decimal.Decimal):
        return value
    if isinstance(value, float):
        # Go through str so 10.1 stays 10.1
        return decimal.Decimal(str(value))
    try:
        return decimal.Decimal(str(value).strip())
    except (decimal.InvalidOperation, ValueError) as ex:
        raise ValueError(f'Invalid amount "{value}"') from ex


@dataclasses.dataclass
class Provenance:
    """Where an email-sourced expense came from."""
    provider: ReceiptProvider
    message_id: Optional[str] = None
    subject: Optional[str] = None
    from_address: Optional[str] = None
    received_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider.value,
            'messageId': self.message_id,
            'subject': self.subject,
            'from': self.from_address,
            'receivedAt': self.received_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Provenance':
        return cls(
            provider=ReceiptProvider(data['provider']),
            message_id=data.get('messageId'),
            subject=data.get('subject'),
            from_address=data.get('from'),
            received_at=data.get('receivedAt'),
        )


@dataclasses.dataclass
class Expense:
    """A single expense record.

    ``id`` is stable for the lifetime of the record. A deletion is recorded as a
    tombstone (``deleted=True``) so it can outrank stale remote copies.
    """
    id: str
    month_key: str
    date: str
    vendor: str
    amount: decimal.Decimal
    category: Category
    source: Source
    created_at: str
    updated_at: str
    currency: str = DEFAULT_CURRENCY
    deleted: bool = False
    notes: Optional[str] = None
    receipt: Optional[Provenance] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.category = Category(self.category)
        self.source = Source(self.source)

    def validate(self) -> None:
        """Check the fields the merge depends on.

        Raises:
            status.RecordInvalidException: If the id or a timestamp is missing or unparsable,
                or ``updated_at`` is earlier than ``created_at``.
        """
        if not self.id:
            raise status.RecordInvalidException('Record has no id.')
        if not self.month_key:
            raise status.RecordInvalidException(f'Record "{self.id}" has no month key.')
        if not self.date or not self.vendor:
            raise status.RecordInvalidException(f'Record "{self.id}" has no date or vendor.')
        try:
            created = parse_timestamp(self.created_at)
            updated = parse_timestamp(self.updated_at)
        except (TypeError, ValueError) as ex:
            raise status.RecordInvalidException(f'Record "{self.id}" has an invalid timestamp: {ex}') from ex
        if updated < created:
            raise status.RecordInvalidException(
                f'Record "{self.id}" was updated ({self.updated_at}) before it was created ({self.created_at}).'
            )

    def touched(self, **changes: Any) -> 'Expense':
        """Return a copy with ``changes`` applied and a fresh ``updated_at``.

        The new timestamp never precedes the previous one, even if the wall
        clock went backwards.
        """
        stamp = parse_timestamp(now_str())
        previous = parse_timestamp(self.updated_at)
        if stamp <= previous:
            stamp = previous + datetime.timedelta(milliseconds=1)
        changes['updated_at'] = stamp.isoformat()
        return dataclasses.replace(copy.deepcopy(self), **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise using the remote store's column names."""
        return {
            'id': self.id,
            'month_key': self.month_key,
            'date': self.date,
            'vendor': self.vendor,
            'amount': str(self.amount),
            'currency': self.currency,
            'category': self.category.value,
            'source': self.source.value,
            'deleted': self.deleted,
            'notes': self.notes,
            'receipt': self.receipt.to_dict() if self.receipt else None,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> 'Expense':
        """Build an expense from a stored or remote row.

        Raises:
            status.RecordInvalidException: If required fields are missing, blank or malformed.
        """
        missing = [f for f in REQUIRED_FIELDS if row.get(f) is None or str(row[f]).strip() == '']
        if missing:
            raise status.RecordInvalidException(
                f'Malformed record {row.get("id")!r}: missing {", ".join(missing)}'
            )
        try:
            receipt = row.get('receipt')
            return cls(
                id=str(row['id']),
                month_key=str(row['month_key']),
                date=str(row['date']),
                vendor=str(row['vendor']),
                amount=row['amount'],
                currency=str(row.get('currency') or DEFAULT_CURRENCY),
                category=row['category'],
                source=row['source'],
                deleted=bool(row.get('deleted') or False),
                notes=row.get('notes') or None,
                receipt=Provenance.from_dict(receipt) if receipt else None,
                created_at=str(row['created_at']),
                updated_at=str(row['updated_at']),
            )
        except (KeyError, ValueError, TypeError) as ex:
            raise status.RecordInvalidException(f'Malformed record {row.get("id", "<no id>")!r}: {ex}') from ex


@dataclasses.dataclass
class MonthData:
    """Derived per-month index of expenses."""
    month_key: str
    expenses: List[Expense] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class OutboxOp:
    """A not-yet-acknowledged local mutation.

    Upserts carry the full :class:`Expense`; deletes carry the record id and
    month key only.
    """
    op_id: str
    enqueued_at: str
    kind: OpKind
    payload: Union[Expense, Dict[str, str]]
    attempts: int = 0
    last_attempt_at: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def upsert(cls, expense: Expense) -> 'OutboxOp':
        return cls(new_id(), now_str(), OpKind.Upsert, copy.deepcopy(expense))

    @classmethod
    def delete(cls, month_key: str, expense_id: str) -> 'OutboxOp':
        return cls(new_id(), now_str(), OpKind.Delete, {'expense_id': expense_id, 'month_key': month_key})

    @property
    def record_id(self) -> str:
        if self.kind == OpKind.Upsert:
            return self.payload.id
        return self.payload['expense_id']

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload.to_dict() if self.kind == OpKind.Upsert else dict(self.payload)
        return {
            'op_id': self.op_id,
            'enqueued_at': self.enqueued_at,
            'kind': self.kind.value,
            'payload': payload,
            'attempts': self.attempts,
            'last_attempt_at': self.last_attempt_at,
            'last_error': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxOp':
        kind = OpKind(data['kind'])
        if kind == OpKind.Upsert:
            payload = Expense.from_dict(data['payload'])
        else:
            payload = {
                'expense_id': str(data['payload']['expense_id']),
                'month_key': str(data['payload']['month_key']),
            }
        return cls(
            op_id=data['op_id'],
            enqueued_at=data['enqueued_at'],
            kind=kind,
            payload=payload,
            attempts=int(data.get('attempts', 0)),
            last_attempt_at=data.get('last_attempt_at'),
            last_error=data.get('last_error'),
        )


@dataclasses.dataclass
class ReceiptCandidate:
    """A receipt found in a mailbox, waiting to be imported as an expense."""
    id: str
    month_key: str
    provider: ReceiptProvider
    message_id: str
    vendor: str
    amount: decimal.Decimal
    date: str
    currency: str = DEFAULT_CURRENCY
    subject: Optional[str] = None
    from_address: Optional[str] = None
    status: CandidateStatus = CandidateStatus.New

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.provider = ReceiptProvider(self.provider)
        self.status = CandidateStatus(self.status)

    def to_expense(self, category: Category = Category.Subscriptions) -> Expense:
        """Build a new email-sourced expense carrying this candidate's provenance."""
        now = now_str()
        date = self.date or today_iso()
        logging.debug(f'Converting receipt candidate "{self.id}" ({self.provider}) into an expense.')
        return Expense(
            id=new_id(),
            month_key=self.month_key,
            date=date,
            vendor=self.vendor,
            amount=self.amount,
            currency=self.currency,
            category=category,
            source=Source.Email,
            notes=self.subject or '',
            receipt=Provenance(
                provider=self.provider,
                message_id=self.message_id,
                subject=self.subject,
                from_address=self.from_address,
                received_at=self.date,
            ),
            created_at=now,
            updated_at=now,
        )
