"""Last-writer-wins conflict resolution.

Every incoming write, local or remote, goes through :func:`apply_incoming`. The
decision compares the writer-supplied ``updated_at`` timestamps only: an
incoming record replaces the local copy when it is strictly newer, and the local
copy wins ties.

The timestamps come from the clients' wall clocks, so a device with a fast clock
can win over a genuinely newer edit from a device with a slow one.
"""
import enum
import logging
from typing import Optional

from .model import Expense, is_newer
from ..status import status


class MergeDecision(enum.StrEnum):
    Apply = 'apply'
    Ignore = 'ignore'


def merge(local: Optional[Expense], incoming: Expense) -> MergeDecision:
    """Decide whether ``incoming`` should replace ``local``.

    Args:
        local: The local copy with the same id, or None.
        incoming: The incoming record.

    Returns:
        MergeDecision: ``Apply`` if there is no local copy or the incoming record is
        strictly newer, ``Ignore`` otherwise.
    """
    if local is None:
        return MergeDecision.Apply
    if is_newer(incoming.updated_at, local.updated_at):
        return MergeDecision.Apply
    return MergeDecision.Ignore


def apply_incoming(store, incoming: Expense) -> MergeDecision:
    """Merge ``incoming`` into ``store``.

    Tombstones are applied as upserts carrying ``deleted=True``, never as
    structural deletes. Applying the same record twice leaves the store as
    applying it once.

    Args:
        store: The :class:`~MonthFinance.core.store.RecordStore` to merge into.
        incoming: The incoming record.

    Returns:
        MergeDecision: What was done with the record.

    Raises:
        status.RecordInvalidException: If the incoming record is malformed.
        status.PersistenceException: If the store cannot persist the change.
    """
    incoming.validate()

    local = store.find(incoming.id)
    if local is not None:
        try:
            local.validate()
        except status.RecordInvalidException:
            logging.warning(f'Local copy of "{incoming.id}" is malformed; replacing it with the incoming record.')
            local = None

    decision = merge(local, incoming)
    if decision == MergeDecision.Apply:
        store.upsert(incoming)
    else:
        logging.debug(
            f'Ignoring incoming "{incoming.id}" ({incoming.updated_at}): '
            f'local copy is newer or equal ({local.updated_at}).'
        )
    return decision
