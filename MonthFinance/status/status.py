"""Status definitions and exceptions for MonthFinance.

This module provides:
    - Status: enumeration of possible engine states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., GatewayUnavailableException) for error handling in the engine

Error classes map onto three kinds of failure. Transient remote failures
(:class:`GatewayUnavailableException`) are retried on the next tick and never
escape it. Local persistence failures (:class:`PersistenceException`) are fatal to
the operation that caused them. Malformed incoming records
(:class:`RecordInvalidException`) are skipped during merge.
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of engine status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Credentials status
    CredsNotFound = enum.auto()
    CredsInvalid = enum.auto()

    # Remote status
    GatewayNotConfigured = enum.auto()
    GatewayUnavailable = enum.auto()

    # Local state
    PersistenceFailed = enum.auto()
    RecordInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the sync settings.',
    Status.SettingsInvalid: 'The sync settings seem to be incomplete, or contain invalid values.',

    Status.CredsNotFound: 'Could not find the remote credentials. Have you set up a service account file?',
    Status.CredsInvalid: 'Could not verify the remote credentials.',

    Status.GatewayNotConfigured: 'The remote store is not configured. Changes are kept locally.',
    Status.GatewayUnavailable: 'The remote store is unavailable. Changes will be retried later.',

    Status.PersistenceFailed: 'Could not write to the local database. The change was not saved.',
    Status.RecordInvalid: 'Received a malformed record.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in MonthFinance.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class CredsNotFoundException(BaseStatusException):
    """Exception raised when the service account credentials file cannot be found."""
    status = Status.CredsNotFound


class CredsInvalidException(BaseStatusException):
    """Exception raised when the service account credentials cannot be loaded."""
    status = Status.CredsInvalid


class GatewayNotConfiguredException(BaseStatusException):
    """Exception raised when the remote gateway is missing required configuration."""
    status = Status.GatewayNotConfigured


class GatewayUnavailableException(BaseStatusException):
    """Exception raised when the remote store cannot be reached or rejects a request."""
    status = Status.GatewayUnavailable


class PersistenceException(BaseStatusException):
    """Exception raised when the local database cannot be read or written."""
    status = Status.PersistenceFailed


class RecordInvalidException(BaseStatusException):
    """Exception raised when a record is missing its id or timestamps."""
    status = Status.RecordInvalid
