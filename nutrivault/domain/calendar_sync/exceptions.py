"""Calendar sync exceptions"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar provider failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CalendarAuthError(CalendarSyncError):
    """Credentials missing, revoked or rejected. The account must reconnect."""


class CalendarAccessError(CalendarSyncError):
    """The selected calendar does not exist or is not shared with the account"""


class EventNotFoundError(CalendarSyncError):
    """The remote event is gone (404 / 410)"""


class TransientProviderError(CalendarSyncError):
    """Timeouts, network errors, rate limiting and 5xx responses"""


class ProviderError(CalendarSyncError):
    """Any other unexpected provider response"""


# Failures that end the whole account run instead of a single visit
ACCOUNT_LEVEL_ERRORS = (CalendarAuthError, CalendarAccessError)
