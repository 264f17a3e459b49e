"""Remote calendar client, credentials and error taxonomy."""

from .base import (
    BaseCalendarClient, CalendarServiceError, AuthenticationError, RateLimitError,
    CalendarNotFoundError, RemoteTimeoutError, SyncTokenInvalidError,
    HearthsyncError, ConfigurationError, JobTimeoutError,
)
from .google import GoogleCalendarClient, GoogleClientFactory
from .tokens import CredentialProvider, DatabaseCredentialProvider

__all__ = [
    'BaseCalendarClient',
    'CalendarServiceError',
    'AuthenticationError',
    'RateLimitError',
    'CalendarNotFoundError',
    'RemoteTimeoutError',
    'SyncTokenInvalidError',
    'HearthsyncError',
    'ConfigurationError',
    'JobTimeoutError',
    'GoogleCalendarClient',
    'GoogleClientFactory',
    'CredentialProvider',
    'DatabaseCredentialProvider',
]
