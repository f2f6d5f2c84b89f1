from enum import Enum
from typing import Tuple

from google.api_core import exceptions


class ConfigurationError(RuntimeError):
    """Missing or malformed settings. Fatal, never retried."""


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    UNEXPECTED = "UNEXPECTED"


PERMISSION_DENIED_MESSAGE = (
    "Permission denied. Ensure the service account has domain-wide delegation "
    "for the Admin SDK directory scopes."
)


def classify_directory_error(exc: Exception, subject: str, what: str) -> Tuple[ErrorKind, str]:
    """Map a failure of a whole resolution to an error kind and a user-facing message."""
    if isinstance(exc, exceptions.Forbidden):
        return ErrorKind.PERMISSION_DENIED, PERMISSION_DENIED_MESSAGE
    if isinstance(exc, exceptions.NotFound):
        return ErrorKind.NOT_FOUND, f"User or group not found for '{subject}'. Please check the email."
    return ErrorKind.UNEXPECTED, f"An unexpected error occurred while fetching {what}."
