from typing import Dict, Optional


class StoreError(Exception):
    """Base class for every failure raised by the store's collaborators."""

    def __init__(self, message: str = "Something went wrong"):
        self.message = message
        super().__init__(message)


class DataServiceError(StoreError):
    """A query or write against the data service failed.

    Not-found, permission and network problems are deliberately not told
    apart; callers surface one generic message.
    """


class StorageError(StoreError):
    pass


class AuthError(StoreError):
    pass


class ValidationFailed(StoreError):
    def __init__(self, errors: Dict[str, str], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message or "Validation failed")

    @property
    def first_field(self) -> Optional[str]:
        return next(iter(self.errors), None)
