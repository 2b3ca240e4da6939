"""Exceptions raised by the key store and lifecycle manager."""

from __future__ import annotations


class KeyStoreError(Exception):
    """Raised when a persistence operation fails (connectivity, SQL, disk).

    HTTP mapping: 500 with a generic body — ``operation`` and the underlying
    error are logged server-side only.
    """

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        message = f"Key store operation '{operation}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class KeyNotFoundError(Exception):
    """Raised when an operation references a key id that does not exist.

    HTTP mapping: 404 Not Found
    """

    def __init__(self, key_id: str) -> None:
        super().__init__(f"API key '{key_id}' not found")
        self.key_id = key_id
