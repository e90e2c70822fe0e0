"""Exceptions raised by the page storage layer and id decoding."""

from typing import Optional


class PageStorageError(Exception):
    """Structured error for page file operations."""

    code = "IO_ERROR"

    def __init__(self, message: str, path: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.path = path
        if code is not None:
            self.code = code


class InvalidPathError(PageStorageError):
    """Path is empty, absolute, or escapes the pages directory."""

    code = "INVALID_PATH"


class PageNotFoundError(PageStorageError):
    code = "NOT_FOUND"


class InvalidChangeSetIdError(ValueError):
    """Change set id does not decode to a (session, run) pair."""
