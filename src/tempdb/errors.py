"""Exceptions raised by tempdb."""

from __future__ import annotations


class TempDBError(Exception):
    """Base class for every error raised by tempdb."""


class ConfigurationError(TempDBError):
    """Raised for settings that can never work, so retrying is pointless."""


class UnsupportedBackendError(ConfigurationError):
    """Raised when no backend exists for a URL scheme."""


class NotCreatedError(ConfigurationError):
    """Raised when a handle is used before its database was created."""


class CreateDatabaseError(TempDBError):
    """Raised when every attempt to create a uniquely named database failed."""

    def __init__(self, name: str | None, cause: BaseException | None) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Could not create unique database: '{name}'. {cause or ''}".rstrip())


class DropError(TempDBError):
    """Raised when a temporary database could not be removed."""

    def __init__(self, name: str, cause: BaseException | None) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"Unable to drop {name}: {cause}")


class SqlFileError(TempDBError):
    """Raised when an SQL file cannot be read."""

    def __init__(self, path: str, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Can't read SQL file {path}: {cause}")
