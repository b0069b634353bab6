"""Exceptions raised by the identifier workbench."""


class IdentifierError(Exception):
    """Base class for all errors raised by identifier."""

    pass


class ConfigError(IdentifierError):
    """Raised when the configuration cannot be loaded or is invalid."""

    pass


class WalkError(IdentifierError):
    """Raised when a directory walk fails (I/O error, permission denied)."""

    pass


class EngineError(IdentifierError):
    """Raised when the identification engine cannot process a file."""

    pass


class StoreError(IdentifierError):
    """Raised when the index store cannot complete an operation."""

    pass


class StoreOpenError(StoreError):
    """Raised when the index store cannot be opened."""

    pass


class StoreCorruptError(StoreError):
    """Raised when a stored value cannot be decoded."""

    pass


class ReadOnlyStoreError(StoreError):
    """Raised when a write is attempted on a read-only store."""

    pass


class AIServiceError(IdentifierError):
    """Raised when the AI description service fails."""

    pass


class OutputError(IdentifierError):
    """Raised when a report file cannot be created or written."""

    pass


class RoCrateError(IdentifierError):
    """Raised when RO-Crate metadata cannot be read or written."""

    pass
