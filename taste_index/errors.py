from __future__ import annotations


class TasteIndexError(RuntimeError):
    """Base class for all index errors."""


class ConfigError(TasteIndexError):
    """Raised when configuration is missing or invalid."""


class InvalidReference(TasteIndexError):
    """Raised when a content locator has an absent or malformed scheme or digest."""


class InvalidLike(TasteIndexError):
    """Raised for self-likes or malformed (post, liker) pairs."""


class InvalidFact(TasteIndexError):
    """Raised when a ledger record cannot be parsed into a known fact."""


class InvalidArgument(TasteIndexError, ValueError):
    """Raised for a malformed query or profile argument (address, category, limit, name)."""


class WriteConflict(TasteIndexError):
    """Raised when a write lost a race for the store's write lock. Retryable."""


class ExportError(TasteIndexError):
    """Raised when an index snapshot cannot be written to a workbook."""


class StoreUnavailable(TasteIndexError):
    """Raised when the SQLite index cannot be opened, read, or written."""


VALIDATION_ERRORS: tuple[type[TasteIndexError], ...] = (
    InvalidReference,
    InvalidLike,
    InvalidFact,
    InvalidArgument,
)


def user_facing_status(exc: BaseException) -> str:
    """
    Map an index-layer failure to the status shown to end users.

    Transient and store failures happen after the ledger confirmed the action, and
    replay will apply it later, so they read as "processing" rather than "failed".
    """
    if isinstance(exc, VALIDATION_ERRORS):
        return "rejected"
    if isinstance(exc, (WriteConflict, StoreUnavailable)):
        return "processing"
    return "failed"
