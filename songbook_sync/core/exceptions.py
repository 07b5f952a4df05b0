"""
Exception classes for songbook-sync.

This module defines all custom exceptions used throughout the engine.
Each exception carries a human-readable message plus an optional details
dictionary, so that tier boundaries can log rich context before demoting
a failure into "try the next source".

Exception Hierarchy:
    SongbookSyncError (base)
        ConfigError - Configuration file issues
        StoreError - Durable on-device store issues
        RemoteError - Remote document store unreachable, slow or failing
        ParseError - A single malformed song or collection record
        CacheCorruptionError - An unreadable or empty cache entry
        MigrationError - A cache migration step failed

Propagation:
    Only ConfigError is meant to reach the user. Every other exception is
    raised by an inner layer and absorbed at the tier boundary where it
    occurs (probe, resolver, cache, orchestrator), so the public read API
    always returns a usable value.
"""


class SongbookSyncError(Exception):
    """
    Base exception for all songbook-sync errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context
                 (e.g., collection id, remote path, timeout).

    Example:
        try:
            await remote.get("songs", timeout=10)
        except SongbookSyncError as e:
            logger.warning(f"Remote read failed: {e.message}")
            logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary containing additional context.
                     Common keys include:
                     - 'path': Remote path involved in the error
                     - 'collection_id': Collection being read or cached
                     - 'original_error': The underlying exception text
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(SongbookSyncError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - An explicitly given songbook.yaml does not exist
        - Invalid YAML syntax
        - Invalid field values (e.g., negative TTL, unknown role)
    """
    pass


class StoreError(SongbookSyncError):
    """
    Raised when the durable on-device store cannot be read or written.

    Common causes:
        - Parent directory missing or not writable
        - SQLite file locked or corrupted
        - Disk full

    The cache layer treats a StoreError on read as a cache miss.
    """
    pass


class RemoteError(SongbookSyncError):
    """
    Raised when the remote document store cannot answer a request.

    This is the "connectivity failure" class: always transient from the
    engine's point of view and resolved by falling back to the next tier.

    Attributes:
        is_timeout: True if the request exceeded its timeout.
        status_code: HTTP status code if the server answered with an error.

    Example:
        raise RemoteError(
            "Timed out reading collection_songs/LPMI",
            details={'path': 'collection_songs/LPMI', 'timeout': 8},
            is_timeout=True
        )
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        is_timeout: bool = False,
        status_code: int | None = None
    ) -> None:
        """
        Initialize remote error with additional flags.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional context.
            is_timeout: Set to True when the request timed out.
            status_code: HTTP status of the failed response, if any.
                         401/403 typically mean the path is access-restricted
                         for the current actor.
        """
        super().__init__(message, details)
        self.is_timeout = is_timeout
        self.status_code = status_code


class ParseError(SongbookSyncError):
    """
    Raised when a single song or collection record is malformed.

    This is a NON-CRITICAL error: the record is skipped and logged,
    the rest of the batch continues.
    """
    pass


class CacheCorruptionError(SongbookSyncError):
    """
    Raised when a cache entry is unreadable or deserializes to zero songs.

    The cache self-heals by evicting the entry; callers see a miss.
    """
    pass


class MigrationError(SongbookSyncError):
    """
    Raised when a cache migration step fails.

    The persisted migration version is NOT bumped, so the step is retried
    on the next start instead of being silently skipped.

    Attributes:
        step_version: The version the failing step was migrating to.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        step_version: int | None = None
    ) -> None:
        super().__init__(message, details)
        self.step_version = step_version
