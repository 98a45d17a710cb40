"""Domain exceptions for the content cache store.

This module defines a hierarchy of exceptions for the store layer,
separating infrastructure errors (database issues) from logic errors
(misuse of the import-run lifecycle).
"""


class StateStoreError(Exception):
    """Base exception for all cache store errors.

    Store errors are run-level: the orchestrator never converts them into
    per-entity failures.
    """


class StoreConnectionError(StateStoreError):
    """Raised when the database connection fails or is not established."""

    def __init__(self, message: str = "Database not connected") -> None:
        """Initialize the connection error.

        Args:
            message: Human-readable error message.
        """
        super().__init__(message)


class ReadOnlyStoreError(StateStoreError):
    """Raised when a write is attempted through a read-only handle."""

    def __init__(self, operation: str) -> None:
        """Initialize the error.

        Args:
            operation: The write operation that was rejected.
        """
        self.operation = operation
        super().__init__(f"Store opened read-only; cannot run {operation}")


class ImportRunNotFoundError(StateStoreError):
    """Raised when an import run id does not exist."""

    def __init__(self, import_run_id: int) -> None:
        """Initialize the error with the missing import run id.

        Args:
            import_run_id: The id that was not found.
        """
        self.import_run_id = import_run_id
        super().__init__(f"Import run not found: {import_run_id}")


class ImportRunStateError(StateStoreError):
    """Raised when an import run is completed more than once.

    Import runs are append-only audit records; a second completion call is a
    programming error rather than a recoverable condition.
    """

    def __init__(self, import_run_id: int, current_status: str) -> None:
        """Initialize the error.

        Args:
            import_run_id: The import run id.
            current_status: Status the run already holds.
        """
        self.import_run_id = import_run_id
        self.current_status = current_status
        super().__init__(
            f"Import run {import_run_id} already completed with status "
            f"'{current_status}'"
        )


class CursorCorruptError(StateStoreError):
    """Raised when a persisted cursor value cannot be interpreted."""

    def __init__(self, key: str, value: str) -> None:
        """Initialize the error.

        Args:
            key: Cursor key.
            value: The unparseable stored value.
        """
        self.key = key
        self.value = value
        super().__init__(f"Cursor '{key}' holds a non-integer value: {value!r}")


class MigrationError(StateStoreError):
    """Raised when a schema migration fails."""

    def __init__(self, version: int, message: str) -> None:
        """Initialize the migration error.

        Args:
            version: The migration version that failed.
            message: Human-readable error message.
        """
        self.version = version
        super().__init__(f"Migration {version} failed: {message}")
