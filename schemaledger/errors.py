"""
Migration engine exceptions.

This module defines the exception hierarchy for schema migrations, enabling
precise error handling at different layers of the engine and a distinct CLI
exit code per failure kind.
"""

from typing import Any, Optional


class MigrationError(Exception):
    """
    Base exception for migration errors.

    All migration errors carry a code, a message and an optional details
    dict, allowing catch-all handling when needed.
    """

    code = 'MIGRATION_ERROR'
    exit_code = 1

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Initialize migration error.

        Args:
            message: Human-readable error message
            details: Optional dict of additional context
        """
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")


class UnresolvableDiffError(MigrationError):
    """
    Declared schema cannot be reached without data loss.

    Raised when:
    - A column type would be narrowed
    - A table would be dropped
    - A nullable column would become NOT NULL
    and the caller did not allow destructive changes.
    """

    code = 'UNRESOLVABLE_DIFF'
    exit_code = 1


class LockTimeoutError(MigrationError):
    """Store migration lock could not be acquired in time."""

    code = 'LOCK_TIMEOUT'
    exit_code = 2


class ExecutionError(MigrationError):
    """
    Store rejected a statement while running a migration.

    The transaction has already been rolled back when this is raised.
    `migration`, `operation_index` and `operation` identify what failed.
    """

    code = 'EXECUTION_FAILED'
    exit_code = 3

    def __init__(
        self,
        message: str,
        migration=None,
        operation_index: Optional[int] = None,
        operation=None,
        outcome=None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.migration = migration
        self.operation_index = operation_index
        self.operation = operation
        self.outcome = outcome
        super().__init__(message, details)


class ConflictError(MigrationError):
    """
    Requested state transition is not allowed.

    Raised when:
    - Removing a migration that has already been applied
    - Migration files disagree with the applied history
    """

    code = 'CONFLICT'
    exit_code = 4


class ChecksumMismatchError(ConflictError):
    """Migration content no longer matches its recorded checksum."""

    code = 'CHECKSUM_MISMATCH'


class EmptyHistoryError(MigrationError):
    """No migration has been applied."""

    code = 'EMPTY_HISTORY'
    exit_code = 5


class NotFoundError(MigrationError):
    """Unknown migration name."""

    code = 'NOT_FOUND'
    exit_code = 6


class ValidationError(MigrationError):
    """
    Declared schema is invalid.

    Raised when:
    - A relationship references a missing table or column
    - A table is declared twice with conflicting primary keys
    - A name or column type is invalid
    """

    code = 'VALIDATION_FAILED'
    exit_code = 7


class OrderError(MigrationError):
    """History ordering would be violated."""

    code = 'ORDER_VIOLATION'
    exit_code = 8


class IrreversibleOperationError(MigrationError):
    """Operation has no safe inverse and data loss was not accepted."""

    code = 'IRREVERSIBLE'
    exit_code = 9


class ConfigurationError(MigrationError):
    """Configuration file or option is invalid."""

    code = 'CONFIG_INVALID'
    exit_code = 10
