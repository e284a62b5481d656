#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration validation for safety and compatibility checks.

Validates migrations for destructive operations, lossy reverts, SQLite
table rebuilds and checksum integrity. Provides warnings at different
severity levels (INFO, WARNING, ERROR); the runner refuses to apply a
migration with ERROR warnings.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .ddl import requires_sqlite_rebuild
from .migration import Migration
from .operations import destructive_reason


class WarningLevel(Enum):
    """Severity levels for validation warnings."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class ValidationWarning:
    """
    Warning from migration validation.

    Attributes:
        level: Severity level (INFO, WARNING, ERROR)
        message: Human-readable warning message
        order_key: Order key of the migration that triggered the warning
        migration_name: Migration name that triggered the warning
        category: Warning category ('checksum', 'destructive', 'lossy', 'sqlite')
        operation_index: Index of the offending up operation, if any

    Example:
        >>> warning = ValidationWarning(
        ...     level=WarningLevel.WARNING,
        ...     message="drop table Users (all rows are deleted)",
        ...     order_key=20261019093000,
        ...     migration_name="drop_users",
        ...     category="destructive"
        ... )
        >>> print(warning)
        [WARNING] Migration 20261019093000_drop_users: drop table Users (all rows are deleted)
    """
    level: WarningLevel
    message: str
    order_key: int
    migration_name: str
    category: str
    operation_index: Optional[int] = None

    def to_dict(self) -> dict:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary with all fields, level as string value
        """
        return {
            'level': self.level.value,
            'message': self.message,
            'order_key': self.order_key,
            'migration_name': self.migration_name,
            'category': self.category,
            'operation_index': self.operation_index,
        }

    def __str__(self) -> str:
        return f"[{self.level.value}] Migration {self.order_key}_{self.migration_name}: {self.message}"

    __repr__ = __str__


class MigrationValidator:
    """
    Validates migrations for safety and compatibility issues.

    Performs multiple validation checks:
    - Destructive up operations (table drops, narrowing, NOT NULL changes)
    - Lossy down operations (reverting cannot restore data)
    - SQLite table rebuilds (ALTER TABLE limitations)
    - Checksum verification (file tampering detection)

    Attributes:
        db_type: Database type ('sqlite', 'postgresql', etc.)

    Example:
        >>> validator = MigrationValidator(db_type='sqlite')
        >>> warnings = validator.validate_migration(migration)
        >>> for w in warnings:
        ...     if w.level == WarningLevel.ERROR:
        ...         print(f"ERROR: {w.message}")
    """

    def __init__(self, db_type: str = 'sqlite'):
        self.db_type = db_type.lower()

    def validate_migration(self, migration: Migration) -> List[ValidationWarning]:
        """
        Validate a migration for safety and compatibility issues.

        Args:
            migration: Migration object to validate

        Returns:
            List of ValidationWarning objects (empty if no issues)
        """
        warnings = []

        if not migration.verify_checksum():
            warnings.append(self._warning(
                migration, WarningLevel.ERROR, 'checksum',
                "Migration content does not match its checksum",
            ))

        warnings.extend(self._check_destructive_operations(migration))
        warnings.extend(self._check_lossy_reverts(migration))

        if self.db_type == 'sqlite':
            warnings.extend(self._check_sqlite_rebuilds(migration))

        return warnings

    def verify_checksums(
        self,
        migration: Migration,
        stored_checksum: str
    ) -> List[ValidationWarning]:
        """
        Verify a migration's checksum matches the stored (applied) checksum.

        Args:
            migration: Migration object with current checksum
            stored_checksum: Checksum recorded when the migration was applied

        Returns:
            List with ERROR warning if mismatch, empty list if match
        """
        if migration.checksum == stored_checksum:
            return []
        return [self._warning(
            migration, WarningLevel.ERROR, 'checksum',
            f"Migration file has been modified (checksum mismatch). "
            f"Expected: {stored_checksum[:8]}..., Got: {migration.checksum[:8]}...",
        )]

    def _warning(self, migration, level, category, message, operation_index=None):
        return ValidationWarning(
            level=level,
            message=message,
            order_key=migration.order_key,
            migration_name=migration.name,
            category=category,
            operation_index=operation_index,
        )

    def _check_destructive_operations(self, migration: Migration) -> List[ValidationWarning]:
        warnings = []
        for index, op in enumerate(migration.up):
            reason = destructive_reason(op)
            if reason is not None:
                warnings.append(self._warning(
                    migration, WarningLevel.WARNING, 'destructive',
                    f"{reason}. Ensure data is backed up or no longer needed.",
                    index,
                ))
        return warnings

    def _check_lossy_reverts(self, migration: Migration) -> List[ValidationWarning]:
        return [
            self._warning(
                migration, WarningLevel.WARNING, 'lossy',
                f"Reverting cannot restore data: {op.describe()}",
            )
            for op in migration.down if op.lossy
        ]

    def _check_sqlite_rebuilds(self, migration: Migration) -> List[ValidationWarning]:
        return [
            self._warning(
                migration, WarningLevel.INFO, 'sqlite',
                f"SQLite recreates table {op.table} to {op.describe()}",
                index,
            )
            for index, op in enumerate(migration.up) if requires_sqlite_rebuild(op)
        ]


def has_errors(warnings: List[ValidationWarning]) -> bool:
    return any(w.level == WarningLevel.ERROR for w in warnings)
