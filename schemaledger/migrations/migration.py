"""
Migration data models.

This module defines the core data structures for managing migrations:
- Migration: A named, ordered, reversible unit of schema change
- AppliedMigration: A history record for a migration applied to a store

Migrations are immutable once created. Their checksum covers the order key,
name and both operation lists, so any edit to a migration file after it was
generated or applied is detected.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .operations import Operation

NAME_PATTERN = re.compile(r'^[a-z0-9_]+$')


def compute_checksum(
    order_key: int,
    name: str,
    up: Iterable[Operation],
    down: Iterable[Operation],
) -> str:
    """
    Compute the SHA-256 checksum of a migration's canonical content.

    Returns:
        Hexadecimal SHA-256 hash (64 characters)

    Example:
        >>> len(compute_checksum(1, 'init', [], []))
        64
    """
    content = json.dumps(
        {
            'order_key': order_key,
            'name': name,
            'up': [op.to_dict() for op in up],
            'down': [op.to_dict() for op in down],
        },
        sort_keys=True,
        separators=(',', ':'),
    )
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class Migration:
    """
    A single migration with its forward and reverse operations.

    Attributes:
        order_key: Strictly increasing ordering key (YYYYMMDDHHMMSS style)
        name: Descriptive name (e.g., 'add_users')
        up: Operations applying the migration
        down: Operations reverting it, in execution order
        checksum: SHA-256 of the canonical content
        data_loss: True when data loss was accepted for some down operation
        created_at: When the migration was generated
        file_path: Path of the migration file, when loaded from disk

    Example:
        >>> migration = generate_migration(ops, 'add users')
        >>> print(migration)
        <Migration(20261019093000, add_users)>
    """

    order_key: int
    name: str
    up: tuple[Operation, ...]
    down: tuple[Operation, ...]
    checksum: str
    data_loss: bool = False
    created_at: Optional[datetime] = field(default=None, compare=False)
    file_path: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate migration after initialization."""
        if self.order_key < 1:
            raise ValueError(
                f"Migration order key must be >= 1, got {self.order_key}"
            )

        if not NAME_PATTERN.match(self.name):
            raise ValueError(
                f"Migration name '{self.name}' must contain only lowercase "
                f"letters, digits and underscores"
            )

        if not self.up:
            raise ValueError(f"Migration {self.identifier} has no up operations")

        object.__setattr__(self, 'up', tuple(self.up))
        object.__setattr__(self, 'down', tuple(self.down))

    @property
    def identifier(self) -> str:
        return f"{self.order_key}_{self.name}"

    @property
    def filename(self) -> str:
        return f"{self.identifier}.json"

    def verify_checksum(self) -> bool:
        """True when the content still matches the stored checksum."""
        return compute_checksum(
            self.order_key, self.name, self.up, self.down
        ) == self.checksum

    def to_dict(self) -> dict:
        return {
            'order_key': self.order_key,
            'name': self.name,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'data_loss': self.data_loss,
            'checksum': self.checksum,
            'up': [op.to_dict() for op in self.up],
            'down': [op.to_dict() for op in self.down],
        }

    @classmethod
    def from_dict(cls, data: dict, file_path: Optional[str] = None) -> 'Migration':
        created_at = data.get('created_at')
        return cls(
            order_key=int(data['order_key']),
            name=data['name'],
            up=tuple(Operation.from_dict(op) for op in data['up']),
            down=tuple(Operation.from_dict(op) for op in data.get('down', [])),
            checksum=data['checksum'],
            data_loss=bool(data.get('data_loss', False)),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            file_path=file_path,
        )

    def __lt__(self, other: 'Migration') -> bool:
        """Allow sorting migrations by order key."""
        if not isinstance(other, Migration):
            return NotImplemented
        return self.order_key < other.order_key

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Migration({self.order_key}, {self.name})>"


@dataclass
class AppliedMigration:
    """
    Represents a migration that has been applied to the store.

    This corresponds to a row in the schema_migrations table. The up and
    down operations are stored with the record, so the applied schema can
    be rebuilt and the migration reverted without the migration file.

    Attributes:
        order_key: Migration order key
        name: Migration name
        checksum: Checksum at time of application
        applied_at: When the migration was applied
        applied_by: User/system that applied it
        execution_time_ms: Time taken to execute the migration
        up: Recorded up operations
        down: Recorded down operations
        data_loss: Whether reverting loses data

    Example:
        >>> applied = AppliedMigration(
        ...     order_key=20261019093000,
        ...     name='add_users',
        ...     checksum='a1b2c3d4...',
        ...     applied_at=datetime(2026, 10, 19, 9, 30, 0),
        ...     applied_by='system',
        ... )
        >>> print(applied)
        <AppliedMigration(20261019093000, add_users)>
    """

    order_key: int
    name: str
    checksum: str
    applied_at: datetime
    applied_by: str = 'system'
    execution_time_ms: Optional[int] = None
    up: tuple[Operation, ...] = ()
    down: tuple[Operation, ...] = ()
    data_loss: bool = False

    @property
    def identifier(self) -> str:
        return f"{self.order_key}_{self.name}"

    def to_migration(self) -> Migration:
        """Rebuild the Migration this record was created from."""
        return Migration(
            order_key=self.order_key,
            name=self.name,
            up=self.up,
            down=self.down,
            checksum=self.checksum,
            data_loss=self.data_loss,
        )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<AppliedMigration({self.order_key}, {self.name})>"
