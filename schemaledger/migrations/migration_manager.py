"""
Migration manager for migration files on disk.

This module provides the MigrationManager class which handles:
- Discovery of migration files in the migrations directory
- Parsing of migration files (JSON documents)
- Checksum verification for tamper detection
- Calculation of pending migrations against the applied history

Migration files follow the naming convention: <order_key>_<name>.json
Example: 20261019093000_add_users.json, 20261020110512_add_addresses.json

File format:
    {
        "order_key": 20261019093000,
        "name": "add_users",
        "created_at": "2026-10-19T09:30:00+00:00",
        "data_loss": false,
        "checksum": "...",
        "up": [{"kind": "create_table", "table": "Users", ...}],
        "down": [{"kind": "drop_table", "table": "Users", ...}]
    }
"""

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

from schemaledger.errors import (
    ChecksumMismatchError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

from .migration import AppliedMigration, Migration
from .operations import apply_operations
from .schema import Snapshot

logger = logging.getLogger(__name__)


class MigrationManager:
    """
    Manages migration file discovery, parsing, and metadata.

    Responsibilities:
    - Discover migration files in the migrations directory
    - Parse and write migration files
    - Verify checksums for tamper detection
    - Calculate pending migrations

    Does NOT execute migrations (see MigrationRunner).

    Example:
        >>> manager = MigrationManager(Path('migrations'))
        >>> manager.discover_migrations()
        [<Migration(20261019093000, add_users)>]
    """

    # Migration filename pattern: <order_key>_<name>.json
    MIGRATION_PATTERN = re.compile(r'^(\d+)_([a-z0-9_]+)\.json$')

    def __init__(self, migrations_dir):
        """
        Initialize migration manager.

        Args:
            migrations_dir: Directory holding migration files (created on
                first write)
        """
        self.migrations_dir = Path(migrations_dir)

    def discover_migrations(self) -> List[Migration]:
        """
        Discover all migration files.

        Returns:
            List of Migration objects sorted by order key ascending

        Raises:
            ValidationError: If duplicate order keys are found
            ChecksumMismatchError: If a file was edited after generation
        """
        if not self.migrations_dir.exists():
            logger.debug("No migrations directory at %s", self.migrations_dir)
            return []

        migrations = []
        keys_seen = set()

        for file_path in sorted(self.migrations_dir.glob('*.json')):
            match = self.MIGRATION_PATTERN.match(file_path.name)
            if not match:
                logger.warning(
                    "Skipping invalid migration filename: %s", file_path.name
                )
                continue

            order_key = int(match.group(1))
            if order_key in keys_seen:
                raise ValidationError(
                    f"Duplicate migration order key {order_key} in "
                    f"{self.migrations_dir}"
                )
            keys_seen.add(order_key)

            migration = self.parse_migration_file(file_path)
            migrations.append(migration)
            logger.debug("Discovered migration: %s", migration)

        return sorted(migrations)

    def parse_migration_file(self, file_path: Path) -> Migration:
        """
        Parse a migration file.

        Args:
            file_path: Path to migration file

        Returns:
            Migration object

        Raises:
            FileNotFoundError: If file doesn't exist
            ValidationError: If the file name or content is malformed, or the
                name disagrees with the content
            ChecksumMismatchError: If the content does not match its checksum
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Migration file not found: {file_path}")

        match = self.MIGRATION_PATTERN.match(file_path.name)
        if not match:
            raise ValidationError(f"Invalid migration filename: {file_path.name}")

        try:
            data = json.loads(file_path.read_text(encoding='utf-8'))
            migration = Migration.from_dict(data, file_path=str(file_path.absolute()))
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError(f"Malformed migration file {file_path.name}: {e}") from e

        order_key, name = match.groups()
        if migration.order_key != int(order_key) or migration.name != name:
            raise ValidationError(
                f"Migration file {file_path.name} holds migration "
                f"{migration.identifier}"
            )

        if not migration.verify_checksum():
            raise ChecksumMismatchError(
                f"Migration file {file_path.name} was modified after it was "
                f"generated",
                details={'file': str(file_path)},
            )

        return migration

    def write_migration(self, migration: Migration) -> Path:
        """
        Write a migration file; refuses to overwrite an existing one.

        Returns:
            Path of the written file
        """
        self.migrations_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.migrations_dir / migration.filename
        if file_path.exists():
            raise ConflictError(f"Migration file already exists: {file_path}")

        file_path.write_text(
            json.dumps(migration.to_dict(), indent=2) + '\n',
            encoding='utf-8',
        )
        logger.info("Wrote migration %s", file_path)
        return file_path

    def delete_migration(self, migration: Migration) -> None:
        file_path = self.migrations_dir / migration.filename
        if not file_path.exists():
            raise NotFoundError(f"Migration file not found: {file_path}")
        file_path.unlink()
        logger.info("Deleted migration %s", file_path)

    def latest_migration(self) -> Optional[Migration]:
        """The migration with the highest order key, or None."""
        migrations = self.discover_migrations()
        return migrations[-1] if migrations else None

    def get_pending_migrations(
        self,
        applied_migrations: Sequence[AppliedMigration],
        migrations: Optional[Sequence[Migration]] = None,
    ) -> List[Migration]:
        """
        Calculate migrations that come after the applied history.

        Args:
            applied_migrations: History records, in order
            migrations: Already discovered migrations (discovered if None)

        Returns:
            Pending migrations sorted by order key ascending

        Raises:
            ConflictError: If the history does not match the files

        Example:
            >>> pending = manager.get_pending_migrations(records)
            >>> [m.name for m in pending]
            ['add_addresses']
        """
        if migrations is None:
            migrations = self.discover_migrations()
        return pending_migrations(applied_migrations, migrations)

    def pending_snapshot(self, base: Snapshot, pending: Sequence[Migration]) -> Snapshot:
        """Fold pending migrations onto the applied snapshot."""
        for migration in pending:
            base = apply_operations(base, migration.up)
        return base


def matches_name(migration, name: str) -> bool:
    """True when `name` is the migration's name, identifier or order key."""
    return name in (migration.name, migration.identifier, str(migration.order_key))


def find_migration(migrations: Sequence[Migration], name: str) -> Migration:
    """
    Find a migration by name, identifier or order key.

    Raises:
        NotFoundError: If no migration matches
    """
    for migration in migrations:
        if matches_name(migration, name):
            return migration

    raise NotFoundError(f"Migration not found: {name}")


def verify_history(
    applied_migrations: Sequence[AppliedMigration],
    migrations: Sequence[Migration],
) -> None:
    """
    Check that the applied history is a prefix of the migrations.

    Every record needs a migration with the same order key, name and
    checksum, in the same position.

    Raises:
        ConflictError: If a record has no matching migration
        ChecksumMismatchError: If a migration changed after it was applied
    """
    for index, record in enumerate(applied_migrations):
        if index >= len(migrations):
            raise ConflictError(
                f"Applied migration {record.identifier} has no migration file",
                details={'order_key': record.order_key},
            )
        migration = migrations[index]
        if (migration.order_key, migration.name) != (record.order_key, record.name):
            raise ConflictError(
                f"Applied migration {record.identifier} does not match "
                f"migration file {migration.identifier}",
                details={'order_key': record.order_key},
            )
        if migration.checksum != record.checksum:
            raise ChecksumMismatchError(
                f"Checksum mismatch for migration {record.identifier}! "
                f"File has been modified after application. "
                f"Expected: {record.checksum}, Got: {migration.checksum}",
                details={'order_key': record.order_key},
            )


def pending_migrations(
    applied_migrations: Sequence[AppliedMigration],
    migrations: Sequence[Migration],
) -> List[Migration]:
    """Migrations after the applied history, sorted by order key."""
    migrations = sorted(migrations)
    verify_history(applied_migrations, migrations)
    return migrations[len(applied_migrations):]
