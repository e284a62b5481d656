"""
History store.

Persists applied migrations in the schema_migrations table of the store
itself. The history is append-only except for its tail: records are added
in strictly increasing order key order and only the last one can be
removed (when a migration is reverted).

HistoryStore works inside a session owned by the caller and never commits;
the runner commits the history change together with the migration's DDL.
"""

import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from schemaledger.errors import EmptyHistoryError, OrderError
from schemaledger.models import Base, SchemaMigration

from .migration import AppliedMigration, Migration
from .operations import Operation, apply_operations
from .schema import Snapshot

logger = logging.getLogger(__name__)


def _to_record(row: SchemaMigration) -> AppliedMigration:
    return AppliedMigration(
        order_key=row.order_key,
        name=row.name,
        checksum=row.checksum,
        applied_at=row.applied_at,
        applied_by=row.applied_by,
        execution_time_ms=row.execution_time_ms,
        up=tuple(Operation.from_dict(op) for op in json.loads(row.up_json)),
        down=tuple(Operation.from_dict(op) for op in json.loads(row.down_json)),
        data_loss=row.data_loss,
    )


class HistoryListing:
    """
    Lazy view over the history records.

    Every `async for` issues a fresh query, so the listing can be iterated
    any number of times and always reflects the current table.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def __aiter__(self) -> AsyncIterator[AppliedMigration]:
        return self._iterate()

    async def _iterate(self):
        result = await self.session.execute(
            select(SchemaMigration).order_by(SchemaMigration.order_key)
        )
        for row in result.scalars():
            yield _to_record(row)


class HistoryStore:
    """
    Ordered record of the migrations applied to a store.

    Attributes:
        session: Active database session (managed by caller)

    Example:
        async with database.session() as session:
            history = HistoryStore(session)
            await history.ensure_table()
            async for record in history.list():
                print(record)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_table(self) -> None:
        """Create schema_migrations if it does not exist yet."""
        await self.session.run_sync(
            lambda sync_session: Base.metadata.create_all(
                sync_session.connection(), checkfirst=True
            )
        )
        logger.debug("Ensured schema_migrations table exists")

    def list(self) -> HistoryListing:
        """Records in order key order (restartable async iterable)."""
        return HistoryListing(self.session)

    async def records(self) -> List[AppliedMigration]:
        """All records in order key order."""
        return [record async for record in self.list()]

    async def _last_row(self) -> Optional[SchemaMigration]:
        result = await self.session.execute(
            select(SchemaMigration)
            .order_by(SchemaMigration.order_key.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def last(self) -> Optional[AppliedMigration]:
        """The most recent record, or None when the history is empty."""
        row = await self._last_row()
        return _to_record(row) if row is not None else None

    async def check_order(self, migration: Migration) -> None:
        """
        Raise OrderError unless `migration` may follow the current tail.

        Raises:
            OrderError: If the order key is not strictly greater than the
                last record's
        """
        row = await self._last_row()
        if row is not None and migration.order_key <= row.order_key:
            raise OrderError(
                f"Migration {migration.identifier} does not come after the "
                f"last applied migration {row.order_key}_{row.name}",
                details={
                    'order_key': migration.order_key,
                    'last_order_key': row.order_key,
                },
            )

    async def append(
        self,
        migration: Migration,
        applied_by: str = 'system',
        execution_time_ms: Optional[int] = None,
    ) -> AppliedMigration:
        """
        Add a record for an applied migration.

        Args:
            migration: Migration that was applied
            applied_by: User/system that applied it
            execution_time_ms: Time taken to run its operations

        Returns:
            The new AppliedMigration

        Raises:
            OrderError: If the order key is not strictly greater than the
                last record's
        """
        await self.check_order(migration)

        row = SchemaMigration(
            order_key=migration.order_key,
            name=migration.name,
            checksum=migration.checksum,
            applied_at=datetime.now(timezone.utc).replace(tzinfo=None),
            applied_by=applied_by,
            execution_time_ms=execution_time_ms,
            data_loss=migration.data_loss,
            up_json=json.dumps([op.to_dict() for op in migration.up]),
            down_json=json.dumps([op.to_dict() for op in migration.down]),
        )
        self.session.add(row)
        await self.session.flush()

        logger.debug("Recorded migration %s", migration.identifier)
        return _to_record(row)

    async def remove_last(self) -> AppliedMigration:
        """
        Remove and return the most recent record.

        Raises:
            EmptyHistoryError: If there are no records
        """
        row = await self._last_row()
        if row is None:
            raise EmptyHistoryError("No applied migrations to remove")

        record = _to_record(row)
        await self.session.execute(
            delete(SchemaMigration).where(SchemaMigration.id == row.id)
        )
        await self.session.flush()

        logger.debug("Removed history record %s", record.identifier)
        return record

    async def latest_applied_snapshot(self) -> Snapshot:
        """Rebuild the applied schema by folding every recorded up-operation."""
        snapshot = Snapshot.empty()
        async for record in self.list():
            snapshot = apply_operations(snapshot, record.up)
        return snapshot
