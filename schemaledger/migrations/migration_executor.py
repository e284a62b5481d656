#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Migration executor with transaction management and tracking.

Runs a migration's operations through alembic inside the caller's
transaction and records the result in the history store.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from schemaledger.database import is_lock_timeout
from schemaledger.errors import ExecutionError, LockTimeoutError

from .ddl import emit_operation
from .history import HistoryStore
from .migration import AppliedMigration, Migration
from .operations import Operation


class MigrationOutcome(Enum):
    """What a run left behind in the store."""
    APPLIED = "applied"
    REVERTED = "reverted"
    APPLIED_NONE = "applied_none"  # rolled back, store unchanged
    DRY_RUN = "dry_run"


@dataclass
class MigrationResult:
    """
    Result of migration execution.

    Attributes:
        migration: Migration that was executed
        outcome: What the run left behind
        execution_time_ms: Execution time in milliseconds
        record: History record written or removed (None for dry runs)
    """
    migration: Migration
    outcome: MigrationOutcome
    execution_time_ms: int
    record: Optional[AppliedMigration] = None

    @property
    def success(self) -> bool:
        return self.outcome != MigrationOutcome.APPLIED_NONE

    def to_dict(self) -> dict:
        return {
            'migration': self.migration.identifier,
            'outcome': self.outcome.value,
            'execution_time_ms': self.execution_time_ms,
        }


class DryRunRollbackError(Exception):
    """
    Exception raised to trigger rollback during dry-run mode.

    `result` carries the MigrationResults the dry run produced.
    """

    def __init__(self, result):
        self.result = result
        super().__init__('Dry-run mode: rolling back transaction')


class MigrationExecutor:
    """
    Executes migrations with transaction safety.

    The session's transaction is owned by the caller: every operation of
    the migration and the history change happen inside it, so either all
    of them commit or none do. Dry runs are the caller's rollback.

    Attributes:
        dialect: Store dialect name
        logger: Logger for execution tracking

    Example:
        executor = MigrationExecutor('sqlite')

        async with session.begin():
            result = await executor.apply_migration(session, migration)
    """

    def __init__(self, dialect: str = 'sqlite'):
        self.dialect = dialect
        self.logger = logging.getLogger(__name__)

    async def apply_migration(
        self,
        session: AsyncSession,
        migration: Migration,
        applied_by: str = 'system',
    ) -> MigrationResult:
        """
        Apply a migration's up operations and append its history record.

        The order check runs before any DDL.

        Args:
            session: Active database session inside a transaction
            migration: Migration to apply
            applied_by: User/system applying migration

        Returns:
            MigrationResult with outcome APPLIED

        Raises:
            OrderError: If the migration does not follow the history tail
            ExecutionError: If the store rejects an operation
            LockTimeoutError: If the store stayed locked past its wait timeout
        """
        history = HistoryStore(session)
        await history.check_order(migration)

        self.logger.info('Applying migration %s', migration.identifier)

        start_time = time.time()
        await self._run_operations(session, migration, migration.up)
        execution_time_ms = int((time.time() - start_time) * 1000)

        record = await history.append(migration, applied_by, execution_time_ms)

        self.logger.info(
            'Applied migration %s (%dms)',
            migration.identifier,
            execution_time_ms
        )
        return MigrationResult(
            migration, MigrationOutcome.APPLIED, execution_time_ms, record
        )

    async def revert_migration(
        self,
        session: AsyncSession,
        record: AppliedMigration,
    ) -> MigrationResult:
        """
        Run the down operations of the history tail and remove its record.

        Args:
            session: Active database session inside a transaction
            record: The last history record

        Returns:
            MigrationResult with outcome REVERTED

        Raises:
            ExecutionError: If the store rejects an operation
            LockTimeoutError: If the store stayed locked past its wait timeout
        """
        migration = record.to_migration()

        self.logger.info('Reverting migration %s', migration.identifier)
        if migration.data_loss:
            self.logger.warning(
                'Reverting %s cannot restore all data', migration.identifier
            )

        start_time = time.time()
        await self._run_operations(session, migration, migration.down)
        execution_time_ms = int((time.time() - start_time) * 1000)

        removed = await HistoryStore(session).remove_last()

        self.logger.info(
            'Reverted migration %s (%dms)',
            migration.identifier,
            execution_time_ms
        )
        return MigrationResult(
            migration, MigrationOutcome.REVERTED, execution_time_ms, removed
        )

    async def _run_operations(
        self,
        session: AsyncSession,
        migration: Migration,
        operations: Sequence[Operation],
    ) -> None:
        sqlite = self.dialect == 'sqlite'

        def run(sync_session):
            ops = Operations(MigrationContext.configure(connection=sync_session.connection()))
            for index, op in enumerate(operations):
                self.logger.debug('  [%d] %s', index, op.describe())
                try:
                    emit_operation(ops, op, batch=True, sqlite=sqlite)
                except DBAPIError as e:
                    if is_lock_timeout(e):
                        raise LockTimeoutError(
                            f"Store stayed locked while running {migration.identifier} "
                            f"operation {index}: {e.orig}"
                        ) from e
                    raise self._failure(migration, index, op, e) from e
                except Exception as e:
                    raise self._failure(migration, index, op, e) from e

        await session.run_sync(run)

    @staticmethod
    def _failure(migration, index, op, error) -> ExecutionError:
        return ExecutionError(
            f"Migration {migration.identifier} failed at operation "
            f"{index} ({op.describe()}): {error}",
            migration=migration,
            operation_index=index,
            operation=op,
            outcome=MigrationOutcome.APPLIED_NONE,
        )
