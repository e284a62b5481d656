"""
Migration runner.

Applies and reverts migrations against a store. Every call holds the
store's migration lock for its whole duration; every migration runs in its
own transaction, so a failure rolls that migration back completely and
leaves the migrations before it applied.

State of a migration:

    Pending --apply--> Applied --revert--> Pending

Only the most recently applied migration can be reverted.

Dry runs execute every step inside a single transaction and roll it back
at the end, so later steps see the effects of earlier ones.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import List, Optional, Sequence, Union

from sqlalchemy.exc import DBAPIError

from schemaledger.database import StoreDatabase, is_lock_timeout
from schemaledger.errors import (
    ConflictError,
    EmptyHistoryError,
    ExecutionError,
    LockTimeoutError,
)

from .history import HistoryStore
from .locking import MigrationLock
from .migration import AppliedMigration, Migration
from .migration_executor import (
    DryRunRollbackError,
    MigrationExecutor,
    MigrationOutcome,
    MigrationResult,
)
from .migration_manager import find_migration, matches_name, pending_migrations
from .migration_validator import MigrationValidator, WarningLevel, has_errors
from .schema import Snapshot

logger = logging.getLogger(__name__)

# A plan step: a Migration to apply or the AppliedMigration to revert
Step = Union[Migration, AppliedMigration]


@asynccontextmanager
async def store_errors(action: str, step: Optional[Step] = None):
    """
    Translate driver errors raised while talking to the store.

    Use outside the session block, so the transaction has already been
    rolled back when the translated error surfaces.

    Raises:
        LockTimeoutError: If the store stayed locked past its wait timeout
        ExecutionError: For any other driver error (outcome APPLIED_NONE)
    """
    try:
        yield
    except DBAPIError as e:
        if is_lock_timeout(e):
            raise LockTimeoutError(
                f"Store stayed locked while {action}: {e.orig}"
            ) from e
        raise ExecutionError(
            f"Store error while {action}: {e.orig}",
            migration=step,
            outcome=MigrationOutcome.APPLIED_NONE,
        ) from e


async def load_history(store: StoreDatabase) -> List[AppliedMigration]:
    """
    Read the history records without changing the store.

    The history table is created if missing, but the transaction is never
    committed.
    """
    async with store_errors('reading the history'):
        async with store.session_factory() as session:
            history = HistoryStore(session)
            await history.ensure_table()
            return await history.records()


async def load_applied_snapshot(store: StoreDatabase) -> Snapshot:
    """Rebuild the applied snapshot without changing the store."""
    async with store_errors('reading the history'):
        async with store.session_factory() as session:
            history = HistoryStore(session)
            await history.ensure_table()
            return await history.latest_applied_snapshot()


class MigrationRunner:
    """
    Applies and reverts migrations under the store lock.

    Attributes:
        lock: Store migration lock
        applied_by: Default applier recorded in history records

    Example:
        runner = MigrationRunner(lock_timeout=30.0)
        results = await runner.apply_all(manager.discover_migrations(), store)
        await runner.revert(store)
    """

    def __init__(self, lock_timeout: float = 30.0, applied_by: str = 'system'):
        self.lock = MigrationLock(lock_timeout)
        self.applied_by = applied_by

    async def apply(
        self,
        migration: Migration,
        store: StoreDatabase,
        applied_by: Optional[str] = None,
        dry_run: bool = False,
    ) -> MigrationResult:
        """
        Apply one migration in a single transaction.

        Args:
            migration: Migration to apply
            store: Target store
            applied_by: Recorded applier (defaults to the runner's)
            dry_run: Execute and roll back

        Returns:
            MigrationResult (outcome APPLIED or DRY_RUN)

        Raises:
            LockTimeoutError: If the store lock is not acquired in time, or
                the store stays locked by another transaction
            ConflictError: If the migration fails validation
            OrderError: If it does not follow the history tail (no DDL ran)
            ExecutionError: If the store rejected an operation (rolled back)
        """
        async with self.lock.hold(store.identity):
            results = await self._execute(store, [migration], applied_by, dry_run)
        return results[0]

    async def revert(self, store: StoreDatabase, dry_run: bool = False) -> MigrationResult:
        """
        Revert the most recently applied migration.

        Raises:
            LockTimeoutError: If the store lock is not acquired in time, or
                the store stays locked by another transaction
            EmptyHistoryError: If no migration is applied (store untouched)
            ExecutionError: If the store rejected an operation (rolled back)
        """
        async with self.lock.hold(store.identity):
            records = await load_history(store)
            if not records:
                raise EmptyHistoryError("No applied migrations to revert")
            results = await self._execute(store, [records[-1]], None, dry_run)
        return results[0]

    async def apply_all(
        self,
        migrations: Sequence[Migration],
        store: StoreDatabase,
        applied_by: Optional[str] = None,
        dry_run: bool = False,
    ) -> List[MigrationResult]:
        """
        Apply every pending migration, in order.

        Migrations already in the history are skipped; the history must be
        a prefix of `migrations` (ConflictError otherwise).

        Returns:
            One MigrationResult per applied migration ([] when up to date)
        """
        async with self.lock.hold(store.identity):
            records = await load_history(store)
            pending = pending_migrations(records, migrations)
            if not pending:
                logger.info("No pending migrations")
                return []
            return await self._execute(store, pending, applied_by, dry_run)

    async def apply_up_to(
        self,
        name: str,
        store: StoreDatabase,
        migrations: Sequence[Migration],
        applied_by: Optional[str] = None,
        dry_run: bool = False,
    ) -> List[MigrationResult]:
        """
        Bring the store to the state as of the named migration.

        When the migration is applied, every migration after it is reverted
        (newest first). When it is pending, the pending migrations up to and
        including it are applied.

        Args:
            name: Migration name, identifier or order key
            store: Target store
            migrations: All known migrations
            applied_by: Recorded applier (defaults to the runner's)
            dry_run: Execute and roll back

        Raises:
            NotFoundError: If the name is neither applied nor pending
        """
        async with self.lock.hold(store.identity):
            records = await load_history(store)
            pending = pending_migrations(records, migrations)

            for index, record in enumerate(records):
                if matches_name(record, name):
                    plan = list(reversed(records[index + 1:]))
                    break
            else:
                target = find_migration(pending, name)
                plan = pending[:pending.index(target) + 1]

            if not plan:
                logger.info("Already at migration %s", name)
                return []
            return await self._execute(store, plan, applied_by, dry_run)

    # ========================================================================
    # Execution
    # ========================================================================

    def _validate(self, store: StoreDatabase, plan: Sequence[Step]) -> None:
        validator = MigrationValidator(store.dialect)
        for step in plan:
            if not isinstance(step, Migration):
                continue
            warnings = validator.validate_migration(step)
            for warning in warnings:
                if warning.level == WarningLevel.WARNING:
                    logger.warning("%s", warning)
                else:
                    logger.debug("%s", warning)
            if has_errors(warnings):
                raise ConflictError(
                    f"Migration {step.identifier} failed validation",
                    details={'warnings': [w.to_dict() for w in warnings]},
                )

    async def _execute(
        self,
        store: StoreDatabase,
        plan: Sequence[Step],
        applied_by: Optional[str],
        dry_run: bool,
    ) -> List[MigrationResult]:
        self._validate(store, plan)
        executor = MigrationExecutor(store.dialect)
        applied_by = applied_by or self.applied_by

        if dry_run:
            return await self._execute_dry_run(store, executor, plan, applied_by)

        results = []
        for step in plan:
            try:
                async with store_errors(f"running {step.identifier}", step):
                    async with store.session_factory() as session:
                        async with session.begin():
                            results.append(await self._run_step(executor, session, step, applied_by))
            except (ExecutionError, LockTimeoutError) as e:
                logger.error("%s (rolled back)", e.message)
                raise
        return results

    async def _execute_dry_run(self, store, executor, plan, applied_by) -> List[MigrationResult]:
        results = []
        try:
            async with store_errors('running a dry run'):
                async with store.session_factory() as session:
                    async with session.begin():
                        for step in plan:
                            result = await self._run_step(executor, session, step, applied_by)
                            results.append(replace(
                                result, outcome=MigrationOutcome.DRY_RUN, record=None
                            ))
                        raise DryRunRollbackError(results)
        except DryRunRollbackError:
            logger.info("Dry run of %d migration(s) rolled back", len(results))
        return results

    async def _run_step(self, executor, session, step: Step, applied_by: str) -> MigrationResult:
        history = HistoryStore(session)
        await history.ensure_table()

        if isinstance(step, Migration):
            return await executor.apply_migration(session, step, applied_by)

        last = await history.last()
        if last is None or last.order_key != step.order_key:
            raise ConflictError(
                f"Cannot revert {step.identifier}: it is not the last applied migration"
            )
        return await executor.revert_migration(session, last)
