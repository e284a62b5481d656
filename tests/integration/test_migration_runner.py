#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Integration tests for the migration runner.

Tests the complete migration workflow against a real SQLite store:
apply, revert, dry runs, apply-up-to, rollback on failure and locking.
"""
import asyncio
import sqlite3
from dataclasses import replace

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from conftest import column_info, table_names
from schemaledger.database import StoreDatabase
from schemaledger.errors import (
    ConflictError,
    EmptyHistoryError,
    ExecutionError,
    LockTimeoutError,
    NotFoundError,
    OrderError,
)
from schemaledger.migrations import (
    ColumnDef,
    HistoryStore,
    MigrationExecutor,
    MigrationOutcome,
    MigrationRunner,
    Operation,
    OperationKind,
    Snapshot,
    diff,
    generate_migration,
    load_applied_snapshot,
    load_history,
)
from schemaledger.migrations.locking import MigrationLock
from schemaledger.migrations.runner import store_errors


@pytest.fixture
def runner():
    return MigrationRunner(lock_timeout=5.0, applied_by='tests')


@pytest.fixture
def initial(declared):
    return generate_migration(diff(declared, Snapshot.empty()), 'initial', order_key=10)


@pytest.fixture
def drop_last_name(declared):
    target = declared.with_table(declared.table('Users').without_column('LastName'))
    return generate_migration(diff(target, declared), 'drop_last_name', order_key=20)


@pytest.fixture
def add_nick(declared):
    users = declared.table('Users').without_column('LastName')
    before = declared.with_table(users)
    after = declared.with_table(users.with_column(ColumnDef('Nick', 'varchar(10)', nullable=True)))
    return generate_migration(diff(after, before), 'add_nick', order_key=30)


class TestApply:
    """Test applying migrations."""

    async def test_initial_schema(self, runner, store, initial, declared):
        result = await runner.apply(initial, store)

        assert result.outcome == MigrationOutcome.APPLIED
        assert result.success
        assert result.record.applied_by == 'tests'
        assert await table_names(store) == ['Addresses', 'Users']

        records = await load_history(store)
        assert [r.identifier for r in records] == ['10_initial']
        assert await load_applied_snapshot(store) == declared

        columns = await column_info(store, 'Users')
        assert columns['LastName']['nullable']
        assert not columns['FirstName']['nullable']

    async def test_drop_nullable_column(self, runner, store, initial, drop_last_name):
        await runner.apply(initial, store)
        async with store.session() as session:
            await session.execute(text(
                'INSERT INTO "Users" ("Id", "FirstName", "LastName", "Email") '
                "VALUES (1, 'Ada', 'Lovelace', 'ada@example.com')"
            ))

        await runner.apply(drop_last_name, store)
        assert 'LastName' not in await column_info(store, 'Users')

        await runner.revert(store)
        columns = await column_info(store, 'Users')
        assert columns['LastName']['nullable']

        async with store.session() as session:
            row = (await session.execute(text('SELECT "FirstName", "LastName" FROM "Users"'))).one()
        assert tuple(row) == ('Ada', None)

    async def test_order_violation(self, runner, store, initial):
        later = generate_migration(initial.up, 'later', order_key=50)
        await runner.apply(later, store)

        with pytest.raises(OrderError):
            await runner.apply(initial, store)
        assert [r.name for r in await load_history(store)] == ['later']

    async def test_apply_all(self, runner, store, initial, drop_last_name, add_nick):
        results = await runner.apply_all([add_nick, initial, drop_last_name], store)

        assert [r.migration.name for r in results] == ['initial', 'drop_last_name', 'add_nick']
        assert await runner.apply_all([initial, drop_last_name, add_nick], store) == []
        assert 'Nick' in await column_info(store, 'Users')

    async def test_tampered_migration_refused(self, runner, store, initial):
        tampered = replace(initial, checksum='0' * 64)

        with pytest.raises(ConflictError, match='failed validation'):
            await runner.apply(tampered, store)
        assert await table_names(store) == []


class TestRevert:
    """Test reverting migrations."""

    async def test_apply_then_revert_restores_schema(self, runner, store, initial, drop_last_name, declared):
        await runner.apply(initial, store)
        await runner.apply(drop_last_name, store)

        result = await runner.revert(store)

        assert result.outcome == MigrationOutcome.REVERTED
        assert result.migration.identifier == '20_drop_last_name'
        assert await load_applied_snapshot(store) == declared

        await runner.revert(store)
        assert await table_names(store) == []
        assert await load_history(store) == []

    async def test_revert_empty_history(self, runner, store):
        with pytest.raises(EmptyHistoryError) as exc_info:
            await runner.revert(store)

        assert exc_info.value.exit_code == 5
        assert await table_names(store) == []
        assert await load_history(store) == []


class TestApplyUpTo:
    """Test moving the store to a named migration."""

    async def test_forward(self, runner, store, initial, drop_last_name, add_nick):
        migrations = [initial, drop_last_name, add_nick]

        results = await runner.apply_up_to('drop_last_name', store, migrations)

        assert [r.migration.name for r in results] == ['initial', 'drop_last_name']
        assert [r.name for r in await load_history(store)] == ['initial', 'drop_last_name']

    async def test_backward(self, runner, store, initial, drop_last_name, add_nick):
        migrations = [initial, drop_last_name, add_nick]
        await runner.apply_all(migrations, store)

        results = await runner.apply_up_to('10_initial', store, migrations)

        assert [r.migration.name for r in results] == ['add_nick', 'drop_last_name']
        assert all(r.outcome == MigrationOutcome.REVERTED for r in results)
        assert [r.name for r in await load_history(store)] == ['initial']

    async def test_already_there(self, runner, store, initial):
        await runner.apply(initial, store)
        assert await runner.apply_up_to('initial', store, [initial]) == []

    async def test_unknown_name(self, runner, store, initial):
        with pytest.raises(NotFoundError):
            await runner.apply_up_to('add_orders', store, [initial])


class TestDryRun:
    """Test dry runs."""

    async def test_apply_dry_run(self, runner, store, initial, drop_last_name):
        results = await runner.apply_all([initial, drop_last_name], store, dry_run=True)

        assert [r.outcome for r in results] == [MigrationOutcome.DRY_RUN] * 2
        assert all(r.record is None for r in results)
        assert await table_names(store) == []
        assert await load_history(store) == []

    async def test_revert_dry_run(self, runner, store, initial, declared):
        await runner.apply(initial, store)

        result = await runner.revert(store, dry_run=True)

        assert result.outcome == MigrationOutcome.DRY_RUN
        assert await table_names(store) == ['Addresses', 'Users']
        assert await load_applied_snapshot(store) == declared


class TestFailures:
    """Test rollback when the store rejects an operation."""

    async def test_execution_error_rolls_back(self, runner, store, declared):
        broken = generate_migration(
            diff(declared, Snapshot.empty()) + [Operation(
                OperationKind.ADD_COLUMN, 'Ghosts',
                column=ColumnDef('Name', 'varchar(10)', nullable=True),
            )],
            'broken',
            order_key=10,
        )

        with pytest.raises(ExecutionError) as exc_info:
            await runner.apply(broken, store)

        error = exc_info.value
        assert error.exit_code == 3
        assert error.operation_index == 2
        assert error.operation.table == 'Ghosts'
        assert error.outcome == MigrationOutcome.APPLIED_NONE
        assert await table_names(store) == []
        assert await load_history(store) == []

    async def test_failure_keeps_earlier_migrations(self, runner, store, initial):
        broken = generate_migration([Operation(
            OperationKind.ADD_COLUMN, 'Ghosts',
            column=ColumnDef('Name', 'varchar(10)', nullable=True),
        )], 'broken', order_key=20)

        with pytest.raises(ExecutionError):
            await runner.apply_all([initial, broken], store)

        assert [r.name for r in await load_history(store)] == ['initial']
        assert await table_names(store) == ['Addresses', 'Users']


class TestLocking:
    """Test the store migration lock."""

    async def test_lock_timeout(self, store, initial):
        runner = MigrationRunner(lock_timeout=0.05)
        holder = MigrationLock(timeout=1.0)

        async with holder.hold(store.identity):
            with pytest.raises(LockTimeoutError) as exc_info:
                await runner.apply(initial, store)

        assert exc_info.value.exit_code == 2
        assert await table_names(store) == []

    async def test_concurrent_runs_serialize(self, store, initial, drop_last_name):
        runner = MigrationRunner(lock_timeout=5.0)

        first, second = await asyncio.gather(
            runner.apply_all([initial, drop_last_name], store),
            runner.apply_all([initial, drop_last_name], store),
        )

        assert sorted([len(first), len(second)]) == [0, 2]
        assert [r.name for r in await load_history(store)] == ['initial', 'drop_last_name']

    async def test_lock_released_after_failure(self, runner, store):
        with pytest.raises(EmptyHistoryError):
            await runner.revert(store)

        lock = MigrationLock().get_lock(store.identity)
        assert not lock.locked()


class TestBusyStore:
    """Test a store held locked by another transaction."""

    @pytest.fixture
    async def busy_store(self, tmp_path):
        store = StoreDatabase(str(tmp_path / 'busy.db'), busy_timeout=0.1)
        yield store
        await store.close()

    @pytest.fixture
    def exclusive(self, tmp_path):
        """Second connection holding an exclusive lock on the store file"""
        conn = sqlite3.connect(tmp_path / 'busy.db', isolation_level=None)
        conn.execute('BEGIN EXCLUSIVE')
        yield conn
        if conn.in_transaction:
            conn.execute('ROLLBACK')
        conn.close()

    async def test_apply_times_out(self, runner, busy_store, exclusive, initial):
        with pytest.raises(LockTimeoutError, match='database is locked') as exc_info:
            await runner.apply(initial, busy_store)
        assert exc_info.value.exit_code == 2

        exclusive.execute('ROLLBACK')
        result = await runner.apply(initial, busy_store)
        assert result.outcome == MigrationOutcome.APPLIED

    async def test_readers_time_out(self, busy_store, exclusive):
        with pytest.raises(LockTimeoutError):
            await load_history(busy_store)
        with pytest.raises(LockTimeoutError):
            await load_applied_snapshot(busy_store)

    async def test_revert_times_out(self, runner, busy_store, exclusive):
        with pytest.raises(LockTimeoutError):
            await runner.revert(busy_store)

        lock = MigrationLock().get_lock(busy_store.identity)
        assert not lock.locked()

    async def test_other_driver_errors(self):
        with pytest.raises(ExecutionError) as exc_info:
            async with store_errors('reading the history'):
                raise OperationalError('SELECT 1', {}, sqlite3.OperationalError('disk I/O error'))

        assert exc_info.value.exit_code == 3
        assert exc_info.value.outcome == MigrationOutcome.APPLIED_NONE
        assert 'disk I/O error' in exc_info.value.message


class TestExecutor:
    """Test the executor inside a caller-owned transaction."""

    async def test_caller_rollback_discards_migration(self, store, initial):
        executor = MigrationExecutor(store.dialect)

        async with store.session_factory() as session:
            await HistoryStore(session).ensure_table()
            result = await executor.apply_migration(session, initial, 'tests')
            assert result.outcome == MigrationOutcome.APPLIED
            assert result.record.applied_by == 'tests'
            await session.rollback()

        assert await table_names(store) == []
        assert await load_history(store) == []
