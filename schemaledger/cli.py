#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Command line interface.

Usage:
    migrate new add_users
    migrate list
    migrate status
    migrate up [--to add_users] [--dry-run]
    migrate down [--dry-run]
    migrate remove-last
    migrate script [--dialect postgresql] [--down]

Global options (before the command) override the config file and the
environment: --config, --database-url, --migrations-dir, --entities,
--lock-timeout, --log-level.

Every failure kind exits with its own status code (see schemaledger.errors).
"""
import argparse
import asyncio
import logging
import sys

from schemaledger.config import load_settings, setup_logging
from schemaledger.database import StoreDatabase
from schemaledger.errors import ConfigurationError, ConflictError, MigrationError, NotFoundError
from schemaledger.migrations import (
    MigrationManager,
    MigrationRunner,
    MigrationValidator,
    build_snapshot,
    diff,
    generate_migration,
    load_applied_snapshot,
    load_entities,
    load_history,
    pending_migrations,
    render_migrations,
    render_sql,
    rename_hints,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='migrate',
        description='Generate and apply reversible schema migrations',
    )
    parser.add_argument('--config', help='Config file (JSON or YAML)')
    parser.add_argument('--database-url', help='Store URL or SQLite file path')
    parser.add_argument('--migrations-dir', help='Directory holding migration files')
    parser.add_argument('--entities',
                        help="Entity declarations (.yaml/.json file or 'module:attr')")
    parser.add_argument('--lock-timeout', type=float,
                        help='Seconds to wait for the migration lock')
    parser.add_argument('--log-level', help='Logging level (debug, info, warning, ...)')

    subparsers = parser.add_subparsers(dest='command', required=True)

    new = subparsers.add_parser('new', help='Generate a migration from the entity declarations')
    new.add_argument('name', help="Migration name (e.g. 'add_users')")
    new.add_argument('--allow-destructive', action='store_true',
                     help='Allow changes that may lose data')
    new.add_argument('--accept-data-loss', action='store_true',
                     help='Allow a down migration that cannot restore data')
    new.add_argument('--sql', action='store_true', help='Also print the up SQL')

    subparsers.add_parser('list', help='List migrations and whether they are applied')
    subparsers.add_parser('status', help='Show applied and pending migrations')

    up = subparsers.add_parser('up', help='Apply pending migrations')
    up.add_argument('--to', metavar='NAME',
                    help='Apply or revert until this migration is the last applied')
    up.add_argument('--dry-run', action='store_true', help='Execute and roll back')

    down = subparsers.add_parser('down', help='Revert the last applied migration')
    down.add_argument('--dry-run', action='store_true', help='Execute and roll back')

    subparsers.add_parser('remove-last', help='Delete the latest migration file if unapplied')

    script = subparsers.add_parser('script', help='Print SQL for pending migrations')
    script.add_argument('--dialect', help='SQL dialect (defaults to the store dialect)')
    script.add_argument('--down', action='store_true',
                        help='Print the SQL reverting the pending migrations')

    return parser


async def cmd_new(args, settings, store, manager) -> int:
    if not settings.entities:
        raise ConfigurationError(
            "No entity declarations configured (use --entities or 'entities')"
        )
    entities = load_entities(settings.entities)
    declared = build_snapshot(entities)

    records = await load_history(store)
    migrations = manager.discover_migrations()
    pending = pending_migrations(records, migrations)
    base = manager.pending_snapshot(await load_applied_snapshot(store), pending)

    operations = diff(
        declared,
        base,
        allow_destructive=args.allow_destructive,
        renames=rename_hints(entities),
    )
    if not operations:
        print("No schema changes detected")
        return 0

    keys = [m.order_key for m in migrations] + [r.order_key for r in records]
    migration = generate_migration(
        operations,
        args.name,
        previous_order_key=max(keys) if keys else None,
        accept_data_loss=args.accept_data_loss,
    )
    path = manager.write_migration(migration)

    print(f"✓ Created {path}")
    for op in migration.up:
        print(f"    {op.describe()}")
    if args.sql:
        print(render_sql(migration.up, settings.dialect or store.dialect))
    return 0


def _data_loss_flag(migration) -> str:
    return ' (data loss on revert)' if migration.data_loss else ''


async def cmd_list(args, settings, store, manager) -> int:
    records = await load_history(store)
    migrations = manager.discover_migrations()
    files = {m.order_key for m in migrations}

    for record in records:
        missing = '' if record.order_key in files else ' (migration file missing)'
        print(
            f"{record.identifier}  applied {record.applied_at:%Y-%m-%d %H:%M:%S} "
            f"by {record.applied_by}{_data_loss_flag(record)}{missing}"
        )

    applied = {r.order_key for r in records}
    for migration in migrations:
        if migration.order_key not in applied:
            print(f"{migration.identifier}  pending{_data_loss_flag(migration)}")
    return 0


async def cmd_status(args, settings, store, manager) -> int:
    records = await load_history(store)
    migrations = {m.order_key: m for m in manager.discover_migrations()}
    validator = MigrationValidator(store.dialect)

    problems = []
    for record in records:
        migration = migrations.get(record.order_key)
        if migration is None:
            problems.append(f"{record.identifier}: applied but migration file is missing")
        else:
            problems.extend(str(w) for w in validator.verify_checksums(migration, record.checksum))

    applied_keys = {r.order_key for r in records}
    pending = [m for key, m in sorted(migrations.items()) if key not in applied_keys]

    print(f"Store: {store.identity}")
    print(f"Applied: {len(records)}")
    for record in records:
        print(f"    {record.identifier}  {record.applied_at:%Y-%m-%d %H:%M:%S}  by {record.applied_by}")
    print(f"Pending: {len(pending)}")
    for migration in pending:
        print(f"    {migration.identifier}")

    if problems:
        for problem in problems:
            print(f"✗ {problem}", file=sys.stderr)
        return ConflictError.exit_code
    return 0


async def cmd_up(args, settings, store, manager) -> int:
    runner = MigrationRunner(settings.lock_timeout, settings.applied_by)
    migrations = manager.discover_migrations()

    if args.to:
        results = await runner.apply_up_to(args.to, store, migrations, dry_run=args.dry_run)
    else:
        results = await runner.apply_all(migrations, store, dry_run=args.dry_run)

    if not results:
        print("Already up to date")
    for result in results:
        print(f"✓ {result.migration.identifier}  {result.outcome.value}  ({result.execution_time_ms}ms)")
    return 0


async def cmd_down(args, settings, store, manager) -> int:
    runner = MigrationRunner(settings.lock_timeout, settings.applied_by)
    result = await runner.revert(store, dry_run=args.dry_run)
    print(f"✓ {result.migration.identifier}  {result.outcome.value}  ({result.execution_time_ms}ms)")
    return 0


async def cmd_remove_last(args, settings, store, manager) -> int:
    migration = manager.latest_migration()
    if migration is None:
        raise NotFoundError("No migration files to remove")

    applied = {r.order_key for r in await load_history(store)}
    if migration.order_key in applied:
        raise ConflictError(
            f"Migration {migration.identifier} is applied; revert it first with 'migrate down'"
        )

    manager.delete_migration(migration)
    print(f"✓ Removed {migration.filename}")
    return 0


async def cmd_script(args, settings, store, manager) -> int:
    pending = pending_migrations(await load_history(store), manager.discover_migrations())
    if not pending:
        print("-- No pending migrations")
        return 0

    dialect = args.dialect or settings.dialect or store.dialect
    if args.down:
        print(render_migrations(list(reversed(pending)), dialect, down=True))
    else:
        print(render_migrations(pending, dialect))
    return 0


COMMANDS = {
    'new': cmd_new,
    'list': cmd_list,
    'status': cmd_status,
    'up': cmd_up,
    'down': cmd_down,
    'remove-last': cmd_remove_last,
    'script': cmd_script,
}


async def run(args, settings) -> int:
    store = StoreDatabase(settings.database_url, settings.busy_timeout)
    manager = MigrationManager(settings.migrations_dir)
    try:
        return await COMMANDS[args.command](args, settings, store, manager)
    finally:
        await store.close()


def main(argv=None) -> int:
    """Entry point for the migrate command; returns the exit status."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config, {
            'database_url': args.database_url,
            'migrations_dir': args.migrations_dir,
            'entities': args.entities,
            'lock_timeout': args.lock_timeout,
            'log_level': args.log_level,
        })
        setup_logging(settings)
        return asyncio.run(run(args, settings))
    except MigrationError as e:
        logger.debug('%s failed', args.command, exc_info=True)
        print(f"✗ {e}", file=sys.stderr)
        return e.exit_code
