"""
Schema migrations package.

This package provides:
- Snapshot model: ColumnDef, ForeignKeyDef, UniqueDef, TableDef, Snapshot
- Entity declarations: load_entities, build_snapshot, rename_hints
- Operation: Tagged schema change and snapshot folding
- diff: Declared vs. applied snapshot comparison
- generate_migration: Reversible migration generation
- Migration / AppliedMigration: Migration and history record models
- HistoryStore: Applied migration history in the store
- MigrationManager: Discovery, parsing and writing of migration files
- MigrationValidator: Safety and checksum checks
- MigrationExecutor / MigrationRunner: Transactional execution under lock
- render_sql: Offline SQL scripts
"""

from .declarations import (
    EntityDeclaration,
    FieldDeclaration,
    RelationshipDeclaration,
    RenameHints,
    build_snapshot,
    entities_from_dict,
    entities_from_metadata,
    load_entities,
    rename_hints,
)
from .diff import diff
from .generator import generate_migration, invert_operation, next_order_key
from .history import HistoryStore
from .migration import AppliedMigration, Migration, compute_checksum
from .migration_executor import (
    DryRunRollbackError,
    MigrationExecutor,
    MigrationOutcome,
    MigrationResult,
)
from .migration_manager import MigrationManager, find_migration, pending_migrations
from .migration_validator import MigrationValidator, ValidationWarning, WarningLevel
from .operations import Operation, OperationKind, apply_operation, apply_operations
from .runner import MigrationRunner, load_applied_snapshot, load_history
from .schema import ColumnDef, ForeignKeyDef, Snapshot, TableDef, UniqueDef
from .script import render_migrations, render_sql

__all__ = [
    'AppliedMigration',
    'ColumnDef',
    'DryRunRollbackError',
    'EntityDeclaration',
    'FieldDeclaration',
    'ForeignKeyDef',
    'HistoryStore',
    'Migration',
    'MigrationExecutor',
    'MigrationManager',
    'MigrationOutcome',
    'MigrationResult',
    'MigrationRunner',
    'MigrationValidator',
    'Operation',
    'OperationKind',
    'RelationshipDeclaration',
    'RenameHints',
    'Snapshot',
    'TableDef',
    'UniqueDef',
    'ValidationWarning',
    'WarningLevel',
    'apply_operation',
    'apply_operations',
    'build_snapshot',
    'compute_checksum',
    'diff',
    'entities_from_dict',
    'entities_from_metadata',
    'find_migration',
    'generate_migration',
    'invert_operation',
    'load_applied_snapshot',
    'load_entities',
    'load_history',
    'next_order_key',
    'pending_migrations',
    'render_migrations',
    'render_sql',
    'rename_hints',
]
