"""
Translation of schema operations to alembic Operations calls.

Online (against a live connection) every column and constraint change goes
through alembic's batch mode, which on SQLite copies the table when ALTER
TABLE cannot express the change and on other dialects emits plain ALTER
statements. Offline (SQL scripts) the plain, non-batch directives are used.

Table and column renames always use the native statements, so that SQLite
rewrites the foreign keys of other tables that point at them.
"""

from alembic.operations import Operations
from sqlalchemy import (
    Column,
    ForeignKeyConstraint,
    PrimaryKeyConstraint,
    UniqueConstraint,
    text,
)

from .coltypes import to_sqlalchemy
from .operations import Operation, OperationKind
from .schema import ColumnDef, TableDef

# Operations SQLite can only perform by copying the table
SQLITE_REBUILD_KINDS = frozenset({
    OperationKind.DROP_COLUMN,
    OperationKind.ALTER_COLUMN,
    OperationKind.ADD_FOREIGN_KEY,
    OperationKind.DROP_FOREIGN_KEY,
    OperationKind.ADD_UNIQUE,
    OperationKind.DROP_UNIQUE,
})


def requires_sqlite_rebuild(op: Operation) -> bool:
    """True when SQLite must recreate the table to perform `op`."""
    if op.kind in SQLITE_REBUILD_KINDS:
        return True
    # ALTER TABLE ADD COLUMN cannot add a NOT NULL column without a default
    return (
        op.kind == OperationKind.ADD_COLUMN
        and not op.column.nullable
        and op.column.default is None
    )


def build_column(column: ColumnDef) -> Column:
    return Column(
        column.name,
        to_sqlalchemy(column.type),
        nullable=column.nullable,
        server_default=text(column.default) if column.default is not None else None,
    )


def table_elements(table: TableDef) -> list:
    """Columns and constraints for op.create_table()."""
    elements = [build_column(column) for column in table.columns]

    if table.primary_key:
        # unnamed; rename_table leaves constraint names behind
        elements.append(PrimaryKeyConstraint(*table.primary_key))

    for fk in table.foreign_keys:
        elements.append(ForeignKeyConstraint(
            list(fk.columns),
            [f"{fk.ref_table}.{column}" for column in fk.ref_columns],
            name=fk.name,
        ))

    for unique in table.unique:
        elements.append(UniqueConstraint(*unique.columns, name=unique.name))

    return elements


def _alter_kwargs(op: Operation) -> dict:
    """alembic alter_column() arguments for the parts that changed."""
    old, new = op.previous, op.column
    kwargs = {
        'existing_type': to_sqlalchemy(old.type),
        'existing_nullable': old.nullable,
    }
    if old.default is not None:
        kwargs['existing_server_default'] = text(old.default)
    if old.type != new.type:
        kwargs['type_'] = to_sqlalchemy(new.type)
    if old.nullable != new.nullable:
        kwargs['nullable'] = new.nullable
    if old.default != new.default:
        # None drops the default
        kwargs['server_default'] = text(new.default) if new.default is not None else None
    return kwargs


def emit_operation(ops: Operations, op: Operation, batch: bool = True, sqlite: bool = False) -> None:
    """
    Run one operation through alembic.

    Args:
        ops: alembic Operations bound to a MigrationContext
        op: Operation to run
        batch: Use batch mode for column and constraint changes (online)
        sqlite: Target is SQLite (forces a table copy where ALTER TABLE
            cannot add the column)
    """
    kind = op.kind

    if kind == OperationKind.CREATE_TABLE:
        ops.create_table(op.table, *table_elements(op.table_def))
    elif kind == OperationKind.DROP_TABLE:
        ops.drop_table(op.table)
    elif kind == OperationKind.RENAME_TABLE:
        ops.rename_table(op.table, op.new_name)
    elif kind == OperationKind.RENAME_COLUMN:
        ops.alter_column(op.table, op.name, new_column_name=op.new_name)
    elif batch:
        recreate = 'always' if sqlite and requires_sqlite_rebuild(op) else 'auto'
        with ops.batch_alter_table(op.table, recreate=recreate) as batch_op:
            _emit_batch_change(batch_op, op)
    else:
        _emit_change(ops, op)


def _emit_batch_change(batch_op, op: Operation) -> None:
    kind = op.kind
    if kind == OperationKind.ADD_COLUMN:
        batch_op.add_column(build_column(op.column))
    elif kind == OperationKind.DROP_COLUMN:
        batch_op.drop_column(op.column.name)
    elif kind == OperationKind.ALTER_COLUMN:
        batch_op.alter_column(op.column.name, **_alter_kwargs(op))
    elif kind == OperationKind.ADD_FOREIGN_KEY:
        fk = op.foreign_key
        batch_op.create_foreign_key(fk.name, fk.ref_table, list(fk.columns), list(fk.ref_columns))
    elif kind == OperationKind.DROP_FOREIGN_KEY:
        batch_op.drop_constraint(op.foreign_key.name, type_='foreignkey')
    elif kind == OperationKind.ADD_UNIQUE:
        batch_op.create_unique_constraint(op.unique.name, list(op.unique.columns))
    elif kind == OperationKind.DROP_UNIQUE:
        batch_op.drop_constraint(op.unique.name, type_='unique')
    else:
        raise ValueError(f"Unsupported batch operation {kind.value}")


def _emit_change(ops: Operations, op: Operation) -> None:
    kind = op.kind
    if kind == OperationKind.ADD_COLUMN:
        ops.add_column(op.table, build_column(op.column))
    elif kind == OperationKind.DROP_COLUMN:
        ops.drop_column(op.table, op.column.name)
    elif kind == OperationKind.ALTER_COLUMN:
        ops.alter_column(op.table, op.column.name, **_alter_kwargs(op))
    elif kind == OperationKind.ADD_FOREIGN_KEY:
        fk = op.foreign_key
        ops.create_foreign_key(
            fk.name, op.table, fk.ref_table, list(fk.columns), list(fk.ref_columns)
        )
    elif kind == OperationKind.DROP_FOREIGN_KEY:
        ops.drop_constraint(op.foreign_key.name, op.table, type_='foreignkey')
    elif kind == OperationKind.ADD_UNIQUE:
        ops.create_unique_constraint(op.unique.name, op.table, list(op.unique.columns))
    elif kind == OperationKind.DROP_UNIQUE:
        ops.drop_constraint(op.unique.name, op.table, type_='unique')
    else:
        raise ValueError(f"Unsupported operation {kind.value}")
