"""
Offline SQL scripts.

Renders migrations as SQL without touching a store, using alembic's
offline ("as_sql") mode, and pretty-prints the result with sqlparse.

SQLite can only perform some changes by copying the table, which needs
the live table definition; those operations are written as comments.
"""

import io
from typing import Iterable, Sequence

import sqlparse
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.exc import NoSuchModuleError

from schemaledger.errors import ConfigurationError

from .ddl import emit_operation, requires_sqlite_rebuild
from .migration import Migration
from .operations import Operation


def _offline_operations(dialect: str, buffer: io.StringIO) -> Operations:
    try:
        context = MigrationContext.configure(
            dialect_name=dialect,
            opts={
                'as_sql': True,
                'output_buffer': buffer,
                'literal_binds': True,
            },
        )
    except NoSuchModuleError as e:
        raise ConfigurationError(f"Unknown SQL dialect '{dialect}'") from e
    return Operations(context)


def render_sql(operations: Iterable[Operation], dialect: str = 'sqlite') -> str:
    """
    Render operations as a SQL script.

    Args:
        operations: Operations in execution order
        dialect: SQLAlchemy dialect name ('sqlite', 'postgresql', ...)

    Returns:
        Formatted SQL

    Raises:
        ConfigurationError: If the dialect is unknown

    Example:
        >>> print(render_sql(migration.up, 'postgresql'))
        CREATE TABLE "Users" (...);
    """
    buffer = io.StringIO()
    ops = _offline_operations(dialect, buffer)
    sqlite = dialect == 'sqlite'

    for op in operations:
        if sqlite and requires_sqlite_rebuild(op):
            buffer.write(
                f"-- {op.describe()}: SQLite recreates the table; "
                f"apply online with 'migrate up'\n\n"
            )
        else:
            emit_operation(ops, op, batch=False)

    return sqlparse.format(buffer.getvalue(), reindent=True, keyword_case='upper').strip()


def render_migrations(
    migrations: Sequence[Migration],
    dialect: str = 'sqlite',
    down: bool = False,
) -> str:
    """Render several migrations, each under a header comment."""
    parts = []
    for migration in migrations:
        direction = 'down' if down else 'up'
        operations = migration.down if down else migration.up
        parts.append(
            f"-- Migration {migration.identifier} ({direction})\n"
            + render_sql(operations, dialect)
        )
    return '\n\n'.join(parts)
