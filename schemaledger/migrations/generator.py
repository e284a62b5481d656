"""
Migration script generator.

Turns an ordered operation list into a Migration: the up operations as
given, and down operations built by structurally inverting each one and
reversing the order.

    create_table  <-> drop_table
    add_column    <-> drop_column
    rename_*      <-> rename_* back
    alter_column  <-> alter_column back
    add_*         <-> drop_* constraint

Some operations have no safe inverse: narrowing a type, dropping a NOT NULL
column, making a column NOT NULL. Generating a migration containing one
fails unless the caller accepts data loss, in which case the inverse is
still emitted, marked lossy.
"""

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Sequence

from schemaledger.errors import IrreversibleOperationError, ValidationError

from .coltypes import is_narrowing
from .migration import Migration, compute_checksum
from .operations import Operation, OperationKind

logger = logging.getLogger(__name__)

ORDER_KEY_FORMAT = '%Y%m%d%H%M%S'


def slugify(name: str) -> str:
    """
    Convert a migration name to its file-safe slug.

    Example:
        >>> slugify('AddUsers')
        'add_users'
        >>> slugify('initial schema')
        'initial_schema'
    """
    name = re.sub(r'(?<=[a-z0-9])(?=[A-Z])', '_', name.strip())
    return re.sub(r'[^a-z0-9]+', '_', name.lower()).strip('_')


def next_order_key(previous: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """
    Build an order key from the current UTC time.

    The key is bumped past `previous` when the clock has not moved on (or
    went backwards), keeping keys strictly increasing.
    """
    now = now or datetime.now(timezone.utc)
    key = int(now.strftime(ORDER_KEY_FORMAT))
    if previous is not None and key <= previous:
        key = previous + 1
    return key


def irreversible_reason(op: Operation) -> Optional[str]:
    """Explain why an operation's inverse cannot restore the prior state."""
    if op.kind == OperationKind.DROP_COLUMN and not op.column.nullable:
        return (
            f"{op.describe()}: the column can only be restored as nullable "
            f"and its values are lost"
        )
    if op.kind == OperationKind.ALTER_COLUMN:
        if is_narrowing(op.previous.type, op.column.type):
            return (
                f"{op.describe()}: values truncated by the narrower type "
                f"cannot be restored"
            )
        if op.previous.nullable and not op.column.nullable:
            return f"{op.describe()}: NULL values replaced cannot be restored"
    return None


def invert_operation(op: Operation) -> Operation:
    """
    Build the structural inverse of an operation.

    The inverse of drop_column re-adds the column with its original type
    and nullable=True, since the dropped values are not recoverable.
    """
    kind = op.kind

    if kind == OperationKind.CREATE_TABLE:
        return Operation(OperationKind.DROP_TABLE, op.table, table_def=op.table_def)
    if kind == OperationKind.DROP_TABLE:
        return Operation(OperationKind.CREATE_TABLE, op.table, table_def=op.table_def)
    if kind == OperationKind.RENAME_TABLE:
        return Operation(OperationKind.RENAME_TABLE, op.new_name, new_name=op.table)
    if kind == OperationKind.ADD_COLUMN:
        return Operation(OperationKind.DROP_COLUMN, op.table, column=op.column)
    if kind == OperationKind.DROP_COLUMN:
        restored = replace(op.column, nullable=True)
        return Operation(
            OperationKind.ADD_COLUMN, op.table,
            column=restored,
            lossy=restored != op.column,
        )
    if kind == OperationKind.ALTER_COLUMN:
        return Operation(
            OperationKind.ALTER_COLUMN, op.table,
            column=op.previous,
            previous=op.column,
            lossy=irreversible_reason(op) is not None,
        )
    if kind == OperationKind.RENAME_COLUMN:
        return Operation(
            OperationKind.RENAME_COLUMN, op.table,
            name=op.new_name, new_name=op.name,
        )
    if kind == OperationKind.ADD_FOREIGN_KEY:
        return Operation(
            OperationKind.DROP_FOREIGN_KEY, op.table, foreign_key=op.foreign_key
        )
    if kind == OperationKind.DROP_FOREIGN_KEY:
        return Operation(
            OperationKind.ADD_FOREIGN_KEY, op.table, foreign_key=op.foreign_key
        )
    if kind == OperationKind.ADD_UNIQUE:
        return Operation(OperationKind.DROP_UNIQUE, op.table, unique=op.unique)
    if kind == OperationKind.DROP_UNIQUE:
        return Operation(OperationKind.ADD_UNIQUE, op.table, unique=op.unique)
    raise ValidationError(f"Cannot invert unknown operation kind {kind!r}")


def generate_migration(
    operations: Sequence[Operation],
    name: str,
    order_key: Optional[int] = None,
    previous_order_key: Optional[int] = None,
    accept_data_loss: bool = False,
) -> Migration:
    """
    Generate a Migration from an ordered operation list.

    Args:
        operations: Up operations, in execution order
        name: Migration name (slugified, e.g. 'AddUsers' -> 'add_users')
        order_key: Explicit order key (defaults to a timestamp key)
        previous_order_key: Latest existing order key; generated keys are
            kept strictly greater
        accept_data_loss: Emit lossy inverses instead of failing

    Returns:
        Migration with matching up and down operations and its checksum

    Raises:
        ValidationError: If there are no operations or the name is empty
        IrreversibleOperationError: If an operation has no safe inverse and
            accept_data_loss is False
    """
    if not operations:
        raise ValidationError("Cannot generate a migration without operations")

    slug = slugify(name)
    if not slug:
        raise ValidationError(f"Invalid migration name '{name}'")

    problems = [
        reason for reason in (irreversible_reason(op) for op in operations)
        if reason is not None
    ]
    if problems and not accept_data_loss:
        raise IrreversibleOperationError(
            f"{len(problems)} operation(s) cannot be reverted safely: "
            f"{'; '.join(problems)}. Re-run accepting data loss to generate "
            f"a lossy down migration.",
            details={'operations': problems},
        )

    up = tuple(operations)
    down = tuple(invert_operation(op) for op in reversed(up))
    data_loss = any(op.lossy for op in down)
    if order_key is None:
        order_key = next_order_key(previous_order_key)
    elif previous_order_key is not None and order_key <= previous_order_key:
        raise ValidationError(
            f"Order key {order_key} must be greater than {previous_order_key}"
        )

    if data_loss:
        logger.warning(
            "Migration %s_%s reverts with data loss: %s",
            order_key, slug, '; '.join(problems),
        )

    return Migration(
        order_key=order_key,
        name=slug,
        up=up,
        down=down,
        checksum=compute_checksum(order_key, slug, up, down),
        data_loss=data_loss,
        created_at=datetime.now(timezone.utc),
    )
