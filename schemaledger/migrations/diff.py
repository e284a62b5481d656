"""
Diff engine.

diff() compares a declared snapshot with the applied snapshot and returns
the ordered operations that transform the applied schema into the declared
one. It is a pure function: no store is touched.

Operations are emitted in this order:

    1. renames (tables, then columns) requested through rename hints
    2. constraint drops
    3. table creations (referenced tables first)
    4. column additions
    5. column alterations
    6. constraint additions
    7. column removals
    8. table drops (referrers first)

so that no table is dropped while a foreign key still points at it and no
constraint is added before the columns and tables it names exist.
"""

import logging
from dataclasses import replace
from typing import Optional

from schemaledger.errors import UnresolvableDiffError

from .declarations import RenameHints
from .operations import (
    Operation,
    OperationKind,
    apply_operation,
    destructive_reason,
)
from .schema import Snapshot, TableDef

logger = logging.getLogger(__name__)


def diff(
    declared: Snapshot,
    applied: Snapshot,
    allow_destructive: bool = False,
    renames: Optional[RenameHints] = None,
) -> list[Operation]:
    """
    Compute the operations transforming `applied` into `declared`.

    Args:
        declared: Snapshot derived from entity declarations
        applied: Snapshot rebuilt from the migration history
        allow_destructive: Permit changes that may lose data
        renames: Optional rename hints; matching table/column pairs are
            renamed instead of dropped and recreated

    Returns:
        Ordered list of operations ([] when the snapshots are equal)

    Raises:
        UnresolvableDiffError: If a change may lose data and
            allow_destructive is False, or if a change cannot be expressed
            at all (primary key changes)

    Example:
        >>> ops = diff(declared, Snapshot.empty())
        >>> [op.kind.value for op in ops]
        ['create_table', 'create_table']
    """
    if declared == applied:
        return []

    working = applied
    rename_ops = []
    if renames:
        working, rename_ops = _plan_renames(declared, working, renames)

    added = sorted(set(declared.tables) - set(working.tables))
    removed = sorted(set(working.tables) - set(declared.tables))
    common = sorted(set(declared.tables) & set(working.tables))

    drop_constraints = []
    add_constraints = []
    add_columns = []
    alter_columns = []
    drop_columns = []
    unsupported = []

    for name in common:
        old = working.table(name)
        new = declared.table(name)
        if old == new:
            continue

        if old.primary_key != new.primary_key:
            unsupported.append(
                f"change primary key of {name} from {list(old.primary_key)} "
                f"to {list(new.primary_key)}"
            )
            continue

        dropped, created = _diff_constraints(old, new)
        drop_constraints.extend(dropped)
        add_constraints.extend(created)

        for column in new.columns:
            previous = old.column(column.name)
            if previous is None:
                add_columns.append(Operation(
                    OperationKind.ADD_COLUMN, name, column=column
                ))
            elif previous != column:
                alter_columns.append(Operation(
                    OperationKind.ALTER_COLUMN, name,
                    column=column, previous=previous,
                ))

        for column in old.columns:
            if new.column(column.name) is None:
                drop_columns.append(Operation(
                    OperationKind.DROP_COLUMN, name, column=column
                ))

    if unsupported:
        raise UnresolvableDiffError(
            "Schema change cannot be expressed as migration operations: "
            + "; ".join(unsupported),
            details={'changes': unsupported},
        )

    # Constraint drops must land on the working snapshot before table drops
    # are ordered, so cycle-breaking drops are computed against it.
    for op in drop_constraints:
        working = apply_operation(working, op)
    cycle_drops, drop_order = _order_drops(working, removed)
    for op in cycle_drops:
        working = apply_operation(working, op)

    create_ops, deferred = _order_creates(declared, added)

    operations = (
        rename_ops
        + drop_constraints
        + cycle_drops
        + create_ops
        + add_columns
        + alter_columns
        + deferred
        + add_constraints
        + drop_columns
        + [
            Operation(
                OperationKind.DROP_TABLE, name, table_def=working.table(name)
            )
            for name in drop_order
        ]
    )

    problems = [
        reason for reason in (destructive_reason(op) for op in operations)
        if reason is not None
    ]
    if problems and not allow_destructive:
        raise UnresolvableDiffError(
            f"{len(problems)} change(s) may lose data: {'; '.join(problems)}. "
            f"Re-run with allow_destructive to accept.",
            details={'changes': problems},
        )

    logger.debug(
        "Diff produced %d operation(s) (%d destructive)",
        len(operations),
        len(problems),
    )
    return operations


def _plan_renames(
    declared: Snapshot,
    working: Snapshot,
    renames: RenameHints,
) -> tuple[Snapshot, list[Operation]]:
    """Emit renames whose source still exists and whose target is declared."""
    operations = []

    for new_name, old_name in sorted(renames.tables.items()):
        if old_name in working and new_name not in working and new_name in declared:
            op = Operation(OperationKind.RENAME_TABLE, old_name, new_name=new_name)
            working = apply_operation(working, op)
            operations.append(op)

    for (table_name, new_name), old_name in sorted(renames.columns.items()):
        table = working.table(table_name)
        target = declared.table(table_name)
        if table is None or target is None:
            continue
        if (
            table.column(old_name) is not None
            and table.column(new_name) is None
            and target.column(new_name) is not None
        ):
            op = Operation(
                OperationKind.RENAME_COLUMN, table_name,
                name=old_name, new_name=new_name,
            )
            working = apply_operation(working, op)
            operations.append(op)

    return working, operations


def _diff_constraints(
    old: TableDef,
    new: TableDef,
) -> tuple[list[Operation], list[Operation]]:
    """Constraint drops and additions for a table present on both sides."""
    dropped = []
    created = []

    old_fks = {fk.name: fk for fk in old.foreign_keys}
    new_fks = {fk.name: fk for fk in new.foreign_keys}
    for name in sorted(old_fks):
        if new_fks.get(name) != old_fks[name]:
            dropped.append(Operation(
                OperationKind.DROP_FOREIGN_KEY, old.name, foreign_key=old_fks[name]
            ))
    for name in sorted(new_fks):
        if old_fks.get(name) != new_fks[name]:
            created.append(Operation(
                OperationKind.ADD_FOREIGN_KEY, new.name, foreign_key=new_fks[name]
            ))

    old_unique = {u.name: u for u in old.unique}
    new_unique = {u.name: u for u in new.unique}
    for name in sorted(old_unique):
        if new_unique.get(name) != old_unique[name]:
            dropped.append(Operation(
                OperationKind.DROP_UNIQUE, old.name, unique=old_unique[name]
            ))
    for name in sorted(new_unique):
        if old_unique.get(name) != new_unique[name]:
            created.append(Operation(
                OperationKind.ADD_UNIQUE, new.name, unique=new_unique[name]
            ))

    return dropped, created


def _order_creates(
    declared: Snapshot,
    added: list[str],
) -> tuple[list[Operation], list[Operation]]:
    """
    Order table creations so referenced tables are created first.

    When the remaining tables reference each other in a cycle, the
    alphabetically first one is created without the foreign keys that
    point at tables not created yet; those are returned as deferred
    add_foreign_key operations.
    """
    remaining = set(added)
    creates = []
    deferred = []

    while remaining:
        ready = sorted(
            name for name in remaining
            if not (declared.table(name).referenced_tables() & remaining) - {name}
        )
        if ready:
            name = ready[0]
            table = declared.table(name)
        else:
            name = min(remaining)
            full = declared.table(name)
            inline = tuple(
                fk for fk in full.foreign_keys
                if fk.ref_table == name or fk.ref_table not in remaining
            )
            deferred.extend(
                Operation(OperationKind.ADD_FOREIGN_KEY, name, foreign_key=fk)
                for fk in full.foreign_keys if fk not in inline
            )
            table = replace(full, foreign_keys=inline)

        creates.append(Operation(OperationKind.CREATE_TABLE, name, table_def=table))
        remaining.discard(name)

    return creates, deferred


def _order_drops(
    working: Snapshot,
    removed: list[str],
) -> tuple[list[Operation], list[str]]:
    """
    Order table drops so referrers are dropped before referenced tables.

    Returns drop_foreign_key operations needed to break reference cycles
    among the removed tables, and the drop order.
    """
    remaining = set(removed)
    cycle_drops = []
    order = []
    current = working

    def referenced_by_others(name):
        return any(
            name in current.table(other).referenced_tables()
            for other in remaining if other != name
        )

    while remaining:
        free = sorted(name for name in remaining if not referenced_by_others(name))
        if free:
            name = free[0]
        else:
            name = min(remaining)
            for other in sorted(remaining - {name}):
                for fk in current.table(other).foreign_keys:
                    if fk.ref_table == name:
                        op = Operation(
                            OperationKind.DROP_FOREIGN_KEY, other, foreign_key=fk
                        )
                        current = apply_operation(current, op)
                        cycle_drops.append(op)
        order.append(name)
        remaining.discard(name)

    return cycle_drops, order
