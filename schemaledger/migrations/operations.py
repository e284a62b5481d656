"""
Schema operations.

An Operation is one atomic schema change. All kinds share a single frozen
dataclass tagged by OperationKind; each kind fills in only the payload it
needs to be applied and inverted:

    create_table / drop_table     table_def (the full table)
    rename_table                  table, new_name
    add_column / drop_column      column
    alter_column                  previous (old column), column (new column)
    rename_column                 name (old column name), new_name
    add_foreign_key / drop_...    foreign_key
    add_unique / drop_unique      unique

apply_operation() folds an operation onto a Snapshot. Replaying every
recorded up-operation from an empty snapshot rebuilds the applied schema.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

from schemaledger.errors import ConflictError

from .coltypes import is_narrowing
from .schema import ColumnDef, ForeignKeyDef, Snapshot, TableDef, UniqueDef


class OperationKind(Enum):
    """Kinds of schema operations."""
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    RENAME_TABLE = "rename_table"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    ALTER_COLUMN = "alter_column"
    RENAME_COLUMN = "rename_column"
    ADD_FOREIGN_KEY = "add_foreign_key"
    DROP_FOREIGN_KEY = "drop_foreign_key"
    ADD_UNIQUE = "add_unique"
    DROP_UNIQUE = "drop_unique"


@dataclass(frozen=True)
class Operation:
    """
    A single schema change.

    Attributes:
        kind: Operation kind
        table: Table the operation targets (old name for rename_table)
        table_def: Full table for create_table/drop_table
        column: Column for add/drop, new column for alter_column
        previous: Old column for alter_column
        name: Old column name for rename_column
        new_name: New table or column name for renames
        foreign_key: Constraint for add/drop_foreign_key
        unique: Constraint for add/drop_unique
        lossy: Set on down-operations that cannot restore the exact previous
            schema (accepted data loss)

    Example:
        >>> op = Operation(OperationKind.DROP_COLUMN, 'Users',
        ...                column=ColumnDef('LastName', 'varchar(10)', nullable=True))
        >>> op.describe()
        'drop column Users.LastName'
    """

    kind: OperationKind
    table: str
    table_def: Optional[TableDef] = None
    column: Optional[ColumnDef] = None
    previous: Optional[ColumnDef] = None
    name: Optional[str] = None
    new_name: Optional[str] = None
    foreign_key: Optional[ForeignKeyDef] = None
    unique: Optional[UniqueDef] = None
    lossy: bool = False

    def describe(self) -> str:
        """Short human-readable description for logs and errors."""
        kind = self.kind
        if kind in (OperationKind.CREATE_TABLE, OperationKind.DROP_TABLE):
            verb = 'create' if kind == OperationKind.CREATE_TABLE else 'drop'
            return f"{verb} table {self.table}"
        if kind == OperationKind.RENAME_TABLE:
            return f"rename table {self.table} to {self.new_name}"
        if kind == OperationKind.ADD_COLUMN:
            return f"add column {self.table}.{self.column.name}"
        if kind == OperationKind.DROP_COLUMN:
            return f"drop column {self.table}.{self.column.name}"
        if kind == OperationKind.ALTER_COLUMN:
            return (
                f"alter column {self.table}.{self.column.name} "
                f"({_column_summary(self.previous)} -> {_column_summary(self.column)})"
            )
        if kind == OperationKind.RENAME_COLUMN:
            return f"rename column {self.table}.{self.name} to {self.new_name}"
        if kind == OperationKind.ADD_FOREIGN_KEY:
            return f"add foreign key {self.foreign_key.name} on {self.table}"
        if kind == OperationKind.DROP_FOREIGN_KEY:
            return f"drop foreign key {self.foreign_key.name} on {self.table}"
        if kind == OperationKind.ADD_UNIQUE:
            return f"add unique {self.unique.name} on {self.table}"
        return f"drop unique {self.unique.name} on {self.table}"

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict, omitting empty payload."""
        data = {'kind': self.kind.value, 'table': self.table}
        if self.table_def is not None:
            data['table_def'] = self.table_def.to_dict()
        if self.column is not None:
            data['column'] = self.column.to_dict()
        if self.previous is not None:
            data['previous'] = self.previous.to_dict()
        if self.name is not None:
            data['name'] = self.name
        if self.new_name is not None:
            data['new_name'] = self.new_name
        if self.foreign_key is not None:
            data['foreign_key'] = self.foreign_key.to_dict()
        if self.unique is not None:
            data['unique'] = self.unique.to_dict()
        if self.lossy:
            data['lossy'] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Operation':
        """Deserialize an operation written by to_dict()."""
        return cls(
            kind=OperationKind(data['kind']),
            table=data['table'],
            table_def=(
                TableDef.from_dict(data['table_def'])
                if 'table_def' in data else None
            ),
            column=ColumnDef.from_dict(data['column']) if 'column' in data else None,
            previous=(
                ColumnDef.from_dict(data['previous'])
                if 'previous' in data else None
            ),
            name=data.get('name'),
            new_name=data.get('new_name'),
            foreign_key=(
                ForeignKeyDef.from_dict(data['foreign_key'])
                if 'foreign_key' in data else None
            ),
            unique=UniqueDef.from_dict(data['unique']) if 'unique' in data else None,
            lossy=bool(data.get('lossy', False)),
        )


def destructive_reason(op: Operation) -> Optional[str]:
    """
    Explain why an operation may destroy data, or None when it cannot.

    Dropping a nullable column is not destructive; dropping a table is,
    since the table may hold rows.
    """
    if op.kind == OperationKind.DROP_TABLE:
        return f"drop table {op.table} (all rows are deleted)"
    if op.kind == OperationKind.DROP_COLUMN and not op.column.nullable:
        return f"drop NOT NULL column {op.table}.{op.column.name}"
    if op.kind == OperationKind.ALTER_COLUMN:
        if is_narrowing(op.previous.type, op.column.type):
            return (
                f"narrow {op.table}.{op.column.name} from "
                f"{op.previous.type} to {op.column.type}"
            )
        if op.previous.nullable and not op.column.nullable:
            return f"make {op.table}.{op.column.name} NOT NULL"
    return None


def _column_summary(column: Optional[ColumnDef]) -> str:
    if column is None:
        return '?'
    return f"{column.type}{' null' if column.nullable else ' not null'}"


# ============================================================================
# Snapshot folding
# ============================================================================

def _require_table(snapshot: Snapshot, op: Operation) -> TableDef:
    table = snapshot.table(op.table)
    if table is None:
        raise ConflictError(
            f"Cannot {op.describe()}: table '{op.table}' does not exist"
        )
    return table


def apply_operation(snapshot: Snapshot, op: Operation) -> Snapshot:
    """
    Fold one operation onto a snapshot, returning the new snapshot.

    Raises:
        ConflictError: If the operation does not fit the snapshot (missing
            table or column, table already exists, ...)
    """
    kind = op.kind

    if kind == OperationKind.CREATE_TABLE:
        if op.table in snapshot:
            raise ConflictError(f"Cannot {op.describe()}: table already exists")
        return snapshot.with_table(op.table_def)

    table = _require_table(snapshot, op)

    if kind == OperationKind.DROP_TABLE:
        return snapshot.without_table(op.table)

    if kind == OperationKind.RENAME_TABLE:
        if op.new_name in snapshot:
            raise ConflictError(f"Cannot {op.describe()}: target exists")
        renamed = replace(table, name=op.new_name)
        updated = snapshot.without_table(op.table).with_table(renamed)
        # Keep other tables' foreign keys pointing at the renamed table
        for other in list(updated):
            if op.table in other.referenced_tables():
                updated = updated.with_table(replace(other, foreign_keys=tuple(
                    replace(fk, ref_table=op.new_name) if fk.ref_table == op.table else fk
                    for fk in other.foreign_keys
                )))
        return updated

    if kind == OperationKind.ADD_COLUMN:
        if table.column(op.column.name) is not None:
            raise ConflictError(f"Cannot {op.describe()}: column already exists")
        return snapshot.with_table(table.with_column(op.column))

    if kind in (OperationKind.DROP_COLUMN, OperationKind.ALTER_COLUMN):
        if table.column(op.column.name) is None:
            raise ConflictError(f"Cannot {op.describe()}: no such column")
        if kind == OperationKind.DROP_COLUMN:
            return snapshot.with_table(table.without_column(op.column.name))
        return snapshot.with_table(table.with_column(op.column))

    if kind == OperationKind.RENAME_COLUMN:
        column = table.column(op.name)
        if column is None or table.column(op.new_name) is not None:
            raise ConflictError(f"Cannot {op.describe()}")
        return _rename_column(snapshot, table, op.name, op.new_name)

    if kind == OperationKind.ADD_FOREIGN_KEY:
        if table.foreign_key(op.foreign_key.name) is not None:
            raise ConflictError(f"Cannot {op.describe()}: already exists")
        return snapshot.with_table(replace(
            table, foreign_keys=table.foreign_keys + (op.foreign_key,)
        ))

    if kind == OperationKind.DROP_FOREIGN_KEY:
        if table.foreign_key(op.foreign_key.name) is None:
            raise ConflictError(f"Cannot {op.describe()}: no such constraint")
        return snapshot.with_table(replace(table, foreign_keys=tuple(
            fk for fk in table.foreign_keys if fk.name != op.foreign_key.name
        )))

    if kind == OperationKind.ADD_UNIQUE:
        if table.unique_constraint(op.unique.name) is not None:
            raise ConflictError(f"Cannot {op.describe()}: already exists")
        return snapshot.with_table(replace(table, unique=table.unique + (op.unique,)))

    if kind == OperationKind.DROP_UNIQUE:
        if table.unique_constraint(op.unique.name) is None:
            raise ConflictError(f"Cannot {op.describe()}: no such constraint")
        return snapshot.with_table(replace(table, unique=tuple(
            u for u in table.unique if u.name != op.unique.name
        )))

    raise ConflictError(f"Unknown operation kind {kind!r}")


def _rename_column(
    snapshot: Snapshot,
    table: TableDef,
    old: str,
    new: str,
) -> Snapshot:
    def swap(names):
        return tuple(new if n == old else n for n in names)

    renamed = TableDef(
        name=table.name,
        columns=tuple(
            replace(c, name=new) if c.name == old else c for c in table.columns
        ),
        primary_key=swap(table.primary_key),
        foreign_keys=tuple(
            replace(fk, columns=swap(fk.columns)) for fk in table.foreign_keys
        ),
        unique=tuple(replace(u, columns=swap(u.columns)) for u in table.unique),
    )
    updated = snapshot.with_table(renamed)

    for other in list(updated):
        if not any(
            fk.ref_table == table.name and old in fk.ref_columns
            for fk in other.foreign_keys
        ):
            continue
        updated = updated.with_table(replace(other, foreign_keys=tuple(
            replace(fk, ref_columns=swap(fk.ref_columns))
            if fk.ref_table == table.name else fk
            for fk in other.foreign_keys
        )))
    return updated


def apply_operations(snapshot: Snapshot, operations: Iterable[Operation]) -> Snapshot:
    """Fold a sequence of operations onto a snapshot in order."""
    for op in operations:
        snapshot = apply_operation(snapshot, op)
    return snapshot
