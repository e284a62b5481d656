"""
Schema snapshot data model.

A Snapshot is the canonical, in-memory description of a schema at one
point in time: a mapping from table name to TableDef. Snapshots are built
from entity declarations (see declarations.py) or by folding migration
operations onto an empty snapshot (see operations.py).

Every collection inside a TableDef is sorted on construction, so two
snapshots compare equal whenever they describe the same tables, columns,
types, nullability and constraints, regardless of declaration order.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Optional


@dataclass(frozen=True)
class ColumnDef:
    """
    Column definition.

    Attributes:
        name: Column name
        type: Canonical column type (see coltypes.normalize_type)
        nullable: Whether NULL is allowed
        default: Server default as a SQL literal, or None
    """

    name: str
    type: str
    nullable: bool = False
    default: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'type': self.type,
            'nullable': self.nullable,
            'default': self.default,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ColumnDef':
        return cls(
            name=data['name'],
            type=data['type'],
            nullable=bool(data.get('nullable', False)),
            default=data.get('default'),
        )


@dataclass(frozen=True)
class ForeignKeyDef:
    """
    Named foreign key constraint.

    `columns[i]` references `ref_columns[i]`. Pairs are kept sorted by
    local column name.
    """

    name: str
    columns: tuple[str, ...]
    ref_table: str
    ref_columns: tuple[str, ...]

    def __post_init__(self):
        pairs = sorted(zip(self.columns, self.ref_columns))
        object.__setattr__(self, 'columns', tuple(p[0] for p in pairs))
        object.__setattr__(self, 'ref_columns', tuple(p[1] for p in pairs))

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'columns': list(self.columns),
            'ref_table': self.ref_table,
            'ref_columns': list(self.ref_columns),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ForeignKeyDef':
        return cls(
            name=data['name'],
            columns=tuple(data['columns']),
            ref_table=data['ref_table'],
            ref_columns=tuple(data['ref_columns']),
        )


@dataclass(frozen=True)
class UniqueDef:
    """Named unique constraint."""

    name: str
    columns: tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'columns', tuple(sorted(self.columns)))

    def to_dict(self) -> dict:
        return {'name': self.name, 'columns': list(self.columns)}

    @classmethod
    def from_dict(cls, data: dict) -> 'UniqueDef':
        return cls(name=data['name'], columns=tuple(data['columns']))


@dataclass(frozen=True)
class TableDef:
    """
    Table definition.

    Attributes:
        name: Table name
        columns: Column definitions, sorted by name
        primary_key: Primary key column names, sorted
        foreign_keys: Foreign keys, sorted by name
        unique: Unique constraints, sorted by name

    Example:
        >>> users = TableDef(
        ...     name='Users',
        ...     columns=(ColumnDef('Id', 'integer'), ColumnDef('Email', 'varchar(20)')),
        ...     primary_key=('Id',),
        ... )
        >>> [c.name for c in users.columns]
        ['Email', 'Id']
    """

    name: str
    columns: tuple[ColumnDef, ...]
    primary_key: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKeyDef, ...] = ()
    unique: tuple[UniqueDef, ...] = ()

    def __post_init__(self):
        object.__setattr__(
            self, 'columns', tuple(sorted(self.columns, key=lambda c: c.name))
        )
        object.__setattr__(self, 'primary_key', tuple(sorted(self.primary_key)))
        object.__setattr__(
            self,
            'foreign_keys',
            tuple(sorted(self.foreign_keys, key=lambda fk: fk.name)),
        )
        object.__setattr__(
            self, 'unique', tuple(sorted(self.unique, key=lambda u: u.name))
        )

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnDef]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def foreign_key(self, name: str) -> Optional[ForeignKeyDef]:
        for fk in self.foreign_keys:
            if fk.name == name:
                return fk
        return None

    def unique_constraint(self, name: str) -> Optional[UniqueDef]:
        for constraint in self.unique:
            if constraint.name == name:
                return constraint
        return None

    def referenced_tables(self) -> set[str]:
        return {fk.ref_table for fk in self.foreign_keys}

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'columns': [c.to_dict() for c in self.columns],
            'primary_key': list(self.primary_key),
            'foreign_keys': [fk.to_dict() for fk in self.foreign_keys],
            'unique': [u.to_dict() for u in self.unique],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TableDef':
        return cls(
            name=data['name'],
            columns=tuple(ColumnDef.from_dict(c) for c in data['columns']),
            primary_key=tuple(data.get('primary_key', ())),
            foreign_keys=tuple(
                ForeignKeyDef.from_dict(fk) for fk in data.get('foreign_keys', ())
            ),
            unique=tuple(UniqueDef.from_dict(u) for u in data.get('unique', ())),
        )

    # Copy-on-write helpers used when folding operations

    def with_column(self, column: ColumnDef) -> 'TableDef':
        others = tuple(c for c in self.columns if c.name != column.name)
        return replace(self, columns=others + (column,))

    def without_column(self, name: str) -> 'TableDef':
        return replace(
            self,
            columns=tuple(c for c in self.columns if c.name != name),
            primary_key=tuple(c for c in self.primary_key if c != name),
            unique=tuple(u for u in self.unique if name not in u.columns),
            foreign_keys=tuple(
                fk for fk in self.foreign_keys if name not in fk.columns
            ),
        )


@dataclass(frozen=True)
class Snapshot:
    """
    Canonical schema state: table name -> TableDef.

    Equality compares the table mapping, which is insensitive to insertion
    order.
    """

    tables: dict[str, TableDef] = field(default_factory=dict)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self.tables

    def __iter__(self) -> Iterator[TableDef]:
        for name in sorted(self.tables):
            yield self.tables[name]

    def __len__(self) -> int:
        return len(self.tables)

    def table(self, name: str) -> Optional[TableDef]:
        return self.tables.get(name)

    @property
    def table_names(self) -> list[str]:
        return sorted(self.tables)

    def with_table(self, table: TableDef) -> 'Snapshot':
        tables = dict(self.tables)
        tables[table.name] = table
        return Snapshot(tables)

    def without_table(self, name: str) -> 'Snapshot':
        tables = dict(self.tables)
        tables.pop(name, None)
        return Snapshot(tables)

    def to_dict(self) -> dict[str, Any]:
        return {'tables': [t.to_dict() for t in self]}

    @classmethod
    def from_dict(cls, data: dict) -> 'Snapshot':
        tables = [TableDef.from_dict(t) for t in data.get('tables', ())]
        return cls({t.name: t for t in tables})

    @classmethod
    def empty(cls) -> 'Snapshot':
        return cls({})
