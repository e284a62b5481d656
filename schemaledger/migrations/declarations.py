#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Entity declarations and snapshot construction.

Entity declarations describe the schema an application wants: tables,
fields with types and nullability, key annotations, relationships and
unique constraints. They can come from:

- a YAML or JSON file:

    entities:
      - table: Users
        fields:
          - {name: Id, type: int, key: true}
          - {name: FirstName, type: varchar(10)}
          - {name: LastName, type: varchar(10), nullable: true}
          - {name: Email, type: varchar(20), unique: true}
      - table: Addresses
        fields:
          - {name: IdUser, type: int, key: true}
          - {name: Town, type: varchar(10)}
        relationships:
          - {columns: [IdUser], references: Users}

- SQLAlchemy MetaData (or a declarative Base), given directly or as a
  'package.module:attribute' reference.

build_snapshot() validates the declarations and produces the canonical
Snapshot the diff engine works on.
"""

import hashlib
import importlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml
from sqlalchemy import ForeignKeyConstraint, MetaData, UniqueConstraint
from sqlalchemy.sql.elements import TextClause

from schemaledger.errors import ValidationError

from .coltypes import from_sqlalchemy, normalize_type
from .schema import ColumnDef, ForeignKeyDef, Snapshot, TableDef, UniqueDef

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 63
NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,62}$')


@dataclass
class FieldDeclaration:
    """A declared column."""

    name: str
    type: str
    nullable: bool = False
    key: bool = False
    default: Optional[str] = None
    unique: bool = False
    renamed_from: Optional[str] = None


@dataclass
class RelationshipDeclaration:
    """
    A declared foreign key.

    `ref_columns` defaults to the referenced table's primary key.
    """

    columns: list[str]
    references: str
    ref_columns: Optional[list[str]] = None
    name: Optional[str] = None


@dataclass
class EntityDeclaration:
    """A declared table."""

    table: str
    fields: list[FieldDeclaration]
    relationships: list[RelationshipDeclaration] = field(default_factory=list)
    unique: list[list[str]] = field(default_factory=list)
    renamed_from: Optional[str] = None


@dataclass
class RenameHints:
    """
    Rename annotations extracted from declarations.

    Attributes:
        tables: new table name -> previous table name
        columns: (table, new column name) -> previous column name
    """

    tables: dict[str, str] = field(default_factory=dict)
    columns: dict[tuple[str, str], str] = field(default_factory=dict)


# ============================================================================
# Snapshot construction
# ============================================================================

def validate_name(name: Any, what: str) -> str:
    """Check a table or column name, returning it unchanged."""
    if not isinstance(name, str):
        raise ValidationError(f"{what} name must be string, got {type(name).__name__}")
    if not NAME_PATTERN.match(name):
        raise ValidationError(
            f"{what} name '{name}' invalid. Must start with a letter or underscore, "
            f"contain only letters, digits, underscores, max 63 chars"
        )
    return name


def constraint_name(*parts: str) -> str:
    """
    Join parts into a generated constraint name of at most 63 characters.

    Longer names are cut and end in the first 8 hex digits of the full
    name's SHA-256, so they stay stable and distinct.

    Example:
        >>> constraint_name('uq', 'Users', 'Email')
        'uq_Users_Email'
    """
    name = '_'.join(parts)
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode('utf-8')).hexdigest()[:8]
    return f"{name[:MAX_NAME_LENGTH - len(digest) - 1]}_{digest}"


def _build_table(entity: EntityDeclaration) -> TableDef:
    """Build a TableDef without cross-table checks."""
    table_name = validate_name(entity.table, 'Table')

    if not entity.fields:
        raise ValidationError(f"Table '{table_name}' must have at least one field")

    columns = []
    seen = set()
    primary_key = []
    unique = []

    for decl in entity.fields:
        column_name = validate_name(decl.name, 'Column')
        if column_name in seen:
            raise ValidationError(
                f"Duplicate field name '{column_name}' in table '{table_name}'"
            )
        seen.add(column_name)

        if decl.key:
            if decl.nullable:
                raise ValidationError(
                    f"Key field '{table_name}.{column_name}' cannot be nullable"
                )
            primary_key.append(column_name)

        columns.append(ColumnDef(
            name=column_name,
            type=normalize_type(decl.type),
            nullable=decl.nullable,
            default=None if decl.default is None else str(decl.default),
        ))

        if decl.unique:
            unique.append(UniqueDef(
                name=constraint_name('uq', table_name, column_name),
                columns=(column_name,),
            ))

    for columns_group in entity.unique:
        group = tuple(columns_group)
        missing = [c for c in group if c not in seen]
        if not group or missing:
            raise ValidationError(
                f"Unique constraint on '{table_name}' references unknown "
                f"columns: {missing or 'none given'}"
            )
        unique.append(UniqueDef(
            name=constraint_name('uq', table_name, *sorted(group)),
            columns=group,
        ))

    return TableDef(
        name=table_name,
        columns=tuple(columns),
        primary_key=tuple(primary_key),
        unique=_dedupe_unique(unique),
    )


def _dedupe_unique(constraints: list[UniqueDef]) -> tuple[UniqueDef, ...]:
    by_columns = {}
    for constraint in constraints:
        by_columns.setdefault(constraint.columns, constraint)
    return tuple(by_columns.values())


def _resolve_relationship(
    table: TableDef,
    rel: RelationshipDeclaration,
    tables: dict[str, TableDef],
) -> ForeignKeyDef:
    target = tables.get(rel.references)
    if target is None:
        raise ValidationError(
            f"Relationship on '{table.name}' references unknown table "
            f"'{rel.references}'"
        )

    local = list(rel.columns)
    missing = [c for c in local if table.column(c) is None]
    if not local or missing:
        raise ValidationError(
            f"Relationship on '{table.name}' uses unknown columns: "
            f"{missing or 'none given'}"
        )

    remote = list(rel.ref_columns) if rel.ref_columns else list(target.primary_key)
    if not remote:
        raise ValidationError(
            f"Relationship {table.name} -> {target.name} needs ref_columns: "
            f"'{target.name}' has no primary key"
        )
    missing = [c for c in remote if target.column(c) is None]
    if missing:
        raise ValidationError(
            f"Relationship {table.name} -> {target.name} references unknown "
            f"columns {missing}"
        )
    if len(local) != len(remote):
        raise ValidationError(
            f"Relationship {table.name} -> {target.name} has {len(local)} "
            f"local columns but {len(remote)} referenced columns"
        )

    if rel.name:
        name = validate_name(rel.name, 'Constraint')
    else:
        name = constraint_name('fk', table.name, *local, target.name)
    return ForeignKeyDef(
        name=name,
        columns=tuple(local),
        ref_table=target.name,
        ref_columns=tuple(remote),
    )


def build_snapshot(entities: Iterable[EntityDeclaration]) -> Snapshot:
    """
    Validate entity declarations and build the canonical snapshot.

    Declaring the same table twice is allowed when both declarations are
    identical; any disagreement is rejected.

    Args:
        entities: Entity declarations

    Returns:
        Snapshot with one TableDef per declared table

    Raises:
        ValidationError: If a relationship references a missing table or
            column, a table is declared twice with conflicting primary keys
            or definitions, or a name, type or key is invalid

    Example:
        >>> snapshot = build_snapshot([
        ...     EntityDeclaration('Users', [FieldDeclaration('Id', 'int', key=True)]),
        ... ])
        >>> snapshot.table('Users').primary_key
        ('Id',)
    """
    entities = list(entities)
    tables = {}
    relationships = {}
    folded_names = {}

    for entity in entities:
        table = _build_table(entity)

        existing = tables.get(table.name)
        if existing is not None:
            if existing.primary_key != table.primary_key:
                raise ValidationError(
                    f"Table '{table.name}' declared twice with conflicting "
                    f"primary keys {list(existing.primary_key)} and "
                    f"{list(table.primary_key)}"
                )
            if existing != table:
                raise ValidationError(
                    f"Table '{table.name}' declared twice with conflicting "
                    f"definitions"
                )
            logger.debug("Ignoring duplicate declaration of table %s", table.name)
        else:
            folded = table.name.lower()
            if folded in folded_names:
                raise ValidationError(
                    f"Tables '{folded_names[folded]}' and '{table.name}' "
                    f"differ only in case"
                )
            folded_names[folded] = table.name
            tables[table.name] = table

        relationships.setdefault(table.name, []).extend(entity.relationships)

    resolved = {}
    for name, table in tables.items():
        foreign_keys = {}
        for rel in relationships.get(name, ()):
            fk = _resolve_relationship(table, rel, tables)
            previous = foreign_keys.get(fk.name)
            if previous is not None and previous != fk:
                raise ValidationError(
                    f"Foreign key '{fk.name}' declared twice with different targets"
                )
            foreign_keys[fk.name] = fk
        resolved[name] = TableDef(
            name=table.name,
            columns=table.columns,
            primary_key=table.primary_key,
            foreign_keys=tuple(foreign_keys.values()),
            unique=table.unique,
        )

    return Snapshot(resolved)


def rename_hints(entities: Iterable[EntityDeclaration]) -> RenameHints:
    """Collect `renamed_from` annotations from declarations."""
    hints = RenameHints()
    for entity in entities:
        if entity.renamed_from:
            hints.tables[entity.table] = entity.renamed_from
        for decl in entity.fields:
            if decl.renamed_from:
                hints.columns[(entity.table, decl.name)] = decl.renamed_from
    return hints


# ============================================================================
# Declaration sources
# ============================================================================

def _as_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{what} must be boolean")
    return value


def _field_from_dict(data: Any, table: str, index: int) -> FieldDeclaration:
    if not isinstance(data, dict):
        raise ValidationError(f"Field {index} of '{table}' must be a dictionary")
    if 'name' not in data:
        raise ValidationError(f"Field {index} of '{table}' missing 'name'")
    if 'type' not in data:
        raise ValidationError(f"Field {index} of '{table}' missing 'type'")

    where = f"Field '{table}.{data['name']}'"
    if 'nullable' in data:
        nullable = _as_bool(data['nullable'], f"{where} 'nullable'")
    elif 'required' in data:
        nullable = not _as_bool(data['required'], f"{where} 'required'")
    else:
        nullable = False

    return FieldDeclaration(
        name=data['name'],
        type=data['type'],
        nullable=nullable,
        key=_as_bool(data.get('key', False), f"{where} 'key'"),
        default=data.get('default'),
        unique=_as_bool(data.get('unique', False), f"{where} 'unique'"),
        renamed_from=data.get('renamed_from'),
    )


def _relationship_from_dict(data: Any, table: str) -> RelationshipDeclaration:
    if not isinstance(data, dict) or 'references' not in data:
        raise ValidationError(
            f"Relationship on '{table}' must be a dictionary with 'references'"
        )
    columns = data.get('columns', data.get('column'))
    ref_columns = data.get('ref_columns', data.get('ref_column'))
    if isinstance(columns, str):
        columns = [columns]
    if isinstance(ref_columns, str):
        ref_columns = [ref_columns]
    return RelationshipDeclaration(
        columns=list(columns or []),
        references=data['references'],
        ref_columns=list(ref_columns) if ref_columns else None,
        name=data.get('name'),
    )


def entities_from_dict(data: Union[dict, list]) -> list[EntityDeclaration]:
    """
    Parse entity declarations from plain data (as loaded from YAML/JSON).

    Accepts either {'entities': [...]} or the bare list.

    Raises:
        ValidationError: If the structure is malformed
    """
    if isinstance(data, dict):
        data = data.get('entities')
    if not isinstance(data, list):
        raise ValidationError("Declarations must contain an 'entities' list")

    entities = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValidationError(f"Entity {i} must be a dictionary")
        table = item.get('table', item.get('name'))
        if table is None:
            raise ValidationError(f"Entity {i} missing 'table'")
        fields = item.get('fields')
        if not isinstance(fields, list):
            raise ValidationError(f"'fields' of '{table}' must be a list")

        entities.append(EntityDeclaration(
            table=table,
            fields=[_field_from_dict(f, table, j) for j, f in enumerate(fields)],
            relationships=[
                _relationship_from_dict(r, table)
                for r in item.get('relationships', [])
            ],
            unique=[
                [group] if isinstance(group, str) else list(group)
                for group in item.get('unique', [])
            ],
            renamed_from=item.get('renamed_from'),
        ))
    return entities


def _server_default(column) -> Optional[str]:
    default = column.server_default
    if default is None:
        return None
    arg = getattr(default, 'arg', None)
    if isinstance(arg, TextClause):
        return arg.text
    if isinstance(arg, str):
        return arg
    return None


def entities_from_metadata(metadata: MetaData) -> list[EntityDeclaration]:
    """
    Derive entity declarations from SQLAlchemy MetaData.

    Example:
        >>> from myapp.models import Base
        >>> entities = entities_from_metadata(Base.metadata)
    """
    entities = []
    for table in metadata.sorted_tables:
        fields = [
            FieldDeclaration(
                name=column.name,
                type=from_sqlalchemy(column.type),
                nullable=bool(column.nullable) and not column.primary_key,
                key=column.primary_key,
                default=_server_default(column),
            )
            for column in table.columns
        ]

        relationships = []
        unique = []
        seen_unique = set()
        for constraint in table.constraints:
            if isinstance(constraint, ForeignKeyConstraint):
                relationships.append(RelationshipDeclaration(
                    columns=[c.name for c in constraint.columns],
                    references=constraint.referred_table.name,
                    ref_columns=[e.column.name for e in constraint.elements],
                    name=constraint.name if isinstance(constraint.name, str) else None,
                ))
            elif isinstance(constraint, UniqueConstraint):
                group = tuple(sorted(c.name for c in constraint.columns))
                if group and group not in seen_unique:
                    seen_unique.add(group)
                    unique.append(list(group))

        entities.append(EntityDeclaration(
            table=table.name,
            fields=fields,
            relationships=relationships,
            unique=unique,
        ))
    return entities


def _import_reference(reference: str) -> MetaData:
    module_name, _, attribute = reference.partition(':')
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValidationError(f"Cannot import '{module_name}': {e}") from e

    target = module
    for part in attribute.split('.'):
        if not hasattr(target, part):
            raise ValidationError(f"'{reference}' not found")
        target = getattr(target, part)

    if isinstance(target, MetaData):
        return target
    metadata = getattr(target, 'metadata', None)
    if isinstance(metadata, MetaData):
        return metadata
    raise ValidationError(f"'{reference}' is not MetaData or a declarative Base")


def load_entities(source: Union[str, Path, MetaData]) -> list[EntityDeclaration]:
    """
    Load entity declarations from a file, an import reference or MetaData.

    Args:
        source: Path to a .yaml/.yml/.json file, a 'module:attribute'
            reference to MetaData or a declarative Base, or MetaData

    Returns:
        List of EntityDeclaration

    Raises:
        ValidationError: If the source cannot be read or is malformed
    """
    if isinstance(source, MetaData):
        return entities_from_metadata(source)

    path = Path(source)
    if path.suffix.lower() in ('.yaml', '.yml', '.json'):
        if not path.exists():
            raise ValidationError(f"Entity declarations not found: {path}")
        with open(path, 'r', encoding='utf-8') as fp:
            try:
                if path.suffix.lower() == '.json':
                    data = json.load(fp)
                else:
                    data = yaml.safe_load(fp)
            except (json.JSONDecodeError, yaml.YAMLError) as e:
                raise ValidationError(f"Cannot parse {path}: {e}") from e
        logger.debug("Loaded entity declarations from %s", path)
        return entities_from_dict(data)

    if ':' in str(source):
        return entities_from_metadata(_import_reference(str(source)))

    raise ValidationError(
        f"Unsupported entity source '{source}'. Use a .yaml/.json file or "
        f"a 'module:attribute' reference"
    )
