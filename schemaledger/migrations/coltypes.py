"""
Canonical column types.

Declared types are normalised to a small canonical vocabulary so that two
declarations spelling the same type differently produce equal snapshots:

    smallint, integer, biginteger, float, decimal(p,s), varchar(n), text,
    boolean, date, datetime

The module also decides which type changes are safe widenings and which
may lose data, and maps canonical types to and from SQLAlchemy types.
"""

import re

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.types import TypeEngine

from schemaledger.errors import ValidationError

TYPE_PATTERN = re.compile(
    r'^([a-z][a-z0-9_]*)\s*(?:\(\s*(max|\d+)\s*(?:,\s*(\d+)\s*)?\))?$'
)

DEFAULT_VARCHAR_LENGTH = 255
DEFAULT_DECIMAL = (18, 2)

_ALIASES = {
    'smallint': 'smallint',
    'int2': 'smallint',
    'int': 'integer',
    'int4': 'integer',
    'integer': 'integer',
    'bigint': 'biginteger',
    'int8': 'biginteger',
    'long': 'biginteger',
    'biginteger': 'biginteger',
    'float': 'float',
    'double': 'float',
    'real': 'float',
    'decimal': 'decimal',
    'numeric': 'decimal',
    'varchar': 'varchar',
    'nvarchar': 'varchar',
    'string': 'varchar',
    'text': 'text',
    'clob': 'text',
    'bool': 'boolean',
    'boolean': 'boolean',
    'bit': 'boolean',
    'date': 'date',
    'datetime': 'datetime',
    'datetime2': 'datetime',
    'timestamp': 'datetime',
}

_INTEGER_RANK = {'smallint': 1, 'integer': 2, 'biginteger': 3}


def normalize_type(raw: str) -> str:
    """
    Normalise a declared type to its canonical spelling.

    Args:
        raw: Declared type (e.g. 'int', 'nvarchar(50)', 'Decimal(10, 2)')

    Returns:
        Canonical type string (e.g. 'integer', 'varchar(50)', 'decimal(10,2)')

    Raises:
        ValidationError: If the type is unknown or its parameters are invalid

    Example:
        >>> normalize_type('VARCHAR( 10 )')
        'varchar(10)'
        >>> normalize_type('nvarchar(max)')
        'text'
    """
    if not isinstance(raw, str):
        raise ValidationError(f"Column type must be a string, got {type(raw).__name__}")

    match = TYPE_PATTERN.match(raw.strip().lower())
    if not match:
        raise ValidationError(f"Invalid column type '{raw}'")

    alias, first, second = match.groups()
    family = _ALIASES.get(alias)
    if family is None:
        raise ValidationError(
            f"Unknown column type '{raw}'. Valid types: "
            f"{', '.join(sorted(set(_ALIASES.values())))}"
        )

    if family == 'varchar':
        if first == 'max':
            return 'text'
        length = int(first) if first else DEFAULT_VARCHAR_LENGTH
        if second is not None or length < 1:
            raise ValidationError(f"Invalid varchar length in '{raw}'")
        return f'varchar({length})'

    if family == 'decimal':
        if first == 'max':
            raise ValidationError(f"Invalid decimal precision in '{raw}'")
        if first is None:
            precision, scale = DEFAULT_DECIMAL
        else:
            precision = int(first)
            scale = int(second) if second is not None else 0
        if precision < 1 or scale > precision:
            raise ValidationError(f"Invalid decimal precision/scale in '{raw}'")
        return f'decimal({precision},{scale})'

    if first is not None:
        raise ValidationError(f"Type '{family}' takes no parameters: '{raw}'")
    return family


def parse_type(canonical: str) -> tuple[str, tuple[int, ...]]:
    """Split a canonical type into its family and integer parameters."""
    match = TYPE_PATTERN.match(canonical)
    if not match:
        raise ValidationError(f"Invalid canonical type '{canonical}'")
    family, first, second = match.groups()
    params = tuple(int(p) for p in (first, second) if p is not None)
    return family, params


def is_narrowing(old: str, new: str) -> bool:
    """
    Decide whether changing a column from `old` to `new` may lose data.

    Widenings (longer varchar, varchar -> text, larger integer, larger
    decimal, date -> datetime) are safe. Every other change, including any
    change across type families, is narrowing.

    Example:
        >>> is_narrowing('varchar(10)', 'varchar(20)')
        False
        >>> is_narrowing('varchar(20)', 'varchar(10)')
        True
    """
    if old == new:
        return False

    old_family, old_params = parse_type(old)
    new_family, new_params = parse_type(new)

    if old_family in _INTEGER_RANK and new_family in _INTEGER_RANK:
        return _INTEGER_RANK[new_family] < _INTEGER_RANK[old_family]

    if old_family == 'varchar' and new_family == 'varchar':
        return new_params[0] < old_params[0]

    if old_family == 'varchar' and new_family == 'text':
        return False

    if old_family == 'decimal' and new_family == 'decimal':
        old_precision, old_scale = old_params
        new_precision, new_scale = new_params
        return (
            new_scale < old_scale
            or (new_precision - new_scale) < (old_precision - old_scale)
        )

    if old_family == 'date' and new_family == 'datetime':
        return False

    return True


def to_sqlalchemy(canonical: str) -> TypeEngine:
    """Build the SQLAlchemy type for a canonical type."""
    family, params = parse_type(canonical)

    if family == 'smallint':
        return SmallInteger()
    if family == 'integer':
        return Integer()
    if family == 'biginteger':
        return BigInteger()
    if family == 'float':
        return Float()
    if family == 'decimal':
        return Numeric(precision=params[0], scale=params[1])
    if family == 'varchar':
        return String(params[0])
    if family == 'text':
        return Text()
    if family == 'boolean':
        return Boolean()
    if family == 'date':
        return Date()
    if family == 'datetime':
        return DateTime()
    raise ValidationError(f"No SQLAlchemy type for '{canonical}'")


def from_sqlalchemy(type_: TypeEngine) -> str:
    """
    Map a SQLAlchemy column type to its canonical type.

    Subclasses are checked before their bases (BigInteger before Integer,
    Float before Numeric, Text before String).

    Raises:
        ValidationError: If the type has no canonical equivalent
    """
    if isinstance(type_, BigInteger):
        return 'biginteger'
    if isinstance(type_, SmallInteger):
        return 'smallint'
    if isinstance(type_, Integer):
        return 'integer'
    if isinstance(type_, Float):
        return 'float'
    if isinstance(type_, Numeric):
        precision = type_.precision or DEFAULT_DECIMAL[0]
        scale = type_.scale if type_.scale is not None else 0
        return f'decimal({precision},{scale})'
    if isinstance(type_, Text):
        return 'text'
    if isinstance(type_, String):
        if type_.length:
            return f'varchar({type_.length})'
        return 'text'
    if isinstance(type_, Boolean):
        return 'boolean'
    if isinstance(type_, DateTime):
        return 'datetime'
    if isinstance(type_, Date):
        return 'date'
    raise ValidationError(f"Unsupported SQLAlchemy type {type_!r}")
