"""
Global pytest configuration and fixtures for schemaledger tests

Provides:
- Users/Addresses entity declarations used across the suite
- Temporary SQLite store and migrations directory
- Store inspection helpers
"""

import pytest
from sqlalchemy import inspect

from schemaledger.database import StoreDatabase
from schemaledger.migrations import (
    MigrationManager,
    build_snapshot,
    entities_from_dict,
)


# ============================================================================
# Entity Declarations
# ============================================================================

USERS = {
    'table': 'Users',
    'fields': [
        {'name': 'Id', 'type': 'int', 'key': True},
        {'name': 'FirstName', 'type': 'varchar(10)'},
        {'name': 'LastName', 'type': 'varchar(10)', 'nullable': True},
        {'name': 'Email', 'type': 'varchar(20)'},
    ],
}

ADDRESSES = {
    'table': 'Addresses',
    'fields': [
        {'name': 'IdUser', 'type': 'int', 'key': True},
        {'name': 'StreetNumber', 'type': 'int'},
        {'name': 'Street', 'type': 'varchar(10)'},
        {'name': 'ZipCode', 'type': 'int'},
        {'name': 'Town', 'type': 'varchar(10)'},
        {'name': 'Country', 'type': 'varchar(10)'},
    ],
}


@pytest.fixture
def entities_data():
    """Plain Users/Addresses declarations (as loaded from YAML)"""
    return {'entities': [dict(ADDRESSES), dict(USERS)]}


@pytest.fixture
def entities(entities_data):
    """Parsed Users/Addresses declarations"""
    return entities_from_dict(entities_data)


@pytest.fixture
def declared(entities):
    """Snapshot of the Users/Addresses declarations"""
    return build_snapshot(entities)


# ============================================================================
# Store and Migration Files
# ============================================================================

@pytest.fixture
async def store(tmp_path):
    """Empty SQLite store in a temporary file"""
    db = StoreDatabase(str(tmp_path / 'store.db'))
    yield db
    await db.close()


@pytest.fixture
def manager(tmp_path):
    """MigrationManager over a temporary migrations directory"""
    return MigrationManager(tmp_path / 'migrations')


async def table_names(store):
    """User tables in the store (the history table excluded)"""
    async with store.engine.connect() as conn:
        names = await conn.run_sync(lambda c: inspect(c).get_table_names())
    return sorted(n for n in names if n != 'schema_migrations')


async def column_info(store, table):
    """Column name -> reflected column dict"""
    async with store.engine.connect() as conn:
        columns = await conn.run_sync(lambda c: inspect(c).get_columns(table))
    return {c['name']: c for c in columns}
