"""
Unit tests for entity declarations and snapshot construction.
"""
import json

import pytest
from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, UniqueConstraint

from schemaledger.errors import ValidationError
from schemaledger.migrations import (
    EntityDeclaration,
    FieldDeclaration,
    RelationshipDeclaration,
    build_snapshot,
    entities_from_dict,
    entities_from_metadata,
    load_entities,
    rename_hints,
)


class TestBuildSnapshot:
    """Test validation and canonical snapshot construction."""

    def test_users_addresses(self, declared):
        assert declared.table_names == ['Addresses', 'Users']

        users = declared.table('Users')
        assert users.primary_key == ('Id',)
        assert users.column('LastName').nullable
        assert not users.column('FirstName').nullable
        assert users.column('Email').type == 'varchar(20)'
        assert declared.table('Addresses').column('ZipCode').type == 'integer'

    def test_declaration_order_irrelevant(self, entities):
        assert build_snapshot(entities) == build_snapshot(list(reversed(entities)))

        shuffled = [
            EntityDeclaration(e.table, list(reversed(e.fields))) for e in entities
        ]
        assert build_snapshot(shuffled) == build_snapshot(entities)

    def test_relationship_defaults_to_primary_key(self):
        snapshot = build_snapshot([
            EntityDeclaration('Users', [FieldDeclaration('Id', 'int', key=True)]),
            EntityDeclaration(
                'Addresses',
                [FieldDeclaration('IdUser', 'int', key=True)],
                relationships=[RelationshipDeclaration(['IdUser'], 'Users')],
            ),
        ])

        fk, = snapshot.table('Addresses').foreign_keys
        assert fk.name == 'fk_Addresses_IdUser_Users'
        assert fk.ref_table == 'Users'
        assert fk.ref_columns == ('Id',)

    def test_long_generated_names_are_shortened(self):
        owner = 'CustomerAccountBillingProfiles'
        child = 'CustomerAccountBillingProfileAddresses'
        entities = [
            EntityDeclaration(owner, [FieldDeclaration('ProfileId', 'int', key=True)]),
            EntityDeclaration(
                child,
                [
                    FieldDeclaration('ProfileId', 'int', key=True),
                    FieldDeclaration('PostalCodeIdentifierValue', 'varchar(10)', unique=True),
                ],
                relationships=[RelationshipDeclaration(['ProfileId'], owner)],
            ),
        ]

        snapshot = build_snapshot(entities)

        fk, = snapshot.table(child).foreign_keys
        unique, = snapshot.table(child).unique
        for name in (fk.name, unique.name):
            assert len(name) == 63
        assert fk.name.startswith(f'fk_{child}_Profile')
        assert unique.name.startswith(f'uq_{child}_Postal')
        assert fk.name != unique.name
        assert build_snapshot(entities) == snapshot

    def test_explicit_constraint_name_validated(self):
        with pytest.raises(ValidationError, match='Constraint name'):
            build_snapshot([
                EntityDeclaration('Users', [FieldDeclaration('Id', 'int', key=True)]),
                EntityDeclaration(
                    'Addresses',
                    [FieldDeclaration('IdUser', 'int', key=True)],
                    relationships=[RelationshipDeclaration(['IdUser'], 'Users', name='x' * 64)],
                ),
            ])

    def test_relationship_to_missing_table(self):
        with pytest.raises(ValidationError, match="unknown table 'Ghosts'"):
            build_snapshot([
                EntityDeclaration(
                    'Addresses',
                    [FieldDeclaration('IdUser', 'int', key=True)],
                    relationships=[RelationshipDeclaration(['IdUser'], 'Ghosts')],
                ),
            ])

    def test_relationship_to_missing_column(self):
        with pytest.raises(ValidationError, match='unknown columns'):
            build_snapshot([
                EntityDeclaration('Users', [FieldDeclaration('Id', 'int', key=True)]),
                EntityDeclaration(
                    'Addresses',
                    [FieldDeclaration('IdUser', 'int', key=True)],
                    relationships=[RelationshipDeclaration(['IdUser'], 'Users', ['Uuid'])],
                ),
            ])

    def test_conflicting_primary_keys(self):
        with pytest.raises(ValidationError, match='conflicting primary keys'):
            build_snapshot([
                EntityDeclaration('Users', [
                    FieldDeclaration('Id', 'int', key=True),
                    FieldDeclaration('Email', 'varchar(20)'),
                ]),
                EntityDeclaration('Users', [
                    FieldDeclaration('Id', 'int'),
                    FieldDeclaration('Email', 'varchar(20)', key=True),
                ]),
            ])

    def test_identical_duplicate_allowed(self):
        users = EntityDeclaration('Users', [FieldDeclaration('Id', 'int', key=True)])
        assert build_snapshot([users, users]).table_names == ['Users']

    def test_duplicate_field(self):
        with pytest.raises(ValidationError, match='Duplicate field'):
            build_snapshot([EntityDeclaration('Users', [
                FieldDeclaration('Id', 'int'),
                FieldDeclaration('Id', 'int'),
            ])])

    def test_nullable_key(self):
        with pytest.raises(ValidationError, match='cannot be nullable'):
            build_snapshot([EntityDeclaration('Users', [
                FieldDeclaration('Id', 'int', key=True, nullable=True),
            ])])

    @pytest.mark.parametrize('name', ['1Users', 'user-table', 'a' * 64, ''])
    def test_invalid_table_name(self, name):
        with pytest.raises(ValidationError):
            build_snapshot([EntityDeclaration(name, [FieldDeclaration('Id', 'int')])])

    def test_tables_differing_only_in_case(self):
        with pytest.raises(ValidationError, match='differ only in case'):
            build_snapshot([
                EntityDeclaration('Users', [FieldDeclaration('Id', 'int')]),
                EntityDeclaration('users', [FieldDeclaration('Id', 'int')]),
            ])

    def test_unique_constraints(self):
        snapshot = build_snapshot([EntityDeclaration(
            'Users',
            [
                FieldDeclaration('Id', 'int', key=True),
                FieldDeclaration('Email', 'varchar(20)', unique=True),
                FieldDeclaration('First', 'varchar(10)'),
                FieldDeclaration('Last', 'varchar(10)'),
            ],
            unique=[['Last', 'First']],
        )])

        names = [u.name for u in snapshot.table('Users').unique]
        assert names == ['uq_Users_Email', 'uq_Users_First_Last']


class TestDeclarationSources:
    """Test loading declarations from dicts, files and SQLAlchemy metadata."""

    def test_required_maps_to_nullable(self):
        entities = entities_from_dict([{
            'table': 'Users',
            'fields': [
                {'name': 'Id', 'type': 'int', 'key': True},
                {'name': 'Nick', 'type': 'varchar(10)', 'required': False},
            ],
        }])
        assert entities[0].fields[1].nullable

    def test_missing_entities_list(self):
        with pytest.raises(ValidationError, match="'entities' list"):
            entities_from_dict({'tables': []})

    def test_field_missing_type(self):
        with pytest.raises(ValidationError, match="missing 'type'"):
            entities_from_dict([{'table': 'Users', 'fields': [{'name': 'Id'}]}])

    def test_non_boolean_flag(self):
        with pytest.raises(ValidationError, match='must be boolean'):
            entities_from_dict([{
                'table': 'Users',
                'fields': [{'name': 'Id', 'type': 'int', 'key': 'yes'}],
            }])

    def test_load_yaml(self, tmp_path):
        path = tmp_path / 'entities.yaml'
        path.write_text(
            "entities:\n"
            "  - table: Users\n"
            "    fields:\n"
            "      - {name: Id, type: int, key: true}\n"
            "      - {name: Email, type: varchar(20), nullable: true}\n"
        )

        snapshot = build_snapshot(load_entities(str(path)))
        assert snapshot.table('Users').column('Email').nullable

    def test_load_json(self, tmp_path, entities_data, declared):
        path = tmp_path / 'entities.json'
        path.write_text(json.dumps(entities_data))

        assert build_snapshot(load_entities(path)) == declared

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match='not found'):
            load_entities(tmp_path / 'missing.yaml')

    def test_load_unsupported_source(self):
        with pytest.raises(ValidationError, match='Unsupported entity source'):
            load_entities('entities.txt')

    def test_load_bad_import(self):
        with pytest.raises(ValidationError, match='Cannot import'):
            load_entities('schemaledger_no_such_module:metadata')

    def test_from_metadata(self):
        metadata = MetaData()
        Table(
            'Users', metadata,
            Column('Id', Integer, primary_key=True),
            Column('Email', String(20), nullable=False),
            UniqueConstraint('Email'),
        )
        Table(
            'Addresses', metadata,
            Column('IdUser', Integer, ForeignKey('Users.Id'), primary_key=True),
            Column('Town', String(10), nullable=True),
        )

        snapshot = build_snapshot(entities_from_metadata(metadata))

        users = snapshot.table('Users')
        assert users.primary_key == ('Id',)
        assert not users.column('Email').nullable
        assert [u.columns for u in users.unique] == [('Email',)]

        addresses = snapshot.table('Addresses')
        assert addresses.column('Town').nullable
        assert addresses.referenced_tables() == {'Users'}

    def test_rename_hints(self):
        entities = entities_from_dict([{
            'table': 'People',
            'renamed_from': 'Users',
            'fields': [
                {'name': 'Id', 'type': 'int', 'key': True},
                {'name': 'Mail', 'type': 'varchar(20)', 'renamed_from': 'Email'},
            ],
        }])

        hints = rename_hints(entities)
        assert hints.tables == {'People': 'Users'}
        assert hints.columns == {('People', 'Mail'): 'Email'}
